"""Run plans: the already-parsed description of a task DAG."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

import tomli
from pydantic import BaseModel, Field, field_validator, model_validator

from agentcluster.cluster.models import AgentKind


class DecisionLevel(str, Enum):
    """How much human approval a task needs before it is scheduled.

    ``automatic`` and ``notify`` start as soon as they are ready (``notify``
    also logs a notification). ``confirm`` and ``vote`` are held until
    approved; a vote is resolved by a single local approval.
    """

    automatic = "automatic"
    notify = "notify"
    confirm = "confirm"
    vote = "vote"

    @property
    def needs_approval(self) -> bool:
        return self in (DecisionLevel.confirm, DecisionLevel.vote)


class TaskSpec(BaseModel):
    """One node of a run plan.

    Attributes:
        id: Task identifier, unique within the plan.
        prompt: Prompt (or command, for the shell kind) of the task.
        agent_kind: Agent to run.
        depends_on: Ids of tasks whose output this task needs, in order.
        work_dir: Working directory; defaults to a per-task directory
            under the executor's base directory.
        priority: Higher runs first among ready tasks.
        decision_level: Approval policy.
        max_retries: Per-task override of the executor retry budget.
    """

    id: str = Field(min_length=1)
    prompt: str
    agent_kind: AgentKind = AgentKind.claude
    depends_on: list[str] = Field(default_factory=list)
    work_dir: Path | None = None
    priority: int = 0
    decision_level: DecisionLevel = DecisionLevel.automatic
    max_retries: int | None = Field(default=None, ge=0)

    @field_validator("depends_on")
    @classmethod
    def dedupe_dependencies(cls, v: list[str]) -> list[str]:
        return list(dict.fromkeys(v))


class RunPlan(BaseModel):
    """A complete run: identity, tasks and optional policy overrides."""

    run_id: str = Field(default_factory=lambda: uuid4().hex[:12])
    name: str | None = None
    tasks: list[TaskSpec]
    concurrency_limit: int | None = Field(default=None, ge=1)
    max_retries: int | None = Field(default=None, ge=0)
    failure_mode: str | None = None

    @field_validator("run_id")
    @classmethod
    def validate_run_id(cls, v: str) -> str:
        if not v or ":" in v:
            raise ValueError(f"Invalid run_id: {v!r}")
        return v

    @field_validator("failure_mode")
    @classmethod
    def validate_failure_mode(cls, v: str | None) -> str | None:
        if v is not None and v not in {"fail_fast", "continue"}:
            raise ValueError(f"Invalid failure mode: {v}")
        return v

    @model_validator(mode="after")
    def check_unique_ids(self) -> RunPlan:
        seen: set[str] = set()
        for task in self.tasks:
            if task.id in seen:
                raise ValueError(f"Duplicate task id: {task.id}")
            seen.add(task.id)
        return self

    @classmethod
    def from_toml(cls, path: Path) -> RunPlan:
        """Load a plan file.

        Raises:
            FileNotFoundError: If the file is missing.
            ValueError: If the file is not a valid plan.
        """
        with open(path, "rb") as f:
            data: dict[str, Any] = tomli.load(f)
        try:
            return cls(**data)
        except Exception as e:
            raise ValueError(f"Invalid run plan in {path}: {e}") from e
