"""Shared value types of the session cluster."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AgentKind(str, Enum):
    """Kind of interactive agent process a session runs."""

    claude = "claude"
    opencode = "opencode"
    shell = "shell"


class SessionState(str, Enum):
    """Lifecycle state of an agent session."""

    spawning = "spawning"
    running_detached = "running_detached"
    attached = "attached"
    blocked = "blocked"
    completed = "completed"
    failed = "failed"
    killed = "killed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_active(self) -> bool:
        """True while the session occupies a concurrency slot."""
        return self in ACTIVE_STATES


TERMINAL_STATES: frozenset[SessionState] = frozenset(
    {SessionState.completed, SessionState.failed, SessionState.killed}
)

ACTIVE_STATES: frozenset[SessionState] = frozenset(
    {
        SessionState.spawning,
        SessionState.running_detached,
        SessionState.attached,
        SessionState.blocked,
    }
)


class AttachMode(str, Enum):
    """Attach privilege: one exclusive writer, any number of readers."""

    exclusive = "exclusive"
    read_only = "read_only"


class SessionId(BaseModel):
    """Composite session identity ``(run_id, task_id)``.

    The string form ``"<run_id>:<task_id>"`` is used in URLs, logs and the
    CLI. Run ids may not contain a colon so the form parses unambiguously.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str = Field(min_length=1)
    task_id: str = Field(min_length=1)

    @field_validator("run_id")
    @classmethod
    def validate_run_id(cls, v: str) -> str:
        if ":" in v:
            raise ValueError(f"run_id may not contain ':': {v!r}")
        return v

    @classmethod
    def parse(cls, text: str) -> SessionId:
        """Parse ``"<run_id>:<task_id>"``.

        Raises:
            ValueError: If the text has no separator or an empty part.
        """
        run_id, sep, task_id = text.partition(":")
        if not sep or not run_id or not task_id:
            raise ValueError(f"Malformed session id: {text!r}")
        return cls(run_id=run_id, task_id=task_id)

    def short(self) -> str:
        """Compact display form: first 8 characters of the run id."""
        return f"{self.run_id[:8]}:{self.task_id}"

    def __str__(self) -> str:
        return f"{self.run_id}:{self.task_id}"


class TerminalSize(BaseModel):
    """Terminal geometry in character cells."""

    model_config = ConfigDict(frozen=True)

    cols: int = Field(default=80, ge=1, le=10000)
    rows: int = Field(default=24, ge=1, le=10000)


class SessionSummary(BaseModel):
    """Read-only snapshot of one session, safe to hand to any client."""

    id: str
    short_id: str
    run_id: str
    task_id: str
    agent_kind: AgentKind
    state: SessionState
    state_reason: str | None = None
    exit_code: int | None = None
    pid: int | None = None
    work_dir: str
    created_at: datetime
    started_at: datetime | None = None
    last_active_at: datetime | None = None
    finished_at: datetime | None = None
    runtime_seconds: float
    output_preview: list[str] = Field(default_factory=list)
    output_bytes: int = 0
    generation: int = 0
    writer: str | None = None
    observer_count: int = 0


class SessionFilter(BaseModel):
    """Criteria for listing sessions; unset fields match everything."""

    run_id: str | None = None
    states: set[SessionState] | None = None
    agent_kind: AgentKind | None = None

    def matches(self, summary: SessionSummary) -> bool:
        if self.run_id is not None and summary.run_id != self.run_id:
            return False
        if self.states is not None and summary.state not in self.states:
            return False
        if self.agent_kind is not None and summary.agent_kind != self.agent_kind:
            return False
        return True
