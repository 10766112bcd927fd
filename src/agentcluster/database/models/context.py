"""Persisted task outputs.

One row per (run_id, task_id). A task re-run overwrites its row; rows are
deleted only when their run is archived.
"""

from __future__ import annotations

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from agentcluster.database.models.base import Base, TimestampMixin


class TaskOutput(TimestampMixin, Base):
    """Final output of one task attempt.

    Attributes:
        run_id: Owning run.
        task_id: Task within the run.
        output: ANSI-stripped terminal output, possibly truncated.
        exit_code: Process exit status, when known.
        truncated: Whether the output was cut to the size cap.
    """

    __tablename__ = "task_outputs"

    run_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    task_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    output: Mapped[str] = mapped_column(Text, nullable=False, default="")
    exit_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    truncated: Mapped[bool] = mapped_column(default=False)

    def __repr__(self) -> str:
        return f"<TaskOutput {self.run_id}:{self.task_id} ({len(self.output)} chars)>"
