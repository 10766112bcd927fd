"""Context store: durable task outputs keyed by (run_id, task_id).

Writes go to the database and the in-process cache before ``save``
returns, so once the executor marks a node completed every dependent
reads its output. Reads consult the cache first.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from agentcluster.config import DatabaseConfig
from agentcluster.database.connection import create_schema, get_engine, get_session_factory
from agentcluster.database.models.context import TaskOutput
from agentcluster.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_ENTRY_CHARS = 1024 * 1024


class ContextEntry(BaseModel):
    """One stored task output."""

    model_config = {"from_attributes": True}

    run_id: str
    task_id: str
    output: str
    exit_code: int | None = None
    truncated: bool = False
    created_at: datetime | None = None


class ContextStore:
    """Task outputs persisted through SQLAlchemy with a read-through cache.

    Args:
        session_factory: Async session factory bound to the context database.
        max_entry_chars: Outputs longer than this keep only their tail.
        engine: Engine to dispose on ``close`` when the store owns it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_entry_chars: int = DEFAULT_MAX_ENTRY_CHARS,
        engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._engine = engine
        self.max_entry_chars = max_entry_chars
        self._cache: dict[tuple[str, str], ContextEntry] = {}
        self._logger = logger.bind(component="ContextStore")

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    @classmethod
    async def open(cls, config: DatabaseConfig) -> ContextStore:
        """Create the engine and schema and return an owning store."""
        engine = get_engine(config)
        await create_schema(engine)
        return cls(get_session_factory(engine), engine=engine)

    async def close(self) -> None:
        self._cache.clear()
        if self._engine is not None:
            await self._engine.dispose()

    async def save(
        self,
        run_id: str,
        task_id: str,
        output: str,
        exit_code: int | None = None,
    ) -> ContextEntry:
        """Insert or overwrite the output of a task."""
        truncated = len(output) > self.max_entry_chars
        if truncated:
            output = output[-self.max_entry_chars:]

        async with self._session_factory() as session:
            await session.merge(
                TaskOutput(
                    run_id=run_id,
                    task_id=task_id,
                    output=output,
                    exit_code=exit_code,
                    truncated=truncated,
                )
            )
            await session.commit()

        entry = ContextEntry(
            run_id=run_id,
            task_id=task_id,
            output=output,
            exit_code=exit_code,
            truncated=truncated,
            created_at=datetime.now(timezone.utc),
        )
        self._cache[(run_id, task_id)] = entry
        self._logger.debug(
            "context_saved",
            run_id=run_id,
            task_id=task_id,
            chars=len(output),
            truncated=truncated,
        )
        return entry

    async def get_entry(self, run_id: str, task_id: str) -> ContextEntry | None:
        cached = self._cache.get((run_id, task_id))
        if cached is not None:
            return cached
        async with self._session_factory() as session:
            row = await session.get(TaskOutput, (run_id, task_id))
        if row is None:
            return None
        entry = ContextEntry.model_validate(row)
        self._cache[(run_id, task_id)] = entry
        return entry

    async def load(self, run_id: str, task_id: str) -> str | None:
        """Output text of a task, or None if it has none stored."""
        entry = await self.get_entry(run_id, task_id)
        return entry.output if entry is not None else None

    async def load_many(self, run_id: str, task_ids: list[str]) -> dict[str, str]:
        """Outputs of several tasks; missing tasks are absent from the result."""
        result: dict[str, str] = {}
        missing: list[str] = []
        for task_id in task_ids:
            cached = self._cache.get((run_id, task_id))
            if cached is not None:
                result[task_id] = cached.output
            else:
                missing.append(task_id)
        if missing:
            async with self._session_factory() as session:
                rows = await session.execute(
                    select(TaskOutput).where(
                        TaskOutput.run_id == run_id, TaskOutput.task_id.in_(missing)
                    )
                )
                for row in rows.scalars():
                    entry = ContextEntry.model_validate(row)
                    self._cache[(run_id, row.task_id)] = entry
                    result[row.task_id] = entry.output
        return result

    async def list_run(self, run_id: str) -> list[ContextEntry]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(TaskOutput)
                .where(TaskOutput.run_id == run_id)
                .order_by(TaskOutput.created_at, TaskOutput.task_id)
            )
            return [ContextEntry.model_validate(row) for row in rows.scalars()]

    def clear_run_cache(self, run_id: str) -> None:
        """Drop cached entries of a run; persisted rows stay."""
        for key in [k for k in self._cache if k[0] == run_id]:
            del self._cache[key]

    async def archive_run(self, run_id: str) -> int:
        """Delete every stored output of a run.

        Returns:
            Number of rows deleted.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                delete(TaskOutput).where(TaskOutput.run_id == run_id)
            )
            await session.commit()
        self.clear_run_cache(run_id)
        self._logger.info("context_run_archived", run_id=run_id, rows=result.rowcount)
        return result.rowcount or 0
