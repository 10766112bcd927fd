"""Blockage detection over a session's output buffer.

The monitor samples the buffer tail on a short interval and looks for
configured signatures (case-insensitive substrings such as ``[y/n]`` or
``password:``) and for configured regular expressions. Only text written
after its cursor is considered; the cursor jumps to the end of the buffer
whenever a blockage is reported and whenever the session recovers, so a
prompt that has been answered does not fire again.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Callable
from typing import Protocol

from agentcluster.cluster.buffer import BufferCursor, OutputBuffer
from agentcluster.config import MonitorConfig
from agentcluster.logging import get_logger

logger = get_logger(__name__)


class MonitorTarget(Protocol):
    """What the monitor loop needs from its session."""

    def monitor_active(self) -> bool:
        """True while the session may become blocked."""
        ...

    def report_blockage(self, reason: str) -> None: ...

    def is_blocked(self) -> bool: ...

    def report_recovery(self, reason: str) -> None: ...

    async def abort(self, reason: str) -> None:
        """Stop the session as failed."""
        ...


class OutputMonitor:
    """Scans new output for blockage signatures.

    Args:
        buffer: The session's output buffer.
        config: Monitor settings (signatures, interval, timeouts).
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        buffer: OutputBuffer,
        config: MonitorConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.buffer = buffer
        self.config = config
        self._signatures = [s.lower() for s in config.signatures]
        self._patterns = [re.compile(p) for p in config.patterns]
        self._clock = clock
        self._cursor = BufferCursor(0, 0)
        self._idle_reported_version = -1
        self._started_at = clock()
        self._logger = logger.bind(component="OutputMonitor")

    @property
    def cursor(self) -> BufferCursor:
        return self._cursor

    def acknowledge(self) -> None:
        """Move the cursor past everything buffered so far."""
        self._cursor = self.buffer.end_cursor()
        self._idle_reported_version = self.buffer.version

    def find_signature(self) -> str | None:
        """Return the offending line if unseen output matches a signature."""
        fragments = self.buffer.text_after(self._cursor, self.config.scan_window_lines)
        for fragment in reversed(fragments):
            lowered = fragment.lower()
            for signature in self._signatures:
                if signature in lowered:
                    return fragment.strip()
            for pattern in self._patterns:
                if pattern.search(fragment):
                    return f"Pattern '{pattern.pattern}' matched: {fragment.strip()}"
        return None

    def output_resumed(self) -> bool:
        """True once output arrived since the last acknowledge and none of it matches."""
        return (
            self.buffer.version != self._idle_reported_version
            and self.find_signature() is None
        )

    def check(self) -> str | None:
        """One sample. Returns a blockage reason, or None."""
        reason = self.find_signature()
        if reason is not None:
            return reason

        timeout = self.config.inactivity_timeout_seconds
        if timeout is None or self._idle_reported_version == self.buffer.version:
            return None
        last = self.buffer.last_output_at or self._started_at
        idle = self._clock() - last
        if idle >= timeout:
            return f"no output for {int(idle)}s"
        return None

    def runtime_exceeded(self) -> bool:
        limit = self.config.max_runtime_seconds
        return limit is not None and self._clock() - self._started_at >= limit

    async def run(self, target: MonitorTarget) -> None:
        """Sample until cancelled.

        Reports at most one blockage per unseen stretch of output, and
        aborts the session once the runtime limit is exceeded. With
        ``auto_recovery`` a blocked session is recovered as soon as it
        writes output that matches no signature.
        """
        interval = self.config.check_interval_seconds
        self._started_at = self._clock()
        while True:
            await asyncio.sleep(interval)
            if self.runtime_exceeded():
                self._logger.warning(
                    "max_runtime_exceeded", limit=self.config.max_runtime_seconds
                )
                await target.abort("max runtime exceeded")
                return
            if not target.monitor_active():
                if (
                    self.config.auto_recovery
                    and target.is_blocked()
                    and self.output_resumed()
                ):
                    target.report_recovery("output resumed")
                continue
            reason = self.check()
            if reason is not None:
                self.acknowledge()
                target.report_blockage(reason)
