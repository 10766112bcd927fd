"""Bounded output buffer for a session's terminal stream.

Raw PTY bytes are decoded incrementally (invalid UTF-8 becomes U+FFFD),
ANSI escape sequences are stripped, and the text is split into lines. A
carriage return that is not part of ``\\r\\n`` rewinds the current line,
which keeps progress bars from piling up. Completed lines are numbered
with a monotonically increasing sequence so readers can ask for "text
after position X" even after old lines have been evicted.

The buffer is only mutated by its session's reader task. All methods are
synchronous, so a reader on the same event loop always sees a consistent
state.
"""

from __future__ import annotations

import codecs
import re
import time
from collections import deque
from typing import NamedTuple

# CSI, OSC (BEL or ST terminated), two-byte escapes and stray C0 controls
_ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
    r"|[\x00-\x08\x0b\x0c\x0e-\x1a\x1c-\x1f\x7f]"
)
# An escape sequence cut off at the end of a chunk
_PARTIAL_ESCAPE_RE = re.compile(r"\x1b(?:\[[0-?]*[ -/]*|\][^\x07\x1b]*\x1b?)?$")


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences and non-printing control characters."""
    return _ANSI_RE.sub("", text)


class BufferCursor(NamedTuple):
    """A position in the buffer: line sequence number and column."""

    seq: int
    col: int


class OutputBuffer:
    """Ring of recent output lines capped by line count and byte size.

    Args:
        max_lines: Maximum completed lines retained.
        max_bytes: Maximum UTF-8 bytes of completed lines retained.
    """

    def __init__(self, max_lines: int = 10000, max_bytes: int = 4 * 1024 * 1024):
        self.max_lines = max_lines
        self.max_bytes = max_bytes
        self._lines: deque[str] = deque()
        self._first_seq = 0
        self._partial = ""
        self._pending_cr = False
        self._pending_escape = ""
        self._stored_bytes = 0
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.total_bytes = 0
        self.last_output_at: float | None = None
        self.version = 0

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def feed(self, data: bytes) -> str:
        """Append a raw chunk from the PTY.

        Returns:
            The chunk as cleaned text (ANSI stripped), for event payloads.
        """
        if not data:
            return ""
        self.total_bytes += len(data)
        self.last_output_at = time.monotonic()
        return self.feed_text(self._decoder.decode(data))

    def feed_text(self, text: str) -> str:
        """Append already-decoded text."""
        text = self._pending_escape + text
        self._pending_escape = ""
        partial_escape = _PARTIAL_ESCAPE_RE.search(text)
        if partial_escape is not None:
            self._pending_escape = text[partial_escape.start():]
            text = text[: partial_escape.start()]
        clean = strip_ansi(text)
        if clean:
            self._append(clean)
            self.version += 1
        return clean

    def flush(self) -> None:
        """Finish decoding at end of stream."""
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self.feed_text(tail)
        if self._pending_cr:
            self._pending_cr = False
            self._partial = ""
            self.version += 1

    def _append(self, text: str) -> None:
        if self._pending_cr:
            text = "\r" + text
            self._pending_cr = False
        if text.endswith("\r"):
            self._pending_cr = True
            text = text[:-1]
        pieces = text.replace("\r\n", "\n").split("\n")
        for piece in pieces[:-1]:
            self._complete_line(_rewind(self._partial + piece))
            self._partial = ""
        self._partial = _rewind(self._partial + pieces[-1])
        # A stream without newlines must not grow unbounded
        limit = max(1, self.max_bytes // 4)
        while len(self._partial) > limit:
            self._complete_line(self._partial[:limit])
            self._partial = self._partial[limit:]

    def _complete_line(self, line: str) -> None:
        self._lines.append(line)
        self._stored_bytes += len(line.encode("utf-8")) + 1
        while self._lines and (
            len(self._lines) > self.max_lines or self._stored_bytes > self.max_bytes
        ):
            evicted = self._lines.popleft()
            self._stored_bytes -= len(evicted.encode("utf-8")) + 1
            self._first_seq += 1

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    @property
    def next_seq(self) -> int:
        """Sequence number the current partial line will get."""
        return self._first_seq + len(self._lines)

    @property
    def first_seq(self) -> int:
        return self._first_seq

    @property
    def partial_line(self) -> str:
        return self._partial

    @property
    def line_count(self) -> int:
        return len(self._lines)

    @property
    def stored_bytes(self) -> int:
        return self._stored_bytes + len(self._partial.encode("utf-8"))

    def end_cursor(self) -> BufferCursor:
        """Cursor positioned after everything currently buffered."""
        return BufferCursor(self.next_seq, len(self._partial))

    def snapshot(self) -> str:
        """Full buffered text, including the unterminated last line."""
        text = "\n".join(self._lines)
        if self._partial:
            return f"{text}\n{self._partial}" if self._lines else self._partial
        return text

    def tail(self, n: int) -> list[str]:
        """Last ``n`` completed lines."""
        if n <= 0:
            return []
        start = max(0, len(self._lines) - n)
        return [self._lines[i] for i in range(start, len(self._lines))]

    def preview(self, n: int = 3) -> list[str]:
        """Last ``n`` non-blank lines, including the partial line."""
        lines = self.tail(n + 1)
        if self._partial:
            lines.append(self._partial)
        lines = [line for line in lines if line.strip()]
        return lines[-n:] if n > 0 else []

    def text_after(self, cursor: BufferCursor, window: int) -> list[str]:
        """Fragments written after ``cursor``, limited to the last ``window`` lines.

        The first fragment is cut at the cursor column when the cursor sits
        inside that line. The partial line is included.
        """
        fragments: list[str] = []
        lowest = max(cursor.seq, self.next_seq - window + 1, self._first_seq)
        for seq in range(lowest, self.next_seq):
            line = self._lines[seq - self._first_seq]
            if seq == cursor.seq:
                line = line[cursor.col:]
            fragments.append(line)
        partial = self._partial
        if cursor.seq == self.next_seq and cursor.col <= len(partial):
            partial = partial[cursor.col:]
        if partial:
            fragments.append(partial)
        return fragments

    def contains_keyword(self, keyword: str, window: int = 20) -> bool:
        """Case-insensitive search over the last ``window`` lines."""
        needle = keyword.lower()
        lines = self.tail(window)
        if self._partial:
            lines.append(self._partial)
        return any(needle in line.lower() for line in lines)


def _rewind(line: str) -> str:
    """Apply carriage returns: keep the text written after the last one."""
    if "\r" in line:
        return line.rsplit("\r", 1)[-1]
    return line
