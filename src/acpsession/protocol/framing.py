"""Newline-delimited JSON framing for agent stdout.

Agents write one JSON-RPC value per line. Pipe reads hand us arbitrary byte
chunks, so a message may arrive split across several chunks or several
messages may arrive in one. ``LineFramer`` keeps the bytes after the last
newline and yields only complete lines.

A line longer than ``max_line_bytes`` is dropped rather than delivered. When
the unterminated tail alone exceeds the ceiling the framer stops buffering
and skips everything up to the next newline, so a runaway agent cannot grow
the buffer without bound. Leading whitespace is never buffered and trailing
whitespace past the ceiling is only counted, so blank padding cannot grow it
either.

Nothing here parses JSON or raises on undecodable bytes; that happens one
layer up, line by line.
"""

from __future__ import annotations

from typing import Callable, List, Optional, Union

MAX_LINE_BYTES = 64 * 1024
NEWLINE = b"\n"

OversizedLineSink = Callable[[int], None]


class LineFramer:
    """Split a byte stream into trimmed, non-empty text lines."""

    def __init__(
        self,
        max_line_bytes: int = MAX_LINE_BYTES,
        on_oversized: Optional[OversizedLineSink] = None,
    ) -> None:
        self._max_line_bytes = max(1, int(max_line_bytes))
        self._on_oversized = on_oversized
        self._buffer = bytearray()
        self._discarding = False
        self._discarded_bytes = 0
        # Trailing whitespace dropped from a full buffer; any later content overflows the line.
        self._spilled_bytes = 0
        self.dropped_lines = 0

    @property
    def pending(self) -> bytes:
        return bytes(self._buffer)

    @property
    def discarding(self) -> bool:
        return self._discarding

    def feed(self, chunk: Union[bytes, bytearray, str]) -> List[str]:
        if not chunk:
            return []
        data = chunk.encode("utf-8") if isinstance(chunk, str) else bytes(chunk)

        lines: List[str] = []
        start = 0
        while True:
            index = data.find(NEWLINE, start)
            if index < 0:
                break
            segment = data[start:index]
            start = index + 1
            if self._discarding:
                self._finish_discard(len(segment))
                continue
            if self._spilled_bytes:
                self._close_spilled(segment, lines)
                continue
            if self._buffer:
                self._buffer.extend(segment)
                segment = bytes(self._buffer)
                self._buffer.clear()
            self._accept(segment, lines)

        tail = data[start:]
        if tail:
            if self._discarding:
                self._discarded_bytes += len(tail)
            elif self._spilled_bytes:
                if tail.strip():
                    self._start_discard(len(self._buffer) + self._spilled_bytes + len(tail))
                else:
                    self._spilled_bytes += len(tail)
            else:
                if not self._buffer:
                    tail = tail.lstrip()
                self._buffer.extend(tail)
                self._guard_buffer()
        return lines

    def flush(self) -> List[str]:
        """Drain the unterminated tail at end of stream."""

        lines: List[str] = []
        if self._discarding:
            self._finish_discard(0)
            return lines
        if self._spilled_bytes:
            self._close_spilled(b"", lines)
            return lines
        if self._buffer:
            segment = bytes(self._buffer)
            self._buffer.clear()
            self._accept(segment, lines)
        return lines

    def _accept(self, raw: bytes, lines: List[str]) -> None:
        text = raw.strip()
        if not text:
            return
        if len(text) > self._max_line_bytes:
            self._report_oversized(len(text))
            return
        lines.append(text.decode("utf-8", errors="replace"))

    def _guard_buffer(self) -> None:
        # The buffer never starts with whitespace, so only its end can shrink on trim.
        if len(self._buffer) <= self._max_line_bytes:
            return
        content = len(self._buffer.rstrip())
        if content > self._max_line_bytes:
            self._start_discard(len(self._buffer))
            return
        self._spilled_bytes = len(self._buffer) - content
        del self._buffer[content:]

    def _close_spilled(self, segment: bytes, lines: List[str]) -> None:
        size = len(self._buffer) + self._spilled_bytes + len(segment)
        kept = bytes(self._buffer)
        self._buffer.clear()
        self._spilled_bytes = 0
        if segment.strip():
            self._report_oversized(size)
            return
        self._accept(kept, lines)

    def _start_discard(self, size: int) -> None:
        self._discarding = True
        self._discarded_bytes = int(size)
        self._spilled_bytes = 0
        self._buffer.clear()

    def _finish_discard(self, extra: int) -> None:
        size = self._discarded_bytes + int(extra)
        self._discarding = False
        self._discarded_bytes = 0
        self._report_oversized(size)

    def _report_oversized(self, size: int) -> None:
        self.dropped_lines += 1
        if self._on_oversized is None:
            return
        try:
            self._on_oversized(int(size))
        except Exception:
            # Reporting is advisory; framing must continue with the next line.
            pass
