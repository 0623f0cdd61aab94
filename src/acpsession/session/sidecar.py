"""Per-session append-only transcript of protocol traffic."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import IO, Optional

from acpsession.kernel.types import iso_now


class SessionLogSidecar:
    """Best-effort text log, one file per session.

    Lines look like ``[2026-01-01T00:00:00.000Z] [request] initialize: {...}``.
    Every failure is counted and swallowed; the protocol path never sees it.
    """

    def __init__(self, path: Path, enabled: bool = True) -> None:
        self._path = Path(path)
        self._enabled = bool(enabled)
        self._lock = threading.Lock()
        self._fp: Optional[IO[str]] = None
        self._closed = False
        self.write_errors = 0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self, session_id: str) -> None:
        if not self._enabled:
            return
        with self._lock:
            if self._fp is not None or self._closed:
                return
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                self._fp = self._path.open("a", encoding="utf-8")
                self._fp.write("\n=== Session {0} started at {1} ===\n".format(session_id, iso_now()))
                self._fp.flush()
            except Exception:
                self.write_errors += 1
                self._fp = None

    def write(self, tag: str, message: str) -> None:
        if not self._enabled:
            return
        with self._lock:
            if self._fp is None:
                return
            try:
                self._fp.write("[{0}] [{1}] {2}\n".format(iso_now(), tag, message.rstrip("\n")))
                self._fp.flush()
            except Exception:
                self.write_errors += 1

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            fp = self._fp
            self._fp = None
            if fp is None:
                return
            try:
                fp.close()
            except Exception:
                self.write_errors += 1
