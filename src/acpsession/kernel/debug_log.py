"""JSONL diagnostics for the session service.

One record per line in ``<logs_dir>/debug.log.jsonl``. When a write would
push the active file past ``max_file_bytes`` it is shifted to ``.1`` (and
``.1`` to ``.2`` and so on, keeping ``max_files`` generations).

Agents are often launched with credentials in their environment or echo
them on stderr, so messages and structured data pass through a redactor
before they hit disk:

* ``none``: written as given.
* ``default``: sensitive keys and secret-looking substrings are masked.
* ``strict``: every scalar in ``data`` is masked; only the shape survives.

Writing never raises. Failures are counted in ``write_errors``.
"""

from __future__ import annotations

import json
import re
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from acpsession.kernel.types import now_ms

ACTIVE_FILE_NAME = "debug.log.jsonl"
REDACTION_MODES = ("none", "default", "strict")
MASK = "***REDACTED***"

_SENSITIVE_KEY_RE = re.compile(
    r"(password|passwd|secret|token|authorization|cookie|credential|api[_-]?key|private[_-]?key)",
    re.IGNORECASE,
)
# Matches GEMINI_API_KEY=..., token: ..., client_secret=... inside free text.
_ASSIGNMENT_RE = re.compile(
    r"(?i)([A-Za-z0-9_-]*(?:api[_-]?key|token|secret|password|authorization)[A-Za-z0-9_-]*)\s*[:=]\s*([^\s,;\"']+)"
)
_BEARER_RE = re.compile(r"(?i)\bbearer\s+[^\s,;\"']+")
_KEY_LIKE_RE = re.compile(r"\b(?:sk|AIza)[-_A-Za-z0-9]{8,}\b")


def redact_text(text: str) -> str:
    if not text:
        return text
    masked = _BEARER_RE.sub("Bearer " + MASK, text)
    masked = _ASSIGNMENT_RE.sub(lambda m: "{0}={1}".format(m.group(1), MASK), masked)
    return _KEY_LIKE_RE.sub(MASK, masked)


def redact_value(value: Any, mode: str) -> Any:
    if mode == "none":
        return value
    if isinstance(value, dict):
        return {key: MASK if _SENSITIVE_KEY_RE.search(str(key)) else redact_value(item, mode) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact_value(item, mode) for item in value]
    if mode == "strict":
        return MASK
    if isinstance(value, str):
        return redact_text(value)
    return value


class DebugLogWriter:
    """Thread-safe, best-effort JSONL writer keyed by component and session."""

    def __init__(
        self,
        *,
        logs_dir: Path,
        enabled: bool,
        max_file_bytes: int = 10 * 1024 * 1024,
        max_files: int = 5,
        redaction: str = "default",
    ) -> None:
        self._logs_dir = Path(logs_dir)
        self._enabled = bool(enabled)
        self._max_file_bytes = max(1, int(max_file_bytes or 0))
        self._max_files = max(1, int(max_files or 0))
        mode = str(redaction or "").strip().lower()
        self._redaction = mode if mode in REDACTION_MODES else "default"
        self._lock = threading.Lock()
        self.write_errors = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def active_log_file(self) -> Path:
        return self._logs_dir / ACTIVE_FILE_NAME

    def info(self, component: str, message: str, session_id: str = "", **data: Any) -> None:
        self.log("info", component, message, session_id, data)

    def warning(self, component: str, message: str, session_id: str = "", **data: Any) -> None:
        self.log("warning", component, message, session_id, data)

    def error(self, component: str, message: str, session_id: str = "", **data: Any) -> None:
        self.log("error", component, message, session_id, data)

    def log(
        self,
        level: str,
        component: str,
        message: str,
        session_id: str = "",
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not self._enabled:
            return
        message = str(message or "")
        if self._redaction != "none":
            message = redact_text(message)
        record = {
            "ts_ms": now_ms(),
            "level": level,
            "component": component,
            "session_id": session_id or "",
            "message": message,
            "data": redact_value(dict(data or {}), self._redaction),
        }
        with self._lock:
            try:
                encoded = (json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str) + "\n").encode("utf-8")
                self._logs_dir.mkdir(parents=True, exist_ok=True)
                if self._would_overflow(len(encoded)):
                    self._shift_generations()
                with self.active_log_file.open("ab") as fp:
                    fp.write(encoded)
            except Exception:
                self.write_errors += 1

    def _would_overflow(self, incoming: int) -> bool:
        active = self.active_log_file
        size = active.stat().st_size if active.exists() else 0
        return size + incoming > self._max_file_bytes

    def _generations(self) -> List[Path]:
        return [Path("{0}.{1}".format(self.active_log_file, index)) for index in range(1, self._max_files + 1)]

    def _shift_generations(self) -> None:
        # Caller holds _lock. Oldest generation falls off the end.
        generations = self._generations()
        generations[-1].unlink(missing_ok=True)
        for older, newer in zip(reversed(generations[1:]), reversed(generations[:-1])):
            if newer.exists():
                newer.replace(older)
        if self.active_log_file.exists():
            self.active_log_file.replace(generations[0])
