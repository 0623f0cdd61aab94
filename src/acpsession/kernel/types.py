"""Small shared helpers used across the session core."""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone


def now_ms() -> int:
    return int(time.time() * 1000)


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def short_token(length: int = 6) -> str:
    return uuid.uuid4().hex[: max(1, int(length))]
