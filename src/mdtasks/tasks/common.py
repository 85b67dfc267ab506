"""Common helpers shared by the task store modules."""

from __future__ import annotations

import threading
import time
from datetime import UTC, datetime

_choice_id_lock = threading.Lock()
_last_choice_ns = 0


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def from_iso(value: str) -> datetime:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def generate_choice_id() -> str:
    """Return a time-derived choice id that is unique within this process."""

    global _last_choice_ns  # noqa: PLW0603
    with _choice_id_lock:
        now_ns = max(time.time_ns(), _last_choice_ns + 1)
        _last_choice_ns = now_ns
    return f"choice_{now_ns}"
