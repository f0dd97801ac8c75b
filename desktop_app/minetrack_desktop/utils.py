from __future__ import annotations

import datetime as dt
import uuid
from typing import Callable, Optional

LOCAL_ID_PREFIX = "local_"

Clock = Callable[[], dt.datetime]


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def generate_local_id() -> str:
    """Return a placeholder id for an operation the server has not seen yet."""
    return f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex}"


def is_local_id(value: Optional[str]) -> bool:
    return bool(value) and value.startswith(LOCAL_ID_PREFIX)


def format_elapsed(seconds: int) -> str:
    seconds = max(0, int(seconds))
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
