from __future__ import annotations

import time
from datetime import datetime, timezone


def now_millis() -> int:
    return int(time.time() * 1000)


def millis_to_datetime(millis: int) -> datetime:
    # Checkpoint timestamps are epoch milliseconds, always UTC.
    return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc)


def format_millis(millis: int) -> str:
    return millis_to_datetime(millis).astimezone().strftime("%Y-%m-%d %H:%M:%S")
