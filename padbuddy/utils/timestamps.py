"""
Clock helpers shared by heartbeat and sensor ingestion.

Devices report time in one of two ways:
    - epoch milliseconds (NTP-synced firmware, web client writes)
    - milliseconds since boot (no NTP yet)

Only the first is an absolute instant. A boot-relative value can be
compared with another value from the same boot, but never with wall-clock.
millis() runs up to 2^32 (about 49.7 days of uptime), so every value below
the epoch-ms floor is device-relative, however large.
"""

import time
from datetime import datetime, timezone
from typing import Optional, Union

# Anything at or above this is epoch milliseconds (Sep 2001 onwards)
EPOCH_MS_FLOOR = 1_000_000_000_000

Number = Union[int, float]


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds"""
    return int(time.time() * 1000)


def is_absolute(value: Number) -> bool:
    """True if the value is a wall-clock instant rather than a boot counter"""
    return value >= EPOCH_MS_FLOOR


def to_epoch_ms(value: Number) -> Optional[int]:
    """Normalize a device timestamp to epoch ms.

    Returns:
        epoch milliseconds, or None for a device-relative clock
    """
    if is_absolute(value):
        return int(value)
    return None


def parse_number(value) -> Optional[float]:
    """Coerce a loosely typed numeric field (int, float, numeric str)"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def utc_now() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)
