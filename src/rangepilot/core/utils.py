"""
Utility helpers.
"""

from __future__ import annotations

import secrets
import string
import time
from datetime import datetime, timezone
from typing import Optional

_ID_ALPHABET = string.digits + string.ascii_lowercase


def now_ms() -> int:
    return int(time.time() * 1000)


def new_instance_id(ts_ms: Optional[int] = None) -> str:
    """strategy_{epoch_ms}_{9 base36 chars}"""
    ts = now_ms() if ts_ms is None else ts_ms
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"strategy_{ts}_{suffix}"


def backup_stamp(moment: Optional[datetime] = None) -> str:
    """
    ISO-8601 UTC timestamp with ':' and '.' replaced by '-'.

    2026-10-17T22:47:05.123Z -> 2026-10-17T22-47-05-123Z
    """
    moment = moment or datetime.now(timezone.utc)
    iso = moment.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    iso = iso.replace("+00:00", "Z")
    return iso.replace(":", "-").replace(".", "-")


def to_units(raw: int, decimals: int) -> float:
    return raw / (10 ** decimals)


def to_raw(amount: float, decimals: int) -> int:
    return int(round(amount * (10 ** decimals)))
