"""
Fast JSON utilities backed by orjson.

Usage:
    from rangepilot.core.json_utils import dumps, loads

    log.info(dumps({"event": "stage_complete", "stage": 3}))
"""

from __future__ import annotations

from typing import Any

import orjson

_PRETTY = orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS


def dumps(obj: Any) -> str:
    """Compact JSON encode to string."""
    return orjson.dumps(obj, default=str, option=orjson.OPT_NON_STR_KEYS).decode("utf-8")


def dumps_pretty(obj: Any) -> bytes:
    """Indented JSON for files a human may open (instance map, backups)."""
    return orjson.dumps(obj, default=str, option=_PRETTY)


def loads(s: str | bytes) -> Any:
    return orjson.loads(s)
