"""
Latest per-key summaries for the /status endpoint.

The engine writes one entry per instance under `instance:<id>`.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional


class StatusBoard:
    def __init__(self) -> None:
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def update(self, key: str, payload: Dict[str, Any]) -> None:
        async with self._lock:
            self._entries[key] = dict(payload)

    async def remove(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    async def snapshot(self, prefix: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
        async with self._lock:
            return {
                key: dict(value)
                for key, value in self._entries.items()
                if prefix is None or key.startswith(prefix)
            }
