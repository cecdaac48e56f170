"""
Instance map persistence.

The whole StrategyInstance map lives in one JSON document. Every save first
copies the previous document to data/backups/ under a timestamped name and
prunes old backups, then writes a tmp file and atomically replaces the
target. Load and save failures are logged and counted, never raised.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from rangepilot.core.json_utils import dumps, dumps_pretty, loads
from rangepilot.core.utils import backup_stamp

if TYPE_CHECKING:
    from rangepilot.monitoring.metrics_rich import RichMetrics

log = logging.getLogger("rangepilot")

INSTANCES_FILENAME = "strategy-instances.json"


class InstanceStore:
    def __init__(
        self,
        data_dir: str = "data",
        filename: str = INSTANCES_FILENAME,
        backup_keep: int = 10,
        metrics: Optional["RichMetrics"] = None,
    ) -> None:
        root = Path(data_dir)
        self.path = root / "strategies" / filename
        self.tmp = self.path.with_suffix(".tmp")
        self.backup_dir = root / "backups"
        self.backup_keep = backup_keep
        self._metrics = metrics
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.backup_dir.mkdir(parents=True, exist_ok=True)

    def load(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            data = loads(self.path.read_bytes())
        except Exception as exc:
            self._error("load", exc)
            return {}
        if not isinstance(data, dict):
            self._error("load", ValueError("instance map is not a JSON object"))
            return {}
        return data

    def save(self, data: Dict[str, Dict[str, Any]]) -> bool:
        started = time.monotonic()
        try:
            self._backup()
            self.tmp.write_bytes(dumps_pretty(data))
            self.tmp.replace(self.path)
        except Exception as exc:
            self._error("save", exc)
            return False
        if self._metrics:
            self._metrics.state_save_duration_ms.observe((time.monotonic() - started) * 1000)
        return True

    def list_backups(self) -> List[Path]:
        """Backups for this file, newest first."""
        suffix = f"_{self.path.name}"
        files = [p for p in self.backup_dir.iterdir() if p.is_file() and p.name.endswith(suffix)]
        return sorted(files, key=lambda p: p.name, reverse=True)

    def _backup(self) -> None:
        if not self.path.exists():
            return
        target = self.backup_dir / f"{backup_stamp()}_{self.path.name}"
        shutil.copy2(self.path, target)
        for old in self.list_backups()[self.backup_keep:]:
            try:
                old.unlink()
            except OSError as exc:
                log.warning(dumps({"event": "backup_prune_error", "file": old.name, "err": str(exc)}))

    def _error(self, op: str, exc: BaseException) -> None:
        log.error(dumps({"event": f"state_{op}_error", "path": str(self.path), "err": str(exc)}))
        if self._metrics:
            self._metrics.persistence_errors.labels(op=op).inc()


class AtomicInstanceStore:
    """
    Async wrapper around InstanceStore.

    File IO runs in the default executor; an asyncio.Lock keeps saves from
    interleaving when several instances persist at once.
    """

    def __init__(self, store: InstanceStore) -> None:
        self._store = store
        self._lock = asyncio.Lock()

    @property
    def store(self) -> InstanceStore:
        return self._store

    async def load(self) -> Dict[str, Dict[str, Any]]:
        async with self._lock:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self._store.load)

    async def save(self, data: Dict[str, Dict[str, Any]]) -> bool:
        async with self._lock:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, lambda: self._store.save(data))
