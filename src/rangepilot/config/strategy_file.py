"""
Optional YAML file of strategies to create at startup.

    strategies:
      - name: cake-bnb
        pool_address: "0x..."
        amount: 100
        principal: token1
        range_percent: {lower_percent: -1, upper_percent: 1, fee: 2500}
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List

import yaml

from rangepilot.core.errors import ConfigurationError
from rangepilot.core.json_utils import dumps

log = logging.getLogger("rangepilot")


def load_strategy_file(path: str | Path) -> List[Dict[str, Any]]:
    """Return the list of strategy mappings; a missing file yields []."""
    p = Path(path)
    if not p.exists():
        log.info(dumps({"event": "strategy_file_missing", "path": str(p)}))
        return []
    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"{p}: invalid YAML: {exc}") from exc

    if data is None:
        return []
    if isinstance(data, dict):
        data = data.get("strategies", [])
    if not isinstance(data, list):
        raise ConfigurationError(f"{p}: expected a list of strategies")
    for idx, item in enumerate(data):
        if not isinstance(item, dict):
            raise ConfigurationError(f"{p}: strategy #{idx + 1} is not a mapping")
    log.info(dumps({"event": "strategy_file_loaded", "path": str(p), "count": len(data)}))
    return data
