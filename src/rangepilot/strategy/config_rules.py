"""
Strategy configuration parsing and validation.

Configuration errors are fatal: the instance is never created.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Any, Dict, Mapping

from rangepilot.core.errors import ConfigurationError
from rangepilot.core.json_utils import dumps
from rangepilot.strategy.models import StrategyConfig

log = logging.getLogger("rangepilot")

ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
MIN_CONFIG_TICK_WIDTH = 10
MAX_CONFIG_TICK_WIDTH = 5000
LIQUIDITY_SLIPPAGE_WARN = 50.0


def validate_strategy_config(cfg: StrategyConfig) -> None:
    """Raise ConfigurationError on the first invalid field."""
    if not ADDRESS_RE.match(cfg.pool_address or ""):
        raise ConfigurationError(f"invalid pool address: {cfg.pool_address!r}")
    if cfg.amount is None or not math.isfinite(cfg.amount) or cfg.amount <= 0:
        raise ConfigurationError(f"amount must be > 0 (got {cfg.amount})")
    if cfg.principal not in ("token0", "token1"):
        raise ConfigurationError(f"principal must be token0 or token1 (got {cfg.principal!r})")

    if not 0 < cfg.exchange_slippage_percent <= 1:
        raise ConfigurationError(
            f"exchange_slippage_percent must be in (0, 1] (got {cfg.exchange_slippage_percent})"
        )
    if cfg.liquidity_slippage_percent <= 0:
        raise ConfigurationError(
            f"liquidity_slippage_percent must be > 0 (got {cfg.liquidity_slippage_percent})"
        )
    if cfg.liquidity_slippage_percent > LIQUIDITY_SLIPPAGE_WARN:
        log.warning(dumps({
            "event": "config_high_liquidity_slippage",
            "pool": cfg.pool_address,
            "liquidity_slippage_percent": cfg.liquidity_slippage_percent,
        }))

    if cfg.has_ticks():
        width = cfg.tick_upper - cfg.tick_lower
        if width <= 0:
            raise ConfigurationError(f"tick_lower ({cfg.tick_lower}) must be below tick_upper ({cfg.tick_upper})")
        if not MIN_CONFIG_TICK_WIDTH <= width <= MAX_CONFIG_TICK_WIDTH:
            raise ConfigurationError(
                f"tick range width {width} outside {MIN_CONFIG_TICK_WIDTH}..{MAX_CONFIG_TICK_WIDTH}"
            )
    elif cfg.range_percent is not None:
        rp = cfg.range_percent
        if rp.lower_percent >= rp.upper_percent:
            raise ConfigurationError(
                f"lower_percent ({rp.lower_percent}) must be below upper_percent ({rp.upper_percent})"
            )
    else:
        raise ConfigurationError("either tick_lower/tick_upper or range_percent is required")

    if cfg.auto_exit_enabled and cfg.auto_exit_timeout_ms <= 0:
        raise ConfigurationError(f"auto_exit_timeout_ms must be > 0 (got {cfg.auto_exit_timeout_ms})")


def build_strategy_config(data: Mapping[str, Any]) -> StrategyConfig:
    """
    Parse a user-supplied mapping into a validated StrategyConfig.

    Accepts `range_percent` as a mapping or the flat keys
    `lower_percent` / `upper_percent` / `fee`.
    """
    raw: Dict[str, Any] = dict(data)
    if "pool_address" not in raw or "amount" not in raw:
        raise ConfigurationError("pool_address and amount are required")

    if raw.get("range_percent") is None and "lower_percent" in raw and "upper_percent" in raw:
        raw["range_percent"] = {
            "lower_percent": raw.pop("lower_percent"),
            "upper_percent": raw.pop("upper_percent"),
            "fee": raw.pop("fee", None),
        }
    try:
        cfg = StrategyConfig.from_dict(raw)
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"malformed strategy config: {exc}") from exc
    validate_strategy_config(cfg)
    return cfg
