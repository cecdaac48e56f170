"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List, Optional, Tuple

from dotenv import load_dotenv

from rangepilot.core.json_utils import dumps
from rangepilot.infra.failover import Endpoint
from rangepilot.strategy.stages import DEFAULT_BASE_CURRENCIES, BaseCurrency

load_dotenv()

log = logging.getLogger("rangepilot")


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


def _split(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def parse_base_currencies(raw: Optional[str]) -> Tuple[BaseCurrency, ...]:
    """`USDT:0x55d3...,USDC:0x8AC7...`; empty means the BSC defaults."""
    items = _split(raw)
    if not items:
        return DEFAULT_BASE_CURRENCIES
    out = []
    for item in items:
        symbol, sep, address = item.partition(":")
        if not sep or not symbol.strip() or not address.strip():
            raise ValueError(f"LP_BASE_CURRENCIES entry {item!r} must be SYMBOL:address")
        out.append(BaseCurrency(symbol.strip().upper(), address.strip()))
    return tuple(out)


@dataclass(frozen=True)
class Settings:
    rpc_urls: List[str]
    rpc_timeout_sec: float
    rpc_max_retries: int
    health_check_interval_sec: float
    health_probe_timeout_sec: float
    chain_id: int
    private_key: str | None
    data_dir: str
    backup_keep: int
    monitor_poll_ms: int
    retry_initial_ms: int
    retry_max_attempts: int
    retry_multiplier: float
    retry_max_delay_ms: int
    base_currencies: Tuple[BaseCurrency, ...]
    min_base_balance: float
    dust_threshold: float
    exit_sell_ratio: float
    metrics_port: int
    metrics_token: str | None
    log_file: str | None
    log_level: str
    strategies_file: str
    collaborators: str | None

    def dump(self) -> dict:
        """Return a dict of settings for sanity checks/logging; the key is masked."""
        data = self.__dict__.copy()
        if data.get("private_key"):
            data["private_key"] = "***"
        if data.get("metrics_token"):
            data["metrics_token"] = "***"
        data["base_currencies"] = [c.symbol for c in self.base_currencies]
        return data

    @classmethod
    def load(cls) -> "Settings":
        cfg = cls(
            rpc_urls=_split(os.getenv("LP_RPC_URLS", "https://bsc-dataseed.bnbchain.org")),
            rpc_timeout_sec=_float_env("LP_RPC_TIMEOUT_SEC", 5.0),
            rpc_max_retries=_int_env("LP_RPC_MAX_RETRIES", 3),
            health_check_interval_sec=_float_env("LP_HEALTH_CHECK_INTERVAL_SEC", 30.0),
            health_probe_timeout_sec=_float_env("LP_HEALTH_PROBE_TIMEOUT_SEC", 5.0),
            chain_id=_int_env("LP_CHAIN_ID", 56),
            private_key=os.getenv("LP_PRIVATE_KEY"),
            data_dir=os.getenv("LP_DATA_DIR", "data"),
            backup_keep=_int_env("LP_BACKUP_KEEP", 10),
            monitor_poll_ms=_int_env("LP_MONITOR_POLL_MS", 3000),
            retry_initial_ms=_int_env("LP_RETRY_INITIAL_MS", 1000),
            retry_max_attempts=_int_env("LP_RETRY_MAX_ATTEMPTS", 5),
            retry_multiplier=_float_env("LP_RETRY_MULTIPLIER", 2.0),
            retry_max_delay_ms=_int_env("LP_RETRY_MAX_DELAY_MS", 30000),
            base_currencies=parse_base_currencies(os.getenv("LP_BASE_CURRENCIES")),
            min_base_balance=_float_env("LP_MIN_BASE_BALANCE", 10.0),
            dust_threshold=_float_env("LP_DUST_THRESHOLD", 0.000001),
            exit_sell_ratio=_float_env("LP_EXIT_SELL_RATIO", 0.9995),
            metrics_port=_int_env("LP_METRICS_PORT", 9096),
            metrics_token=os.getenv("LP_METRICS_TOKEN"),
            log_file=os.getenv("LP_LOG_FILE", "rangepilot.log") or None,
            log_level=os.getenv("LP_LOG_LEVEL", "INFO").upper(),
            strategies_file=os.getenv("LP_STRATEGIES_FILE", "configs/strategies.yaml"),
            collaborators=os.getenv("LP_COLLABORATORS"),
        )
        _sanity_check(cfg)
        cfg._validate()
        return cfg

    def endpoints(self) -> List[Endpoint]:
        """
        Build failover endpoints from LP_RPC_URLS.

        Each item is `url` or `name|url`; declaration order is priority order.
        """
        out: List[Endpoint] = []
        for idx, item in enumerate(self.rpc_urls):
            name, sep, url = item.partition("|")
            if not sep:
                name, url = f"rpc{idx + 1}", item
            out.append(
                Endpoint(
                    url=url.strip(),
                    name=name.strip(),
                    priority=idx + 1,
                    timeout_sec=self.rpc_timeout_sec,
                    max_retries=self.rpc_max_retries,
                    health_check_interval_sec=self.health_check_interval_sec,
                )
            )
        return out

    def resolve_account(self) -> str:
        return self.resolve_signer().address

    def resolve_signer(self):
        from eth_account import Account

        if self.private_key:
            return Account.from_key(self.private_key)
        raise RuntimeError("Missing credentials: set LP_PRIVATE_KEY")

    def _validate(self) -> None:
        if not self.rpc_urls:
            raise ValueError("LP_RPC_URLS must list at least one endpoint")
        for item in self.rpc_urls:
            url = item.partition("|")[2] or item
            if not url.strip().startswith(("http://", "https://")):
                raise ValueError(f"LP_RPC_URLS entry {item!r} is not an http(s) URL")
        if self.rpc_timeout_sec <= 0:
            raise ValueError("LP_RPC_TIMEOUT_SEC must be > 0")
        if self.rpc_max_retries < 1:
            raise ValueError("LP_RPC_MAX_RETRIES must be >= 1")
        if self.health_check_interval_sec <= 0 or self.health_probe_timeout_sec <= 0:
            raise ValueError("Health check intervals must be > 0")
        if self.monitor_poll_ms <= 0:
            raise ValueError("LP_MONITOR_POLL_MS must be > 0")
        if self.retry_initial_ms <= 0 or self.retry_max_delay_ms < self.retry_initial_ms:
            raise ValueError("LP_RETRY_MAX_DELAY_MS must be >= LP_RETRY_INITIAL_MS > 0")
        if self.retry_max_attempts < 1:
            raise ValueError("LP_RETRY_MAX_ATTEMPTS must be >= 1")
        if self.retry_multiplier < 1.0:
            raise ValueError("LP_RETRY_MULTIPLIER must be >= 1.0")
        if not 0 < self.exit_sell_ratio <= 1:
            raise ValueError("LP_EXIT_SELL_RATIO must be in (0, 1]")
        if self.backup_keep < 1:
            raise ValueError("LP_BACKUP_KEEP must be >= 1")

        if self.min_base_balance <= 0:
            log.warning("WARNING: LP_MIN_BASE_BALANCE is 0. Stage 2 will attempt purchases from any balance.")
        if self.exit_sell_ratio == 1.0:
            log.warning("WARNING: LP_EXIT_SELL_RATIO is 1.0. Exit sells may fail on rounding.")
        if len(self.rpc_urls) == 1:
            log.warning("WARNING: only one RPC endpoint configured; failover has nowhere to go.")


def _sanity_check(cfg: Settings) -> None:
    """
    Log critical settings once at startup so overrides are obvious.
    """
    log.info(dumps({
        "event": "config_loaded",
        "endpoints": len(cfg.rpc_urls),
        "chain_id": cfg.chain_id,
        "data_dir": cfg.data_dir,
        "monitor_poll_ms": cfg.monitor_poll_ms,
        "retry_max_attempts": cfg.retry_max_attempts,
        "base_currencies": [c.symbol for c in cfg.base_currencies],
    }))
