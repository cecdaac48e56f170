"""
Strategy data model.

StrategyInstance is the unit of automation: one configured position on one
pool, driven through the pipeline by the LifecycleEngine and persisted as
part of the instance map after every change.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class StrategyStatus(Enum):
    INITIALIZED = "initialized"
    PREPARING = "preparing"    # stages 1-3
    RUNNING = "running"        # stage 4 in progress
    MONITORING = "monitoring"
    PAUSED = "paused"
    EXITING = "exiting"
    EXITED = "exited"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_active(self) -> bool:
        return self in _ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_ACTIVE = frozenset({StrategyStatus.PREPARING, StrategyStatus.RUNNING, StrategyStatus.MONITORING, StrategyStatus.EXITING})
_TERMINAL = frozenset({StrategyStatus.EXITED, StrategyStatus.COMPLETED, StrategyStatus.ERROR})


class ExitReason(Enum):
    TIMEOUT = "timeout"
    USER_FORCED = "user_forced"


@dataclass
class RangePercent:
    """Range as signed percent offsets from the current price, e.g. -5 / +5."""
    lower_percent: float
    upper_percent: float
    fee: Optional[int] = None  # None: use the pool's fee tier

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RangePercent":
        fee = data.get("fee")
        return cls(
            lower_percent=float(data["lower_percent"]),
            upper_percent=float(data["upper_percent"]),
            fee=int(fee) if fee is not None else None,
        )


@dataclass
class StrategyConfig:
    pool_address: str
    amount: float
    principal: str = "token0"  # which pool token `amount` is denominated in
    tick_lower: Optional[int] = None
    tick_upper: Optional[int] = None
    range_percent: Optional[RangePercent] = None  # kept for re-derivation on restart
    exchange_slippage_percent: float = 0.5
    liquidity_slippage_percent: float = 1.0
    auto_exit_enabled: bool = True
    auto_exit_timeout_ms: int = 10000
    restart_count: int = 0
    name: Optional[str] = None

    def has_ticks(self) -> bool:
        return self.tick_lower is not None and self.tick_upper is not None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StrategyConfig":
        rp = data.get("range_percent")
        return cls(
            pool_address=str(data["pool_address"]),
            amount=float(data["amount"]),
            principal=str(data.get("principal", "token0")),
            tick_lower=_opt_int(data.get("tick_lower")),
            tick_upper=_opt_int(data.get("tick_upper")),
            range_percent=RangePercent.from_dict(rp) if rp else None,
            exchange_slippage_percent=float(data.get("exchange_slippage_percent", 0.5)),
            liquidity_slippage_percent=float(data.get("liquidity_slippage_percent", 1.0)),
            auto_exit_enabled=bool(data.get("auto_exit_enabled", True)),
            auto_exit_timeout_ms=int(data.get("auto_exit_timeout_ms", 10000)),
            restart_count=int(data.get("restart_count", 0)),
            name=data.get("name"),
        )


@dataclass
class TokenInfo:
    address: str
    symbol: str
    decimals: int


@dataclass
class PoolState:
    tick: int
    sqrt_price_x96: int
    token0: str
    token1: str
    fee: int


@dataclass
class MarketSnapshot:
    """Stage 1 output. current_tick is refreshed by monitor events."""
    pool: PoolState
    token0: TokenInfo
    token1: TokenInfo
    current_tick: int
    price: float  # token1 per token0, decimal-adjusted
    token0_price_in_token1: float
    token1_price_in_token0: float
    fetched_at_ms: int
    in_range: Optional[bool] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MarketSnapshot":
        return cls(
            pool=PoolState(**data["pool"]),
            token0=TokenInfo(**data["token0"]),
            token1=TokenInfo(**data["token1"]),
            current_tick=int(data["current_tick"]),
            price=float(data["price"]),
            token0_price_in_token1=float(data["token0_price_in_token1"]),
            token1_price_in_token0=float(data["token1_price_in_token0"]),
            fetched_at_ms=int(data["fetched_at_ms"]),
            in_range=data.get("in_range"),
        )


@dataclass
class TokenRequirements:
    amount0: float  # human units
    amount1: float
    explanation: str = ""


@dataclass
class SwapRecord:
    purpose: str  # "prepare", "top_up", "exit"
    from_token: str
    to_token: str
    from_amount: float = 0.0
    to_amount: float = 0.0
    tx_hash: Optional[str] = None
    status: str = "ok"  # ok | failed | skipped
    error: Optional[str] = None


@dataclass
class AssetPrepResult:
    base_symbol: Optional[str]
    base_address: Optional[str]
    required0: float
    required1: float
    balance0: float
    balance1: float
    swaps: List[SwapRecord] = field(default_factory=list)
    completed_at_ms: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AssetPrepResult":
        return cls(
            base_symbol=data.get("base_symbol"),
            base_address=data.get("base_address"),
            required0=float(data["required0"]),
            required1=float(data["required1"]),
            balance0=float(data["balance0"]),
            balance1=float(data["balance1"]),
            swaps=[SwapRecord(**s) for s in data.get("swaps") or []],
            completed_at_ms=int(data.get("completed_at_ms", 0)),
        )


@dataclass
class PositionRecord:
    position_id: str
    creation_tx_hash: str
    tick_lower: int
    tick_upper: int
    amount0: float = 0.0
    amount1: float = 0.0
    created_at_ms: int = 0
    active: bool = True


@dataclass
class ExitResult:
    reason: str
    position_closed: bool = False
    close_tx_hash: Optional[str] = None
    close_error: Optional[str] = None
    base_symbol: Optional[str] = None
    sells: List[SwapRecord] = field(default_factory=list)
    detail: Optional[str] = None
    completed_at_ms: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExitResult":
        return cls(
            reason=str(data["reason"]),
            position_closed=bool(data.get("position_closed", False)),
            close_tx_hash=data.get("close_tx_hash"),
            close_error=data.get("close_error"),
            base_symbol=data.get("base_symbol"),
            sells=[SwapRecord(**s) for s in data.get("sells") or []],
            detail=data.get("detail"),
            completed_at_ms=int(data.get("completed_at_ms", 0)),
        )


@dataclass
class StrategyInstance:
    instance_id: str
    config: StrategyConfig
    status: StrategyStatus = StrategyStatus.INITIALIZED
    created_at_ms: int = 0
    started_at_ms: Optional[int] = None
    monitoring_started_at_ms: Optional[int] = None
    exited_at_ms: Optional[int] = None
    ended_at_ms: Optional[int] = None
    last_error: Optional[str] = None
    current_stage: int = 0
    stage_message: str = ""
    market_snapshot: Optional[MarketSnapshot] = None
    asset_prep_result: Optional[AssetPrepResult] = None
    position_record: Optional[PositionRecord] = None
    exit_reason: Optional[str] = None
    exit_result: Optional[ExitResult] = None

    def clear_run_data(self) -> None:
        """Drop everything produced by a previous pipeline run."""
        self.started_at_ms = None
        self.monitoring_started_at_ms = None
        self.exited_at_ms = None
        self.ended_at_ms = None
        self.last_error = None
        self.current_stage = 0
        self.stage_message = ""
        self.market_snapshot = None
        self.asset_prep_result = None
        self.position_record = None
        self.exit_reason = None
        self.exit_result = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StrategyInstance":
        snap = data.get("market_snapshot")
        prep = data.get("asset_prep_result")
        pos = data.get("position_record")
        ex = data.get("exit_result")
        return cls(
            instance_id=str(data["instance_id"]),
            config=StrategyConfig.from_dict(data["config"]),
            status=StrategyStatus(data.get("status", StrategyStatus.INITIALIZED.value)),
            created_at_ms=int(data.get("created_at_ms", 0)),
            started_at_ms=_opt_int(data.get("started_at_ms")),
            monitoring_started_at_ms=_opt_int(data.get("monitoring_started_at_ms")),
            exited_at_ms=_opt_int(data.get("exited_at_ms")),
            ended_at_ms=_opt_int(data.get("ended_at_ms")),
            last_error=data.get("last_error"),
            current_stage=int(data.get("current_stage", 0)),
            stage_message=str(data.get("stage_message", "")),
            market_snapshot=MarketSnapshot.from_dict(snap) if snap else None,
            asset_prep_result=AssetPrepResult.from_dict(prep) if prep else None,
            position_record=PositionRecord(**pos) if pos else None,
            exit_reason=data.get("exit_reason"),
            exit_result=ExitResult.from_dict(ex) if ex else None,
        )


@dataclass(frozen=True)
class RetryPolicy:
    """Position-creation retry policy. max_attempts counts every attempt."""
    initial_delay_ms: int = 1000
    max_attempts: int = 5
    backoff_multiplier: float = 2.0
    max_delay_ms: int = 30000

    def delay_ms(self, retry: int) -> float:
        """Delay before the retry-th retry (1-based)."""
        return min(self.initial_delay_ms * self.backoff_multiplier ** (retry - 1), self.max_delay_ms)


def _opt_int(value: Any) -> Optional[int]:
    return int(value) if value is not None else None
