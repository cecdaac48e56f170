"""
Contracts for the external services the pipeline drives.

The engine never prices swaps, builds position calldata or does range math
itself; it calls these through narrow request/response types. Deployments
provide implementations via a factory (see LP_COLLABORATORS).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol, TYPE_CHECKING

from rangepilot.strategy.models import TokenRequirements
from rangepilot.strategy.tick_math import UniswapV3Math

if TYPE_CHECKING:
    from rangepilot.strategy.models import StrategyInstance


@dataclass
class PositionCreated:
    position_id: Optional[str]
    tx_hash: Optional[str]
    amount0: float = 0.0
    amount1: float = 0.0
    tick_lower: Optional[int] = None
    tick_upper: Optional[int] = None


@dataclass
class PositionClosed:
    tx_hash: Optional[str]
    returned_amounts: Dict[str, float] = field(default_factory=dict)


@dataclass
class SwapResult:
    tx_hash: str
    from_amount: float  # human units
    to_amount: float


class AmmMath(Protocol):
    def calculate_token_requirements(
        self,
        input_amount: float,
        input_side: str,
        current_tick: int,
        tick_lower: int,
        tick_upper: int,
        decimals0: int,
        decimals1: int,
        pool_meta: object = None,
    ) -> TokenRequirements: ...


class LiquidityService(Protocol):
    async def create_position(self, instance: "StrategyInstance") -> PositionCreated: ...

    async def close_position(self, position_id: str) -> PositionClosed: ...


class ExchangeService(Protocol):
    async def quote(self, from_token: str, to_token: str, amount_wei: int) -> int:
        """Raw amount of to_token received for amount_wei of from_token."""
        ...

    async def swap(self, from_token: str, to_token: str, amount_wei: int, slippage_percent: float) -> SwapResult:
        """Execute a trade. Raises on quote or execution failure."""
        ...


@dataclass
class Collaborators:
    liquidity: LiquidityService
    exchange: ExchangeService
    amm_math: AmmMath = field(default_factory=UniswapV3Math)
