"""
Concentrated-liquidity tick math.

Prices are token1 per token0, adjusted for decimals. A tick is worth 0.01%
of price, so one percent is taken as 100 ticks when turning a percent range
into tick bounds.
"""

from __future__ import annotations

import math
from typing import Tuple

from rangepilot.strategy.models import TokenRequirements

TICK_BASE = 1.0001
TICKS_PER_PERCENT = 100

_FEE_TO_SPACING = {
    100: 1,
    500: 10,
    2500: 50,
    3000: 60,
    10000: 200,
}


def price_from_tick(tick: int, decimals0: int, decimals1: int) -> float:
    return TICK_BASE ** tick * 10 ** (decimals0 - decimals1)


def tick_spacing_for_fee(fee: int) -> int:
    return _FEE_TO_SPACING.get(fee, 1)


def tick_range_from_percent(current_tick: int, lower_percent: float, upper_percent: float, fee: int) -> Tuple[int, int]:
    """
    Bounds for a signed percent range around current_tick, floor-aligned to
    the fee tier's spacing. Collapsed bounds widen to one spacing.
    """
    spacing = tick_spacing_for_fee(fee)
    lower = current_tick + math.floor(lower_percent * TICKS_PER_PERCENT)
    upper = current_tick + math.floor(upper_percent * TICKS_PER_PERCENT)
    lower = math.floor(lower / spacing) * spacing
    upper = math.floor(upper / spacing) * spacing
    if lower >= upper:
        upper = lower + spacing
    return lower, upper


def _sqrt_price(tick: int) -> float:
    return math.sqrt(TICK_BASE ** tick)


class UniswapV3Math:
    """
    Default AMM math: token amounts for a position from one side's amount.

    Amounts are human units in and out; the liquidity formulas run on raw
    units so decimals cancel correctly.
    """

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
    ) -> TokenRequirements:
        sp = _sqrt_price(current_tick)
        sa = _sqrt_price(tick_lower)
        sb = _sqrt_price(tick_upper)
        scale0 = 10 ** decimals0
        scale1 = 10 ** decimals1

        if current_tick <= tick_lower:
            # below range: all token0
            if input_side == "token0":
                return TokenRequirements(input_amount, 0.0, "price below range: token0 only")
            return TokenRequirements(0.0, 0.0, "price below range: token1 cannot be deposited")
        if current_tick >= tick_upper:
            # above range: all token1
            if input_side == "token1":
                return TokenRequirements(0.0, input_amount, "price above range: token1 only")
            return TokenRequirements(0.0, 0.0, "price above range: token0 cannot be deposited")

        if input_side == "token0":
            raw0 = input_amount * scale0
            liquidity = raw0 * sp * sb / (sb - sp)
            raw1 = liquidity * (sp - sa)
            return TokenRequirements(input_amount, raw1 / scale1, f"L={liquidity:.6g} from token0")

        raw1 = input_amount * scale1
        liquidity = raw1 / (sp - sa)
        raw0 = liquidity * (sb - sp) / (sp * sb)
        return TokenRequirements(raw0 / scale0, input_amount, f"L={liquidity:.6g} from token1")
