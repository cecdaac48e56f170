"""
Tests for tick math, strategy config rules, the status transition table,
the retry policy and instance serialization.
"""

import pytest

from rangepilot.core.errors import ConfigurationError, InvalidTransitionError
from rangepilot.strategy.config_rules import build_strategy_config, validate_strategy_config
from rangepilot.strategy.models import (
    AssetPrepResult,
    ExitResult,
    MarketSnapshot,
    PoolState,
    PositionRecord,
    RangePercent,
    RetryPolicy,
    StrategyConfig,
    StrategyInstance,
    StrategyStatus,
    SwapRecord,
    TokenInfo,
)
from rangepilot.strategy.state_machine import VALID_TRANSITIONS, can_transition, transition
from rangepilot.strategy.tick_math import (
    UniswapV3Math,
    price_from_tick,
    tick_range_from_percent,
    tick_spacing_for_fee,
)

POOL = "0x" + "ab" * 20
S = StrategyStatus


class TestTickMath:
    def test_price_from_tick(self):
        assert price_from_tick(0, 18, 18) == 1.0
        assert price_from_tick(0, 18, 6) == pytest.approx(1e12)
        assert price_from_tick(100, 18, 18) == pytest.approx(1.0001 ** 100)

    @pytest.mark.parametrize("fee,spacing", [(100, 1), (500, 10), (2500, 50), (3000, 60), (10000, 200), (1234, 1)])
    def test_spacing(self, fee, spacing):
        assert tick_spacing_for_fee(fee) == spacing

    def test_percent_range_aligned(self):
        assert tick_range_from_percent(-1000, -5, 5, 500) == (-1500, -500)
        assert tick_range_from_percent(300, -1, 1, 3000) == (180, 360)

    def test_negative_ticks_floor_toward_minus_infinity(self):
        assert tick_range_from_percent(-1005, -1, 1, 3000) == (-1140, -960)

    def test_collapsed_range_widens_by_one_spacing(self):
        assert tick_range_from_percent(0, 0.1, 0.2, 10000) == (0, 200)

    def test_fractional_percent_floors(self):
        # 0.555% -> 55 ticks
        assert tick_range_from_percent(0, -0.555, 0.555, 100) == (-56, 55)


class TestTokenRequirements:
    math = UniswapV3Math()

    def test_symmetric_range_needs_equal_amounts(self):
        req = self.math.calculate_token_requirements(1.0, "token0", 0, -1000, 1000, 18, 18)
        assert req.amount0 == 1.0
        assert req.amount1 == pytest.approx(1.0, rel=1e-9)

        req = self.math.calculate_token_requirements(2.0, "token1", 0, -1000, 1000, 18, 18)
        assert req.amount1 == 2.0
        assert req.amount0 == pytest.approx(2.0, rel=1e-9)

    def test_decimals_scale_the_other_side(self):
        req = self.math.calculate_token_requirements(1.0, "token0", 0, -1000, 1000, 18, 6)
        assert req.amount1 == pytest.approx(1e12, rel=1e-6)

    def test_below_range_token0_only(self):
        req = self.math.calculate_token_requirements(5.0, "token0", -2000, -1000, 1000, 18, 18)
        assert (req.amount0, req.amount1) == (5.0, 0.0)
        # at the lower bound counts as below
        req = self.math.calculate_token_requirements(5.0, "token0", -1000, -1000, 1000, 18, 18)
        assert (req.amount0, req.amount1) == (5.0, 0.0)

    def test_above_range_token1_only(self):
        req = self.math.calculate_token_requirements(5.0, "token1", 2000, -1000, 1000, 18, 18)
        assert (req.amount0, req.amount1) == (0.0, 5.0)
        req = self.math.calculate_token_requirements(5.0, "token0", 2000, -1000, 1000, 18, 18)
        assert (req.amount0, req.amount1) == (0.0, 0.0)


def valid_config(**overrides):
    data = {"pool_address": POOL, "amount": 100, "tick_lower": -600, "tick_upper": 600}
    data.update(overrides)
    return data


class TestConfigRules:
    def test_valid_explicit_ticks(self):
        cfg = build_strategy_config(valid_config(name="bnb"))
        assert cfg.has_ticks()
        assert cfg.name == "bnb"
        assert cfg.exchange_slippage_percent == 0.5
        assert cfg.liquidity_slippage_percent == 1.0

    def test_flat_percent_keys(self):
        cfg = build_strategy_config({"pool_address": POOL, "amount": 1, "lower_percent": -2, "upper_percent": 3, "fee": 500})
        assert cfg.range_percent == RangePercent(-2.0, 3.0, 500)
        assert not cfg.has_ticks()

    @pytest.mark.parametrize(
        "overrides",
        [
            {"pool_address": "0x1234"},
            {"amount": 0},
            {"amount": -5},
            {"amount": float("nan")},
            {"amount": float("inf")},
            {"amount": "nan"},
            {"principal": "token2"},
            {"exchange_slippage_percent": 0},
            {"exchange_slippage_percent": 1.5},
            {"liquidity_slippage_percent": 0},
            {"tick_lower": 600, "tick_upper": -600},
            {"tick_lower": 0, "tick_upper": 5},
            {"tick_lower": 0, "tick_upper": 6000},
            {"auto_exit_timeout_ms": 0},
        ],
    )
    def test_invalid(self, overrides):
        with pytest.raises(ConfigurationError):
            build_strategy_config(valid_config(**overrides))

    def test_auto_exit_timeout_ignored_when_disabled(self):
        cfg = build_strategy_config(valid_config(auto_exit_enabled=False, auto_exit_timeout_ms=0))
        assert not cfg.auto_exit_enabled

    def test_range_required(self):
        with pytest.raises(ConfigurationError):
            build_strategy_config({"pool_address": POOL, "amount": 1})

    def test_percent_range_order(self):
        with pytest.raises(ConfigurationError):
            build_strategy_config({"pool_address": POOL, "amount": 1, "range_percent": {"lower_percent": 2, "upper_percent": 1}})

    def test_missing_fields(self):
        with pytest.raises(ConfigurationError):
            build_strategy_config({"amount": 1})

    def test_malformed_values_wrapped(self):
        with pytest.raises(ConfigurationError):
            build_strategy_config(valid_config(amount="lots"))

    def test_high_liquidity_slippage_only_warns(self, caplog):
        cfg = StrategyConfig(pool_address=POOL, amount=1, tick_lower=0, tick_upper=100, liquidity_slippage_percent=75)
        with caplog.at_level("WARNING", logger="rangepilot"):
            validate_strategy_config(cfg)
        assert "config_high_liquidity_slippage" in caplog.text


def new_instance(status=S.INITIALIZED):
    cfg = StrategyConfig(pool_address=POOL, amount=1, tick_lower=0, tick_upper=100)
    return StrategyInstance(instance_id="strategy_1_abcdefghi", config=cfg, status=status)


class TestStateMachine:
    def test_happy_path(self):
        inst = new_instance()
        for target in (S.PREPARING, S.RUNNING, S.MONITORING, S.EXITING, S.EXITED):
            transition(inst, target)
        assert inst.status is S.EXITED

    def test_returns_previous(self):
        inst = new_instance()
        assert transition(inst, S.PREPARING) is S.INITIALIZED

    def test_invalid_raises_and_keeps_status(self):
        inst = new_instance()
        with pytest.raises(InvalidTransitionError):
            transition(inst, S.MONITORING)
        assert inst.status is S.INITIALIZED

    def test_terminal_states_can_restart_and_reset(self):
        for terminal in (S.EXITED, S.COMPLETED, S.ERROR):
            assert can_transition(terminal, S.PREPARING)
            assert can_transition(terminal, S.INITIALIZED)

    def test_exiting_only_finishes(self):
        assert VALID_TRANSITIONS[S.EXITING] == frozenset({S.EXITED, S.ERROR})

    def test_every_status_has_an_entry(self):
        assert set(VALID_TRANSITIONS) == set(StrategyStatus)

    def test_status_groups(self):
        assert S.MONITORING.is_active and not S.MONITORING.is_terminal
        assert S.ERROR.is_terminal and not S.ERROR.is_active
        assert not S.PAUSED.is_active and not S.PAUSED.is_terminal


class TestRetryPolicy:
    def test_defaults(self):
        policy = RetryPolicy()
        assert [policy.delay_ms(k) for k in (1, 2, 3, 4)] == [1000, 2000, 4000, 8000]
        assert policy.max_attempts == 5

    def test_capped(self):
        policy = RetryPolicy(initial_delay_ms=1000, backoff_multiplier=10, max_delay_ms=30000)
        assert policy.delay_ms(3) == 30000


class TestInstanceSerialization:
    def test_full_instance_survives_dict(self):
        inst = new_instance(S.MONITORING)
        inst.config.range_percent = RangePercent(-1, 1, 500)
        inst.market_snapshot = MarketSnapshot(
            pool=PoolState(tick=50, sqrt_price_x96=2 ** 96, token0="0xa", token1="0xb", fee=500),
            token0=TokenInfo("0xa", "CAKE", 18),
            token1=TokenInfo("0xb", "WBNB", 18),
            current_tick=50,
            price=1.005,
            token0_price_in_token1=1.005,
            token1_price_in_token0=1 / 1.005,
            fetched_at_ms=1,
        )
        inst.asset_prep_result = AssetPrepResult("USDT", "0xusdt", 1, 1, 2, 2, [SwapRecord("prepare", "USDT", "CAKE", 3, 1, "0xs")])
        inst.position_record = PositionRecord("42", "0xc", 0, 100, 1, 1, 5)
        inst.exit_result = ExitResult(reason="timeout", position_closed=True, sells=[SwapRecord("exit", "CAKE", "USDT")])

        data = inst.to_dict()
        assert data["status"] == "monitoring"
        restored = StrategyInstance.from_dict(data)
        assert restored == inst

    def test_clear_run_data_keeps_identity(self):
        inst = new_instance(S.ERROR)
        inst.last_error = "boom"
        inst.position_record = PositionRecord("1", "0x", 0, 100)
        inst.current_stage = 3
        inst.clear_run_data()
        assert inst.instance_id == "strategy_1_abcdefghi"
        assert inst.config.tick_lower == 0
        assert inst.last_error is None and inst.position_record is None
        assert inst.current_stage == 0
