"""
Tests for the pipeline stages.

Tests cover:
- Stage 1: percent-range derivation and range sanity checks
- Stage 2: base currency selection, shortfall purchases, failure modes
- Stage 3: retry with backoff, corrective top-up, invalid creation results
- Stage 5: best-effort close and sell-back with dust skipping
"""

from typing import Dict, List

import pytest

from rangepilot.core.errors import RpcError, StageError
from rangepilot.infra.wallet import KeyWallet
from rangepilot.monitoring.metrics_rich import RichMetrics
from rangepilot.strategy.collaborators import Collaborators, PositionClosed, PositionCreated, SwapResult
from rangepilot.strategy.models import (
    RangePercent,
    RetryPolicy,
    StrategyConfig,
    StrategyInstance,
    PoolState,
    TokenInfo,
)
from rangepilot.strategy.stages import BaseCurrency, ExecutionStages, StageConfig

KEY = "0x" + "11" * 32
POOL = "0x" + "ab" * 20
CAKE = "0x" + "0a" * 20
XYZ = "0x" + "0b" * 20
USDT = "0x55d398326f99059fF775485246999027B3197955"
USDC = "0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d"


class FakeReader:
    def __init__(self, tick: int = 0, token0: str = CAKE, token1: str = XYZ, fee: int = 500):
        self.tick = tick
        self.pool = PoolState(tick=tick, sqrt_price_x96=2 ** 96, token0=token0, token1=token1, fee=fee)
        self.tokens: Dict[str, TokenInfo] = {
            CAKE.lower(): TokenInfo(CAKE, "CAKE", 18),
            XYZ.lower(): TokenInfo(XYZ, "XYZ", 18),
            USDT.lower(): TokenInfo(USDT, "USDT", 18),
            USDC.lower(): TokenInfo(USDC, "USDC", 18),
        }
        self.balances: Dict[str, float] = {}

    def set_balance(self, token: str, amount: float) -> None:
        self.balances[token.lower()] = amount

    async def get_pool_state(self, pool: str) -> PoolState:
        self.pool.tick = self.tick
        return self.pool

    async def get_current_tick(self, pool: str) -> int:
        return self.tick

    async def get_token_info(self, address: str) -> TokenInfo:
        return self.tokens[address.lower()]

    async def get_balance(self, token: str, owner: str) -> float:
        return self.balances.get(token.lower(), 0.0)


class FakeExchange:
    """Two target units per base unit; swaps move balances on the reader."""

    def __init__(self, reader: FakeReader, rate: float = 2.0):
        self.reader = reader
        self.rate = rate
        self.swaps: List[tuple] = []
        self.fail_for: Dict[str, Exception] = {}

    async def quote(self, from_token: str, to_token: str, amount_wei: int) -> int:
        return int(amount_wei * self.rate)

    async def swap(self, from_token: str, to_token: str, amount_wei: int, slippage_percent: float) -> SwapResult:
        self.swaps.append((from_token, to_token, amount_wei, slippage_percent))
        if from_token.lower() in self.fail_for:
            raise self.fail_for[from_token.lower()]
        spent = amount_wei / 1e18
        received = spent * self.rate
        bal = self.reader.balances
        bal[from_token.lower()] = bal.get(from_token.lower(), 0.0) - spent
        bal[to_token.lower()] = bal.get(to_token.lower(), 0.0) + received
        return SwapResult(tx_hash=f"0xswap{len(self.swaps)}", from_amount=spent, to_amount=received)


class FakeLiquidity:
    def __init__(self, results=None):
        self.results = list(results or [PositionCreated("42", "0xcreate", 1.0, 1.0)])
        self.create_calls = 0
        self.closed: List[str] = []
        self.close_error = None

    async def create_position(self, instance):
        self.create_calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result

    async def close_position(self, position_id: str) -> PositionClosed:
        if self.close_error is not None:
            raise self.close_error
        self.closed.append(position_id)
        return PositionClosed(tx_hash="0xclose", returned_amounts={"token0": 1.0})


def make_stages(reader=None, liquidity=None, metrics=None, policy=None, **cfg):
    reader = reader or FakeReader()
    liquidity = liquidity or FakeLiquidity()
    exchange = FakeExchange(reader)
    config = StageConfig(
        base_currencies=(BaseCurrency("USDT", USDT), BaseCurrency("USDC", USDC)),
        settle_wait_sec=0,
        **cfg,
    )
    stages = ExecutionStages(
        reader,
        KeyWallet(KEY),
        Collaborators(liquidity=liquidity, exchange=exchange),
        retry_policy=policy or RetryPolicy(initial_delay_ms=0, max_attempts=3, max_delay_ms=0),
        config=config,
        metrics=metrics,
    )
    return stages, reader, exchange, liquidity


def make_instance(**overrides) -> StrategyInstance:
    data = dict(pool_address=POOL, amount=1.0, tick_lower=-1000, tick_upper=1000)
    data.update(overrides)
    return StrategyInstance(instance_id="strategy_1_abcdefghi", config=StrategyConfig(**data))


class TestMarketSnapshot:
    @pytest.mark.asyncio
    async def test_explicit_ticks(self):
        stages, *_ = make_stages()
        inst = make_instance()
        snap = await stages.market_snapshot(inst)
        assert snap.current_tick == 0
        assert snap.price == 1.0
        assert snap.token0.symbol == "CAKE"
        assert inst.market_snapshot is snap
        assert inst.current_stage == 1

    @pytest.mark.asyncio
    async def test_percent_range_derived_from_current_tick(self):
        reader = FakeReader(tick=300)
        stages, *_ = make_stages(reader=reader)
        inst = make_instance(tick_lower=None, tick_upper=None, range_percent=RangePercent(-5, 5))
        await stages.market_snapshot(inst)
        # pool fee 500 -> spacing 10
        assert (inst.config.tick_lower, inst.config.tick_upper) == (-200, 800)

    @pytest.mark.asyncio
    async def test_no_range_at_all(self):
        stages, *_ = make_stages()
        with pytest.raises(StageError) as info:
            await stages.market_snapshot(make_instance(tick_lower=None, tick_upper=None))
        assert info.value.stage == 1

    @pytest.mark.asyncio
    async def test_current_tick_outside_range(self):
        stages, *_ = make_stages(reader=FakeReader(tick=5000))
        with pytest.raises(StageError) as info:
            await stages.market_snapshot(make_instance())
        assert "outside" in str(info.value)

    def test_check_range(self):
        stages, *_ = make_stages()
        assert stages.check_range(0, -100, 100) is None
        assert "below" in stages.check_range(0, 100, 100)
        assert "narrow" in stages.check_range(0, -2, 3)
        assert "wide" in stages.check_range(0, -1500, 1500)
        # inclusive bounds
        assert stages.check_range(100, -100, 100) is None


async def through_stage_1(stages, inst):
    await stages.market_snapshot(inst)
    return inst


class TestPrepareAssets:
    @pytest.mark.asyncio
    async def test_enough_balance_no_swaps(self):
        stages, reader, exchange, _ = make_stages()
        reader.set_balance(CAKE, 5)
        reader.set_balance(XYZ, 5)
        reader.set_balance(USDT, 100)
        inst = await through_stage_1(stages, make_instance())

        result = await stages.prepare_assets(inst)

        assert result.swaps == []
        assert exchange.swaps == []
        assert result.base_symbol == "USDT"
        assert result.required0 == 1.0

    @pytest.mark.asyncio
    async def test_shortfall_bought_with_largest_base(self):
        metrics = RichMetrics()
        stages, reader, exchange, _ = make_stages(metrics=metrics)
        reader.set_balance(CAKE, 0.5)
        reader.set_balance(XYZ, 5)
        reader.set_balance(USDT, 20)
        reader.set_balance(USDC, 50)
        inst = await through_stage_1(stages, make_instance(liquidity_slippage_percent=1.0))

        result = await stages.prepare_assets(inst)

        assert result.base_symbol == "USDC"
        assert len(result.swaps) == 1
        swap = result.swaps[0]
        assert (swap.purpose, swap.from_token, swap.to_token) == ("prepare", "USDC", "CAKE")
        # 0.5 short at 2 per unit plus 1% slippage
        assert swap.from_amount == pytest.approx(0.2525)
        assert exchange.swaps[0][3] == 1.0
        assert result.balance0 >= result.required0
        assert metrics.get_registry().get_sample_value("swaps_executed_total", {"purpose": "prepare"}) == 1.0

    @pytest.mark.asyncio
    async def test_base_balance_too_low(self):
        stages, reader, exchange, _ = make_stages()
        reader.set_balance(USDT, 5)
        inst = await through_stage_1(stages, make_instance())
        with pytest.raises(StageError) as info:
            await stages.prepare_assets(inst)
        assert info.value.stage == 2
        assert "too low" in str(info.value)
        assert exchange.swaps == []

    @pytest.mark.asyncio
    async def test_short_token_is_the_base_currency(self):
        reader = FakeReader(token1=USDT)
        stages, *_ = make_stages(reader=reader)
        reader.set_balance(CAKE, 5)
        reader.set_balance(USDC, 0.2)
        # USDT is the selected base and also the pool's token1, 5 short of 20
        reader.set_balance(USDT, 15)
        inst = await through_stage_1(stages, make_instance(amount=20.0))
        with pytest.raises(StageError) as info:
            await stages.prepare_assets(inst)
        assert "insufficient USDT" in str(info.value)

    @pytest.mark.asyncio
    async def test_purchase_failure_wrapped(self):
        stages, reader, exchange, _ = make_stages()
        reader.set_balance(USDT, 100)
        exchange.fail_for[USDT.lower()] = RuntimeError("no route")
        inst = await through_stage_1(stages, make_instance())
        with pytest.raises(StageError) as info:
            await stages.prepare_assets(inst)
        assert "no route" in str(info.value)

    @pytest.mark.asyncio
    async def test_missing_snapshot(self):
        stages, *_ = make_stages()
        with pytest.raises(StageError):
            await stages.prepare_assets(make_instance())


async def through_stage_2(stages, reader, inst):
    reader.set_balance(CAKE, 5)
    reader.set_balance(XYZ, 5)
    reader.set_balance(USDT, 100)
    await stages.market_snapshot(inst)
    await stages.prepare_assets(inst)
    return inst


class TestCreatePosition:
    @pytest.mark.asyncio
    async def test_created_first_try(self):
        stages, reader, _, liquidity = make_stages()
        inst = await through_stage_2(stages, reader, make_instance())
        record = await stages.create_position(inst)
        assert record.position_id == "42"
        assert record.creation_tx_hash == "0xcreate"
        assert (record.tick_lower, record.tick_upper) == (-1000, 1000)
        assert liquidity.create_calls == 1

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        metrics = RichMetrics()
        liquidity = FakeLiquidity([RpcError(-32000, "header not found"), PositionCreated("7", "0xok")])
        stages, reader, _, _ = make_stages(liquidity=liquidity, metrics=metrics)
        inst = await through_stage_2(stages, reader, make_instance())

        record = await stages.create_position(inst)

        assert record.position_id == "7"
        assert liquidity.create_calls == 2
        assert metrics.get_registry().get_sample_value("position_create_retries_total") == 1.0

    @pytest.mark.asyncio
    async def test_exhausted_attempts(self):
        liquidity = FakeLiquidity([RuntimeError("reverted")])
        stages, reader, _, _ = make_stages(liquidity=liquidity)
        inst = await through_stage_2(stages, reader, make_instance())
        with pytest.raises(StageError) as info:
            await stages.create_position(inst)
        assert info.value.stage == 3
        assert "after 3 attempts" in str(info.value)
        assert "reverted" in str(info.value)
        assert liquidity.create_calls == 3
        assert inst.position_record is None

    @pytest.mark.asyncio
    async def test_backoff_delays_are_exponential_and_capped(self, monkeypatch):
        liquidity = FakeLiquidity([RuntimeError("reverted")])
        policy = RetryPolicy(initial_delay_ms=1000, max_attempts=5, backoff_multiplier=2.0, max_delay_ms=5000)
        stages, reader, _, _ = make_stages(liquidity=liquidity, policy=policy)
        inst = await through_stage_2(stages, reader, make_instance())

        slept: List[float] = []

        async def fake_sleep(seconds):
            slept.append(seconds)

        monkeypatch.setattr("rangepilot.strategy.stages.asyncio.sleep", fake_sleep)
        with pytest.raises(StageError):
            await stages.create_position(inst)

        assert slept == [1.0, 2.0, 4.0, 5.0]
        assert liquidity.create_calls == 5

    @pytest.mark.asyncio
    async def test_no_wait_after_success(self, monkeypatch):
        liquidity = FakeLiquidity([RuntimeError("reverted"), RuntimeError("reverted"), PositionCreated("9", "0xok")])
        policy = RetryPolicy(initial_delay_ms=500, max_attempts=5, backoff_multiplier=3.0, max_delay_ms=30000)
        stages, reader, _, _ = make_stages(liquidity=liquidity, policy=policy)
        inst = await through_stage_2(stages, reader, make_instance())

        slept: List[float] = []

        async def fake_sleep(seconds):
            slept.append(seconds)

        monkeypatch.setattr("rangepilot.strategy.stages.asyncio.sleep", fake_sleep)
        record = await stages.create_position(inst)

        assert record.position_id == "9"
        assert slept == [0.5, 1.5]
        assert liquidity.create_calls == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "created",
        [PositionCreated(None, "0xtx"), PositionCreated("0", "0xtx"), PositionCreated("42", ""), None],
    )
    async def test_invalid_results_are_failures(self, created):
        liquidity = FakeLiquidity([created, PositionCreated("9", "0xgood")])
        stages, reader, _, _ = make_stages(liquidity=liquidity)
        inst = await through_stage_2(stages, reader, make_instance())
        record = await stages.create_position(inst)
        assert record.position_id == "9"
        assert liquidity.create_calls == 2

    @pytest.mark.asyncio
    async def test_insufficient_balance_triggers_top_up(self):
        liquidity = FakeLiquidity([RpcError(-32000, "insufficient funds for transfer"), PositionCreated("5", "0xtx")])
        stages, reader, exchange, _ = make_stages(liquidity=liquidity)
        inst = await through_stage_2(stages, reader, make_instance(exchange_slippage_percent=0.5))
        # balances drained between preparation and creation
        reader.set_balance(CAKE, 0.8)

        await stages.create_position(inst)

        top_ups = [s for s in inst.asset_prep_result.swaps if s.purpose == "top_up"]
        assert len(top_ups) == 1
        assert top_ups[0].to_token == "CAKE"
        # 0.2 short * 1.1 buffer, bought at 2 per unit with 0.5% slippage
        assert top_ups[0].to_amount == pytest.approx(0.2 * 1.1 * 1.005)
        assert exchange.swaps[-1][3] == 0.5

    @pytest.mark.asyncio
    async def test_top_up_failure_does_not_stop_retry(self):
        liquidity = FakeLiquidity([RpcError(-32000, "insufficient balance"), PositionCreated("5", "0xtx")])
        stages, reader, exchange, _ = make_stages(liquidity=liquidity)
        inst = await through_stage_2(stages, reader, make_instance())
        reader.set_balance(CAKE, 0.1)
        exchange.fail_for[USDT.lower()] = RuntimeError("router down")

        record = await stages.create_position(inst)
        assert record.position_id == "5"

    @pytest.mark.asyncio
    async def test_requires_earlier_stages(self):
        stages, *_ = make_stages()
        with pytest.raises(StageError):
            await stages.create_position(make_instance())


async def through_stage_3(stages, reader, inst):
    await through_stage_2(stages, reader, inst)
    await stages.create_position(inst)
    return inst


class TestExitPosition:
    @pytest.mark.asyncio
    async def test_close_and_sell_back(self):
        stages, reader, exchange, liquidity = make_stages()
        inst = await through_stage_3(stages, reader, make_instance(exchange_slippage_percent=0.5))
        reader.set_balance(CAKE, 2.0)
        reader.set_balance(XYZ, 0.0000005)

        result = await stages.exit_position(inst, "timeout", "out of range")

        assert result.position_closed
        assert result.close_tx_hash == "0xclose"
        assert liquidity.closed == ["42"]
        assert inst.position_record.active is False
        assert result.base_symbol == "USDT"
        by_token = {s.from_token: s for s in result.sells}
        assert by_token["CAKE"].status == "ok"
        assert by_token["CAKE"].from_amount == pytest.approx(2.0 * 0.9995)
        assert by_token["XYZ"].status == "skipped"
        assert exchange.swaps[-1][1] == USDT
        assert result.detail == "out of range"

    @pytest.mark.asyncio
    async def test_close_failure_still_sells(self):
        stages, reader, _, liquidity = make_stages()
        inst = await through_stage_3(stages, reader, make_instance())
        liquidity.close_error = RuntimeError("not owner")

        result = await stages.exit_position(inst, "user_forced")

        assert not result.position_closed
        assert "not owner" in result.close_error
        assert inst.position_record.active is True
        assert any(s.status == "ok" for s in result.sells)

    @pytest.mark.asyncio
    async def test_failed_sell_recorded(self):
        stages, reader, exchange, _ = make_stages()
        inst = await through_stage_3(stages, reader, make_instance())
        exchange.fail_for[CAKE.lower()] = RuntimeError("slippage")

        result = await stages.exit_position(inst, "user_forced")

        by_token = {s.from_token: s for s in result.sells}
        assert by_token["CAKE"].status == "failed"
        assert by_token["XYZ"].status == "ok"

    @pytest.mark.asyncio
    async def test_nothing_to_do_without_snapshot(self):
        stages, _, exchange, liquidity = make_stages()
        result = await stages.exit_position(make_instance(), "user_forced")
        assert result.sells == []
        assert not result.position_closed
        assert liquidity.closed == []
        assert exchange.swaps == []
