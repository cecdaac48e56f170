"""
Pipeline stages for one strategy instance.

1. Market snapshot    - pool state, token metadata, prices, range sanity
2. Asset preparation  - token requirements vs balances, buy shortfalls
3. Position creation  - external liquidity service, retried with backoff
4. Monitoring start   - owned by the engine (it holds the monitors)
5. Exit               - close position (best-effort), sell back to base

Stages mutate the instance they are given and raise StageError on fatal
failures. Status transitions and persistence belong to the engine.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple, TYPE_CHECKING

from rangepilot.core.errors import ErrorKind, StageError, classify_error
from rangepilot.core.event_bus import EventType
from rangepilot.core.json_utils import dumps
from rangepilot.core.utils import now_ms, to_raw, to_units
from rangepilot.strategy.models import (
    AssetPrepResult,
    ExitResult,
    MarketSnapshot,
    PositionRecord,
    RetryPolicy,
    StrategyInstance,
    SwapRecord,
    TokenInfo,
    TokenRequirements,
)
from rangepilot.strategy.tick_math import price_from_tick, tick_range_from_percent

if TYPE_CHECKING:
    from rangepilot.core.event_bus import EventBus
    from rangepilot.infra.wallet import WalletProvider
    from rangepilot.monitoring.metrics_rich import RichMetrics
    from rangepilot.strategy.collaborators import Collaborators, PositionCreated
    from rangepilot.strategy.pool_reader import PoolReader

log = logging.getLogger("rangepilot")


@dataclass(frozen=True)
class BaseCurrency:
    symbol: str
    address: str


# BSC mainnet
DEFAULT_BASE_CURRENCIES: Tuple[BaseCurrency, ...] = (
    BaseCurrency("USDT", "0x55d398326f99059fF775485246999027B3197955"),
    BaseCurrency("USDC", "0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d"),
    BaseCurrency("WBNB", "0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c"),
)


@dataclass
class StageConfig:
    base_currencies: Sequence[BaseCurrency] = DEFAULT_BASE_CURRENCIES
    min_base_balance: float = 10.0
    dust_threshold: float = 0.000001
    exit_sell_ratio: float = 0.9995
    top_up_buffer: float = 1.1
    settle_wait_sec: float = 3.0
    min_tick_width: int = 10
    max_tick_width: int = 2000
    log_event_callback: Optional[Callable[..., None]] = None


class ExecutionStages:
    """
    Stage implementations shared by every instance. Holds no per-instance
    state, so concurrent instances never interfere.
    """

    def __init__(
        self,
        pool_reader: "PoolReader",
        wallet: "WalletProvider",
        collaborators: "Collaborators",
        retry_policy: Optional[RetryPolicy] = None,
        bus: Optional["EventBus"] = None,
        config: Optional[StageConfig] = None,
        metrics: Optional["RichMetrics"] = None,
    ) -> None:
        self._reader = pool_reader
        self._wallet = wallet
        self._collab = collaborators
        self.retry_policy = retry_policy or RetryPolicy()
        self._bus = bus
        self.config = config or StageConfig()
        self._metrics = metrics
        self._log = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    async def _publish(self, event_type: EventType, **data: Any) -> None:
        if self._bus is not None:
            await self._bus.emit(event_type, source="stages", timestamp_ms=now_ms(), **data)

    @staticmethod
    def _progress(instance: StrategyInstance, stage: int, message: str) -> None:
        instance.current_stage = stage
        instance.stage_message = message

    # ========== Stage 1: market snapshot ==========

    async def market_snapshot(self, instance: StrategyInstance) -> MarketSnapshot:
        """
        Fetch pool and token data and validate the configured range.

        Bounds missing from the config are derived from the percent range
        and the current tick.
        """
        cfg = instance.config
        self._progress(instance, 1, "fetching market data")

        pool = await self._reader.get_pool_state(cfg.pool_address)
        token0 = await self._reader.get_token_info(pool.token0)
        token1 = await self._reader.get_token_info(pool.token1)

        if not cfg.has_ticks():
            if cfg.range_percent is None:
                raise StageError(1, "no tick range and no percent range configured")
            rp = cfg.range_percent
            fee = rp.fee if rp.fee is not None else pool.fee
            cfg.tick_lower, cfg.tick_upper = tick_range_from_percent(pool.tick, rp.lower_percent, rp.upper_percent, fee)
            self._log(
                "tick_range_derived",
                instance_id=instance.instance_id,
                current_tick=pool.tick,
                tick_lower=cfg.tick_lower,
                tick_upper=cfg.tick_upper,
                restart_count=cfg.restart_count,
            )

        problem = self.check_range(pool.tick, cfg.tick_lower, cfg.tick_upper)
        if problem:
            raise StageError(1, f"unreasonable price range: {problem}")

        price = price_from_tick(pool.tick, token0.decimals, token1.decimals)
        snapshot = MarketSnapshot(
            pool=pool,
            token0=token0,
            token1=token1,
            current_tick=pool.tick,
            price=price,
            token0_price_in_token1=price,
            token1_price_in_token0=1 / price if price else 0.0,
            fetched_at_ms=now_ms(),
            in_range=True,
        )
        instance.market_snapshot = snapshot
        self._progress(instance, 1, f"{token0.symbol}/{token1.symbol} tick {pool.tick}")
        self._log(
            "stage_complete",
            instance_id=instance.instance_id,
            stage=1,
            pair=f"{token0.symbol}/{token1.symbol}",
            tick=pool.tick,
            price=price,
        )
        await self._publish(
            EventType.STRATEGY_STARTED,
            instance_id=instance.instance_id,
            config=cfg.to_dict(),
            token0=asdict(token0),
            token1=asdict(token1),
            current_tick=pool.tick,
            price=price,
        )
        return snapshot

    def check_range(self, current_tick: int, lower: int, upper: int) -> Optional[str]:
        """Reason the range is unusable, or None."""
        if lower >= upper:
            return f"tick_lower {lower} must be below tick_upper {upper}"
        if current_tick < lower or current_tick > upper:
            return f"current tick {current_tick} outside [{lower}, {upper}]"
        width = upper - lower
        if width < self.config.min_tick_width:
            return f"range too narrow ({width} ticks, minimum {self.config.min_tick_width})"
        if width > self.config.max_tick_width:
            return f"range too wide ({width} ticks, maximum {self.config.max_tick_width})"
        return None

    # ========== Stage 2: asset preparation ==========

    async def prepare_assets(self, instance: StrategyInstance) -> AssetPrepResult:
        snap = instance.market_snapshot
        if snap is None:
            raise StageError(2, "market snapshot missing")
        cfg = instance.config
        self._progress(instance, 2, "preparing assets")
        address = self._wallet.get_wallet().address

        req = self._requirements(instance, snap.current_tick)
        balance0 = await self._reader.get_balance(snap.token0.address, address)
        balance1 = await self._reader.get_balance(snap.token1.address, address)
        short0 = max(0.0, req.amount0 - balance0)
        short1 = max(0.0, req.amount1 - balance1)

        base, base_balance = await self.select_base_currency(address, instance.instance_id)
        swaps: List[SwapRecord] = []
        if short0 > 0 or short1 > 0:
            self._log(
                "asset_shortfall",
                instance_id=instance.instance_id,
                short0=short0,
                short1=short1,
                base=base.symbol,
                base_balance=base_balance,
            )
            if base_balance < self.config.min_base_balance:
                raise StageError(
                    2,
                    f"base currency balance too low: {base.symbol} {base_balance:.6f} "
                    f"(minimum {self.config.min_base_balance})",
                )
            for token, short in ((snap.token0, short0), (snap.token1, short1)):
                if short <= 0:
                    continue
                if token.address.lower() == base.address.lower():
                    raise StageError(2, f"insufficient {token.symbol}: need {short:.6f} more")
                try:
                    record = await self.buy_exact(
                        instance, base, token, short, cfg.liquidity_slippage_percent, "prepare"
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    raise StageError(2, f"{base.symbol}->{token.symbol} purchase failed: {exc}") from exc
                swaps.append(record)

            balance0 = await self._reader.get_balance(snap.token0.address, address)
            balance1 = await self._reader.get_balance(snap.token1.address, address)
            if balance0 < req.amount0 or balance1 < req.amount1:
                raise StageError(
                    2,
                    f"still short after purchase: {snap.token0.symbol} need {req.amount0:.6f} have {balance0:.6f}, "
                    f"{snap.token1.symbol} need {req.amount1:.6f} have {balance1:.6f}",
                )

        result = AssetPrepResult(
            base_symbol=base.symbol,
            base_address=base.address,
            required0=req.amount0,
            required1=req.amount1,
            balance0=balance0,
            balance1=balance1,
            swaps=swaps,
            completed_at_ms=now_ms(),
        )
        instance.asset_prep_result = result
        self._progress(instance, 2, f"assets ready ({len(swaps)} swaps)")
        self._log(
            "stage_complete",
            instance_id=instance.instance_id,
            stage=2,
            required0=req.amount0,
            required1=req.amount1,
            swaps=len(swaps),
        )
        return result

    def _requirements(self, instance: StrategyInstance, current_tick: int) -> TokenRequirements:
        snap = instance.market_snapshot
        cfg = instance.config
        return self._collab.amm_math.calculate_token_requirements(
            cfg.amount,
            cfg.principal,
            current_tick,
            cfg.tick_lower,
            cfg.tick_upper,
            snap.token0.decimals,
            snap.token1.decimals,
            snap.pool,
        )

    async def select_base_currency(self, address: str, instance_id: str = "") -> Tuple[BaseCurrency, float]:
        """Base currency with the largest balance among the candidates."""
        best: Optional[Tuple[BaseCurrency, float]] = None
        for candidate in self.config.base_currencies:
            balance = await self._reader.get_balance(candidate.address, address)
            if best is None or balance > best[1]:
                best = (candidate, balance)
        if best is None:
            raise StageError(2, "no base currencies configured")
        self._log("base_currency_selected", instance_id=instance_id, symbol=best[0].symbol, balance=best[1])
        return best

    async def buy_exact(
        self,
        instance: StrategyInstance,
        base: BaseCurrency,
        target: TokenInfo,
        amount: float,
        slippage_percent: float,
        purpose: str,
    ) -> SwapRecord:
        """
        Buy `amount` of target with base. Spend is sized from a one-unit
        quote plus the slippage allowance.
        """
        base_info = await self._reader.get_token_info(base.address)
        quoted = await self._collab.exchange.quote(base.address, target.address, to_raw(1, base_info.decimals))
        rate = to_units(quoted, target.decimals)
        if rate <= 0:
            raise ValueError(f"invalid quote {base.symbol}->{target.symbol}: {quoted}")
        spend = amount / rate * (1 + slippage_percent / 100)
        result = await self._collab.exchange.swap(
            base.address, target.address, to_raw(spend, base_info.decimals), slippage_percent
        )
        record = SwapRecord(
            purpose=purpose,
            from_token=base.symbol,
            to_token=target.symbol,
            from_amount=result.from_amount,
            to_amount=result.to_amount,
            tx_hash=result.tx_hash,
        )
        await self._swapped(instance, record)
        return record

    async def _swapped(self, instance: StrategyInstance, record: SwapRecord) -> None:
        if self._metrics:
            self._metrics.swaps_executed.labels(purpose=record.purpose).inc()
        self._log("swap_executed", instance_id=instance.instance_id, **asdict(record))
        await self._publish(EventType.SWAP_EXECUTED, instance_id=instance.instance_id, **asdict(record))

    # ========== Stage 3: position creation ==========

    async def create_position(self, instance: StrategyInstance) -> PositionRecord:
        """
        Create the position, retrying per the retry policy.

        Insufficient-balance failures get one corrective top-up before the
        next attempt.

        Raises:
            StageError: attempts exhausted; carries the last underlying error
        """
        if instance.market_snapshot is None or instance.asset_prep_result is None:
            raise StageError(3, "earlier stages have not completed")
        policy = self.retry_policy
        cfg = instance.config
        attempt = 0
        while True:
            attempt += 1
            self._progress(instance, 3, f"creating position (attempt {attempt}/{policy.max_attempts})")
            try:
                created = await self._collab.liquidity.create_position(instance)
                self._check_created(created)
                break
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.warning(dumps({
                    "event": "position_create_failed",
                    "instance_id": instance.instance_id,
                    "attempt": attempt,
                    "err": str(exc),
                }))
                if attempt >= policy.max_attempts:
                    raise StageError(3, f"position creation failed after {attempt} attempts: {exc}") from exc
                if classify_error(exc) is ErrorKind.INSUFFICIENT_BALANCE:
                    await self.top_up(instance)
                delay_ms = policy.delay_ms(attempt)
                if self._metrics:
                    self._metrics.position_create_retries.inc()
                self._progress(
                    instance, 3,
                    f"retrying position creation ({attempt}/{policy.max_attempts}) in {delay_ms / 1000:.1f}s",
                )
                await asyncio.sleep(delay_ms / 1000)

        record = PositionRecord(
            position_id=str(created.position_id),
            creation_tx_hash=str(created.tx_hash),
            tick_lower=created.tick_lower if created.tick_lower is not None else cfg.tick_lower,
            tick_upper=created.tick_upper if created.tick_upper is not None else cfg.tick_upper,
            amount0=float(created.amount0),
            amount1=float(created.amount1),
            created_at_ms=now_ms(),
        )
        instance.position_record = record
        self._progress(instance, 3, f"position {record.position_id} created")
        self._log(
            "stage_complete",
            instance_id=instance.instance_id,
            stage=3,
            position_id=record.position_id,
            tx_hash=record.creation_tx_hash,
            attempts=attempt,
        )
        snap = instance.market_snapshot
        await self._publish(
            EventType.POSITION_CREATED,
            instance_id=instance.instance_id,
            position_id=record.position_id,
            tx_hash=record.creation_tx_hash,
            tick_lower=record.tick_lower,
            tick_upper=record.tick_upper,
            amount0=record.amount0,
            amount1=record.amount1,
            token0_symbol=snap.token0.symbol,
            token1_symbol=snap.token1.symbol,
            price=snap.price,
        )
        return record

    @staticmethod
    def _check_created(created: Optional["PositionCreated"]) -> None:
        if created is None:
            raise ValueError("position creation returned nothing")
        pid = created.position_id
        if pid is None or str(pid).strip() == "":
            raise ValueError("position creation returned no position id")
        text = str(pid).strip()
        if text.lstrip("-").isdigit() and int(text) <= 0:
            raise ValueError(f"position creation returned invalid position id {text}")
        if not created.tx_hash:
            raise ValueError("position creation returned an empty transaction hash")
        if not text.isdigit():
            log.warning(dumps({"event": "position_id_unparsed", "position_id": text, "tx_hash": created.tx_hash}))

    async def top_up(self, instance: StrategyInstance) -> List[SwapRecord]:
        """
        Corrective purchase after an insufficient-balance failure. Best-effort:
        failures are logged and the retry proceeds anyway.
        """
        snap = instance.market_snapshot
        prep = instance.asset_prep_result
        bought: List[SwapRecord] = []
        try:
            address = self._wallet.get_wallet().address
            tick = await self._reader.get_current_tick(instance.config.pool_address)
            req = self._requirements(instance, tick)
            balance0 = await self._reader.get_balance(snap.token0.address, address)
            balance1 = await self._reader.get_balance(snap.token1.address, address)
            if prep is not None and prep.base_address:
                base = BaseCurrency(prep.base_symbol or "", prep.base_address)
            else:
                base, _ = await self.select_base_currency(address, instance.instance_id)
            for token, short in ((snap.token0, req.amount0 - balance0), (snap.token1, req.amount1 - balance1)):
                if short <= 0 or token.address.lower() == base.address.lower():
                    continue
                record = await self.buy_exact(
                    instance, base, token, short * self.config.top_up_buffer,
                    instance.config.exchange_slippage_percent, "top_up",
                )
                bought.append(record)
                if prep is not None:
                    prep.swaps.append(record)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.error(dumps({"event": "top_up_failed", "instance_id": instance.instance_id, "err": str(exc)}))
        if bought:
            await asyncio.sleep(self.config.settle_wait_sec)
        return bought

    # ========== Stage 5: exit ==========

    async def exit_position(self, instance: StrategyInstance, reason: str, detail: Optional[str] = None) -> ExitResult:
        """
        Close the position and sell everything back to the base currency.

        Both steps are best-effort: failures are recorded on the result and
        never raised, so the instance always reaches a terminal state.
        """
        self._progress(instance, 5, f"exiting ({reason})")
        result = ExitResult(reason=reason, detail=detail)

        pos = instance.position_record
        if pos is not None and pos.active:
            try:
                closed = await self._collab.liquidity.close_position(pos.position_id)
                result.position_closed = True
                result.close_tx_hash = closed.tx_hash
                pos.active = False
                self._log("position_closed", instance_id=instance.instance_id, position_id=pos.position_id, tx_hash=closed.tx_hash)
                await self._publish(
                    EventType.POSITION_CLOSED,
                    instance_id=instance.instance_id,
                    position_id=pos.position_id,
                    tx_hash=closed.tx_hash,
                    returned_amounts=dict(closed.returned_amounts),
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                result.close_error = str(exc)
                log.error(dumps({
                    "event": "position_close_failed",
                    "instance_id": instance.instance_id,
                    "position_id": pos.position_id,
                    "err": str(exc),
                }))

        snap = instance.market_snapshot
        if snap is not None:
            try:
                result.sells = await self._sell_to_base(instance, result)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.error(dumps({"event": "exit_sell_failed", "instance_id": instance.instance_id, "err": str(exc)}))
                result.detail = f"{detail}; sell failed: {exc}" if detail else f"sell failed: {exc}"

        result.completed_at_ms = now_ms()
        self._progress(
            instance, 5,
            f"exit complete (position closed: {result.position_closed}, "
            f"sold: {sum(1 for s in result.sells if s.status == 'ok')})",
        )
        self._log(
            "stage_complete",
            instance_id=instance.instance_id,
            stage=5,
            reason=reason,
            position_closed=result.position_closed,
            sells=len(result.sells),
        )
        return result

    async def _sell_to_base(self, instance: StrategyInstance, result: ExitResult) -> List[SwapRecord]:
        snap = instance.market_snapshot
        prep = instance.asset_prep_result
        address = self._wallet.get_wallet().address
        if prep is not None and prep.base_address:
            base = BaseCurrency(prep.base_symbol or "", prep.base_address)
        else:
            base, _ = await self.select_base_currency(address, instance.instance_id)
        result.base_symbol = base.symbol

        sells: List[SwapRecord] = []
        for token in (snap.token0, snap.token1):
            if token.address.lower() == base.address.lower():
                continue
            balance = await self._reader.get_balance(token.address, address)
            if balance <= self.config.dust_threshold:
                sells.append(SwapRecord("exit", token.symbol, base.symbol, status="skipped", error="balance below dust threshold"))
                continue
            amount = balance * self.config.exit_sell_ratio
            try:
                swapped = await self._collab.exchange.swap(
                    token.address,
                    base.address,
                    to_raw(amount, token.decimals),
                    instance.config.exchange_slippage_percent,
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.error(dumps({
                    "event": "exit_swap_failed",
                    "instance_id": instance.instance_id,
                    "token": token.symbol,
                    "amount": amount,
                    "err": str(exc),
                }))
                sells.append(SwapRecord("exit", token.symbol, base.symbol, from_amount=amount, status="failed", error=str(exc)))
                continue
            record = SwapRecord(
                "exit",
                token.symbol,
                base.symbol,
                from_amount=swapped.from_amount,
                to_amount=swapped.to_amount,
                tx_hash=swapped.tx_hash,
            )
            await self._swapped(instance, record)
            sells.append(record)
        return sells
