"""
Position Lifecycle Engine: drives strategy instances through the pipeline.

Per instance:
    create -> start (stages 1-4 under the instance lock) -> MONITORING
    monitor timeout or user request -> exit (stage 5) -> EXITED

Guarantees:
- One pipeline per instance at a time (InstanceLockStore); instances never
  share pipeline state
- The instance map is persisted after every state-affecting step
- A previous run's monitor is stopped and awaited before a new one starts,
  and events from a replaced monitor are ignored
- Pipeline failures set ERROR with last_error; they are recorded, not raised
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union, TYPE_CHECKING

from rangepilot.core.errors import InstanceBusyError, InstanceNotFoundError, RangePilotError
from rangepilot.core.event_bus import EventType
from rangepilot.core.json_utils import dumps
from rangepilot.core.utils import new_instance_id, now_ms
from rangepilot.infra.keyed_locks import InstanceLockStore
from rangepilot.monitoring.price_monitor import MonitorConfig, MonitorEvent, PriceRangeMonitor
from rangepilot.strategy.config_rules import build_strategy_config, validate_strategy_config
from rangepilot.strategy.models import ExitReason, StrategyConfig, StrategyInstance, StrategyStatus
from rangepilot.strategy.state_machine import transition

if TYPE_CHECKING:
    from rangepilot.core.event_bus import EventBus
    from rangepilot.monitoring.metrics_rich import RichMetrics
    from rangepilot.monitoring.status import StatusBoard
    from rangepilot.state.instance_store import AtomicInstanceStore
    from rangepilot.strategy.pool_reader import PoolReader
    from rangepilot.strategy.stages import ExecutionStages

log = logging.getLogger("rangepilot")

S = StrategyStatus

# persisted in one of these with a live position: monitoring is re-attached on startup
_RESUMABLE = (S.RUNNING, S.MONITORING)


@dataclass
class EngineConfig:
    monitor_poll_interval_ms: int = 3000
    log_event_callback: Optional[Callable[..., None]] = None


class LifecycleEngine:
    """
    Owns the instance map, the per-instance monitors and locks.

    Usage:
        engine = LifecycleEngine(stages, store, pool_reader, bus=bus)
        await engine.initialize()
        iid = await engine.create_instance({"pool_address": pool, "amount": 100, ...})
        await engine.start_instance(iid)
        ...
        await engine.exit_instance(iid, ExitReason.USER_FORCED)
        await engine.shutdown()
    """

    def __init__(
        self,
        stages: "ExecutionStages",
        store: "AtomicInstanceStore",
        pool_reader: "PoolReader",
        bus: Optional["EventBus"] = None,
        locks: Optional[InstanceLockStore] = None,
        config: Optional[EngineConfig] = None,
        metrics: Optional["RichMetrics"] = None,
        status_board: Optional["StatusBoard"] = None,
    ) -> None:
        self._stages = stages
        self._store = store
        self._reader = pool_reader
        self._bus = bus
        self._locks = locks or InstanceLockStore()
        self.config = config or EngineConfig()
        self._metrics = metrics
        self._status_board = status_board
        self._log = self.config.log_event_callback or self._default_log

        self._instances: Dict[str, StrategyInstance] = {}
        self._monitors: Dict[str, PriceRangeMonitor] = {}
        self._initialized = False

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    # -------------------------------------------------------------------------
    # Startup and shutdown
    # -------------------------------------------------------------------------

    async def initialize(self) -> int:
        """
        Load the persisted instance map.

        Active instances without a position were interrupted mid-pipeline
        and move to ERROR. Those with a position keep their status until
        resume_active() re-attaches monitoring.
        """
        data = await self._store.load()
        for iid, raw in data.items():
            try:
                inst = StrategyInstance.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                log.error(dumps({"event": "instance_load_error", "instance_id": iid, "err": str(exc)}))
                continue
            if inst.status.is_active and not (inst.status in _RESUMABLE and inst.position_record is not None):
                previous = inst.status
                inst.status = S.ERROR
                inst.last_error = f"interrupted while {previous.value}"
                inst.ended_at_ms = now_ms()
                log.warning(dumps({"event": "instance_interrupted", "instance_id": iid, "status": previous.value}))
            self._instances[inst.instance_id] = inst
        self._initialized = True
        self._log("engine_initialized", instances=len(self._instances))
        await self._persist()
        return len(self._instances)

    async def resume_active(self) -> List[str]:
        """Re-attach monitoring for instances that were monitoring at shutdown."""
        resumed: List[str] = []
        for iid, inst in list(self._instances.items()):
            if inst.status not in _RESUMABLE or inst.position_record is None:
                continue
            async with await self._locks.get_lock(iid):
                try:
                    await self._attach_monitor(inst)
                except Exception as exc:
                    await self._fail(inst, exc)
                    continue
            resumed.append(iid)
        if resumed:
            self._log("instances_resumed", instance_ids=resumed)
        await self._persist()
        return resumed

    async def shutdown(self) -> None:
        """Stop every monitor and persist. Statuses are kept for resume_active()."""
        for iid in list(self._monitors):
            await self._teardown_monitor(iid)
        await self._persist()
        self._log("engine_shutdown", instances=len(self._instances))

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _get(self, instance_id: str) -> StrategyInstance:
        inst = self._instances.get(instance_id)
        if inst is None:
            raise InstanceNotFoundError(instance_id)
        return inst

    def get_instance(self, instance_id: str) -> StrategyInstance:
        return copy.deepcopy(self._get(instance_id))

    def list_instances(self) -> List[StrategyInstance]:
        return [copy.deepcopy(i) for i in self._instances.values()]

    def get_monitor_status(self, instance_id: str) -> Optional[Dict[str, Any]]:
        monitor = self._monitors.get(instance_id)
        return monitor.get_status() if monitor else None

    def is_busy(self, instance_id: str) -> bool:
        return self._locks.is_locked(instance_id)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def create_instance(self, config: Union[StrategyConfig, Mapping[str, Any]]) -> str:
        """
        Register a new instance in INITIALIZED.

        Raises:
            ConfigurationError: invalid configuration; nothing is created
        """
        if isinstance(config, StrategyConfig):
            cfg = copy.deepcopy(config)
            validate_strategy_config(cfg)
        else:
            cfg = build_strategy_config(config)
        created = now_ms()
        inst = StrategyInstance(instance_id=new_instance_id(created), config=cfg, created_at_ms=created)
        self._instances[inst.instance_id] = inst
        self._log("instance_created", instance_id=inst.instance_id, pool=cfg.pool_address, amount=cfg.amount)
        await self._persist()
        await self._board(inst)
        return inst.instance_id

    async def start_instance(self, instance_id: str) -> StrategyInstance:
        """
        Run stages 1-4. Restarts EXITED/COMPLETED/ERROR instances. A PAUSED
        instance that still holds an open position only re-attaches
        monitoring, so no second position is opened.

        Returns a copy of the instance after the run (MONITORING on success,
        ERROR with last_error on a stage failure).

        Raises:
            InstanceNotFoundError: unknown id
            InstanceBusyError: a pipeline or exit is already running for it
            InvalidTransitionError: current status cannot start
        """
        inst = self._get(instance_id)
        lock = await self._locks.get_lock(instance_id)
        if lock.locked():
            raise InstanceBusyError(f"instance {instance_id} is already running a pipeline")
        if self._has_open_position(inst):
            return await self._reattach(inst)
        async with lock:
            await self._run_pipeline(inst)
        return copy.deepcopy(inst)

    async def stop_instance(self, instance_id: str) -> StrategyInstance:
        """Stop monitoring and mark COMPLETED. The position is left open."""
        inst = self._get(instance_id)
        async with await self._locks.get_lock(instance_id):
            await self._set_status(inst, S.COMPLETED)
            await self._teardown_monitor(instance_id)
            inst.ended_at_ms = now_ms()
            await self._persist()
        return copy.deepcopy(inst)

    async def pause_instance(self, instance_id: str) -> StrategyInstance:
        """Stop monitoring, keep the position."""
        inst = self._get(instance_id)
        async with await self._locks.get_lock(instance_id):
            await self._set_status(inst, S.PAUSED)
            await self._teardown_monitor(instance_id)
            await self._persist()
        return copy.deepcopy(inst)

    async def resume_instance(self, instance_id: str) -> StrategyInstance:
        """Paused with a position: re-attach monitoring. Otherwise start."""
        inst = self._get(instance_id)
        if self._has_open_position(inst):
            return await self._reattach(inst)
        return await self.start_instance(instance_id)

    @staticmethod
    def _has_open_position(inst: StrategyInstance) -> bool:
        return inst.status is S.PAUSED and inst.position_record is not None and inst.position_record.active

    async def _reattach(self, inst: StrategyInstance) -> StrategyInstance:
        async with await self._locks.get_lock(inst.instance_id):
            try:
                await self._attach_monitor(inst)
            except Exception as exc:
                await self._fail(inst, exc)
            await self._persist()
        return copy.deepcopy(inst)

    async def reset_instance(self, instance_id: str) -> StrategyInstance:
        """
        EXITED/COMPLETED/ERROR -> INITIALIZED with run data cleared.

        Keeps identity, creation time and the percent range; bounds derived
        from a percent range are dropped so the next start re-derives them.
        """
        inst = self._get(instance_id)
        async with await self._locks.get_lock(instance_id):
            await self._set_status(inst, S.INITIALIZED)
            await self._teardown_monitor(instance_id)
            inst.clear_run_data()
            if inst.config.range_percent is not None:
                inst.config.tick_lower = None
                inst.config.tick_upper = None
            inst.config.restart_count = 0
            await self._persist()
        return copy.deepcopy(inst)

    async def delete_instance(self, instance_id: str) -> None:
        self._get(instance_id)
        try:
            await self.stop_instance(instance_id)
        except RangePilotError as exc:
            log.info(dumps({"event": "delete_stop_skipped", "instance_id": instance_id, "err": str(exc)}))
        await self._teardown_monitor(instance_id)
        self._instances.pop(instance_id, None)
        await self._locks.discard(instance_id)
        if self._status_board is not None:
            await self._status_board.remove(f"instance:{instance_id}")
        self._log("instance_deleted", instance_id=instance_id)
        await self._persist()

    async def exit_instance(
        self,
        instance_id: str,
        reason: ExitReason = ExitReason.USER_FORCED,
        detail: Optional[str] = None,
    ) -> StrategyInstance:
        """
        The one exit procedure, for monitor timeouts and user requests alike.

        Closing the position and selling back to base are best-effort; the
        instance always ends EXITED with the outcome in exit_result.
        """
        return await self._exit(self._get(instance_id), reason, detail)

    async def _exit(
        self,
        inst: StrategyInstance,
        reason: ExitReason,
        detail: Optional[str],
        monitor: Optional[PriceRangeMonitor] = None,
    ) -> StrategyInstance:
        instance_id = inst.instance_id
        async with await self._locks.get_lock(instance_id):
            if monitor is not None and not self._is_current(monitor):
                # stopped, paused or restarted while the timeout waited for the lock
                log.info(dumps({"event": "stale_timeout_ignored", "instance_id": instance_id}))
                return copy.deepcopy(inst)
            await self._set_status(inst, S.EXITING)
            await self._teardown_monitor(instance_id)
            inst.exit_reason = reason.value
            await self._persist()

            started = time.monotonic()
            try:
                result = await self._stages.exit_position(inst, reason.value, detail)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._count_stage_failure(5)
                await self._fail(inst, exc)
                return copy.deepcopy(inst)
            self._observe_stage(5, started)

            inst.exit_result = result
            inst.exited_at_ms = inst.ended_at_ms = now_ms()
            await self._set_status(inst, S.EXITED)
            await self._persist()
            if self._metrics:
                self._metrics.exits_total.labels(reason=reason.value).inc()
            await self._publish(
                EventType.STRATEGY_ENDED,
                instance_id=instance_id,
                reason=reason.value,
                detail=detail,
                exit_result=asdict(result),
            )
        return copy.deepcopy(inst)

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    async def _run_pipeline(self, inst: StrategyInstance) -> None:
        iid = inst.instance_id
        restart = inst.status.is_terminal
        await self._set_status(inst, S.PREPARING)
        # a previous run's monitor must be gone before stage 4 creates a new one
        await self._teardown_monitor(iid)

        if restart:
            inst.clear_run_data()
            inst.config.restart_count += 1
            if inst.config.range_percent is not None:
                # never reuse bounds derived from a stale tick
                inst.config.tick_lower = None
                inst.config.tick_upper = None
            self._log("instance_restarting", instance_id=iid, restart_count=inst.config.restart_count)
        inst.last_error = None
        inst.started_at_ms = now_ms()
        await self._persist()

        try:
            await self._stage(inst, 1, self._stages.market_snapshot)
            await self._stage(inst, 2, self._stages.prepare_assets)
            await self._stage(inst, 3, self._stages.create_position)
            await self._set_status(inst, S.RUNNING)
            await self._persist()
            await self._stage(inst, 4, self._attach_monitor)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._fail(inst, exc)
            return
        await self._persist()
        self._log("pipeline_complete", instance_id=iid, position_id=inst.position_record.position_id)

    async def _stage(self, inst: StrategyInstance, number: int, fn: Callable[[StrategyInstance], Awaitable[Any]]) -> None:
        started = time.monotonic()
        self._log("stage_start", instance_id=inst.instance_id, stage=number)
        try:
            await fn(inst)
        except asyncio.CancelledError:
            raise
        except Exception:
            self._count_stage_failure(number)
            raise
        self._observe_stage(number, started)
        await self._persist()
        await self._board(inst)

    def _observe_stage(self, number: int, started: float) -> None:
        if self._metrics:
            self._metrics.stage_duration_ms.labels(stage=str(number)).observe((time.monotonic() - started) * 1000)

    def _count_stage_failure(self, number: int) -> None:
        if self._metrics:
            self._metrics.stage_failures.labels(stage=str(number)).inc()

    async def _fail(self, inst: StrategyInstance, exc: BaseException) -> None:
        inst.last_error = str(exc) or type(exc).__name__
        inst.ended_at_ms = now_ms()
        log.error(dumps({
            "event": "instance_failed",
            "instance_id": inst.instance_id,
            "stage": inst.current_stage,
            "status": inst.status.value,
            "err": inst.last_error,
        }))
        await self._teardown_monitor(inst.instance_id)
        await self._set_status(inst, S.ERROR)
        await self._persist()

    # -------------------------------------------------------------------------
    # Monitoring (stage 4)
    # -------------------------------------------------------------------------

    async def _attach_monitor(self, inst: StrategyInstance) -> None:
        iid = inst.instance_id
        pos = inst.position_record
        if pos is None:
            raise RangePilotError(f"instance {iid} has no position to monitor")
        await self._teardown_monitor(iid)

        pool = inst.config.pool_address
        reader = self._reader

        async def tick_source() -> int:
            return await reader.get_current_tick(pool)

        monitor = PriceRangeMonitor(
            iid,
            pool,
            pos.tick_lower,
            pos.tick_upper,
            tick_source,
            MonitorConfig(
                poll_interval_ms=self.config.monitor_poll_interval_ms,
                timeout_ms=inst.config.auto_exit_timeout_ms,
                timeout_enabled=inst.config.auto_exit_enabled,
            ),
            metrics=self._metrics,
        )
        monitor.on(MonitorEvent.PRICE_CHANGED, lambda data: self._on_tick(monitor, data))
        monitor.on(MonitorEvent.EXITED_RANGE, lambda data: self._on_range_edge(monitor, data, False))
        monitor.on(MonitorEvent.ENTERED_RANGE, lambda data: self._on_range_edge(monitor, data, True))
        monitor.on(MonitorEvent.TIMEOUT_TRIGGERED, lambda data: self._on_timeout(monitor, data))
        monitor.on(MonitorEvent.MONITOR_ERROR, lambda data: self._on_monitor_error(monitor, data))

        self._monitors[iid] = monitor
        await monitor.start_monitoring()
        if inst.status is not S.MONITORING:
            await self._set_status(inst, S.MONITORING)
        inst.monitoring_started_at_ms = now_ms()
        inst.current_stage = 4
        inst.stage_message = f"monitoring [{pos.tick_lower}, {pos.tick_upper}]"

    async def _teardown_monitor(self, instance_id: str) -> None:
        monitor = self._monitors.pop(instance_id, None)
        if monitor is None:
            return
        monitor.clear_handlers()
        await monitor.stop_monitoring()

    def _is_current(self, monitor: PriceRangeMonitor) -> bool:
        return self._monitors.get(monitor.instance_id) is monitor

    def _on_tick(self, monitor: PriceRangeMonitor, data: Dict[str, Any]) -> None:
        if not self._is_current(monitor):
            return
        inst = self._instances.get(monitor.instance_id)
        if inst is not None and inst.market_snapshot is not None:
            inst.market_snapshot.current_tick = data["current_tick"]
            inst.market_snapshot.fetched_at_ms = data["timestamp_ms"]

    async def _on_range_edge(self, monitor: PriceRangeMonitor, data: Dict[str, Any], in_range: bool) -> None:
        if not self._is_current(monitor):
            return
        inst = self._instances.get(monitor.instance_id)
        if inst is None:
            return
        if inst.market_snapshot is not None:
            inst.market_snapshot.current_tick = data["current_tick"]
            inst.market_snapshot.in_range = in_range
        self._log(
            "range_entered" if in_range else "range_exited",
            instance_id=inst.instance_id,
            current_tick=data["current_tick"],
            tick_lower=data["tick_lower"],
            tick_upper=data["tick_upper"],
        )
        await self._persist()
        await self._board(inst)

    async def _on_timeout(self, monitor: PriceRangeMonitor, data: Dict[str, Any]) -> None:
        if not self._is_current(monitor):
            log.info(dumps({"event": "stale_timeout_ignored", "instance_id": monitor.instance_id}))
            return
        detail = (
            f"out of range for {data['timeout_ms']}ms: tick {data['current_tick']} "
            f"outside [{data['tick_lower']}, {data['tick_upper']}]"
        )
        inst = self._instances.get(monitor.instance_id)
        if inst is not None:
            await self._exit(inst, ExitReason.TIMEOUT, detail, monitor=monitor)

    def _on_monitor_error(self, monitor: PriceRangeMonitor, data: Dict[str, Any]) -> None:
        if self._is_current(monitor):
            log.warning(dumps({"event": "monitor_error", "instance_id": monitor.instance_id, "err": data.get("error")}))

    # -------------------------------------------------------------------------
    # Status, persistence, publication
    # -------------------------------------------------------------------------

    async def _set_status(self, inst: StrategyInstance, target: StrategyStatus) -> None:
        previous = transition(inst, target)
        self._log("instance_state_changed", instance_id=inst.instance_id, **{"from": previous.value, "to": target.value})
        await self._publish(
            EventType.INSTANCE_STATE_CHANGED,
            instance_id=inst.instance_id,
            previous_status=previous.value,
            status=target.value,
        )
        self._refresh_gauge()
        await self._board(inst)

    async def _persist(self) -> None:
        snapshot = {iid: inst.to_dict() for iid, inst in self._instances.items()}
        try:
            await self._store.save(snapshot)
        except Exception as exc:
            log.error(dumps({"event": "state_save_error", "err": str(exc)}))
            if self._metrics:
                self._metrics.persistence_errors.labels(op="save").inc()

    async def _publish(self, event_type: EventType, **data: Any) -> None:
        if self._bus is not None:
            await self._bus.emit(event_type, source="engine", timestamp_ms=now_ms(), **data)

    def _refresh_gauge(self) -> None:
        if not self._metrics:
            return
        counts = {status: 0 for status in StrategyStatus}
        for inst in self._instances.values():
            counts[inst.status] += 1
        for status, count in counts.items():
            self._metrics.instances_by_status.labels(status=status.value).set(count)

    async def _board(self, inst: StrategyInstance) -> None:
        if self._status_board is None:
            return
        pos = inst.position_record
        await self._status_board.update(f"instance:{inst.instance_id}", {
            "instance_id": inst.instance_id,
            "name": inst.config.name,
            "status": inst.status.value,
            "stage": inst.current_stage,
            "stage_message": inst.stage_message,
            "current_tick": inst.market_snapshot.current_tick if inst.market_snapshot else None,
            "in_range": inst.market_snapshot.in_range if inst.market_snapshot else None,
            "position_id": pos.position_id if pos else None,
            "last_error": inst.last_error,
            "restart_count": inst.config.restart_count,
        })
