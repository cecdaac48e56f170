"""
Price Range Monitor: watches a pool's tick against a position's bounds.

Emits edge events only:
- EXITED_RANGE once per in -> out crossing (starts the single-shot timeout timer)
- ENTERED_RANGE once per out -> in crossing (cancels the timer)
- TIMEOUT_TRIGGERED once, after timeout_ms continuously out of range; the
  monitor then stops itself and the engine decides what happens next
- PRICE_CHANGED whenever the observed tick differs from the previous one
- MONITOR_ERROR when a poll fails (polling continues)

Handlers are held in explicit per-event lists and run as their own tasks, so
a slow or failing handler never delays the poll loop.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, TYPE_CHECKING

from rangepilot.core.json_utils import dumps
from rangepilot.core.utils import now_ms

if TYPE_CHECKING:
    from rangepilot.monitoring.metrics_rich import RichMetrics

log = logging.getLogger("rangepilot")

TickSource = Callable[[], Awaitable[int]]
MonitorHandler = Callable[[Dict[str, Any]], Any]


class MonitorEvent(Enum):
    ENTERED_RANGE = "entered_range"
    EXITED_RANGE = "exited_range"
    TIMEOUT_TRIGGERED = "timeout_triggered"
    PRICE_CHANGED = "price_changed"
    MONITOR_ERROR = "monitor_error"


@dataclass
class MonitorConfig:
    poll_interval_ms: int = 3000
    timeout_ms: int = 10000
    timeout_enabled: bool = True


class PriceRangeMonitor:
    """
    Polls the current tick and tracks in-range/out-of-range transitions.

    Usage:
        monitor = PriceRangeMonitor(iid, pool, lower, upper, tick_source, MonitorConfig())
        monitor.on(MonitorEvent.TIMEOUT_TRIGGERED, handle_timeout)
        await monitor.start_monitoring()
        ...
        await monitor.stop_monitoring()
    """

    def __init__(
        self,
        instance_id: str,
        pool_address: str,
        tick_lower: int,
        tick_upper: int,
        tick_source: TickSource,
        config: Optional[MonitorConfig] = None,
        metrics: Optional["RichMetrics"] = None,
    ) -> None:
        self.instance_id = instance_id
        self.pool_address = pool_address
        self.tick_lower = tick_lower
        self.tick_upper = tick_upper
        self.config = config or MonitorConfig()
        self._tick_source = tick_source
        self._metrics = metrics

        self._handlers: Dict[MonitorEvent, List[MonitorHandler]] = {e: [] for e in MonitorEvent}
        self._handler_tasks: Set[asyncio.Task] = set()

        # starts "in range": a first out-of-range poll is an exit edge
        self._in_range = True
        self._last_tick: Optional[int] = None
        self._out_of_range_since_ms: Optional[int] = None
        self._timed_out = False

        self._running = False
        self._poll_task: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._polls = 0

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def on(self, event: MonitorEvent, handler: MonitorHandler) -> MonitorHandler:
        self._handlers[event].append(handler)
        return handler

    def off(self, event: MonitorEvent, handler: MonitorHandler) -> bool:
        handlers = self._handlers[event]
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def clear_handlers(self) -> None:
        for handlers in self._handlers.values():
            handlers.clear()

    def _emit(self, event: MonitorEvent, **data: Any) -> None:
        payload = {
            "event": event.value,
            "instance_id": self.instance_id,
            "pool_address": self.pool_address,
            "tick_lower": self.tick_lower,
            "tick_upper": self.tick_upper,
            "timestamp_ms": now_ms(),
            **data,
        }
        for handler in list(self._handlers[event]):
            task = asyncio.create_task(self._invoke(event, handler, payload))
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)

    async def _invoke(self, event: MonitorEvent, handler: MonitorHandler, payload: Dict[str, Any]) -> None:
        try:
            result = handler(payload)
            if asyncio.iscoroutine(result):
                await result
        except Exception as exc:
            log.error(dumps({
                "event": "monitor_handler_error",
                "instance_id": self.instance_id,
                "monitor_event": event.value,
                "err": str(exc),
            }))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def in_range(self) -> bool:
        return self._in_range

    @property
    def timed_out(self) -> bool:
        return self._timed_out

    async def start_monitoring(self) -> None:
        if self._running:
            return
        self._running = True
        self._timed_out = False
        self._poll_task = asyncio.create_task(self._poll_loop(), name=f"monitor-{self.instance_id}")
        log.info(dumps({
            "event": "monitor_started",
            "instance_id": self.instance_id,
            "tick_lower": self.tick_lower,
            "tick_upper": self.tick_upper,
            "timeout_ms": self.config.timeout_ms,
        }))

    async def stop_monitoring(self) -> None:
        """Cancel the poll loop and any pending timer. Safe to call repeatedly."""
        was_running = self._running
        self._running = False
        current = asyncio.current_task()
        tasks = [t for t in (self._poll_task, self._timer_task) if t is not None and t is not current and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._poll_task = None
        self._timer_task = None
        if was_running:
            log.info(dumps({"event": "monitor_stopped", "instance_id": self.instance_id, "polls": self._polls}))

    async def wait_handlers(self) -> None:
        """Wait for dispatched handler tasks (used at shutdown and in tests)."""
        if self._handler_tasks:
            await asyncio.gather(*list(self._handler_tasks), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Polling and transitions
    # -------------------------------------------------------------------------

    async def _poll_loop(self) -> None:
        interval = self.config.poll_interval_ms / 1000
        while self._running:
            try:
                tick = await self._tick_source()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.warning(dumps({"event": "monitor_poll_error", "instance_id": self.instance_id, "err": str(exc)}))
                self._emit(MonitorEvent.MONITOR_ERROR, error=str(exc))
            else:
                self._polls += 1
                self.observe_tick(tick)
            if not self._running:
                break
            await asyncio.sleep(interval)

    def observe_tick(self, tick: int) -> None:
        """Apply one tick sample. Fires events on edges only."""
        if self._timed_out:
            return

        previous = self._last_tick
        self._last_tick = tick
        if previous is not None and previous != tick:
            self._emit(MonitorEvent.PRICE_CHANGED, current_tick=tick, previous_tick=previous)

        now_in_range = self.tick_lower <= tick <= self.tick_upper
        if now_in_range and not self._in_range:
            self._in_range = True
            self._out_of_range_since_ms = None
            self._cancel_timer()
            self._count("entered")
            self._emit(MonitorEvent.ENTERED_RANGE, current_tick=tick)
        elif not now_in_range and self._in_range:
            self._in_range = False
            self._out_of_range_since_ms = now_ms()
            self._start_timer()
            self._count("exited")
            self._emit(MonitorEvent.EXITED_RANGE, current_tick=tick)

    def _start_timer(self) -> None:
        self._cancel_timer()
        if not self.config.timeout_enabled:
            return
        self._timer_task = asyncio.create_task(self._timeout_after(self.config.timeout_ms / 1000))

    def _cancel_timer(self) -> None:
        task = self._timer_task
        self._timer_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _timeout_after(self, delay_sec: float) -> None:
        await asyncio.sleep(delay_sec)
        if self._in_range or self._timed_out:
            return
        self._timed_out = True
        self._running = False
        if self._metrics:
            self._metrics.monitor_timeouts.inc()
        log.warning(dumps({
            "event": "monitor_timeout",
            "instance_id": self.instance_id,
            "current_tick": self._last_tick,
            "timeout_ms": self.config.timeout_ms,
        }))
        self._emit(
            MonitorEvent.TIMEOUT_TRIGGERED,
            current_tick=self._last_tick,
            timeout_ms=self.config.timeout_ms,
            out_of_range_since_ms=self._out_of_range_since_ms,
        )
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()

    def _count(self, edge: str) -> None:
        if self._metrics:
            self._metrics.monitor_range_events.labels(edge=edge).inc()

    def get_status(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "pool_address": self.pool_address,
            "tick_lower": self.tick_lower,
            "tick_upper": self.tick_upper,
            "running": self._running,
            "in_range": self._in_range,
            "last_tick": self._last_tick,
            "out_of_range_since_ms": self._out_of_range_since_ms,
            "timed_out": self._timed_out,
            "polls": self._polls,
        }
