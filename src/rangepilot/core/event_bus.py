"""
Lifecycle event bus.

The engine and the stages publish; plugins subscribe. Publishing only
enqueues, so a slow or failing subscriber never holds up a pipeline
stage. One background task delivers events in publish order; within an
event, global subscribers run first, then the type's subscribers by
descending priority (ties in subscription order).
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union

from rangepilot.core.json_utils import dumps

log = logging.getLogger("rangepilot")


class EventType(Enum):
    STRATEGY_STARTED = "strategy.started"
    POSITION_CREATED = "position.created"
    SWAP_EXECUTED = "swap.executed"
    STRATEGY_ENDED = "strategy.ended"
    POSITION_CLOSED = "position.closed"
    INSTANCE_STATE_CHANGED = "instance.state_changed"


@dataclass
class Event:
    type: EventType
    data: Dict[str, Any]
    timestamp_ms: int = field(default_factory=lambda: int(time.time() * 1000))
    source: Optional[str] = None

    @property
    def instance_id(self) -> Optional[str]:
        return self.data.get("instance_id")

    def __str__(self) -> str:
        return f"Event({self.type.value}, instance={self.instance_id}, source={self.source})"


Handler = Union[Callable[[Event], Awaitable[None]], Callable[[Event], None]]

_seq = itertools.count()


@dataclass
class Subscription:
    handler: Handler
    priority: int = 0  # higher runs first
    name: Optional[str] = None
    seq: int = field(default_factory=lambda: next(_seq))

    @property
    def label(self) -> str:
        return self.name or getattr(self.handler, "__name__", "handler")


@dataclass
class BusStats:
    published: int = 0
    delivered: int = 0
    dropped: int = 0
    handler_errors: int = 0
    queue_high_water: int = 0


class EventBus:
    """
    Usage:
        bus = EventBus()
        bus.subscribe(EventType.POSITION_CREATED, on_position, priority=10)
        await bus.start()
        await bus.emit(EventType.POSITION_CREATED, source="engine", instance_id=iid)
        await bus.stop()
    """

    def __init__(
        self,
        history_size: int = 1000,
        queue_size: int = 0,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._log = log_event or self._default_log
        self._by_type: Dict[EventType, List[Subscription]] = {}
        self._global: List[Subscription] = []
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max(queue_size, 0))
        self._history: Deque[Event] = deque(maxlen=history_size if history_size > 0 else 0)
        self._stats = BusStats()
        self._task: Optional[asyncio.Task] = None

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.debug(dumps({"event": event, **kwargs}))

    # ========== Subscriptions ==========

    @staticmethod
    def _add(subs: List[Subscription], sub: Subscription) -> None:
        subs.append(sub)
        subs.sort(key=lambda s: (-s.priority, s.seq))

    def subscribe(
        self,
        event_type: EventType,
        handler: Handler,
        priority: int = 0,
        name: Optional[str] = None,
    ) -> Subscription:
        sub = Subscription(handler=handler, priority=priority, name=name)
        self._add(self._by_type.setdefault(event_type, []), sub)
        self._log("event_bus_subscribe", event_type=event_type.value, handler_name=sub.label, priority=priority)
        return sub

    def subscribe_all(self, handler: Handler, priority: int = 0, name: Optional[str] = None) -> Subscription:
        sub = Subscription(handler=handler, priority=priority, name=name)
        self._add(self._global, sub)
        return sub

    def unsubscribe(self, event_type: Optional[EventType], subscription: Subscription) -> bool:
        """Pass event_type None for a global subscription. False when not subscribed."""
        subs = self._global if event_type is None else self._by_type.get(event_type, [])
        try:
            subs.remove(subscription)
        except ValueError:
            return False
        return True

    def get_subscriber_count(self, event_type: EventType) -> int:
        return len(self._by_type.get(event_type, []))

    # ========== Publishing ==========

    def publish_nowait(self, event: Event) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._stats.dropped += 1
            log.warning(dumps({"event": "event_bus_queue_full", "event_type": event.type.value}))
            return False
        self._stats.published += 1
        self._stats.queue_high_water = max(self._stats.queue_high_water, self._queue.qsize())
        return True

    async def publish(self, event: Event) -> bool:
        return self.publish_nowait(event)

    async def emit(self, event_type: EventType, source: Optional[str] = None, **data: Any) -> bool:
        return self.publish_nowait(Event(type=event_type, data=data, source=source))

    # ========== Delivery ==========

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._deliver_loop(), name="event-bus")
        self._log("event_bus_started")

    async def stop(self) -> None:
        """Cancel the delivery task, then deliver what is still queued."""
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        await self.drain()
        self._log("event_bus_stopped", **asdict(self._stats))

    async def _deliver_loop(self) -> None:
        while True:
            event = await self._queue.get()
            await self._deliver(event)

    async def _deliver(self, event: Event) -> None:
        self._history.append(event)
        for sub in [*self._global, *self._by_type.get(event.type, [])]:
            try:
                result = sub.handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats.handler_errors += 1
                log.warning(dumps({
                    "event": "event_bus_handler_error",
                    "event_type": event.type.value,
                    "instance_id": event.instance_id,
                    "handler_name": sub.label,
                    "error": str(e),
                    "error_type": type(e).__name__,
                }))
        self._stats.delivered += 1

    async def drain(self, timeout: float = 5.0) -> int:
        """Deliver queued events inline until empty or `timeout` elapses."""
        delivered = 0
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._deliver(event)
            delivered += 1
        return delivered

    # ========== Queries ==========

    def get_history(self, event_type: Optional[EventType] = None, limit: int = 100) -> List[Event]:
        events = [e for e in self._history if event_type is None or e.type == event_type]
        return events[-limit:]

    def get_stats(self) -> Dict[str, Any]:
        return {
            **asdict(self._stats),
            "queue_size": self._queue.qsize(),
            "history_size": len(self._history),
            "subscriber_count": sum(len(s) for s in self._by_type.values()),
            "global_subscriber_count": len(self._global),
            "running": self.running,
        }
