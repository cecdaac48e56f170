"""
Plugin registry on top of the event bus.

Plugins are explicitly constructed and registered; a started plugin is
subscribed to the bus for the event types it declares, a stopped one is
unsubscribed. Plugin handlers run on the bus task and never block the
engine.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from rangepilot.core.event_bus import Event, EventBus, EventType, Subscription
from rangepilot.core.json_utils import dumps

log = logging.getLogger("rangepilot")


class Plugin(Protocol):
    name: str
    version: str
    event_types: Sequence[EventType]

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def handle_event(self, event: Event) -> Any: ...


@dataclass
class _Registration:
    plugin: Plugin
    started: bool = False
    subscriptions: List[Tuple[EventType, Subscription]] = field(default_factory=list)
    events_handled: int = 0
    errors: int = 0


class PluginManager:
    """
    Usage:
        manager = PluginManager(bus)
        manager.register(ProfitLossPlugin())
        manager.start_all()
        ...
        manager.stop_all()
    """

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self._plugins: Dict[str, _Registration] = {}

    def register(self, plugin: Plugin) -> None:
        """Register a plugin. A plugin with the same name is stopped and replaced."""
        if plugin.name in self._plugins:
            log.warning(dumps({"event": "plugin_replaced", "plugin": plugin.name}))
            self.unregister(plugin.name)
        self._plugins[plugin.name] = _Registration(plugin=plugin)
        log.info(dumps({"event": "plugin_registered", "plugin": plugin.name, "version": plugin.version}))

    def unregister(self, name: str) -> bool:
        if name not in self._plugins:
            return False
        self.stop_plugin(name)
        del self._plugins[name]
        return True

    def get_plugin(self, name: str) -> Optional[Plugin]:
        reg = self._plugins.get(name)
        return reg.plugin if reg else None

    def start_plugin(self, name: str) -> bool:
        reg = self._plugins.get(name)
        if reg is None:
            return False
        if reg.started:
            return True
        reg.plugin.start()
        for event_type in reg.plugin.event_types:
            sub = self._bus.subscribe(event_type, self._dispatcher(reg), name=f"plugin:{name}")
            reg.subscriptions.append((event_type, sub))
        reg.started = True
        log.info(dumps({"event": "plugin_started", "plugin": name}))
        return True

    def stop_plugin(self, name: str) -> bool:
        reg = self._plugins.get(name)
        if reg is None or not reg.started:
            return False
        for event_type, sub in reg.subscriptions:
            self._bus.unsubscribe(event_type, sub)
        reg.subscriptions.clear()
        reg.plugin.stop()
        reg.started = False
        log.info(dumps({"event": "plugin_stopped", "plugin": name}))
        return True

    def start_all(self) -> None:
        for name in list(self._plugins):
            self.start_plugin(name)

    def stop_all(self) -> None:
        for name in list(self._plugins):
            self.stop_plugin(name)

    def _dispatcher(self, reg: _Registration):
        async def dispatch(event: Event) -> None:
            try:
                result = reg.plugin.handle_event(event)
                if asyncio.iscoroutine(result):
                    await result
                reg.events_handled += 1
            except Exception as exc:
                reg.errors += 1
                log.error(dumps({
                    "event": "plugin_handler_error",
                    "plugin": reg.plugin.name,
                    "event_type": event.type.value,
                    "err": str(exc),
                }))
        return dispatch

    def get_plugin_status(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {
                "registered": True,
                "started": reg.started,
                "version": reg.plugin.version,
                "events_handled": reg.events_handled,
                "errors": reg.errors,
            }
            for name, reg in self._plugins.items()
        }
