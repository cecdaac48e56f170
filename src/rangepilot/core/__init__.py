"""
Core utilities package.

This package contains the error taxonomy, the event bus, JSON helpers and
common utilities.
"""

from rangepilot.core.errors import ErrorKind, RangePilotError, classify_error
from rangepilot.core.event_bus import EventBus, EventType, Event, Subscription
from rangepilot.core.utils import now_ms, new_instance_id

__all__ = [
    "ErrorKind",
    "RangePilotError",
    "classify_error",
    "EventBus",
    "EventType",
    "Event",
    "Subscription",
    "now_ms",
    "new_instance_id",
]
