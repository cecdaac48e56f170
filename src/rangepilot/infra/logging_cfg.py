"""
Logging setup for rangepilot.

Every component logs through the "rangepilot" logger with a JSON object
as the message (`log.info(dumps({"event": ...}))`). Operators read those
lines on a Rich console. The log file gets one flattened JSON document
per record, written from a background listener so a slow disk never
stalls the event loop.
"""

from __future__ import annotations

import atexit
import logging
import logging.handlers
import os
import queue
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

import orjson
from rich.logging import RichHandler

from rangepilot.core.json_utils import dumps

LOG_FILE_MAX_BYTES = 50 * 1024 * 1024
LOG_FILE_BACKUPS = 5

_listeners: Dict[str, logging.handlers.QueueListener] = {}


def _event_payload(message: str) -> Optional[Dict[str, Any]]:
    if not message.startswith("{"):
        return None
    try:
        data = orjson.loads(message)
    except orjson.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


class JsonFormatter(logging.Formatter):
    """
    One JSON document per record.

    Structured messages are merged into the top level so the file can be
    filtered on `event`, `instance_id` and friends; anything else is kept
    under `msg`.
    """

    def format(self, record: logging.LogRecord) -> str:
        ts = record.created
        doc: Dict[str, Any] = {
            "ts": ts,
            "ts_iso": datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
        }
        message = record.getMessage()
        fields = _event_payload(message)
        if fields is None:
            doc["msg"] = message
        else:
            for key, value in fields.items():
                doc.setdefault(key, value)
        if record.exc_info:
            doc["exc_info"] = self.formatException(record.exc_info)
        return dumps(doc)


class ThrottledFilter(logging.Filter):
    """
    Suppress repeats of noisy events.

    The first record per (event, key fields) passes; identical keys are
    dropped until `cooldown_sec` has elapsed. Non-structured records and
    events outside `events` always pass.
    """

    NOISY_EVENTS = frozenset({"rpc_retry", "monitor_poll_error", "health_check_failed"})

    def __init__(
        self,
        cooldown_sec: float = 30.0,
        events: Optional[Iterable[str]] = None,
        key_fields: Tuple[str, ...] = ("instance_id", "endpoint"),
    ):
        super().__init__()
        self.cooldown_sec = cooldown_sec
        self.events = frozenset(events) if events is not None else self.NOISY_EVENTS
        self.key_fields = key_fields
        self._last: Dict[Tuple[Any, ...], float] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        fields = _event_payload(record.getMessage())
        if fields is None or fields.get("event") not in self.events:
            return True
        key = (fields["event"],) + tuple(str(fields.get(f, "")) for f in self.key_fields)
        now = time.monotonic()
        if now - self._last.get(key, float("-inf")) < self.cooldown_sec:
            return False
        self._last[key] = now
        return True


def _file_handler(file_path: str, level: int) -> logging.Handler:
    parent = os.path.dirname(file_path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        file_path, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS, encoding="utf-8"
    )
    handler.setFormatter(JsonFormatter())
    handler.setLevel(level)
    return handler


def _stop_listener(name: str) -> None:
    listener = _listeners.pop(name, None)
    if listener is not None:
        listener.stop()
        for handler in listener.handlers:
            handler.close()


def build_logger(
    name: str = "rangepilot",
    level: int = logging.INFO,
    file_path: Optional[str] = "rangepilot.log",
    async_file: bool = True,
    throttle_warnings: bool = True,
) -> logging.Logger:
    """
    Configure and return the application logger.

    Calling it again only adjusts the level. With `async_file` the rotating
    file handler sits behind a QueueHandler/QueueListener pair that is
    stopped at interpreter exit.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    console = RichHandler(show_path=False, markup=False, rich_tracebacks=False)
    console.setFormatter(logging.Formatter("%(message)s"))
    console.setLevel(level)
    if throttle_warnings:
        console.addFilter(ThrottledFilter())
    logger.addHandler(console)

    if file_path:
        target = _file_handler(file_path, level)
        if async_file:
            records: queue.Queue = queue.Queue()
            front = logging.handlers.QueueHandler(records)
            front.setLevel(level)
            listener = logging.handlers.QueueListener(records, target, respect_handler_level=True)
            listener.start()
            _listeners[name] = listener
            atexit.register(_stop_listener, name)
            logger.addHandler(front)
        else:
            logger.addHandler(target)

    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **fields) -> None:
    """
    Usage:
        log_event(log, "stage_complete", instance_id=iid, stage=2)
    """
    logger.log(level, dumps({"event": event, **fields}))
