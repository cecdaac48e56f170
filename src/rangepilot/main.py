"""
Entry point wiring all components.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from rangepilot.app import ServiceContainer
from rangepilot.config.config import Settings
from rangepilot.config.config_validator import validate_and_log
from rangepilot.config.strategy_file import load_strategy_file
from rangepilot.core.errors import RangePilotError
from rangepilot.core.json_utils import dumps
from rangepilot.infra.logging_cfg import build_logger


async def main() -> None:
    cfg = Settings.load()
    log = build_logger("rangepilot", level=getattr(logging, cfg.log_level, logging.INFO), file_path=cfg.log_file)

    if not validate_and_log(cfg, log):
        log.error("Configuration validation failed, exiting")
        sys.exit(1)

    container = ServiceContainer(cfg)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    # Windows doesn't support add_signal_handler, so rely on KeyboardInterrupt handling
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    try:
        await container.start()
        # persisted instances were restored by start(); only create new names
        known = {inst.config.name for inst in container.engine.list_instances() if inst.config.name}
        for raw in load_strategy_file(cfg.strategies_file):
            if raw.get("name") in known:
                log.info(dumps({"event": "strategy_already_loaded", "name": raw.get("name")}))
                continue
            try:
                iid = await container.engine.create_instance(raw)
            except RangePilotError as exc:
                log.error(dumps({"event": "strategy_create_error", "name": raw.get("name"), "err": str(exc)}))
                continue
            if raw.get("autostart", True):
                inst = await container.engine.start_instance(iid)
                log.info(dumps({"event": "strategy_autostarted", "instance_id": iid, "status": inst.status.value}))
        log.info(dumps({"event": "startup", "instances": len(container.engine.list_instances())}))
        await stop_event.wait()
        log.info("Shutdown signal received, cleaning up...")
    finally:
        await container.stop()
        log.info("Shutdown complete")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nStopped by user")
    sys.exit(0)


if __name__ == "__main__":
    run()
