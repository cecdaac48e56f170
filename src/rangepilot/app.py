"""
Service wiring with explicit start/stop ordering.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
from typing import Any, Callable, List, Optional

from rangepilot.config.config import Settings
from rangepilot.core.errors import ConfigurationError
from rangepilot.core.event_bus import EventBus
from rangepilot.core.json_utils import dumps
from rangepilot.execution.nonce_reconciler import NonceReconciler
from rangepilot.execution.tx_submitter import SubmitterConfig, TransactionSubmitter
from rangepilot.infra.failover import FailoverConfig, FailoverCoordinator
from rangepilot.infra.wallet import KeyWallet
from rangepilot.monitoring.health import HealthChecker, start_metrics_server
from rangepilot.monitoring.metrics_rich import RichMetrics
from rangepilot.monitoring.status import StatusBoard
from rangepilot.plugins.plugin_manager import PluginManager
from rangepilot.plugins.profit_loss import ProfitLossPlugin
from rangepilot.state.instance_store import AtomicInstanceStore, InstanceStore
from rangepilot.strategy.collaborators import Collaborators
from rangepilot.strategy.engine import EngineConfig, LifecycleEngine
from rangepilot.strategy.models import RetryPolicy
from rangepilot.strategy.pool_reader import PoolReader
from rangepilot.strategy.stages import ExecutionStages, StageConfig

log = logging.getLogger("rangepilot")

CollaboratorFactory = Callable[["ServiceContainer"], Collaborators]


def load_collaborator_factory(path: str) -> CollaboratorFactory:
    """Resolve `package.module:factory`."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(f"LP_COLLABORATORS must be module:factory, got {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"cannot import collaborator module {module_name!r}: {exc}") from exc
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigurationError(f"{path!r} is not a callable")
    return factory


class ServiceContainer:
    """
    Builds every long-lived component from Settings.

    Start order: coordinator, bus, plugins, engine, metrics server.
    stop() runs in reverse.

    Usage:
        container = ServiceContainer(cfg)
        await container.start()
        ...
        await container.stop()
    """

    def __init__(
        self,
        cfg: Settings,
        collaborator_factory: Optional[CollaboratorFactory] = None,
        coordinator: Optional[FailoverCoordinator] = None,
    ) -> None:
        self.cfg = cfg
        self.metrics = RichMetrics()
        self.health = HealthChecker()
        self.status_board = StatusBoard()

        self.coordinator = coordinator or FailoverCoordinator(
            cfg.endpoints(),
            FailoverConfig(
                chain_id=cfg.chain_id,
                health_check_interval_sec=cfg.health_check_interval_sec,
                probe_timeout_sec=cfg.health_probe_timeout_sec,
            ),
            metrics=self.metrics,
        )
        self.wallet = KeyWallet(cfg.private_key)
        self.submitter = TransactionSubmitter(
            self.coordinator,
            self.wallet,
            NonceReconciler(self.coordinator, metrics=self.metrics),
            SubmitterConfig(chain_id=cfg.chain_id),
            metrics=self.metrics,
        )
        self.pool_reader = PoolReader(self.coordinator)
        self.bus = EventBus()
        self.plugins = PluginManager(self.bus)
        self.plugins.register(ProfitLossPlugin())

        self.store = AtomicInstanceStore(
            InstanceStore(cfg.data_dir, backup_keep=cfg.backup_keep, metrics=self.metrics)
        )

        if collaborator_factory is None:
            if not cfg.collaborators:
                raise ConfigurationError("LP_COLLABORATORS is not set")
            collaborator_factory = load_collaborator_factory(cfg.collaborators)
        self.collaborators = collaborator_factory(self)

        self.stages = ExecutionStages(
            self.pool_reader,
            self.wallet,
            self.collaborators,
            retry_policy=RetryPolicy(
                initial_delay_ms=cfg.retry_initial_ms,
                max_attempts=cfg.retry_max_attempts,
                backoff_multiplier=cfg.retry_multiplier,
                max_delay_ms=cfg.retry_max_delay_ms,
            ),
            bus=self.bus,
            config=StageConfig(
                base_currencies=cfg.base_currencies,
                min_base_balance=cfg.min_base_balance,
                dust_threshold=cfg.dust_threshold,
                exit_sell_ratio=cfg.exit_sell_ratio,
            ),
            metrics=self.metrics,
        )
        self.engine = LifecycleEngine(
            self.stages,
            self.store,
            self.pool_reader,
            bus=self.bus,
            config=EngineConfig(monitor_poll_interval_ms=cfg.monitor_poll_ms),
            metrics=self.metrics,
            status_board=self.status_board,
        )
        self._server: Optional[asyncio.AbstractServer] = None
        self._started: List[str] = []

    async def start(self) -> None:
        self.health.set_component_health("config", True, "Configuration validated")

        await self.coordinator.initialize()
        await self.coordinator.start()
        self._started.append("coordinator")
        self.health.set_component_health("rpc", True, self.coordinator.current_endpoint.name)

        await self.bus.start()
        self._started.append("bus")
        self.plugins.start_all()
        self._started.append("plugins")

        loaded = await self.engine.initialize()
        resumed = await self.engine.resume_active()
        self._started.append("engine")
        self.health.set_component_health("engine", True, f"{loaded} instances, {len(resumed)} resumed")

        if self.cfg.metrics_port:
            self._server = await start_metrics_server(
                self.metrics,
                self.cfg.metrics_port,
                self.status_board,
                auth_token=self.cfg.metrics_token,
                health_checker=self.health,
                status_provider=self.get_status,
            )
            self._started.append("metrics_server")

        self.health.set_ready(True)
        log.info(dumps({"event": "services_started", "components": list(self._started)}))

    async def stop(self) -> None:
        self.health.set_ready(False)
        stoppers = {
            "metrics_server": self._stop_server,
            "engine": self.engine.shutdown,
            "plugins": self._stop_plugins,
            "bus": self.bus.stop,
            "coordinator": self.coordinator.stop,
        }
        while self._started:
            name = self._started.pop()
            try:
                await stoppers[name]()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.error(dumps({"event": "service_stop_error", "component": name, "err": str(exc)}))
        log.info(dumps({"event": "services_stopped"}))

    async def _stop_server(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def _stop_plugins(self) -> None:
        self.plugins.stop_all()

    def get_status(self) -> dict[str, Any]:
        return {
            "rpc": self.coordinator.get_status_report(),
            "bus": self.bus.get_stats(),
            "plugins": self.plugins.get_plugin_status(),
            "health": self.health.to_dict(),
        }
