"""
RPC Failover Coordinator: always-available chain access across several nodes.

Keeps a prioritized list of endpoints and runs chain operations against
whichever endpoint currently works:
- Operations start at the endpoint that last succeeded and walk the list in
  priority order, wrapping around so every endpoint is tried once per call
- Network failures and timeouts advance to the next endpoint immediately
- Other failures retry the same endpoint up to its max_retries, 1s apart
- A background health loop probes every endpoint (advisory only; it never
  changes which endpoint is current)

Concurrency: shared by every strategy instance. All bookkeeping happens
between awaits on the event loop thread, so reads of the current index and
status updates cannot interleave mid-update.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar, TYPE_CHECKING

from rangepilot.core.errors import (
    ConfigurationError,
    EndpointsExhaustedError,
    classify_error,
)
from rangepilot.core.json_utils import dumps
from rangepilot.core.utils import now_ms
from rangepilot.infra.rpc_client import RpcClient

if TYPE_CHECKING:
    from rangepilot.monitoring.metrics_rich import RichMetrics

log = logging.getLogger("rangepilot")

T = TypeVar("T")
Operation = Callable[[RpcClient], Awaitable[T]]
ClientFactory = Callable[["Endpoint"], RpcClient]


@dataclass(frozen=True)
class Endpoint:
    """One chain node. Lower priority value = preferred."""
    url: str
    name: str
    priority: int = 1
    timeout_sec: float = 5.0
    max_retries: int = 3
    health_check_interval_sec: Optional[float] = None  # None: FailoverConfig.health_check_interval_sec


@dataclass
class EndpointStatus:
    url: str
    name: str
    healthy: bool = False
    last_checked_ms: int = 0
    last_response_ms: Optional[float] = None
    consecutive_errors: int = 0
    last_error: Optional[str] = None
    last_known_block: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ConnectionAttempt:
    url: str
    attempt: int
    timestamp_ms: int
    success: bool
    error: Optional[str] = None


@dataclass
class FailoverConfig:
    """Configuration for FailoverCoordinator."""
    chain_id: Optional[int] = 56  # asserted during initial/manual probes; None skips
    health_check_interval_sec: float = 30.0  # default for endpoints without their own
    probe_timeout_sec: float = 5.0
    retry_delay_sec: float = 1.0
    history_limit: int = 100  # trim trigger
    history_keep: int = 50    # entries kept after trim
    log_event_callback: Optional[Callable[..., None]] = None


def _default_client_factory(endpoint: Endpoint) -> RpcClient:
    return RpcClient(endpoint.url, timeout=endpoint.timeout_sec)


class FailoverCoordinator:
    """
    Executes chain operations with endpoint failover.

    Usage:
        coordinator = FailoverCoordinator(endpoints, FailoverConfig(chain_id=56))
        await coordinator.initialize()
        await coordinator.start()

        block = await coordinator.execute_with_failover(
            lambda rpc: rpc.block_number(), "block_number"
        )

        await coordinator.stop()
    """

    def __init__(
        self,
        endpoints: Sequence[Endpoint],
        config: Optional[FailoverConfig] = None,
        client_factory: Optional[ClientFactory] = None,
        metrics: Optional["RichMetrics"] = None,
    ) -> None:
        """
        Initialize FailoverCoordinator.

        Args:
            endpoints: Candidate nodes; ranked by priority, ties keep declaration order
            config: Timing and chain settings
            client_factory: Builds the connection handle for an endpoint
            metrics: Optional Prometheus metrics
        """
        if not endpoints:
            raise ConfigurationError("at least one RPC endpoint is required")
        self.config = config or FailoverConfig()
        ranked = sorted(enumerate(endpoints), key=lambda pair: (pair[1].priority, pair[0]))
        self._endpoints: List[Endpoint] = [ep for _, ep in ranked]
        self._client_factory = client_factory or _default_client_factory
        self._metrics = metrics
        self._log = self.config.log_event_callback or self._default_log

        self._clients: Dict[str, RpcClient] = {}
        self._statuses: Dict[str, EndpointStatus] = {
            ep.url: EndpointStatus(url=ep.url, name=ep.name) for ep in self._endpoints
        }
        self._history: List[ConnectionAttempt] = []
        self._current = 0
        self._initialized = False
        self._running = False
        self._health_task: Optional[asyncio.Task] = None

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def endpoints(self) -> List[Endpoint]:
        return list(self._endpoints)

    @property
    def current_endpoint(self) -> Endpoint:
        return self._endpoints[self._current]

    @property
    def current_index(self) -> int:
        return self._current

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def get_status(self, url: str) -> EndpointStatus:
        return self._statuses[url]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self) -> Endpoint:
        """
        Select the initial endpoint: first one, in priority order, that answers
        a block-height probe and reports the expected chain id.

        Raises:
            EndpointsExhaustedError: every endpoint failed the probe
        """
        errors: List[BaseException] = []
        for idx, ep in enumerate(self._endpoints):
            try:
                await self._probe(ep, timeout=ep.timeout_sec, check_chain=True)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                errors.append(exc)
                self._mark_failure(ep, exc, attempt=1)
                log.warning(dumps({"event": "rpc_initial_probe_failed", "endpoint": ep.name, "err": str(exc)}))
                continue
            self._current = idx
            self._initialized = True
            self._log("rpc_endpoint_selected", endpoint=ep.name, priority=ep.priority)
            return ep
        raise EndpointsExhaustedError("initial endpoint selection", errors)

    async def start(self) -> None:
        """Start the background health-check loop."""
        if self._running:
            return
        self._running = True
        self._health_task = asyncio.create_task(self._health_loop(), name="rpc-health")

    async def stop(self) -> None:
        """Stop the health loop and close every cached client."""
        self._running = False
        if self._health_task:
            self._health_task.cancel()
            await asyncio.gather(self._health_task, return_exceptions=True)
            self._health_task = None
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            try:
                await client.close()
            except Exception as exc:
                log.warning(dumps({"event": "rpc_client_close_error", "url": client.url, "err": str(exc)}))

    # -------------------------------------------------------------------------
    # Failover execution
    # -------------------------------------------------------------------------

    async def execute_with_failover(self, operation: Operation[T], label: str = "rpc_call") -> T:
        """
        Run operation against the first endpoint that succeeds.

        Args:
            operation: Coroutine function taking an RpcClient
            label: Name used in logs, metrics and the terminal error

        Returns:
            The operation's result

        Raises:
            EndpointsExhaustedError: every endpoint failed; carries each error
        """
        errors: List[BaseException] = []
        start_idx = self._current
        for idx in self._rotation(start_idx):
            ep = self._endpoints[idx]
            attempt = 0
            while True:
                attempt += 1
                started = time.monotonic()
                try:
                    client = self._get_client(ep)
                    result = await asyncio.wait_for(operation(client), timeout=ep.timeout_sec)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    errors.append(exc)
                    kind = classify_error(exc)
                    self._mark_failure(ep, exc, attempt)
                    if self._metrics:
                        self._metrics.rpc_requests.labels(endpoint=ep.name, outcome=kind.value).inc()
                    if kind.triggers_failover:
                        log.warning(dumps({
                            "event": "rpc_network_failure",
                            "endpoint": ep.name,
                            "label": label,
                            "kind": kind.value,
                            "err": str(exc) or type(exc).__name__,
                        }))
                        break
                    if attempt < ep.max_retries:
                        log.warning(dumps({
                            "event": "rpc_retry",
                            "endpoint": ep.name,
                            "label": label,
                            "attempt": attempt,
                            "err": str(exc),
                        }))
                        await asyncio.sleep(self.config.retry_delay_sec)
                        continue
                    break
                else:
                    elapsed_ms = (time.monotonic() - started) * 1000
                    self._mark_success(ep, elapsed_ms)
                    if idx != start_idx:
                        self._log("rpc_failover", label=label, from_endpoint=self._endpoints[start_idx].name, to_endpoint=ep.name)
                        if self._metrics:
                            self._metrics.rpc_failovers.inc()
                    self._current = idx
                    if self._metrics:
                        self._metrics.rpc_requests.labels(endpoint=ep.name, outcome="ok").inc()
                        self._metrics.rpc_latency_ms.labels(endpoint=ep.name).observe(elapsed_ms)
                    return result

        log.error(dumps({"event": "rpc_all_endpoints_failed", "label": label, "attempts": len(errors)}))
        raise EndpointsExhaustedError(label, errors)

    def _rotation(self, start: int) -> List[int]:
        n = len(self._endpoints)
        return [(start + i) % n for i in range(n)]

    def _get_client(self, ep: Endpoint) -> RpcClient:
        client = self._clients.get(ep.url)
        if client is None:
            client = self._client_factory(ep)
            self._clients[ep.url] = client
        return client

    # -------------------------------------------------------------------------
    # Probing and health
    # -------------------------------------------------------------------------

    async def _probe(self, ep: Endpoint, timeout: float, check_chain: bool, record: bool = True) -> int:
        client = self._get_client(ep)
        started = time.monotonic()
        block = await asyncio.wait_for(client.block_number(), timeout=timeout)
        if check_chain and self.config.chain_id is not None:
            chain_id = await asyncio.wait_for(client.chain_id(), timeout=timeout)
            if chain_id != self.config.chain_id:
                raise ConfigurationError(
                    f"endpoint {ep.name} reports chain id {chain_id}, expected {self.config.chain_id}"
                )
        status = self._statuses[ep.url]
        status.last_known_block = block
        self._mark_success(ep, (time.monotonic() - started) * 1000, record=record)
        return block

    def health_check_interval(self, ep: Endpoint) -> float:
        return ep.health_check_interval_sec or self.config.health_check_interval_sec

    async def health_check_once(self, endpoints: Optional[Sequence[Endpoint]] = None) -> Dict[str, bool]:
        """
        Probe endpoints (default: all) concurrently.

        Advisory only: the current endpoint is untouched and probes are kept
        out of the connection history, which records operation attempts.
        """
        targets = list(self._endpoints if endpoints is None else endpoints)

        async def probe(ep: Endpoint) -> bool:
            try:
                await self._probe(ep, timeout=self.config.probe_timeout_sec, check_chain=False, record=False)
                return True
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._mark_failure(ep, exc, attempt=0, record=False)
                log.warning(dumps({"event": "health_check_failed", "endpoint": ep.name, "err": str(exc) or type(exc).__name__}))
                return False

        results = await asyncio.gather(*(probe(ep) for ep in targets))
        return {ep.url: ok for ep, ok in zip(targets, results)}

    async def _health_loop(self) -> None:
        """Probe each endpoint on its own interval."""
        loop = asyncio.get_running_loop()
        due = {ep.url: loop.time() + self.health_check_interval(ep) for ep in self._endpoints}
        while self._running:
            try:
                await asyncio.sleep(max(0.0, min(due.values()) - loop.time()))
                now = loop.time()
                batch = [ep for ep in self._endpoints if due[ep.url] <= now]
                for ep in batch:
                    due[ep.url] = now + self.health_check_interval(ep)
                await self.health_check_once(batch)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                log.error(dumps({"event": "health_loop_error", "err": str(exc)}))

    async def switch_to_node(self, url: str) -> Endpoint:
        """Manually make url current after a successful probe."""
        for idx, ep in enumerate(self._endpoints):
            if ep.url == url:
                await self._probe(ep, timeout=ep.timeout_sec, check_chain=True)
                self._current = idx
                self._log("rpc_manual_switch", endpoint=ep.name)
                return ep
        raise ValueError(f"unknown endpoint: {url}")

    # -------------------------------------------------------------------------
    # Bookkeeping
    # -------------------------------------------------------------------------

    def _mark_success(self, ep: Endpoint, elapsed_ms: float, record: bool = True) -> None:
        status = self._statuses[ep.url]
        status.healthy = True
        status.consecutive_errors = 0
        status.last_error = None
        status.last_checked_ms = now_ms()
        status.last_response_ms = round(elapsed_ms, 2)
        if self._metrics:
            self._metrics.endpoint_healthy.labels(endpoint=ep.name).set(1)
        if record:
            self._record_attempt(ep.url, 1, True)

    def _mark_failure(self, ep: Endpoint, exc: BaseException, attempt: int, record: bool = True) -> None:
        status = self._statuses[ep.url]
        status.healthy = False
        status.consecutive_errors += 1
        status.last_error = str(exc) or type(exc).__name__
        status.last_checked_ms = now_ms()
        if self._metrics:
            self._metrics.endpoint_healthy.labels(endpoint=ep.name).set(0)
        if record:
            self._record_attempt(ep.url, attempt, False, status.last_error)

    def _record_attempt(self, url: str, attempt: int, success: bool, error: Optional[str] = None) -> None:
        self._history.append(ConnectionAttempt(url=url, attempt=attempt, timestamp_ms=now_ms(), success=success, error=error))
        if len(self._history) > self.config.history_limit:
            self._history = self._history[-self.config.history_keep:]

    def get_connection_history(self) -> List[ConnectionAttempt]:
        return list(self._history)

    def get_status_report(self) -> Dict[str, Any]:
        """Snapshot for dashboards: current node, health counts, last 10 attempts."""
        statuses = [self._statuses[ep.url].to_dict() for ep in self._endpoints]
        return {
            "current_endpoint": self.current_endpoint.name,
            "current_url": self.current_endpoint.url,
            "total_endpoints": len(self._endpoints),
            "healthy_endpoints": sum(1 for s in statuses if s["healthy"]),
            "endpoints": statuses,
            "connection_history": [asdict(a) for a in self._history[-10:]],
        }
