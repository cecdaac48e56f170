"""
Component health and the operator HTTP endpoint.

Routes:
    /health   liveness, 503 once any component reports unhealthy (no auth)
    /ready    readiness, 503 until startup finished (no auth)
    /metrics  Prometheus exposition of RichMetrics
    /status   status board snapshot (`?prefix=instance:` filters keys) plus
              the optional service report
"""

from __future__ import annotations

import asyncio
import hmac
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TYPE_CHECKING
from urllib.parse import parse_qs, urlparse

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from rangepilot.core.json_utils import dumps

if TYPE_CHECKING:
    from rangepilot.monitoring.metrics_rich import RichMetrics
    from rangepilot.monitoring.status import StatusBoard

JSON = b"application/json"
_REASONS = {200: b"OK", 401: b"Unauthorized", 404: b"Not Found", 500: b"Internal Server Error", 503: b"Service Unavailable"}


@dataclass
class ComponentHealth:
    healthy: bool
    detail: Optional[str] = None
    updated_ms: int = 0


class HealthChecker:
    """
    Registry of component health ("config", "rpc", "engine", ...).

    Healthy means no component is failing; ready additionally requires
    `set_ready(True)` once startup completed. Callbacks fire only when a
    component's healthy flag flips.
    """

    def __init__(self) -> None:
        self._components: Dict[str, ComponentHealth] = {}
        self._ready = False
        self._heartbeat_ms = int(time.time() * 1000)
        self._callbacks: List[Callable[[str, bool], None]] = []

    def heartbeat(self) -> None:
        self._heartbeat_ms = int(time.time() * 1000)

    def set_component_health(self, name: str, healthy: bool, detail: Optional[str] = None) -> None:
        previous = self._components.get(name)
        self.heartbeat()
        self._components[name] = ComponentHealth(healthy, detail, self._heartbeat_ms)
        if previous is None or previous.healthy != healthy:
            for cb in self._callbacks:
                cb(name, healthy)

    def set_ready(self, ready: bool) -> None:
        self._ready = ready
        self.heartbeat()

    def register_callback(self, callback: Callable[[str, bool], None]) -> None:
        self._callbacks.append(callback)

    def is_healthy(self) -> bool:
        return all(c.healthy for c in self._components.values())

    def is_ready(self) -> bool:
        return self._ready and self.is_healthy()

    def failing(self) -> Dict[str, Optional[str]]:
        return {name: c.detail for name, c in self._components.items() if not c.healthy}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.is_healthy(),
            "ready": self.is_ready(),
            "last_heartbeat_ms": self._heartbeat_ms,
            "components": {name: asdict(c) for name, c in self._components.items()},
        }


def _parse_request(raw: bytes) -> Tuple[str, Dict[str, str], Dict[str, str]]:
    """Return (path, lower-cased headers, first value of each query param)."""
    lines = raw.decode("latin-1").split("\r\n")
    parts = lines[0].split(" ") if lines else []
    target = parts[1] if len(parts) > 1 else "/"
    headers: Dict[str, str] = {}
    for line in lines[1:]:
        name, sep, value = line.partition(":")
        if sep:
            headers[name.strip().lower()] = value.strip()
    url = urlparse(target)
    query = {k: v[0] for k, v in parse_qs(url.query).items()}
    return url.path, headers, query


def _response(code: int, body: bytes = b"", content_type: bytes = JSON) -> bytes:
    head = b"HTTP/1.1 %d %s\r\nContent-Type: %s\r\nContent-Length: %d\r\nConnection: close\r\n\r\n" % (
        code, _REASONS.get(code, b"OK"), content_type, len(body),
    )
    return head + body


def _authorized(token: Optional[str], headers: Dict[str, str], query: Dict[str, str]) -> bool:
    if not token:
        return True
    offered = headers.get("authorization", "")
    if offered.startswith("Bearer "):
        offered = offered[len("Bearer "):]
    else:
        offered = query.get("token", "")
    return hmac.compare_digest(offered.encode(), token.encode())


async def start_metrics_server(
    metrics: "RichMetrics",
    port: int,
    status_board: Optional["StatusBoard"] = None,
    auth_token: Optional[str] = None,
    health_checker: Optional[HealthChecker] = None,
    host: str = "0.0.0.0",
    status_provider: Optional[Callable[[], Dict[str, Any]]] = None,
) -> asyncio.AbstractServer:
    """Serve probes, metrics and status on host:port (port 0 picks a free one)."""
    health = health_checker or HealthChecker()

    async def probe_health(query: Dict[str, str]) -> bytes:
        return _response(200 if health.is_healthy() else 503, dumps(health.to_dict()).encode())

    async def probe_ready(query: Dict[str, str]) -> bytes:
        ok = health.is_ready()
        return _response(200 if ok else 503, dumps({"ready": ok, "failing": health.failing()}).encode())

    async def export_metrics(query: Dict[str, str]) -> bytes:
        return _response(200, generate_latest(metrics.get_registry()), CONTENT_TYPE_LATEST.encode())

    async def status(query: Dict[str, str]) -> bytes:
        if status_board is None:
            return _response(404)
        doc: Dict[str, Any] = await status_board.snapshot(query.get("prefix"))
        if status_provider is not None:
            doc = {"board": doc, "services": status_provider()}
        return _response(200, dumps(doc).encode())

    public: Dict[str, Callable[[Dict[str, str]], Awaitable[bytes]]] = {
        "/health": probe_health,
        "/ready": probe_ready,
    }
    protected: Dict[str, Callable[[Dict[str, str]], Awaitable[bytes]]] = {
        "/metrics": export_metrics,
        "/status": status,
    }

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            path, headers, query = _parse_request(await reader.read(4096))
            route = public.get(path)
            if route is None:
                route = protected.get(path)
                if route is not None and not _authorized(auth_token, headers, query):
                    writer.write(_response(401))
                    return
            writer.write(await route(query) if route is not None else _response(404))
        except asyncio.CancelledError:
            raise
        except Exception:
            writer.write(_response(500))
        finally:
            await writer.drain()
            writer.close()

    return await asyncio.start_server(handle, host, port)
