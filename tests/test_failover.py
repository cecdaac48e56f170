"""
Tests for FailoverCoordinator and RpcClient.

Tests cover:
- Initial endpoint selection by priority with chain-id check
- Failover on network/timeout errors, in-place retries for other errors
- Terminal error carrying every per-endpoint error
- Health checks and manual switching
- JSON-RPC request/response handling
"""

import asyncio
import json

import httpx
import pytest

from rangepilot.core.errors import (
    ConfigurationError,
    EndpointsExhaustedError,
    ErrorKind,
    RpcError,
    classify_error,
)
from rangepilot.infra.failover import Endpoint, FailoverConfig, FailoverCoordinator
from rangepilot.infra.rpc_client import RpcClient
from rangepilot.monitoring.metrics_rich import RichMetrics


class FakeRpc:
    """Stands in for RpcClient; behaviour is scripted per test."""

    def __init__(self, url: str, block: int = 100, chain: int = 56):
        self.url = url
        self.block = block
        self.chain = chain
        self.fail_with = None
        self.calls = 0
        self.closed = False

    async def block_number(self) -> int:
        if self.fail_with is not None:
            raise self.fail_with
        return self.block

    async def chain_id(self) -> int:
        return self.chain

    async def close(self) -> None:
        self.closed = True


def make_coordinator(*fakes, metrics=None, **cfg):
    endpoints = [Endpoint(url=f.url, name=f.url.split("//")[1], priority=i + 1, max_retries=2) for i, f in enumerate(fakes)]
    by_url = {f.url: f for f in fakes}
    config = FailoverConfig(retry_delay_sec=0, **cfg)
    return FailoverCoordinator(endpoints, config, client_factory=lambda ep: by_url[ep.url], metrics=metrics)


class TestInitialSelection:
    @pytest.mark.asyncio
    async def test_first_healthy_in_priority_order(self):
        a, b = FakeRpc("http://a"), FakeRpc("http://b")
        a.fail_with = httpx.ConnectError("refused")
        coord = make_coordinator(a, b)

        ep = await coord.initialize()

        assert ep.url == "http://b"
        assert coord.current_index == 1
        assert coord.is_initialized
        assert coord.get_status("http://a").healthy is False
        assert coord.get_status("http://b").last_known_block == 100

    @pytest.mark.asyncio
    async def test_priority_ties_keep_declaration_order(self):
        a, b = FakeRpc("http://a"), FakeRpc("http://b")
        endpoints = [Endpoint("http://b", "b", priority=2), Endpoint("http://a", "a", priority=1)]
        coord = FailoverCoordinator(endpoints, client_factory=lambda ep: {"http://a": a, "http://b": b}[ep.url])
        assert [ep.name for ep in coord.endpoints] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_wrong_chain_rejected(self):
        a, b = FakeRpc("http://a", chain=1), FakeRpc("http://b")
        coord = make_coordinator(a, b)
        ep = await coord.initialize()
        assert ep.url == "http://b"
        assert "chain id" in coord.get_status("http://a").last_error

    @pytest.mark.asyncio
    async def test_all_fail(self):
        a = FakeRpc("http://a")
        a.fail_with = asyncio.TimeoutError()
        coord = make_coordinator(a)
        with pytest.raises(EndpointsExhaustedError):
            await coord.initialize()

    def test_requires_endpoints(self):
        with pytest.raises(ConfigurationError):
            FailoverCoordinator([])


class TestExecuteWithFailover:
    @pytest.mark.asyncio
    async def test_success_on_current(self):
        a, b = FakeRpc("http://a"), FakeRpc("http://b")
        coord = make_coordinator(a, b)
        await coord.initialize()

        result = await coord.execute_with_failover(lambda rpc: rpc.block_number(), "block_number")

        assert result == 100
        assert coord.current_endpoint.url == "http://a"

    @pytest.mark.asyncio
    async def test_network_error_moves_to_next_endpoint(self):
        a, b = FakeRpc("http://a"), FakeRpc("http://b", block=200)
        metrics = RichMetrics()
        coord = make_coordinator(a, b, metrics=metrics)
        await coord.initialize()
        a.fail_with = httpx.ConnectError("connection refused")

        result = await coord.execute_with_failover(lambda rpc: rpc.block_number(), "block_number")

        assert result == 200
        assert coord.current_endpoint.url == "http://b"
        assert metrics.get_registry().get_sample_value("rpc_failovers_total") == 1.0

    @pytest.mark.asyncio
    async def test_rotation_wraps_from_current(self):
        a, b, c = FakeRpc("http://a"), FakeRpc("http://b"), FakeRpc("http://c")
        coord = make_coordinator(a, b, c)
        await coord.initialize()
        await coord.switch_to_node("http://c")
        c.fail_with = asyncio.TimeoutError()

        seen = []

        async def op(rpc):
            seen.append(rpc.url)
            return await rpc.block_number()

        await coord.execute_with_failover(op, "block_number")
        assert seen == ["http://c", "http://a"]
        assert coord.current_endpoint.url == "http://a"

    @pytest.mark.asyncio
    async def test_non_network_error_retried_in_place(self):
        a, b = FakeRpc("http://a"), FakeRpc("http://b")
        coord = make_coordinator(a, b)
        await coord.initialize()

        attempts = {"n": 0}

        async def flaky(rpc):
            if rpc.url == "http://a":
                attempts["n"] += 1
                if attempts["n"] == 1:
                    raise RpcError(-32000, "header not found")
            return rpc.url

        assert await coord.execute_with_failover(flaky, "flaky") == "http://a"
        assert attempts["n"] == 2

    @pytest.mark.asyncio
    async def test_exhausted_carries_every_error(self):
        a, b = FakeRpc("http://a"), FakeRpc("http://b")
        coord = make_coordinator(a, b)
        await coord.initialize()

        async def op(rpc):
            if rpc.url == "http://a":
                raise asyncio.TimeoutError()
            raise RpcError(-32000, "already known")

        with pytest.raises(EndpointsExhaustedError) as info:
            await coord.execute_with_failover(op, "send_raw_transaction")

        exc = info.value
        assert exc.label == "send_raw_transaction"
        # one timeout on a, max_retries attempts on b
        assert len(exc.errors) == 3
        assert classify_error(exc) is ErrorKind.ALREADY_KNOWN

    @pytest.mark.asyncio
    async def test_operation_timeout_enforced(self):
        a, b = FakeRpc("http://a"), FakeRpc("http://b")
        endpoints = [
            Endpoint("http://a", "a", priority=1, timeout_sec=0.01),
            Endpoint("http://b", "b", priority=2, timeout_sec=1.0),
        ]
        coord = FailoverCoordinator(
            endpoints, FailoverConfig(retry_delay_sec=0), client_factory=lambda ep: {"http://a": a, "http://b": b}[ep.url]
        )
        await coord.initialize()

        async def op(rpc):
            if rpc.url == "http://a":
                await asyncio.sleep(1)
            return rpc.url

        assert await coord.execute_with_failover(op) == "http://b"

    @pytest.mark.asyncio
    async def test_clients_reused(self):
        a = FakeRpc("http://a")
        built = []

        def factory(ep):
            built.append(ep.url)
            return a

        coord = FailoverCoordinator([Endpoint("http://a", "a")], client_factory=factory)
        await coord.initialize()
        await coord.execute_with_failover(lambda rpc: rpc.block_number())
        await coord.execute_with_failover(lambda rpc: rpc.block_number())
        assert built == ["http://a"]


class TestHealthAndReporting:
    @pytest.mark.asyncio
    async def test_health_check_does_not_switch(self):
        a, b = FakeRpc("http://a"), FakeRpc("http://b")
        coord = make_coordinator(a, b)
        await coord.initialize()
        b.fail_with = httpx.ConnectError("down")

        result = await coord.health_check_once()

        assert result == {"http://a": True, "http://b": False}
        assert coord.current_endpoint.url == "http://a"

    @pytest.mark.asyncio
    async def test_switch_to_unknown_node(self):
        coord = make_coordinator(FakeRpc("http://a"))
        with pytest.raises(ValueError):
            await coord.switch_to_node("http://nope")

    @pytest.mark.asyncio
    async def test_status_report_and_history_trim(self):
        a = FakeRpc("http://a")
        coord = make_coordinator(a, history_limit=4, history_keep=2)
        await coord.initialize()
        for _ in range(5):
            await coord.execute_with_failover(lambda rpc: rpc.block_number())

        report = coord.get_status_report()
        assert report["current_endpoint"] == "a"
        assert report["healthy_endpoints"] == 1
        assert len(coord.get_connection_history()) <= 4

    @pytest.mark.asyncio
    async def test_stop_closes_clients(self):
        a = FakeRpc("http://a")
        coord = make_coordinator(a, health_check_interval_sec=60)
        await coord.initialize()
        await coord.start()
        await coord.stop()
        assert a.closed

    @pytest.mark.asyncio
    async def test_health_checks_stay_out_of_connection_history(self):
        a, b = FakeRpc("http://a"), FakeRpc("http://b")
        coord = make_coordinator(a, b)
        await coord.initialize()
        before = len(coord.get_connection_history())

        b.fail_with = httpx.ConnectError("refused")
        results = await coord.health_check_once()

        assert results == {"http://a": True, "http://b": False}
        assert len(coord.get_connection_history()) == before
        assert coord.get_status("http://b").healthy is False

    def test_endpoint_interval_falls_back_to_config(self):
        endpoints = [Endpoint("http://a", "a", health_check_interval_sec=5.0), Endpoint("http://b", "b")]
        coord = FailoverCoordinator(
            endpoints, FailoverConfig(health_check_interval_sec=45.0), client_factory=lambda ep: FakeRpc(ep.url)
        )
        assert [coord.health_check_interval(ep) for ep in coord.endpoints] == [5.0, 45.0]

    @pytest.mark.asyncio
    async def test_each_endpoint_checked_on_its_own_interval(self):
        checks = {"http://fast": 0, "http://slow": 0}

        class CountingRpc(FakeRpc):
            async def block_number(self) -> int:
                checks[self.url] += 1
                return await super().block_number()

        fakes = {url: CountingRpc(url) for url in checks}
        endpoints = [
            Endpoint("http://fast", "fast", health_check_interval_sec=0.01),
            Endpoint("http://slow", "slow", health_check_interval_sec=60.0),
        ]
        coord = FailoverCoordinator(endpoints, FailoverConfig(), client_factory=lambda ep: fakes[ep.url])

        await coord.start()
        await asyncio.sleep(0.1)
        await coord.stop()

        assert checks["http://fast"] >= 3
        assert checks["http://slow"] == 0


class TestRpcClient:
    @staticmethod
    def _client(handler):
        transport = httpx.MockTransport(handler)
        return RpcClient("http://node", client=httpx.AsyncClient(transport=transport))

    @pytest.mark.asyncio
    async def test_hex_results(self):
        def handler(request):
            body = json.loads(request.content)
            assert body["jsonrpc"] == "2.0"
            result = {"eth_blockNumber": "0x10", "eth_chainId": "0x38"}[body["method"]]
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

        rpc = self._client(handler)
        assert await rpc.block_number() == 16
        assert await rpc.chain_id() == 56

    @pytest.mark.asyncio
    async def test_error_object_raises_rpc_error(self):
        def handler(request):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "nonce too low"}})

        rpc = self._client(handler)
        with pytest.raises(RpcError) as info:
            await rpc.send_raw_transaction("0x00")
        assert info.value.code == -32000
        assert classify_error(info.value) is ErrorKind.NONCE_TOO_LOW

    @pytest.mark.asyncio
    async def test_estimate_gas_hex_encodes_quantities(self):
        seen = {}

        def handler(request):
            body = json.loads(request.content)
            seen.update(body["params"][0])
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": "0x5208"})

        rpc = self._client(handler)
        gas = await rpc.estimate_gas({"from": "0xabc", "value": 10, "data": b"\x01"})
        assert gas == 21000
        assert seen == {"from": "0xabc", "value": "0xa", "data": "0x01"}

    @pytest.mark.asyncio
    async def test_shared_client_not_closed(self):
        shared = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})))
        rpc = RpcClient("http://node", client=shared)
        await rpc.close()
        assert not shared.is_closed
        await shared.aclose()
