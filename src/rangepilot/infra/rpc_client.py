"""
Minimal async JSON-RPC client for one EVM chain endpoint over HTTP/2.

One RpcClient is one "connection handle": the failover coordinator owns one
per endpoint and hands it to operations.
"""

from __future__ import annotations

import itertools
from typing import Any, Dict, List, Optional

import httpx

from rangepilot.core.errors import RpcError


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(value, 16)


class RpcClient:
    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self.url = url
        # A shared client passed in is not closed by close(); otherwise we own it.
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(http2=True, timeout=timeout)
            self._owns_client = True
        self._ids = itertools.count(1)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def block_number(self) -> int:
        return _to_int(await self._call("eth_blockNumber", []))

    async def chain_id(self) -> int:
        return _to_int(await self._call("eth_chainId", []))

    async def get_block(self, block: int | str, full_transactions: bool = True) -> Optional[Dict[str, Any]]:
        """Block by number or tag ("latest", "pending"). None when unknown."""
        tag = hex(block) if isinstance(block, int) else block
        return await self._call("eth_getBlockByNumber", [tag, full_transactions])

    async def get_transaction_count(self, address: str, block: str = "latest") -> int:
        return _to_int(await self._call("eth_getTransactionCount", [address, block]))

    async def send_raw_transaction(self, raw_tx: str) -> str:
        return await self._call("eth_sendRawTransaction", [raw_tx])

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self._call("eth_getTransactionReceipt", [tx_hash])

    async def call(self, to: str, data: str, block: str = "latest") -> str:
        return await self._call("eth_call", [{"to": to, "data": data}, block])

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return _to_int(await self._call("eth_estimateGas", [_json_tx(tx)]))

    async def gas_price(self) -> int:
        return _to_int(await self._call("eth_gasPrice", []))

    async def _call(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        resp = await self.client.post(self.url, json=payload)
        resp.raise_for_status()
        data = resp.json()
        if isinstance(data, dict) and data.get("error"):
            err = data["error"]
            if isinstance(err, dict):
                raise RpcError(int(err.get("code", -1)), str(err.get("message", "")), err.get("data"))
            raise RpcError(-1, str(err))
        return data.get("result") if isinstance(data, dict) else data


def _json_tx(tx: Dict[str, Any]) -> Dict[str, Any]:
    # eth_estimateGas expects hex quantities
    out: Dict[str, Any] = {}
    for key, value in tx.items():
        if isinstance(value, int) and not isinstance(value, bool):
            out[key] = hex(value)
        elif isinstance(value, bytes):
            out[key] = "0x" + value.hex()
        else:
            out[key] = value
    return out
