"""
Read-only chain queries for pools and ERC-20 tokens.

Every call goes through the failover coordinator. Token metadata is cached
per address since symbol and decimals never change.
"""

from __future__ import annotations

from typing import Any, Dict, List, Sequence, Tuple, TYPE_CHECKING

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError

from rangepilot.core.utils import to_units
from rangepilot.strategy.models import PoolState, TokenInfo

if TYPE_CHECKING:
    from rangepilot.infra.failover import FailoverCoordinator

# 4-byte selectors
SLOT0 = "0x3850c7bd"
TOKEN0 = "0x0dfe1681"
TOKEN1 = "0xd21220a7"
FEE = "0xddca3f43"
DECIMALS = "0x313ce567"
SYMBOL = "0x95d89b41"
BALANCE_OF = "0x70a08231"


def _bytes(result: str) -> bytes:
    text = result[2:] if result.startswith("0x") else result
    return bytes.fromhex(text)


def _decode(types: Sequence[str], result: str) -> List[Any]:
    return list(decode(list(types), _bytes(result)))


class PoolReader:
    def __init__(self, coordinator: "FailoverCoordinator") -> None:
        self._coordinator = coordinator
        self._token_cache: Dict[str, TokenInfo] = {}

    async def _call(self, to: str, data: str, label: str) -> str:
        return await self._coordinator.execute_with_failover(lambda rpc: rpc.call(to, data), label)

    async def get_pool_state(self, pool: str) -> PoolState:
        slot0 = await self._call(pool, SLOT0, "pool_slot0")
        sqrt_price_x96, tick = _slot0(slot0)
        token0 = _decode(["address"], await self._call(pool, TOKEN0, "pool_token0"))[0]
        token1 = _decode(["address"], await self._call(pool, TOKEN1, "pool_token1"))[0]
        fee = _decode(["uint24"], await self._call(pool, FEE, "pool_fee"))[0]
        return PoolState(
            tick=int(tick),
            sqrt_price_x96=int(sqrt_price_x96),
            token0=str(token0),
            token1=str(token1),
            fee=int(fee),
        )

    async def get_current_tick(self, pool: str) -> int:
        slot0 = await self._call(pool, SLOT0, "pool_slot0")
        return int(_slot0(slot0)[1])

    async def get_token_info(self, address: str) -> TokenInfo:
        key = address.lower()
        cached = self._token_cache.get(key)
        if cached is not None:
            return cached
        decimals = _decode(["uint8"], await self._call(address, DECIMALS, "erc20_decimals"))[0]
        raw_symbol = await self._call(address, SYMBOL, "erc20_symbol")
        info = TokenInfo(address=address, symbol=_decode_symbol(raw_symbol), decimals=int(decimals))
        self._token_cache[key] = info
        return info

    async def get_balance_raw(self, token: str, owner: str) -> int:
        data = BALANCE_OF + encode(["address"], [owner]).hex()
        return int(_decode(["uint256"], await self._call(token, data, "erc20_balance_of"))[0])

    async def get_balance(self, token: str, owner: str) -> float:
        info = await self.get_token_info(token)
        return to_units(await self.get_balance_raw(token, owner), info.decimals)


def _slot0(result: str) -> Tuple[int, int]:
    # only the leading (sqrtPriceX96, tick) words; later fields differ between forks
    sqrt_price_x96, tick = decode(["uint160", "int24"], _bytes(result)[:64])
    return int(sqrt_price_x96), int(tick)


def _decode_symbol(result: str) -> str:
    try:
        return _decode(["string"], result)[0]
    except DecodingError:
        # some older tokens return bytes32
        return _bytes(result)[:32].rstrip(b"\x00").decode("utf-8", errors="ignore")
