"""
Infrastructure package.

This package contains the JSON-RPC client, endpoint failover, wallets,
per-instance locks and logging configuration.
"""

from rangepilot.infra.failover import Endpoint, FailoverConfig, FailoverCoordinator
from rangepilot.infra.keyed_locks import InstanceLockStore
from rangepilot.infra.logging_cfg import build_logger
from rangepilot.infra.rpc_client import RpcClient
from rangepilot.infra.wallet import KeyWallet, WalletInfo

__all__ = [
    "Endpoint",
    "FailoverConfig",
    "FailoverCoordinator",
    "InstanceLockStore",
    "build_logger",
    "RpcClient",
    "KeyWallet",
    "WalletInfo",
]
