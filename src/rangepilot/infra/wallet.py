"""
Wallet access for transaction signing.

The engine only needs an address and a signer on demand. KeyWallet wraps an
eth_account local account; other stores (encrypted keystores, hardware
signers) implement the same WalletProvider protocol.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol

from eth_account import Account

from rangepilot.core.errors import WalletLockedError


@dataclass(frozen=True)
class WalletInfo:
    address: str
    signer: Any  # eth_account LocalAccount: sign_transaction(dict) -> SignedTransaction


class WalletProvider(Protocol):
    def get_wallet(self) -> WalletInfo:
        """Return address and signer; raise WalletLockedError when locked."""
        ...


class KeyWallet:
    def __init__(self, private_key: Optional[str], locked: bool = False) -> None:
        self._account = Account.from_key(private_key) if private_key else None
        self._locked = locked or self._account is None

    @property
    def address(self) -> Optional[str]:
        return self._account.address if self._account else None

    @property
    def is_locked(self) -> bool:
        return self._locked

    def lock(self) -> None:
        self._locked = True

    def unlock(self) -> None:
        if self._account is None:
            raise WalletLockedError("no private key configured")
        self._locked = False

    def get_wallet(self) -> WalletInfo:
        if self._locked or self._account is None:
            raise WalletLockedError("wallet is locked")
        return WalletInfo(address=self._account.address, signer=self._account)
