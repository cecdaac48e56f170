"""
Transaction submitter: sign locally, send through the failover coordinator,
and turn ambiguous send failures into a definite answer.

Send errors are classified before anything reaches the caller:
- TIMEOUT        -> NonceReconciler.resolve_timeout
- ALREADY_KNOWN  -> NonceReconciler.resolve_already_known
- NONCE_TOO_LOW  -> NonceReconciler.resolve_nonce_too_low
- anything else  -> propagated unchanged

Blind re-submission after a timeout could double-spend; the reconciler only
ever reads chain state.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, TYPE_CHECKING

from rangepilot.core.errors import ErrorKind, classify_error
from rangepilot.core.json_utils import dumps
from rangepilot.core.utils import now_ms
from rangepilot.execution.nonce_reconciler import NonceReconciler, PendingSubmission

if TYPE_CHECKING:
    from rangepilot.infra.failover import FailoverCoordinator
    from rangepilot.infra.wallet import WalletProvider
    from rangepilot.monitoring.metrics_rich import RichMetrics

log = logging.getLogger("rangepilot")


@dataclass
class SubmitterConfig:
    chain_id: Optional[int] = 56
    gas_multiplier: float = 1.2  # headroom over eth_estimateGas
    log_event_callback: Optional[Callable[..., None]] = None


def _hex(value: Any) -> str:
    return "0x" + bytes(value).hex()


class TransactionSubmitter:
    """
    Signs and sends transactions with nonce reconciliation.

    Usage:
        submitter = TransactionSubmitter(coordinator, wallet, NonceReconciler(coordinator))
        tx_hash = await submitter.sign_and_send({"to": pool, "data": calldata, "value": 0})
    """

    def __init__(
        self,
        coordinator: "FailoverCoordinator",
        wallet: "WalletProvider",
        reconciler: Optional[NonceReconciler] = None,
        config: Optional[SubmitterConfig] = None,
        metrics: Optional["RichMetrics"] = None,
    ) -> None:
        self._coordinator = coordinator
        self._wallet = wallet
        self._reconciler = reconciler or NonceReconciler(coordinator, metrics=metrics)
        self.config = config or SubmitterConfig()
        self._metrics = metrics
        self._log = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    @property
    def reconciler(self) -> NonceReconciler:
        return self._reconciler

    async def sign_and_send(self, transaction: Dict[str, Any]) -> str:
        """
        Sign and submit one transaction.

        Returns:
            Transaction hash (possibly recovered through reconciliation)

        Raises:
            WalletLockedError: wallet unavailable
            TransactionUntraceableError: landed but could not be located
            TransactionSendError: definitely not sent
            Exception: any unclassified send error, unchanged
        """
        wallet = self._wallet.get_wallet()
        tx = await self._prepare(dict(transaction), wallet.address)
        signed = wallet.signer.sign_transaction(tx)
        raw = _hex(signed.raw_transaction)
        pending = PendingSubmission(
            address=wallet.address,
            nonce=tx["nonce"],
            submitted_at_ms=now_ms(),
            tx_hash=_hex(signed.hash),
        )

        try:
            tx_hash = await self._coordinator.execute_with_failover(
                lambda rpc: rpc.send_raw_transaction(raw), "send_raw_transaction"
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            kind = classify_error(exc)
            self._count(kind.value)
            log.warning(dumps({"event": "tx_send_error", "nonce": pending.nonce, "kind": kind.value, "err": str(exc)}))
            if kind is ErrorKind.TIMEOUT:
                return await self._reconciler.resolve_timeout(pending, exc)
            if kind is ErrorKind.ALREADY_KNOWN:
                return await self._reconciler.resolve_already_known(pending)
            if kind is ErrorKind.NONCE_TOO_LOW:
                return await self._reconciler.resolve_nonce_too_low(pending, exc)
            raise

        self._count("sent")
        self._log("tx_sent", tx_hash=tx_hash, nonce=pending.nonce, to=tx.get("to"))
        return tx_hash

    async def send_and_wait(self, transaction: Dict[str, Any]) -> Tuple[str, Optional[Dict[str, Any]]]:
        """Submit, then wait for the receipt. A failed wait still returns the hash."""
        tx_hash = await self.sign_and_send(transaction)
        try:
            receipt = await self._reconciler.wait_for_receipt(tx_hash)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning(dumps({"event": "tx_receipt_wait_failed", "tx_hash": tx_hash, "err": str(exc)}))
            receipt = None
        return tx_hash, receipt

    async def _prepare(self, tx: Dict[str, Any], address: str) -> Dict[str, Any]:
        """Fill nonce, chain id, gas and gas price from the chain when absent."""
        tx.pop("from", None)
        if "nonce" not in tx:
            tx["nonce"] = await self._coordinator.execute_with_failover(
                lambda rpc: rpc.get_transaction_count(address, "pending"), "get_transaction_count"
            )
        if "chainId" not in tx and self.config.chain_id is not None:
            tx["chainId"] = self.config.chain_id
        if "gas" not in tx:
            estimate_req = {**tx, "from": address}
            estimate_req.pop("nonce", None)
            estimated = await self._coordinator.execute_with_failover(
                lambda rpc: rpc.estimate_gas(estimate_req), "estimate_gas"
            )
            tx["gas"] = int(estimated * self.config.gas_multiplier)
        if "gasPrice" not in tx and "maxFeePerGas" not in tx:
            tx["gasPrice"] = await self._coordinator.execute_with_failover(
                lambda rpc: rpc.gas_price(), "gas_price"
            )
        return tx

    def _count(self, outcome: str) -> None:
        if self._metrics:
            self._metrics.tx_submitted.labels(outcome=outcome).inc()
