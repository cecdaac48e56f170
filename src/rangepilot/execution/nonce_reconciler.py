"""
Nonce reconciliation: decide whether an ambiguous submission actually landed.

A sender's nonce is unique per confirmed transaction, so searching recent
blocks for (sender, nonce) finds at most one match. Reconciliation never
submits anything; calling it again for the same submission returns the same
hash.

Paths:
- Ambiguous timeout: wait a grace period, search the pending block, then the
  last N confirmed blocks, then compare the account nonce
- "already known": poll pending + confirmed every 2s for up to 60s
- "nonce too low": search confirmed blocks once, otherwise re-raise
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, TYPE_CHECKING

from rangepilot.core.errors import TransactionSendError, TransactionUntraceableError
from rangepilot.core.json_utils import dumps

if TYPE_CHECKING:
    from rangepilot.infra.failover import FailoverCoordinator
    from rangepilot.monitoring.metrics_rich import RichMetrics

log = logging.getLogger("rangepilot")


class ReconcileOutcome(Enum):
    FOUND_PENDING = "found_pending"
    FOUND_CONFIRMED = "found_confirmed"
    ASSUMED_KNOWN = "assumed_known"  # node acknowledged it; hash is deterministic
    UNTRACEABLE = "untraceable"
    FAILED = "failed"


@dataclass
class PendingSubmission:
    """Ephemeral record of one signed submission. Never persisted."""
    address: str
    nonce: int
    submitted_at_ms: int
    tx_hash: Optional[str] = None  # hash of the locally signed payload


@dataclass
class ReconcilerConfig:
    grace_period_sec: float = 3.0
    confirmed_depth: int = 10
    known_poll_interval_sec: float = 2.0
    known_timeout_sec: float = 60.0
    receipt_poll_interval_sec: float = 1.0
    receipt_timeout_sec: float = 60.0
    log_event_callback: Optional[Callable[..., None]] = None


def _as_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(str(value), 16)


def _matches(tx: Dict[str, Any], address: str, nonce: int) -> bool:
    sender = str(tx.get("from", "")).lower()
    if sender != address.lower():
        return False
    try:
        return _as_int(tx.get("nonce")) == nonce
    except (TypeError, ValueError):
        return False


class NonceReconciler:
    """
    Locates transactions by (sender, nonce) through the failover coordinator.
    """

    def __init__(
        self,
        coordinator: "FailoverCoordinator",
        config: Optional[ReconcilerConfig] = None,
        metrics: Optional["RichMetrics"] = None,
    ) -> None:
        self._coordinator = coordinator
        self.config = config or ReconcilerConfig()
        self._metrics = metrics
        self._log = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    def _count(self, outcome: ReconcileOutcome) -> None:
        if self._metrics:
            self._metrics.tx_reconciled.labels(outcome=outcome.value).inc()

    # ========== Block scanning ==========

    async def find_in_pending(self, address: str, nonce: int) -> Optional[str]:
        block = await self._coordinator.execute_with_failover(
            lambda rpc: rpc.get_block("pending", True), "get_pending_block"
        )
        return self._search_block(block, address, nonce)

    async def find_in_confirmed(self, address: str, nonce: int, depth: Optional[int] = None) -> Optional[str]:
        depth = self.config.confirmed_depth if depth is None else depth
        latest = await self._coordinator.execute_with_failover(lambda rpc: rpc.block_number(), "block_number")
        for number in range(latest, max(latest - depth, -1), -1):
            block = await self._coordinator.execute_with_failover(
                lambda rpc, n=number: rpc.get_block(n, True), "get_block"
            )
            found = self._search_block(block, address, nonce)
            if found:
                return found
        return None

    async def _scan(self, scan: str, address: str, nonce: int) -> Optional[str]:
        """Run one scan; a failed read counts as "not found" so later steps still run."""
        finder = self.find_in_pending if scan == "pending" else self.find_in_confirmed
        try:
            return await finder(address, nonce)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning(dumps({
                "event": "tx_scan_failed",
                "scan": scan,
                "address": address,
                "nonce": nonce,
                "err": str(exc),
                "error_type": type(exc).__name__,
            }))
            return None

    async def locate(self, address: str, nonce: int) -> Tuple[Optional[str], Optional[ReconcileOutcome]]:
        """Pending block first, then recent confirmed blocks. Read failures are logged, not raised."""
        found = await self._scan("pending", address, nonce)
        if found:
            return found, ReconcileOutcome.FOUND_PENDING
        found = await self._scan("confirmed", address, nonce)
        if found:
            return found, ReconcileOutcome.FOUND_CONFIRMED
        return None, None

    @staticmethod
    def _search_block(block: Optional[Dict[str, Any]], address: str, nonce: int) -> Optional[str]:
        if not block:
            return None
        for tx in block.get("transactions") or []:
            # hash-only blocks cannot be matched
            if isinstance(tx, dict) and _matches(tx, address, nonce):
                return tx.get("hash")
        return None

    async def current_nonce(self, address: str) -> int:
        return await self._coordinator.execute_with_failover(
            lambda rpc: rpc.get_transaction_count(address, "latest"), "get_transaction_count"
        )

    async def wait_for_receipt(self, tx_hash: str, timeout_sec: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Poll every receipt_poll_interval_sec until mined or timeout. None on timeout."""
        timeout_sec = self.config.receipt_timeout_sec if timeout_sec is None else timeout_sec
        deadline = time.monotonic() + timeout_sec
        while True:
            receipt = await self._coordinator.execute_with_failover(
                lambda rpc: rpc.get_transaction_receipt(tx_hash), "get_transaction_receipt"
            )
            if receipt:
                return receipt
            if time.monotonic() >= deadline:
                return None
            await asyncio.sleep(self.config.receipt_poll_interval_sec)

    # ========== Resolution paths ==========

    async def resolve_timeout(self, pending: PendingSubmission, cause: BaseException) -> str:
        """
        Resolve an ambiguous send timeout into a hash or a definite error.

        Raises:
            TransactionUntraceableError: nonce advanced but no match was found
            TransactionSendError: nonce did not advance (nothing landed), or the
                nonce itself could not be read
        """
        self._log("tx_ambiguous_timeout", address=pending.address, nonce=pending.nonce, err=str(cause))
        await asyncio.sleep(self.config.grace_period_sec)

        found = await self._scan("pending", pending.address, pending.nonce)
        if found:
            self._count(ReconcileOutcome.FOUND_PENDING)
            self._log("tx_reconciled", outcome="pending", tx_hash=found, nonce=pending.nonce)
            try:
                await self.wait_for_receipt(found)
            except Exception as exc:
                # located already; a failing wait does not change the answer
                log.warning(dumps({"event": "tx_receipt_wait_failed", "tx_hash": found, "err": str(exc)}))
            return found

        found = await self._scan("confirmed", pending.address, pending.nonce)
        if found:
            self._count(ReconcileOutcome.FOUND_CONFIRMED)
            self._log("tx_reconciled", outcome="confirmed", tx_hash=found, nonce=pending.nonce)
            return found

        try:
            current = await self.current_nonce(pending.address)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._count(ReconcileOutcome.FAILED)
            log.error(dumps({
                "event": "tx_nonce_read_failed",
                "address": pending.address,
                "nonce": pending.nonce,
                "err": str(exc),
            }))
            raise TransactionSendError(
                f"could not confirm whether nonce {pending.nonce} was sent: {exc}"
            ) from exc
        if current > pending.nonce:
            self._count(ReconcileOutcome.UNTRACEABLE)
            log.critical(dumps({
                "event": "tx_untraceable",
                "address": pending.address,
                "nonce": pending.nonce,
                "current_nonce": current,
                "local_hash": pending.tx_hash,
            }))
            raise TransactionUntraceableError(pending.address, pending.nonce, current)

        self._count(ReconcileOutcome.FAILED)
        raise TransactionSendError(f"transaction with nonce {pending.nonce} was not sent: {cause}") from cause

    async def resolve_already_known(self, pending: PendingSubmission) -> str:
        """Poll until the known transaction shows up; fall back to the local hash."""
        deadline = time.monotonic() + self.config.known_timeout_sec
        while True:
            found, outcome = await self.locate(pending.address, pending.nonce)
            if found:
                self._count(outcome)
                self._log("tx_reconciled", outcome="already_known", tx_hash=found, nonce=pending.nonce)
                return found
            if time.monotonic() >= deadline:
                break
            await asyncio.sleep(self.config.known_poll_interval_sec)

        if pending.tx_hash:
            self._count(ReconcileOutcome.ASSUMED_KNOWN)
            log.warning(dumps({"event": "tx_known_not_located", "nonce": pending.nonce, "tx_hash": pending.tx_hash}))
            return pending.tx_hash
        self._count(ReconcileOutcome.FAILED)
        raise TransactionSendError(
            f"node reported nonce {pending.nonce} as already known but it was not located "
            f"within {self.config.known_timeout_sec:.0f}s"
        )

    async def resolve_nonce_too_low(self, pending: PendingSubmission, cause: BaseException) -> str:
        found = await self._scan("confirmed", pending.address, pending.nonce)
        if found:
            self._count(ReconcileOutcome.FOUND_CONFIRMED)
            self._log("tx_reconciled", outcome="nonce_too_low", tx_hash=found, nonce=pending.nonce)
            return found
        self._count(ReconcileOutcome.FAILED)
        raise cause
