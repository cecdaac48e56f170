"""
Error taxonomy and the single error classification function.

Every branch that depends on "what kind of failure was this" goes through
classify_error(). Callers branch on ErrorKind, never on message substrings.

Kinds:
- NETWORK: endpoint unreachable (refused, DNS, reset, TLS). Fail over.
- TIMEOUT: request may or may not have reached the node. Fail over; for
  transaction submission this is the ambiguous case that needs nonce
  reconciliation.
- ALREADY_KNOWN: node already holds this exact signed transaction.
- NONCE_TOO_LOW: a transaction with this nonce already landed.
- INSUFFICIENT_BALANCE: business failure, eligible for a top-up retry.
- OTHER: anything else; propagated unchanged.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import List, Optional, Sequence

import httpx


class ErrorKind(Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    ALREADY_KNOWN = "already_known"
    NONCE_TOO_LOW = "nonce_too_low"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    OTHER = "other"

    @property
    def triggers_failover(self) -> bool:
        """True when the next endpoint should be tried immediately."""
        return self in (ErrorKind.NETWORK, ErrorKind.TIMEOUT)


# Message vocabularies (matched lower-case)
_ALREADY_KNOWN_MARKERS = ("already known", "known transaction", "already imported")
_NONCE_TOO_LOW_MARKERS = ("nonce too low",)
_INSUFFICIENT_MARKERS = (
    "insufficient balance",
    "insufficient funds",
    "insufficient token",
    "exceeds balance",
    "余额不足",
)
_TIMEOUT_MARKERS = ("timeout", "timed out", "etimedout")
_NETWORK_MARKERS = (
    "network socket disconnected",
    "connection refused",
    "econnrefused",
    "enotfound",
    "getaddrinfo",
    "name or service not known",
    "socket hang up",
    "tls connection",
    "ssl",
    "connection reset",
    "econnreset",
    "server disconnected",
)

# Most significant first; used to summarise multi-endpoint failures
_SIGNIFICANCE = (
    ErrorKind.ALREADY_KNOWN,
    ErrorKind.NONCE_TOO_LOW,
    ErrorKind.INSUFFICIENT_BALANCE,
    ErrorKind.TIMEOUT,
    ErrorKind.NETWORK,
    ErrorKind.OTHER,
)


class RangePilotError(Exception):
    """Base class for all errors raised by rangepilot."""


class ConfigurationError(RangePilotError, ValueError):
    """Invalid strategy or service configuration. Fatal; never retried."""


class RpcError(RangePilotError):
    """JSON-RPC error object returned by a node."""

    def __init__(self, code: int, message: str, data: object = None) -> None:
        super().__init__(f"rpc error {code}: {message}")
        self.code = code
        self.rpc_message = message
        self.data = data


class EndpointsExhaustedError(RangePilotError):
    """Every endpoint failed for one operation. Carries each attempt's error."""

    def __init__(self, label: str, errors: Sequence[BaseException]) -> None:
        self.label = label
        self.errors: List[BaseException] = list(errors)
        last = self.errors[-1] if self.errors else None
        detail = _describe(last) if last is not None else "no endpoints available"
        super().__init__(f"{label} failed on all endpoints: {detail}")

    @property
    def last_error(self) -> Optional[BaseException]:
        return self.errors[-1] if self.errors else None


class TransactionSendError(RangePilotError):
    """Submission definitely failed (nonce did not advance)."""


class TransactionUntraceableError(RangePilotError):
    """Nonce advanced past the submitted one but no matching transaction was found."""

    def __init__(self, address: str, nonce: int, current_nonce: int) -> None:
        super().__init__(
            f"transaction from {address} with nonce {nonce} succeeded but could not be "
            f"located (account nonce is now {current_nonce})"
        )
        self.address = address
        self.nonce = nonce
        self.current_nonce = current_nonce


class WalletLockedError(RangePilotError):
    """Signer requested while the wallet is locked."""


class StageError(RangePilotError):
    """A pipeline stage failed; fatal to the instance."""

    def __init__(self, stage: int, message: str) -> None:
        super().__init__(f"stage {stage}: {message}")
        self.stage = stage


class InstanceNotFoundError(RangePilotError, KeyError):
    def __init__(self, instance_id: str) -> None:
        super().__init__(f"strategy instance not found: {instance_id}")
        self.instance_id = instance_id

    def __str__(self) -> str:
        return self.args[0]


class InstanceBusyError(RangePilotError):
    """A pipeline is already running for this instance."""


class InvalidTransitionError(RangePilotError):
    """Requested status change is not in the transition table."""


def _describe(exc: BaseException) -> str:
    text = str(exc)
    return text if text else type(exc).__name__


def _classify_text(text: str) -> Optional[ErrorKind]:
    lowered = text.lower()
    if any(m in lowered for m in _ALREADY_KNOWN_MARKERS):
        return ErrorKind.ALREADY_KNOWN
    if any(m in lowered for m in _NONCE_TOO_LOW_MARKERS):
        return ErrorKind.NONCE_TOO_LOW
    if any(m in lowered for m in _INSUFFICIENT_MARKERS):
        return ErrorKind.INSUFFICIENT_BALANCE
    if any(m in lowered for m in _TIMEOUT_MARKERS):
        return ErrorKind.TIMEOUT
    if any(m in lowered for m in _NETWORK_MARKERS):
        return ErrorKind.NETWORK
    return None


def classify_error(exc: BaseException) -> ErrorKind:
    """
    Map any exception to an ErrorKind.

    Exhausted-failover errors report the most significant kind among the
    per-endpoint errors they carry, so a transaction that timed out on one
    node and was "already known" on the next classifies as ALREADY_KNOWN.
    """
    if isinstance(exc, EndpointsExhaustedError):
        kinds = {classify_error(e) for e in exc.errors}
        for kind in _SIGNIFICANCE:
            if kind in kinds:
                return kind
        return ErrorKind.OTHER

    by_text = _classify_text(_describe(exc))
    if by_text in (ErrorKind.ALREADY_KNOWN, ErrorKind.NONCE_TOO_LOW, ErrorKind.INSUFFICIENT_BALANCE):
        return by_text

    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, (httpx.TransportError, ConnectionError, OSError)):
        return ErrorKind.NETWORK

    return by_text or ErrorKind.OTHER
