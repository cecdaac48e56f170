"""
Transaction execution: signing, submission and nonce reconciliation.
"""

from rangepilot.execution.nonce_reconciler import NonceReconciler, ReconcilerConfig, ReconcileOutcome
from rangepilot.execution.tx_submitter import TransactionSubmitter, SubmitterConfig

__all__ = [
    "NonceReconciler",
    "ReconcilerConfig",
    "ReconcileOutcome",
    "TransactionSubmitter",
    "SubmitterConfig",
]
