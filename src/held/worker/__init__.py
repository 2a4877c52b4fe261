"""Reconciliation of pending anchoring records."""

from held.worker.reconcile import (
    ReconcileOutcome,
    ReconciliationReport,
    ReconciliationWorker,
    RecordOutcome,
)

__all__ = [
    "ReconcileOutcome",
    "ReconciliationReport",
    "ReconciliationWorker",
    "RecordOutcome",
]
