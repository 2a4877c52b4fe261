"""Reconciliation worker — moves pending records to confirmed or failed.

Closes the gap between "submitted" and "confirmed" without the original
client staying connected. Each pass:

    for each pending record (oldest submission first, at most batch_size):
        receipt = ledger.get_receipt(record.tx_hash)
        not mined     → leave untouched
        status 1      → index an AnchoringEvent (deduplicated by tx_hash),
                        then write is_anchored/block_number/anchored_at
                        conditioned on the same tx_hash
        status 0      → write failed/error conditioned on the tx_hash

This worker is the only code path that sets is_anchored=True.

Idempotence: the event index ignores a tx_hash it already holds, and
every record write carries expected_tx_hash. A pass that races a newer
anchor() gets ConcurrentVersionConflict, counted as "superseded" and
otherwise ignored. Running passes repeatedly or concurrently therefore
yields one event per confirmed tx_hash and never moves a version.

Per-record errors (ledger outages, bad stored data) are logged and the
pass continues with the next record. Pending records older than
stale_after_hours are reported as stale, never mutated.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from held.anchoring.state_machine import AnchoringStateMachine
from held.config import AnchoringSettings
from held.crypto.digest import passport_id
from held.errors import AnchoringError, ConcurrentVersionConflict
from held.ledger.client import LedgerClient
from held.models.anchoring import AnchoringEvent, AnchoringRecord
from held.persistence.event_index import AnchoringEventIndex
from held.persistence.record_store import RecordStore


logger = logging.getLogger(__name__)


class ReconcileOutcome(str, enum.Enum):
    """What one worker step did to one record."""
    CONFIRMED = "confirmed"
    FAILED = "failed"
    PENDING = "pending"        # Not mined yet, left untouched
    SUPERSEDED = "superseded"  # A newer anchor replaced the tx; no-op
    SKIPPED = "skipped"        # Record was not pending
    ERROR = "error"            # Per-record error, logged


@dataclass(frozen=True)
class RecordOutcome:
    object_id: str
    outcome: ReconcileOutcome
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "objectId": self.object_id,
            "outcome": self.outcome.value,
        }
        if self.tx_hash is not None:
            data["txHash"] = self.tx_hash
        if self.block_number is not None:
            data["blockNumber"] = self.block_number
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class ReconciliationReport:
    """Summary of one worker pass."""
    scanned: int = 0
    confirmed: int = 0
    failed: int = 0
    still_pending: int = 0
    superseded: int = 0
    stale: int = 0
    errors: int = 0
    results: list[RecordOutcome] = field(default_factory=list)

    def record(self, outcome: RecordOutcome) -> None:
        self.scanned += 1
        self.results.append(outcome)
        if outcome.outcome == ReconcileOutcome.CONFIRMED:
            self.confirmed += 1
        elif outcome.outcome == ReconcileOutcome.FAILED:
            self.failed += 1
        elif outcome.outcome == ReconcileOutcome.PENDING:
            self.still_pending += 1
        elif outcome.outcome == ReconcileOutcome.SUPERSEDED:
            self.superseded += 1
        elif outcome.outcome == ReconcileOutcome.ERROR:
            self.errors += 1

    @property
    def finalized(self) -> int:
        return self.confirmed + self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "scanned": self.scanned,
            "confirmed": self.confirmed,
            "failed": self.failed,
            "stillPending": self.still_pending,
            "superseded": self.superseded,
            "stale": self.stale,
            "errors": self.errors,
            "results": [r.to_dict() for r in self.results],
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationWorker:
    """Finalizes pending anchoring records from ledger receipts.

    Usage:
        worker = ReconciliationWorker(ledger, store, event_index, settings)
        report = worker.run_once()                  # scheduled / "run now"
        outcome = worker.reconcile_object(oid)      # client nudge
    """

    def __init__(
        self,
        ledger: LedgerClient,
        store: RecordStore,
        event_index: AnchoringEventIndex,
        settings: AnchoringSettings,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._ledger = ledger
        self._store = store
        self._index = event_index
        self._settings = settings
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def run_once(
        self,
        batch_size: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ReconciliationReport:
        """Run one pass over the oldest pending records."""
        now = now or self._clock()
        limit = batch_size if batch_size is not None else self._settings.worker_batch_size
        stale_after = timedelta(hours=self._settings.stale_after_hours)

        report = ReconciliationReport()
        for oid, record in self._store.pending_records(limit=limit):
            try:
                outcome = self._reconcile(oid, record, now)
            except (AnchoringError, ValueError) as exc:
                logger.warning(
                    "Reconciliation of %s (tx %s) failed: %s", oid, record.tx_hash, exc,
                )
                outcome = RecordOutcome(
                    object_id=oid,
                    outcome=ReconcileOutcome.ERROR,
                    tx_hash=record.tx_hash,
                    error=str(exc),
                )
            report.record(outcome)
            if (
                outcome.outcome in (ReconcileOutcome.PENDING, ReconcileOutcome.ERROR)
                and record.submitted_at is not None
                and now - record.submitted_at > stale_after
            ):
                report.stale += 1

        logger.info(
            "Worker pass: scanned=%d confirmed=%d failed=%d pending=%d "
            "superseded=%d stale=%d errors=%d",
            report.scanned, report.confirmed, report.failed, report.still_pending,
            report.superseded, report.stale, report.errors,
        )
        return report

    def reconcile_object(
        self,
        object_id: str,
        now: Optional[datetime] = None,
    ) -> RecordOutcome:
        """Reconcile a single object now. Ledger errors propagate."""
        record = self._store.get_anchoring_record(object_id)
        if not record.is_pending:
            return RecordOutcome(
                object_id=object_id,
                outcome=ReconcileOutcome.SKIPPED,
                tx_hash=record.tx_hash,
                block_number=record.block_number,
            )
        return self._reconcile(object_id, record, now or self._clock())

    def run_periodic(
        self,
        interval: Optional[float] = None,
        iterations: Optional[int] = None,
    ) -> list[ReconciliationReport]:
        """Run passes every interval seconds; forever when iterations is None."""
        interval = self._settings.worker_interval_seconds if interval is None else interval
        reports: list[ReconciliationReport] = []
        count = 0
        while iterations is None or count < iterations:
            if count:
                self._sleep(interval)
            report = self.run_once()
            count += 1
            if iterations is not None:
                reports.append(report)
        return reports

    # ------------------------------------------------------------------
    # Single record
    # ------------------------------------------------------------------

    def _reconcile(
        self,
        object_id: str,
        record: AnchoringRecord,
        now: datetime,
    ) -> RecordOutcome:
        tx_hash = record.tx_hash
        assert tx_hash is not None
        receipt = self._ledger.get_receipt(tx_hash)

        if not receipt.confirmed:
            logger.debug("Tx %s for %s not yet mined", tx_hash, object_id)
            return RecordOutcome(object_id, ReconcileOutcome.PENDING, tx_hash=tx_hash)

        if receipt.succeeded:
            changes = AnchoringStateMachine.confirmation_fields(record, receipt, now)
            self._index_event(object_id, record, receipt.block_number or 0, now)
            outcome = ReconcileOutcome.CONFIRMED
        else:
            changes = AnchoringStateMachine.failure_fields(record, receipt)
            outcome = ReconcileOutcome.FAILED

        try:
            self._store.set_anchoring_record(object_id, changes, expected_tx_hash=tx_hash)
        except ConcurrentVersionConflict as exc:
            logger.warning("Finalizing tx %s for %s superseded: %s", tx_hash, object_id, exc)
            return RecordOutcome(
                object_id,
                ReconcileOutcome.SUPERSEDED,
                tx_hash=tx_hash,
                block_number=receipt.block_number,
            )

        if outcome == ReconcileOutcome.CONFIRMED:
            logger.info(
                "Anchor confirmed for %s: tx %s in block %s (version %d)",
                object_id, tx_hash, receipt.block_number, record.version,
            )
        else:
            logger.info("Anchor failed on-chain for %s: tx %s", object_id, tx_hash)
        return RecordOutcome(
            object_id, outcome, tx_hash=tx_hash, block_number=receipt.block_number,
        )

    def _index_event(
        self,
        object_id: str,
        record: AnchoringRecord,
        block_number: int,
        now: datetime,
    ) -> None:
        assert record.tx_hash is not None
        event = AnchoringEvent.create(
            object_id=object_id,
            passport_id=passport_id({"id": object_id}),
            tx_hash=record.tx_hash,
            block_number=block_number,
            digest=record.digest or "",
            uri=record.uri or "",
            version=record.version,
            fidelity=record.fidelity,
            recorded_utc=now,
        )
        if not self._index.append(event):
            logger.debug("Event for tx %s already indexed", record.tx_hash)
