"""Tests for the reconciliation worker — finalization, idempotence, races."""

from datetime import timedelta
from typing import Any

import pytest

from conftest import NOW, make_object
from held.anchoring.state_machine import AnchoringStateMachine
from held.config import AnchoringSettings
from held.crypto.digest import compute_digest, object_id, passport_id
from held.errors import LedgerUnavailableError
from held.ledger.client import AnchorPayload
from held.ledger.memory import InMemoryLedger
from held.models.anchoring import AnchoringState, Fidelity
from held.persistence.event_index import AnchoringEventIndex
from held.persistence.record_store import JsonRecordStore
from held.worker.reconcile import ReconcileOutcome, ReconciliationReport, ReconciliationWorker


def _submit(
    ledger: InMemoryLedger,
    store: JsonRecordStore,
    obj: dict[str, Any],
    submitted_at=NOW,
) -> str:
    """Submit the next version of obj and store the pending record."""
    oid = object_id(obj)
    record = store.get_anchoring_record(oid)
    version = record.version + 1
    digest = compute_digest(obj)
    uri = f"https://held.example/passport/{oid}"
    tx = ledger.submit(AnchorPayload(
        passport_id=passport_id(obj), digest=digest, uri=uri, version=version,
    ))
    store.set_anchoring_record(oid, AnchoringStateMachine.submission_fields(
        record, tx, digest, uri, version, Fidelity.CORE, submitted_at,
    ))
    return tx


def _worker(
    ledger: InMemoryLedger,
    store: JsonRecordStore,
    index: AnchoringEventIndex,
    settings: AnchoringSettings,
    sleeps: list[float] | None = None,
) -> ReconciliationWorker:
    return ReconciliationWorker(
        ledger, store, index, settings,
        sleep=(sleeps.append if sleeps is not None else lambda _: None),
        clock=lambda: NOW,
    )


class TestLifecycle:
    def test_unmined_record_untouched(
        self, ledger: InMemoryLedger, store: JsonRecordStore,
        event_index: AnchoringEventIndex, settings: AnchoringSettings,
    ) -> None:
        t1 = _submit(ledger, store, make_object())
        before = store.get_anchoring_record("obj-001")

        report = _worker(ledger, store, event_index, settings).run_once()

        assert report.still_pending == 1
        assert store.get_anchoring_record("obj-001") == before
        assert before.tx_hash == t1
        assert event_index.count == 0

    def test_confirm_then_reanchor(
        self, ledger: InMemoryLedger, store: JsonRecordStore,
        event_index: AnchoringEventIndex, settings: AnchoringSettings,
    ) -> None:
        obj = make_object()
        worker = _worker(ledger, store, event_index, settings)
        t1 = _submit(ledger, store, obj)
        worker.run_once()

        ledger.mine(t1, status=1, block_number=500)
        report = worker.run_once()

        record = store.get_anchoring_record("obj-001")
        assert report.confirmed == 1
        assert record.tx_hash == t1
        assert record.is_anchored
        assert record.block_number == 500
        assert record.version == 1
        assert record.anchored_at == NOW

        t2 = _submit(ledger, store, obj)
        record = store.get_anchoring_record("obj-001")
        assert record.state == AnchoringState.PENDING
        assert record.tx_hash == t2
        assert record.version == 2
        assert record.block_number is None

    def test_confirmed_event_indexed(
        self, ledger: InMemoryLedger, store: JsonRecordStore,
        event_index: AnchoringEventIndex, settings: AnchoringSettings,
    ) -> None:
        obj = make_object()
        tx = _submit(ledger, store, obj)
        ledger.mine(tx, block_number=500)
        _worker(ledger, store, event_index, settings).run_once()

        event = event_index.get(tx)
        assert event is not None
        assert event.object_id == "obj-001"
        assert event.passport_id == passport_id(obj)
        assert event.digest == compute_digest(obj)
        assert event.block_number == 500
        assert event.fidelity == Fidelity.CORE

    def test_status_zero_fails(
        self, ledger: InMemoryLedger, store: JsonRecordStore,
        event_index: AnchoringEventIndex, settings: AnchoringSettings,
    ) -> None:
        tx = _submit(ledger, store, make_object())
        ledger.mine(tx, status=0, block_number=501)

        report = _worker(ledger, store, event_index, settings).run_once()

        record = store.get_anchoring_record("obj-001")
        assert report.failed == 1
        assert record.state == AnchoringState.FAILED
        assert not record.is_anchored
        assert record.error
        assert event_index.count == 0

    def test_failed_record_can_reanchor(
        self, ledger: InMemoryLedger, store: JsonRecordStore,
        event_index: AnchoringEventIndex, settings: AnchoringSettings,
    ) -> None:
        obj = make_object()
        tx = _submit(ledger, store, obj)
        ledger.mine(tx, status=0)
        _worker(ledger, store, event_index, settings).run_once()

        _submit(ledger, store, obj)
        record = store.get_anchoring_record("obj-001")
        assert record.state == AnchoringState.PENDING
        assert record.version == 2
        assert not record.failed
        assert record.error is None


class TestIdempotence:
    def test_repeated_passes(
        self, ledger: InMemoryLedger, store: JsonRecordStore,
        event_index: AnchoringEventIndex, settings: AnchoringSettings,
    ) -> None:
        tx = _submit(ledger, store, make_object())
        ledger.mine(tx, block_number=500)
        worker = _worker(ledger, store, event_index, settings)

        first = worker.run_once()
        after_first = store.get_anchoring_record("obj-001")
        second = worker.run_once()

        assert first.confirmed == 1
        assert second.scanned == 0
        assert store.get_anchoring_record("obj-001") == after_first
        assert event_index.count == 1

    def test_two_workers_one_event(
        self, ledger: InMemoryLedger, store: JsonRecordStore,
        event_index: AnchoringEventIndex, settings: AnchoringSettings,
    ) -> None:
        tx = _submit(ledger, store, make_object())
        ledger.mine(tx, block_number=500)
        a = _worker(ledger, store, event_index, settings)
        b = _worker(ledger, store, event_index, settings)

        record = store.get_anchoring_record("obj-001")
        assert a._reconcile("obj-001", record, NOW).outcome == ReconcileOutcome.CONFIRMED
        assert b._reconcile("obj-001", record, NOW).outcome == ReconcileOutcome.CONFIRMED
        assert event_index.count == 1
        assert store.get_anchoring_record("obj-001").version == 1

    def test_stale_confirmation_superseded(
        self, ledger: InMemoryLedger, store: JsonRecordStore,
        event_index: AnchoringEventIndex, settings: AnchoringSettings,
    ) -> None:
        obj = make_object()
        t1 = _submit(ledger, store, obj)
        ledger.mine(t1, block_number=500)
        original = ledger.get_receipt
        holder: dict[str, str] = {}

        def racing(tx_hash: str):
            # Re-anchor lands between the worker's read and its write.
            if "t2" not in holder:
                holder["t2"] = _submit(ledger, store, obj)
            return original(tx_hash)

        ledger.get_receipt = racing  # type: ignore[method-assign]
        report = _worker(ledger, store, event_index, settings).run_once()

        record = store.get_anchoring_record("obj-001")
        assert report.superseded == 1
        assert record.tx_hash == holder["t2"]
        assert record.version == 2
        assert record.state == AnchoringState.PENDING
        assert event_index.get(t1) is not None


class TestPassBehaviour:
    def test_error_on_one_record_continues(
        self, ledger: InMemoryLedger, store: JsonRecordStore,
        event_index: AnchoringEventIndex, settings: AnchoringSettings,
    ) -> None:
        bad = _submit(ledger, store, make_object(id="obj-a"))
        good = _submit(ledger, store, make_object(id="obj-b"), submitted_at=NOW + timedelta(minutes=1))
        ledger.mine_all()
        original = ledger.get_receipt

        def flaky(tx_hash: str):
            if tx_hash == bad:
                raise LedgerUnavailableError("ledger call failed: timeout")
            return original(tx_hash)

        ledger.get_receipt = flaky  # type: ignore[method-assign]
        report = _worker(ledger, store, event_index, settings).run_once()

        assert report.errors == 1
        assert report.confirmed == 1
        assert store.get_anchoring_record("obj-a").is_pending
        assert store.get_anchoring_record("obj-b").tx_hash == good
        assert store.get_anchoring_record("obj-b").is_anchored

    def test_batch_size_oldest_first(
        self, ledger: InMemoryLedger, store: JsonRecordStore,
        event_index: AnchoringEventIndex, settings: AnchoringSettings,
    ) -> None:
        for i in range(4):
            _submit(ledger, store, make_object(id=f"obj-{i}"), submitted_at=NOW - timedelta(minutes=10 - i))
        ledger.mine_all()

        report = _worker(ledger, store, event_index, settings).run_once(batch_size=2)

        assert report.scanned == 2
        assert [r.object_id for r in report.results] == ["obj-0", "obj-1"]
        assert len(store.pending_records()) == 2

    def test_stale_counted_not_mutated(
        self, ledger: InMemoryLedger, store: JsonRecordStore,
        event_index: AnchoringEventIndex, settings: AnchoringSettings,
    ) -> None:
        _submit(ledger, store, make_object(id="old"), submitted_at=NOW - timedelta(hours=25))
        _submit(ledger, store, make_object(id="new"), submitted_at=NOW - timedelta(hours=1))

        report = _worker(ledger, store, event_index, settings).run_once(now=NOW)

        assert report.stale == 1
        assert report.still_pending == 2
        assert store.get_anchoring_record("old").is_pending

    def test_report_dict(self) -> None:
        report = ReconciliationReport()
        data = report.to_dict()
        assert data["stillPending"] == 0
        assert data["results"] == []
        assert report.finalized == 0


class TestSingleObject:
    def test_reconcile_object_confirms(
        self, ledger: InMemoryLedger, store: JsonRecordStore,
        event_index: AnchoringEventIndex, settings: AnchoringSettings,
    ) -> None:
        tx = _submit(ledger, store, make_object())
        ledger.mine(tx, block_number=500)
        outcome = _worker(ledger, store, event_index, settings).reconcile_object("obj-001")
        assert outcome.outcome == ReconcileOutcome.CONFIRMED
        assert outcome.block_number == 500
        assert outcome.to_dict()["outcome"] == "confirmed"

    def test_not_pending_skipped(
        self, ledger: InMemoryLedger, store: JsonRecordStore,
        event_index: AnchoringEventIndex, settings: AnchoringSettings,
    ) -> None:
        outcome = _worker(ledger, store, event_index, settings).reconcile_object("never")
        assert outcome.outcome == ReconcileOutcome.SKIPPED
        assert ledger.receipt_calls == 0

    def test_ledger_errors_propagate(
        self, ledger: InMemoryLedger, store: JsonRecordStore,
        event_index: AnchoringEventIndex, settings: AnchoringSettings,
    ) -> None:
        _submit(ledger, store, make_object())
        ledger.unavailable = True
        with pytest.raises(LedgerUnavailableError):
            _worker(ledger, store, event_index, settings).reconcile_object("obj-001")


class TestPeriodic:
    def test_iterations_and_interval(
        self, ledger: InMemoryLedger, store: JsonRecordStore,
        event_index: AnchoringEventIndex, settings: AnchoringSettings,
    ) -> None:
        sleeps: list[float] = []
        worker = _worker(ledger, store, event_index, settings, sleeps=sleeps)
        reports = worker.run_periodic(interval=7, iterations=3)
        assert len(reports) == 3
        assert sleeps == [7, 7]

    def test_default_interval(
        self, ledger: InMemoryLedger, store: JsonRecordStore,
        event_index: AnchoringEventIndex, settings: AnchoringSettings,
    ) -> None:
        sleeps: list[float] = []
        _worker(ledger, store, event_index, settings, sleeps=sleeps).run_periodic(iterations=2)
        assert sleeps == [settings.worker_interval_seconds]
