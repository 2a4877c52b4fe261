"""Tests for the anchoring record store — write guards and persistence."""

import json
from datetime import timedelta
from pathlib import Path

import pytest

from conftest import NOW
from held.errors import ConcurrentVersionConflict
from held.models.anchoring import AnchoringState, Fidelity
from held.persistence.record_store import JsonRecordStore


TX1 = "0x" + "11" * 32
TX2 = "0x" + "22" * 32
DIGEST = "0x" + "ab" * 32


def _pending_fields(tx: str, version: int, submitted_offset_min: int = 0) -> dict:
    return {
        "tx_hash": tx,
        "digest": DIGEST,
        "uri": "https://held.example/passport/obj-001",
        "version": version,
        "fidelity": Fidelity.CORE,
        "submitted_at": NOW + timedelta(minutes=submitted_offset_min),
    }


class TestReads:
    def test_missing_record_is_not_anchored(self) -> None:
        record = JsonRecordStore().get_anchoring_record("nope")
        assert record.state == AnchoringState.NOT_ANCHORED
        assert record.version == 0

    def test_pending_records_ordered_by_submission(self) -> None:
        store = JsonRecordStore()
        store.set_anchoring_record("late", _pending_fields(TX1, 1, submitted_offset_min=10))
        store.set_anchoring_record("early", _pending_fields(TX2, 1, submitted_offset_min=0))
        store.set_anchoring_record("none", {})
        assert [oid for oid, _ in store.pending_records()] == ["early", "late"]
        assert [oid for oid, _ in store.pending_records(limit=1)] == ["early"]


class TestWriteGuards:
    def test_version_cannot_decrease(self) -> None:
        store = JsonRecordStore()
        store.set_anchoring_record("o", _pending_fields(TX2, 2))
        with pytest.raises(ConcurrentVersionConflict, match="decrease"):
            store.set_anchoring_record("o", {"version": 1})

    def test_new_tx_needs_higher_version(self) -> None:
        store = JsonRecordStore()
        store.set_anchoring_record("o", _pending_fields(TX1, 1))
        with pytest.raises(ConcurrentVersionConflict, match="reuses version"):
            store.set_anchoring_record("o", _pending_fields(TX2, 1))

    def test_expected_tx_must_match(self) -> None:
        store = JsonRecordStore()
        store.set_anchoring_record("o", _pending_fields(TX1, 1))
        store.set_anchoring_record("o", _pending_fields(TX2, 2))
        with pytest.raises(ConcurrentVersionConflict, match="expected tx"):
            store.set_anchoring_record(
                "o",
                {"is_anchored": True, "block_number": 500, "anchored_at": NOW},
                expected_tx_hash=TX1,
            )
        record = store.get_anchoring_record("o")
        assert record.tx_hash == TX2
        assert record.state == AnchoringState.PENDING

    def test_matching_expected_tx_confirms(self) -> None:
        store = JsonRecordStore()
        store.set_anchoring_record("o", _pending_fields(TX1, 1))
        record = store.set_anchoring_record(
            "o",
            {"is_anchored": True, "block_number": 500, "anchored_at": NOW},
            expected_tx_hash=TX1,
        )
        assert record.state == AnchoringState.CONFIRMED

    def test_unknown_field(self) -> None:
        with pytest.raises(ValueError, match="Unknown"):
            JsonRecordStore().set_anchoring_record("o", {"colour": "red"})

    def test_inconsistent_record_rejected(self) -> None:
        with pytest.raises(ValueError, match="missing"):
            JsonRecordStore().set_anchoring_record("o", {"is_anchored": True})


class TestPersistence:
    def test_round_trip_through_file(self, tmp_path: Path) -> None:
        path = tmp_path / "records.json"
        store = JsonRecordStore(storage_path=path)
        store.set_anchoring_record("o", _pending_fields(TX1, 1))
        store.set_anchoring_record(
            "o",
            {"is_anchored": True, "block_number": 500, "anchored_at": NOW},
            expected_tx_hash=TX1,
        )

        reloaded = JsonRecordStore(storage_path=path).get_anchoring_record("o")
        assert reloaded == store.get_anchoring_record("o")

    def test_file_uses_document_keys(self, tmp_path: Path) -> None:
        path = tmp_path / "records.json"
        JsonRecordStore(storage_path=path).set_anchoring_record("o", _pending_fields(TX1, 1))
        stored = json.loads(path.read_text())["objects"]["o"]
        assert stored["txHash"] == TX1
        assert stored["isAnchored"] is False
        assert stored["version"] == 1
        assert not (tmp_path / "records.json.tmp").exists()

    def test_inconsistent_file_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "records.json"
        path.write_text(json.dumps({"objects": {"o": {"isAnchored": True}}}))
        with pytest.raises(ValueError, match="inconsistent"):
            JsonRecordStore(storage_path=path)
