"""Anchoring status store — the per-object record read and written by the core.

In production this is the document database holding each object; the
core only sees this interface. JsonRecordStore is a file-backed (or
in-memory) implementation with the same write guards.

Write guards (optimistic concurrency):
1. expected_tx_hash, when given, must equal the stored tx_hash. The
   worker passes the hash it is finalizing, so a confirmation for a
   superseded transaction becomes a no-op conflict.
2. version may never decrease.
3. A new tx_hash requires a strictly higher version (versions are never
   reused).
Any violation raises ConcurrentVersionConflict and leaves the record
unchanged.
"""

from __future__ import annotations

import abc
import json
import os
from pathlib import Path
from typing import Any, Mapping, Optional

from held.errors import ConcurrentVersionConflict
from held.models.anchoring import AnchoringRecord


def guarded_update(
    current: AnchoringRecord,
    changes: Mapping[str, Any],
    expected_tx_hash: Optional[str] = None,
) -> AnchoringRecord:
    """Return current with changes applied, or raise if the write is stale."""
    unknown = set(changes) - AnchoringRecord.field_names()
    if unknown:
        raise ValueError(f"Unknown anchoring record fields: {sorted(unknown)}")

    if expected_tx_hash is not None and current.tx_hash != expected_tx_hash:
        raise ConcurrentVersionConflict(
            f"expected tx {expected_tx_hash} but record holds {current.tx_hash}"
        )

    new_version = changes.get("version", current.version)
    if new_version < current.version:
        raise ConcurrentVersionConflict(
            f"version {new_version} would decrease stored version {current.version}"
        )

    new_tx = changes.get("tx_hash", current.tx_hash)
    if (
        current.tx_hash is not None
        and new_tx != current.tx_hash
        and new_version <= current.version
    ):
        raise ConcurrentVersionConflict(
            f"new transaction {new_tx} reuses version {new_version}"
        )

    updated = current.updated(**dict(changes))
    violations = updated.violations()
    if violations:
        raise ValueError(f"Invalid anchoring record: {'; '.join(violations)}")
    return updated


class RecordStore(abc.ABC):
    """Storage interface for anchoring records."""

    @abc.abstractmethod
    def get_anchoring_record(self, object_id: str) -> AnchoringRecord:
        """Return the record; a fresh not-anchored record if none exists."""

    @abc.abstractmethod
    def set_anchoring_record(
        self,
        object_id: str,
        changes: Mapping[str, Any],
        expected_tx_hash: Optional[str] = None,
    ) -> AnchoringRecord:
        """Apply a partial update under the write guards; return the result."""

    @abc.abstractmethod
    def pending_records(self, limit: Optional[int] = None) -> list[tuple[str, AnchoringRecord]]:
        """Return pending records, oldest submission first."""


class JsonRecordStore(RecordStore):
    """Anchoring records in a JSON document, or in memory when no path is given.

    File layout: {"objects": {object_id: {camelCase record fields}}}.
    Every write rewrites the file through a temporary file and an atomic
    replace.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._storage_path = storage_path
        self._records: dict[str, AnchoringRecord] = {}
        if storage_path is not None and storage_path.exists():
            self._load(storage_path)

    def get_anchoring_record(self, object_id: str) -> AnchoringRecord:
        return self._records.get(object_id, AnchoringRecord())

    def set_anchoring_record(
        self,
        object_id: str,
        changes: Mapping[str, Any],
        expected_tx_hash: Optional[str] = None,
    ) -> AnchoringRecord:
        current = self.get_anchoring_record(object_id)
        updated = guarded_update(current, changes, expected_tx_hash)
        self._records[object_id] = updated
        if self._storage_path is not None:
            self._save()
        return updated

    def pending_records(self, limit: Optional[int] = None) -> list[tuple[str, AnchoringRecord]]:
        pending = [(oid, rec) for oid, rec in self._records.items() if rec.is_pending]
        pending.sort(key=lambda item: (item[1].submitted_at is None, item[1].submitted_at or 0, item[0]))
        return pending if limit is None else pending[:limit]

    def object_ids(self) -> list[str]:
        return sorted(self._records)

    @property
    def count(self) -> int:
        return len(self._records)

    # ------------------------------------------------------------------
    # File persistence
    # ------------------------------------------------------------------

    def _load(self, path: Path) -> None:
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        for object_id, raw in data.get("objects", {}).items():
            record = AnchoringRecord.from_dict(raw)
            violations = record.violations()
            if violations:
                raise ValueError(
                    f"Stored record for {object_id} is inconsistent: {'; '.join(violations)}"
                )
            self._records[object_id] = record

    def _save(self) -> None:
        assert self._storage_path is not None
        document = {
            "objects": {
                oid: record.to_dict() for oid, record in sorted(self._records.items())
            }
        }
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._storage_path.with_suffix(self._storage_path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as handle:
            json.dump(document, handle, indent=2, sort_keys=True, ensure_ascii=False)
        os.replace(tmp, self._storage_path)
