"""Anchoring event index — append-only history of confirmed anchorings.

One AnchoringEvent per confirmed transaction, keyed by tx_hash. The
object record only keeps the latest state; this index keeps every
version, and lets verification answer without a ledger log scan.

Appending a tx_hash that is already indexed is a no-op (append returns
False), so repeated or concurrent worker passes never duplicate history.

The index can be persisted to a JSONL file (one JSON object per line).
Loading is fail-closed: a tampered line (event_hash mismatch) or a
repeated tx_hash raises ValueError.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

from held.models.anchoring import AnchoringEvent


class AnchoringEventIndex:
    """Append-only anchoring history with optional file persistence."""

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[AnchoringEvent] = []
        self._by_tx: dict[str, AnchoringEvent] = {}
        self._storage_path = storage_path

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def append(self, event: AnchoringEvent) -> bool:
        """Index an event. Returns False if its tx_hash is already indexed.

        Raises ValueError if the event hash does not match its content.
        """
        key = event.tx_hash.lower()
        if key in self._by_tx:
            return False
        if event.event_hash != event.compute_hash():
            raise ValueError(f"Event for {event.tx_hash} has an invalid event_hash")

        self._events.append(event)
        self._by_tx[key] = event

        if self._storage_path:
            self._append_to_file(event)
        return True

    def get(self, tx_hash: str) -> Optional[AnchoringEvent]:
        return self._by_tx.get(tx_hash.lower())

    def events_for(self, object_id: str) -> list[AnchoringEvent]:
        """Return an object's events, oldest version first."""
        matching = [e for e in self._events if e.object_id == object_id]
        return sorted(matching, key=lambda e: (e.version, e.block_number))

    def latest_for(self, object_id: str) -> Optional[AnchoringEvent]:
        events = self.events_for(object_id)
        return events[-1] if events else None

    def find_match(self, passport_id: str, digest: str) -> Optional[AnchoringEvent]:
        """Return the newest event anchoring this digest for this passport."""
        pid = passport_id.lower()
        dig = digest.lower()
        matches = [
            e for e in self._events
            if e.passport_id.lower() == pid and e.digest.lower() == dig
        ]
        if not matches:
            return None
        return max(matches, key=lambda e: (e.block_number, e.version))

    def events(self) -> list[AnchoringEvent]:
        return list(self._events)

    @property
    def count(self) -> int:
        return len(self._events)

    def _append_to_file(self, event: AnchoringEvent) -> None:
        assert self._storage_path is not None
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False) + "\n")

    def _load_from_file(self, path: Path) -> None:
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                event = AnchoringEvent.from_dict(json.loads(line))

                key = event.tx_hash.lower()
                if key in self._by_tx:
                    raise ValueError(
                        f"Duplicate tx_hash on recovery (line {line_num}): {event.tx_hash}"
                    )

                expected_hash = event.compute_hash()
                if event.event_hash != expected_hash:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): tx {event.tx_hash} "
                        f"stored hash {event.event_hash} != computed {expected_hash}"
                    )

                self._events.append(event)
                self._by_tx[key] = event
