"""Persistence for anchoring records and the anchoring event index."""

from held.persistence.event_index import AnchoringEventIndex
from held.persistence.record_store import JsonRecordStore, RecordStore, guarded_update

__all__ = [
    "AnchoringEventIndex",
    "JsonRecordStore",
    "RecordStore",
    "guarded_update",
]
