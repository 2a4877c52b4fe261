"""Anchoring data model — the record embedded in each object, and the events.

An object's anchoring record holds only its latest state:

    NOT_ANCHORED → PENDING → CONFIRMED
                   PENDING → FAILED      (mined with status 0, terminal)
    any state    → PENDING               (re-anchor with version + 1)

History of earlier versions lives in the append-only event index, one
AnchoringEvent per confirmed transaction.

Record invariants:
- is_anchored implies tx_hash, block_number and digest are all present.
- tx_hash present with is_anchored False (and not failed) is pending.
- version never decreases and is never reused for a new transaction.
"""

from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Optional


_TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def format_utc(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def parse_utc(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Fidelity(str, enum.Enum):
    """Which field projection a digest covers."""
    CORE = "core"  # Public-safe minimal fields, every account
    FULL = "full"  # Extended provenance fields, premium accounts


class AnchorMode(str, enum.Enum):
    """Whether anchor() waits for the receipt."""
    SYNC = "sync"
    ASYNC = "async"


class AnchoringState(str, enum.Enum):
    """Derived lifecycle state of an anchoring record."""
    NOT_ANCHORED = "not_anchored"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


# Attribute name → document database key
_RECORD_KEYS: dict[str, str] = {
    "is_anchored": "isAnchored",
    "tx_hash": "txHash",
    "block_number": "blockNumber",
    "digest": "digest",
    "uri": "uri",
    "version": "version",
    "anchored_at": "anchoredAt",
    "fidelity": "fidelity",
    "submitted_at": "submittedAt",
    "failed": "failed",
    "error": "error",
}


@dataclass
class AnchoringRecord:
    """Anchoring status fields stored on an object's document."""
    is_anchored: bool = False
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    digest: Optional[str] = None
    uri: Optional[str] = None
    version: int = 0
    anchored_at: Optional[datetime] = None
    fidelity: Optional[Fidelity] = None
    submitted_at: Optional[datetime] = None
    failed: bool = False
    error: Optional[str] = None

    @property
    def state(self) -> AnchoringState:
        if self.is_anchored:
            return AnchoringState.CONFIRMED
        if self.tx_hash and self.failed:
            return AnchoringState.FAILED
        if self.tx_hash:
            return AnchoringState.PENDING
        return AnchoringState.NOT_ANCHORED

    @property
    def is_pending(self) -> bool:
        return self.state == AnchoringState.PENDING

    def violations(self) -> list[str]:
        """Return invariant violations (empty = consistent)."""
        errors: list[str] = []
        if self.is_anchored:
            for name in ("tx_hash", "block_number", "digest"):
                if getattr(self, name) is None:
                    errors.append(f"confirmed record missing {name}")
            if self.failed:
                errors.append("record cannot be both confirmed and failed")
        if self.version < 0:
            errors.append(f"version must be >= 0, got {self.version}")
        if self.tx_hash and self.version < 1:
            errors.append("submitted record must carry version >= 1")
        return errors

    def updated(self, **changes: Any) -> AnchoringRecord:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Serialize with the document database's camelCase keys."""
        return {
            "isAnchored": self.is_anchored,
            "txHash": self.tx_hash,
            "blockNumber": self.block_number,
            "digest": self.digest,
            "uri": self.uri,
            "version": self.version,
            "anchoredAt": format_utc(self.anchored_at),
            "fidelity": self.fidelity.value if self.fidelity else None,
            "submittedAt": format_utc(self.submitted_at),
            "failed": self.failed,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnchoringRecord:
        """Load from a stored document; absent keys take initial values."""
        fidelity = data.get("fidelity")
        block = data.get("blockNumber")
        return cls(
            is_anchored=bool(data.get("isAnchored", False)),
            tx_hash=data.get("txHash"),
            block_number=int(block) if block is not None else None,
            digest=data.get("digest"),
            uri=data.get("uri"),
            version=int(data.get("version") or 0),
            anchored_at=parse_utc(data.get("anchoredAt")),
            fidelity=Fidelity(fidelity) if fidelity else None,
            submitted_at=parse_utc(data.get("submittedAt")),
            failed=bool(data.get("failed", False)),
            error=data.get("error"),
        )

    @staticmethod
    def field_names() -> frozenset[str]:
        return frozenset(f.name for f in fields(AnchoringRecord))


@dataclass(frozen=True)
class AnchoringEvent:
    """One confirmed anchoring transaction. Never mutated once written."""
    object_id: str
    passport_id: str
    tx_hash: str
    block_number: int
    digest: str
    uri: str
    version: int
    recorded_utc: str
    fidelity: Optional[Fidelity] = None
    event_hash: str = ""

    @staticmethod
    def create(
        object_id: str,
        passport_id: str,
        tx_hash: str,
        block_number: int,
        digest: str,
        uri: str,
        version: int,
        fidelity: Optional[Fidelity] = None,
        recorded_utc: Optional[datetime] = None,
    ) -> AnchoringEvent:
        """Create an event with its content hash computed."""
        ts = format_utc(recorded_utc or datetime.now(timezone.utc))
        event = AnchoringEvent(
            object_id=object_id,
            passport_id=passport_id,
            tx_hash=tx_hash,
            block_number=block_number,
            digest=digest,
            uri=uri,
            version=version,
            recorded_utc=ts,
            fidelity=fidelity,
        )
        return replace(event, event_hash=event.compute_hash())

    def canonical_payload(self) -> dict[str, Any]:
        return {
            "object_id": self.object_id,
            "passport_id": self.passport_id,
            "tx_hash": self.tx_hash,
            "block_number": self.block_number,
            "digest": self.digest,
            "uri": self.uri,
            "version": self.version,
            "recorded_utc": self.recorded_utc,
            "fidelity": self.fidelity.value if self.fidelity else None,
        }

    def compute_hash(self) -> str:
        canonical = json.dumps(
            self.canonical_payload(), sort_keys=True, ensure_ascii=False,
        ).encode("utf-8")
        return f"sha256:{hashlib.sha256(canonical).hexdigest()}"

    def to_dict(self) -> dict[str, Any]:
        data = self.canonical_payload()
        data["event_hash"] = self.event_hash
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnchoringEvent:
        fidelity = data.get("fidelity")
        return cls(
            object_id=data["object_id"],
            passport_id=data["passport_id"],
            tx_hash=data["tx_hash"],
            block_number=int(data["block_number"]),
            digest=data["digest"],
            uri=data["uri"],
            version=int(data["version"]),
            recorded_utc=data["recorded_utc"],
            fidelity=Fidelity(fidelity) if fidelity else None,
            event_hash=data.get("event_hash", ""),
        )


@dataclass(frozen=True)
class Receipt:
    """Ledger view of a transaction.

    confirmed=False: not yet mined. Once mined, status is 1 (succeeded)
    or 0 (failed on-chain).
    """
    tx_hash: str
    confirmed: bool
    status: Optional[int] = None
    block_number: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.confirmed and self.status == 1

    @property
    def reverted(self) -> bool:
        return self.confirmed and self.status == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "confirmed": self.confirmed,
            "status": self.status,
            "blockNumber": self.block_number,
        }


@dataclass(frozen=True)
class AnchorResult:
    """Outcome of a single anchor() submission."""
    tx_hash: str
    digest: str
    passport_id: str
    uri: str
    version: int
    fidelity: Fidelity
    mode: AnchorMode
    state: AnchoringState = AnchoringState.PENDING
    block_number: Optional[int] = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "txHash": self.tx_hash,
            "digest": self.digest,
            "passportId": self.passport_id,
            "uri": self.uri,
            "version": self.version,
            "fidelity": self.fidelity.value,
            "mode": self.mode.value,
            "state": self.state.value,
        }
        if self.block_number is not None:
            data["blockNumber"] = self.block_number
        if self.message:
            data["message"] = self.message
        return data


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of verify(). No match is a valid negative, not an error."""
    is_anchored: bool
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    fidelity: Optional[Fidelity] = None
    source: Optional[str] = None  # "receipt" | "index" | "logs"
    attempted: list[Fidelity] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"isAnchored": self.is_anchored}
        if self.tx_hash is not None:
            data["txHash"] = self.tx_hash
        if self.block_number is not None:
            data["blockNumber"] = self.block_number
        if self.fidelity is not None:
            data["fidelity"] = self.fidelity.value
        if self.source is not None:
            data["source"] = self.source
        return data
