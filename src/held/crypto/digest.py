"""Passport digests and URIs — deterministic content hashes of object data.

A digest is keccak-256 over the canonical JSON of a fixed projection of
the object's fields. Two projections exist:

- core: id, created, title, maker, year, category, condition and the
  public image references. Every account can anchor this.
- full: core plus the provenance fields (serial number, acquisition
  date, certificate reference, ownership chain, origin, condition
  history, associated documents, provenance notes, notes). Premium only.

Normalization, applied identically when anchoring and verifying:
- Strings are NFC-normalized and stripped. Empty strings, None, empty
  lists and empty mappings count as absent and are omitted.
- Timestamps (datetime, date, epoch milliseconds, ISO strings, and
  serialized Firestore timestamps) become ISO-8601 UTC with millisecond
  precision, e.g. 2024-05-01T09:30:00.000Z.
- year accepts an int or a digit string and is stored as an int.
- images and associatedDocuments are unordered: elements are sorted by
  their canonical JSON. The ownership chain and condition history keep
  their order.
- Canonical JSON: sorted keys, compact separators, UTF-8.
"""

from __future__ import annotations

import json
import unicodedata
from datetime import date, datetime, timezone
from typing import Any, Mapping, Optional
from urllib.parse import quote

from web3 import Web3

from held.errors import InvalidInputError
from held.models.anchoring import Fidelity


PROJECTION_SCHEMA = "held.passport.v1"

CORE_FIELDS: tuple[str, ...] = (
    "title",
    "maker",
    "year",
    "category",
    "condition",
)

FULL_ONLY_FIELDS: tuple[str, ...] = (
    "serialNumber",
    "acquisitionDate",
    "certificateRef",
    "chain",
    "origin",
    "conditionHistory",
    "associatedDocuments",
    "provenanceNotes",
    "notes",
)

TIMESTAMP_FIELDS = frozenset({"created", "acquisitionDate"})
UNORDERED_FIELDS = frozenset({"images", "associatedDocuments"})

# bytes32 passport ids leave room for at least one trailing zero byte
MAX_ID_BYTES = 31


# ------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------

def compute_digest(obj: Mapping[str, Any], fidelity: Fidelity = Fidelity.CORE) -> str:
    """Return the 0x-prefixed keccak-256 digest of the object projection.

    Raises InvalidInputError if the object has no usable id.
    """
    return Web3.to_hex(Web3.keccak(text=canonical_json(obj, fidelity)))


def canonical_json(obj: Mapping[str, Any], fidelity: Fidelity = Fidelity.CORE) -> str:
    projection = canonical_projection(obj, fidelity)
    return json.dumps(projection, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def canonical_projection(obj: Mapping[str, Any], fidelity: Fidelity = Fidelity.CORE) -> dict[str, Any]:
    """Select and normalize the fields a digest covers."""
    if not isinstance(fidelity, Fidelity):
        raise InvalidInputError(f"fidelity must be a Fidelity, got {fidelity!r}")

    projection: dict[str, Any] = {
        "schema": PROJECTION_SCHEMA,
        "fidelity": fidelity.value,
        "id": object_id(obj),
    }

    created = obj.get("created", obj.get("createdAt"))
    _put(projection, "created", _normalize_timestamp(created))

    for name in CORE_FIELDS:
        _put(projection, name, _normalize_field(name, obj.get(name)))

    _put(
        projection,
        "images",
        _image_refs(obj.get("images"), public_only=fidelity == Fidelity.CORE),
    )

    if fidelity == Fidelity.FULL:
        for name in FULL_ONLY_FIELDS:
            _put(projection, name, _normalize_field(name, obj.get(name)))

    return projection


def compute_uri(obj: Mapping[str, Any], base_url: str) -> str:
    """Return the canonical passport locator for the object."""
    if not base_url or not base_url.strip():
        raise InvalidInputError("base_url is required to build a passport URI")
    return f"{base_url.strip().rstrip('/')}/passport/{quote(object_id(obj), safe='')}"


def object_id(obj: Mapping[str, Any]) -> str:
    """Return the object's identity, or raise InvalidInputError."""
    if not isinstance(obj, Mapping):
        raise InvalidInputError(f"object must be a mapping, got {type(obj).__name__}")
    raw = obj.get("id")
    if raw is None or not str(raw).strip():
        raise InvalidInputError("object is missing required field: id")
    return unicodedata.normalize("NFC", str(raw).strip())


def passport_id_bytes(obj: Mapping[str, Any]) -> bytes:
    """Encode the object id as the contract's bytes32 passport id.

    UTF-8, right-padded with zero bytes; ids over 31 bytes are rejected.
    """
    encoded = object_id(obj).encode("utf-8")
    if len(encoded) > MAX_ID_BYTES:
        raise InvalidInputError(
            f"object id is {len(encoded)} bytes; passport ids hold at most {MAX_ID_BYTES}"
        )
    return encoded.ljust(32, b"\x00")


def passport_id(obj: Mapping[str, Any]) -> str:
    return Web3.to_hex(passport_id_bytes(obj))


# ------------------------------------------------------------------
# Normalization
# ------------------------------------------------------------------

def _put(target: dict[str, Any], key: str, value: Any) -> None:
    if value is not None:
        target[key] = value


def _normalize_field(name: str, value: Any) -> Any:
    if name in TIMESTAMP_FIELDS:
        return _normalize_timestamp(value)
    if name == "year":
        return _normalize_year(value)
    normalized = _normalize_value(value)
    if name in UNORDERED_FIELDS and isinstance(normalized, list):
        normalized = _sorted_canonically(normalized)
    return normalized


def _normalize_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        text = unicodedata.normalize("NFC", value).strip()
        return text or None
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else value
    if isinstance(value, (datetime, date)):
        return _normalize_timestamp(value)
    if isinstance(value, Mapping):
        items = {str(k): _normalize_value(v) for k, v in value.items()}
        cleaned = {k: v for k, v in items.items() if v is not None}
        return cleaned or None
    if isinstance(value, (list, tuple)):
        elements = [_normalize_value(v) for v in value]
        cleaned_list = [v for v in elements if v is not None]
        return cleaned_list or None
    raise InvalidInputError(f"unsupported field value type: {type(value).__name__}")


def _normalize_year(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    text = str(value).strip()
    if not text:
        return None
    if not text.lstrip("-").isdigit():
        raise InvalidInputError(f"year must be an integer, got {value!r}")
    return int(text)


def _normalize_timestamp(value: Any) -> Optional[str]:
    """Render any supported timestamp as ISO-8601 UTC with milliseconds."""
    if value is None:
        return None
    moment: Optional[datetime] = None
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, date):
        moment = datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    elif isinstance(value, bool):
        raise InvalidInputError(f"unsupported timestamp value: {value!r}")
    elif isinstance(value, (int, float)):
        moment = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    elif isinstance(value, Mapping):
        # Serialized Firestore Timestamp: {"seconds", "nanoseconds"} or underscored
        seconds = value.get("seconds", value.get("_seconds"))
        nanos = value.get("nanoseconds", value.get("_nanoseconds", 0))
        if seconds is None:
            raise InvalidInputError(f"unsupported timestamp mapping: {dict(value)!r}")
        moment = datetime.fromtimestamp(int(seconds) + int(nanos) / 1e9, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            moment = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            # Not ISO: keep the literal so identical input still hashes identically
            return unicodedata.normalize("NFC", text)
    else:
        raise InvalidInputError(f"unsupported timestamp type: {type(value).__name__}")

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def _image_refs(images: Any, public_only: bool) -> Optional[list[str]]:
    """Reduce image entries to sorted URL strings.

    Entries are URL strings or mappings with a "url" key; a mapping with
    isPublic False is skipped for the core projection.
    """
    if not images:
        return None
    refs: list[str] = []
    for entry in images:
        if isinstance(entry, Mapping):
            if public_only and entry.get("isPublic") is False:
                continue
            url = _normalize_value(entry.get("url"))
        else:
            url = _normalize_value(entry)
        if isinstance(url, str):
            refs.append(url)
    return sorted(set(refs)) or None


def _sorted_canonically(values: list[Any]) -> list[Any]:
    return sorted(
        values,
        key=lambda v: json.dumps(v, sort_keys=True, separators=(",", ":"), ensure_ascii=False),
    )
