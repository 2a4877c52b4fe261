"""Verification service — is this object's digest anchored on the ledger?

verify() recomputes the digest at the requested fidelity (or takes a
precomputed one) and looks for a confirmed Anchored event with the same
passport id and digest. Sources, cheapest first:

1. receipt: logs of the object's stored tx_hash, when one is known.
2. index:   the local anchoring event index.
3. logs:    a bounded scan of the ledger's Anchored logs, newest page
            first: logs_window_blocks back from the head (or from
            from_block when configured), pages of logs_page_blocks.

No match is the valid negative result {is_anchored: False}, not an
error. Ledger failures propagate as LedgerUnavailableError.

verify_with_fallback() applies the caller policy: core first, then full,
so objects anchored under the other tier still verify.

Read-only: nothing here writes to the ledger, the store or the index.
"""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from held.config import AnchoringSettings
from held.crypto.digest import compute_digest, object_id, passport_id
from held.errors import ConfigurationError, InvalidInputError
from held.ledger.client import AnchoredLog, LedgerClient
from held.models.anchoring import AnchoringEvent, Fidelity, VerificationResult
from held.persistence.event_index import AnchoringEventIndex
from held.persistence.record_store import RecordStore


logger = logging.getLogger(__name__)

_DIGEST_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")

FALLBACK_ORDER: tuple[Fidelity, ...] = (Fidelity.CORE, Fidelity.FULL)


class VerificationService:
    """Looks up confirmed anchors for objects.

    Usage:
        verifier = VerificationService(ledger, event_index, settings, store=store)
        result = verifier.verify_with_fallback(obj)
        if result.is_anchored:
            print(result.tx_hash, result.block_number, result.fidelity)
    """

    def __init__(
        self,
        ledger: LedgerClient,
        event_index: AnchoringEventIndex,
        settings: AnchoringSettings,
        store: Optional[RecordStore] = None,
    ) -> None:
        self._ledger = ledger
        self._index = event_index
        self._settings = settings
        self._store = store

    def verify(
        self,
        obj: Mapping[str, Any],
        expected_digest: Optional[str] = None,
        fidelity: Fidelity = Fidelity.CORE,
        stored_tx_hash: Optional[str] = None,
    ) -> VerificationResult:
        """Search for a confirmed anchor of the object's digest."""
        if not isinstance(fidelity, Fidelity):
            raise InvalidInputError(f"fidelity must be a Fidelity, got {fidelity!r}")
        if expected_digest is not None:
            if not _DIGEST_RE.match(expected_digest):
                raise InvalidInputError(
                    f"expected_digest must be 0x + 64 hex characters, got {expected_digest!r}"
                )
            digest = expected_digest
        else:
            digest = compute_digest(obj, fidelity)
        pid = passport_id(obj)
        tx_hash = stored_tx_hash or self._stored_tx_hash(obj)

        if tx_hash:
            for log in self._ledger.anchored_logs_in_tx(tx_hash):
                if log.matches(pid, digest):
                    return self._found(log, fidelity, "receipt")

        event = self._index.find_match(pid, digest)
        if event is not None:
            return VerificationResult(
                is_anchored=True,
                tx_hash=event.tx_hash,
                block_number=event.block_number,
                fidelity=fidelity,
                source="index",
                attempted=[fidelity],
            )

        log = self._scan_logs(pid, digest)
        if log is not None:
            return self._found(log, fidelity, "logs")

        logger.debug("No anchor found for %s at %s fidelity", object_id(obj), fidelity.value)
        return VerificationResult(is_anchored=False, attempted=[fidelity])

    def verify_with_fallback(
        self,
        obj: Mapping[str, Any],
        stored_tx_hash: Optional[str] = None,
    ) -> VerificationResult:
        """Try core fidelity, then full; report every fidelity attempted."""
        attempted: list[Fidelity] = []
        for fidelity in FALLBACK_ORDER:
            attempted.append(fidelity)
            result = self.verify(obj, fidelity=fidelity, stored_tx_hash=stored_tx_hash)
            if result.is_anchored:
                return replace(result, attempted=list(attempted))
        return VerificationResult(is_anchored=False, attempted=attempted)

    def latest_event(
        self,
        obj: Mapping[str, Any],
        stored_tx_hash: Optional[str] = None,
    ) -> Optional[AnchoringEvent]:
        """Most recent confirmed anchoring of the object, from any source.

        Events rebuilt from the ledger are returned, not indexed.
        """
        oid = object_id(obj)
        indexed = self._index.latest_for(oid)
        if indexed is not None:
            return indexed

        pid = passport_id(obj)
        tx_hash = stored_tx_hash or self._stored_tx_hash(obj)
        if tx_hash:
            for log in self._ledger.anchored_logs_in_tx(tx_hash):
                if log.matches(pid):
                    return self._event_from_log(oid, log)

        log = self._scan_logs(pid)
        return self._event_from_log(oid, log) if log is not None else None

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _stored_tx_hash(self, obj: Mapping[str, Any]) -> Optional[str]:
        if self._store is None:
            return None
        return self._store.get_anchoring_record(object_id(obj)).tx_hash

    def _scan_logs(self, pid: str, digest: Optional[str] = None) -> Optional[AnchoredLog]:
        """Newest matching Anchored log within the scan window, or None."""
        head = self._ledger.get_block_number()
        if self._settings.from_block > 0:
            start = self._settings.from_block
        else:
            start = max(0, head - self._settings.logs_window_blocks + 1)
        page = self._settings.logs_page_blocks
        if page < 1:
            raise ConfigurationError(f"logs_page_blocks must be >= 1, got {page}")

        to_block = head
        while to_block >= start:
            from_block = max(start, to_block - page + 1)
            matches = [
                log for log in self._ledger.anchored_logs(from_block, to_block)
                if log.matches(pid, digest)
            ]
            if matches:
                return max(matches, key=lambda log: (log.block_number, log.version))
            to_block = from_block - 1
        return None

    @staticmethod
    def _found(log: AnchoredLog, fidelity: Fidelity, source: str) -> VerificationResult:
        return VerificationResult(
            is_anchored=True,
            tx_hash=log.tx_hash,
            block_number=log.block_number,
            fidelity=fidelity,
            source=source,
            attempted=[fidelity],
        )

    @staticmethod
    def _event_from_log(oid: str, log: AnchoredLog) -> AnchoringEvent:
        return AnchoringEvent.create(
            object_id=oid,
            passport_id=log.passport_id,
            tx_hash=log.tx_hash,
            block_number=log.block_number,
            digest=log.digest,
            uri=log.uri,
            version=log.version,
            recorded_utc=datetime.now(timezone.utc),
        )
