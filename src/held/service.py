"""Held anchoring service — facade over digest, ledger, store and worker.

This is the interface the web layer (or the CLI) calls. It owns the
caller-side duties the core services leave out:
- picking the next version from the stored record,
- persisting the pending record straight after submission,
- nudging the reconciliation worker when a client sees a pending record,
- gating full fidelity to premium accounts.

Collaborators are constructed by the caller and passed in; nothing here
reaches for a global client.

Every operation returns a ServiceResult. Anchoring errors become
errors with data["error_kind"] and data["retryable"]; they are never
raised to the caller. Pending state is never dropped: the stored
tx_hash is the source of truth and a refresh never re-submits.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from held.anchoring.service import AnchoringService
from held.anchoring.state_machine import AnchoringStateMachine
from held.config import AnchoringSettings
from held.crypto.digest import compute_uri, object_id
from held.errors import AnchoringError, InvalidInputError, LedgerUnavailableError
from held.ledger.client import LedgerClient
from held.models.anchoring import AnchoringRecord, AnchorMode, Fidelity
from held.persistence.event_index import AnchoringEventIndex
from held.persistence.record_store import RecordStore
from held.verification.service import VerificationService
from held.worker.reconcile import ReconcileOutcome, ReconciliationWorker


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)


class PassportAnchoringService:
    """Passport anchoring facade.

    Usage:
        settings = AnchoringSettings.load()
        service = PassportAnchoringService(
            settings,
            ledger=Web3LedgerClient.connect(settings),
            store=JsonRecordStore(data_dir / "anchoring_records.json"),
            event_index=AnchoringEventIndex(data_dir / "anchoring_events.jsonl"),
        )

        fidelity = service.fidelity_for(is_premium)
        result = service.request_anchor(obj, fidelity, AnchorMode.ASYNC, is_premium)
        result = service.refresh_status(obj)          # on page load
        result = service.run_worker_pass()            # scheduled
    """

    def __init__(
        self,
        settings: AnchoringSettings,
        ledger: LedgerClient,
        store: RecordStore,
        event_index: AnchoringEventIndex,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._settings = settings
        self._ledger = ledger
        self._store = store
        self._index = event_index
        self._clock = clock
        self._anchoring = AnchoringService(ledger, settings, sleep=sleep, monotonic=monotonic)
        self._verifier = VerificationService(ledger, event_index, settings, store=store)
        self._worker = ReconciliationWorker(
            ledger, store, event_index, settings, sleep=sleep, clock=clock,
        )

    @property
    def worker(self) -> ReconciliationWorker:
        return self._worker

    @property
    def verifier(self) -> VerificationService:
        return self._verifier

    @staticmethod
    def fidelity_for(is_premium: bool) -> Fidelity:
        """Highest fidelity the account is entitled to."""
        return Fidelity.FULL if is_premium else Fidelity.CORE

    # ------------------------------------------------------------------
    # Anchoring
    # ------------------------------------------------------------------

    def request_anchor(
        self,
        obj: Mapping[str, Any],
        fidelity: Fidelity = Fidelity.CORE,
        mode: AnchorMode = AnchorMode.ASYNC,
        is_premium: bool = False,
        timeout: Optional[float] = None,
    ) -> ServiceResult:
        """Anchor the object's current state as a new version.

        Allowed while an earlier version is still pending: the new
        transaction supersedes it in the record, and the earlier one
        still resolves on-chain.
        """
        try:
            if fidelity == Fidelity.FULL and not is_premium:
                raise InvalidInputError("full fidelity anchoring requires a premium account")
            oid = object_id(obj)
            record = self._store.get_anchoring_record(oid)
            version = AnchoringService.next_version(record)
            uri = compute_uri(obj, self._settings.base_url)

            result = self._anchoring.anchor(obj, uri, version, fidelity, mode, timeout=timeout)
        except AnchoringError as exc:
            return self._failure(exc)

        # The transaction is on the network from here on; errors keep its hash.
        try:
            changes = AnchoringStateMachine.submission_fields(
                record,
                tx_hash=result.tx_hash,
                digest=result.digest,
                uri=result.uri,
                version=result.version,
                fidelity=fidelity,
                now=self._clock(),
            )
            stored = self._store.set_anchoring_record(oid, changes)
        except (AnchoringError, ValueError) as exc:
            logger.warning(
                "Anchor tx %s for %s (version %d) submitted but not recorded: %s",
                result.tx_hash, oid, result.version, exc,
            )
            submitted = result.to_dict()
            submitted["objectId"] = oid
            return self._failure(exc, submitted)

        if AnchoringStateMachine.is_terminal(result.state):
            stored = self._finalize_now(oid, stored)

        data = result.to_dict()
        data["objectId"] = oid
        data["state"] = stored.state.value
        data["record"] = stored.to_dict()
        data["links"] = self.explorer_links(stored)
        return ServiceResult(success=True, data=data)

    def refresh_status(self, obj: Mapping[str, Any]) -> ServiceResult:
        """Reconcile a pending record now, then verify with fallback."""
        try:
            oid = object_id(obj)
            record = self._store.get_anchoring_record(oid)
            if record.is_pending:
                outcome = self._worker.reconcile_object(oid)
                logger.debug("Refresh of %s: %s", oid, outcome.outcome.value)
                record = self._store.get_anchoring_record(oid)
            verification = self._verifier.verify_with_fallback(obj, stored_tx_hash=record.tx_hash)
        except AnchoringError as exc:
            return self._failure(exc)

        return ServiceResult(
            success=True,
            data={
                "objectId": oid,
                "state": record.state.value,
                "record": record.to_dict(),
                "verification": verification.to_dict(),
                "links": self.explorer_links(record),
            },
        )

    # ------------------------------------------------------------------
    # Read-only queries
    # ------------------------------------------------------------------

    def verify(
        self,
        obj: Mapping[str, Any],
        expected_digest: Optional[str] = None,
        fidelity: Optional[Fidelity] = None,
    ) -> ServiceResult:
        """Verify at one fidelity, or with core→full fallback when None."""
        try:
            if fidelity is None and expected_digest is None:
                result = self._verifier.verify_with_fallback(obj)
            else:
                result = self._verifier.verify(
                    obj,
                    expected_digest=expected_digest,
                    fidelity=fidelity or Fidelity.CORE,
                )
        except AnchoringError as exc:
            return self._failure(exc)

        data = result.to_dict()
        data["attempted"] = [f.value for f in result.attempted]
        if result.tx_hash:
            data["explorerUrl"] = self._ledger.explorer_url(tx_hash=result.tx_hash)
        return ServiceResult(success=True, data=data)

    def latest_event(self, obj: Mapping[str, Any]) -> ServiceResult:
        try:
            event = self._verifier.latest_event(obj)
        except AnchoringError as exc:
            return self._failure(exc)
        if event is None:
            return ServiceResult(success=True, data={"event": None})
        return ServiceResult(
            success=True,
            data={
                "event": event.to_dict(),
                "explorerUrl": self._ledger.explorer_url(tx_hash=event.tx_hash),
            },
        )

    def history(self, object_id: str) -> ServiceResult:
        """All indexed anchoring events of an object, oldest version first."""
        events = self._index.events_for(object_id)
        return ServiceResult(
            success=True,
            data={"objectId": object_id, "events": [e.to_dict() for e in events]},
        )

    def tx_status(self, tx_hash: str) -> ServiceResult:
        try:
            receipt = self._ledger.get_receipt(tx_hash)
        except AnchoringError as exc:
            return self._failure(exc)
        data = receipt.to_dict()
        data["txHash"] = tx_hash
        data["explorerUrl"] = self._ledger.explorer_url(tx_hash=tx_hash)
        return ServiceResult(success=True, data=data)

    def explorer_links(self, record: AnchoringRecord) -> dict[str, str]:
        links: dict[str, str] = {}
        if record.tx_hash:
            links["tx"] = self._ledger.explorer_url(tx_hash=record.tx_hash)
        if record.block_number is not None:
            links["block"] = self._ledger.explorer_url(block_number=record.block_number)
        return links

    # ------------------------------------------------------------------
    # Worker and health
    # ------------------------------------------------------------------

    def run_worker_pass(self, batch_size: Optional[int] = None) -> ServiceResult:
        """The "run now" trigger: one reconciliation pass."""
        report = self._worker.run_once(batch_size=batch_size)
        return ServiceResult(success=True, data=report.to_dict())

    def service_status(self) -> ServiceResult:
        """Report configured / not_configured / unavailable."""
        data: dict[str, Any] = {
            "network": self._settings.chain_name,
            "chainId": self._settings.chain_id,
            "contractAddress": self._settings.contract_address,
        }
        if not self._settings.has_private_key:
            data["status"] = "not_configured"
            data["message"] = "PRIVATE_KEY not configured: blockchain anchoring is not enabled"
            return ServiceResult(success=True, data=data)
        try:
            data["blockNumber"] = self._ledger.get_block_number()
        except LedgerUnavailableError as exc:
            data["status"] = "unavailable"
            data["message"] = str(exc)
            return ServiceResult(success=True, data=data)
        data["status"] = "configured"
        data["message"] = "Blockchain anchoring is configured and the ledger is reachable"
        return ServiceResult(success=True, data=data)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _finalize_now(self, oid: str, stored: AnchoringRecord) -> AnchoringRecord:
        """Let the worker record a sync-mode receipt; pending on ledger errors."""
        try:
            outcome = self._worker.reconcile_object(oid)
        except (AnchoringError, ValueError) as exc:
            logger.warning("Could not finalize %s now, left for the worker: %s", oid, exc)
            return stored
        if outcome.outcome == ReconcileOutcome.PENDING:
            return stored
        return self._store.get_anchoring_record(oid)

    @staticmethod
    def _failure(
        exc: Exception,
        extra: Optional[dict[str, Any]] = None,
    ) -> ServiceResult:
        data: dict[str, Any] = dict(extra or {})
        data["error_kind"] = type(exc).__name__
        data["retryable"] = getattr(exc, "retryable", False)
        return ServiceResult(success=False, errors=[str(exc)], data=data)
