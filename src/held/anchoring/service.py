"""Anchoring service — digest, build the ledger payload, submit.

A pure orchestration step over caller-supplied inputs: the service does
not read or write the record store. The caller passes the next version
((stored version or 0) + 1) and persists the returned
{tx_hash, digest, uri, version} as a pending record straight after a
successful submit.

Modes:
- ASYNC (default): return right after submission with the pending
  tx_hash. The reconciliation worker confirms it later.
- SYNC: additionally poll get_receipt until the transaction is mined or
  the timeout elapses. A timeout returns a PENDING result, it does not
  fail the transaction, which resolves on-chain regardless.

Submission is never retried here: each anchor() call is a deliberate
attempt with its own version. Ledger errors from submit() propagate
unchanged.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any, Callable, Mapping, Optional

from held.config import AnchoringSettings
from held.crypto.digest import compute_digest, object_id, passport_id
from held.errors import InvalidInputError, LedgerUnavailableError
from held.ledger.client import AnchorPayload, LedgerClient
from held.models.anchoring import (
    AnchoringRecord,
    AnchoringState,
    AnchorMode,
    AnchorResult,
    Fidelity,
    Receipt,
)


logger = logging.getLogger(__name__)


class AnchoringService:
    """Submits passport anchors to the ledger.

    Usage:
        service = AnchoringService(ledger, settings)
        version = AnchoringService.next_version(store.get_anchoring_record(oid))
        result = service.anchor(obj, uri, version, Fidelity.CORE, AnchorMode.ASYNC)
        store.set_anchoring_record(oid, {...pending fields from result...})
    """

    def __init__(
        self,
        ledger: LedgerClient,
        settings: AnchoringSettings,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ledger = ledger
        self._settings = settings
        self._sleep = sleep
        self._monotonic = monotonic

    @staticmethod
    def next_version(record: Optional[AnchoringRecord]) -> int:
        """Version for the next attempt: (stored version or 0) + 1."""
        return (record.version if record is not None else 0) + 1

    def build_payload(
        self,
        obj: Mapping[str, Any],
        uri: str,
        version: int,
        fidelity: Fidelity = Fidelity.CORE,
    ) -> AnchorPayload:
        """Compute the digest and assemble the contract call payload.

        Raises InvalidInputError for a bad object, uri, version or fidelity.
        """
        if not isinstance(fidelity, Fidelity):
            raise InvalidInputError(f"fidelity must be a Fidelity, got {fidelity!r}")
        if isinstance(version, bool) or not isinstance(version, int) or version < 1:
            raise InvalidInputError(f"version must be an integer >= 1, got {version!r}")
        if not isinstance(uri, str) or not uri.strip():
            raise InvalidInputError("uri is required")

        digest = compute_digest(obj, fidelity)
        logger.debug("Digest for %s at %s fidelity: %s", object_id(obj), fidelity.value, digest)
        return AnchorPayload(
            passport_id=passport_id(obj),
            digest=digest,
            uri=uri.strip(),
            version=version,
            algorithm=self._settings.digest_algorithm,
        )

    def anchor(
        self,
        obj: Mapping[str, Any],
        uri: str,
        version: int,
        fidelity: Fidelity = Fidelity.CORE,
        mode: AnchorMode = AnchorMode.ASYNC,
        timeout: Optional[float] = None,
    ) -> AnchorResult:
        """Submit an anchor transaction for the object.

        Returns an AnchorResult whose state is PENDING (async, or sync
        timeout), CONFIRMED (sync, mined with status 1) or FAILED (sync,
        mined with status 0). The stored record is never touched here.
        """
        if not isinstance(mode, AnchorMode):
            raise InvalidInputError(f"mode must be an AnchorMode, got {mode!r}")
        payload = self.build_payload(obj, uri, version, fidelity)

        tx_hash = self._ledger.submit(payload)
        logger.info(
            "Anchor submitted for %s: tx %s, version %d, %s fidelity",
            object_id(obj), tx_hash, version, fidelity.value,
        )

        result = AnchorResult(
            tx_hash=tx_hash,
            digest=payload.digest,
            passport_id=payload.passport_id,
            uri=payload.uri,
            version=version,
            fidelity=fidelity,
            mode=mode,
        )
        if mode == AnchorMode.ASYNC:
            return result

        wait = self._settings.sync_timeout_seconds if timeout is None else timeout
        receipt = self.wait_for_receipt(tx_hash, wait)
        if receipt is None:
            logger.warning("Anchor tx %s still pending after %.0fs", tx_hash, wait)
            return replace(
                result,
                message=(
                    f"Transaction still pending after {wait:.0f}s; "
                    "it will be confirmed by the reconciliation worker"
                ),
            )
        if receipt.reverted:
            logger.info("Anchor tx %s failed on-chain in block %s", tx_hash, receipt.block_number)
            return replace(
                result,
                state=AnchoringState.FAILED,
                block_number=receipt.block_number,
                message="Transaction failed on-chain; re-anchor to retry",
            )
        logger.info("Anchor tx %s confirmed in block %s", tx_hash, receipt.block_number)
        return replace(
            result,
            state=AnchoringState.CONFIRMED,
            block_number=receipt.block_number,
        )

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> Optional[Receipt]:
        """Poll until the transaction is mined; None if the timeout elapses.

        The transaction is already on the network, so an RPC error while
        polling is logged and polling continues.
        """
        deadline = self._monotonic() + timeout
        interval = self._settings.sync_poll_interval_seconds
        while True:
            try:
                receipt = self._ledger.get_receipt(tx_hash)
            except LedgerUnavailableError as exc:
                logger.warning("Receipt poll for %s failed: %s", tx_hash, exc)
            else:
                if receipt.confirmed:
                    return receipt
                logger.debug("Tx %s not yet mined", tx_hash)

            remaining = deadline - self._monotonic()
            if remaining <= 0:
                return None
            self._sleep(min(interval, remaining))
