"""Anchoring state machine — enforces valid record transitions.

Record lifecycle:
    NOT_ANCHORED → PENDING → CONFIRMED
                   PENDING → FAILED
    CONFIRMED / FAILED / PENDING → PENDING   (re-anchor, version + 1)

State semantics:
- NOT_ANCHORED: no transaction was ever submitted for the object.
- PENDING: tx_hash stored, receipt not yet observed by the worker.
- CONFIRMED: the worker saw a status-1 receipt for the stored tx_hash.
- FAILED: the worker saw a status-0 receipt. Terminal for that
  transaction; never retried automatically.

Fail-closed: the field builders below refuse changes the table does
not allow. Persistence and ledger calls are handled by the services.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from held.errors import InvalidTransitionError
from held.models.anchoring import AnchoringRecord, AnchoringState, Fidelity, Receipt


# Valid transitions: {from_state: {allowed_to_states}}
_TRANSITIONS: dict[AnchoringState, set[AnchoringState]] = {
    AnchoringState.NOT_ANCHORED: {AnchoringState.PENDING},
    AnchoringState.PENDING: {
        AnchoringState.CONFIRMED,
        AnchoringState.FAILED,
        AnchoringState.PENDING,
    },
    AnchoringState.CONFIRMED: {AnchoringState.PENDING},
    AnchoringState.FAILED: {AnchoringState.PENDING},
}


class AnchoringStateMachine:
    """Validates record transitions and builds the store field changes."""

    @staticmethod
    def validate_transition(
        record: AnchoringRecord,
        target: AnchoringState,
    ) -> list[str]:
        """Check if a transition is valid. Returns errors (empty = OK)."""
        current = record.state
        allowed = AnchoringStateMachine.valid_transitions(current)

        if target not in allowed:
            allowed_str = ", ".join(s.value for s in sorted(allowed, key=lambda x: x.value))
            return [
                f"Invalid anchoring transition: {current.value} → {target.value}. "
                f"Allowed from {current.value}: [{allowed_str}]"
            ]
        return []

    @staticmethod
    def is_terminal(state: AnchoringState) -> bool:
        """True when the worker has nothing left to do for the stored tx."""
        return state in (AnchoringState.CONFIRMED, AnchoringState.FAILED)

    @staticmethod
    def valid_transitions(state: AnchoringState) -> set[AnchoringState]:
        return set(_TRANSITIONS.get(state, set()))

    # ------------------------------------------------------------------
    # Field changes for RecordStore.set_anchoring_record
    # ------------------------------------------------------------------

    @staticmethod
    def submission_fields(
        record: AnchoringRecord,
        tx_hash: str,
        digest: str,
        uri: str,
        version: int,
        fidelity: Fidelity,
        now: datetime,
    ) -> dict[str, Any]:
        """Changes that move a record to PENDING for a new transaction."""
        errors = AnchoringStateMachine.validate_transition(record, AnchoringState.PENDING)
        if version <= record.version:
            errors.append(
                f"version {version} must exceed stored version {record.version}"
            )
        if errors:
            raise InvalidTransitionError("; ".join(errors))
        return {
            "is_anchored": False,
            "tx_hash": tx_hash,
            "block_number": None,
            "digest": digest,
            "uri": uri,
            "version": version,
            "anchored_at": None,
            "fidelity": fidelity,
            "submitted_at": now,
            "failed": False,
            "error": None,
        }

    @staticmethod
    def confirmation_fields(
        record: AnchoringRecord,
        receipt: Receipt,
        now: datetime,
    ) -> dict[str, Any]:
        """Changes that confirm the stored transaction from its receipt."""
        errors = AnchoringStateMachine.validate_transition(record, AnchoringState.CONFIRMED)
        if not receipt.succeeded:
            errors.append(f"receipt for {receipt.tx_hash} is not a mined success")
        if record.tx_hash != receipt.tx_hash:
            errors.append(f"receipt {receipt.tx_hash} is not for stored tx {record.tx_hash}")
        if errors:
            raise InvalidTransitionError("; ".join(errors))
        return {
            "is_anchored": True,
            "block_number": receipt.block_number,
            "anchored_at": now,
        }

    @staticmethod
    def failure_fields(
        record: AnchoringRecord,
        receipt: Receipt,
    ) -> dict[str, Any]:
        """Changes that mark the stored transaction as failed on-chain."""
        errors = AnchoringStateMachine.validate_transition(record, AnchoringState.FAILED)
        if not receipt.reverted:
            errors.append(f"receipt for {receipt.tx_hash} is not a mined failure")
        if errors:
            raise InvalidTransitionError("; ".join(errors))
        return {
            "failed": True,
            "block_number": receipt.block_number,
            "error": f"transaction {receipt.tx_hash} failed on-chain (status 0)",
        }
