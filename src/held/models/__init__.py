"""Anchoring data models."""

from held.models.anchoring import (
    AnchoringEvent,
    AnchoringRecord,
    AnchoringState,
    AnchorMode,
    AnchorResult,
    Fidelity,
    Receipt,
    VerificationResult,
)

__all__ = [
    "AnchoringEvent",
    "AnchoringRecord",
    "AnchoringState",
    "AnchorMode",
    "AnchorResult",
    "Fidelity",
    "Receipt",
    "VerificationResult",
]
