"""Anchor verification against the event index and the ledger."""

from held.verification.service import FALLBACK_ORDER, VerificationService

__all__ = ["FALLBACK_ORDER", "VerificationService"]
