"""Ledger access — contract calls, receipts, logs, and endpoint failover."""

from held.ledger.client import (
    AnchoredLog,
    AnchorPayload,
    LedgerClient,
    Web3LedgerClient,
    explorer_url,
)
from held.ledger.memory import InMemoryLedger

__all__ = [
    "AnchoredLog",
    "AnchorPayload",
    "LedgerClient",
    "Web3LedgerClient",
    "InMemoryLedger",
    "explorer_url",
]
