"""Anchoring error taxonomy.

Every failure that leaves the anchoring core is one of these types. Raw
web3 / eth-account exceptions are translated at the ledger client
boundary and never reach callers.

- InvalidInputError: the object cannot be digested (missing identity
  fields, oversize id, wrong fidelity for the account). Not retryable
  until the caller fixes the input.
- LedgerUnavailableError: transport or RPC failure. Retryable later; no
  stored state has been written.
- TransactionRejectedError: the ledger rejected or reverted the
  transaction. Permanent for that payload; re-anchor with a new version.
- ConcurrentVersionConflict: a store write lost to a newer version or a
  newer transaction. A no-op outcome for the worker, never user-facing.
- ConfigurationError: settings are missing or malformed.
- InvalidTransitionError: a record change the state machine forbids,
  such as a version that does not exceed the stored one.
"""

from __future__ import annotations


class AnchoringError(Exception):
    """Base class for all anchoring failures."""

    retryable: bool = False


class InvalidInputError(AnchoringError):
    """Raised when an object lacks the fields needed for a digest."""


class LedgerUnavailableError(AnchoringError):
    """Raised on network or RPC failure talking to the ledger."""

    retryable = True


class TransactionRejectedError(AnchoringError):
    """Raised when the ledger rejects or reverts a transaction."""

    def __init__(self, message: str, tx_hash: str | None = None) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class ConcurrentVersionConflict(AnchoringError):
    """Raised when a store write is superseded by a newer anchoring attempt."""


class ConfigurationError(AnchoringError):
    """Raised when anchoring settings are missing or invalid."""


class InvalidTransitionError(AnchoringError, ValueError):
    """Raised when a record change is not allowed from the record's state."""
