"""Held passport anchoring — content digests anchored to a public ledger."""

__version__ = "0.4.0"
