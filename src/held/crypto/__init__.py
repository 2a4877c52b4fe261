"""Passport digest and URI generation."""

from held.crypto.digest import (
    canonical_projection,
    compute_digest,
    compute_uri,
    passport_id,
)

__all__ = ["canonical_projection", "compute_digest", "compute_uri", "passport_id"]
