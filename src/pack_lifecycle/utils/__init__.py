"""Utility functions for the buildpack lifecycle client."""

from .digest import calculate_digest, digest_hex, validate_digest

__all__ = ["calculate_digest", "digest_hex", "validate_digest"]
