"""Utility functions for the layer inspection engine."""

from .digest import calculate_digest, compute_chain_ids, validate_digest

__all__ = ["calculate_digest", "compute_chain_ids", "validate_digest"]
