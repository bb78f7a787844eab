"""Utility modules for the licensing kernel."""

from licensing_kernel.utils.hashing import (
    canonicalize_json,
    hash_history_entry,
    hash_payload,
)

__all__ = [
    "canonicalize_json",
    "hash_history_entry",
    "hash_payload",
]
