"""
Canonical hashing for the history hash chain.

A history entry's hash covers its routing fields, a digest of its
attributable content (actor, comment, details) and the hash of the
previous entry of the same record.  Timestamps are deliberately left out
so that the chain can be recomputed from the rows alone on any host.
"""

import hashlib
import json
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

GENESIS = "GENESIS"


def _canonical_default(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    raise TypeError(f"Object of type {type(obj).__name__} has no canonical JSON form")


def canonicalize_json(data: Any) -> str:
    """Sorted keys, no whitespace; the same input always yields the same text."""
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_canonical_default,
    )


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hash_payload(payload: dict) -> str:
    """Hex SHA-256 of the canonical JSON form of *payload*."""
    return _sha256(canonicalize_json(payload))


def hash_history_entry(
    record_type: str,
    record_id: str,
    sequence: int,
    action: str,
    from_status: str,
    to_status: str,
    payload_hash: str,
    prev_hash: str | None,
) -> str:
    """
    Chain hash for one history entry.  The first entry of a record links
    to GENESIS; rewriting any entry changes every later hash.
    """
    # Field boundaries are part of the hashed text
    return _sha256(canonicalize_json([
        record_type,
        str(record_id),
        sequence,
        action,
        from_status,
        to_status,
        payload_hash,
        prev_hash or GENESIS,
    ]))
