"""
Module: licensing_kernel.models.history_entry
Responsibility: ORM persistence for the append-only history ledger.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Append-only: no UPDATE or DELETE (ORM listeners below).
    - (record_type, record_id, sequence) is unique; a racing append that
      loses the slot fails at flush and surfaces as ConcurrentWriteError.
    - (record_type, record_id, client_request_id) is unique when the
      client supplied a request id, so retried calls apply at most once.
    - hash = H(record_type | record_id | sequence | action | from | to |
      payload_hash | prev_hash), chained per record.

Audit relevance:
    This IS the audit trail.  Folding an application's rows in sequence
    order reproduces its status.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Index,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from licensing_kernel.db.base import Base, UUIDString
from licensing_kernel.domain.dtos import HistoryEntry
from licensing_kernel.domain.pipeline import TransitionAction
from licensing_kernel.exceptions import ImmutabilityViolationError


class HistoryEntryModel(Base):
    """Immutable transition/decision record for one owning record."""

    __tablename__ = "history_entries"

    __table_args__ = (
        UniqueConstraint(
            "record_type", "record_id", "sequence",
            name="uq_history_record_sequence",
        ),
        UniqueConstraint(
            "record_type", "record_id", "client_request_id",
            name="uq_history_client_request",
        ),
        Index("idx_history_record", "record_type", "record_id", "sequence"),
        Index("idx_history_actor", "actor_id"),
    )

    record_type: Mapped[str] = mapped_column(String(50), nullable=False)
    record_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)

    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(100), nullable=False)

    from_status: Mapped[str] = mapped_column(String(50), nullable=False)
    to_status: Mapped[str] = mapped_column(String(50), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    comment: Mapped[str] = mapped_column(Text, nullable=False, default="")

    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )

    client_request_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return (
            f"<HistoryEntry {self.record_type}:{self.record_id} "
            f"#{self.sequence} {self.action} {self.from_status}->{self.to_status}>"
        )

    def to_dto(self) -> HistoryEntry:
        return HistoryEntry(
            record_type=self.record_type,
            record_id=self.record_id,
            sequence=self.sequence,
            actor_id=self.actor_id,
            actor_role=self.actor_role,
            from_status=self.from_status,
            to_status=self.to_status,
            action=TransitionAction(self.action),
            comment=self.comment,
            occurred_at=self.occurred_at,
            client_request_id=self.client_request_id,
            details=dict(self.details or {}),
            prev_hash=self.prev_hash,
            hash=self.hash,
        )


# =============================================================================
# ORM-Level Immutability (Append-Only)
# =============================================================================


@event.listens_for(HistoryEntryModel, "before_update")
def prevent_history_update(mapper, connection, target):
    """Prevent updates to history entries."""
    raise ImmutabilityViolationError(
        entity_type="HistoryEntry",
        entity_id=f"{target.record_id}#{target.sequence}",
        reason="History entries are immutable -- cannot modify",
    )


@event.listens_for(HistoryEntryModel, "before_delete")
def prevent_history_delete(mapper, connection, target):
    """Prevent deletion of history entries."""
    raise ImmutabilityViolationError(
        entity_type="HistoryEntry",
        entity_id=f"{target.record_id}#{target.sequence}",
        reason="History entries are immutable -- cannot delete",
    )
