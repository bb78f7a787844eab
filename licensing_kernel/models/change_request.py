"""
Module: licensing_kernel.models.change_request
Responsibility: ORM persistence for protected-field change requests.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Lifecycle: DB check constraint limits status values; the service layer
      enforces pending -> approved | rejected; the ORM listener below
      prevents any mutation once a terminal status has been written.
    - Single flight: a partial unique index allows at most one pending
      request per (subject_type, subject_id, field).
    - Never deleted, only terminal-stated.

Failure modes:
    - IntegrityError on a second pending request for the same field
      (translated to ChangeRequestConflictError by the service).
    - ImmutabilityViolationError on UPDATE of a terminal request or DELETE.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    String,
    Text,
    event,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.orm.attributes import get_history

from licensing_kernel.db.base import Base, UUIDString
from licensing_kernel.domain.dtos import (
    TERMINAL_CHANGE_REQUEST_STATUSES,
    ChangeRequest,
    ChangeRequestStatus,
)
from licensing_kernel.exceptions import ImmutabilityViolationError

_PENDING_ONLY = text("status = 'pending'")


class ChangeRequestModel(Base):
    """Proposed edit to a protected field, awaiting an authorizer."""

    __tablename__ = "change_requests"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected')",
            name="ck_change_requests_valid_status",
        ),
        Index(
            "ix_change_requests_pending_unique",
            "subject_type", "subject_id", "field",
            unique=True,
            postgresql_where=_PENDING_ONLY,
            sqlite_where=_PENDING_ONLY,
        ),
        Index(
            "ix_change_requests_subject_status",
            "subject_id", "field", "status",
        ),
    )

    subject_type: Mapped[str] = mapped_column(String(50), nullable=False)
    subject_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    field: Mapped[str] = mapped_column(String(100), nullable=False)

    # Raw values; old_value captured at proposal time
    old_value: Mapped[Any] = mapped_column(JSON, nullable=True)
    new_value: Mapped[Any] = mapped_column(JSON, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ChangeRequestStatus.PENDING.value,
    )

    requested_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    resolved_by: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    note: Mapped[str] = mapped_column(Text, nullable=False, default="")

    def __repr__(self) -> str:
        return (
            f"<ChangeRequest {self.id} {self.subject_type}:{self.subject_id}."
            f"{self.field} status={self.status}>"
        )

    def to_dto(self) -> ChangeRequest:
        return ChangeRequest(
            id=self.id,
            subject_type=self.subject_type,
            subject_id=self.subject_id,
            field=self.field,
            old_value=self.old_value,
            new_value=self.new_value,
            status=ChangeRequestStatus(self.status),
            requested_by=self.requested_by,
            created_at=self.created_at,
            resolved_by=self.resolved_by,
            resolved_at=self.resolved_at,
            note=self.note,
        )


@event.listens_for(ChangeRequestModel, "before_update")
def prevent_terminal_change_request_update(mapper, connection, target):
    """Terminal change requests are frozen."""
    hist = get_history(target, "status")
    previous = hist.deleted[0] if hist.deleted else (
        hist.unchanged[0] if hist.unchanged else target.status
    )
    if ChangeRequestStatus(previous) in TERMINAL_CHANGE_REQUEST_STATUSES:
        raise ImmutabilityViolationError(
            entity_type="ChangeRequest",
            entity_id=str(target.id),
            reason=f"Change request is {previous} -- cannot modify",
        )


@event.listens_for(ChangeRequestModel, "before_delete")
def prevent_change_request_delete(mapper, connection, target):
    """Change requests are never deleted."""
    raise ImmutabilityViolationError(
        entity_type="ChangeRequest",
        entity_id=str(target.id),
        reason="Change requests are never deleted, only resolved",
    )
