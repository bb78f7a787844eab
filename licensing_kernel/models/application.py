"""
Module: licensing_kernel.models.application
Responsibility: ORM persistence for licensing applications.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - status is the only mutable routing field and changes only together
      with status_sequence, the history sequence of the entry that produced
      it (ORM guard in db/immutability.py).
    - payload is merge-only: services replace the dict with a merged copy,
      never drop keys written by earlier phases.

Audit relevance:
    Every status value on this table is reproducible by folding the
    application's history_entries rows (replay invariant).
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import JSON, BigInteger, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from licensing_kernel.db.base import TrackedBase, UUIDString
from licensing_kernel.domain.dtos import ApplicationRecord


class ApplicationModel(TrackedBase):
    """A licensing application routed through the phase pipeline."""

    __tablename__ = "applications"

    __table_args__ = (
        Index("idx_application_status", "status", "updated_at"),
        Index("idx_application_token", "asset_token_ref"),
        Index("idx_application_applicant", "applicant_ref"),
    )

    title: Mapped[str] = mapped_column(String(200), nullable=False, default="")

    status: Mapped[str] = mapped_column(String(50), nullable=False)

    # Sequence of the latest history entry (0 = created at intake, no history)
    status_sequence: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0,
    )

    applicant_ref: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # Physical-asset token; NULL for administrative applications
    asset_token_ref: Mapped[str | None] = mapped_column(String(200), nullable=True)

    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    # Routing metadata for pending-queue filtering
    province: Mapped[str | None] = mapped_column(String(100), nullable=True)
    town: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def __repr__(self) -> str:
        return f"<Application {self.id} status={self.status}>"

    def to_dto(self) -> ApplicationRecord:
        return ApplicationRecord(
            id=self.id,
            status=self.status,
            applicant_ref=self.applicant_ref,
            asset_token_ref=self.asset_token_ref,
            payload=dict(self.payload or {}),
            title=self.title,
            province=self.province,
            town=self.town,
            status_sequence=self.status_sequence,
            created_at=self.created_at,
            updated_at=self.updated_at,
            created_by_id=self.created_by_id,
        )
