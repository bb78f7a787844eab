"""
Module: licensing_kernel.models.uniqueness_claim
Responsibility: ORM persistence for asset-token claims.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - One row per asset_token_ref (unique constraint); at most one non-null
      holding_application_id per token follows directly.
    - The holding application's status is the terminal approved status
      (enforced by the Phase Engine, which writes claim and status in the
      same savepoint).
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import DateTime, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from licensing_kernel.db.base import Base, UUIDString
from licensing_kernel.domain.dtos import UniquenessClaim


class UniquenessClaimModel(Base):
    """Binding between one asset token and the application holding it."""

    __tablename__ = "uniqueness_claims"

    __table_args__ = (
        UniqueConstraint("asset_token_ref", name="uq_uniqueness_claims_token"),
    )

    asset_token_ref: Mapped[str] = mapped_column(String(200), nullable=False)

    holding_application_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True,
    )

    claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    released_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    def __repr__(self) -> str:
        return f"<UniquenessClaim {self.asset_token_ref} -> {self.holding_application_id}>"

    def to_dto(self) -> UniquenessClaim:
        return UniquenessClaim(
            asset_token_ref=self.asset_token_ref,
            holding_application_id=self.holding_application_id,
            claimed_at=self.claimed_at,
            released_at=self.released_at,
        )
