"""
Module: licensing_kernel.models.applicant_profile
Responsibility: ORM persistence for applicant profiles, the record family
    whose identity and location fields are protected by the change-request
    subsystem.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - applicant_number is generated once (AP-00001 style) and never changes.
    - id_number is unique across profiles.
    - Protected fields change only through ChangeRequestService (or the
      logged administrative patch path).
"""

from __future__ import annotations

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from licensing_kernel.db.base import TrackedBase
from licensing_kernel.domain.dtos import ApplicantProfile


class ApplicantProfileModel(TrackedBase):
    """Subject profile referenced by Application.applicant_ref."""

    __tablename__ = "applicant_profiles"

    applicant_number: Mapped[str] = mapped_column(
        String(20), nullable=False, unique=True,
    )

    # Identity fields
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    id_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    date_of_birth: Mapped[str | None] = mapped_column(String(10), nullable=True)

    # Location (composite)
    province: Mapped[str | None] = mapped_column(String(100), nullable=True)
    town: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Freely editable
    gender: Mapped[str | None] = mapped_column(String(20), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)

    def __repr__(self) -> str:
        return f"<ApplicantProfile {self.applicant_number} {self.full_name}>"

    def to_dto(self) -> ApplicantProfile:
        return ApplicantProfile(
            id=self.id,
            applicant_number=self.applicant_number,
            full_name=self.full_name,
            id_number=self.id_number,
            date_of_birth=self.date_of_birth,
            province=self.province,
            town=self.town,
            gender=self.gender,
            phone=self.phone,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )
