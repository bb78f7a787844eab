"""
ProfileService -- applicant profiles as a protected-field owner.

Responsibility:
    Creates applicant profiles, applies ordinary edits immediately and
    intercepts edits to protected fields, turning each into a change
    request.  Implements ProtectedFieldOwner so the change-request
    subsystem can read and write the protected values it governs.
    Also hosts the administrative hot-patch path, which writes directly
    and records an ``admin_patch`` entry in the profile's history.

Architecture position:
    Kernel > Services -- imperative shell.

Invariants enforced:
    - applicant_number is allocated from a locked counter (AP-00001 style)
      and is never editable.
    - update_profile is all-or-nothing: if any field is invalid, neither
      the direct edits nor the change requests are kept.
    - Composite fields change together: a location edit must carry both
      province and town.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from licensing_kernel.domain.clock import Clock, SystemClock
from licensing_kernel.domain.dtos import Actor, ApplicantProfile, ChangeRequest
from licensing_kernel.domain.pipeline import TransitionAction
from licensing_kernel.domain.protected_fields import (
    ProtectedField,
    ProtectedFieldSet,
    canonical_value,
)
from licensing_kernel.exceptions import (
    ForbiddenError,
    InvalidChangeValueError,
    SubjectNotFoundError,
)
from licensing_kernel.logging_config import get_logger
from licensing_kernel.models.applicant_profile import ApplicantProfileModel
from licensing_kernel.services.base import BaseService
from licensing_kernel.services.change_request_service import ChangeRequestService
from licensing_kernel.services.history_ledger import HistoryLedger
from licensing_kernel.services.sequence_service import SequenceService

logger = get_logger("services.profile")

APPLICANT_NUMBER_SEQUENCE = "applicant_number"

EDITABLE_ATTRIBUTES = ("gender", "phone")

# history status marker for profiles, which have no lifecycle of their own
PROFILE_RECORDED = "recorded"


@dataclass(frozen=True)
class ProfileUpdateResult:
    """Outcome of an intercepted profile edit."""

    profile: ApplicantProfile
    applied: tuple[str, ...]
    change_requests: tuple[ChangeRequest, ...]
    unchanged: tuple[str, ...] = ()

    @property
    def requires_approval(self) -> bool:
        return bool(self.change_requests)


class ProfileService(BaseService[ApplicantProfileModel]):
    """Applicant profile store and ProtectedFieldOwner implementation."""

    def __init__(
        self,
        session: Session,
        protected_fields: ProtectedFieldSet,
        change_requests: ChangeRequestService,
        clock: Clock | None = None,
        ledger: HistoryLedger | None = None,
        admin_role: str | None = None,
    ):
        super().__init__(session)
        self._fields = protected_fields
        self._clock = clock or SystemClock()
        self._ledger = ledger or HistoryLedger(session, self._clock)
        self._change_requests = change_requests
        self._admin_role = admin_role
        change_requests.register_owner(self)

    # ------------------------------------------------------------------
    # ProtectedFieldOwner
    # ------------------------------------------------------------------

    @property
    def subject_type(self) -> str:
        return self._fields.subject_type

    @property
    def protected_fields(self) -> ProtectedFieldSet:
        return self._fields

    def exists(self, subject_id: UUID) -> bool:
        return self.session.get(ApplicantProfileModel, subject_id) is not None

    def read_field(self, subject_id: UUID, field: ProtectedField, lock: bool = False) -> Any:
        row = self._load(subject_id, lock=lock)
        if field.is_composite:
            return {c: getattr(row, c) for c in field.components}
        return getattr(row, field.components[0])

    def write_field(self, subject_id: UUID, field: ProtectedField, value: Any) -> None:
        row = self._load(subject_id)
        if field.is_composite:
            for c in field.components:
                setattr(row, c, value[c])
        else:
            setattr(row, field.components[0], value)
        row.updated_at = self._clock.now()
        self.session.flush()

    def _load(self, subject_id: UUID, lock: bool = False) -> ApplicantProfileModel:
        stmt = select(ApplicantProfileModel).where(ApplicantProfileModel.id == subject_id)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        row = self.session.execute(stmt).scalar_one_or_none()
        if row is None:
            raise SubjectNotFoundError(self.subject_type, str(subject_id))
        return row

    # ------------------------------------------------------------------
    # Profile operations
    # ------------------------------------------------------------------

    def create_profile(
        self,
        full_name: str,
        id_number: str,
        created_by_id: UUID,
        date_of_birth: str | date | None = None,
        province: str | None = None,
        town: str | None = None,
        gender: str | None = None,
        phone: str | None = None,
    ) -> ApplicantProfile:
        """Create a profile and allocate its applicant number."""
        if not full_name or not id_number:
            raise InvalidChangeValueError(
                "full_name" if not full_name else "id_number", "required",
            )
        now = self._clock.now()
        number = SequenceService(self.session).next_value(APPLICANT_NUMBER_SEQUENCE)
        row = ApplicantProfileModel(
            applicant_number=f"AP-{number:05d}",
            full_name=full_name,
            id_number=id_number,
            date_of_birth=canonical_value(date_of_birth),
            province=province,
            town=town,
            gender=gender,
            phone=phone,
            created_at=now,
            updated_at=now,
            created_by_id=created_by_id,
        )
        self.session.add(row)
        self.session.flush()

        logger.info(
            "profile_created",
            extra={"subject_id": str(row.id), "applicant_number": row.applicant_number},
        )
        return row.to_dto()

    def get_profile(self, subject_id: UUID) -> ApplicantProfile:
        return self._load(subject_id).to_dto()

    def update_profile(
        self,
        subject_id: UUID,
        changes: Mapping[str, Any],
        actor_id: UUID,
        actor_role: str = "requester",
    ) -> ProfileUpdateResult:
        """
        Apply an edit, intercepting protected fields.

        Ordinary attributes are written immediately.  Each protected field
        whose value differs becomes a pending change request.  Location may
        be given either as ``location={"province": ..., "town": ...}`` or as
        both ``province`` and ``town`` keys.
        """
        direct, protected = self._split(changes)

        applied: list[str] = []
        unchanged: list[str] = []
        requests: list[ChangeRequest] = []

        with self.session.begin_nested():
            row = self._load(subject_id, lock=True)
            for attr, value in direct.items():
                if getattr(row, attr) != value:
                    setattr(row, attr, value)
                    applied.append(attr)
            if applied:
                row.updated_at = self._clock.now()
                self.session.flush()

            for field_name, value in protected.items():
                request = self._change_requests.propose_change(
                    self.subject_type, subject_id, field_name, value,
                    requested_by=actor_id,
                    requested_role=actor_role,
                )
                if request is None:
                    unchanged.append(field_name)
                else:
                    requests.append(request)

        logger.info(
            "profile_update_intercepted",
            extra={
                "subject_id": str(subject_id),
                "applied_fields": applied,
                "change_requests": [str(r.id) for r in requests],
            },
        )
        return ProfileUpdateResult(
            profile=self.get_profile(subject_id),
            applied=tuple(applied),
            change_requests=tuple(requests),
            unchanged=tuple(unchanged),
        )

    def _split(self, changes: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
        direct: dict[str, Any] = {}
        protected: dict[str, Any] = {}
        composite_parts: dict[str, dict[str, Any]] = {}

        for key, value in changes.items():
            value = canonical_value(value)
            if key in EDITABLE_ATTRIBUTES:
                direct[key] = value
                continue
            field = self._fields.get(key)
            if field is not None:
                protected[field.name] = value
                continue
            field = self._fields.field_for_attribute(key)
            if field is None:
                raise InvalidChangeValueError(key, "attribute is not editable")
            if field.is_composite:
                composite_parts.setdefault(field.name, {})[key] = value
            else:
                protected[field.name] = value

        for name, parts in composite_parts.items():
            if name in protected:
                raise InvalidChangeValueError(name, "given both as a whole and by parts")
            protected[name] = parts

        for name, value in protected.items():
            protected[name] = self._fields.normalize(name, value)
        return direct, protected

    def admin_patch(
        self,
        subject_id: UUID,
        changes: Mapping[str, Any],
        actor: Actor,
        reason: str,
    ) -> ApplicantProfile:
        """
        Administrative hot-patch: write attributes directly, bypassing
        change requests.  Recorded in the profile's history.
        """
        if self._admin_role is not None and actor.actor_role != self._admin_role:
            raise ForbiddenError(
                actor.actor_role,
                required_role=self._admin_role,
                reason="administrative patch",
            )

        with self.session.begin_nested():
            row = self._load(subject_id, lock=True)
            before: dict[str, Any] = {}
            after: dict[str, Any] = {}
            for attr, value in changes.items():
                if attr == "applicant_number" or not hasattr(ApplicantProfileModel, attr) \
                        or attr in ("id", "created_at", "updated_at", "created_by_id"):
                    raise InvalidChangeValueError(attr, "attribute cannot be patched")
                value = canonical_value(value)
                before[attr] = getattr(row, attr)
                after[attr] = value
                setattr(row, attr, value)
            row.updated_at = self._clock.now()
            self.session.flush()

            self._ledger.append(
                self.subject_type,
                subject_id,
                actor,
                TransitionAction.ADMIN_PATCH,
                PROFILE_RECORDED,
                PROFILE_RECORDED,
                comment=reason,
                details={"before": before, "after": after},
            )

        logger.warning(
            "profile_admin_patched",
            extra={
                "subject_id": str(subject_id),
                "fields": sorted(after),
                "actor_id": str(actor.actor_id),
            },
        )
        return row.to_dto()
