"""
Frozen data transfer objects for the licensing kernel.

Services and selectors return these instead of ORM instances so callers can
never mutate persisted state behind the Phase Engine's back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from licensing_kernel.domain.pipeline import TransitionAction


@dataclass(frozen=True)
class Actor:
    """Authenticated identity plus role, supplied by the auth collaborator.

    The kernel trusts this input and does not verify credentials.
    """

    actor_id: UUID
    actor_role: str


@dataclass(frozen=True)
class ApplicationRecord:
    """Read-only view of an application."""

    id: UUID
    status: str
    applicant_ref: UUID
    asset_token_ref: str | None
    payload: dict[str, Any]
    title: str
    province: str | None
    town: str | None
    status_sequence: int
    created_at: datetime
    updated_at: datetime
    created_by_id: UUID

    @property
    def is_flagged(self) -> bool:
        return bool(self.payload.get("flagged"))


@dataclass(frozen=True)
class HistoryEntry:
    """One immutable ledger row."""

    record_type: str
    record_id: UUID
    sequence: int
    actor_id: UUID
    actor_role: str
    from_status: str
    to_status: str
    action: TransitionAction
    comment: str
    occurred_at: datetime
    client_request_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    prev_hash: str | None = None
    hash: str = ""

    @property
    def application_id(self) -> UUID:
        return self.record_id


class ChangeRequestStatus(str, Enum):
    """Change request lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


CHANGE_REQUEST_TRANSITIONS: dict[ChangeRequestStatus, frozenset[ChangeRequestStatus]] = {
    ChangeRequestStatus.PENDING: frozenset({
        ChangeRequestStatus.APPROVED,
        ChangeRequestStatus.REJECTED,
    }),
    ChangeRequestStatus.APPROVED: frozenset(),
    ChangeRequestStatus.REJECTED: frozenset(),
}

TERMINAL_CHANGE_REQUEST_STATUSES: frozenset[ChangeRequestStatus] = frozenset({
    ChangeRequestStatus.APPROVED,
    ChangeRequestStatus.REJECTED,
})


class ChangeDecision(str, Enum):
    """Decisions an authorizer can make on a change request."""

    APPROVE = "approve"
    REJECT = "reject"


@dataclass(frozen=True)
class ChangeRequest:
    """Read-only view of a change request."""

    id: UUID
    subject_type: str
    subject_id: UUID
    field: str
    old_value: Any
    new_value: Any
    status: ChangeRequestStatus
    requested_by: UUID
    created_at: datetime
    resolved_by: UUID | None = None
    resolved_at: datetime | None = None
    note: str = ""

    @property
    def is_pending(self) -> bool:
        return self.status == ChangeRequestStatus.PENDING


@dataclass(frozen=True)
class UniquenessClaim:
    """Read-only view of a token claim row."""

    asset_token_ref: str
    holding_application_id: UUID | None
    claimed_at: datetime | None
    released_at: datetime | None = None


@dataclass(frozen=True)
class ApplicantProfile:
    """Read-only view of an applicant profile."""

    id: UUID
    applicant_number: str
    full_name: str
    id_number: str
    date_of_birth: str | None
    province: str | None
    town: str | None
    gender: str | None
    phone: str | None
    created_at: datetime
    updated_at: datetime
