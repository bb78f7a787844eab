"""
ChangeRequestService -- dual-control edits of protected fields.

Responsibility:
    Manages the lifecycle of change requests (pending -> approved |
    rejected) for any record owner that exposes its protected fields
    through the ProtectedFieldOwner protocol.  It is the only writer of
    protected values outside the logged administrative patch path.

Architecture position:
    Kernel > Services -- imperative shell.  Writes outcomes to the
    HistoryLedger against the owning record (never the Application).

Invariants enforced:
    - No-op: proposing the current value creates nothing.
    - Single flight: at most one pending request per
      (subject_type, subject_id, field); a second proposal raises
      ChangeRequestConflictError (also backed by a partial unique index).
    - Dual control: the requester cannot resolve their own request, and a
      supplied authorizer role must be the configured authorizer role.
    - Staleness: approval re-reads the live value under lock and refuses
      to apply when it no longer equals the value captured at proposal.
      The request stays pending.
    - Terminal requests are immutable (ORM listener on the model).

Failure modes:
    - SubjectNotFoundError, ChangeRequestNotFoundError,
      InvalidChangeValueError, ChangeRequestConflictError,
      ChangeRequestAlreadyResolvedError, StaleChangeRequestError,
      ForbiddenError.
"""

from __future__ import annotations

from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from licensing_kernel.domain.clock import Clock, SystemClock
from licensing_kernel.domain.dtos import (
    Actor,
    ChangeDecision,
    ChangeRequest,
    ChangeRequestStatus,
)
from licensing_kernel.domain.pipeline import TransitionAction
from licensing_kernel.domain.protected_fields import ProtectedField, ProtectedFieldSet
from licensing_kernel.exceptions import (
    ChangeRequestAlreadyResolvedError,
    ChangeRequestConflictError,
    ChangeRequestNotFoundError,
    ForbiddenError,
    InvalidChangeValueError,
    StaleChangeRequestError,
    SubjectNotFoundError,
)
from licensing_kernel.logging_config import get_logger
from licensing_kernel.models.change_request import ChangeRequestModel
from licensing_kernel.services.base import BaseService
from licensing_kernel.services.history_ledger import HistoryLedger

logger = get_logger("services.change_request")

# from_status of the proposal entry in an owner's history
NO_REQUEST = "none"


class ProtectedFieldOwner(Protocol):
    """A record family whose protected fields route through change requests."""

    @property
    def subject_type(self) -> str: ...

    @property
    def protected_fields(self) -> ProtectedFieldSet: ...

    def exists(self, subject_id: UUID) -> bool: ...

    def read_field(self, subject_id: UUID, field: ProtectedField, lock: bool = False) -> Any: ...

    def write_field(self, subject_id: UUID, field: ProtectedField, value: Any) -> None: ...


class ChangeRequestService(BaseService[ChangeRequestModel]):
    """
    Propose and resolve changes to protected fields.

    Contract:
        Owners register themselves with ``register_owner``; every call names
        the subject_type so one service instance serves all owners.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT decide which attributes are protected; owners do.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        ledger: HistoryLedger | None = None,
        authorizer_role: str | None = None,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._ledger = ledger or HistoryLedger(session, self._clock)
        self._authorizer_role = authorizer_role
        self._owners: dict[str, ProtectedFieldOwner] = {}

    def register_owner(self, owner: ProtectedFieldOwner) -> None:
        self._owners[owner.subject_type] = owner

    def _owner(self, subject_type: str) -> ProtectedFieldOwner:
        owner = self._owners.get(subject_type)
        if owner is None:
            raise InvalidChangeValueError(
                subject_type, "no protected-field owner registered for this subject type",
            )
        return owner

    # ------------------------------------------------------------------
    # Propose
    # ------------------------------------------------------------------

    def propose_change(
        self,
        subject_type: str,
        subject_id: UUID,
        field: str,
        new_value: Any,
        requested_by: UUID,
        requested_role: str = "requester",
    ) -> ChangeRequest | None:
        """
        Open a pending change request, or return None when *new_value*
        already equals the stored value.

        Raises:
            ChangeRequestConflictError: A request for this field is pending.
        """
        owner = self._owner(subject_type)
        protected = owner.protected_fields.require(field)
        value = owner.protected_fields.normalize(field, new_value)

        with self.session.begin_nested():
            if not owner.exists(subject_id):
                raise SubjectNotFoundError(subject_type, str(subject_id))

            current = owner.read_field(subject_id, protected, lock=True)
            if current == value:
                logger.info(
                    "change_request_noop",
                    extra={
                        "subject_type": subject_type,
                        "subject_id": str(subject_id),
                        "field": field,
                    },
                )
                return None

            pending = self._pending_for(subject_type, subject_id, field)
            if pending is not None:
                self._conflict(subject_type, subject_id, field, pending.id)

            row = ChangeRequestModel(
                subject_type=subject_type,
                subject_id=subject_id,
                field=field,
                old_value=current,
                new_value=value,
                status=ChangeRequestStatus.PENDING.value,
                requested_by=requested_by,
                created_at=self._clock.now(),
                note="",
            )
            try:
                with self.session.begin_nested():
                    self.session.add(row)
                    self.session.flush()
            except IntegrityError:
                pending = self._pending_for(subject_type, subject_id, field)
                self._conflict(
                    subject_type, subject_id, field,
                    pending.id if pending is not None else None,
                )

            self._ledger.append(
                subject_type,
                subject_id,
                Actor(requested_by, requested_role),
                TransitionAction.CHANGE_PROPOSED,
                NO_REQUEST,
                ChangeRequestStatus.PENDING.value,
                comment=f"change to {field} proposed",
                details=self._details(row),
            )

        logger.info(
            "change_request_created",
            extra={
                "change_request_id": str(row.id),
                "subject_type": subject_type,
                "subject_id": str(subject_id),
                "field": field,
                "requested_by": str(requested_by),
            },
        )
        return row.to_dto()

    def _pending_for(
        self, subject_type: str, subject_id: UUID, field: str,
    ) -> ChangeRequestModel | None:
        return self.session.execute(
            select(ChangeRequestModel).where(
                ChangeRequestModel.subject_type == subject_type,
                ChangeRequestModel.subject_id == subject_id,
                ChangeRequestModel.field == field,
                ChangeRequestModel.status == ChangeRequestStatus.PENDING.value,
            )
        ).scalar_one_or_none()

    def _conflict(self, subject_type, subject_id, field, pending_id) -> None:
        logger.warning(
            "change_request_conflict",
            extra={
                "subject_type": subject_type,
                "subject_id": str(subject_id),
                "field": field,
                "pending_request_id": str(pending_id),
            },
        )
        raise ChangeRequestConflictError(str(subject_id), field, str(pending_id))

    # ------------------------------------------------------------------
    # Resolve
    # ------------------------------------------------------------------

    def resolve(
        self,
        change_request_id: UUID,
        authorizer_id: UUID,
        decision: ChangeDecision | str,
        note: str = "",
        authorizer_role: str | None = None,
    ) -> ChangeRequest:
        """
        Approve or reject a pending request.

        Approval applies the new value to the owner only if the live value
        still equals the value captured at proposal time.

        Raises:
            StaleChangeRequestError: The live value drifted; the request
                remains pending.
        """
        decision = ChangeDecision(decision)

        with self.session.begin_nested():
            row = self.session.execute(
                select(ChangeRequestModel)
                .where(ChangeRequestModel.id == change_request_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            if row is None:
                raise ChangeRequestNotFoundError(str(change_request_id))
            if row.status != ChangeRequestStatus.PENDING.value:
                raise ChangeRequestAlreadyResolvedError(str(row.id), row.status)

            role = authorizer_role or "authorizer"
            if row.requested_by == authorizer_id:
                raise ForbiddenError(
                    role, reason="a change request cannot be resolved by its requester",
                )
            if (
                authorizer_role is not None
                and self._authorizer_role is not None
                and authorizer_role != self._authorizer_role
            ):
                raise ForbiddenError(
                    authorizer_role,
                    required_role=self._authorizer_role,
                    reason="only the change authorizer may resolve change requests",
                )

            owner = self._owner(row.subject_type)
            protected = owner.protected_fields.require(row.field)

            if decision == ChangeDecision.APPROVE:
                current = owner.read_field(row.subject_id, protected, lock=True)
                if current != row.old_value:
                    logger.warning(
                        "change_request_stale",
                        extra={
                            "change_request_id": str(row.id),
                            "field": row.field,
                        },
                    )
                    raise StaleChangeRequestError(
                        str(row.id), row.field, row.old_value, current,
                    )
                owner.write_field(row.subject_id, protected, row.new_value)
                new_status = ChangeRequestStatus.APPROVED
                action = TransitionAction.CHANGE_APPROVED
            else:
                new_status = ChangeRequestStatus.REJECTED
                action = TransitionAction.CHANGE_REJECTED

            row.status = new_status.value
            row.resolved_by = authorizer_id
            row.resolved_at = self._clock.now()
            row.note = note or ""
            self.session.flush()

            self._ledger.append(
                row.subject_type,
                row.subject_id,
                Actor(authorizer_id, role),
                action,
                ChangeRequestStatus.PENDING.value,
                new_status.value,
                comment=note or "",
                details=self._details(row),
            )

        logger.info(
            "change_request_resolved",
            extra={
                "change_request_id": str(row.id),
                "decision": decision.value,
                "field": row.field,
                "authorizer_id": str(authorizer_id),
            },
        )
        return row.to_dto()

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get(self, change_request_id: UUID) -> ChangeRequest:
        row = self.session.get(ChangeRequestModel, change_request_id)
        if row is None:
            raise ChangeRequestNotFoundError(str(change_request_id))
        return row.to_dto()

    def list_pending(
        self,
        subject_type: str | None = None,
        subject_id: UUID | None = None,
    ) -> list[ChangeRequest]:
        """Pending requests, oldest first (the authorizer's queue)."""
        stmt = select(ChangeRequestModel).where(
            ChangeRequestModel.status == ChangeRequestStatus.PENDING.value,
        )
        if subject_type is not None:
            stmt = stmt.where(ChangeRequestModel.subject_type == subject_type)
        if subject_id is not None:
            stmt = stmt.where(ChangeRequestModel.subject_id == subject_id)
        stmt = stmt.order_by(ChangeRequestModel.created_at, ChangeRequestModel.id)
        return [row.to_dto() for row in self.session.execute(stmt).scalars()]

    @staticmethod
    def _details(row: ChangeRequestModel) -> dict[str, Any]:
        return {
            "change_request_id": str(row.id),
            "field": row.field,
            "old_value": row.old_value,
            "new_value": row.new_value,
        }
