"""
PhaseEngine -- role-gated state machine over the licensing pipeline.

Responsibility:
    The only writer of Application.status and of the uniqueness claims tied
    to it.  Validates each transition against the pipeline definition and
    the actor's role, claims or releases asset tokens, merges the payload,
    appends the history entry, and writes the new status.

Architecture position:
    Kernel > Services -- imperative shell.  Consumes PipelineDefinition
    (pure domain) and coordinates HistoryLedger and UniquenessRegistry.
    Called by LicensingWorkflowService, which owns the transaction.

Invariants enforced:
    - Serialization: every operation locks the application row
      (``SELECT ... FOR UPDATE``) before it evaluates preconditions.
    - Atomicity: claim, history append and status write happen inside one
      savepoint; any exception rolls all three back and leaves the
      application exactly as it was.
    - Replay: each status change is produced by exactly one history entry
      whose from/to pair is a valid pipeline edge, so folding the history
      from the initial phase reproduces the status.
    - Role gate: advance, reject and forward require the role that owns
      the current phase; reset requires the administrative role; flag,
      unflag and request-info are open to any role.
    - Exactly-once: a client_request_id already present in the
      application's history makes a retry of the same operation by the
      same actor return the current state without writing anything; any
      other reuse of the key is refused.

Failure modes:
    - ApplicationNotFoundError, ForbiddenError, InvalidTransitionError
      (incl. ApplicationFlaggedError, ClientRequestReusedError),
      TokenConflictError, ConcurrentWriteError.
    - ReplayMismatchError from verify_replay().

Audit relevance:
    Each accepted operation writes one HistoryEntry and logs
    ``application_transition``; each refused one logs
    ``transition_refused`` with the error code.
"""

from __future__ import annotations

import copy
from contextlib import contextmanager
from typing import Any, Iterator, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from licensing_kernel.domain.clock import Clock, SystemClock
from licensing_kernel.domain.dtos import Actor, ApplicationRecord
from licensing_kernel.domain.pipeline import (
    PipelineDefinition,
    ReplayResult,
    TransitionAction,
    replay_status,
)
from licensing_kernel.exceptions import (
    ApplicationFlaggedError,
    ApplicationNotFoundError,
    ClientRequestReusedError,
    ForbiddenError,
    InvalidTransitionError,
    LicensingKernelError,
    ReplayMismatchError,
)
from licensing_kernel.logging_config import get_logger
from licensing_kernel.models.application import ApplicationModel
from licensing_kernel.services.base import BaseService
from licensing_kernel.services.history_ledger import APPLICATION_RECORD, HistoryLedger
from licensing_kernel.services.uniqueness_registry import UniquenessRegistry

logger = get_logger("services.phase_engine")


class PhaseEngine(BaseService[ApplicationModel]):
    """
    Orchestrates every status-affecting operation on an application.

    Contract:
        Each public mutating method returns the updated ApplicationRecord
        or raises a typed LicensingKernelError with no partial effect.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT call external collaborators (notifications, minting);
          the services layer does that after commit.
    """

    def __init__(
        self,
        session: Session,
        pipeline: PipelineDefinition,
        clock: Clock | None = None,
        ledger: HistoryLedger | None = None,
        registry: UniquenessRegistry | None = None,
    ):
        super().__init__(session)
        self._pipeline = pipeline
        self._clock = clock or SystemClock()
        self._ledger = ledger or HistoryLedger(session, self._clock)
        self._registry = registry or UniquenessRegistry(session, self._clock)

    @property
    def pipeline(self) -> PipelineDefinition:
        return self._pipeline

    # ------------------------------------------------------------------
    # Pipeline operations
    # ------------------------------------------------------------------

    def advance(
        self,
        application_id: UUID,
        actor: Actor,
        comment: str = "",
        payload_patch: dict[str, Any] | None = None,
        documents: Sequence[str] | None = None,
        client_request_id: str | None = None,
    ) -> ApplicationRecord:
        """
        Move the application to the next phase.

        ``payload_patch`` is merged into the current phase's section and
        ``documents`` are appended to the document list.  Advancing into
        the approved status claims the asset token, if the application
        has one.
        """
        with self._operation(application_id, actor, TransitionAction.ADVANCE,
                             client_request_id) as (row, done):
            if done is not None:
                return done
            self._require_active(row, TransitionAction.ADVANCE)
            self._require_phase_role(row, actor)

            phase = row.status
            to_status = self._pipeline.next_status(phase)
            details: dict[str, Any] = {}
            if payload_patch:
                details["payload_patch"] = dict(payload_patch)
            if documents:
                details["documents"] = list(documents)
            details.update(self._claim_if_completing(row, to_status))

            payload = self._payload_copy(row)
            self._merge_section(payload, phase, payload_patch)
            if documents:
                payload["documents"] = list(payload.get("documents", [])) + list(documents)

            return self._record(
                row, actor, TransitionAction.ADVANCE, to_status, payload,
                comment=comment,
                client_request_id=client_request_id,
                details=details,
            )

    def reject(
        self,
        application_id: UUID,
        actor: Actor,
        reason: str,
        client_request_id: str | None = None,
    ) -> ApplicationRecord:
        """Move the application to the rejected terminal status."""
        with self._operation(application_id, actor, TransitionAction.REJECT,
                             client_request_id) as (row, done):
            if done is not None:
                return done
            self._require_active(row, TransitionAction.REJECT)
            self._require_phase_role(row, actor)

            details = self._release_claim(row)
            return self._record(
                row, actor, TransitionAction.REJECT, self._pipeline.rejected_status,
                self._payload_copy(row),
                comment=reason,
                client_request_id=client_request_id,
                details=details,
            )

    def flag(
        self,
        application_id: UUID,
        actor: Actor,
        reason: str,
        client_request_id: str | None = None,
    ) -> ApplicationRecord:
        """Set the flagged marker.  Any role; status unchanged."""
        return self._set_flag(application_id, actor, reason, True, client_request_id)

    def unflag(
        self,
        application_id: UUID,
        actor: Actor,
        reason: str,
        client_request_id: str | None = None,
    ) -> ApplicationRecord:
        """Clear the flagged marker.  Any role; status unchanged."""
        return self._set_flag(application_id, actor, reason, False, client_request_id)

    def _set_flag(
        self,
        application_id: UUID,
        actor: Actor,
        reason: str,
        flagged: bool,
        client_request_id: str | None,
    ) -> ApplicationRecord:
        action = TransitionAction.FLAG if flagged else TransitionAction.UNFLAG
        with self._operation(application_id, actor, action,
                             client_request_id) as (row, done):
            if done is not None:
                return done
            self._require_active(row, action)
            payload = self._payload_copy(row)
            if bool(payload.get("flagged")) == flagged:
                raise InvalidTransitionError(
                    str(row.id), row.status,
                    "already flagged" if flagged else "not flagged",
                )
            payload["flagged"] = flagged
            payload["flags"] = list(payload.get("flags", [])) + [
                self._annotation(actor, action=action.value, reason=reason)
            ]
            return self._record(
                row, actor, action, row.status, payload,
                comment=reason,
                client_request_id=client_request_id,
            )

    def forward(
        self,
        application_id: UUID,
        actor: Actor,
        target_branch: str,
        note: str = "",
        override: bool = False,
        client_request_id: str | None = None,
        province: str | None = None,
        town: str | None = None,
    ) -> ApplicationRecord:
        """
        Route the application to one downstream branch and advance it.

        Only allowed on a phase that supports branching.  A flagged
        application is forwarded only with ``override=True``.  ``province``
        and ``town`` re-route the application for the downstream queues;
        omitted values keep the current routing.
        """
        with self._operation(application_id, actor, TransitionAction.FORWARD,
                             client_request_id) as (row, done):
            if done is not None:
                return done
            self._require_active(row, TransitionAction.FORWARD)
            self._require_phase_role(row, actor)

            phase = self._pipeline.phase(row.status)
            if not phase.supports_branching:
                raise InvalidTransitionError(
                    str(row.id), row.status, "phase does not support branching",
                )
            branch = (target_branch or "").strip()
            if not branch:
                raise InvalidTransitionError(str(row.id), row.status, "target branch is required")
            if phase.allowed_branches and branch not in phase.allowed_branches:
                raise InvalidTransitionError(
                    str(row.id), row.status, f"unknown branch '{branch}'",
                )
            if (row.payload or {}).get("flagged") and not override:
                raise ApplicationFlaggedError(str(row.id), row.status)

            to_status = self._pipeline.next_status(row.status)
            details: dict[str, Any] = {"branch": branch, "override": override}
            details.update(self._claim_if_completing(row, to_status))

            if province:
                row.province = province
            if town:
                row.town = town
            details["province"] = row.province
            details["town"] = row.town

            payload = self._payload_copy(row)
            payload["forward"] = self._annotation(
                actor, branch=branch, note=note, province=row.province, town=row.town,
            )

            return self._record(
                row, actor, TransitionAction.FORWARD, to_status, payload,
                comment=note,
                client_request_id=client_request_id,
                details=details,
            )

    def request_info(
        self,
        application_id: UUID,
        actor: Actor,
        note: str,
        client_request_id: str | None = None,
    ) -> ApplicationRecord:
        """Annotate the application with a request for more information."""
        with self._operation(application_id, actor, TransitionAction.REQUEST_INFO,
                             client_request_id) as (row, done):
            if done is not None:
                return done
            self._require_active(row, TransitionAction.REQUEST_INFO)
            payload = self._payload_copy(row)
            payload["info_requests"] = list(payload.get("info_requests", [])) + [
                self._annotation(actor, phase=row.status, note=note)
            ]
            return self._record(
                row, actor, TransitionAction.REQUEST_INFO, row.status, payload,
                comment=note,
                client_request_id=client_request_id,
            )

    def reset(
        self,
        application_id: UUID,
        actor: Actor,
        reason: str,
        target_phase: str | None = None,
        client_request_id: str | None = None,
    ) -> ApplicationRecord:
        """
        Administrative reset to an active phase, from any status.

        Releases any token claim the application holds in the same
        savepoint as the status write.
        """
        target = target_phase or self._pipeline.initial_status
        with self._operation(application_id, actor, TransitionAction.RESET,
                             client_request_id) as (row, done):
            if done is not None:
                return done
            if actor.actor_role != self._pipeline.admin_role:
                raise ForbiddenError(
                    actor.actor_role,
                    phase=row.status,
                    required_role=self._pipeline.admin_role,
                    reason="reset is an administrative action",
                )
            if not self._pipeline.is_active(target):
                raise InvalidTransitionError(
                    str(row.id), row.status, f"'{target}' is not an active phase",
                )

            details = {"target_phase": target}
            details.update(self._release_claim(row))

            payload = self._payload_copy(row)
            payload["reset_log"] = list(payload.get("reset_log", [])) + [
                self._annotation(actor, from_status=row.status, to_status=target, reason=reason)
            ]
            return self._record(
                row, actor, TransitionAction.RESET, target, payload,
                comment=reason,
                client_request_id=client_request_id,
                details=details,
            )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_replay(self, application_id: UUID) -> ReplayResult:
        """
        Fold the application's history and compare with the stored status.

        Raises:
            ReplayMismatchError: The history diverges or folds to a
                different status.
        """
        row = self.session.get(ApplicationModel, application_id)
        if row is None:
            raise ApplicationNotFoundError(str(application_id))

        result = replay_status(
            self._pipeline,
            self._ledger.iter_by_application(application_id),
        )
        if not result.is_consistent or result.status != row.status:
            logger.critical(
                "replay_mismatch",
                extra={
                    "application_id": str(application_id),
                    "stored_status": row.status,
                    "replayed_status": result.status,
                    "divergent_sequence": result.divergent_sequence,
                },
            )
            raise ReplayMismatchError(
                str(application_id), row.status, result.status,
                result.divergent_sequence,
            )
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _operation(
        self,
        application_id: UUID,
        actor: Actor,
        action: TransitionAction,
        client_request_id: str | None,
    ) -> Iterator[tuple[ApplicationModel, ApplicationRecord | None]]:
        """
        Savepoint + row lock around one operation.

        Yields the locked row and, when the client_request_id was already
        applied, the current record to return unchanged.
        """
        try:
            with self.session.begin_nested():
                row = self.session.execute(
                    select(ApplicationModel)
                    .where(ApplicationModel.id == application_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                ).scalar_one_or_none()
                if row is None:
                    raise ApplicationNotFoundError(str(application_id))

                done = None
                if client_request_id is not None:
                    prior = self._ledger.find_by_client_request(
                        APPLICATION_RECORD, row.id, client_request_id,
                    )
                    if prior is not None:
                        if prior.action != action or prior.actor_id != actor.actor_id:
                            raise ClientRequestReusedError(
                                str(row.id), row.status, client_request_id,
                            )
                        logger.info(
                            "transition_replayed",
                            extra={
                                "application_id": str(row.id),
                                "client_request_id": client_request_id,
                                "sequence": prior.sequence,
                            },
                        )
                        done = row.to_dto()
                yield row, done
        except LicensingKernelError as exc:
            logger.warning(
                "transition_refused",
                extra={
                    "application_id": str(application_id),
                    "action": action.value,
                    "actor_id": str(actor.actor_id),
                    "actor_role": actor.actor_role,
                    "error_code": exc.code,
                },
            )
            raise

    def _require_active(self, row: ApplicationModel, action: TransitionAction) -> None:
        if not self._pipeline.is_active(row.status):
            raise InvalidTransitionError(
                str(row.id), row.status,
                f"cannot {action.value} an application in terminal status",
            )

    def _require_phase_role(self, row: ApplicationModel, actor: Actor) -> None:
        required = self._pipeline.role_for(row.status)
        if actor.actor_role != required:
            raise ForbiddenError(actor.actor_role, phase=row.status, required_role=required)

    def _claim_if_completing(self, row: ApplicationModel, to_status: str) -> dict[str, Any]:
        if to_status != self._pipeline.completed_status or not row.asset_token_ref:
            return {}
        self._registry.claim(row.asset_token_ref, row.id)
        return {"claimed_token": row.asset_token_ref}

    def _release_claim(self, row: ApplicationModel) -> dict[str, Any]:
        if row.asset_token_ref and self._registry.release(row.asset_token_ref, row.id):
            return {"released_token": row.asset_token_ref}
        return {}

    @staticmethod
    def _payload_copy(row: ApplicationModel) -> dict[str, Any]:
        # New object every time so the JSON column sees the change.
        return copy.deepcopy(row.payload or {})

    @staticmethod
    def _merge_section(
        payload: dict[str, Any],
        phase: str,
        patch: dict[str, Any] | None,
    ) -> None:
        if not patch:
            return
        sections = payload.setdefault("sections", {})
        sections[phase] = {**sections.get(phase, {}), **patch}

    def _annotation(self, actor: Actor, **fields: Any) -> dict[str, Any]:
        return {
            **fields,
            "by": str(actor.actor_id),
            "role": actor.actor_role,
            "at": self._clock.now().isoformat(),
        }

    def _record(
        self,
        row: ApplicationModel,
        actor: Actor,
        action: TransitionAction,
        to_status: str,
        payload: dict[str, Any],
        comment: str = "",
        client_request_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> ApplicationRecord:
        # History first: the savepoint autoflush must not see a status
        # change without its sequence.
        from_status = row.status
        entry = self._ledger.append(
            APPLICATION_RECORD,
            row.id,
            actor,
            action,
            from_status,
            to_status,
            comment=comment,
            client_request_id=client_request_id,
            details=details,
        )

        row.payload = payload
        row.status_sequence = entry.sequence
        if to_status != from_status:
            row.status = to_status
        row.updated_at = self._clock.now()
        self.session.flush()

        logger.info(
            "application_transition",
            extra={
                "application_id": str(row.id),
                "action": action.value,
                "from_status": from_status,
                "to_status": to_status,
                "sequence": entry.sequence,
                "actor_id": str(actor.actor_id),
                "actor_role": actor.actor_role,
            },
        )
        return row.to_dto()
