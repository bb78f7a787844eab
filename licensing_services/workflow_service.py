"""
licensing_services.workflow_service -- transactional facade over the kernel.

Responsibility:
    The single entry point for collaborators.  Every public method runs in
    exactly one database transaction: it opens a session, builds the
    kernel services for it, performs the operation, commits, and only then
    notifies transition listeners.

Architecture position:
    Services -- above licensing_kernel and licensing_config.  Nothing in
    the kernel imports this module.

Invariants enforced:
    - One operation, one transaction; a failure rolls back every effect.
    - The ORM immutability guards are installed before the first operation.
    - Listeners see committed transitions only, in sequence order, and
      their failures never affect the operation's result.
    - Store outages are retried a bounded number of times with linear
      backoff, then surface as UnavailableError.  Lost write races
      (ConcurrentWriteError) are retried the same number of times and
      then re-raised unchanged.

Failure modes:
    Every LicensingKernelError raised by the kernel propagates verbatim.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Mapping
from datetime import date
from typing import Any, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from licensing_config import get_active_config
from licensing_config.bridges import build_pipeline, build_protected_fields
from licensing_config.schema import WorkflowConfigurationSet
from licensing_kernel.db.immutability import register_immutability_listeners
from licensing_kernel.domain.clock import Clock, SystemClock
from licensing_kernel.domain.dtos import (
    Actor,
    ApplicantProfile,
    ApplicationRecord,
    ChangeDecision,
    ChangeRequest,
    HistoryEntry,
    UniquenessClaim,
)
from licensing_kernel.domain.pipeline import PipelineDefinition, ReplayResult
from licensing_kernel.exceptions import (
    ConcurrentWriteError,
    ForbiddenError,
    UnavailableError,
)
from licensing_kernel.logging_config import LogContext, get_logger
from licensing_kernel.services.history_ledger import APPLICATION_RECORD
from licensing_kernel.services.profile_service import ProfileUpdateResult
from licensing_services.notifications import (
    TransitionListener,
    TransitionNotice,
    dispatch,
)
from licensing_services.orchestrator import KernelServices

logger = get_logger("services.workflow")

T = TypeVar("T")


class LicensingWorkflowService:
    """
    Facade exposing every workflow operation with a transaction per call.

    Usage:
        service = LicensingWorkflowService(get_session_factory())
        app = service.create_application(dealer, applicant_ref, asset_token_ref="SN-1")
        service.advance(app.id, dealer, comment="documents attached")
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: WorkflowConfigurationSet | None = None,
        clock: Clock | None = None,
        listeners: Iterable[TransitionListener] = (),
        max_attempts: int = 3,
        backoff_seconds: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        register_immutability_listeners()
        self._session_factory = session_factory
        self._config = config or get_active_config()
        self._pipeline = build_pipeline(self._config)
        self._protected_fields = build_protected_fields(self._config)
        self._clock = clock or SystemClock()
        self._listeners: list[TransitionListener] = list(listeners)
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self._sleep = sleep

    @property
    def config(self) -> WorkflowConfigurationSet:
        return self._config

    @property
    def pipeline(self) -> PipelineDefinition:
        return self._pipeline

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Transaction runner
    # ------------------------------------------------------------------

    def _run(
        self,
        operation: str,
        work: Callable[[KernelServices], T],
        actor: Actor | None = None,
        application_id: UUID | None = None,
    ) -> T:
        attempt = 0
        with LogContext.bind(
            correlation_id=str(uuid4()),
            application_id=str(application_id) if application_id else None,
            actor_id=str(actor.actor_id) if actor else None,
            actor_role=actor.actor_role if actor else None,
        ):
            while True:
                attempt += 1
                session = self._session_factory()
                try:
                    services = KernelServices(
                        session,
                        self._pipeline,
                        self._protected_fields,
                        clock=self._clock,
                        authorizer_role=self._config.change_control.authorizer_role,
                    )
                    result = work(services)
                    session.commit()
                except OperationalError as exc:
                    session.rollback()
                    if attempt >= self._max_attempts:
                        logger.error(
                            "store_unavailable",
                            extra={"operation": operation, "attempts": attempt},
                        )
                        raise UnavailableError(operation, attempt, str(exc.orig or exc)) from exc
                    self._backoff(operation, attempt, "OperationalError")
                    continue
                except ConcurrentWriteError:
                    session.rollback()
                    if attempt >= self._max_attempts:
                        raise
                    self._backoff(operation, attempt, "ConcurrentWriteError")
                    continue
                except Exception:
                    session.rollback()
                    raise
                finally:
                    session.close()

                logger.debug(
                    "operation_committed",
                    extra={"operation": operation, "attempts": attempt},
                )
                self._notify(services, result)
                return result

    def _backoff(self, operation: str, attempt: int, reason: str) -> None:
        delay = self._backoff_seconds * attempt
        logger.warning(
            "operation_retry",
            extra={
                "operation": operation,
                "attempt": attempt,
                "max_attempts": self._max_attempts,
                "reason": reason,
                "delay_seconds": delay,
            },
        )
        self._sleep(delay)

    def _notify(self, services: KernelServices, result: Any) -> None:
        if not self._listeners:
            return
        token = result.asset_token_ref if isinstance(result, ApplicationRecord) else None
        notices = [
            TransitionNotice.from_entry(entry, token)
            for entry in services.ledger.appended
            if entry.record_type == APPLICATION_RECORD
        ]
        dispatch(self._listeners, notices)

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    def create_application(
        self,
        actor: Actor,
        applicant_ref: UUID,
        asset_token_ref: str | None = None,
        title: str = "",
        payload: dict[str, Any] | None = None,
        province: str | None = None,
        town: str | None = None,
    ) -> ApplicationRecord:
        """Create an application at intake.  Only the intake role may create."""
        intake_role = self._pipeline.role_for(self._pipeline.initial_status)
        if actor.actor_role != intake_role:
            logger.warning(
                "application_create_refused",
                extra={"actor_role": actor.actor_role, "required_role": intake_role},
            )
            raise ForbiddenError(
                actor.actor_role,
                phase=self._pipeline.initial_status,
                required_role=intake_role,
            )
        return self._run(
            "create_application",
            lambda s: s.applications.create(
                applicant_ref,
                actor.actor_id,
                asset_token_ref=asset_token_ref,
                title=title,
                payload=payload,
                province=province,
                town=town,
            ),
            actor=actor,
        )

    def get_application(self, application_id: UUID) -> ApplicationRecord:
        return self._run(
            "get_application",
            lambda s: s.selector.get(application_id),
            application_id=application_id,
        )

    def list_pending(
        self,
        role: str,
        province: str | None = None,
        town: str | None = None,
        limit: int | None = None,
    ) -> list[ApplicationRecord]:
        """Work queue for *role*: applications waiting in the phase it owns."""
        return self._run(
            "list_pending",
            lambda s: s.selector.list_pending_for_role(
                role, province=province, town=town, limit=limit,
            ),
        )

    def list_by_applicant(self, applicant_ref: UUID) -> list[ApplicationRecord]:
        return self._run(
            "list_by_applicant",
            lambda s: s.selector.list_by_applicant(applicant_ref),
        )

    def history(
        self,
        application_id: UUID,
        after_sequence: int = 0,
        limit: int | None = None,
    ) -> list[HistoryEntry]:
        return self._run(
            "history",
            lambda s: s.ledger.list_by_application(application_id, after_sequence, limit),
            application_id=application_id,
        )

    def advance(
        self,
        application_id: UUID,
        actor: Actor,
        comment: str = "",
        payload_patch: dict[str, Any] | None = None,
        documents: list[str] | None = None,
        client_request_id: str | None = None,
    ) -> ApplicationRecord:
        return self._run(
            "advance",
            lambda s: s.engine.advance(
                application_id, actor,
                comment=comment,
                payload_patch=payload_patch,
                documents=documents,
                client_request_id=client_request_id,
            ),
            actor=actor,
            application_id=application_id,
        )

    def reject(
        self,
        application_id: UUID,
        actor: Actor,
        reason: str,
        client_request_id: str | None = None,
    ) -> ApplicationRecord:
        return self._run(
            "reject",
            lambda s: s.engine.reject(
                application_id, actor, reason, client_request_id=client_request_id,
            ),
            actor=actor,
            application_id=application_id,
        )

    def flag(
        self,
        application_id: UUID,
        actor: Actor,
        reason: str,
        client_request_id: str | None = None,
    ) -> ApplicationRecord:
        return self._run(
            "flag",
            lambda s: s.engine.flag(
                application_id, actor, reason, client_request_id=client_request_id,
            ),
            actor=actor,
            application_id=application_id,
        )

    def unflag(
        self,
        application_id: UUID,
        actor: Actor,
        reason: str,
        client_request_id: str | None = None,
    ) -> ApplicationRecord:
        return self._run(
            "unflag",
            lambda s: s.engine.unflag(
                application_id, actor, reason, client_request_id=client_request_id,
            ),
            actor=actor,
            application_id=application_id,
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
        return self._run(
            "forward",
            lambda s: s.engine.forward(
                application_id, actor, target_branch,
                note=note,
                override=override,
                client_request_id=client_request_id,
                province=province,
                town=town,
            ),
            actor=actor,
            application_id=application_id,
        )

    def request_info(
        self,
        application_id: UUID,
        actor: Actor,
        note: str,
        client_request_id: str | None = None,
    ) -> ApplicationRecord:
        return self._run(
            "request_info",
            lambda s: s.engine.request_info(
                application_id, actor, note, client_request_id=client_request_id,
            ),
            actor=actor,
            application_id=application_id,
        )

    def reset(
        self,
        application_id: UUID,
        actor: Actor,
        reason: str,
        target_phase: str | None = None,
        client_request_id: str | None = None,
    ) -> ApplicationRecord:
        return self._run(
            "reset",
            lambda s: s.engine.reset(
                application_id, actor, reason,
                target_phase=target_phase,
                client_request_id=client_request_id,
            ),
            actor=actor,
            application_id=application_id,
        )

    def verify_replay(self, application_id: UUID) -> ReplayResult:
        return self._run(
            "verify_replay",
            lambda s: s.engine.verify_replay(application_id),
            application_id=application_id,
        )

    def verify_history_chain(self, record_type: str, record_id: UUID) -> bool:
        return self._run(
            "verify_history_chain",
            lambda s: s.ledger.verify_chain(record_type, record_id),
        )

    # ------------------------------------------------------------------
    # Uniqueness registry (read side)
    # ------------------------------------------------------------------

    def peek_token(self, asset_token_ref: str) -> UUID | None:
        """Current holder of *asset_token_ref*, or None."""
        return self._run("peek_token", lambda s: s.registry.peek(asset_token_ref))

    def get_claim(self, asset_token_ref: str) -> UniquenessClaim | None:
        return self._run("get_claim", lambda s: s.registry.get(asset_token_ref))

    # ------------------------------------------------------------------
    # Applicant profiles and change requests
    # ------------------------------------------------------------------

    def create_profile(
        self,
        actor: Actor,
        full_name: str,
        id_number: str,
        date_of_birth: str | date | None = None,
        province: str | None = None,
        town: str | None = None,
        gender: str | None = None,
        phone: str | None = None,
    ) -> ApplicantProfile:
        return self._run(
            "create_profile",
            lambda s: s.profiles.create_profile(
                full_name, id_number, actor.actor_id,
                date_of_birth=date_of_birth,
                province=province,
                town=town,
                gender=gender,
                phone=phone,
            ),
            actor=actor,
        )

    def get_profile(self, subject_id: UUID) -> ApplicantProfile:
        return self._run("get_profile", lambda s: s.profiles.get_profile(subject_id))

    def update_profile(
        self,
        subject_id: UUID,
        changes: Mapping[str, Any],
        actor: Actor,
    ) -> ProfileUpdateResult:
        return self._run(
            "update_profile",
            lambda s: s.profiles.update_profile(
                subject_id, changes, actor.actor_id, actor_role=actor.actor_role,
            ),
            actor=actor,
        )

    def admin_patch(
        self,
        subject_id: UUID,
        changes: Mapping[str, Any],
        actor: Actor,
        reason: str,
    ) -> ApplicantProfile:
        return self._run(
            "admin_patch",
            lambda s: s.profiles.admin_patch(subject_id, changes, actor, reason),
            actor=actor,
        )

    def propose_change(
        self,
        subject_id: UUID,
        field: str,
        new_value: Any,
        actor: Actor,
        subject_type: str | None = None,
    ) -> ChangeRequest | None:
        return self._run(
            "propose_change",
            lambda s: s.change_requests.propose_change(
                subject_type or self._protected_fields.subject_type,
                subject_id, field, new_value,
                requested_by=actor.actor_id,
                requested_role=actor.actor_role,
            ),
            actor=actor,
        )

    def resolve_change(
        self,
        change_request_id: UUID,
        actor: Actor,
        decision: ChangeDecision | str,
        note: str = "",
    ) -> ChangeRequest:
        return self._run(
            "resolve_change",
            lambda s: s.change_requests.resolve(
                change_request_id, actor.actor_id, decision,
                note=note,
                authorizer_role=actor.actor_role,
            ),
            actor=actor,
        )

    def get_change_request(self, change_request_id: UUID) -> ChangeRequest:
        return self._run(
            "get_change_request",
            lambda s: s.change_requests.get(change_request_id),
        )

    def list_pending_changes(
        self,
        subject_id: UUID | None = None,
        subject_type: str | None = None,
    ) -> list[ChangeRequest]:
        return self._run(
            "list_pending_changes",
            lambda s: s.change_requests.list_pending(subject_type, subject_id),
        )

    def profile_history(self, subject_id: UUID) -> list[HistoryEntry]:
        return self._run(
            "profile_history",
            lambda s: s.ledger.list_by_record(self._protected_fields.subject_type, subject_id),
        )
