"""
licensing_services.orchestrator -- per-transaction DI container for kernel services.

Responsibility:
    Creates every kernel service exactly once for one session and wires
    them together.  No kernel service creates its collaborators when one
    is passed in; this container is where the sharing happens.

Architecture position:
    Services -- above licensing_kernel and licensing_config.

Invariants enforced:
    - Single-instance lifecycle: one HistoryLedger per session, shared by
      the Phase Engine, the change-request subsystem and the profile owner,
      so per-record sequences and ``appended`` tracking are coherent.
    - Does NOT manage transaction boundaries.

Usage:
    services = KernelServices(session, pipeline, protected_fields, clock=clock,
                              authorizer_role="registry")
    services.engine.advance(application_id, actor)
"""

from __future__ import annotations

from sqlalchemy.orm import Session

from licensing_kernel.domain.clock import Clock, SystemClock
from licensing_kernel.domain.pipeline import PipelineDefinition
from licensing_kernel.domain.protected_fields import ProtectedFieldSet
from licensing_kernel.selectors.application_selector import ApplicationSelector
from licensing_kernel.services.application_repository import ApplicationRepository
from licensing_kernel.services.change_request_service import ChangeRequestService
from licensing_kernel.services.history_ledger import HistoryLedger
from licensing_kernel.services.phase_engine import PhaseEngine
from licensing_kernel.services.profile_service import ProfileService
from licensing_kernel.services.uniqueness_registry import UniquenessRegistry


class KernelServices:
    """Central factory for kernel services bound to one session.

    Contract:
        Receives a Session, the pipeline and protected-field definitions,
        and optional Clock/authorizer role.  Constructs every kernel
        service once, in dependency order, and exposes them as attributes.
    """

    def __init__(
        self,
        session: Session,
        pipeline: PipelineDefinition,
        protected_fields: ProtectedFieldSet,
        clock: Clock | None = None,
        authorizer_role: str | None = None,
    ):
        self.session = session
        self.clock = clock or SystemClock()
        self.pipeline = pipeline

        self.ledger = HistoryLedger(session, self.clock)
        self.registry = UniquenessRegistry(session, self.clock)
        self.engine = PhaseEngine(
            session, pipeline, self.clock,
            ledger=self.ledger,
            registry=self.registry,
        )
        self.applications = ApplicationRepository(session, pipeline, self.clock)
        self.selector = ApplicationSelector(session, pipeline)
        self.change_requests = ChangeRequestService(
            session, self.clock,
            ledger=self.ledger,
            authorizer_role=authorizer_role,
        )
        self.profiles = ProfileService(
            session, protected_fields, self.change_requests, self.clock,
            ledger=self.ledger,
            admin_role=pipeline.admin_role,
        )
