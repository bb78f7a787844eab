"""
Module: licensing_kernel.selectors.application_selector
Responsibility: Read-only access to applications: read-by-id and the
    per-role pending queue.
Architecture position: Kernel > Selectors.  May import from models/,
    domain/ and selectors/base.py.

Failure modes:
    - get() raises ApplicationNotFoundError; list methods return [] when
      nothing matches.
"""

from uuid import UUID

from sqlalchemy import select

from licensing_kernel.domain.dtos import ApplicationRecord
from licensing_kernel.domain.pipeline import PipelineDefinition
from licensing_kernel.exceptions import ApplicationNotFoundError
from licensing_kernel.models.application import ApplicationModel
from licensing_kernel.selectors.base import BaseSelector


class ApplicationSelector(BaseSelector[ApplicationModel]):
    """Queries over the applications table."""

    def __init__(self, session, pipeline: PipelineDefinition):
        super().__init__(session)
        self._pipeline = pipeline

    def get(self, application_id: UUID) -> ApplicationRecord:
        row = self.session.get(ApplicationModel, application_id)
        if row is None:
            raise ApplicationNotFoundError(str(application_id))
        return row.to_dto()

    def list_pending_for_role(
        self,
        role: str,
        province: str | None = None,
        town: str | None = None,
        limit: int | None = None,
    ) -> list[ApplicationRecord]:
        """
        The actor's pending queue: applications sitting in the phase the role
        owns, newest activity first, optionally narrowed by location.

        A role that owns no phase has an empty queue.
        """
        phase = self._pipeline.phase_for_role(role)
        if phase is None:
            return []

        stmt = select(ApplicationModel).where(ApplicationModel.status == phase)
        if province is not None:
            stmt = stmt.where(ApplicationModel.province == province)
        if town is not None:
            stmt = stmt.where(ApplicationModel.town == town)
        stmt = stmt.order_by(ApplicationModel.updated_at.desc(), ApplicationModel.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        return [row.to_dto() for row in self.session.execute(stmt).scalars()]

    def list_by_applicant(self, applicant_ref: UUID) -> list[ApplicationRecord]:
        stmt = (
            select(ApplicationModel)
            .where(ApplicationModel.applicant_ref == applicant_ref)
            .order_by(ApplicationModel.created_at, ApplicationModel.id)
        )
        return [row.to_dto() for row in self.session.execute(stmt).scalars()]
