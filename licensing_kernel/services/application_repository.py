"""
ApplicationRepository -- creation of applications at intake.

Responsibility:
    Owns the canonical Application rows on the write side.  Creation is the
    only write here; every later mutation of status or payload goes through
    the Phase Engine.

Architecture position:
    Kernel > Services -- imperative shell.  Reads live in
    ``selectors/application_selector.py``.

Invariants enforced:
    - New applications start at the pipeline's initial status with
      status_sequence 0 and an empty, merge-only payload skeleton.
    - Flush only; caller owns commit.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from licensing_kernel.domain.clock import Clock, SystemClock
from licensing_kernel.domain.dtos import ApplicationRecord
from licensing_kernel.domain.pipeline import PipelineDefinition
from licensing_kernel.logging_config import get_logger
from licensing_kernel.models.application import ApplicationModel
from licensing_kernel.services.base import BaseService

logger = get_logger("services.application_repository")


class ApplicationRepository(BaseService[ApplicationModel]):
    """Write-side store for applications."""

    def __init__(
        self,
        session: Session,
        pipeline: PipelineDefinition,
        clock: Clock | None = None,
    ):
        super().__init__(session)
        self._pipeline = pipeline
        self._clock = clock or SystemClock()

    def create(
        self,
        applicant_ref: UUID,
        created_by_id: UUID,
        asset_token_ref: str | None = None,
        title: str = "",
        payload: dict[str, Any] | None = None,
        province: str | None = None,
        town: str | None = None,
    ) -> ApplicationRecord:
        """
        Create an application at intake.

        ``payload`` seeds the intake section; documents and flags start empty.
        """
        now = self._clock.now()
        initial = self._pipeline.initial_status
        row = ApplicationModel(
            title=title,
            status=initial,
            status_sequence=0,
            applicant_ref=applicant_ref,
            asset_token_ref=asset_token_ref,
            payload={
                "sections": {initial: dict(payload or {})},
                "documents": [],
                "flagged": False,
            },
            province=province,
            town=town,
            created_at=now,
            updated_at=now,
            created_by_id=created_by_id,
        )
        self.session.add(row)
        self.session.flush()

        logger.info(
            "application_created",
            extra={
                "application_id": str(row.id),
                "applicant_ref": str(applicant_ref),
                "asset_token_ref": asset_token_ref,
                "status": initial,
            },
        )
        return row.to_dto()
