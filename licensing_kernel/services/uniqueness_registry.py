"""
UniquenessRegistry -- at most one approved application per asset token.

Responsibility:
    Atomic check-and-set on the uniqueness_claims table.  ``claim`` binds a
    token to an application, ``release`` unbinds it, ``peek`` reads the
    current holder.

Architecture position:
    Kernel > Services -- imperative shell.  Called by PhaseEngine inside the
    same savepoint as the status write and history append, so a claim is
    never visible without the matching ``completed`` status.

Invariants enforced:
    - One row per token (unique constraint); the holder is read under
      ``SELECT ... FOR UPDATE`` before it is changed.
    - A losing concurrent insert surfaces as TokenConflictError, never as
      a raw IntegrityError.

Failure modes:
    - TokenConflictError: the token is held by a different application.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from licensing_kernel.domain.clock import Clock, SystemClock
from licensing_kernel.domain.dtos import UniquenessClaim
from licensing_kernel.exceptions import TokenConflictError
from licensing_kernel.logging_config import get_logger
from licensing_kernel.models.uniqueness_claim import UniquenessClaimModel

logger = get_logger("services.uniqueness_registry")


class UniquenessRegistry:
    """
    Token claim store.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT check application status; the Phase Engine only claims
          while moving an application into the approved status.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    def _locked(self, asset_token_ref: str) -> UniquenessClaimModel | None:
        return self._session.execute(
            select(UniquenessClaimModel)
            .where(UniquenessClaimModel.asset_token_ref == asset_token_ref)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def claim(self, asset_token_ref: str, application_id: UUID) -> UniquenessClaim:
        """
        Bind *asset_token_ref* to *application_id*.

        Claiming a token the application already holds is a no-op.

        Raises:
            TokenConflictError: The token is held by another application.
        """
        row = self._locked(asset_token_ref)

        if row is None:
            try:
                with self._session.begin_nested():
                    row = UniquenessClaimModel(
                        asset_token_ref=asset_token_ref,
                        holding_application_id=application_id,
                        claimed_at=self._clock.now(),
                    )
                    self._session.add(row)
                    self._session.flush()
            except IntegrityError:
                row = self._locked(asset_token_ref)
                holder = row.holding_application_id if row else None
                if holder is not None and holder != application_id:
                    self._conflict(asset_token_ref, application_id, holder)
                if row is None:
                    raise
                row.holding_application_id = application_id
                row.claimed_at = self._clock.now()
                row.released_at = None
                self._session.flush()
        elif row.holding_application_id is None:
            row.holding_application_id = application_id
            row.claimed_at = self._clock.now()
            row.released_at = None
            self._session.flush()
        elif row.holding_application_id != application_id:
            self._conflict(asset_token_ref, application_id, row.holding_application_id)

        logger.info(
            "token_claimed",
            extra={
                "asset_token_ref": asset_token_ref,
                "application_id": str(application_id),
            },
        )
        return row.to_dto()

    def _conflict(self, asset_token_ref: str, application_id: UUID, holder: UUID):
        logger.warning(
            "token_conflict",
            extra={
                "asset_token_ref": asset_token_ref,
                "application_id": str(application_id),
                "holding_application_id": str(holder),
            },
        )
        raise TokenConflictError(asset_token_ref, str(application_id), str(holder))

    def release(self, asset_token_ref: str, application_id: UUID) -> bool:
        """
        Unbind the token if *application_id* holds it.

        Returns True when a claim was released, False when there was
        nothing to release.  Calling it again is harmless.
        """
        row = self._locked(asset_token_ref)
        if row is None or row.holding_application_id != application_id:
            return False

        row.holding_application_id = None
        row.released_at = self._clock.now()
        self._session.flush()

        logger.info(
            "token_released",
            extra={
                "asset_token_ref": asset_token_ref,
                "application_id": str(application_id),
            },
        )
        return True

    def peek(self, asset_token_ref: str) -> UUID | None:
        """Current holder of the token, or None."""
        return self._session.execute(
            select(UniquenessClaimModel.holding_application_id)
            .where(UniquenessClaimModel.asset_token_ref == asset_token_ref)
        ).scalar_one_or_none()

    def get(self, asset_token_ref: str) -> UniquenessClaim | None:
        row = self._session.execute(
            select(UniquenessClaimModel)
            .where(UniquenessClaimModel.asset_token_ref == asset_token_ref)
        ).scalar_one_or_none()
        return row.to_dto() if row else None
