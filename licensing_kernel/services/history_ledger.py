"""
HistoryLedger -- append-only, hash-chained, per-record history.

Responsibility:
    Persists immutable HistoryEntry rows for applications and for
    protected-field owners, allocates the per-record sequence, links each
    row to its predecessor by hash, and answers ordered history queries.

Architecture position:
    Kernel > Services -- imperative shell.  Called by PhaseEngine,
    ChangeRequestService and ProfileService inside their savepoints.

Invariants enforced:
    - Sequence: allocated from a locked per-record counter via
      SequenceService; gapless per record because the counter and the row
      commit or roll back together.
    - Append-only: no update or delete method exists; the model carries
      ORM listeners that reject both.
    - Chain: ``hash = H(record_type, record_id, sequence, action, from,
      to, payload_hash, prev_hash)``.
    - Exactly-once: a client_request_id is unique per record.

Failure modes:
    - ConcurrentWriteError: the unique (record_type, record_id, sequence)
      or client_request_id key rejected the flush.
    - AuditChainBrokenError: verify_chain found a recomputed hash or a
      prev_hash link that does not match.

Audit relevance:
    This IS the audit trail for the licensing workflow.
"""

from __future__ import annotations

from typing import Any, Iterator
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from licensing_kernel.domain.clock import Clock, SystemClock
from licensing_kernel.domain.dtos import Actor, HistoryEntry
from licensing_kernel.domain.pipeline import TransitionAction
from licensing_kernel.exceptions import AuditChainBrokenError, ConcurrentWriteError
from licensing_kernel.logging_config import get_logger
from licensing_kernel.models.history_entry import HistoryEntryModel
from licensing_kernel.services.sequence_service import (
    SequenceService,
    history_sequence_name,
)
from licensing_kernel.utils.hashing import hash_history_entry, hash_payload

logger = get_logger("services.history_ledger")

APPLICATION_RECORD = "application"


def _entry_payload_hash(
    actor_id: UUID,
    actor_role: str,
    comment: str,
    client_request_id: str | None,
    details: dict[str, Any] | None,
) -> str:
    return hash_payload({
        "actor_id": str(actor_id),
        "actor_role": actor_role,
        "comment": comment,
        "client_request_id": client_request_id,
        "details": details or {},
    })


class HistoryLedger:
    """
    Append-only history store.

    Contract:
        ``append`` flushes one row inside its own savepoint and returns the
        frozen DTO.  Reads return DTOs ordered by sequence.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT validate transitions (PhaseEngine owns the rules).
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()
        self._sequences = SequenceService(session)
        # Entries appended through this instance, in order
        self.appended: list[HistoryEntry] = []

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def append(
        self,
        record_type: str,
        record_id: UUID,
        actor: Actor,
        action: TransitionAction,
        from_status: str,
        to_status: str,
        comment: str = "",
        client_request_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> HistoryEntry:
        """
        Append one entry to a record's history.

        Postconditions:
            - Returned entry has sequence = previous + 1 and is flushed.

        Raises:
            ConcurrentWriteError: Another writer took the sequence slot or
                the client_request_id is already recorded.
        """
        sequence = 0
        try:
            with self._session.begin_nested():
                sequence = self._sequences.next_value(
                    history_sequence_name(record_type, record_id)
                )
                prev_hash = self._last_hash(record_type, record_id)
                entry_hash = hash_history_entry(
                    record_type=record_type,
                    record_id=str(record_id),
                    sequence=sequence,
                    action=action.value,
                    from_status=from_status,
                    to_status=to_status,
                    payload_hash=_entry_payload_hash(
                        actor.actor_id, actor.actor_role, comment,
                        client_request_id, details,
                    ),
                    prev_hash=prev_hash,
                )
                row = HistoryEntryModel(
                    record_type=record_type,
                    record_id=record_id,
                    sequence=sequence,
                    actor_id=actor.actor_id,
                    actor_role=actor.actor_role,
                    from_status=from_status,
                    to_status=to_status,
                    action=action.value,
                    comment=comment,
                    occurred_at=self._clock.now(),
                    client_request_id=client_request_id,
                    details=dict(details or {}),
                    prev_hash=prev_hash,
                    hash=entry_hash,
                )
                self._session.add(row)
                self._session.flush()
        except IntegrityError as exc:
            logger.warning(
                "history_concurrent_write",
                extra={
                    "record_type": record_type,
                    "record_id": str(record_id),
                    "sequence": sequence,
                },
            )
            raise ConcurrentWriteError(record_type, str(record_id), sequence) from exc

        logger.info(
            "history_appended",
            extra={
                "record_type": record_type,
                "record_id": str(record_id),
                "sequence": sequence,
                "action": action.value,
                "from_status": from_status,
                "to_status": to_status,
                "actor_id": str(actor.actor_id),
                "actor_role": actor.actor_role,
            },
        )
        entry = row.to_dto()
        self.appended.append(entry)
        return entry

    def _last_hash(self, record_type: str, record_id: UUID) -> str | None:
        return self._session.execute(
            select(HistoryEntryModel.hash)
            .where(
                HistoryEntryModel.record_type == record_type,
                HistoryEntryModel.record_id == record_id,
            )
            .order_by(HistoryEntryModel.sequence.desc())
            .limit(1)
        ).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def list_by_record(
        self,
        record_type: str,
        record_id: UUID,
        after_sequence: int = 0,
        limit: int | None = None,
    ) -> list[HistoryEntry]:
        """Entries with sequence > after_sequence, ordered by sequence."""
        stmt = (
            select(HistoryEntryModel)
            .where(
                HistoryEntryModel.record_type == record_type,
                HistoryEntryModel.record_id == record_id,
                HistoryEntryModel.sequence > after_sequence,
            )
            .order_by(HistoryEntryModel.sequence)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return [row.to_dto() for row in self._session.execute(stmt).scalars()]

    def list_by_application(
        self,
        application_id: UUID,
        after_sequence: int = 0,
        limit: int | None = None,
    ) -> list[HistoryEntry]:
        return self.list_by_record(
            APPLICATION_RECORD, application_id, after_sequence, limit,
        )

    def iter_by_application(
        self,
        application_id: UUID,
        after_sequence: int = 0,
        page_size: int = 100,
    ) -> Iterator[HistoryEntry]:
        """Stream an application's history in pages; restartable from any cursor."""
        cursor = after_sequence
        while True:
            page = self.list_by_application(application_id, cursor, page_size)
            yield from page
            if len(page) < page_size:
                return
            cursor = page[-1].sequence

    def find_by_client_request(
        self,
        record_type: str,
        record_id: UUID,
        client_request_id: str,
    ) -> HistoryEntry | None:
        row = self._session.execute(
            select(HistoryEntryModel).where(
                HistoryEntryModel.record_type == record_type,
                HistoryEntryModel.record_id == record_id,
                HistoryEntryModel.client_request_id == client_request_id,
            )
        ).scalar_one_or_none()
        return row.to_dto() if row else None

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_chain(self, record_type: str, record_id: UUID) -> bool:
        """
        Recompute every hash of one record's history.

        Raises:
            AuditChainBrokenError: On the first entry whose hash or
                predecessor link does not match.
        """
        rows = self._session.execute(
            select(HistoryEntryModel)
            .where(
                HistoryEntryModel.record_type == record_type,
                HistoryEntryModel.record_id == record_id,
            )
            .order_by(HistoryEntryModel.sequence)
        ).scalars().all()

        prev_hash: str | None = None
        for row in rows:
            if row.prev_hash != prev_hash:
                logger.critical(
                    "history_chain_broken",
                    extra={"record_id": str(record_id), "sequence": row.sequence},
                )
                raise AuditChainBrokenError(
                    str(record_id), row.sequence, prev_hash or "None",
                    row.prev_hash or "None",
                )
            expected = hash_history_entry(
                record_type=row.record_type,
                record_id=str(row.record_id),
                sequence=row.sequence,
                action=row.action,
                from_status=row.from_status,
                to_status=row.to_status,
                payload_hash=_entry_payload_hash(
                    row.actor_id, row.actor_role, row.comment,
                    row.client_request_id, row.details,
                ),
                prev_hash=row.prev_hash,
            )
            if row.hash != expected:
                logger.critical(
                    "history_chain_broken",
                    extra={"record_id": str(record_id), "sequence": row.sequence},
                )
                raise AuditChainBrokenError(
                    str(record_id), row.sequence, expected, row.hash,
                )
            prev_hash = row.hash

        logger.info(
            "history_chain_valid",
            extra={"record_id": str(record_id), "entry_count": len(rows)},
        )
        return True
