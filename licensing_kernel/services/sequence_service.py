"""
SequenceService -- per-record history sequence allocation via locked counter rows.

Responsibility:
    Provides gapless, strictly increasing sequence numbers for each owning
    record's history.  Uses a dedicated counter table with row-level
    locking (``SELECT ... FOR UPDATE``) so that two writers on the same
    record can never receive the same value.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by HistoryLedger for every append.

Invariants enforced:
    - Sequence monotonicity: the locked counter row is the sole source of
      truth for the next value.  Aggregate-max-plus-one is never used.
    - Transactional: the increment is only visible after the caller's
      transaction commits.  Rollback of the enclosing savepoint returns
      the value, so history stays gapless.

Failure modes:
    - IntegrityError: concurrent counter creation race (handled via
      savepoint rollback and re-select).

Audit relevance:
    Sequence allocation is logged at DEBUG level with sequence_name and
    value.  Per-record ordering underpins replay and the hash chain.
"""

from uuid import UUID

from sqlalchemy import BigInteger, String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from licensing_kernel.db.base import Base
from licensing_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    """
    Sequence counter table.

    Each row represents a named sequence with its current value.
    Row-level locking ensures monotonicity under concurrency.
    """

    __tablename__ = "sequence_counters"

    # e.g. "history:application:<uuid>"
    name: Mapped[str] = mapped_column(
        String(120),
        nullable=False,
        unique=True,
    )

    current_value: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )


def history_sequence_name(record_type: str, record_id: UUID | str) -> str:
    """Counter name for one record's history."""
    return f"history:{record_type}:{record_id}"


class SequenceService:
    """
    Service for generating transactional sequence numbers.

    Contract:
        Accepts a sequence name and returns the next strictly-monotonic
        integer value.  The increment is transactional.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT expire the session.  Callers hold unflushed state
          (the application row under transition) that must survive.
    """

    def __init__(self, session: Session):
        self._session = session

    def _locked_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        """
        Allocate the next value of *sequence_name*.

        Preconditions:
            - The caller is within an active database transaction.

        Postconditions:
            - Returns previous + 1 (1 for a new sequence).
            - The counter row stays locked until the caller's transaction
              ends, so a concurrent writer on the same record waits.
        """
        counter = self._locked_counter(sequence_name)
        if counter is None:
            if self._insert_first(sequence_name):
                return self._allocated(sequence_name, 1)
            # Lost the creation race: continue from the winner's row
            counter = self._locked_counter(sequence_name)
            if counter is None:
                raise RuntimeError(f"Sequence counter {sequence_name} missing after insert race")

        counter.current_value += 1
        self._session.flush()
        return self._allocated(sequence_name, counter.current_value)

    def _insert_first(self, sequence_name: str) -> bool:
        try:
            with self._session.begin_nested():
                self._session.add(SequenceCounter(name=sequence_name, current_value=1))
                self._session.flush()
        except IntegrityError:
            logger.debug(
                "sequence_counter_race_retry",
                extra={"sequence_name": sequence_name},
            )
            return False
        return True

    @staticmethod
    def _allocated(sequence_name: str, value: int) -> int:
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": value},
        )
        return value

    def current_value(self, sequence_name: str) -> int | None:
        """Current value of a sequence without incrementing, or None."""
        counter = self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()

        return counter.current_value if counter else None
