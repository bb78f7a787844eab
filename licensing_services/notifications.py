"""
Post-commit transition notices.

Listeners are the seam to external collaborators (notification delivery,
token minting).  They are invoked only after the transition has committed,
and their failures are logged and never roll the transition back.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol
from uuid import UUID

from licensing_kernel.domain.dtos import HistoryEntry
from licensing_kernel.logging_config import get_logger

logger = get_logger("services.notifications")


@dataclass(frozen=True)
class TransitionNotice:
    """A committed application history entry, as seen by collaborators."""

    application_id: UUID
    sequence: int
    action: str
    from_status: str
    to_status: str
    actor_id: UUID
    actor_role: str
    occurred_at: datetime
    asset_token_ref: str | None = None

    @classmethod
    def from_entry(cls, entry: HistoryEntry, asset_token_ref: str | None = None) -> TransitionNotice:
        return cls(
            application_id=entry.record_id,
            sequence=entry.sequence,
            action=entry.action.value,
            from_status=entry.from_status,
            to_status=entry.to_status,
            actor_id=entry.actor_id,
            actor_role=entry.actor_role,
            occurred_at=entry.occurred_at,
            asset_token_ref=asset_token_ref,
        )


class TransitionListener(Protocol):
    """Receives notices after commit."""

    def on_transition(self, notice: TransitionNotice) -> None: ...


class LoggingTransitionListener:
    """Writes every notice to the structured log."""

    def on_transition(self, notice: TransitionNotice) -> None:
        logger.info(
            "transition_notice",
            extra={
                "application_id": str(notice.application_id),
                "sequence": notice.sequence,
                "action": notice.action,
                "from_status": notice.from_status,
                "to_status": notice.to_status,
            },
        )


def dispatch(listeners: list[TransitionListener], notices: list[TransitionNotice]) -> int:
    """
    Deliver *notices* to every listener.  Returns the number of failed
    deliveries; failures are logged, never raised.
    """
    failures = 0
    for notice in notices:
        for listener in listeners:
            try:
                listener.on_transition(notice)
            except Exception:
                failures += 1
                logger.error(
                    "transition_listener_failed",
                    extra={
                        "listener": type(listener).__name__,
                        "application_id": str(notice.application_id),
                        "sequence": notice.sequence,
                    },
                    exc_info=True,
                )
    return failures
