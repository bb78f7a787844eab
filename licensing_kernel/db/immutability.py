"""
ORM-level immutability enforcement for workflow records.

The append-only history rows and terminal change requests guard themselves
with listeners declared beside their models.  This module holds the guards
that need cross-field reasoning and are switched on at application start:

Entity              | Rule
--------------------|-----------------------------------------------------
Application         | status changes only with a strictly increasing
                    | status_sequence (the history entry that produced it)
Application         | never deleted
ApplicantProfile    | never deleted
UniquenessClaim     | never deleted; release clears the holder instead

LicensingWorkflowService calls register_immutability_listeners() when it is
constructed; code that drives the kernel services directly must call it once
after models are imported and before any database operations begin.
unregister_immutability_listeners() exists for tests that must write a
corrupt row on purpose (replay mismatch detection).
"""

from sqlalchemy import event
from sqlalchemy.orm.attributes import get_history

from licensing_kernel.exceptions import ImmutabilityViolationError
from licensing_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _check_application_status_change(mapper, connection, target):
    """
    Block a status write that is not backed by a newer history entry.

    The Phase Engine appends the history entry first and then sets
    status and status_sequence together, so a legitimate transition always
    shows both attributes changing with the sequence moving forward.
    """
    status_history = get_history(target, "status")
    if not status_history.added:
        return

    seq_history = get_history(target, "status_sequence")
    old_seq = seq_history.deleted[0] if seq_history.deleted else None
    new_seq = seq_history.added[0] if seq_history.added else None

    if new_seq is None or (old_seq is not None and new_seq <= old_seq):
        logger.error(
            "immutability_violation_blocked",
            extra={
                "entity_type": "Application",
                "entity_id": str(target.id),
                "operation": "UPDATE",
                "field": "status",
            },
        )
        raise ImmutabilityViolationError(
            entity_type="Application",
            entity_id=str(target.id),
            reason="Status may only change together with a new history entry",
        )


def _reject_delete(entity_type: str):
    def _check(mapper, connection, target):
        logger.error(
            "immutability_violation_blocked",
            extra={
                "entity_type": entity_type,
                "entity_id": str(target.id),
                "operation": "DELETE",
            },
        )
        raise ImmutabilityViolationError(
            entity_type=entity_type,
            entity_id=str(target.id),
            reason=f"{entity_type} records are never deleted",
        )

    _check.__name__ = f"_check_{entity_type.lower()}_delete"
    return _check


_check_application_delete = _reject_delete("Application")
_check_applicant_profile_delete = _reject_delete("ApplicantProfile")
_check_uniqueness_claim_delete = _reject_delete("UniquenessClaim")


def _listeners():
    from licensing_kernel.models import (
        ApplicantProfileModel,
        ApplicationModel,
        UniquenessClaimModel,
    )

    return [
        (ApplicationModel, "before_update", _check_application_status_change),
        (ApplicationModel, "before_delete", _check_application_delete),
        (ApplicantProfileModel, "before_delete", _check_applicant_profile_delete),
        (UniquenessClaimModel, "before_delete", _check_uniqueness_claim_delete),
    ]


def register_immutability_listeners():
    """Register all immutability enforcement event listeners.  Idempotent."""
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    for target, event_name, listener_fn in _listeners():
        _safe_remove_listener(target, event_name, listener_fn)
