"""
Pure domain layer.

Value objects and rules with NO dependencies on the ORM, the database or
I/O.  Everything here is immutable and deterministic.
"""

from licensing_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from licensing_kernel.domain.dtos import (
    Actor,
    ApplicantProfile,
    ApplicationRecord,
    ChangeDecision,
    ChangeRequest,
    ChangeRequestStatus,
    HistoryEntry,
    UniquenessClaim,
)
from licensing_kernel.domain.pipeline import (
    PhaseDefinition,
    PipelineDefinition,
    ReplayResult,
    TransitionAction,
    replay_status,
)
from licensing_kernel.domain.protected_fields import ProtectedField, ProtectedFieldSet

__all__ = [
    "Actor",
    "ApplicantProfile",
    "ApplicationRecord",
    "ChangeDecision",
    "ChangeRequest",
    "ChangeRequestStatus",
    "Clock",
    "DeterministicClock",
    "HistoryEntry",
    "PhaseDefinition",
    "PipelineDefinition",
    "ProtectedField",
    "ProtectedFieldSet",
    "ReplayResult",
    "SystemClock",
    "TransitionAction",
    "UniquenessClaim",
    "replay_status",
]
