"""Services for the licensing kernel (write side)."""

from licensing_kernel.services.application_repository import ApplicationRepository
from licensing_kernel.services.change_request_service import (
    ChangeRequestService,
    ProtectedFieldOwner,
)
from licensing_kernel.services.history_ledger import APPLICATION_RECORD, HistoryLedger
from licensing_kernel.services.phase_engine import PhaseEngine
from licensing_kernel.services.profile_service import ProfileService, ProfileUpdateResult
from licensing_kernel.services.sequence_service import SequenceService
from licensing_kernel.services.uniqueness_registry import UniquenessRegistry

__all__ = [
    "APPLICATION_RECORD",
    "ApplicationRepository",
    "ChangeRequestService",
    "HistoryLedger",
    "PhaseEngine",
    "ProfileService",
    "ProfileUpdateResult",
    "ProtectedFieldOwner",
    "SequenceService",
    "UniquenessRegistry",
]
