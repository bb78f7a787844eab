"""SQLAlchemy ORM models for the licensing kernel."""

from licensing_kernel.models.applicant_profile import ApplicantProfileModel
from licensing_kernel.models.application import ApplicationModel
from licensing_kernel.models.change_request import ChangeRequestModel
from licensing_kernel.models.history_entry import HistoryEntryModel
from licensing_kernel.models.uniqueness_claim import UniquenessClaimModel

__all__ = [
    "ApplicantProfileModel",
    "ApplicationModel",
    "ChangeRequestModel",
    "HistoryEntryModel",
    "UniquenessClaimModel",
]
