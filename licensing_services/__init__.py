"""Service layer: per-transaction wiring and the workflow facade."""

from licensing_services.notifications import (
    LoggingTransitionListener,
    TransitionListener,
    TransitionNotice,
)
from licensing_services.orchestrator import KernelServices
from licensing_services.workflow_service import LicensingWorkflowService

__all__ = [
    "KernelServices",
    "LicensingWorkflowService",
    "LoggingTransitionListener",
    "TransitionListener",
    "TransitionNotice",
]
