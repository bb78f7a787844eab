"""Read-only query selectors."""

from licensing_kernel.selectors.application_selector import ApplicationSelector
from licensing_kernel.selectors.base import BaseSelector

__all__ = [
    "ApplicationSelector",
    "BaseSelector",
]
