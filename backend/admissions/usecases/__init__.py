"""Use case layer for the Admissions context.

Re-export the use cases for convenient imports in routes and tests.
"""

from .approvals import ApprovalQueries, ApprovalStateMachine
from .confirmation import DeferredConfirmationHandler
from .registration import RegistrationOrchestrator

__all__ = [
    "ApprovalQueries",
    "ApprovalStateMachine",
    "DeferredConfirmationHandler",
    "RegistrationOrchestrator",
]
