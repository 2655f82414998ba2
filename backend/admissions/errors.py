"""
Error taxonomy of the admissions core.

Every failure that crosses the core boundary is one of these classes. Each
carries a stable machine-readable `code` (used in JSON error bodies and
result values) and a human-readable message.
"""

from __future__ import annotations


class AdmissionsError(Exception):
    code = "admissions_error"

    def __init__(self, code: str | None = None, message: str = ""):
        self.code = code or type(self).code
        self.message = message or self.code
        super().__init__(self.code)


class ValidationError(AdmissionsError):
    """Bad input caught before any external call."""

    code = "invalid_input"


class IdentityProviderError(AdmissionsError):
    """Business-rule rejection (or outage) reported by the identity provider."""

    code = "identity_provider_error"


class ProvisioningError(AdmissionsError):
    code = "provisioning_failed"


class PolicyDeniedError(AdmissionsError):
    code = "policy_denied"


class AllocationConflictError(AdmissionsError):
    code = "enrollment_conflict"


class ProfileNotFoundError(AdmissionsError):
    code = "profile_not_found"


class InvalidTransitionError(AdmissionsError):
    """The profile is not PENDING (anymore); the transition is a rejected no-op."""

    code = "invalid_transition"


class StorageError(AdmissionsError):
    code = "storage_unavailable"


__all__ = [
    "AdmissionsError",
    "ValidationError",
    "IdentityProviderError",
    "ProvisioningError",
    "PolicyDeniedError",
    "AllocationConflictError",
    "ProfileNotFoundError",
    "InvalidTransitionError",
    "StorageError",
]
