"""
JSON response helpers and the error-code -> HTTP status mapping.

Rationale: Admissions endpoints expose user- and role-scoped data, so every
response is marked "private, no-store" to keep it out of shared caches.
"""
from __future__ import annotations

from fastapi.responses import JSONResponse

from backend.admissions.errors import (
    AdmissionsError,
    IdentityProviderError,
    InvalidTransitionError,
    PolicyDeniedError,
    ProfileNotFoundError,
    ProvisioningError,
    StorageError,
    ValidationError,
)

# Codes whose status differs from the default of their error class.
_CODE_STATUS = {
    "user_already_exists": 409,
    "email_exists": 409,
    "over_email_send_rate_limit": 429,
    "over_request_rate_limit": 429,
    "provider_unavailable": 503,
    "storage_unavailable": 503,
    "enrollment_unavailable": 503,
    "enrollment_conflict": 409,
    "admin_signup_disabled": 403,
    "email_not_confirmed": 403,
    "unauthenticated": 401,
    "rls_denied": 403,
    "provisioning_failed": 502,
    "invalid_provider_response": 502,
    "profile_conflict_unreadable": 502,
}

_CLASS_STATUS: list[tuple[type[AdmissionsError], int]] = [
    (ValidationError, 400),
    (PolicyDeniedError, 403),
    (ProfileNotFoundError, 404),
    (InvalidTransitionError, 409),
    (IdentityProviderError, 400),
    (StorageError, 503),
    (ProvisioningError, 502),
]


def status_for_code(code: str | None, default: int = 400) -> int:
    return _CODE_STATUS.get(code or "", default)


def status_for_error(exc: AdmissionsError) -> int:
    for cls, status in _CLASS_STATUS:
        if isinstance(exc, cls):
            return _CODE_STATUS.get(exc.code, status)
    return _CODE_STATUS.get(exc.code, 500)


def _json_private(payload, *, status_code: int = 200, vary_origin: bool = False) -> JSONResponse:
    headers = {"Cache-Control": "private, no-store"}
    if vary_origin:
        headers["Vary"] = "Origin"
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


def _private_error(payload: dict, *, status_code: int, vary_origin: bool = False) -> JSONResponse:
    return _json_private(payload, status_code=status_code, vary_origin=vary_origin)


def error_response(exc: AdmissionsError) -> JSONResponse:
    payload = {"error": exc.code}
    if exc.message and exc.message != exc.code:
        payload["detail"] = exc.message
    return _private_error(payload, status_code=status_for_error(exc))


__all__ = ["status_for_code", "status_for_error", "error_response", "_json_private", "_private_error"]
