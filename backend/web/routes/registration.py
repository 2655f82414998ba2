"""
Registration and email-confirmation routes (router-only module).

Why:
    Self-registration talks to the identity provider and provisions profiles.
    These endpoints are public (`/auth/*`); they establish the server-side
    session once an identity is confirmed.

Security:
    - The session role comes from the server-side profile, never from the
      form or from provider metadata.
    - `next` redirects after confirmation accept in-app paths only.
    - Responses carry `Cache-Control: private, no-store`.

Notes:
    This module imports `main` inside functions to reuse the shared session
    store and cookie helpers without an import cycle.
"""

from __future__ import annotations

from typing import Optional, Union
import logging
import os
import re

from fastapi import APIRouter, Query, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

from backend.admissions.errors import AdmissionsError
from backend.identity_access.provider import ProviderError

from ..admissions_wiring import get_services
from .responses import _json_private, _private_error, error_response, status_for_code

registration_router = APIRouter(tags=["Registration"])
logger = logging.getLogger("edubloom.web.registration")

# Disallow double slashes and path traversal (".."), allow dots in names
INAPP_PATH_PATTERN = re.compile(r"^(?!.*//)(?!.*\.\.)/[A-Za-z0-9._\-/]*$")
MAX_INAPP_REDIRECT_LEN = 256


class RegisterRequest(BaseModel):
    role: str
    email: str
    password: str
    full_name: str = ""
    class_level: Optional[Union[int, str]] = None
    guardian_name: Optional[str] = None
    guardian_mobile: Optional[str] = None
    parent_mobile: Optional[str] = None
    parent_email: Optional[str] = None
    student_mobile: Optional[str] = None
    selected_subjects: Optional[list[str]] = None
    selected_batches: Optional[list[str]] = None
    subject_expertise: Optional[str] = None
    subject_specialization: Optional[list[str]] = None
    experience_years: Optional[Union[int, str]] = None


class ResendRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)


class SessionExchangeRequest(BaseModel):
    access_token: str = Field(..., min_length=1)


def _parse_allowed_registration_domains(raw: str | None) -> set[str]:
    """Parse ALLOWED_REGISTRATION_DOMAINS ("@school.edu, @example.org") into a set."""
    if not raw:
        return set()
    items = [part.strip().lower() for part in str(raw).split(",")]
    return {item for item in items if item}


def _is_allowed_registration_email(email: str, allowed_domains: set[str]) -> bool:
    """True when the allow-list is empty or the email's domain is on it."""
    if not allowed_domains:
        return True
    normalized = (email or "").strip().lower()
    if "@" not in normalized:
        return False
    domain = "@" + normalized.rsplit("@", 1)[1]
    return domain in allowed_domains


def _is_inapp_path(value: str | None) -> bool:
    return (
        isinstance(value, str)
        and len(value) <= MAX_INAPP_REDIRECT_LEN
        and bool(INAPP_PATH_PATTERN.match(value))
    )


def _wants_json(request: Request) -> bool:
    return "application/json" in (request.headers.get("accept") or "").lower()


def _start_session(response, *, sub: str, email: str, name: str, role: str) -> None:
    from backend.web import main as mod

    rec = mod.SESSION_STORE.create(sub=sub, email=email, name=name, roles=[role])
    mod._set_session_cookie(response, rec.session_id)


@registration_router.post("/auth/register")
async def register(payload: RegisterRequest):
    """
    Self-register as student, teacher or (when enabled) admin.

    Behavior:
        - Enforces the optional email domain allow-list.
        - Delegates to the registration orchestrator; returns its result.
        - 202 when email confirmation is pending, 201 when the profile was
          provisioned immediately, 4xx/5xx with `error` on failure.
    Permissions:
        Public.
    """
    allowed = _parse_allowed_registration_domains(os.getenv("ALLOWED_REGISTRATION_DOMAINS"))
    if not _is_allowed_registration_email(payload.email, allowed):
        return _private_error(
            {"error": "invalid_email_domain", "allowed_domains": sorted(allowed)}, status_code=400
        )
    services = get_services()
    attributes = payload.model_dump(exclude={"role", "email", "password"}, exclude_none=True)
    result = await services.registration.register(
        payload.role,
        attributes,
        {"email": payload.email, "password": payload.password},
    )
    if not result.success:
        body = {"error": result.error_code, **result.to_dict()}
        return _private_error(body, status_code=status_for_code(result.error_code))
    return _json_private(result.to_dict(), status_code=202 if result.requires_confirmation else 201)


@registration_router.get("/auth/confirm")
async def confirm_email(
    request: Request,
    token_hash: str = "",
    confirmation_type: str = Query("signup", alias="type"),
    next_path: Optional[str] = Query(None, alias="next"),
):
    """
    Confirmation callback target embedded in the signup email.

    Behavior:
        - Verifies `token_hash` with the provider (`type` signup or email).
        - Runs the deferred confirmation handler (idempotent on refresh or
          duplicate callbacks).
        - Starts a server session with the profile's role and redirects to
          `next` (in-app path) or returns JSON when requested.
    Permissions:
        Public; the token hash is the credential.
    """
    if confirmation_type not in ("signup", "email"):
        return _private_error({"error": "invalid_confirmation_type"}, status_code=400)
    if not token_hash:
        return _private_error({"error": "missing_token_hash"}, status_code=400)
    services = get_services()
    try:
        identity, _session = await services.provider.confirm(token_hash=token_hash, type=confirmation_type)
    except ProviderError as exc:
        logger.info("Confirmation token rejected code=%s", exc.code)
        return _private_error({"error": exc.code}, status_code=status_for_code(exc.code))

    result = await services.confirmation.on_email_confirmed(identity)
    if not result.success:
        return _private_error({"error": result.error_code, **result.to_dict()}, status_code=status_for_code(result.error_code))

    try:
        profile = await services.queries.profile_for_identity(identity.id)
    except AdmissionsError as exc:
        return error_response(exc)
    if _wants_json(request):
        response = _json_private(result.to_dict())
    else:
        target = next_path if _is_inapp_path(next_path) else "/"
        response = RedirectResponse(url=target, status_code=303, headers={"Cache-Control": "private, no-store"})
    if profile is not None:
        _start_session(response, sub=identity.id, email=identity.email, name=profile.full_name, role=profile.role)
    return response


@registration_router.post("/auth/confirm/resend")
async def resend_confirmation(payload: ResendRequest):
    """Re-send the signup confirmation email. Always 202 unless the provider refuses."""
    services = get_services()
    try:
        await services.provider.resend_confirmation(
            email=payload.email.strip().lower(),
            confirmation_redirect=services.cfg.confirmation_redirect_url,
        )
    except ProviderError as exc:
        return _private_error({"error": exc.code}, status_code=status_for_code(exc.code))
    return _json_private({"ok": True}, status_code=202)


@registration_router.post("/auth/session")
async def exchange_session(payload: SessionExchangeRequest):
    """
    Exchange a provider access token for a server session.

    Behavior:
        - Resolves the identity with the provider; invalid tokens -> 401.
        - Unconfirmed emails -> 403 `email_not_confirmed`.
        - Provisions through the confirmation handler when no profile exists
          yet (callback missed), so the profile is still created exactly once.
    """
    services = get_services()
    try:
        identity = await services.provider.get_current_user(payload.access_token)
    except ProviderError as exc:
        return _private_error({"error": exc.code}, status_code=status_for_code(exc.code, 502))
    if identity is None:
        return _private_error({"error": "invalid_token"}, status_code=401)
    if not identity.email_confirmed:
        return _private_error({"error": "email_not_confirmed"}, status_code=403)

    try:
        profile = await services.queries.profile_for_identity(identity.id)
    except AdmissionsError as exc:
        return error_response(exc)
    if profile is None:
        result = await services.confirmation.on_email_confirmed(identity)
        if not result.success:
            return _private_error({"error": result.error_code}, status_code=status_for_code(result.error_code))
        try:
            profile = await services.queries.profile_for_identity(identity.id)
        except AdmissionsError as exc:
            return error_response(exc)
    if profile is None:
        return _private_error({"error": "profile_unavailable"}, status_code=502)

    response = _json_private({"sub": identity.id, "role": profile.role, "status": profile.status})
    _start_session(response, sub=identity.id, email=identity.email, name=profile.full_name, role=profile.role)
    return response


@registration_router.post("/auth/logout")
async def logout(request: Request):
    from backend.web import main as mod

    sid = request.cookies.get(mod.SESSION_COOKIE_NAME)
    if sid:
        mod.SESSION_STORE.delete(sid)
    response = _json_private({"ok": True})
    mod._set_session_cookie(response, "", max_age=0)
    return response


__all__ = ["registration_router"]
