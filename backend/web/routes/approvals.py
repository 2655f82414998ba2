"""
Approval routes for admins and teachers, plus the caller's own profile.

Why:
    Thin HTTP adapter over the approval state machine and queries. All rules
    (role matrix, PENDING-only transitions, audit log) live in the use cases
    and the store policy; this module only authenticates, guards CSRF and
    maps errors to status codes.

Permissions:
    Requires a session (enforced by the auth middleware). The approver role
    is the session role, which is derived from the server-side profile.
"""

from __future__ import annotations

from typing import Optional
import logging
import uuid

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from backend.admissions.errors import AdmissionsError

from ..admissions_wiring import get_services
from .responses import _json_private, _private_error, error_response
from .security import _is_same_origin

approvals_router = APIRouter(tags=["Approvals"])
logger = logging.getLogger("edubloom.web.approvals")


class RejectRequest(BaseModel):
    reason: str = Field("", max_length=2000)


class BulkApproveRequest(BaseModel):
    profile_ids: Optional[list[str]] = Field(None, max_length=500)


def _current_user(request: Request) -> dict:
    return getattr(request.state, "user", None) or {}


def _is_uuid_like(value: str) -> bool:
    try:
        uuid.UUID(str(value))
        return True
    except ValueError:
        return False


def _csrf_guard(request: Request):
    if not _is_same_origin(request):
        logger.warning("Cross-origin write rejected path=%s", request.url.path)
        return _private_error({"error": "csrf_violation"}, status_code=403, vary_origin=True)
    return None


@approvals_router.get("/api/me")
async def get_me(request: Request):
    """Own profile and approval state (`approved` is true only for APPROVED)."""
    user = _current_user(request)
    try:
        profile = await get_services().queries.profile_for_identity(user.get("sub", ""))
    except AdmissionsError as exc:
        return error_response(exc)
    if profile is None:
        return _private_error({"error": "profile_not_found"}, status_code=404)
    return _json_private({"profile": profile.to_dict(), "approved": profile.status == "APPROVED"})


@approvals_router.get("/api/approvals/pending")
async def list_pending(request: Request, match_subjects: bool = False):
    user = _current_user(request)
    try:
        rows = await get_services().queries.list_pending(
            user.get("sub", ""), user.get("role", ""), match_subjects=match_subjects
        )
    except AdmissionsError as exc:
        return error_response(exc)
    return _json_private({"items": [p.to_dict() for p in rows]})


@approvals_router.get("/api/approvals/stats")
async def approval_stats(request: Request):
    user = _current_user(request)
    try:
        stats = await get_services().queries.stats(user.get("sub", ""), user.get("role", ""))
    except AdmissionsError as exc:
        return error_response(exc)
    return _json_private(stats)


@approvals_router.get("/api/profiles/{profile_id}/approval-actions")
async def approval_history(request: Request, profile_id: str):
    if not _is_uuid_like(profile_id):
        return _private_error({"error": "invalid_profile_id"}, status_code=400)
    user = _current_user(request)
    try:
        actions = await get_services().queries.history(profile_id, user.get("sub", ""))
    except AdmissionsError as exc:
        return error_response(exc)
    return _json_private({"items": [a.to_dict() for a in actions]})


@approvals_router.post("/api/approvals/{profile_id}/approve")
async def approve_profile(request: Request, profile_id: str):
    """
    Approve a PENDING profile.

    Behavior:
        - 200 `{ok, profile}` on success.
        - 403 when the approver may not decide this role, 404 when unknown,
          409 when the profile is not (or no longer) PENDING.
    """
    if (denied := _csrf_guard(request)) is not None:
        return denied
    if not _is_uuid_like(profile_id):
        return _private_error({"error": "invalid_profile_id"}, status_code=400)
    user = _current_user(request)
    try:
        profile = await get_services().approvals.approve(profile_id, user.get("sub", ""), user.get("role", ""))
    except AdmissionsError as exc:
        return error_response(exc)
    return _json_private({"ok": True, "profile": profile.to_dict()})


@approvals_router.post("/api/approvals/{profile_id}/reject")
async def reject_profile(request: Request, profile_id: str, payload: RejectRequest):
    if (denied := _csrf_guard(request)) is not None:
        return denied
    if not _is_uuid_like(profile_id):
        return _private_error({"error": "invalid_profile_id"}, status_code=400)
    user = _current_user(request)
    try:
        profile = await get_services().approvals.reject(
            profile_id, user.get("sub", ""), user.get("role", ""), payload.reason
        )
    except AdmissionsError as exc:
        return error_response(exc)
    return _json_private({"ok": True, "profile": profile.to_dict()})


@approvals_router.post("/api/approvals/bulk-approve")
async def bulk_approve(request: Request, payload: BulkApproveRequest):
    """Best-effort approve-all; returns `{count, approved, failures}` (never all-or-nothing)."""
    if (denied := _csrf_guard(request)) is not None:
        return denied
    ids = payload.profile_ids
    if ids is not None and not all(_is_uuid_like(pid) for pid in ids):
        return _private_error({"error": "invalid_profile_id"}, status_code=400)
    user = _current_user(request)
    try:
        result = await get_services().approvals.bulk_approve(user.get("sub", ""), user.get("role", ""), ids)
    except AdmissionsError as exc:
        return error_response(exc)
    return _json_private(result.to_dict())


__all__ = ["approvals_router"]
