"""
In-memory admissions store for development and tests.

Why:
    Lets the app and the test suite run without Postgres while keeping the
    same observable contract as the DB repo: unique `identity_id`, unique
    `enrollment_no`, conditional transitions, and a row policy equivalent to
    the SQL RLS policies (caller identity + caller's approved profile role).

Behavior:
    Every call yields to the event loop once before touching state, mimicking
    the network round trip of a real store. Check-and-write steps never await
    in between, so each call is atomic, while sequences of calls (count, then
    insert) interleave across tasks the way they would against a database.
"""
from __future__ import annotations

from copy import deepcopy
from typing import Optional, Sequence
import asyncio
import uuid

from backend.identity_access.domain import (
    ALLOWED_STATUSES,
    APPROVER_MATRIX,
    STATUS_APPROVED,
    can_approve,
    initial_status,
)

from .models import ApprovalAction, Profile, StudentProfile, TeacherProfile
from .ports import DuplicateKeyError, TransitionRequest


class InMemoryAdmissionsRepo:
    def __init__(self, *, allow_admin_signup: bool = False) -> None:
        self._profiles: dict[str, Profile] = {}
        self._by_identity: dict[str, str] = {}
        self._enrollment_nos: set[str] = set()
        self._actions: list[ApprovalAction] = []
        self._counters: dict[str, int] = {}
        self._allow_admin_signup = allow_admin_signup

    # --- policy ---------------------------------------------------------------

    def _caller_role(self, caller_sub: str) -> Optional[str]:
        """Role of the caller's own APPROVED profile, if any."""
        pid = self._by_identity.get(caller_sub)
        if pid is None:
            return None
        me = self._profiles[pid]
        return me.role if me.status == STATUS_APPROVED else None

    def _can_read(self, profile: Profile, caller_sub: str) -> bool:
        if profile.identity_id == caller_sub:
            return True
        role = self._caller_role(caller_sub)
        return role is not None and can_approve(role, profile.role)

    # --- helpers for tests and bootstrap ---------------------------------------

    def seed_profile(self, profile: Profile) -> Profile:
        """Insert a row bypassing the policy (fixtures, bootstrap admins)."""
        self._store(profile)
        return deepcopy(profile)

    def all_profiles(self) -> list[Profile]:
        return [deepcopy(p) for p in self._profiles.values()]

    def all_actions(self) -> list[ApprovalAction]:
        return list(self._actions)

    def _store(self, profile: Profile) -> None:
        if profile.identity_id in self._by_identity:
            raise DuplicateKeyError("identity_id")
        enrollment_no = getattr(profile, "enrollment_no", None)
        if enrollment_no and enrollment_no in self._enrollment_nos:
            raise DuplicateKeyError("enrollment_no")
        stored = deepcopy(profile)
        self._profiles[stored.id] = stored
        self._by_identity[stored.identity_id] = stored.id
        if enrollment_no:
            self._enrollment_nos.add(enrollment_no)

    # --- AdmissionsRepoProtocol -----------------------------------------------

    async def insert_profile(self, profile: Profile, *, caller_sub: str) -> Profile:
        await asyncio.sleep(0)
        if profile.identity_id != caller_sub:
            raise PermissionError("rls_denied")
        if profile.status != initial_status(profile.role):
            raise PermissionError("rls_denied")
        if profile.role == "admin" and not self._allow_admin_signup:
            raise PermissionError("rls_denied")
        if profile.status not in ALLOWED_STATUSES:
            raise ValueError("invalid_profile_data")
        if isinstance(profile, StudentProfile):
            if not profile.enrollment_no or not (1 <= int(profile.class_level) <= 12):
                raise ValueError("invalid_profile_data")
        if isinstance(profile, TeacherProfile) and not (0 <= int(profile.experience_years) <= 60):
            raise ValueError("invalid_profile_data")
        self._store(profile)
        return deepcopy(profile)

    async def get_profile(self, profile_id: str, *, caller_sub: str) -> Profile:
        await asyncio.sleep(0)
        profile = self._profiles.get(profile_id)
        if profile is None:
            raise LookupError("profile_not_found")
        if not self._can_read(profile, caller_sub):
            raise PermissionError("rls_denied")
        return deepcopy(profile)

    async def get_profile_by_identity(self, identity_id: str, *, caller_sub: str) -> Optional[Profile]:
        await asyncio.sleep(0)
        pid = self._by_identity.get(identity_id)
        if pid is None:
            return None
        profile = self._profiles[pid]
        if not self._can_read(profile, caller_sub):
            raise PermissionError("rls_denied")
        return deepcopy(profile)

    async def count_student_profiles(self) -> int:
        await asyncio.sleep(0)
        return sum(1 for p in self._profiles.values() if p.role == "student")

    async def next_enrollment_sequence(self, period: str) -> int:
        await asyncio.sleep(0)
        value = self._counters.get(period, 0) + 1
        self._counters[period] = value
        return value

    async def apply_transition(
        self, req: TransitionRequest, *, caller_sub: str
    ) -> Optional[tuple[Profile, ApprovalAction]]:
        await asyncio.sleep(0)
        profile = self._profiles.get(req.profile_id)
        if profile is None:
            raise LookupError("profile_not_found")
        role = self._caller_role(caller_sub)
        if req.approver_id != caller_sub or role is None or role not in APPROVER_MATRIX:
            raise PermissionError("rls_denied")
        if not can_approve(role, profile.role):
            raise PermissionError("rls_denied")
        if profile.status != req.expected_status:
            return None
        profile.status = req.new_status
        profile.updated_at = req.at
        if req.new_status == STATUS_APPROVED:
            profile.approved_by = req.approver_id
            profile.approved_at = req.at
        else:
            profile.rejected_by = req.approver_id
            profile.rejected_at = req.at
            profile.rejection_reason = req.reason
        action = ApprovalAction(
            id=str(uuid.uuid4()),
            profile_id=profile.id,
            approver_id=req.approver_id,
            approver_role=role,
            action=req.action,
            reason=req.reason,
            created_at=req.at,
        )
        self._actions.append(action)
        return deepcopy(profile), action

    async def list_profiles(
        self,
        *,
        caller_sub: str,
        status: Optional[str] = None,
        roles: Sequence[str] = (),
    ) -> list[Profile]:
        await asyncio.sleep(0)
        out = []
        for p in self._profiles.values():
            if status is not None and p.status != status:
                continue
            if roles and p.role not in roles:
                continue
            if self._can_read(p, caller_sub):
                out.append(deepcopy(p))
        return out

    async def list_actions(self, profile_id: str, *, caller_sub: str) -> list[ApprovalAction]:
        await asyncio.sleep(0)
        profile = self._profiles.get(profile_id)
        if profile is None or not self._can_read(profile, caller_sub):
            return []
        return [a for a in self._actions if a.profile_id == profile_id]


__all__ = ["InMemoryAdmissionsRepo"]
