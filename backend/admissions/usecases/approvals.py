"""
Approval workflow: PENDING -> APPROVED | REJECTED, plus the read side used
by approver dashboards.

Why:
    Approvals are the only place where profiles change after provisioning.
    Keeping the transition rules here (and the persistence in the repo) makes
    the state machine testable without a database.

Permissions:
    Admins act on student and teacher profiles; teachers act on students
    only; admin profiles never transition. The store re-checks the caller
    against its own policy, so a forged `approver_role` cannot widen access.

Concurrency:
    Transitions are conditional on the profile still being PENDING at write
    time. Of two racing approvers exactly one wins; the other receives
    `InvalidTransitionError` and no audit row is written for it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Optional
import logging

from backend.identity_access.domain import (
    APPROVER_MATRIX,
    STATUS_APPROVED,
    STATUS_PENDING,
    STATUS_REJECTED,
    can_approve,
)

from ..errors import (
    AdmissionsError,
    InvalidTransitionError,
    PolicyDeniedError,
    ProfileNotFoundError,
    StorageError,
    ValidationError,
)
from ..models import ApprovalAction, BulkApprovalResult, Profile, StudentProfile, TeacherProfile, utcnow
from ..ports import AdmissionsRepoProtocol, TransitionRequest

logger = logging.getLogger("edubloom.admissions.approvals")

MAX_REASON_LENGTH = 500


@dataclass(frozen=True)
class Approver:
    sub: str
    role: str


def _approver(approver_id: str, approver_role: str) -> Approver:
    role = (approver_role or "").strip().lower()
    if not approver_id:
        raise PolicyDeniedError("unauthenticated")
    if role not in APPROVER_MATRIX:
        raise PolicyDeniedError("approver_role_not_allowed")
    return Approver(sub=approver_id, role=role)


async def _guard(awaitable):
    """Await a repo call and translate store signals into the taxonomy."""
    try:
        return await awaitable
    except PermissionError:
        raise PolicyDeniedError("rls_denied")
    except LookupError:
        raise ProfileNotFoundError()
    except ConnectionError:
        raise StorageError()
    except ValueError:
        raise ValidationError("invalid_profile_data")


class ApprovalStateMachine:
    def __init__(self, repo: AdmissionsRepoProtocol, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._repo = repo
        self._clock = clock

    async def approve(self, profile_id: str, approver_id: str, approver_role: str) -> Profile:
        return await self._transition(profile_id, _approver(approver_id, approver_role), "approve", None)

    async def reject(self, profile_id: str, approver_id: str, approver_role: str, reason: str) -> Profile:
        cleaned = " ".join((reason or "").split()) if isinstance(reason, str) else ""
        if not cleaned:
            raise ValidationError("missing_reason", "A rejection reason is required.")
        if len(cleaned) > MAX_REASON_LENGTH:
            raise ValidationError("invalid_reason")
        return await self._transition(profile_id, _approver(approver_id, approver_role), "reject", cleaned)

    async def bulk_approve(
        self,
        approver_id: str,
        approver_role: str,
        profile_ids: Optional[Iterable[str]] = None,
    ) -> BulkApprovalResult:
        """Approve many profiles, best-effort.

        Each profile is transitioned on its own; a failure is recorded under
        its id and does not undo earlier successes. Without `profile_ids`,
        every PENDING profile visible to the approver is approved.
        """
        approver = _approver(approver_id, approver_role)
        if profile_ids is None:
            pending = await ApprovalQueries(self._repo).list_pending(approver.sub, approver.role)
            ids = [p.id for p in pending]
        else:
            ids = list(dict.fromkeys(str(pid) for pid in profile_ids))
        result = BulkApprovalResult()
        for pid in ids:
            try:
                await self._transition(pid, approver, "approve", None)
            except AdmissionsError as exc:
                result.failures[pid] = exc.code
            else:
                result.approved.append(pid)
        logger.info(
            "Bulk approval by %s: %d approved, %d failed", approver.sub, result.count, len(result.failures)
        )
        return result

    async def _transition(self, profile_id: str, approver: Approver, action: str, reason: Optional[str]) -> Profile:
        profile = await _guard(self._repo.get_profile(profile_id, caller_sub=approver.sub))
        if not can_approve(approver.role, profile.role):
            logger.warning(
                "Denied %s of %s profile=%s by %s approver=%s",
                action,
                profile.role,
                profile_id,
                approver.role,
                approver.sub,
            )
            raise PolicyDeniedError("approver_not_allowed_for_role")
        if profile.status != STATUS_PENDING:
            raise InvalidTransitionError(message=f"profile is {profile.status}, not {STATUS_PENDING}")

        req = TransitionRequest(
            profile_id=profile.id,
            expected_status=STATUS_PENDING,
            new_status=STATUS_APPROVED if action == "approve" else STATUS_REJECTED,
            approver_id=approver.sub,
            approver_role=approver.role,
            action=action,
            reason=reason,
            at=self._clock(),
        )
        outcome = await _guard(self._repo.apply_transition(req, caller_sub=approver.sub))
        if outcome is None:
            logger.info("Lost transition race profile=%s action=%s approver=%s", profile_id, action, approver.sub)
            raise InvalidTransitionError("status_changed", "profile was decided concurrently")
        updated, _audit = outcome
        logger.info("Profile %s %s by %s (%s)", profile_id, req.new_status, approver.sub, approver.role)
        return updated


class ApprovalQueries:
    def __init__(self, repo: AdmissionsRepoProtocol) -> None:
        self._repo = repo

    async def list_pending(self, caller_sub: str, caller_role: str, *, match_subjects: bool = False) -> list[Profile]:
        """PENDING profiles the caller may decide, oldest first.

        Teachers can narrow the queue to students whose selected subjects
        overlap their own specialization.
        """
        approver = _approver(caller_sub, caller_role)
        roles = sorted(APPROVER_MATRIX[approver.role])
        rows = await _guard(self._repo.list_profiles(caller_sub=approver.sub, status=STATUS_PENDING, roles=roles))
        if approver.role == "teacher" and match_subjects:
            me = await _guard(self._repo.get_profile_by_identity(approver.sub, caller_sub=approver.sub))
            subjects = set(me.subject_specialization) if isinstance(me, TeacherProfile) else set()
            rows = [
                p for p in rows if isinstance(p, StudentProfile) and subjects.intersection(p.selected_subjects)
            ]
        return sorted(rows, key=lambda p: p.created_at)

    async def stats(self, caller_sub: str, caller_role: str) -> dict[str, dict[str, int]]:
        approver = _approver(caller_sub, caller_role)
        roles = sorted(APPROVER_MATRIX[approver.role])
        out = {role: {STATUS_PENDING: 0, STATUS_APPROVED: 0, STATUS_REJECTED: 0} for role in roles}
        for p in await _guard(self._repo.list_profiles(caller_sub=approver.sub, roles=roles)):
            if p.role in out and p.status in out[p.role]:
                out[p.role][p.status] += 1
        return out

    async def history(self, profile_id: str, caller_sub: str) -> list[ApprovalAction]:
        await _guard(self._repo.get_profile(profile_id, caller_sub=caller_sub))
        actions = await _guard(self._repo.list_actions(profile_id, caller_sub=caller_sub))
        return sorted(actions, key=lambda a: a.created_at, reverse=True)

    async def profile_for_identity(self, identity_id: str) -> Optional[Profile]:
        return await _guard(self._repo.get_profile_by_identity(identity_id, caller_sub=identity_id))

    async def is_approved(self, identity_id: str) -> bool:
        profile = await self.profile_for_identity(identity_id)
        return profile is not None and profile.status == STATUS_APPROVED


__all__ = ["Approver", "ApprovalStateMachine", "ApprovalQueries", "MAX_REASON_LENGTH"]
