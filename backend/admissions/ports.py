"""
Storage port of the admissions core (the Access Policy Layer contract).

Every call carries the caller's identity (`caller_sub`); the store decides
allow/deny. Stores signal outcomes with plain exceptions so the services can
map them into the admissions taxonomy:

- `PermissionError("rls_denied")`: the policy layer refused the call.
- `LookupError("profile_not_found")`: the row does not exist.
- `DuplicateKeyError(field)`: a uniqueness constraint fired.
- `ValueError("invalid_profile_data")`: the row violates a data constraint.
- `ConnectionError("storage_unavailable")`: transport failure.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, Sequence

from .models import ApprovalAction, Profile


class DuplicateKeyError(Exception):
    def __init__(self, field: str):
        super().__init__(f"duplicate_{field}")
        self.field = field


@dataclass(frozen=True)
class TransitionRequest:
    profile_id: str
    expected_status: str
    new_status: str
    approver_id: str
    approver_role: str
    action: str
    reason: Optional[str]
    at: datetime


class AdmissionsRepoProtocol(Protocol):
    async def insert_profile(self, profile: Profile, *, caller_sub: str) -> Profile:
        ...

    async def get_profile(self, profile_id: str, *, caller_sub: str) -> Profile:
        ...

    async def get_profile_by_identity(self, identity_id: str, *, caller_sub: str) -> Optional[Profile]:
        ...

    async def count_student_profiles(self) -> int:
        ...

    async def next_enrollment_sequence(self, period: str) -> int:
        ...

    async def apply_transition(
        self, req: TransitionRequest, *, caller_sub: str
    ) -> Optional[tuple[Profile, ApprovalAction]]:
        """Conditionally move a profile and append the audit row atomically.

        Returns None when the profile is no longer in `expected_status`
        (the losing writer of a race); nothing is written in that case.
        """
        ...

    async def list_profiles(
        self,
        *,
        caller_sub: str,
        status: Optional[str] = None,
        roles: Sequence[str] = (),
    ) -> list[Profile]:
        ...

    async def list_actions(self, profile_id: str, *, caller_sub: str) -> list[ApprovalAction]:
        ...


__all__ = ["DuplicateKeyError", "TransitionRequest", "AdmissionsRepoProtocol"]
