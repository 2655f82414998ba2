"""
Identity domain constants and simple helpers.

Why:
- Centralize roles and approval states to avoid drift between the admissions
  core, the storage adapters and the web layer.
- Keep the approver matrix in one place so the in-memory repo, the SQL
  policies and the state machine agree on who may act on whom.
"""

from __future__ import annotations

# Keep roles minimal and explicit. Immutable to prevent accidental mutation.
ALLOWED_ROLES = frozenset({"student", "teacher", "admin"})

STATUS_PENDING = "PENDING"
STATUS_APPROVED = "APPROVED"
STATUS_REJECTED = "REJECTED"
ALLOWED_STATUSES = frozenset({STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED})

# approver role -> profile roles it may approve or reject
APPROVER_MATRIX: dict[str, frozenset[str]] = {
    "admin": frozenset({"student", "teacher"}),
    "teacher": frozenset({"student"}),
}


def initial_status(role: str) -> str:
    """Admins are admitted on creation; everyone else waits for an approver."""
    return STATUS_APPROVED if role == "admin" else STATUS_PENDING


def can_approve(approver_role: str, profile_role: str) -> bool:
    return profile_role in APPROVER_MATRIX.get((approver_role or "").lower(), frozenset())


def primary_role(roles: list[str]) -> str:
    priority = ["admin", "teacher", "student"]
    lowered = [r.lower() for r in roles if isinstance(r, str)]
    for r in priority:
        if r in lowered:
            return r
    return "student"


__all__ = [
    "ALLOWED_ROLES",
    "ALLOWED_STATUSES",
    "APPROVER_MATRIX",
    "STATUS_PENDING",
    "STATUS_APPROVED",
    "STATUS_REJECTED",
    "initial_status",
    "can_approve",
    "primary_role",
]
