"""
Admissions records: role-tagged profiles, approval audit rows and results.

Why:
    One shared base with role-specific payloads instead of three independently
    evolving record shapes. `role` is the discriminant; `profile_from_row`
    picks the variant so storage adapters can stay role-agnostic.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Mapping, Optional
import json


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Profile:
    id: str
    identity_id: str
    role: str
    status: str
    full_name: str
    email: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        for key, value in out.items():
            if isinstance(value, datetime):
                out[key] = value.isoformat()
        return out


@dataclass
class StudentProfile(Profile):
    enrollment_no: Optional[str] = None
    class_level: int = 11
    guardian_name: str = ""
    guardian_mobile: str = ""
    parent_mobile: Optional[str] = None
    parent_email: Optional[str] = None
    student_mobile: Optional[str] = None
    selected_subjects: list[str] = field(default_factory=list)
    selected_batches: list[str] = field(default_factory=list)


@dataclass
class TeacherProfile(Profile):
    subject_specialization: list[str] = field(default_factory=list)
    experience_years: int = 0


@dataclass
class AdminProfile(Profile):
    pass


PROFILE_VARIANTS: dict[str, type[Profile]] = {
    "student": StudentProfile,
    "teacher": TeacherProfile,
    "admin": AdminProfile,
}

_LIST_FIELDS = frozenset({"selected_subjects", "selected_batches", "subject_specialization"})


def _as_list(value: Any) -> list[str]:
    # Older rows stored lists as JSON strings.
    if value is None:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return [value] if value else []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return []


def profile_from_row(row: Mapping[str, Any]) -> Profile:
    """Build the role variant for a storage row; unknown columns are ignored."""
    role = str(row.get("role") or "")
    cls = PROFILE_VARIANTS.get(role)
    if cls is None:
        raise ValueError("invalid_role")
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in row:
            continue
        value = row[f.name]
        if f.name in _LIST_FIELDS:
            value = _as_list(value)
        elif f.name in ("id", "identity_id", "approved_by", "rejected_by") and value is not None:
            value = str(value)
        kwargs[f.name] = value
    return cls(**kwargs)


@dataclass(frozen=True)
class ApprovalAction:
    id: str
    profile_id: str
    approver_id: str
    approver_role: str
    action: str  # "approve" | "reject"
    reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["created_at"] = self.created_at.isoformat()
        return out


@dataclass(frozen=True)
class RegistrationResult:
    success: bool
    message: str
    requires_confirmation: bool = False
    enrollment_number: Optional[str] = None
    profile_id: Optional[str] = None
    role: Optional[str] = None
    status: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class BulkApprovalResult:
    approved: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def count(self) -> int:
        return len(self.approved)

    def to_dict(self) -> dict[str, Any]:
        return {"count": self.count, "approved": list(self.approved), "failures": dict(self.failures)}


__all__ = [
    "utcnow",
    "Profile",
    "StudentProfile",
    "TeacherProfile",
    "AdminProfile",
    "PROFILE_VARIANTS",
    "profile_from_row",
    "ApprovalAction",
    "RegistrationResult",
    "BulkApprovalResult",
]
