"""Registration input validation and metadata shaping.

Why:
    Validation runs locally before the identity provider is contacted, so a
    bad form never creates a half-registered account. The same module shapes
    the signup metadata snapshot and reads it back on confirmation.
"""

from __future__ import annotations

import json
import re
from typing import Any, Mapping, Sequence

from backend.identity_access.domain import ALLOWED_ROLES

from .errors import ValidationError

SUBJECTS = ("Physics", "Chemistry", "Mathematics", "Biology", "English", "Other")
BATCHES = ("NEET", "JEE", "CET", "Other")

DEFAULT_CLASS_LEVEL = 11
DEFAULT_SUBJECT = "Other"
DEFAULT_EXPERIENCE_YEARS = 0

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_MOBILE_RE = re.compile(r"^\+?[0-9]{10,15}$")

# Fields every snapshot must keep, per role; anything else is optional.
_CORE_FIELDS = {
    "student": ("class_level", "guardian_name", "guardian_mobile"),
    "teacher": ("subject_specialization", "experience_years"),
    "admin": (),
}


def _normalize_role(value: object) -> str:
    role = value.strip().lower() if isinstance(value, str) else ""
    if role not in ALLOWED_ROLES:
        raise ValueError("invalid_role")
    return role


def _normalize_email(value: object) -> str:
    if not isinstance(value, str) or not _EMAIL_RE.match(value.strip()):
        raise ValueError("invalid_email")
    return value.strip().lower()


def _normalize_password(value: object, min_length: int) -> str:
    if not isinstance(value, str) or len(value) < min_length:
        raise ValueError("password_too_short")
    return value


def _normalize_full_name(value: object) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("invalid_full_name")
    name = " ".join(value.split())
    if len(name) > 200:
        raise ValueError("invalid_full_name")
    return name


def _normalize_mobile(value: object, code: str, *, required: bool) -> str | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValueError(code)
        return None
    if not isinstance(value, str):
        raise ValueError(code)
    compact = re.sub(r"[\s\-()]", "", value)
    if not _MOBILE_RE.match(compact):
        raise ValueError(code)
    return compact


def _normalize_class_level(value: object) -> int:
    if value is None or value == "":
        return DEFAULT_CLASS_LEVEL
    if isinstance(value, bool):
        raise ValueError("invalid_class_level")
    try:
        level = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ValueError("invalid_class_level")
    if level < 1 or level > 12:
        raise ValueError("invalid_class_level")
    return level


def _normalize_choices(value: object, allowed: Sequence[str], code: str) -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ValueError(code)
    lookup = {a.lower(): a for a in allowed}
    out: list[str] = []
    for item in value:
        if not isinstance(item, str) or item.strip().lower() not in lookup:
            raise ValueError(code)
        canonical = lookup[item.strip().lower()]
        if canonical not in out:
            out.append(canonical)
    return out


def _normalize_experience(value: object) -> int:
    if value is None or value == "":
        return DEFAULT_EXPERIENCE_YEARS
    if isinstance(value, bool):
        raise ValueError("invalid_experience_years")
    try:
        years = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ValueError("invalid_experience_years")
    if years < 0 or years > 60:
        raise ValueError("invalid_experience_years")
    return years


def _student_attributes(raw: Mapping[str, Any]) -> dict[str, Any]:
    guardian_name = raw.get("guardian_name")
    if not isinstance(guardian_name, str) or not guardian_name.strip():
        raise ValueError("missing_guardian_name")
    parent_email = raw.get("parent_email")
    out: dict[str, Any] = {
        "class_level": _normalize_class_level(raw.get("class_level")),
        "guardian_name": " ".join(guardian_name.split()),
        "guardian_mobile": _normalize_mobile(raw.get("guardian_mobile"), "missing_guardian_mobile", required=True),
        "parent_mobile": _normalize_mobile(raw.get("parent_mobile"), "invalid_parent_mobile", required=False),
        "student_mobile": _normalize_mobile(raw.get("student_mobile"), "invalid_student_mobile", required=False),
        "parent_email": _normalize_email(parent_email) if parent_email else None,
        "selected_subjects": _normalize_choices(raw.get("selected_subjects"), SUBJECTS, "invalid_subjects"),
        "selected_batches": _normalize_choices(raw.get("selected_batches"), BATCHES, "invalid_batches"),
    }
    return {k: v for k, v in out.items() if v not in (None, [])}


def _teacher_attributes(raw: Mapping[str, Any]) -> dict[str, Any]:
    subjects = raw.get("subject_specialization")
    if subjects in (None, "", []):
        subjects = raw.get("subject_expertise")
    specialization = _normalize_choices(subjects, SUBJECTS, "invalid_subject_expertise")
    if not specialization:
        raise ValueError("missing_subject_expertise")
    return {
        "subject_specialization": specialization,
        "experience_years": _normalize_experience(raw.get("experience_years")),
    }


def normalize_registration(
    role: str,
    attributes: Mapping[str, Any],
    credentials: Mapping[str, Any],
    *,
    min_password_length: int,
) -> tuple[str, dict[str, Any], str, str]:
    """Validate a registration form; returns (role, attributes, email, password).

    Raises `ValidationError` with the first failing field code. The returned
    attributes always carry `full_name` plus the role-specific fields.
    """
    try:
        role_n = _normalize_role(role)
        email = _normalize_email(credentials.get("email"))
        password = _normalize_password(credentials.get("password"), min_password_length)
        attrs: dict[str, Any] = {"full_name": _normalize_full_name(attributes.get("full_name"))}
        if role_n == "student":
            attrs.update(_student_attributes(attributes))
        elif role_n == "teacher":
            attrs.update(_teacher_attributes(attributes))
    except ValueError as exc:
        raise ValidationError(str(exc)) from None
    return role_n, attrs, email, password


def metadata_variants(role: str, attributes: Mapping[str, Any], *, registration_id: str) -> list[dict[str, Any]]:
    """Signup metadata payloads in strictly decreasing size.

    full snapshot -> role core fields only -> role + full_name. Duplicates
    (e.g. a student without optional fields) are collapsed so every retry
    actually sends less.
    """
    base = {"role": role, "registration_id": registration_id}
    full = {**base, **attributes}
    core_keys = ("full_name",) + _CORE_FIELDS.get(role, ())
    core = {**base, **{k: attributes[k] for k in core_keys if k in attributes}}
    minimal = {**base, "full_name": attributes.get("full_name", "")}
    variants: list[dict[str, Any]] = []
    for candidate in (full, core, minimal):
        if not variants or len(candidate) < len(variants[-1]):
            variants.append(candidate)
    return variants


def attributes_from_snapshot(role: str, metadata: Mapping[str, Any], *, email: str = "") -> dict[str, Any]:
    """Read the signup snapshot back leniently, filling defaults.

    Missing optional attributes fall back to class level 11, subject "Other"
    and zero years of experience. Invalid optional values are dropped instead
    of failing the confirmation.
    """
    name = metadata.get("full_name")
    if not isinstance(name, str) or not name.strip():
        name = email.split("@", 1)[0] if email else "Unknown"
    attrs: dict[str, Any] = {"full_name": " ".join(str(name).split())}
    if role == "student":
        try:
            attrs["class_level"] = _normalize_class_level(metadata.get("class_level"))
        except ValueError:
            attrs["class_level"] = DEFAULT_CLASS_LEVEL
        attrs["guardian_name"] = str(metadata.get("guardian_name") or "").strip()
        for key in ("guardian_mobile", "parent_mobile", "student_mobile"):
            try:
                value = _normalize_mobile(metadata.get(key), key, required=False)
            except ValueError:
                value = None
            if value:
                attrs[key] = value
        parent_email = metadata.get("parent_email")
        if parent_email:
            try:
                attrs["parent_email"] = _normalize_email(parent_email)
            except ValueError:
                pass
        for key, allowed in (("selected_subjects", SUBJECTS), ("selected_batches", BATCHES)):
            try:
                attrs[key] = _normalize_choices(_maybe_json_list(metadata.get(key)), allowed, key)
            except ValueError:
                attrs[key] = []
    elif role == "teacher":
        subjects = metadata.get("subject_specialization") or metadata.get("subject_expertise")
        try:
            specialization = _normalize_choices(_maybe_json_list(subjects), SUBJECTS, "subjects")
        except ValueError:
            specialization = []
        attrs["subject_specialization"] = specialization or [DEFAULT_SUBJECT]
        try:
            attrs["experience_years"] = _normalize_experience(metadata.get("experience_years"))
        except ValueError:
            attrs["experience_years"] = DEFAULT_EXPERIENCE_YEARS
    return attrs


def _maybe_json_list(value: object) -> object:
    # Older clients sent lists JSON-encoded inside metadata strings.
    if isinstance(value, str) and value.startswith("["):
        try:
            return json.loads(value)
        except ValueError:
            return []
    return value


def reduced_attributes(role: str, attributes: Mapping[str, Any]) -> dict[str, Any]:
    """Attributes without optional fields, used for a provisioning retry."""
    keep = ("full_name",) + _CORE_FIELDS.get(role, ())
    return {k: attributes[k] for k in keep if k in attributes}


__all__ = [
    "SUBJECTS",
    "BATCHES",
    "DEFAULT_CLASS_LEVEL",
    "normalize_registration",
    "metadata_variants",
    "attributes_from_snapshot",
    "reduced_attributes",
]
