"""
Admissions configuration parsing and validation.

Intent:
    Read the environment variables that shape the registration pipeline in
    one place: password policy, confirmation redirect, allocator selection
    and the bounded retry limits.

Why:
    Explicit defaults and range checks keep the retry bounds small and
    fixed, and let tests exercise config behaviour without booting the app.
"""
from __future__ import annotations

from dataclasses import dataclass
import os
from urllib.parse import urlparse

ALLOCATOR_SEQUENCE = "sequence"
ALLOCATOR_COUNT = "count"


@dataclass(frozen=True)
class AdmissionsConfig:
    min_password_length: int = 6
    confirmation_redirect_url: str = "http://localhost:8100/auth/confirm"
    allocator: str = ALLOCATOR_SEQUENCE
    metadata_retry_limit: int = 2
    provision_retry_limit: int = 1
    allow_admin_signup: bool = False


def _int_env(name: str, default: int, *, lo: int, hi: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got: {raw!r}")
    if value < lo or value > hi:
        raise ValueError(f"{name} out of range ({lo}..{hi}), got: {value}")
    return value


def _bool_env(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _validate_redirect(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        raise ValueError("EDUBLOOM_CONFIRM_REDIRECT_URL must be an absolute http(s) URL")


def load_admissions_config() -> AdmissionsConfig:
    """
    Parse and validate admissions configuration from environment variables.

    Behavior:
        - `EDUBLOOM_MIN_PASSWORD_LENGTH` (6..128, default 6).
        - `EDUBLOOM_CONFIRM_REDIRECT_URL` must be an absolute http(s) URL.
        - `EDUBLOOM_ENROLLMENT_ALLOCATOR` is "sequence" (default) or "count".
        - `EDUBLOOM_METADATA_RETRY_LIMIT` (0..2) and
          `EDUBLOOM_PROVISION_RETRY_LIMIT` (0..3) bound the retries.
        - `EDUBLOOM_ALLOW_ADMIN_SIGNUP` enables admin self-registration.
    """
    defaults = AdmissionsConfig()
    redirect = (os.getenv("EDUBLOOM_CONFIRM_REDIRECT_URL") or defaults.confirmation_redirect_url).strip()
    _validate_redirect(redirect)
    allocator = (os.getenv("EDUBLOOM_ENROLLMENT_ALLOCATOR") or ALLOCATOR_SEQUENCE).strip().lower()
    if allocator not in {ALLOCATOR_SEQUENCE, ALLOCATOR_COUNT}:
        raise ValueError("EDUBLOOM_ENROLLMENT_ALLOCATOR must be 'sequence' or 'count'")
    return AdmissionsConfig(
        min_password_length=_int_env("EDUBLOOM_MIN_PASSWORD_LENGTH", defaults.min_password_length, lo=6, hi=128),
        confirmation_redirect_url=redirect,
        allocator=allocator,
        metadata_retry_limit=_int_env("EDUBLOOM_METADATA_RETRY_LIMIT", defaults.metadata_retry_limit, lo=0, hi=2),
        provision_retry_limit=_int_env("EDUBLOOM_PROVISION_RETRY_LIMIT", defaults.provision_retry_limit, lo=0, hi=3),
        allow_admin_signup=_bool_env("EDUBLOOM_ALLOW_ADMIN_SIGNUP", defaults.allow_admin_signup),
    )


__all__ = ["AdmissionsConfig", "ALLOCATOR_SEQUENCE", "ALLOCATOR_COUNT", "load_admissions_config"]
