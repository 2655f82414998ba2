"""
Startup security checks for EduBloom Connect.

Why: Registration handles minors' contact data and grants approver rights, so
an accidental insecure deployment is costly. This module provides a single
guard that enforces minimal production safety constraints without burdening
local development.

Permissions: The caller needs no special privileges. The function simply reads
environment variables and raises `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

from urllib.parse import urlparse
import os
import re


def _is_prod_like(env: str) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def _parse_user(dsn_value: str) -> str | None:
    if "://" in dsn_value:
        try:
            return urlparse(dsn_value).username
        except ValueError:
            return None
    # Keyword form: host=... user=... dbname=...
    m = re.search(r"\buser\s*=\s*([^\s]+)", dsn_value)
    return m.group(1) if m else None


def ensure_secure_config_on_startup() -> None:
    """Fail fast on insecure production configuration.

    Intent: Abort process startup when obviously insecure settings are detected
    in production/staging. Development remains permissive for convenience.

    Checks:
    - SUPABASE_URL must use https.
    - SUPABASE_ANON_KEY must be set and not a known dummy placeholder.
    - DATABASE_URL must be set (no in-memory store) and must not disable TLS.
    - DSN users must not be the application role `edubloom_limited` (the
      role is NOLOGIN; use an env-specific login that is IN ROLE
      edubloom_limited).
    - The counting enrollment allocator and admin self-signup are dev-only.
    """

    env = os.getenv("EDUBLOOM_ENV", "dev")
    if not _is_prod_like(env):
        return  # dev/test remain permissive

    # 1) Identity provider endpoint and key
    supabase_url = (os.getenv("SUPABASE_URL") or "").strip().lower()
    if not supabase_url.startswith("https://"):
        raise SystemExit("Refusing to start: SUPABASE_URL must use https in production.")
    anon = (os.getenv("SUPABASE_ANON_KEY") or "").strip()
    if not anon or anon.upper() == "DUMMY_DO_NOT_USE":
        raise SystemExit("Refusing to start: SUPABASE_ANON_KEY is unset or a dummy placeholder in production.")

    # 2) Postgres: required, TLS not explicitly disabled
    dsn = os.getenv("ADMISSIONS_DATABASE_URL") or os.getenv("DATABASE_URL") or ""
    if not dsn:
        raise SystemExit("Refusing to start: DATABASE_URL is required in production (in-memory store is dev-only).")
    if "sslmode=disable" in dsn:
        raise SystemExit(
            "Refusing to start: DATABASE_URL contains sslmode=disable in production. Use sslmode=require or verify TLS."
        )

    # 3) DSN user must not be the app role in prod-like envs
    for key in ("DATABASE_URL", "ADMISSIONS_DATABASE_URL"):
        val = os.getenv(key, "")
        if not val:
            continue
        user = (_parse_user(val) or "").lower()
        if user == "edubloom_limited":
            raise SystemExit(
                f"Refusing to start: {key} authenticates as 'edubloom_limited' in production. "
                "Create an environment-specific login role that is IN ROLE edubloom_limited and use that instead."
            )

    # 4) Racy allocator and admin self-signup are not allowed
    if (os.getenv("EDUBLOOM_ENROLLMENT_ALLOCATOR") or "").strip().lower() == "count":
        raise SystemExit("Refusing to start: EDUBLOOM_ENROLLMENT_ALLOCATOR=count is not allowed in production/staging.")
    if (os.getenv("EDUBLOOM_ALLOW_ADMIN_SIGNUP", "false") or "").strip().lower() in ("1", "true", "yes", "on"):
        raise SystemExit("Refusing to start: EDUBLOOM_ALLOW_ADMIN_SIGNUP must be false in production/staging.")
