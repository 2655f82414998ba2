"""
Postgres-backed admissions repository (profiles, approval actions, counters).

Security:
- Access with a limited-role DSN (IN ROLE edubloom_limited) so Row Level
  Security guards every query. The caller identity is bound per transaction
  via `set_config('app.current_sub', ..., true)`.
- Cross-row reads the policies cannot express go through SECURITY DEFINER
  helpers (`admissions_count_students`, `admissions_next_enrollment_seq`,
  `admissions_profile_exists`).

Design:
- psycopg3 async; each call opens a short-lived autocommit connection and runs
  one explicit transaction.
- Driver errors are translated to the store signals documented in
  `admissions.ports` (PermissionError, LookupError, DuplicateKeyError,
  ValueError, ConnectionError).
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Sequence
import logging
import os

try:
    import psycopg
    from psycopg.rows import dict_row
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional in some dev envs
    psycopg = None  # type: ignore
    dict_row = None  # type: ignore
    HAVE_PSYCOPG = False

from backend.identity_access.domain import STATUS_APPROVED

from .models import ApprovalAction, Profile, profile_from_row
from .ports import DuplicateKeyError, TransitionRequest

logger = logging.getLogger("edubloom.admissions.repo")

_PROFILE_COLUMNS_SQL = """
    id::text as id,
    identity_id,
    role,
    status,
    full_name,
    email,
    enrollment_no,
    class_level,
    guardian_name,
    guardian_mobile,
    parent_mobile,
    parent_email,
    student_mobile,
    selected_subjects,
    selected_batches,
    subject_specialization,
    experience_years,
    approved_by,
    approved_at,
    rejected_by,
    rejected_at,
    rejection_reason,
    created_at,
    updated_at
"""

_ACTION_COLUMNS_SQL = """
    id::text as id,
    profile_id::text as profile_id,
    approver_id,
    approver_role,
    action,
    reason,
    created_at
"""

_INSERT_COLUMNS = (
    "id",
    "identity_id",
    "role",
    "status",
    "full_name",
    "email",
    "enrollment_no",
    "class_level",
    "guardian_name",
    "guardian_mobile",
    "parent_mobile",
    "parent_email",
    "student_mobile",
    "selected_subjects",
    "selected_batches",
    "subject_specialization",
    "experience_years",
    "approved_by",
    "approved_at",
    "created_at",
    "updated_at",
)

_LIST_COLUMNS = frozenset({"selected_subjects", "selected_batches", "subject_specialization"})

_CONSTRAINT_FIELDS = {
    "profiles_identity_unique": "identity_id",
    "profiles_enrollment_unique": "enrollment_no",
}

# not_null, foreign_key, check, invalid_text_representation, string_data_right_truncation
_DATA_SQLSTATES = frozenset({"23502", "23503", "23514", "22P02", "22001"})


def _dsn() -> str:
    for dsn in (os.getenv("ADMISSIONS_DATABASE_URL"), os.getenv("DATABASE_URL")):
        if dsn:
            return dsn
    raise RuntimeError("Database DSN unavailable for DBAdmissionsRepo")


def _translate(exc: Exception) -> Exception:
    """Map a driver error to a store signal; unmapped errors count as an outage."""
    sqlstate = getattr(exc, "sqlstate", None)
    if sqlstate == "42501":  # insufficient_privilege (RLS with-check)
        return PermissionError("rls_denied")
    if sqlstate == "23505":
        diag = getattr(exc, "diag", None)
        constraint = getattr(diag, "constraint_name", None) or ""
        return DuplicateKeyError(_CONSTRAINT_FIELDS.get(constraint, constraint or "unknown"))
    if sqlstate in _DATA_SQLSTATES:
        return ValueError("invalid_profile_data")
    return ConnectionError("storage_unavailable")


def _insert_params(profile: Profile) -> dict[str, Any]:
    params: dict[str, Any] = {}
    for col in _INSERT_COLUMNS:
        value = getattr(profile, col, None)
        if col in _LIST_COLUMNS and value is None:
            value = []
        params[col] = value
    return params


def _action_from_row(row: dict) -> ApprovalAction:
    return ApprovalAction(
        id=row["id"],
        profile_id=row["profile_id"],
        approver_id=row["approver_id"],
        approver_role=row["approver_role"],
        action=row["action"],
        reason=row.get("reason"),
        created_at=row["created_at"],
    )


class DBAdmissionsRepo:
    def __init__(self, dsn: Optional[str] = None, *, allow_admin_signup: bool = False) -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBAdmissionsRepo")
        self._dsn = dsn or _dsn()
        self._allow_admin_signup = allow_admin_signup

    @asynccontextmanager
    async def _tx(self, caller_sub: Optional[str] = None) -> AsyncIterator[Any]:
        try:
            async with await psycopg.AsyncConnection.connect(  # type: ignore[union-attr]
                self._dsn, autocommit=True, row_factory=dict_row
            ) as conn:
                async with conn.transaction():
                    async with conn.cursor() as cur:
                        if caller_sub is not None:
                            await cur.execute("select set_config('app.current_sub', %s, true)", (caller_sub,))
                        await cur.execute(
                            "select set_config('app.allow_admin_signup', %s, true)",
                            ("on" if self._allow_admin_signup else "off",),
                        )
                        yield cur
        except psycopg.Error as exc:  # type: ignore[union-attr]
            mapped = _translate(exc)
            if isinstance(mapped, ConnectionError):
                logger.warning(
                    "Admissions store unavailable: %s sqlstate=%s",
                    exc.__class__.__name__,
                    getattr(exc, "sqlstate", None),
                )
            raise mapped from exc

    async def insert_profile(self, profile: Profile, *, caller_sub: str) -> Profile:
        """Insert a new profile; `identity_id` conflicts surface as DuplicateKeyError.

        Behavior:
            - `on conflict (identity_id) do nothing` keeps concurrent provisioning
              from raising; an empty RETURNING means the row already existed.
            - An `enrollment_no` collision raises 23505 and maps to
              `DuplicateKeyError("enrollment_no")`.
            - RLS rejects rows for another identity or with a non-initial status.
        """
        params = _insert_params(profile)
        cols = ", ".join(_INSERT_COLUMNS)
        placeholders = ", ".join(f"%({c})s" for c in _INSERT_COLUMNS)
        async with self._tx(caller_sub) as cur:
            await cur.execute(
                f"""
                insert into public.profiles ({cols})
                values ({placeholders})
                on conflict (identity_id) do nothing
                returning {_PROFILE_COLUMNS_SQL}
                """,
                params,
            )
            row = await cur.fetchone()
        if row is None:
            raise DuplicateKeyError("identity_id")
        return profile_from_row(row)

    async def get_profile(self, profile_id: str, *, caller_sub: str) -> Profile:
        async with self._tx(caller_sub) as cur:
            await cur.execute(
                f"select {_PROFILE_COLUMNS_SQL} from public.profiles where id = %s::uuid",
                (profile_id,),
            )
            row = await cur.fetchone()
            if row is None:
                await cur.execute("select public.admissions_profile_exists(%s::uuid) as present", (profile_id,))
                probe = await cur.fetchone()
                if probe and probe["present"]:
                    raise PermissionError("rls_denied")
                raise LookupError("profile_not_found")
        return profile_from_row(row)

    async def get_profile_by_identity(self, identity_id: str, *, caller_sub: str) -> Optional[Profile]:
        async with self._tx(caller_sub) as cur:
            await cur.execute(
                f"select {_PROFILE_COLUMNS_SQL} from public.profiles where identity_id = %s",
                (identity_id,),
            )
            row = await cur.fetchone()
        return profile_from_row(row) if row else None

    async def count_student_profiles(self) -> int:
        async with self._tx() as cur:
            await cur.execute("select public.admissions_count_students() as n")
            row = await cur.fetchone()
        return int(row["n"]) if row else 0

    async def next_enrollment_sequence(self, period: str) -> int:
        async with self._tx() as cur:
            await cur.execute("select public.admissions_next_enrollment_seq(%s) as seq", (period,))
            row = await cur.fetchone()
        if not row or row["seq"] is None:
            raise ConnectionError("storage_unavailable")
        return int(row["seq"])

    async def apply_transition(
        self, req: TransitionRequest, *, caller_sub: str
    ) -> Optional[tuple[Profile, ApprovalAction]]:
        """Conditionally update the status and append the audit row in one transaction.

        Concurrency:
            `where status = expected_status` makes the update a compare-and-set;
            the losing writer updates zero rows and gets None back.
        """
        if req.new_status == STATUS_APPROVED:
            assignments = "approved_by = %(approver)s, approved_at = %(at)s"
        else:
            assignments = "rejected_by = %(approver)s, rejected_at = %(at)s, rejection_reason = %(reason)s"
        params = {
            "id": req.profile_id,
            "expected": req.expected_status,
            "new_status": req.new_status,
            "approver": req.approver_id,
            "approver_role": req.approver_role,
            "action": req.action,
            "reason": req.reason,
            "at": req.at,
        }
        async with self._tx(caller_sub) as cur:
            await cur.execute(
                f"""
                update public.profiles
                   set status = %(new_status)s, updated_at = %(at)s, {assignments}
                 where id = %(id)s::uuid and status = %(expected)s
                returning {_PROFILE_COLUMNS_SQL}
                """,
                params,
            )
            row = await cur.fetchone()
            if row is None:
                await cur.execute("select status from public.profiles where id = %s::uuid", (req.profile_id,))
                current = await cur.fetchone()
                if current is None:
                    await cur.execute(
                        "select public.admissions_profile_exists(%s::uuid) as present", (req.profile_id,)
                    )
                    probe = await cur.fetchone()
                    if probe and probe["present"]:
                        raise PermissionError("rls_denied")
                    raise LookupError("profile_not_found")
                if current["status"] == req.expected_status:
                    # Visible and still pending, yet not updatable: the update policy said no.
                    raise PermissionError("rls_denied")
                return None
            await cur.execute(
                f"""
                insert into public.approval_actions (profile_id, approver_id, approver_role, action, reason, created_at)
                values (%(id)s::uuid, %(approver)s, %(approver_role)s, %(action)s, %(reason)s, %(at)s)
                returning {_ACTION_COLUMNS_SQL}
                """,
                params,
            )
            action_row = await cur.fetchone()
        return profile_from_row(row), _action_from_row(action_row)

    async def list_profiles(
        self,
        *,
        caller_sub: str,
        status: Optional[str] = None,
        roles: Sequence[str] = (),
    ) -> list[Profile]:
        clauses = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = %s")
            params.append(status)
        if roles:
            clauses.append("role = any(%s)")
            params.append(list(roles))
        where = f"where {' and '.join(clauses)}" if clauses else ""
        async with self._tx(caller_sub) as cur:
            await cur.execute(
                f"select {_PROFILE_COLUMNS_SQL} from public.profiles {where} order by created_at asc",
                params,
            )
            rows = await cur.fetchall()
        return [profile_from_row(r) for r in rows]

    async def list_actions(self, profile_id: str, *, caller_sub: str) -> list[ApprovalAction]:
        async with self._tx(caller_sub) as cur:
            await cur.execute(
                f"""
                select {_ACTION_COLUMNS_SQL}
                  from public.approval_actions
                 where profile_id = %s::uuid
                 order by created_at desc
                """,
                (profile_id,),
            )
            rows = await cur.fetchall()
        return [_action_from_row(r) for r in rows]


__all__ = ["DBAdmissionsRepo", "HAVE_PSYCOPG"]
