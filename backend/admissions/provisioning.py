"""
Profile provisioning: build and persist the role-specific profile exactly
once per identity.

Why:
    Provisioning runs from two entry points (immediate signup session and the
    deferred confirmation callback) and both may fire more than once. The
    uniqueness constraint on `identity_id` is the synchronization primitive:
    a conflict means "already provisioned" and the existing row is returned.

Behavior:
    - Students receive an enrollment number from the configured allocator.
      An `enrollment_no` collision triggers one re-allocation; a second
      collision surfaces as `AllocationConflictError`.
    - Rows rejected for data reasons are retried with optional attributes
      dropped, up to `retry_limit` times, then `ProvisioningError`.
    - Policy denials are never retried (`PolicyDeniedError`).
"""

from __future__ import annotations

from dataclasses import fields
from datetime import datetime
from typing import Any, Callable, Mapping, Optional
import logging
import uuid

from backend.identity_access.domain import ALLOWED_ROLES, STATUS_APPROVED, initial_status

from .enrollment import EnrollmentAllocatorProtocol
from .errors import AllocationConflictError, PolicyDeniedError, ProvisioningError
from .models import PROFILE_VARIANTS, Profile, utcnow
from .ports import AdmissionsRepoProtocol, DuplicateKeyError
from .validation import reduced_attributes

logger = logging.getLogger("edubloom.admissions.provisioning")


class ProfileProvisioner:
    def __init__(
        self,
        repo: AdmissionsRepoProtocol,
        allocator: EnrollmentAllocatorProtocol,
        *,
        retry_limit: int = 1,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = repo
        self._allocator = allocator
        self._retry_limit = max(0, retry_limit)
        self._clock = clock

    async def provision(
        self,
        identity_id: str,
        role: str,
        attributes: Mapping[str, Any],
        *,
        email: str = "",
    ) -> Profile:
        if not identity_id:
            raise ProvisioningError("missing_identity")
        if role not in ALLOWED_ROLES:
            raise ProvisioningError("invalid_role")

        existing = await self._existing(identity_id)
        if existing is not None:
            return existing

        payload = dict(attributes)
        retries_left = self._retry_limit
        reallocated = False
        enrollment_no = await self._allocate(role)
        while True:
            profile = self._build(identity_id, role, payload, email=email, enrollment_no=enrollment_no)
            try:
                created = await self._repo.insert_profile(profile, caller_sub=identity_id)
            except DuplicateKeyError as exc:
                if exc.field == "identity_id":
                    existing = await self._existing(identity_id)
                    if existing is None:
                        raise ProvisioningError("profile_conflict_unreadable")
                    logger.info("Profile already provisioned identity=%s", identity_id)
                    return existing
                if exc.field == "enrollment_no":
                    if reallocated:
                        logger.warning("Enrollment number collided twice identity=%s", identity_id)
                        raise AllocationConflictError(message=f"enrollment number {enrollment_no} already taken")
                    reallocated = True
                    logger.warning("Enrollment number collision, re-allocating identity=%s", identity_id)
                    enrollment_no = await self._allocate(role)
                    continue
                raise ProvisioningError(f"duplicate_{exc.field}")
            except PermissionError:
                logger.warning("Profile insert denied by policy identity=%s role=%s", identity_id, role)
                raise PolicyDeniedError("rls_denied")
            except ConnectionError:
                raise ProvisioningError("storage_unavailable")
            except ValueError:
                reduced = reduced_attributes(role, payload)
                if retries_left <= 0 or reduced == payload:
                    raise ProvisioningError("invalid_profile_data")
                retries_left -= 1
                logger.warning("Profile insert rejected, retrying with reduced attributes identity=%s", identity_id)
                payload = reduced
                continue
            logger.info(
                "Profile provisioned identity=%s role=%s status=%s", identity_id, created.role, created.status
            )
            return created

    async def _existing(self, identity_id: str) -> Optional[Profile]:
        try:
            return await self._repo.get_profile_by_identity(identity_id, caller_sub=identity_id)
        except PermissionError:
            raise PolicyDeniedError("rls_denied")
        except ConnectionError:
            raise ProvisioningError("storage_unavailable")

    async def _allocate(self, role: str) -> Optional[str]:
        try:
            return await self._allocator.allocate(role)
        except PermissionError:
            raise PolicyDeniedError("rls_denied")
        except ConnectionError:
            raise ProvisioningError("enrollment_unavailable")

    def _build(
        self,
        identity_id: str,
        role: str,
        attributes: Mapping[str, Any],
        *,
        email: str,
        enrollment_no: Optional[str],
    ) -> Profile:
        cls = PROFILE_VARIANTS[role]
        now = self._clock()
        status = initial_status(role)
        allowed = {f.name for f in fields(cls)} - {f.name for f in fields(Profile)}
        extra = {k: v for k, v in attributes.items() if k in allowed}
        if role == "student":
            extra["enrollment_no"] = enrollment_no
        profile = cls(
            id=str(uuid.uuid4()),
            identity_id=identity_id,
            role=role,
            status=status,
            full_name=str(attributes.get("full_name") or ""),
            email=email,
            created_at=now,
            updated_at=now,
            **extra,
        )
        if status == STATUS_APPROVED:
            # Admins are self-admitted; approval fields stay consistent with the status.
            profile.approved_by = identity_id
            profile.approved_at = now
        return profile


__all__ = ["ProfileProvisioner"]
