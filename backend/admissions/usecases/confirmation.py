from __future__ import annotations

import logging

from backend.identity_access.domain import ALLOWED_ROLES, STATUS_PENDING
from backend.identity_access.provider import Identity

from ..config import AdmissionsConfig
from ..errors import AdmissionsError, PolicyDeniedError, ValidationError
from ..models import RegistrationResult
from ..provisioning import ProfileProvisioner
from ..validation import attributes_from_snapshot
from .registration import failure_result

logger = logging.getLogger("edubloom.admissions.confirmation")


class DeferredConfirmationHandler:
    def __init__(self, provisioner: ProfileProvisioner, cfg: AdmissionsConfig) -> None:
        self._provisioner = provisioner
        self._cfg = cfg

    async def on_email_confirmed(self, identity: Identity) -> RegistrationResult:
        """Provision the profile captured in the signup snapshot.

        Behavior:
            - Requires a confirmed identity and a valid role in its metadata.
            - Missing optional attributes fall back to defaults.
            - Safe to call repeatedly (duplicate callbacks, browser refresh,
              session exchange after a missed callback): the provisioner
              returns the existing profile instead of inserting a second one.

        Security:
            The metadata is written by the client at signup, so an `admin`
            role in it is honored only when admin self-registration is enabled.
        """
        if not identity.email_confirmed:
            return failure_result(ValidationError("email_not_confirmed", "Email address is not confirmed yet."))
        raw_role = identity.metadata.get("role")
        role = raw_role.strip().lower() if isinstance(raw_role, str) else ""
        if role not in ALLOWED_ROLES:
            logger.warning("Confirmed identity without usable role snapshot identity=%s", identity.id)
            return failure_result(ValidationError("invalid_role_snapshot", "Registration data is incomplete."))
        if role == "admin" and not self._cfg.allow_admin_signup:
            logger.warning("Refusing admin snapshot while admin signup is disabled identity=%s", identity.id)
            return failure_result(PolicyDeniedError("admin_signup_disabled"))

        attrs = attributes_from_snapshot(role, identity.metadata, email=identity.email)
        try:
            profile = await self._provisioner.provision(identity.id, role, attrs, email=identity.email)
        except AdmissionsError as exc:
            logger.warning("Deferred provisioning failed identity=%s code=%s", identity.id, exc.code)
            return failure_result(exc)
        return RegistrationResult(
            success=True,
            message="Email confirmed. Your account is awaiting approval."
            if profile.status == STATUS_PENDING
            else "Email confirmed.",
            enrollment_number=getattr(profile, "enrollment_no", None),
            profile_id=profile.id,
            role=profile.role,
            status=profile.status,
        )


__all__ = ["DeferredConfirmationHandler"]
