from __future__ import annotations

from typing import Any, Mapping
import logging
import uuid

from backend.identity_access.domain import STATUS_PENDING
from backend.identity_access.provider import IdentityProviderProtocol, ProviderError, SignUpResult

from ..config import AdmissionsConfig
from ..errors import AdmissionsError, IdentityProviderError, ValidationError
from ..models import RegistrationResult
from ..provisioning import ProfileProvisioner
from ..validation import metadata_variants, normalize_registration

logger = logging.getLogger("edubloom.admissions.registration")


def failure_result(exc: AdmissionsError, message: str | None = None) -> RegistrationResult:
    return RegistrationResult(success=False, message=message or exc.message, error_code=exc.code)


class RegistrationOrchestrator:
    def __init__(
        self,
        provider: IdentityProviderProtocol,
        provisioner: ProfileProvisioner,
        cfg: AdmissionsConfig,
    ) -> None:
        self._provider = provider
        self._provisioner = provisioner
        self._cfg = cfg

    async def register(
        self,
        role: str,
        attributes: Mapping[str, Any],
        credentials: Mapping[str, Any],
    ) -> RegistrationResult:
        """Register a new account and report a structured result.

        Intent:
            Single entry point for self-registration. Never raises for
            expected failures; every outcome is a `RegistrationResult`.

        Behavior:
            - Validates the form locally; failures never reach the provider.
            - Creates the account with role + attributes as signup metadata and
              the confirmation redirect as callback target.
            - No session at signup (confirmation pending, or the identity is
              already confirmed but not signed in): returns
              `requires_confirmation=True`; the confirmation handler or the
              session exchange provisions later.
            - Provider granted a session right away: provisions now and
              includes the enrollment number.
            - Only a metadata rejection (by provider error code) is retried,
              with strictly smaller payloads. Business-rule failures such as
              duplicate email or weak password surface immediately.
        """
        requested = role.strip().lower() if isinstance(role, str) else ""
        try:
            if requested == "admin" and not self._cfg.allow_admin_signup:
                raise ValidationError("admin_signup_disabled", "Administrator accounts cannot be self-registered.")
            role_n, attrs, email, password = normalize_registration(
                requested,
                attributes,
                credentials,
                min_password_length=self._cfg.min_password_length,
            )
        except ValidationError as exc:
            return failure_result(exc)

        registration_id = str(uuid.uuid4())
        try:
            signup = await self._create_account(email, password, role_n, attrs, registration_id)
        except IdentityProviderError as exc:
            logger.info("Signup refused by provider code=%s registration=%s", exc.code, registration_id)
            return failure_result(exc)

        if signup.session is None:
            logger.info(
                "Signup pending confirmation identity=%s role=%s registration=%s",
                signup.identity.id,
                role_n,
                registration_id,
            )
            return RegistrationResult(
                success=True,
                message="Registration received. Please confirm your email address to continue.",
                requires_confirmation=True,
                role=role_n,
            )

        # Provider is configured without confirmation; provision on the spot.
        logger.info("Provider granted a session at signup, provisioning immediately identity=%s", signup.identity.id)
        try:
            profile = await self._provisioner.provision(signup.identity.id, role_n, attrs, email=email)
        except AdmissionsError as exc:
            logger.warning("Immediate provisioning failed identity=%s code=%s", signup.identity.id, exc.code)
            return failure_result(exc, "Account created, but the profile could not be set up yet.")
        return RegistrationResult(
            success=True,
            message="Registration complete. Your account is awaiting approval."
            if profile.status == STATUS_PENDING
            else "Registration complete.",
            enrollment_number=getattr(profile, "enrollment_no", None),
            profile_id=profile.id,
            role=profile.role,
            status=profile.status,
        )

    async def _create_account(
        self,
        email: str,
        password: str,
        role: str,
        attributes: Mapping[str, Any],
        registration_id: str,
    ) -> SignUpResult:
        variants = metadata_variants(role, attributes, registration_id=registration_id)
        variants = variants[: self._cfg.metadata_retry_limit + 1]
        attempt = 0
        while True:
            try:
                return await self._provider.create_account(
                    email=email,
                    password=password,
                    metadata=variants[attempt],
                    confirmation_redirect=self._cfg.confirmation_redirect_url,
                    idempotency_key=f"{registration_id}:{attempt}",
                )
            except ProviderError as exc:
                if exc.metadata_rejected and attempt + 1 < len(variants):
                    logger.warning(
                        "Provider rejected signup metadata, retrying with %d keys registration=%s",
                        len(variants[attempt + 1]),
                        registration_id,
                    )
                    attempt += 1
                    continue
                if not exc.business_rule:
                    logger.warning("Signup failed at provider code=%s registration=%s", exc.code, registration_id)
                raise IdentityProviderError(exc.code, exc.message) from exc


__all__ = ["RegistrationOrchestrator", "failure_result"]
