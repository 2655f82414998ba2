"""
Identity provider port: the contract the admissions core needs from the
external account service.

Why:
    The registration pipeline must not depend on a concrete provider SDK. The
    orchestrator and the confirmation handler talk to this Protocol; the
    GoTrue adapter (Supabase Auth) and the test fakes implement it.

Behavior:
    Provider failures are raised as `ProviderError` carrying the provider's
    error code. Callers branch on `code`/`metadata_rejected`, never on the
    message text.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol


# Business-rule rejections: surfacing them verbatim is the only correct move.
BUSINESS_RULE_CODES = frozenset(
    {
        "user_already_exists",
        "email_exists",
        "weak_password",
        "email_address_invalid",
        "email_address_not_authorized",
        "signup_disabled",
        "over_email_send_rate_limit",
        "over_request_rate_limit",
    }
)

# Provider rejected the signup payload shape (e.g. a metadata trigger failed).
METADATA_REJECTED_CODES = frozenset({"unexpected_failure", "metadata_rejected"})


class ProviderError(Exception):
    def __init__(self, code: str, message: str = "", *, status: int | None = None):
        super().__init__(code)
        self.code = code
        self.message = message or code
        self.status = status

    @property
    def metadata_rejected(self) -> bool:
        return self.code in METADATA_REJECTED_CODES

    @property
    def business_rule(self) -> bool:
        return self.code in BUSINESS_RULE_CODES


class ProviderUnavailable(ProviderError):
    """Transport failure talking to the provider (timeout, refused, 5xx proxy)."""

    def __init__(self, message: str = ""):
        super().__init__("provider_unavailable", message)


@dataclass(frozen=True)
class Identity:
    id: str
    email: str
    email_confirmed: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderSession:
    access_token: str
    refresh_token: str = ""
    expires_in: int = 3600


@dataclass(frozen=True)
class SignUpResult:
    identity: Identity
    session: Optional[ProviderSession] = None

    @property
    def requires_confirmation(self) -> bool:
        return self.session is None


class IdentityProviderProtocol(Protocol):
    async def create_account(
        self,
        *,
        email: str,
        password: str,
        metadata: dict[str, Any],
        confirmation_redirect: str,
        idempotency_key: str | None = None,
    ) -> SignUpResult:
        ...

    async def get_current_user(self, access_token: str) -> Optional[Identity]:
        ...

    async def confirm(self, *, token_hash: str, type: str) -> tuple[Identity, ProviderSession]:
        ...

    async def resend_confirmation(self, *, email: str, confirmation_redirect: str) -> None:
        ...


__all__ = [
    "BUSINESS_RULE_CODES",
    "METADATA_REJECTED_CODES",
    "ProviderError",
    "ProviderUnavailable",
    "Identity",
    "ProviderSession",
    "SignUpResult",
    "IdentityProviderProtocol",
]
