"""
Async client for the Supabase Auth (GoTrue) REST API.

Why: The admissions core only needs four provider capabilities (create
account, resolve the current user, verify a confirmation token, resend the
confirmation mail). Talking to the REST endpoints directly keeps the adapter
small and lets tests inject an `httpx.MockTransport`.

Security:
- Only the anon (public) key is used; the service-role key never leaves the
  database tier.
- Passwords, tokens and metadata are never logged.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional
import logging
import os

import httpx

from .provider import Identity, ProviderError, ProviderSession, ProviderUnavailable, SignUpResult

logger = logging.getLogger("edubloom.identity_access")

_VERIFY_TYPES = frozenset({"signup", "email", "invite", "magiclink", "recovery", "email_change"})


@dataclass(frozen=True)
class GoTrueConfig:
    base_url: str  # e.g., https://xyz.supabase.co
    anon_key: str
    timeout_seconds: float = 10.0

    @property
    def auth_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/auth/v1"


def load_gotrue_config() -> GoTrueConfig:
    base_url = (os.getenv("SUPABASE_URL") or "http://127.0.0.1:54321").strip()
    anon_key = (os.getenv("SUPABASE_ANON_KEY") or "").strip()
    raw_timeout = (os.getenv("SUPABASE_AUTH_TIMEOUT_SECONDS") or "10").strip()
    try:
        timeout = float(raw_timeout)
    except ValueError:
        timeout = 10.0
    if timeout <= 0:
        timeout = 10.0
    return GoTrueConfig(base_url=base_url, anon_key=anon_key, timeout_seconds=timeout)


def _identity_from_user(user: dict[str, Any]) -> Identity:
    user_id = str(user.get("id") or "")
    if not user_id:
        raise ProviderError("user_id_missing", "provider response has no user id")
    metadata = user.get("user_metadata") or {}
    if not isinstance(metadata, dict):
        metadata = {}
    return Identity(
        id=user_id,
        email=str(user.get("email") or ""),
        email_confirmed=bool(user.get("email_confirmed_at") or user.get("confirmed_at")),
        metadata=dict(metadata),
    )


def _session_from_body(body: dict[str, Any]) -> Optional[ProviderSession]:
    token = body.get("access_token")
    if not token:
        return None
    try:
        expires_in = int(body.get("expires_in") or 3600)
    except (TypeError, ValueError):
        expires_in = 3600
    return ProviderSession(
        access_token=str(token),
        refresh_token=str(body.get("refresh_token") or ""),
        expires_in=expires_in,
    )


def _error_from_response(resp: httpx.Response) -> ProviderError:
    """Translate a GoTrue error body into a `ProviderError`.

    GoTrue answers either with `{"error_code", "msg"}` (current releases) or
    with `{"error", "error_description"}` (older releases). A failing
    metadata trigger surfaces as HTTP 500 "Database error saving new user".
    """
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    code = str(body.get("error_code") or body.get("error") or "").strip()
    message = str(body.get("msg") or body.get("error_description") or body.get("message") or "")
    if resp.status_code >= 500 and "database error saving new user" in message.lower():
        code = "metadata_rejected"
    if not code:
        if resp.status_code == 429:
            code = "over_request_rate_limit"
        elif resp.status_code >= 500:
            return ProviderUnavailable(f"http_{resp.status_code}")
        else:
            code = f"http_{resp.status_code}"
    return ProviderError(code, message, status=resp.status_code)


def _json_object(resp: httpx.Response) -> dict[str, Any]:
    """Decode a successful response body; anything but a JSON object is a provider fault."""
    try:
        body = resp.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        logger.warning("Auth provider returned a non-object body status=%s", resp.status_code)
        raise ProviderError("invalid_provider_response", status=resp.status_code)
    return body


class GoTrueClient:
    """Implements `IdentityProviderProtocol` against GoTrue's REST API."""

    def __init__(self, cfg: GoTrueConfig, *, transport: httpx.AsyncBaseTransport | None = None):
        self.cfg = cfg
        self._transport = transport

    def _headers(self, bearer: str | None = None) -> dict[str, str]:
        return {
            "apikey": self.cfg.anon_key,
            "Authorization": f"Bearer {bearer or self.cfg.anon_key}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                base_url=self.cfg.auth_url,
                timeout=self.cfg.timeout_seconds,
                transport=self._transport,
                follow_redirects=False,
            ) as client:
                return await client.request(method, path, json=json, params=params, headers=headers)
        except httpx.TransportError as exc:
            logger.warning("Auth provider unreachable: %s", exc.__class__.__name__)
            raise ProviderUnavailable(exc.__class__.__name__) from exc

    async def create_account(
        self,
        *,
        email: str,
        password: str,
        metadata: dict[str, Any],
        confirmation_redirect: str,
        idempotency_key: str | None = None,
    ) -> SignUpResult:
        headers = self._headers()
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        params = {"redirect_to": confirmation_redirect} if confirmation_redirect else None
        resp = await self._request(
            "POST",
            "/signup",
            json={"email": email, "password": password, "data": metadata},
            params=params,
            headers=headers,
        )
        if resp.status_code >= 400:
            raise _error_from_response(resp)
        body = _json_object(resp)
        # Autoconfirm answers with a session wrapping `user`; otherwise the body is the user.
        user = body.get("user") if isinstance(body.get("user"), dict) else body
        return SignUpResult(identity=_identity_from_user(user), session=_session_from_body(body))

    async def get_current_user(self, access_token: str) -> Optional[Identity]:
        if not access_token:
            return None
        resp = await self._request("GET", "/user", headers=self._headers(access_token))
        if resp.status_code in (401, 403):
            return None
        if resp.status_code >= 400:
            raise _error_from_response(resp)
        return _identity_from_user(_json_object(resp))

    async def confirm(self, *, token_hash: str, type: str) -> tuple[Identity, ProviderSession]:
        if type not in _VERIFY_TYPES:
            raise ProviderError("invalid_verify_type")
        if not token_hash:
            raise ProviderError("invalid_token_hash")
        resp = await self._request(
            "POST",
            "/verify",
            json={"type": type, "token_hash": token_hash},
            headers=self._headers(),
        )
        if resp.status_code >= 400:
            raise _error_from_response(resp)
        body = _json_object(resp)
        session = _session_from_body(body)
        user = body.get("user")
        if session is None or not isinstance(user, dict):
            raise ProviderError("verify_missing_session")
        return _identity_from_user(user), session

    async def resend_confirmation(self, *, email: str, confirmation_redirect: str) -> None:
        params = {"redirect_to": confirmation_redirect} if confirmation_redirect else None
        resp = await self._request(
            "POST",
            "/resend",
            json={"type": "signup", "email": email},
            params=params,
            headers=self._headers(),
        )
        if resp.status_code >= 400:
            raise _error_from_response(resp)


__all__ = ["GoTrueConfig", "GoTrueClient", "load_gotrue_config"]
