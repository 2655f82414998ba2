"""
Registration orchestrator and deferred confirmation handler.

Scope:
    - Local validation never reaches the provider.
    - Only metadata rejections are retried, with shrinking payloads.
    - Confirmation-required signups provision later, exactly once.
    - Immediate sessions provision on the spot.
"""
from __future__ import annotations

import asyncio

import httpx
import pytest

from backend.admissions.enrollment import ENROLLMENT_RE
from backend.identity_access.gotrue_client import GoTrueClient, GoTrueConfig
from backend.identity_access.provider import Identity, ProviderError, ProviderUnavailable
from backend.tests.utils.fakes import FakeIdentityProvider, make_services, student_form, teacher_form

pytestmark = pytest.mark.anyio("asyncio")

CREDS = {"email": "sara@example.com", "password": "secret12"}


@pytest.mark.anyio
async def test_invalid_form_never_calls_provider():
    provider = FakeIdentityProvider()
    services = make_services(provider=provider)
    result = await services.registration.register("student", student_form(guardian_name=""), CREDS)
    assert result.success is False
    assert result.error_code == "missing_guardian_name"
    assert provider.calls == []


@pytest.mark.anyio
async def test_confirmation_required_signup_creates_no_profile_yet():
    provider = FakeIdentityProvider()
    services = make_services(provider=provider)
    result = await services.registration.register("student", student_form(), CREDS)
    assert result.success is True
    assert result.requires_confirmation is True
    assert result.enrollment_number is None
    assert services.repo.all_profiles() == []
    call = provider.calls[0]
    assert call.metadata["role"] == "student"
    assert call.metadata["selected_subjects"] == ["Physics", "Chemistry"]
    assert call.confirmation_redirect == services.cfg.confirmation_redirect_url


@pytest.mark.anyio
async def test_immediate_session_provisions_profile_with_enrollment_number():
    provider = FakeIdentityProvider(auto_confirm=True)
    services = make_services(provider=provider)
    result = await services.registration.register("student", student_form(), CREDS)
    assert result.success is True
    assert result.requires_confirmation is False
    assert result.status == "PENDING"
    assert ENROLLMENT_RE.match(result.enrollment_number) and len(result.enrollment_number) == 13
    [profile] = services.repo.all_profiles()
    assert profile.enrollment_no == result.enrollment_number
    assert profile.class_level == 11


@pytest.mark.anyio
async def test_metadata_rejection_retries_with_smaller_payloads():
    provider = FakeIdentityProvider(
        signup_errors=[
            ProviderError("unexpected_failure", "Database error saving new user", status=500),
            ProviderError("unexpected_failure", "Database error saving new user", status=500),
        ]
    )
    services = make_services(provider=provider)
    result = await services.registration.register("student", student_form(), CREDS)
    assert result.success is True
    sizes = [len(c.metadata) for c in provider.calls]
    assert len(sizes) == 3
    assert sizes[0] > sizes[1] > sizes[2]
    assert all(c.metadata["role"] == "student" for c in provider.calls)
    keys = [c.idempotency_key for c in provider.calls]
    assert len(set(keys)) == 3


@pytest.mark.anyio
async def test_metadata_retries_are_bounded():
    provider = FakeIdentityProvider(
        signup_errors=[ProviderError("metadata_rejected", status=500) for _ in range(5)]
    )
    services = make_services(provider=provider, metadata_retry_limit=1)
    result = await services.registration.register("teacher", teacher_form(), CREDS)
    assert result.success is False
    assert result.error_code == "metadata_rejected"
    assert len(provider.calls) == 2


@pytest.mark.anyio
@pytest.mark.parametrize("code", ["user_already_exists", "weak_password", "email_address_invalid"])
async def test_business_rule_failures_are_not_retried(code):
    provider = FakeIdentityProvider(signup_errors=[ProviderError(code, status=422)])
    services = make_services(provider=provider)
    result = await services.registration.register("student", student_form(), CREDS)
    assert result.success is False
    assert result.error_code == code
    assert len(provider.calls) == 1


@pytest.mark.anyio
async def test_provider_outage_is_reported_not_raised():
    provider = FakeIdentityProvider(signup_errors=[ProviderUnavailable("ConnectError")])
    services = make_services(provider=provider)
    result = await services.registration.register("student", student_form(), CREDS)
    assert result.success is False
    assert result.error_code == "provider_unavailable"
    assert len(provider.calls) == 1


@pytest.mark.anyio
async def test_admin_self_signup_disabled_by_default():
    provider = FakeIdentityProvider()
    services = make_services(provider=provider)
    result = await services.registration.register("admin", {"full_name": "Asha"}, CREDS)
    assert result.error_code == "admin_signup_disabled"
    assert provider.calls == []


@pytest.mark.anyio
async def test_confirmation_provisions_profile_from_snapshot():
    provider = FakeIdentityProvider()
    services = make_services(provider=provider)
    await services.registration.register("student", student_form(), CREDS)
    identity, _ = await provider.confirm(token_hash=provider.token_for("sara@example.com"), type="signup")

    result = await services.confirmation.on_email_confirmed(identity)
    assert result.success is True
    assert result.status == "PENDING"
    assert ENROLLMENT_RE.match(result.enrollment_number) and len(result.enrollment_number) == 13
    [profile] = services.repo.all_profiles()
    assert profile.enrollment_no == result.enrollment_number
    assert profile.class_level == 11
    assert profile.identity_id == identity.id
    assert profile.selected_subjects == ["Physics", "Chemistry"]
    assert profile.guardian_name == "Gita Guardian"


@pytest.mark.anyio
async def test_repeated_confirmation_callbacks_create_one_profile():
    provider = FakeIdentityProvider()
    services = make_services(provider=provider)
    await services.registration.register("teacher", teacher_form(), CREDS)
    identity, _ = await provider.confirm(token_hash=provider.token_for("sara@example.com"), type="signup")

    results = await asyncio.gather(*(services.confirmation.on_email_confirmed(identity) for _ in range(3)))
    assert all(r.success for r in results)
    assert len({r.profile_id for r in results}) == 1
    assert len(services.repo.all_profiles()) == 1


@pytest.mark.anyio
async def test_unconfirmed_identity_is_not_provisioned():
    services = make_services()
    identity = Identity(id="id-1", email="x@example.com", email_confirmed=False, metadata={"role": "student"})
    result = await services.confirmation.on_email_confirmed(identity)
    assert result.error_code == "email_not_confirmed"
    assert services.repo.all_profiles() == []


@pytest.mark.anyio
async def test_minimal_snapshot_gets_defaults():
    services = make_services()
    identity = Identity(
        id="id-1",
        email="tarun@example.com",
        email_confirmed=True,
        metadata={"role": "teacher", "full_name": "Tarun"},
    )
    result = await services.confirmation.on_email_confirmed(identity)
    assert result.success is True
    [profile] = services.repo.all_profiles()
    assert profile.subject_specialization == ["Other"]
    assert profile.experience_years == 0


@pytest.mark.anyio
async def test_admin_snapshot_refused_while_admin_signup_disabled():
    services = make_services()
    identity = Identity(id="id-1", email="a@example.com", email_confirmed=True, metadata={"role": "admin"})
    result = await services.confirmation.on_email_confirmed(identity)
    assert result.error_code == "admin_signup_disabled"
    assert services.repo.all_profiles() == []


@pytest.mark.anyio
async def test_snapshot_without_role_fails_cleanly():
    services = make_services()
    identity = Identity(id="id-1", email="a@example.com", email_confirmed=True, metadata={})
    result = await services.confirmation.on_email_confirmed(identity)
    assert result.error_code == "invalid_role_snapshot"


@pytest.mark.anyio
async def test_confirmed_identity_without_session_still_requires_confirmation():
    provider = FakeIdentityProvider(confirmed_without_session=True)
    services = make_services(provider=provider)
    result = await services.registration.register("student", student_form(), CREDS)
    assert result.success is True
    assert result.requires_confirmation is True
    assert result.enrollment_number is None
    assert services.repo.all_profiles() == []


@pytest.mark.anyio
async def test_non_json_provider_answer_is_a_failure_result():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>gateway</html>", headers={"Content-Type": "text/html"})

    client = GoTrueClient(
        GoTrueConfig(base_url="https://auth.example.com", anon_key="anon-key"),
        transport=httpx.MockTransport(handler),
    )
    services = make_services(provider=client)
    result = await services.registration.register("student", student_form(), CREDS)
    assert result.success is False
    assert result.error_code == "invalid_provider_response"
    assert services.repo.all_profiles() == []
