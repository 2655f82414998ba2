"""
HTTP contract of the registration, confirmation and approval endpoints.

Scope:
    - Public `/auth/*` routes: register, confirm, resend, session exchange,
      logout.
    - Session-protected `/api/*` routes: own profile, pending queue, stats,
      approve/reject/bulk, history.
    - Cross-cutting: 401 without session, CSRF on writes, private caching.
"""
from __future__ import annotations

import re

import httpx
import pytest
from httpx import ASGITransport

from backend.admissions.enrollment import ENROLLMENT_RE
from backend.admissions.repo_memory import InMemoryAdmissionsRepo
from backend.tests.utils.fakes import (
    FakeIdentityProvider,
    make_services,
    seed_admin,
    seed_student,
    seed_teacher,
    student_form,
)
from backend.web import admissions_wiring
from backend.web import main

pytestmark = pytest.mark.anyio("asyncio")

BASE_URL = "https://test"


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=ASGITransport(app=main.app), base_url=BASE_URL)


def _install(provider: FakeIdentityProvider | None = None, **cfg):
    provider = provider or FakeIdentityProvider()
    repo = InMemoryAdmissionsRepo(allow_admin_signup=cfg.get("allow_admin_signup", False))
    services = make_services(provider=provider, repo=repo, **cfg)
    admissions_wiring.set_services(services)
    return services, provider, repo


def _login(profile) -> dict[str, str]:
    rec = main.SESSION_STORE.create(sub=profile.identity_id, roles=[profile.role], name=profile.full_name)
    return {"Cookie": f"{main.SESSION_COOKIE_NAME}={rec.session_id}"}


def _session_id(resp: httpx.Response) -> str:
    m = re.search(rf"{main.SESSION_COOKIE_NAME}=([^;]+)", resp.headers.get("set-cookie", ""))
    assert m, "expected a session cookie"
    return m.group(1)


def _register_body(**overrides) -> dict:
    body = {"role": "student", "email": "sara@example.com", "password": "secret12", **student_form()}
    body.update(overrides)
    return body


@pytest.mark.anyio
async def test_api_requires_session():
    _install()
    async with _client() as client:
        r = await client.get("/api/me")
    assert r.status_code == 401
    assert r.json() == {"error": "unauthenticated"}
    assert r.headers.get("Cache-Control") == "private, no-store"


@pytest.mark.anyio
async def test_health_is_public():
    async with _client() as client:
        r = await client.get("/health")
    assert r.status_code == 200
    assert r.headers.get("X-Content-Type-Options") == "nosniff"


@pytest.mark.anyio
async def test_register_accepted_pending_confirmation():
    services, provider, repo = _install()
    async with _client() as client:
        r = await client.post("/auth/register", json=_register_body())
    assert r.status_code == 202
    body = r.json()
    assert body["success"] is True
    assert body["requires_confirmation"] is True
    assert repo.all_profiles() == []
    assert len(provider.calls) == 1


@pytest.mark.anyio
async def test_register_validation_error_is_400_and_skips_provider():
    _, provider, _ = _install()
    async with _client() as client:
        r = await client.post("/auth/register", json=_register_body(password="123"))
    assert r.status_code == 400
    assert r.json()["error"] == "password_too_short"
    assert provider.calls == []


@pytest.mark.anyio
async def test_register_duplicate_email_is_409():
    _install()
    async with _client() as client:
        first = await client.post("/auth/register", json=_register_body())
        second = await client.post("/auth/register", json=_register_body())
    assert first.status_code == 202
    assert second.status_code == 409
    assert second.json()["error"] == "user_already_exists"


@pytest.mark.anyio
async def test_register_enforces_domain_allow_list(monkeypatch: pytest.MonkeyPatch):
    _, provider, _ = _install()
    monkeypatch.setenv("ALLOWED_REGISTRATION_DOMAINS", " @School.edu ")
    async with _client() as client:
        denied = await client.post("/auth/register", json=_register_body())
        allowed = await client.post("/auth/register", json=_register_body(email="sara@school.edu"))
    assert denied.status_code == 400
    assert denied.json()["error"] == "invalid_email_domain"
    assert allowed.status_code == 202
    assert [c.email for c in provider.calls] == ["sara@school.edu"]


@pytest.mark.anyio
async def test_register_admin_forbidden_by_default():
    _install()
    async with _client() as client:
        r = await client.post("/auth/register", json=_register_body(role="admin"))
    assert r.status_code == 403
    assert r.json()["error"] == "admin_signup_disabled"


@pytest.mark.anyio
async def test_register_with_immediate_session_returns_201_and_enrollment():
    _, _, repo = _install(FakeIdentityProvider(auto_confirm=True))
    async with _client() as client:
        r = await client.post("/auth/register", json=_register_body())
    assert r.status_code == 201
    number = r.json()["enrollment_number"]
    assert ENROLLMENT_RE.match(number) and len(number) == 13
    [profile] = repo.all_profiles()
    assert profile.class_level == 11


@pytest.mark.anyio
async def test_confirm_provisions_once_and_starts_session():
    _, provider, repo = _install()
    async with _client() as client:
        await client.post("/auth/register", json=_register_body())
        token = provider.token_for("sara@example.com")
        first = await client.get(
            "/auth/confirm", params={"token_hash": token, "type": "signup"}, headers={"Accept": "application/json"}
        )
        second = await client.get(
            "/auth/confirm", params={"token_hash": token, "type": "signup"}, headers={"Accept": "application/json"}
        )
        sid = _session_id(first)
        me = await client.get("/api/me", headers={"Cookie": f"{main.SESSION_COOKIE_NAME}={sid}"})

    assert first.status_code == 200 and second.status_code == 200
    assert first.json()["profile_id"] == second.json()["profile_id"]
    assert len(repo.all_profiles()) == 1
    assert "HttpOnly" in first.headers["set-cookie"]
    assert me.status_code == 200
    assert me.json()["profile"]["status"] == "PENDING"
    assert me.json()["approved"] is False


@pytest.mark.anyio
async def test_confirm_redirects_to_inapp_next_only():
    _, provider, _ = _install()
    async with _client() as client:
        await client.post("/auth/register", json=_register_body())
        token = provider.token_for("sara@example.com")
        ok = await client.get("/auth/confirm", params={"token_hash": token, "next": "/welcome"}, follow_redirects=False)
        evil = await client.get(
            "/auth/confirm", params={"token_hash": token, "next": "//evil.example"}, follow_redirects=False
        )
    assert ok.status_code == 303 and ok.headers["location"] == "/welcome"
    assert evil.status_code == 303 and evil.headers["location"] == "/"


@pytest.mark.anyio
async def test_confirm_with_bad_token_fails():
    _install()
    async with _client() as client:
        missing = await client.get("/auth/confirm")
        bad = await client.get("/auth/confirm", params={"token_hash": "nope"})
        wrong_type = await client.get("/auth/confirm", params={"token_hash": "x", "type": "recovery"})
    assert missing.status_code == 400
    assert bad.status_code == 400 and bad.json()["error"] == "otp_expired"
    assert wrong_type.status_code == 400


@pytest.mark.anyio
async def test_resend_confirmation_is_accepted():
    _, provider, _ = _install()
    async with _client() as client:
        r = await client.post("/auth/confirm/resend", json={"email": " Sara@Example.com "})
    assert r.status_code == 202
    assert provider.resent == ["sara@example.com"]


@pytest.mark.anyio
async def test_session_exchange_provisions_missed_callback():
    _, provider, repo = _install()
    async with _client() as client:
        await client.post("/auth/register", json=_register_body())
        identity = provider.identity_for("sara@example.com")
        unconfirmed = await client.post("/auth/session", json={"access_token": f"access-{identity.id}"})
        await provider.confirm(token_hash=provider.token_for("sara@example.com"), type="signup")
        r = await client.post("/auth/session", json={"access_token": f"access-{identity.id}"})
        invalid = await client.post("/auth/session", json={"access_token": "access-unknown"})
    assert unconfirmed.status_code == 403
    assert r.status_code == 200
    assert r.json() == {"sub": identity.id, "role": "student", "status": "PENDING"}
    assert len(repo.all_profiles()) == 1
    assert invalid.status_code == 401


@pytest.mark.anyio
async def test_logout_clears_session():
    _, _, repo = _install()
    student = seed_student(repo)
    headers = _login(student)
    async with _client() as client:
        out = await client.post("/auth/logout", headers=headers)
        me = await client.get("/api/me", headers=headers)
    assert out.status_code == 200
    assert "Max-Age=0" in out.headers.get("set-cookie", "")
    assert me.status_code == 401


@pytest.mark.anyio
async def test_teacher_approves_student_via_api():
    _, _, repo = _install()
    teacher = seed_teacher(repo)
    student = seed_student(repo)
    headers = _login(teacher)
    async with _client() as client:
        pending = await client.get("/api/approvals/pending", headers=headers)
        r = await client.post(
            f"/api/approvals/{student.id}/approve", headers={**headers, "Origin": BASE_URL}
        )
        again = await client.post(f"/api/approvals/{student.id}/approve", headers=headers)
        history = await client.get(f"/api/profiles/{student.id}/approval-actions", headers=headers)
    assert [p["id"] for p in pending.json()["items"]] == [student.id]
    assert r.status_code == 200
    assert r.json()["profile"]["status"] == "APPROVED"
    assert again.status_code == 409
    assert [a["action"] for a in history.json()["items"]] == ["approve"]


@pytest.mark.anyio
async def test_teacher_cannot_approve_teacher_via_api():
    _, _, repo = _install()
    teacher = seed_teacher(repo)
    applicant = seed_teacher(repo, status="PENDING")
    async with _client() as client:
        r = await client.post(f"/api/approvals/{applicant.id}/approve", headers=_login(teacher))
    assert r.status_code == 403


@pytest.mark.anyio
async def test_reject_requires_reason_via_api():
    _, _, repo = _install()
    admin = seed_admin(repo)
    student = seed_student(repo)
    headers = _login(admin)
    async with _client() as client:
        missing = await client.post(f"/api/approvals/{student.id}/reject", json={"reason": " "}, headers=headers)
        ok = await client.post(
            f"/api/approvals/{student.id}/reject", json={"reason": "Documents missing"}, headers=headers
        )
    assert missing.status_code == 400 and missing.json()["error"] == "missing_reason"
    assert ok.status_code == 200
    assert ok.json()["profile"]["rejection_reason"] == "Documents missing"


@pytest.mark.anyio
async def test_cross_origin_write_is_rejected():
    _, _, repo = _install()
    admin = seed_admin(repo)
    student = seed_student(repo)
    async with _client() as client:
        r = await client.post(
            f"/api/approvals/{student.id}/approve",
            headers={**_login(admin), "Origin": "https://evil.example"},
        )
    assert r.status_code == 403
    assert r.json()["error"] == "csrf_violation"
    assert [p.status for p in repo.all_profiles() if p.id == student.id] == ["PENDING"]


@pytest.mark.anyio
async def test_invalid_profile_id_is_400():
    _, _, repo = _install()
    admin = seed_admin(repo)
    async with _client() as client:
        r = await client.post("/api/approvals/not-a-uuid/approve", headers=_login(admin))
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_profile_id"


@pytest.mark.anyio
async def test_bulk_approve_and_stats_via_api():
    _, _, repo = _install()
    admin = seed_admin(repo)
    students = [seed_student(repo) for _ in range(2)]
    done = seed_student(repo, status="APPROVED")
    headers = _login(admin)
    async with _client() as client:
        bulk = await client.post(
            "/api/approvals/bulk-approve",
            json={"profile_ids": [s.id for s in students] + [done.id]},
            headers=headers,
        )
        stats = await client.get("/api/approvals/stats", headers=headers)
    assert bulk.status_code == 200
    assert bulk.json()["count"] == 2
    assert bulk.json()["failures"] == {done.id: "invalid_transition"}
    assert stats.json()["student"]["APPROVED"] == 3


@pytest.mark.anyio
async def test_student_cannot_list_pending():
    _, _, repo = _install()
    student = seed_student(repo, status="APPROVED")
    async with _client() as client:
        r = await client.get("/api/approvals/pending", headers=_login(student))
    assert r.status_code == 403
