"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend to avoid sandbox restrictions
that can affect the Trio backend (e.g., socketpair permission errors), and
give every test a fresh session store and admissions service bundle.
"""
import os
import sys
from pathlib import Path

import pytest

# Ensure `backend.*` is importable across tests
REPO_ROOT = Path(__file__).resolve().parents[2]
BACKEND_DIR = REPO_ROOT / "backend"
TESTS_DIR = BACKEND_DIR / "tests"
for p in (str(REPO_ROOT), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _clear_env_toggles(monkeypatch: pytest.MonkeyPatch):
    """Clear env-driven toggles so a developer shell cannot leak into tests.

    Behavior:
        - Default (dev) environment unless a test opts into prod explicitly.
        - No database DSN: the wiring falls back to the in-memory store.
        - Admissions knobs back to their defaults.
    """
    for var in (
        "EDUBLOOM_ENV",
        "EDUBLOOM_TRUST_PROXY",
        "EDUBLOOM_ALLOW_ADMIN_SIGNUP",
        "EDUBLOOM_ENROLLMENT_ALLOCATOR",
        "EDUBLOOM_MIN_PASSWORD_LENGTH",
        "EDUBLOOM_CONFIRM_REDIRECT_URL",
        "EDUBLOOM_METADATA_RETRY_LIMIT",
        "EDUBLOOM_PROVISION_RETRY_LIMIT",
        "ALLOWED_REGISTRATION_DOMAINS",
        "ADMISSIONS_DATABASE_URL",
    ):
        monkeypatch.delenv(var, raising=False)
    # Keep DATABASE_URL only for the dedicated live-DB tests.
    if os.getenv("DATABASE_URL"):
        monkeypatch.setenv("ADMISSIONS_TEST_DSN", os.environ["DATABASE_URL"])
        monkeypatch.delenv("DATABASE_URL", raising=False)
    yield


@pytest.fixture(autouse=True)
def _reset_web_state(monkeypatch: pytest.MonkeyPatch):
    """Fresh SESSION_STORE and a lazily rebuilt service bundle per test.

    Why:
        Route tests install fakes through `set_services()`; without a reset
        the fakes and the sessions they created leak into unrelated tests.
    """
    from backend.identity_access.stores import SessionStore
    from backend.web import admissions_wiring
    from backend.web import main

    monkeypatch.setattr(main, "SESSION_STORE", SessionStore())
    main.SETTINGS.override_environment(None)
    admissions_wiring.set_services(None)
    yield
    admissions_wiring.set_services(None)
