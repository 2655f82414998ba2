"""
Shared helper for wiring the admissions use cases to their adapters.

Why:
    Routes need one consistent set of collaborators (identity provider,
    profile store, allocator) so that the registration, confirmation and
    approval endpoints all see the same state. Tests swap the whole bundle
    through `set_services()`.

Behavior:
    - `DATABASE_URL` (or `ADMISSIONS_DATABASE_URL`) plus psycopg selects the
      Postgres repo; otherwise an in-memory repo is used and a warning logged.
    - The provider is the GoTrue REST client configured from `SUPABASE_URL` and
      `SUPABASE_ANON_KEY`.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
import logging
import os

from backend.admissions.config import AdmissionsConfig, load_admissions_config
from backend.admissions.enrollment import build_allocator
from backend.admissions.ports import AdmissionsRepoProtocol
from backend.admissions.provisioning import ProfileProvisioner
from backend.admissions.repo_memory import InMemoryAdmissionsRepo
from backend.admissions.usecases import (
    ApprovalQueries,
    ApprovalStateMachine,
    DeferredConfirmationHandler,
    RegistrationOrchestrator,
)
from backend.identity_access.gotrue_client import GoTrueClient, load_gotrue_config
from backend.identity_access.provider import IdentityProviderProtocol

logger = logging.getLogger("edubloom.web")


@dataclass
class AdmissionsServices:
    cfg: AdmissionsConfig
    provider: IdentityProviderProtocol
    repo: AdmissionsRepoProtocol
    registration: RegistrationOrchestrator
    confirmation: DeferredConfirmationHandler
    approvals: ApprovalStateMachine
    queries: ApprovalQueries


def build_services(
    *,
    cfg: Optional[AdmissionsConfig] = None,
    provider: Optional[IdentityProviderProtocol] = None,
    repo: Optional[AdmissionsRepoProtocol] = None,
) -> AdmissionsServices:
    cfg = cfg or load_admissions_config()
    provider = provider or GoTrueClient(load_gotrue_config())
    repo = repo or _build_default_repo(cfg)
    provisioner = ProfileProvisioner(repo, build_allocator(cfg, repo), retry_limit=cfg.provision_retry_limit)
    return AdmissionsServices(
        cfg=cfg,
        provider=provider,
        repo=repo,
        registration=RegistrationOrchestrator(provider, provisioner, cfg),
        confirmation=DeferredConfirmationHandler(provisioner, cfg),
        approvals=ApprovalStateMachine(repo),
        queries=ApprovalQueries(repo),
    )


def _build_default_repo(cfg: AdmissionsConfig) -> AdmissionsRepoProtocol:
    dsn = (os.getenv("ADMISSIONS_DATABASE_URL") or os.getenv("DATABASE_URL") or "").strip()
    if dsn:
        try:
            from backend.admissions.repo_db import DBAdmissionsRepo

            repo = DBAdmissionsRepo(dsn, allow_admin_signup=cfg.allow_admin_signup)
            logger.info("Admissions store wired: Postgres")
            return repo
        except RuntimeError as exc:
            logger.warning("Postgres admissions store unavailable: %s", exc)
    logger.warning("Admissions store wired: in-memory (development only)")
    return InMemoryAdmissionsRepo(allow_admin_signup=cfg.allow_admin_signup)


_SERVICES: Optional[AdmissionsServices] = None


def get_services() -> AdmissionsServices:
    global _SERVICES
    if _SERVICES is None:
        _SERVICES = build_services()
    return _SERVICES


def set_services(services: Optional[AdmissionsServices]) -> None:
    """Swap the service bundle (tests); None rebuilds lazily from the environment."""
    global _SERVICES
    _SERVICES = services


__all__ = ["AdmissionsServices", "build_services", "get_services", "set_services"]
