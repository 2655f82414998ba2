"""
Driver error translation in the Postgres admissions repo.

No database needed: errors are constructed directly or raised from a patched
connect, and must arrive as store signals rather than raw psycopg errors.
"""
from __future__ import annotations

import pytest

psycopg = pytest.importorskip("psycopg")

from backend.admissions import repo_db
from backend.admissions.enrollment import SequenceEnrollmentAllocator
from backend.admissions.errors import AdmissionsError
from backend.admissions.provisioning import ProfileProvisioner
from backend.admissions.repo_db import DBAdmissionsRepo, _translate

pytestmark = pytest.mark.anyio("asyncio")


def test_rls_and_data_errors_keep_their_signals():
    assert isinstance(_translate(psycopg.errors.InsufficientPrivilege("denied")), PermissionError)
    assert isinstance(_translate(psycopg.errors.CheckViolation("bad")), ValueError)


@pytest.mark.parametrize(
    "exc",
    [
        psycopg.InterfaceError("the connection is closed"),
        psycopg.errors.UndefinedTable('relation "profiles" does not exist'),
        psycopg.OperationalError("server closed the connection"),
    ],
)
def test_unmapped_driver_errors_become_storage_unavailable(exc):
    mapped = _translate(exc)
    assert isinstance(mapped, ConnectionError)
    assert str(mapped) == "storage_unavailable"


@pytest.mark.anyio
async def test_transaction_raises_store_signal_not_driver_error(monkeypatch: pytest.MonkeyPatch):
    async def closed(*args, **kwargs):
        raise psycopg.InterfaceError("the connection is closed")

    monkeypatch.setattr(repo_db.psycopg.AsyncConnection, "connect", closed)
    repo = DBAdmissionsRepo("postgresql://edubloom@db.invalid/edubloom")

    with pytest.raises(ConnectionError):
        async with repo._tx("id-1"):
            pass


@pytest.mark.anyio
async def test_provisioning_on_broken_store_raises_taxonomy_error(monkeypatch: pytest.MonkeyPatch):
    async def missing_table(*args, **kwargs):
        raise psycopg.errors.UndefinedTable('relation "profiles" does not exist')

    monkeypatch.setattr(repo_db.psycopg.AsyncConnection, "connect", missing_table)
    repo = DBAdmissionsRepo("postgresql://edubloom@db.invalid/edubloom")
    provisioner = ProfileProvisioner(repo, SequenceEnrollmentAllocator(repo))

    with pytest.raises(AdmissionsError) as excinfo:
        await provisioner.provision(
            "id-1",
            "student",
            {
                "full_name": "Sara Student",
                "class_level": 11,
                "guardian_name": "Gita Guardian",
                "guardian_mobile": "9876543210",
                "selected_subjects": ["Physics"],
            },
        )
    assert excinfo.value.code == "storage_unavailable"
