"""
Shared fixtures: a fresh SQLite database per test and a seeded set of
circles, profiles and one case.
"""

import os
from pathlib import Path
from types import SimpleNamespace

import pytest

# Add parent to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent))


@pytest.fixture
def sqlalchemy_db(tmp_path):
    """Configure a fresh SQLAlchemy SQLite DB for tests."""
    from circle_access.db.session import reset_engine, init_db

    old_db_url = os.environ.get("DATABASE_URL")
    db_path = tmp_path / "circles.db"
    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"
    reset_engine()
    init_db()

    yield

    if old_db_url is not None:
        os.environ["DATABASE_URL"] = old_db_url
    else:
        os.environ.pop("DATABASE_URL", None)
    reset_engine()


@pytest.fixture
def header_identity(monkeypatch):
    """Trust X-User-Id for the duration of a test (off by default)."""
    from circle_access.config import get_settings

    monkeypatch.setenv("ALLOW_HEADER_IDENTITY", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def db(sqlalchemy_db):
    from circle_access.db.session import new_session

    session = new_session()
    yield session
    session.close()


@pytest.fixture
def service(db):
    from circle_access.service import AccessService

    return AccessService(db)


@pytest.fixture
def world(db, service):
    """
    Circles A, B, C.

    A: judge_a, clerk_a, trainee_a   (primary on CASE-1)
    B: judge_b, clerk_b              (added as collaborator by the tests that need it)
    C: trainee_c                     (never linked)
    """
    from circle_access.db.models import UserRole
    from circle_access.provisioning import create_circle, create_profile

    circle_a = create_circle(db, "First Criminal Circle", "Criminal cases")
    circle_b = create_circle(db, "Second Civil Circle")
    circle_c = create_circle(db, "Appeals Circle")

    def profile(name, emp, circle, role):
        return create_profile(db, name, emp, circle.id, role).id

    seed = SimpleNamespace(
        circle_a=circle_a.id,
        circle_b=circle_b.id,
        circle_c=circle_c.id,
        judge_a=profile("Judge A", "EMP-A1", circle_a, UserRole.JUDGE),
        clerk_a=profile("Clerk A", "EMP-A2", circle_a, UserRole.CLERK),
        trainee_a=profile("Trainee A", "EMP-A3", circle_a, UserRole.TRAINEE),
        judge_b=profile("Judge B", "EMP-B1", circle_b, UserRole.JUDGE),
        clerk_b=profile("Clerk B", "EMP-B2", circle_b, UserRole.CLERK),
        trainee_c=profile("Trainee C", "EMP-C1", circle_c, UserRole.TRAINEE),
    )

    case = service.create_case(seed.judge_a, case_number="CASE-1", title="State v. Example")
    seed.case_1 = case.id
    return seed


@pytest.fixture
def audit_count(sqlalchemy_db):
    """Count audit rows matching column filters, read through a fresh session"""
    from circle_access.db.models import AuditEntry
    from circle_access.db.session import get_db_session

    def count(**filters) -> int:
        with get_db_session() as session:
            query = session.query(AuditEntry)
            for key, value in filters.items():
                query = query.filter(getattr(AuditEntry, key) == value)
            return query.count()

    return count
