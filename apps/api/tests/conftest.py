"""
Pytest configuration and fixtures

Every test gets its own in-memory SQLite database built from the ORM
metadata, so nothing leaks between tests and no Postgres is needed.
"""
import os
import sys
from datetime import datetime, timezone
from uuid import uuid4

import pytest

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-at-least-32-chars")
os.environ["DATABASE_URL"] = "sqlite://"

from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from core.database import Base, build_engine, get_db
from core.security import create_access_token
import models  # noqa: F401


FIXED_NOW = datetime(2026, 3, 10, 8, 30, tzinfo=timezone.utc)


@pytest.fixture(scope="function")
def db_session():
    """Fresh schema per test; dropped afterwards."""
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = Session()

    yield session

    session.close()
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def now():
    """A fixed morning-rush instant so time blocks are deterministic."""
    return FIXED_NOW


@pytest.fixture
def client(db_session):
    from main import app

    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def make_auth_headers(user_id=None, role="rider") -> dict:
    token = create_access_token({"sub": str(user_id or uuid4()), "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user_id():
    return uuid4()


@pytest.fixture
def auth_headers(user_id):
    return make_auth_headers(user_id)


@pytest.fixture
def admin_headers():
    return make_auth_headers(uuid4(), role="admin")
