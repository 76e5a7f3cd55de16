"""
Shared test fixtures for the license server tests.
"""
import os
from datetime import date, datetime, timedelta

import pytest
from fastapi.testclient import TestClient

# Set test environment before importing app modules
os.environ["DB_URL"] = "sqlite://"
os.environ.pop("ADMIN_TOKEN", None)
os.environ.pop("ADMIN_TOKENS", None)

from config import Settings
from db import make_engine, make_session_factory
from main import create_app
from models import Base
from store import upsert_license

ADMIN_TOKEN = "test-admin-token"
START = datetime(2026, 6, 1, 12, 0, 0)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'licenses.db'}"


@pytest.fixture
def session_factory(db_url):
    engine = make_engine(db_url)
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def add_license(session_factory):
    """Insert or replace a license row directly."""
    def _add(device_id="D1", username="alice", level="premium", expiry=date(2099, 1, 1), status="active"):
        with session_factory() as db:
            upsert_license(db, device_id=device_id, username=username, level=level, expiry=expiry, status=status)
            db.commit()
    return _add


@pytest.fixture
def settings(db_url):
    return Settings(
        db_url=db_url,
        admin_tokens=frozenset({ADMIN_TOKEN}),
        rate_limit="1000/minute",
    )


@pytest.fixture
def app(settings, clock):
    return create_app(settings, clock=clock)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest.fixture
def admin_token():
    return ADMIN_TOKEN
