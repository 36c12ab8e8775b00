import os

# The app reads its settings at import time; point it at SQLite first.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret")

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from db import get_session
from lifecycle import LifecycleEngine
from main import app
from models import ROLE_DONOR, ROLE_RECIPIENT, User, utcnow
from schemas import Principal
from store import SqlStore


@pytest.fixture(name="db_engine")
def db_engine_fixture():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="session")
def session_fixture(db_engine):
    with Session(db_engine) as session:
        yield session


@pytest.fixture(name="store")
def store_fixture(session):
    return SqlStore(session)


@pytest.fixture(name="lifecycle")
def lifecycle_fixture(store):
    return LifecycleEngine(store)


def _make_user(session, email, role):
    user = User(email=email, name=email.split("@")[0], role=role, password_hash="x")
    session.add(user)
    session.commit()
    session.refresh(user)
    return Principal(id=user.id, role=user.role)


@pytest.fixture
def donor(session):
    return _make_user(session, "dana@foodshare.org", ROLE_DONOR)


@pytest.fixture
def other_donor(session):
    return _make_user(session, "omar@foodshare.org", ROLE_DONOR)


@pytest.fixture
def recipient(session):
    return _make_user(session, "rita@shelter.org", ROLE_RECIPIENT)


@pytest.fixture
def second_recipient(session):
    return _make_user(session, "raj@pantry.org", ROLE_RECIPIENT)


@pytest.fixture
def listing_fields():
    def build(**overrides):
        fields = {
            "title": "Wedding buffet leftovers",
            "description": "Rice, curries and naan",
            "quantity": 10,
            "unit": "portions",
            "event_type": "wedding",
            "location": "Hall 3, Main Street",
            "expiry_time": (utcnow() + timedelta(hours=1)).isoformat(),
        }
        fields.update(overrides)
        return fields

    return build


@pytest.fixture(name="make_client")
def make_client_fixture(session):
    """Each client keeps its own cookie jar, i.e. its own signed-in user."""

    def get_session_override():
        return session

    app.dependency_overrides[get_session] = get_session_override
    yield lambda: TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture(name="client")
def client_fixture(make_client):
    return make_client()
