"""
Root conftest.py for all tests
Provides common fixtures and configuration
"""
import os
import sys

# Add project root to Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"

import json  # noqa: E402
from unittest.mock import Mock  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from database.base import Base  # noqa: E402
from database.models import User  # noqa: E402
from storefront import models  # noqa: E402, F401
from storefront.drafts import DraftStore  # noqa: E402
from storefront.stripe_client import StripeClient  # noqa: E402


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast isolated tests")
    config.addinivalue_line("markers", "integration: tests spanning several components")


@pytest.fixture
def engine(tmp_path):
    """
    File-backed SQLite database per test.

    Every session gets its own connection, so a draft written by the draft
    store is only visible to other sessions once committed.
    """
    engine = create_engine(f"sqlite:///{tmp_path / 'storefront.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def draft_store(session_factory):
    return DraftStore(session_factory=session_factory, ttl_minutes=60)


@pytest.fixture
def stripe_client():
    """Processor client double; tests set return values per call"""
    client = Mock(spec=StripeClient)
    client.construct_webhook_event.side_effect = lambda payload, signature: json.loads(payload)
    return client


@pytest.fixture
def user(db_session):
    user = User(id="user-1", email="ada@example.com", full_name="Ada Lovelace", phone="+1 555 0100")
    db_session.add(user)
    db_session.commit()
    return user
