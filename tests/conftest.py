"""
Pytest configuration for the health sync tests
"""

import os
import sys

import pytest

# Configure settings BEFORE importing any vitalis modules
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SESSION_SECRET"] = "test-session-secret"
os.environ["OAUTH_STATE_SECRET"] = "test-state-secret"
os.environ["OAUTH_STATE_PREVIOUS_SECRETS"] = ""
os.environ["APP_URL"] = "http://app.test"
os.environ["OAUTH_REDIRECT_BASE_URL"] = "http://api.test"
os.environ["SYNC_WORKER_ENABLED"] = "false"
os.environ["DEMO_MODE"] = "false"

# Add parent directory to path to import vitalis modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from sqlalchemy.orm import sessionmaker  # noqa: E402

import vitalis.models  # noqa: E402,F401
from vitalis.database import Base, build_engine  # noqa: E402
from vitalis.models import User  # noqa: E402
from vitalis.services.credential_store import CredentialStore  # noqa: E402
from vitalis.services.persistence import HealthDataGateway  # noqa: E402

# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)

USER_A = "user-a"
USER_B = "user-b"


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'vitalis.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def users(session_factory):
    with session_factory() as session:
        session.add_all([
            User(id=USER_A, email="a@example.com", first_name="Ada"),
            User(id=USER_B, email="b@example.com", first_name="Ben"),
        ])
        session.commit()
    return [USER_A, USER_B]


@pytest.fixture
def credential_store(session_factory):
    return CredentialStore(session_factory)


@pytest.fixture
def gateway(session_factory):
    return HealthDataGateway(session_factory)
