import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from unittest.mock import Mock  # noqa: E402
from uuid import uuid4  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from wacanda.database import Base  # noqa: E402
from wacanda.models import ProviderInstance  # noqa: E402

REMOTE_JID = "5511999999999@s.whatsapp.net"
INSTANCE_KEY = "acme-main"


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setenv("QDRANT_API_KEY", "test-key")


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so separate sessions see each other's commits."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'wacanda.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def owner_id():
    return uuid4()


@pytest.fixture
def instance(db, owner_id):
    provider_instance = ProviderInstance(
        owner_id=owner_id,
        instance_key=INSTANCE_KEY,
        status="connected",
        instance_metadata={},
    )
    db.add(provider_instance)
    db.commit()
    return provider_instance


@pytest.fixture
def make_message():
    """Build a provider-shaped message payload."""

    def _make(
        message_id,
        text="Hello",
        timestamp=1700000000,
        remote_jid=REMOTE_JID,
        from_me=False,
        push_name="Maria",
        **extra,
    ):
        payload = {
            "key": {"remoteJid": remote_jid, "fromMe": from_me, "id": message_id},
            "pushName": push_name,
            "message": {"conversation": text},
            "messageType": "conversation",
            "messageTimestamp": timestamp,
        }
        payload.update(extra)
        return payload

    return _make
