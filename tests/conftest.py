import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta, timezone  # noqa: E402
from unittest.mock import AsyncMock, Mock  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from gateway.config import Settings  # noqa: E402
from gateway.database import init_db  # noqa: E402
from gateway.services.dispatcher import Dispatcher  # noqa: E402
from gateway.services.forwarder import Forwarder  # noqa: E402
from gateway.services.runtime import build_runtime  # noqa: E402
from gateway.services.session_store import SessionStore  # noqa: E402
from gateway.services.state_machine import SessionRecord, SessionState, Timeouts  # noqa: E402

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        live_chat_timeout_minutes=5,
        talk_to_us_timeout_minutes=5,
        prompt_rate_limit_minutes=5,
        notification_pacing_ms=0,
        sweeper_enabled=False,
    )


@pytest.fixture
def timeouts(settings):
    return Timeouts.from_settings(settings)


@pytest.fixture
def session_factory():
    """In-memory SQLite shared across connections."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return SessionStore(session_factory)


@pytest.fixture
def dispatcher():
    mock = Mock(spec=Dispatcher)
    mock.send = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def forwarder():
    mock = Mock(spec=Forwarder)
    mock.forward = AsyncMock(return_value="Hi from the assistant")
    return mock


@pytest.fixture
def runtime(settings, session_factory, dispatcher, forwarder):
    return build_runtime(settings, session_factory, dispatcher=dispatcher, forwarder=forwarder)


def make_record(state=SessionState.IDLE, minutes_ago=0, prompted_minutes_ago=None, **kwargs) -> SessionRecord:
    last = NOW - timedelta(minutes=minutes_ago)
    prompted = NOW - timedelta(minutes=prompted_minutes_ago) if prompted_minutes_ago is not None else None
    return SessionRecord(
        user_id=kwargs.pop("user_id", "923001234567@c.us"),
        state=state,
        last_interaction=last,
        prompted_at=prompted,
        **kwargs,
    )


def seed(store: SessionStore, user_id: str, state: SessionState, minutes_ago: float, prompted_minutes_ago=None):
    """Write a record directly with a back-dated last_interaction."""
    created_at = NOW - timedelta(minutes=minutes_ago)
    store.get_or_create(user_id, now=created_at)
    fields = {"state": state}
    if prompted_minutes_ago is not None:
        fields["prompted_at"] = NOW - timedelta(minutes=prompted_minutes_ago)
    store.apply_partial(user_id, fields, now=created_at)


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def seed_session(store):
    def _seed(user_id, state, minutes_ago, prompted_minutes_ago=None):
        seed(store, user_id, state, minutes_ago, prompted_minutes_ago)

    return _seed
