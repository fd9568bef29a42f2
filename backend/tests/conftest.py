"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from app.config import AppSettings, DeliverySettings, MessagingSettings, StoreSettings
from app.main import create_app
from app.messaging.directory import StaticDirectory
from app.messaging.service import MessagingService
from app.messaging.store import MessageStore


class FakeTransport:
    """Stands in for a WebSocket: records pushed events, can fail on demand."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail
        self.closed_with = None

    async def send_json(self, data):
        if self.fail:
            raise ConnectionError("socket closed")
        self.sent.append(data)

    async def close(self, code: int = 1000):
        self.closed_with = code

    def events(self, event_type=None):
        return [e for e in self.sent if event_type is None or e["type"] == event_type]


@pytest.fixture
def settings():
    """Small timeouts and an in-memory store."""
    return AppSettings(
        store=StoreSettings(db_path=":memory:"),
        messaging=MessagingSettings(
            typing_timeout_seconds=0.05,
            disconnect_grace_seconds=0.05,
            auth_timeout_seconds=2.0,
        ),
        delivery=DeliverySettings(
            max_attempts=3,
            base_delay_seconds=0.01,
            max_delay_seconds=0.05,
        ),
    )


@pytest.fixture
def directory():
    """Users 1..10 exist."""
    return StaticDirectory(range(1, 11))


@pytest.fixture
def store():
    store = MessageStore(db_path=":memory:")
    yield store
    store.close()


@pytest.fixture
async def service(settings, directory):
    service = MessagingService(MessageStore(db_path=":memory:"), settings, directory=directory)
    yield service
    await service.shutdown()


@pytest.fixture
def connect():
    """Open a fake live session for a user on a service."""
    async def _connect(service, user_id, fail=False):
        transport = FakeTransport(fail=fail)
        connection = await service.connect(user_id, transport)
        return connection, transport
    return _connect


@pytest.fixture
def api_client(settings, directory):
    """Provide a TestClient for a fresh app, lifespan included."""
    with TestClient(create_app(settings, directory=directory)) as client:
        yield client


@pytest.fixture
def make_transport():
    """Factory for FakeTransport instances."""
    return FakeTransport
