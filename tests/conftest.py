# tests/conftest.py
import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.pool import StaticPool

from balance_service.config import Settings
from balance_service.db import init_db, make_engine
from balance_service.main import create_app
from balance_service.store import BalanceStore


class FakeClock:
    """Epoch milliseconds under test control."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int = 1000) -> int:
        self.now += ms
        return self.now


class FakePublisher:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.events = []
        self.closed = False

    async def publish(self, key, payload):
        if self.fail:
            raise ConnectionError("broker down")
        self.events.append((key, payload))

    async def close(self):
        self.closed = True


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", max_retries=2, retry_backoff=0, lock_timeout=2.0)


@pytest.fixture
def engine():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(engine, settings, clock):
    return BalanceStore(engine, settings, clock=clock)


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def client(settings, store, publisher):
    app = create_app(settings=settings, store=store, publisher=publisher)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def token(settings):
    def make(user_id):
        return jwt.encode({"sub": str(user_id)}, settings.jwt_secret, algorithm=settings.algorithm)
    return make
