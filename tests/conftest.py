from datetime import datetime, timedelta

import pytest

import cache
import config
from broadcaster import EventBroadcaster
from database import get_session, init_db, make_engine
from services import QueueService


class FakeClock:
    """Naive-UTC clock that moves forward one second on every reading."""

    def __init__(self, start=datetime(2026, 3, 10, 12, 0, 0)):
        self.now = start

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class Recorder:
    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    @property
    def types(self):
        return [e.type.value for e in self.events]


@pytest.fixture(autouse=True)
def no_redis(monkeypatch):
    monkeypatch.setattr(config, "REDIS_URL", None)
    cache.reset_redis_client()
    yield
    cache.reset_redis_client()


@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with get_session(engine) as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def broadcaster():
    broadcaster = EventBroadcaster(mirror_to_redis=False)
    yield broadcaster
    broadcaster.close()


@pytest.fixture
def service(engine, broadcaster, clock):
    service = QueueService(engine, broadcaster=broadcaster, clock=clock)
    yield service
    service.close()


@pytest.fixture
def recorder(broadcaster):
    recorder = Recorder()
    unsubscribe = broadcaster.subscribe(None, recorder)
    yield recorder
    unsubscribe()
