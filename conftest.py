"""Pytest configuration and fixtures."""

from collections import defaultdict
from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel

from clock import FrozenClock
from database import create_db_engine, init_db
from feed import ChangeFeed
from insights import Insights
from services import QueueService


class FakeRedis:
    """Just enough of the redis client for the outbox and the change feed."""

    def __init__(self):
        self.lists = defaultdict(list)
        self.published = []

    def lpush(self, key, value):
        self.lists[key].insert(0, value)
        return len(self.lists[key])

    def brpop(self, key, timeout=0):
        items = self.lists[key]
        if not items:
            return None
        return key, items.pop()

    def llen(self, key):
        return len(self.lists[key])

    def publish(self, channel, message):
        self.published.append((channel, message))
        return 0


@pytest.fixture
def clock():
    # A Monday, mid-morning, inside the default 09:00-17:00 window.
    return FrozenClock(datetime(2024, 3, 4, 10, 0))


@pytest.fixture
def engine():
    """Fresh in-memory database with the default services and four counters."""
    engine = create_db_engine("sqlite://")
    init_db(engine, total_counters=4)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def queue(engine, clock, feed):
    return QueueService(engine, clock=clock, feed=feed)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def client(queue, fake_redis):
    from main import create_app

    app = create_app(queue=queue, redis_client=fake_redis, insights=Insights(), run_background_tasks=False)
    with TestClient(app) as test_client:
        yield test_client
