import json

import pytest
import redis

from feed import ChangeFeed


def test_subscribers_receive_events():
    feed = ChangeFeed()
    received = []
    feed.subscribe(received.append)

    event = feed.publish("tickets", "insert", {"id": "t1"})

    assert received == [event]
    message = event.to_message()
    assert message["type"] == "tickets.insert"
    assert message["data"] == {"id": "t1"}


def test_table_filter():
    feed = ChangeFeed()
    counters = []
    feed.subscribe(counters.append, tables=["counters"])

    feed.publish("tickets", "update", {})
    feed.publish("counters", "update", {"id": 1})

    assert [e.table for e in counters] == ["counters"]


def test_unsubscribe():
    feed = ChangeFeed()
    received = []
    unsubscribe = feed.subscribe(received.append)

    unsubscribe()
    unsubscribe()
    feed.publish("settings", "update", {})

    assert received == []


def test_broken_subscriber_does_not_stop_others():
    feed = ChangeFeed()
    received = []

    def broken(event):
        raise RuntimeError("display crashed")

    feed.subscribe(broken)
    feed.subscribe(received.append)

    feed.publish("tickets", "delete", {})

    assert len(received) == 1


def test_unknown_table_is_rejected():
    with pytest.raises(ValueError):
        ChangeFeed().publish("customers", "insert", {})


def test_events_are_published_to_redis(fake_redis):
    feed = ChangeFeed(fake_redis)

    feed.publish("counters", "reset", {"count": 4})

    channel, payload = fake_redis.published[0]
    assert channel == "queue:updates"
    assert json.loads(payload)["type"] == "counters.reset"


def test_redis_outage_is_not_fatal():
    class DownRedis:
        def publish(self, channel, message):
            raise redis.ConnectionError("connection refused")

    received = []
    feed = ChangeFeed(DownRedis())
    feed.subscribe(received.append)

    feed.publish("tickets", "insert", {})

    assert len(received) == 1
