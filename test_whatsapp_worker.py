import json
from types import SimpleNamespace

from twilio.base.exceptions import TwilioException

from whatsapp_worker import LOG_KEY, QUEUE_KEY, WhatsAppWorker, queue_message


class FakeMessages:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def create(self, from_, body, to):
        if self.fail:
            raise TwilioException("Twilio rejected the message")
        self.sent.append({"from": from_, "body": body, "to": to})
        return SimpleNamespace(sid=f"SM{len(self.sent)}")


def twilio(fail=False):
    return SimpleNamespace(messages=FakeMessages(fail))


def test_sends_queued_message(fake_redis):
    client = twilio()
    worker = WhatsAppWorker(fake_redis, client, from_number="whatsapp:+10000000000")
    queue_message(fake_redis, "+15551234567", "Your turn", "ticket-1")

    assert worker.process_notifications(max_messages=1) == 1

    assert client.messages.sent == [
        {"from": "whatsapp:+10000000000", "body": "Your turn", "to": "whatsapp:+15551234567"}
    ]
    log = json.loads(fake_redis.lists[LOG_KEY][0])
    assert log["phone"] == "4567"
    assert log["ticketId"] == "ticket-1"
    assert fake_redis.llen(QUEUE_KEY) == 0


def test_failed_message_is_retried_once(fake_redis):
    worker = WhatsAppWorker(fake_redis, twilio(fail=True))
    queue_message(fake_redis, "+15551234567", "Your turn")

    assert worker.process_notifications(max_messages=2) == 2

    assert fake_redis.llen(QUEUE_KEY) == 0
    assert fake_redis.llen(LOG_KEY) == 0


def test_failure_requeues_with_retry_flag(fake_redis):
    worker = WhatsAppWorker(fake_redis, twilio(fail=True))
    queue_message(fake_redis, "+15551234567", "Your turn")

    worker.process_notifications(max_messages=1)

    requeued = json.loads(fake_redis.lists[QUEUE_KEY][0])
    assert requeued["retry"] is True


def test_simulation_mode_without_twilio(fake_redis):
    worker = WhatsAppWorker(fake_redis)
    queue_message(fake_redis, "+15551234567", "Your turn")

    worker.process_notifications(max_messages=1)

    assert worker.get_stats()["total_sent"] == 1


def test_invalid_notifications_are_dropped(fake_redis):
    worker = WhatsAppWorker(fake_redis, twilio())
    fake_redis.lpush(QUEUE_KEY, json.dumps({"phone": "+1555"}))
    fake_redis.lpush(QUEUE_KEY, "not json")

    assert worker.process_notifications(max_messages=2) == 2

    stats = worker.get_stats()
    assert stats["queue_length"] == 0
    assert stats["total_sent"] == 0
