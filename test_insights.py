import json

import httpx
import pytest

from insights import (
    QUOTA_FALLBACK,
    WELCOME_FALLBACK,
    FallbackInsights,
    GeminiInsights,
    Insight,
    Insights,
    QueueSummary,
    summarize,
)
from models import TicketStatus


class BrokenProvider:
    def welcome_message(self, ticket):
        raise RuntimeError("model unavailable")

    def queue_insight(self, summary):
        raise RuntimeError("model unavailable")


def gemini_reply(text):
    return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": text}]}}]})


def gemini(handler):
    return GeminiInsights("key", model="test-model", client=httpx.Client(transport=httpx.MockTransport(handler)))


SUMMARY = QueueSummary(waiting=6, serving=2, active_counters=2, completed_last_hour=4, avg_wait_minutes=9)


def test_fallback_provider(queue):
    ticket = queue.join("Alice", "srv_1")
    insights = Insights(FallbackInsights())

    assert insights.welcome_message(ticket) == WELCOME_FALLBACK
    assert insights.queue_insight(SUMMARY) is None


def test_failing_provider_never_raises(queue):
    ticket = queue.join("Alice", "srv_1")
    insights = Insights(BrokenProvider())

    assert insights.welcome_message(ticket) == WELCOME_FALLBACK
    assert insights.queue_insight(SUMMARY) is None


def test_summarize_counts_the_queue(queue, clock):
    queue.join("a", "srv_1")
    queue.join("b", "srv_1")
    queue.join("c", "srv_1")
    clock.advance(minutes=6)
    queue.call_next(1)
    queue.call_next(2)
    queue.finish_current(2, TicketStatus.completed)

    summary = summarize(queue.tickets.list_all(), queue.counters.open_count(), queue.clock.utcnow())

    assert summary == QueueSummary(
        waiting=1, serving=1, active_counters=4, completed_last_hour=1, avg_wait_minutes=6
    )


def test_gemini_welcome_message(queue):
    ticket = queue.join("Alice", "srv_1")
    seen = []

    def handler(request):
        seen.append(request)
        return gemini_reply("Welcome to General Inquiry!")

    assert Insights(gemini(handler)).welcome_message(ticket) == "Welcome to General Inquiry!"
    assert seen[0].url.path == "/v1beta/models/test-model:generateContent"
    assert seen[0].url.params["key"] == "key"
    assert "A001" in json.loads(seen[0].content)["contents"][0]["parts"][0]["text"]


def test_gemini_welcome_falls_back_on_error(queue):
    ticket = queue.join("Alice", "srv_1")
    provider = gemini(lambda request: httpx.Response(500))
    assert Insights(provider).welcome_message(ticket) == WELCOME_FALLBACK


def test_gemini_queue_insight():
    def handler(request):
        body = json.loads(request.content)
        assert body["generationConfig"] == {"responseMimeType": "application/json"}
        assert "Currently Waiting: 6 people" in body["contents"][0]["parts"][0]["text"]
        return gemini_reply(json.dumps({"message": "Open another counter.", "severity": "warning"}))

    assert gemini(handler).queue_insight(SUMMARY) == Insight("Open another counter.", "warning")


def test_unknown_severity_becomes_info():
    provider = gemini(lambda request: gemini_reply(json.dumps({"message": "Fine.", "severity": "panic"})))
    assert provider.queue_insight(SUMMARY).severity == "info"


def test_quota_exhaustion_returns_fixed_insight():
    provider = gemini(lambda request: httpx.Response(429))
    assert provider.queue_insight(SUMMARY) == Insight(QUOTA_FALLBACK, "info")


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503),
        gemini_reply("not json"),
        httpx.Response(200, json={"candidates": []}),
    ],
)
def test_bad_insight_responses_give_nothing(response):
    assert Insights(gemini(lambda request: response)).queue_insight(SUMMARY) is None
