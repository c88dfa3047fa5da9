"""Optional generated text for the kiosk and counter screens.

A kiosk shows a short welcome line with each new ticket and a counter
can ask for a one-sentence reading of the queue.  Both come from an
``InsightProvider``; ``Insights`` wraps whichever provider is configured
and always has an answer, so a slow or failing model never holds up a
join or a call.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol

import httpx

import config
from models import Ticket, TicketStatus

logger = logging.getLogger(__name__)

WELCOME_FALLBACK = "Welcome! Please wait for your number."
QUOTA_FALLBACK = "AI insights paused due to high traffic. Monitoring queue status..."
SEVERITIES = ("info", "warning", "alert")

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"


@dataclass
class QueueSummary:
    waiting: int
    serving: int
    active_counters: int
    completed_last_hour: int
    avg_wait_minutes: int


@dataclass
class Insight:
    message: str
    severity: str = "info"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def summarize(tickets: List[Ticket], active_counters: int, now: datetime) -> QueueSummary:
    """Counts fed to the insight prompt.  ``now`` is naive UTC like the stored timestamps."""
    serving = [t for t in tickets if t.status == TicketStatus.serving]
    completed_recent = [
        t for t in tickets
        if t.status == TicketStatus.completed
        and t.completed_at is not None
        and now - t.completed_at < timedelta(hours=1)
    ]
    avg_wait = 0
    if serving:
        total = sum(((t.served_at or now) - t.joined_at for t in serving), timedelta())
        avg_wait = round(total.total_seconds() / len(serving) / 60)
    return QueueSummary(
        waiting=sum(1 for t in tickets if t.status == TicketStatus.waiting),
        serving=len(serving),
        active_counters=active_counters,
        completed_last_hour=len(completed_recent),
        avg_wait_minutes=avg_wait,
    )


class InsightProvider(Protocol):
    def welcome_message(self, ticket: Ticket) -> Optional[str]:
        ...

    def queue_insight(self, summary: QueueSummary) -> Optional[Insight]:
        ...


class FallbackInsights:
    """Used when no model is configured."""

    def welcome_message(self, ticket: Ticket) -> Optional[str]:
        return WELCOME_FALLBACK

    def queue_insight(self, summary: QueueSummary) -> Optional[Insight]:
        return None


class GeminiInsights:
    """Gemini ``generateContent`` over plain HTTP."""

    def __init__(
        self,
        api_key: str,
        model: str = config.GEMINI_MODEL,
        timeout: float = config.INSIGHT_TIMEOUT_SECONDS,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self.client.close()

    def _generate(self, prompt: str, json_response: bool = False) -> Optional[str]:
        body: Dict[str, Any] = {"contents": [{"parts": [{"text": prompt}]}]}
        if json_response:
            body["generationConfig"] = {"responseMimeType": "application/json"}
        response = self.client.post(
            GEMINI_URL.format(model=self.model), params={"key": self.api_key}, json=body
        )
        response.raise_for_status()
        candidates = response.json().get("candidates") or []
        if not candidates:
            return None
        parts = candidates[0].get("content", {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts).strip()
        return text or None

    def welcome_message(self, ticket: Ticket) -> Optional[str]:
        prompt = (
            "Generate a short, friendly, and reassuring 1-sentence welcome message for a "
            "digital ticket screen.\n"
            f"The customer is here for: {ticket.service_name}.\n"
            f"Ticket Number: {ticket.number}.\n"
            "Don't use quotes."
        )
        return self._generate(prompt)

    def queue_insight(self, summary: QueueSummary) -> Optional[Insight]:
        prompt = (
            "Context: You are an AI assistant for a Queue Management System.\n"
            "Data:\n"
            f"- Currently Waiting: {summary.waiting} people.\n"
            f"- Currently Serving: {summary.serving} people.\n"
            f"- Active Counters: {summary.active_counters}.\n"
            f"- Completed in last hour: {summary.completed_last_hour}.\n"
            f"- Average Wait Time (approx): {summary.avg_wait_minutes} minutes.\n\n"
            "Task: Provide a concise, 1-sentence operational insight or recommendation for the staff.\n"
            "Also determine severity: 'info', 'warning', or 'alert'.\n"
            'Response Format (JSON): {"message": "...", "severity": "info"}'
        )
        try:
            text = self._generate(prompt, json_response=True)
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 429:
                logger.warning("Gemini quota exceeded, returning fallback insight")
                return Insight(QUOTA_FALLBACK, "info")
            raise
        if text is None:
            return None
        data = json.loads(text)
        if not isinstance(data, dict) or not data.get("message"):
            return None
        severity = data.get("severity")
        return Insight(str(data["message"]), severity if severity in SEVERITIES else "info")


class Insights:
    """Best-effort front for a provider.  Never raises."""

    def __init__(self, provider: Optional[InsightProvider] = None) -> None:
        self.provider = provider or FallbackInsights()

    def welcome_message(self, ticket: Ticket) -> str:
        try:
            message = self.provider.welcome_message(ticket)
        except Exception as e:
            logger.warning("Welcome message for %s failed: %s", ticket.number, e)
            message = None
        return message or WELCOME_FALLBACK

    def queue_insight(self, summary: QueueSummary) -> Optional[Insight]:
        try:
            return self.provider.queue_insight(summary)
        except Exception:
            logger.exception("Queue insight failed")
            return None

    def close(self) -> None:
        close = getattr(self.provider, "close", None)
        if close is not None:
            close()


def build_insights() -> Insights:
    if config.GEMINI_API_KEY:
        return Insights(GeminiInsights(config.GEMINI_API_KEY))
    return Insights()
