"""Best-effort WhatsApp notification for a called ticket.

When an API key is configured the rendered message is POSTed to the
messaging backend; any failure there (non-2xx, network error, timeout)
degrades to a ``wa.me`` deep link the operator can open by hand.  Without
an API key the deep link is produced directly.  Nothing in here raises
into the ticket workflow.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional
from urllib.parse import quote

import httpx

import config
from models import SystemSettings, Ticket
from services import SettingsRepository

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{(name|number|service|counter)\}")


def render_template(template: str, *, name: str, number: str, service: str, counter: object) -> str:
    """Fill ``{name}``, ``{number}``, ``{service}`` and ``{counter}``.

    Substitution is a single pass, so values that themselves look like
    placeholders are not expanded again; unknown placeholders stay as-is.
    """
    values = {"name": name, "number": number, "service": service, "counter": str(counter)}
    return PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], template)


def normalize_phone(phone: str, country_code: str = "") -> str:
    digits = re.sub(r"[^0-9]", "", phone or "")
    code = re.sub(r"[^0-9]", "", country_code or "")
    if code and digits.startswith("0"):
        digits = code + digits.lstrip("0")
    return digits


def build_deep_link(phone: str, message: str, country_code: str = "") -> str:
    encoded = quote(message, safe="-_.!~*'()")
    return f"https://wa.me/{normalize_phone(phone, country_code)}?text={encoded}"


class NotificationOutcome(str, Enum):
    skipped = "SKIPPED"
    sent = "SENT"
    deep_link = "DEEP_LINK"


@dataclass
class NotificationResult:
    outcome: NotificationOutcome
    message: Optional[str] = None
    deep_link: Optional[str] = None
    error: Optional[str] = None


class NotificationDispatcher:
    def __init__(
        self,
        settings: SettingsRepository,
        api_url: str = config.WHATSAPP_API_URL,
        timeout: float = config.WHATSAPP_TIMEOUT_SECONDS,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.settings = settings
        self.api_url = api_url
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def notify(
        self,
        ticket: Ticket,
        counter_id: Optional[int] = None,
        settings: Optional[SystemSettings] = None,
    ) -> NotificationResult:
        settings = settings or self.settings.get()
        if not settings.whatsapp_enabled or not ticket.phone:
            return NotificationResult(NotificationOutcome.skipped)

        counter = counter_id if counter_id is not None else (ticket.counter_id or "")
        message = render_template(
            settings.whatsapp_template,
            name=ticket.customer_name,
            number=ticket.number,
            service=ticket.service_name,
            counter=counter,
        )
        deep_link = build_deep_link(ticket.phone, message, settings.country_code)

        if not settings.whatsapp_api_key:
            return NotificationResult(NotificationOutcome.deep_link, message=message, deep_link=deep_link)

        try:
            response = self.client.post(
                self.api_url,
                json={
                    "phone": ticket.phone,
                    "message": message,
                    "ticketId": ticket.id,
                    "apiKey": settings.whatsapp_api_key,
                },
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.warning("WhatsApp backend unreachable for ticket %s, falling back to deep link: %s", ticket.number, e)
            return NotificationResult(
                NotificationOutcome.deep_link, message=message, deep_link=deep_link, error=str(e)
            )

        if response.is_success:
            logger.info("WhatsApp notification sent for ticket %s", ticket.number)
            return NotificationResult(NotificationOutcome.sent, message=message)

        logger.warning(
            "WhatsApp backend answered %s for ticket %s, falling back to deep link",
            response.status_code, ticket.number,
        )
        return NotificationResult(
            NotificationOutcome.deep_link,
            message=message,
            deep_link=deep_link,
            error=f"HTTP {response.status_code}",
        )
