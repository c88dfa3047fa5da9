#!/usr/bin/env python3
"""
WhatsApp Notification Worker

Drains the ``whatsapp_notifications`` Redis list filled by the
``/api/send-whatsapp`` endpoint and sends each message through Twilio.
Run this as a separate background process.

Usage:
    python whatsapp_worker.py

Environment Variables:
    TWILIO_ACCOUNT_SID - Your Twilio Account SID
    TWILIO_AUTH_TOKEN - Your Twilio Auth Token
    TWILIO_WHATSAPP_NUMBER - Your Twilio WhatsApp number (e.g., whatsapp:+14155238886)
    REDIS_URL - Redis connection URL

Without Twilio credentials the worker runs in simulation mode and only
logs what it would have sent.
"""

from __future__ import annotations

import json
import logging
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis
from twilio.base.exceptions import TwilioException
from twilio.rest import Client

import config

logger = logging.getLogger(__name__)

QUEUE_KEY = "whatsapp_notifications"
LOG_KEY = "whatsapp_logs"


def queue_message(redis_client: redis.Redis, phone: str, message: str, ticket_id: Optional[str] = None) -> None:
    """Put one outbound message on the worker queue."""
    redis_client.lpush(
        QUEUE_KEY,
        json.dumps(
            {
                "phone": phone,
                "message": message,
                "ticketId": ticket_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        ),
    )


class WhatsAppWorker:
    def __init__(
        self,
        redis_client: redis.Redis,
        twilio_client: Optional[Client] = None,
        from_number: str = config.TWILIO_WHATSAPP_NUMBER,
    ) -> None:
        self.redis_client = redis_client
        self.twilio_client = twilio_client
        self.from_number = from_number

    @classmethod
    def from_env(cls) -> "WhatsAppWorker":
        redis_client = redis.from_url(config.REDIS_URL or "redis://localhost:6379", decode_responses=True)
        redis_client.ping()
        twilio_client = None
        if config.TWILIO_ACCOUNT_SID and config.TWILIO_AUTH_TOKEN:
            twilio_client = Client(config.TWILIO_ACCOUNT_SID, config.TWILIO_AUTH_TOKEN)
            logger.info("Connected to Twilio WhatsApp: %s", config.TWILIO_WHATSAPP_NUMBER)
        else:
            logger.warning("Twilio not configured - running in simulation mode")
        return cls(redis_client, twilio_client)

    def send_whatsapp_message(self, to_number: str, message: str) -> bool:
        """Send WhatsApp message via Twilio."""
        if not self.twilio_client:
            logger.info("[SIMULATION] WhatsApp to %s: %s", to_number, message[:50])
            return True

        if not to_number.startswith("whatsapp:"):
            to_number = f"whatsapp:{to_number}"
        try:
            message_obj = self.twilio_client.messages.create(from_=self.from_number, body=message, to=to_number)
        except TwilioException as e:
            logger.error("Failed to send WhatsApp to %s: %s", to_number, e)
            return False
        logger.info("WhatsApp sent to %s: %s", to_number, message_obj.sid)
        return True

    def handle(self, raw: str) -> bool:
        """Process one queued notification.  Returns True when it was sent."""
        notification: Dict[str, Any] = json.loads(raw)
        phone = notification.get("phone")
        message = notification.get("message")
        if not phone or not message:
            logger.warning("Invalid notification: %s", notification)
            return False

        if self.send_whatsapp_message(phone, message):
            self.redis_client.lpush(
                LOG_KEY,
                json.dumps(
                    {
                        "phone": phone[-4:],  # Last 4 digits for privacy
                        "ticketId": notification.get("ticketId"),
                        "sent_at": datetime.now(timezone.utc).isoformat(),
                        "status": "sent",
                    }
                ),
            )
            return True

        # Retry failed messages once.
        if not notification.get("retry"):
            notification["retry"] = True
            self.redis_client.lpush(QUEUE_KEY, json.dumps(notification))
        return False

    def process_notifications(self, max_messages: Optional[int] = None) -> int:
        """Main worker loop.  Returns the number of messages handled."""
        logger.info("WhatsApp worker started - waiting for notifications...")
        handled = 0
        while max_messages is None or handled < max_messages:
            try:
                item = self.redis_client.brpop(QUEUE_KEY, timeout=5)
            except redis.RedisError as e:
                logger.error("Error reading notification queue: %s", e)
                time.sleep(1)
                continue
            if not item:
                continue
            try:
                self.handle(item[1])
            except (ValueError, redis.RedisError) as e:
                logger.error("Error processing notification: %s", e)
            handled += 1
        return handled

    def get_stats(self) -> Dict[str, Any]:
        return {
            "queue_length": self.redis_client.llen(QUEUE_KEY),
            "total_sent": self.redis_client.llen(LOG_KEY),
            "last_check": datetime.now(timezone.utc).isoformat(),
        }


def main() -> None:
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    if not config.REDIS_URL:
        logger.error("REDIS_URL environment variable required")
        return

    worker = WhatsAppWorker.from_env()
    try:
        worker.process_notifications()
    except KeyboardInterrupt:
        logger.info("Worker stopped by user")


if __name__ == "__main__":
    main()
