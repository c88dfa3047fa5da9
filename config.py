"""Runtime configuration read from environment variables.

Values are read once at import time.  Nothing here is required: every
setting has a default that is good enough for a local SQLite run.
"""

from __future__ import annotations

import os

PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_FILENAME = os.path.join(PROJECT_DIR, "queue.db")

DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DEFAULT_DB_FILENAME}")
REDIS_URL = os.getenv("REDIS_URL")
ADMIN_PASS = os.getenv("ADMIN_PASS")

TOTAL_COUNTERS = int(os.getenv("TOTAL_COUNTERS", "4"))
QUEUE_TIMEZONE = os.getenv("QUEUE_TIMEZONE", "UTC")

ESTIMATE_INTERVAL_SECONDS = float(os.getenv("ESTIMATE_INTERVAL_SECONDS", "5"))
RESET_INTERVAL_SECONDS = float(os.getenv("RESET_INTERVAL_SECONDS", "60"))

CALL_NEXT_ATTEMPTS = int(os.getenv("CALL_NEXT_ATTEMPTS", "5"))
ALLOCATION_ATTEMPTS = int(os.getenv("ALLOCATION_ATTEMPTS", "5"))

WHATSAPP_API_URL = os.getenv("WHATSAPP_API_URL", "http://127.0.0.1:8000/api/send-whatsapp")
WHATSAPP_TIMEOUT_SECONDS = float(os.getenv("WHATSAPP_TIMEOUT_SECONDS", "5"))

TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_WHATSAPP_NUMBER = os.getenv("TWILIO_WHATSAPP_NUMBER", "whatsapp:+14155238886")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
INSIGHT_TIMEOUT_SECONDS = float(os.getenv("INSIGHT_TIMEOUT_SECONDS", "10"))
