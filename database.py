"""Engine creation, schema setup and provisioning.

SQLite is the default for local runs; any SQLAlchemy URL (PostgreSQL in
production) works the same way because all queue correctness relies on
unique constraints and conditional ``UPDATE ... WHERE status = ?``
statements rather than on anything held in this process.
"""

from __future__ import annotations

import logging
from typing import Optional

import redis
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

import config
from models import Counter, Service, SystemSettings

logger = logging.getLogger(__name__)

DEFAULT_SERVICES = [
    {"id": "srv_1", "name": "General Inquiry", "prefix": "A", "color_theme": "blue", "default_wait_minutes": 5},
    {"id": "srv_2", "name": "Bill Payment", "prefix": "B", "color_theme": "emerald", "default_wait_minutes": 3},
    {"id": "srv_3", "name": "Technical Support", "prefix": "C", "color_theme": "amber", "default_wait_minutes": 15},
    {"id": "srv_4", "name": "VIP Services", "prefix": "V", "color_theme": "purple", "default_wait_minutes": 10},
]


def create_db_engine(url: Optional[str] = None) -> Engine:
    url = url or config.DATABASE_URL
    if url.startswith("sqlite"):
        if ":memory:" in url or url == "sqlite://":
            return create_engine(
                url, connect_args={"check_same_thread": False}, poolclass=StaticPool
            )
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 15})
    return create_engine(url, pool_pre_ping=True, pool_recycle=300)


def init_db(
    engine: Engine,
    total_counters: int = config.TOTAL_COUNTERS,
    admin_passcode: Optional[str] = None,
    seed_services: bool = True,
) -> None:
    """Create tables if they do not exist and provision fixed rows.

    Counters are only ever added, never removed: shrinking
    ``TOTAL_COUNTERS`` leaves the extra rows in place.
    """
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        if seed_services and session.exec(select(Service)).first() is None:
            for service in DEFAULT_SERVICES:
                session.add(Service(**service))
            logger.info("Seeded %d default services", len(DEFAULT_SERVICES))

        existing = set(session.exec(select(Counter.id)).all())
        for counter_id in range(1, total_counters + 1):
            if counter_id not in existing:
                session.add(Counter(id=counter_id))

        settings = session.get(SystemSettings, 1)
        if settings is None:
            settings = SystemSettings(id=1)
            session.add(settings)
        if admin_passcode:
            settings.admin_passcode = admin_passcode
        session.commit()


# Redis connection
_redis_client = None


def get_redis() -> Optional[redis.Redis]:
    """Get Redis client if configured and reachable."""
    global _redis_client
    if not config.REDIS_URL:
        return None

    if _redis_client is None:
        try:
            client = redis.from_url(config.REDIS_URL, decode_responses=True)
            client.ping()
            _redis_client = client
        except redis.RedisError as e:
            logger.warning("Redis connection failed: %s", e)
            return None

    return _redis_client
