"""Change notification for ticket, counter, service and settings writes.

The feed is a thin pub/sub facade: writers publish after their store
write has committed, observers (the display stream, caches) receive typed
events.  When Redis is configured every event is also pushed to the
``queue:updates`` channel so other processes see it too.  Observers only
ever get copies of committed state and must not make write decisions
from them.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import redis

logger = logging.getLogger(__name__)

TABLES = ("tickets", "counters", "services", "settings")


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    action: str  # insert, update, delete, reset
    data: Dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": f"{self.table}.{self.action}",
            "table": self.table,
            "action": self.action,
            "data": self.data,
            "timestamp": self.at.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_message(), default=str)


Subscriber = Callable[[ChangeEvent], None]


class ChangeFeed:
    def __init__(self, redis_client: Optional[redis.Redis] = None, channel: str = "queue:updates") -> None:
        self.redis_client = redis_client
        self.channel = channel
        self._subscribers: List[Tuple[Subscriber, Optional[frozenset]]] = []
        self._subscribers_lock = threading.Lock()

    def subscribe(self, callback: Subscriber, tables: Optional[Iterable[str]] = None) -> Callable[[], None]:
        """Register ``callback`` and return a function that unregisters it."""
        entry = (callback, frozenset(tables) if tables is not None else None)
        with self._subscribers_lock:
            self._subscribers.append(entry)

        def unsubscribe() -> None:
            with self._subscribers_lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe

    def publish(self, table: str, action: str, data: Optional[Dict[str, Any]] = None) -> ChangeEvent:
        if table not in TABLES:
            raise ValueError(f"unknown table {table!r}")
        event = ChangeEvent(table=table, action=action, data=data or {})

        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for callback, tables in subscribers:
            if tables is not None and table not in tables:
                continue
            try:
                callback(event)
            except Exception:
                # A broken observer must never fail the write that triggered it.
                logger.exception("Change feed subscriber %r failed", callback)

        if self.redis_client is not None:
            try:
                self.redis_client.publish(self.channel, event.to_json())
            except redis.RedisError as e:
                logger.warning("Redis publish error: %s", e)
        return event
