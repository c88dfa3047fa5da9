"""Live wait-time estimate.

The estimate is derived state: it is recomputed on a fixed interval by a
periodic task and read from the last snapshot in between.  The model is
a single system-wide figure:

    ceil((serving backlog + waiting backlog) / open counters)

where each SERVING ticket contributes whatever is left of its service's
standard duration (never less than a 30 second floor) and each WAITING
ticket contributes one full standard duration.
"""

from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import Dict, List, Optional

from errors import UnknownService
from models import Service, Ticket, TicketStatus
from services import QueueService

logger = logging.getLogger(__name__)

MINIMUM_FLOOR = timedelta(seconds=30)
FALLBACK_DURATION = timedelta(minutes=5)


class WaitEstimator:
    def __init__(
        self,
        queue: QueueService,
        minimum_floor: timedelta = MINIMUM_FLOOR,
        use_history: bool = False,
    ) -> None:
        self.queue = queue
        self.minimum_floor = minimum_floor
        self.use_history = use_history
        self._estimates: Optional[Dict[str, int]] = None

    def standard_durations(self, services: List[Service], tickets: List[Ticket]) -> Dict[str, timedelta]:
        """Per-service session length.

        With ``use_history`` the mean ``completed_at - served_at`` of the
        service's completed tickets wins over the configured default.
        """
        durations = {s.id: timedelta(minutes=s.default_wait_minutes or 5) for s in services}
        if not self.use_history:
            return durations
        for service in services:
            samples = [
                t.completed_at - t.served_at
                for t in tickets
                if t.service_id == service.id
                and t.status == TicketStatus.completed
                and t.served_at is not None
                and t.completed_at is not None
                and t.completed_at >= t.served_at
            ]
            if samples:
                durations[service.id] = sum(samples, timedelta()) / len(samples)
        return durations

    def compute(self) -> Dict[str, int]:
        services = self.queue.catalog.list()
        tickets = self.queue.tickets.list_all()
        serving = [t for t in tickets if t.status == TicketStatus.serving]
        waiting = [t for t in tickets if t.status == TicketStatus.waiting]

        if not serving and not waiting:
            return {s.id: 0 for s in services}

        durations = self.standard_durations(services, tickets)
        now = self.queue.clock.utcnow()

        serving_backlog = timedelta()
        for ticket in serving:
            duration = durations.get(ticket.service_id, FALLBACK_DURATION)
            if ticket.served_at is None or ticket.served_at > now:
                serving_backlog += duration
                continue
            serving_backlog += max(self.minimum_floor, duration - (now - ticket.served_at))

        waiting_backlog = sum(
            (durations.get(t.service_id, FALLBACK_DURATION) for t in waiting), timedelta()
        )

        active_counters = max(1, self.queue.counters.open_count())
        total = serving_backlog + waiting_backlog
        minutes = math.ceil(total.total_seconds() / (60 * active_counters))
        return {s.id: minutes for s in services}

    def recompute(self) -> Dict[str, int]:
        self._estimates = self.compute()
        logger.debug("Wait estimates: %s", self._estimates)
        return self._estimates

    @property
    def estimates(self) -> Dict[str, int]:
        if self._estimates is None:
            return self.recompute()
        return dict(self._estimates)

    def estimate(self, service_id: str) -> int:
        estimates = self.estimates
        if service_id not in estimates:
            # Service created since the last tick.
            estimates = self.recompute()
        if service_id not in estimates:
            raise UnknownService(f"Service {service_id!r} does not exist")
        return estimates[service_id]
