"""Queue business logic.

This module owns the ticket lifecycle and counter assignment.  Every
operation opens its own short-lived session against the shared database
and commits before returning; no lock is held in this process across a
database round-trip.  Concurrency between counters, kiosks and other
service instances is settled entirely by the database:

* ticket numbers are protected by a unique constraint on
  ``(service_id, service_day, sequence)``; a loser of an insert race
  retries with the next number;
* status changes are conditional updates (``WHERE status = <expected>``);
  a zero row count means someone else got there first.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

from sqlalchemy import delete, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, col, func, select

import config
from clock import Clock, SystemClock
from errors import (
    AllocationExhausted,
    InvalidTransition,
    QueueClosed,
    StaleTicket,
    StoreUnavailable,
    UnknownCounter,
    UnknownService,
    UnknownTicket,
)
from feed import ChangeFeed
from models import (
    TERMINAL_STATUSES,
    Counter,
    Service,
    SystemSettings,
    Ticket,
    TicketStatus,
    can_transition,
    new_ticket_id,
)

logger = logging.getLogger(__name__)

LOCAL_TICKET_PREFIX = "local_"
PREFIX_RE = re.compile(r"^[A-Z]$")
HHMM_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def format_ticket_number(prefix: str, sequence: int) -> str:
    # Three digits, growing to four past 999.
    return f"{prefix}{sequence:03d}"


def ticket_to_dict(ticket: Ticket) -> Dict[str, Any]:
    data = ticket.model_dump(mode="json", exclude={"pk"})
    data["degraded"] = ticket.id.startswith(LOCAL_TICKET_PREFIX)
    return data


def counter_to_dict(counter: Counter) -> Dict[str, Any]:
    return counter.model_dump(mode="json")


class _Repository:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def _session(self) -> Session:
        # Objects are handed to callers after the session closes.
        return Session(self.engine, expire_on_commit=False)


# ===== SERVICE CATALOG =====


class ServiceCatalog(_Repository):
    """Service definitions.  Read-mostly; only administrators write."""

    def __init__(self, engine: Engine, feed: ChangeFeed) -> None:
        super().__init__(engine)
        self.feed = feed
        # Last definitions read from the store.  Only consulted when the
        # store is unreachable and a degraded ticket has to be issued.
        self._last_known: Dict[str, Service] = {}

    def get(self, service_id: str) -> Service:
        with self._session() as session:
            service = session.get(Service, service_id)
        if service is None:
            raise UnknownService(f"Service {service_id!r} does not exist")
        self._last_known[service.id] = service
        return service

    def last_known(self, service_id: str) -> Optional[Service]:
        return self._last_known.get(service_id)

    def list(self) -> List[Service]:
        with self._session() as session:
            services = list(session.exec(select(Service).order_by(Service.id)).all())
        self._last_known = {s.id: s for s in services}
        return services

    def create(
        self,
        name: str,
        prefix: str,
        color_theme: str = "blue",
        default_wait_minutes: int = 5,
        service_id: Optional[str] = None,
    ) -> Service:
        _validate_prefix(prefix)
        service = Service(
            id=service_id or f"srv_{uuid.uuid4().hex[:8]}",
            name=name,
            prefix=prefix,
            color_theme=color_theme,
            default_wait_minutes=default_wait_minutes,
        )
        with self._session() as session:
            session.add(service)
            session.commit()
        self._last_known[service.id] = service
        self.feed.publish("services", "insert", service.model_dump(mode="json"))
        return service

    def update(self, service_id: str, **changes: Any) -> Service:
        if "prefix" in changes and changes["prefix"] is not None:
            _validate_prefix(changes["prefix"])
        with self._session() as session:
            service = session.get(Service, service_id)
            if service is None:
                raise UnknownService(f"Service {service_id!r} does not exist")
            for key, value in changes.items():
                if value is not None:
                    setattr(service, key, value)
            session.add(service)
            session.commit()
        self._last_known[service.id] = service
        self.feed.publish("services", "update", service.model_dump(mode="json"))
        return service

    def delete(self, service_id: str) -> None:
        """Remove a definition.  Issued tickets keep their own copy of the name."""
        with self._session() as session:
            service = session.get(Service, service_id)
            if service is None:
                raise UnknownService(f"Service {service_id!r} does not exist")
            session.delete(service)
            session.commit()
        self._last_known.pop(service_id, None)
        self.feed.publish("services", "delete", {"id": service_id})


def _validate_prefix(prefix: str) -> None:
    if not PREFIX_RE.match(prefix or ""):
        raise ValueError("prefix must be a single uppercase letter")


# ===== SETTINGS =====


class SettingsRepository(_Repository):
    def __init__(self, engine: Engine, feed: ChangeFeed) -> None:
        super().__init__(engine)
        self.feed = feed

    def get(self) -> SystemSettings:
        with self._session() as session:
            settings = session.get(SystemSettings, 1)
            if settings is None:
                settings = SystemSettings(id=1)
                session.add(settings)
                session.commit()
        return settings

    def update(self, **changes: Any) -> SystemSettings:
        for key in ("hours_start", "hours_end"):
            value = changes.get(key)
            if value is not None and not HHMM_RE.match(value):
                raise ValueError(f"{key} must be HH:MM (24h)")
        with self._session() as session:
            settings = session.get(SystemSettings, 1) or SystemSettings(id=1)
            for key, value in changes.items():
                if value is not None:
                    setattr(settings, key, value)
            session.add(settings)
            session.commit()
        self.feed.publish("settings", "update", public_settings(settings))
        return settings

    def check_passcode(self, passcode: str) -> bool:
        return passcode == self.get().admin_passcode


def public_settings(settings: SystemSettings) -> Dict[str, Any]:
    """Settings as shown to kiosks and displays (no secrets)."""
    return {
        "whatsappEnabled": settings.whatsapp_enabled,
        "whatsappTemplate": settings.whatsapp_template,
        "hasWhatsappApiKey": bool(settings.whatsapp_api_key),
        "allowMobileEntry": settings.allow_mobile_entry,
        "mobileEntryUrl": settings.mobile_entry_url,
        "operatingHours": {
            "enabled": settings.hours_enabled,
            "start": settings.hours_start,
            "end": settings.hours_end,
        },
        "countryCode": settings.country_code,
    }


def is_within_operating_hours(settings: SystemSettings, now_local: datetime) -> bool:
    """Whether new joins are accepted at local time ``now_local``.

    Bounds are inclusive.  A window whose end is before its start wraps
    past midnight.
    """
    if not settings.hours_enabled:
        return True
    current = now_local.strftime("%H:%M")
    start, end = settings.hours_start, settings.hours_end
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def mobile_entry_url(settings: SystemSettings, base_url: str) -> str:
    if settings.mobile_entry_url:
        return settings.mobile_entry_url
    return f"{base_url.rstrip('/')}/?mode=mobile_entry"


# ===== SEQUENCE ALLOCATION =====


class SequenceAllocator(_Repository):
    """Per-service, per-day ticket numbers derived from stored tickets.

    The candidate is computed from what is already in the ticket table,
    never from a counter in this process, so restarts and parallel
    instances agree.  The unique constraint rejects a duplicate and the
    loser moves on to the next number.
    """

    def __init__(self, engine: Engine, clock: Clock, max_attempts: int = config.ALLOCATION_ATTEMPTS) -> None:
        super().__init__(engine)
        self.clock = clock
        self.max_attempts = max_attempts

    def candidate(self, session: Session, service_id: str, day: date) -> int:
        issued = session.exec(
            select(func.count(Ticket.pk)).where(Ticket.service_id == service_id, Ticket.service_day == day)
        ).one()
        highest = session.exec(
            select(func.max(Ticket.sequence)).where(Ticket.service_id == service_id, Ticket.service_day == day)
        ).one()
        # Clearing history mid-day removes rows, so the count alone can
        # fall behind numbers already handed out.
        return max(issued or 0, highest or 0) + 1

    def next_number(self, service: Service) -> str:
        """The number the next join for ``service`` would most likely receive."""
        with self._session() as session:
            sequence = self.candidate(session, service.id, self.clock.today())
        return format_ticket_number(service.prefix, sequence)

    def insert(self, service: Service, build: Callable[[int, str, date], Ticket]) -> Ticket:
        """Insert the ticket produced by ``build(sequence, number, day)``."""
        day = self.clock.today()
        sequence: Optional[int] = None
        for attempt in range(1, self.max_attempts + 1):
            with self._session() as session:
                fresh = self.candidate(session, service.id, day)
                sequence = fresh if sequence is None else max(sequence + 1, fresh)
                number = format_ticket_number(service.prefix, sequence)
                ticket = build(sequence, number, day)
                session.add(ticket)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    logger.warning(
                        "Ticket number %s for %s already taken (attempt %d/%d)",
                        number, service.id, attempt, self.max_attempts,
                    )
                    continue
            return ticket
        raise AllocationExhausted(
            f"Could not allocate a ticket number for {service.id} after {self.max_attempts} attempts"
        )


# ===== TICKETS =====


class TicketStore(_Repository):
    """Ticket records and their forward-only state machine."""

    def __init__(
        self,
        engine: Engine,
        catalog: ServiceCatalog,
        allocator: SequenceAllocator,
        feed: ChangeFeed,
        clock: Clock,
    ) -> None:
        super().__init__(engine)
        self.catalog = catalog
        self.allocator = allocator
        self.feed = feed
        self.clock = clock
        # Tickets issued while the store was unreachable.  Not durable,
        # not unique across instances; exposed through ``degraded``.
        self._local: List[Ticket] = []

    @property
    def degraded(self) -> bool:
        return any(t.status not in TERMINAL_STATUSES for t in self._local)

    def local_tickets(self) -> List[Ticket]:
        return list(self._local)

    def join(self, name: str, service_id: str, phone: Optional[str] = None) -> Ticket:
        try:
            service = self.catalog.get(service_id)
            ticket = self.allocator.insert(
                service,
                lambda sequence, number, day: Ticket(
                    number=number,
                    customer_name=name,
                    phone=phone or None,
                    service_id=service.id,
                    service_name=service.name,
                    sequence=sequence,
                    service_day=day,
                    status=TicketStatus.waiting,
                    joined_at=self.clock.utcnow(),
                ),
            )
        except OperationalError as e:
            return self._join_local(name, service_id, phone, e)

        logger.info("Ticket %s joined %s (%s)", ticket.number, service.name, ticket.id)
        self.feed.publish("tickets", "insert", ticket_to_dict(ticket))
        return ticket

    def _join_local(self, name: str, service_id: str, phone: Optional[str], error: Exception) -> Ticket:
        service = self.catalog.last_known(service_id)
        if service is None:
            raise StoreUnavailable("Ticket store unavailable and service unknown locally") from error
        sequence = 1 + sum(1 for t in self._local if t.service_id == service_id)
        ticket = Ticket(
            pk=None,
            id=f"{LOCAL_TICKET_PREFIX}{new_ticket_id()}",
            number=format_ticket_number(service.prefix, sequence),
            customer_name=name,
            phone=phone or None,
            service_id=service.id,
            service_name=service.name,
            sequence=sequence,
            service_day=self.clock.today(),
            status=TicketStatus.waiting,
            joined_at=self.clock.utcnow(),
        )
        self._local.append(ticket)
        logger.warning(
            "Store unavailable (%s); issued non-durable ticket %s in degraded mode", error, ticket.number
        )
        return ticket

    def get(self, ticket_id: str) -> Ticket:
        if ticket_id.startswith(LOCAL_TICKET_PREFIX):
            return self._get_local(ticket_id)
        with self._session() as session:
            ticket = session.exec(select(Ticket).where(Ticket.id == ticket_id)).first()
        if ticket is None:
            raise UnknownTicket(f"Ticket {ticket_id!r} does not exist")
        return ticket

    def _get_local(self, ticket_id: str) -> Ticket:
        for ticket in self._local:
            if ticket.id == ticket_id:
                return ticket
        raise UnknownTicket(f"Ticket {ticket_id!r} does not exist")

    def transition_to_serving(self, ticket_id: str, counter_id: int) -> Ticket:
        """Claim a WAITING ticket for ``counter_id``.

        Raises ``StaleTicket`` if the ticket is no longer WAITING, which
        includes losing the claim to another counter.
        """
        with self._session() as session:
            result = session.exec(
                update(Ticket)
                .where(Ticket.id == ticket_id, Ticket.status == TicketStatus.waiting)
                .values(status=TicketStatus.serving, served_at=self.clock.utcnow(), counter_id=counter_id)
            )
            if result.rowcount != 1:
                session.rollback()
                current = session.exec(select(Ticket.status).where(Ticket.id == ticket_id)).first()
                if current is None:
                    raise UnknownTicket(f"Ticket {ticket_id!r} does not exist")
                raise StaleTicket(f"Ticket {ticket_id} is {current.value}, not WAITING")
            session.commit()
            ticket = session.exec(select(Ticket).where(Ticket.id == ticket_id)).one()

        logger.info("Ticket %s called to counter %d", ticket.number, counter_id)
        self.feed.publish("tickets", "update", ticket_to_dict(ticket))
        return ticket

    def oldest_local_waiting(self) -> Optional[Ticket]:
        waiting = [t for t in self._local if t.status == TicketStatus.waiting]
        if not waiting:
            return None
        return min(waiting, key=lambda t: t.joined_at)

    def claim_local(self, counter_id: int) -> Optional[Ticket]:
        """Serve the oldest degraded-mode ticket."""
        ticket = self.oldest_local_waiting()
        if ticket is None:
            return None
        ticket.status = TicketStatus.serving
        ticket.served_at = self.clock.utcnow()
        ticket.counter_id = counter_id
        logger.warning("Counter %d serving non-durable ticket %s", counter_id, ticket.number)
        return ticket

    def update_terminal_status(self, ticket_id: str, status: TicketStatus) -> Ticket:
        status = TicketStatus(status)
        if status not in TERMINAL_STATUSES:
            raise InvalidTransition(f"{status.value} is not a terminal status")
        if ticket_id.startswith(LOCAL_TICKET_PREFIX):
            return self._update_local(ticket_id, status)

        # Forward-only edges mean the re-read loop settles within a few rounds.
        for _ in range(3):
            with self._session() as session:
                current = session.exec(select(Ticket.status).where(Ticket.id == ticket_id)).first()
                if current is None:
                    raise UnknownTicket(f"Ticket {ticket_id!r} does not exist")
                if not can_transition(current, status):
                    raise InvalidTransition(f"Cannot move ticket from {current.value} to {status.value}")
                values: Dict[str, Any] = {"status": status}
                if status == TicketStatus.completed:
                    values["completed_at"] = self.clock.utcnow()
                result = session.exec(
                    update(Ticket).where(Ticket.id == ticket_id, Ticket.status == current).values(**values)
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                ticket = session.exec(select(Ticket).where(Ticket.id == ticket_id)).one()
            logger.info("Ticket %s -> %s", ticket.number, status.value)
            self.feed.publish("tickets", "update", ticket_to_dict(ticket))
            return ticket
        raise StaleTicket(f"Ticket {ticket_id} kept changing while updating to {status.value}")

    def _update_local(self, ticket_id: str, status: TicketStatus) -> Ticket:
        ticket = self._get_local(ticket_id)
        if not can_transition(ticket.status, status):
            raise InvalidTransition(f"Cannot move ticket from {ticket.status.value} to {status.value}")
        ticket.status = status
        if status == TicketStatus.completed:
            ticket.completed_at = self.clock.utcnow()
        return ticket

    def list_by_status(self, status: TicketStatus) -> Iterator[Ticket]:
        """Tickets in ``status``, oldest first (ties in creation order)."""
        with self._session() as session:
            statement = (
                select(Ticket)
                .where(Ticket.status == TicketStatus(status))
                .order_by(Ticket.joined_at, Ticket.pk)
            )
            for ticket in session.exec(statement):
                yield ticket

    def oldest_waiting(self) -> Optional[Ticket]:
        with self._session() as session:
            return session.exec(
                select(Ticket)
                .where(Ticket.status == TicketStatus.waiting)
                .order_by(Ticket.joined_at, Ticket.pk)
                .limit(1)
            ).first()

    def list_all(self) -> List[Ticket]:
        with self._session() as session:
            return list(session.exec(select(Ticket).order_by(Ticket.joined_at, Ticket.pk)).all())

    def clear_history(self) -> int:
        """Delete terminal tickets; WAITING and SERVING stay."""
        with self._session() as session:
            result = session.exec(delete(Ticket).where(col(Ticket.status).in_(list(TERMINAL_STATUSES))))
            session.commit()
        self._local = [t for t in self._local if t.status not in TERMINAL_STATUSES]
        logger.info("Cleared %d finished tickets", result.rowcount)
        self.feed.publish("tickets", "delete", {"scope": "history", "count": result.rowcount})
        return result.rowcount

    def wipe_all(self) -> int:
        with self._session() as session:
            result = session.exec(delete(Ticket))
            session.commit()
        self._local = []
        logger.info("Wiped all %d tickets", result.rowcount)
        self.feed.publish("tickets", "reset", {"scope": "all", "count": result.rowcount})
        return result.rowcount


# ===== COUNTERS =====


class CallOutcome(str, Enum):
    called = "CALLED"
    none_waiting = "NONE_WAITING"
    no_ticket_available = "NO_TICKET_AVAILABLE"


@dataclass
class CallNextResult:
    outcome: CallOutcome
    ticket: Optional[Ticket] = None
    counter: Optional[Counter] = None
    attempts: int = 0
    degraded: bool = field(default=False)


class CounterRegistry(_Repository):
    """Open/closed state, staff occupancy and current ticket per counter."""

    def __init__(
        self,
        engine: Engine,
        store: TicketStore,
        feed: ChangeFeed,
        max_attempts: int = config.CALL_NEXT_ATTEMPTS,
    ) -> None:
        super().__init__(engine)
        self.store = store
        self.feed = feed
        self.max_attempts = max_attempts

    def get(self, counter_id: int) -> Counter:
        with self._session() as session:
            counter = session.get(Counter, counter_id)
        if counter is None:
            raise UnknownCounter(f"Counter {counter_id} does not exist")
        return counter

    def list(self) -> List[Counter]:
        with self._session() as session:
            return list(session.exec(select(Counter).order_by(Counter.id)).all())

    def open_count(self) -> int:
        with self._session() as session:
            return session.exec(select(func.count(Counter.id)).where(Counter.is_open == True)).one()  # noqa: E712

    def call_next(self, counter_id: int) -> CallNextResult:
        """Claim the oldest WAITING ticket for this counter.

        The claim itself is the ticket store's conditional update, so two
        counters racing for the same ticket cannot both win.  The loser
        re-reads the queue and tries the next candidate.
        """
        try:
            self.get(counter_id)
            return self._call_next(counter_id)
        except OperationalError as e:
            logger.warning("Store unavailable during call next (%s); falling back to local tickets", e)
            ticket = self.store.claim_local(counter_id)
            if ticket is None:
                return CallNextResult(CallOutcome.none_waiting, degraded=True)
            return CallNextResult(CallOutcome.called, ticket=ticket, degraded=True)

    def _call_next(self, counter_id: int) -> CallNextResult:
        lost_race = False
        for attempt in range(1, self.max_attempts + 1):
            candidate = self.store.oldest_waiting()
            # Tickets issued while the store was down keep their place in line.
            local = self.store.oldest_local_waiting()
            if local is not None and (candidate is None or local.joined_at < candidate.joined_at):
                ticket = self.store.claim_local(counter_id)
                counter = self._set_current(counter_id, ticket.id)
                return CallNextResult(
                    CallOutcome.called, ticket=ticket, counter=counter, attempts=attempt, degraded=True
                )
            if candidate is None:
                outcome = CallOutcome.no_ticket_available if lost_race else CallOutcome.none_waiting
                return CallNextResult(outcome, attempts=attempt)
            try:
                ticket = self.store.transition_to_serving(candidate.id, counter_id)
            except StaleTicket:
                lost_race = True
                logger.info(
                    "Counter %d lost ticket %s to another counter (attempt %d/%d)",
                    counter_id, candidate.number, attempt, self.max_attempts,
                )
                continue
            counter = self._set_current(counter_id, ticket.id)
            return CallNextResult(CallOutcome.called, ticket=ticket, counter=counter, attempts=attempt)
        return CallNextResult(CallOutcome.no_ticket_available, attempts=self.max_attempts)

    def _set_current(self, counter_id: int, ticket_id: Optional[str]) -> Counter:
        with self._session() as session:
            counter = session.get(Counter, counter_id)
            if counter is None:
                raise UnknownCounter(f"Counter {counter_id} does not exist")
            if ticket_id and counter.current_ticket_id and counter.current_ticket_id != ticket_id:
                logger.warning(
                    "Counter %d replaced unfinished ticket %s", counter_id, counter.current_ticket_id
                )
            counter.current_ticket_id = ticket_id
            session.add(counter)
            session.commit()
        self.feed.publish("counters", "update", counter_to_dict(counter))
        return counter

    def release(self, counter_id: int) -> Counter:
        return self._set_current(counter_id, None)

    def release_ticket(self, ticket_id: str) -> Optional[Counter]:
        """Release whichever counter currently holds ``ticket_id``, if any."""
        with self._session() as session:
            counter = session.exec(select(Counter).where(Counter.current_ticket_id == ticket_id)).first()
        if counter is None:
            return None
        return self.release(counter.id)

    def toggle(self, counter_id: int) -> Counter:
        # Closing leaves any in-progress ticket attached.
        with self._session() as session:
            counter = session.get(Counter, counter_id)
            if counter is None:
                raise UnknownCounter(f"Counter {counter_id} does not exist")
            counter.is_open = not counter.is_open
            session.add(counter)
            session.commit()
        logger.info("Counter %d is now %s", counter_id, "open" if counter.is_open else "closed")
        self.feed.publish("counters", "update", counter_to_dict(counter))
        return counter

    def assign_staff(self, counter_id: int, staff_id: str) -> Counter:
        """Seat ``staff_id`` at ``counter_id``, vacating any other counter they held."""
        with self._session() as session:
            counter = session.get(Counter, counter_id)
            if counter is None:
                raise UnknownCounter(f"Counter {counter_id} does not exist")
            previous = list(
                session.exec(
                    select(Counter).where(Counter.assigned_staff_id == staff_id, Counter.id != counter_id)
                ).all()
            )
            for other in previous:
                other.assigned_staff_id = None
                session.add(other)
            # Vacate first so the unique constraint on staff never sees two rows.
            session.flush()
            counter.assigned_staff_id = staff_id
            session.add(counter)
            session.commit()
        for other in previous:
            logger.info("Staff %s left counter %d for counter %d", staff_id, other.id, counter_id)
            self.feed.publish("counters", "update", counter_to_dict(other))
        self.feed.publish("counters", "update", counter_to_dict(counter))
        return counter

    def unassign(self, counter_id: int) -> Counter:
        with self._session() as session:
            counter = session.get(Counter, counter_id)
            if counter is None:
                raise UnknownCounter(f"Counter {counter_id} does not exist")
            counter.assigned_staff_id = None
            session.add(counter)
            session.commit()
        self.feed.publish("counters", "update", counter_to_dict(counter))
        return counter

    def clear_all_assignments_and_current_tickets(self) -> int:
        with self._session() as session:
            result = session.exec(update(Counter).values(current_ticket_id=None, assigned_staff_id=None))
            session.commit()
        self.feed.publish("counters", "reset", {"count": result.rowcount})
        return result.rowcount


# ===== FACADE =====


class QueueService:
    """Entry point used by the HTTP layer, the scheduler and the estimator."""

    def __init__(
        self,
        engine: Engine,
        clock: Optional[Clock] = None,
        feed: Optional[ChangeFeed] = None,
        call_attempts: int = config.CALL_NEXT_ATTEMPTS,
        allocation_attempts: int = config.ALLOCATION_ATTEMPTS,
    ) -> None:
        self.engine = engine
        self.clock = clock or SystemClock(config.QUEUE_TIMEZONE)
        self.feed = feed or ChangeFeed()
        self.catalog = ServiceCatalog(engine, self.feed)
        self.settings = SettingsRepository(engine, self.feed)
        self.allocator = SequenceAllocator(engine, self.clock, allocation_attempts)
        self.tickets = TicketStore(engine, self.catalog, self.allocator, self.feed, self.clock)
        self.counters = CounterRegistry(engine, self.tickets, self.feed, call_attempts)

    @property
    def degraded(self) -> bool:
        return self.tickets.degraded

    def join(self, name: str, service_id: str, phone: Optional[str] = None, channel: str = "kiosk") -> Ticket:
        try:
            settings = self.settings.get()
        except OperationalError:
            settings = None
        if settings is not None:
            if channel == "mobile" and not settings.allow_mobile_entry:
                raise QueueClosed("Mobile entry is disabled")
            if not is_within_operating_hours(settings, self.clock.local_now()):
                raise QueueClosed(
                    f"Queue is closed; operating hours are {settings.hours_start}-{settings.hours_end}"
                )
        return self.tickets.join(name, service_id, phone)

    def call_next(self, counter_id: int) -> CallNextResult:
        return self.counters.call_next(counter_id)

    def finish(self, ticket_id: str, status: TicketStatus) -> Ticket:
        """Move a ticket to a terminal status and free its counter."""
        ticket = self.tickets.update_terminal_status(ticket_id, status)
        if not ticket.id.startswith(LOCAL_TICKET_PREFIX):
            self.counters.release_ticket(ticket.id)
            return ticket
        try:
            self.counters.release_ticket(ticket.id)
        except OperationalError as e:
            logger.warning("Could not release counter for non-durable ticket %s: %s", ticket.number, e)
        return ticket

    def finish_current(self, counter_id: int, status: TicketStatus) -> Ticket:
        counter = self.counters.get(counter_id)
        if counter.current_ticket_id is None:
            raise InvalidTransition(f"Counter {counter_id} is not serving a ticket")
        return self.finish(counter.current_ticket_id, status)

    def cancel(self, ticket_id: str) -> Ticket:
        return self.finish(ticket_id, TicketStatus.cancelled)

    def clear_history(self) -> int:
        return self.tickets.clear_history()

    def full_reset(self) -> int:
        removed = self.tickets.wipe_all()
        self.counters.clear_all_assignments_and_current_tickets()
        return removed

    def board(self) -> Dict[str, Any]:
        """Snapshot for the public display."""
        local = self.tickets.local_tickets()
        serving = sorted(
            list(self.tickets.list_by_status(TicketStatus.serving))
            + [t for t in local if t.status == TicketStatus.serving],
            key=lambda t: t.served_at or t.joined_at,
        )
        # Stable sort keeps the store's tie-break for identical join times.
        waiting = sorted(
            list(self.tickets.list_by_status(TicketStatus.waiting))
            + [t for t in local if t.status == TicketStatus.waiting],
            key=lambda t: t.joined_at,
        )
        return {
            "serving": [ticket_to_dict(t) for t in serving],
            "waiting": [ticket_to_dict(t) for t in waiting],
            "counters": [counter_to_dict(c) for c in self.counters.list()],
            "degraded": self.degraded,
        }

    def service_stats(self) -> Dict[str, Dict[str, Any]]:
        """Served count, average wait, cancel rate and total per service."""
        tickets = self.tickets.list_all()
        stats: Dict[str, Dict[str, Any]] = {}
        for service in self.catalog.list():
            mine = [t for t in tickets if t.service_id == service.id]
            called = [t for t in mine if t.served_at is not None]
            avg_wait = 0
            if called:
                total_wait = sum((t.served_at - t.joined_at).total_seconds() for t in called)
                avg_wait = round(total_wait / len(called) / 60)
            cancelled = sum(1 for t in mine if t.status == TicketStatus.cancelled)
            stats[service.id] = {
                "served": sum(1 for t in mine if t.status == TicketStatus.completed),
                "avgWait": avg_wait,
                "cancelRate": round(cancelled / len(mine) * 100, 1) if mine else 0,
                "total": len(mine),
            }
        return stats
