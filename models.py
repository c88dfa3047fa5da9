"""Database models for the service queue.

We use SQLModel to define the schema.  The database stores tickets,
counters, the service catalog, a singleton settings row and a tiny
key/value table for bookkeeping such as the last daily reset.  Tickets
carry the service name as it was when they were issued, so renaming or
deleting a service later does not rewrite history.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class TicketStatus(str, Enum):
    """Possible statuses for a ticket."""

    waiting = "WAITING"
    serving = "SERVING"
    completed = "COMPLETED"
    cancelled = "CANCELLED"
    no_show = "NO_SHOW"


TERMINAL_STATUSES: FrozenSet[TicketStatus] = frozenset(
    {TicketStatus.completed, TicketStatus.cancelled, TicketStatus.no_show}
)

# Forward-only state machine.  Terminal states have no outgoing edges.
ALLOWED_TRANSITIONS: Dict[TicketStatus, FrozenSet[TicketStatus]] = {
    TicketStatus.waiting: frozenset({TicketStatus.serving, TicketStatus.cancelled}),
    TicketStatus.serving: frozenset(
        {TicketStatus.completed, TicketStatus.no_show, TicketStatus.cancelled}
    ),
}


def can_transition(source: TicketStatus, target: TicketStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(source, frozenset())


def new_ticket_id() -> str:
    return uuid.uuid4().hex


class Ticket(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("service_id", "service_day", "sequence", name="uq_ticket_sequence"),
    )

    # Integer key doubles as the creation order used to break joined_at ties.
    pk: Optional[int] = Field(default=None, primary_key=True)
    id: str = Field(default_factory=new_ticket_id, index=True, unique=True)
    number: str = Field(index=True)
    customer_name: str
    phone: Optional[str] = None
    service_id: str = Field(index=True)
    service_name: str
    sequence: int
    service_day: date = Field(index=True)
    status: TicketStatus = Field(default=TicketStatus.waiting, index=True)
    joined_at: datetime
    served_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    counter_id: Optional[int] = None


class Counter(SQLModel, table=True):
    id: int = Field(primary_key=True, sa_column_kwargs={"autoincrement": False})
    is_open: bool = Field(default=True)
    current_ticket_id: Optional[str] = Field(default=None, unique=True)
    assigned_staff_id: Optional[str] = Field(default=None, unique=True)


class Service(SQLModel, table=True):
    id: str = Field(primary_key=True)
    name: str
    prefix: str = Field(max_length=1)
    color_theme: str = Field(default="blue")
    default_wait_minutes: int = Field(default=5)


DEFAULT_TEMPLATE = (
    "Hello {name}, your turn for {service} is coming up! Your ticket number is "
    "{number}. Please proceed to Counter {counter}."
)


class SystemSettings(SQLModel, table=True):
    id: Optional[int] = Field(default=1, primary_key=True)
    whatsapp_enabled: bool = Field(default=True)
    whatsapp_template: str = Field(default=DEFAULT_TEMPLATE)
    whatsapp_api_key: Optional[str] = None
    allow_mobile_entry: bool = Field(default=True)
    mobile_entry_url: Optional[str] = None
    hours_enabled: bool = Field(default=True)
    hours_start: str = Field(default="09:00")
    hours_end: str = Field(default="17:00")
    country_code: str = Field(default="")
    admin_passcode: str = Field(default="demo")


class AppState(SQLModel, table=True):
    """Durable key/value bookkeeping kept apart from the ticket tables."""

    key: str = Field(primary_key=True)
    value: str
