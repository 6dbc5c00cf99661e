"""Database models for the counter queue.

We use SQLModel to define the schema.  The database stores tickets, the
per-day number counters, unit settings, organs (sub-queues) and an audit
trail.  All timestamps are naive UTC; the unit's calendar day is derived
from its configured timezone.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

import config


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


class TicketType(str, Enum):
    normal = "normal"
    preferential = "preferential"

    @property
    def prefix(self) -> str:
        return "P" if self is TicketType.preferential else "N"


class TicketStatus(str, Enum):
    """Possible statuses for a ticket."""

    waiting = "waiting"
    called = "called"
    in_service = "in_service"
    completed = "completed"
    skipped = "skipped"
    cancelled = "cancelled"


TERMINAL_STATUSES = frozenset(
    {TicketStatus.completed, TicketStatus.skipped, TicketStatus.cancelled}
)


class ServiceType(str, Enum):
    revisao = "revisao"
    transferencia = "transferencia"
    alistamento = "alistamento"
    certidao = "certidao"
    outros = "outros"


class CompletionStatus(str, Enum):
    realizado_sucesso = "realizado_sucesso"
    requerimento_nao_atendido = "requerimento_nao_atendido"
    outro = "outro"


def display_code(ticket_type: TicketType, number: int) -> str:
    return f"{TicketType(ticket_type).prefix}-{number:03d}"


class Ticket(SQLModel, table=True):
    __tablename__ = "tickets"
    __table_args__ = (
        UniqueConstraint(
            "unit_id",
            "ticket_type",
            "service_date",
            "number_scope",
            "ticket_number",
            name="uq_tickets_unit_type_day_number",
        ),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    unit_id: str = Field(index=True)
    ticket_type: TicketType
    ticket_number: int
    display_code: str
    priority: int = Field(default=0)
    status: TicketStatus = Field(default=TicketStatus.waiting, index=True)
    organ_id: Optional[str] = Field(default=None, index=True)
    number_scope: str = Field(default="")
    client_label: Optional[str] = None
    counter_id: Optional[str] = None
    attendant_id: Optional[str] = None
    service_date: date = Field(index=True)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    called_at: Optional[datetime] = None
    service_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    skip_reason: Optional[str] = None
    cancel_reason: Optional[str] = None
    service_type: Optional[ServiceType] = None
    completion_status: Optional[CompletionStatus] = None
    updated_at: datetime = Field(default_factory=utcnow)

    def snapshot(self) -> Dict[str, Any]:
        """JSON-safe copy used in events and API responses."""
        return self.model_dump(mode="json")


class TicketCounter(SQLModel, table=True):
    __tablename__ = "ticket_counters"
    __table_args__ = (
        UniqueConstraint(
            "unit_id",
            "ticket_type",
            "counter_date",
            "number_scope",
            name="uq_ticket_counters_scope_day",
        ),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    unit_id: str = Field(index=True)
    ticket_type: TicketType
    counter_date: date
    number_scope: str = Field(default="")
    last_number: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class UnitSettings(SQLModel, table=True):
    __tablename__ = "unit_settings"

    id: Optional[int] = Field(default=None, primary_key=True)
    unit_id: str = Field(index=True, unique=True)
    normal_priority: int = Field(default=5)
    preferential_priority: int = Field(default=10)
    manual_mode_enabled: bool = Field(default=False)
    manual_mode_min_number: int = Field(default=500)
    manual_mode_min_number_preferential: int = Field(default=0)
    calling_system_active: bool = Field(default=True)
    per_organ_numbers_enabled: bool = Field(default=False)
    timezone: str = Field(default_factory=lambda: config.DEFAULT_TIMEZONE)
    updated_at: datetime = Field(default_factory=utcnow)

    def priority_for(self, ticket_type: TicketType) -> int:
        if ticket_type == TicketType.preferential:
            return self.preferential_priority
        return self.normal_priority

    def minimum_for(self, ticket_type: TicketType) -> int:
        if ticket_type == TicketType.preferential:
            return self.manual_mode_min_number_preferential
        return self.manual_mode_min_number


class Organ(SQLModel, table=True):
    __tablename__ = "organs"

    id: str = Field(primary_key=True)
    unit_id: str = Field(index=True)
    name: str
    min_number_normal: int = Field(default=1)
    min_number_preferential: int = Field(default=1)
    active: bool = Field(default=True)

    def minimum_for(self, ticket_type: TicketType) -> int:
        if ticket_type == TicketType.preferential:
            return self.min_number_preferential
        return self.min_number_normal


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    unit_id: Optional[str] = Field(default=None, index=True)
    user_id: Optional[str] = None
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
