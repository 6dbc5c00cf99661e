"""Ticket persistence and the ticket life-cycle.

Status changes go through :meth:`TicketStore.transition`, which checks the
state machine and then applies a guarded UPDATE (``WHERE status = <the
status we read>``).  If another counter moved the ticket first, the update
touches no row and ``Conflict`` is raised so the caller can re-read.

Each life-cycle timestamp is written once, with one exception: a requeue
(``called -> waiting``) clears ``called_at`` together with the counter and
attendant, and the next call stamps it again.  The cleared values are kept
in the ``TICKET_REQUEUE`` audit row.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from database import day_window_utc
from errors import Conflict, InvalidTransition, NotFound, SystemInactive
from models import (
    CompletionStatus,
    ServiceType,
    Ticket,
    TicketStatus,
    TicketType,
    UnitSettings,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    TicketStatus.waiting: {TicketStatus.called, TicketStatus.cancelled},
    TicketStatus.called: {TicketStatus.in_service, TicketStatus.skipped, TicketStatus.waiting},
    TicketStatus.in_service: {TicketStatus.completed},
    TicketStatus.completed: set(),
    TicketStatus.skipped: set(),
    TicketStatus.cancelled: set(),
}

MIN_SKIP_REASON_LENGTH = 3


def can_transition(current: TicketStatus, new_status: TicketStatus) -> bool:
    return TicketStatus(new_status) in ALLOWED_TRANSITIONS[TicketStatus(current)]


def _not_before(now: datetime, previous: Optional[datetime]) -> datetime:
    # Keeps created_at <= called_at <= service_started_at <= completed_at.
    if previous is not None and previous > now:
        return previous
    return now


class TicketStore:
    def ensure_active(self, settings: UnitSettings) -> None:
        if not settings.calling_system_active:
            raise SystemInactive("The calling system is turned off for this unit")

    def create(self, session: Session, ticket: Ticket, settings: UnitSettings) -> Ticket:
        self.ensure_active(settings)
        session.add(ticket)
        try:
            session.flush()
        except IntegrityError as exc:
            raise Conflict(f"Ticket number {ticket.display_code} was taken concurrently") from exc
        logger.info("Created ticket %s (unit=%s, id=%s)", ticket.display_code, ticket.unit_id, ticket.id)
        return ticket

    def get(self, session: Session, ticket_id: str) -> Ticket:
        ticket = session.get(Ticket, ticket_id)
        if ticket is None:
            raise NotFound(f"Ticket {ticket_id} not found")
        return ticket

    def list_tickets(
        self,
        session: Session,
        unit_id: str,
        statuses: Optional[Iterable[TicketStatus]] = None,
        ticket_type: Optional[TicketType] = None,
        organ_id: Optional[str] = None,
        attendant_id: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
    ) -> List[Ticket]:
        stmt = select(Ticket).where(Ticket.unit_id == unit_id)
        if statuses is not None:
            stmt = stmt.where(col(Ticket.status).in_([TicketStatus(s) for s in statuses]))
        if ticket_type is not None:
            stmt = stmt.where(Ticket.ticket_type == TicketType(ticket_type))
        if organ_id is not None:
            stmt = stmt.where(Ticket.organ_id == organ_id)
        if attendant_id is not None:
            stmt = stmt.where(Ticket.attendant_id == attendant_id)
        if created_from is not None:
            stmt = stmt.where(Ticket.created_at >= created_from)
        if created_to is not None:
            stmt = stmt.where(Ticket.created_at < created_to)
        stmt = stmt.order_by(col(Ticket.created_at), col(Ticket.id))
        return list(session.exec(stmt))

    def list_by_unit_and_status(
        self,
        session: Session,
        unit_id: str,
        statuses: Iterable[TicketStatus],
        organ_id: Optional[str] = None,
    ) -> List[Ticket]:
        return self.list_tickets(session, unit_id, statuses=statuses, organ_id=organ_id)

    def list_by_day(self, session: Session, unit_id: str, day: date, tz_name: str) -> List[Ticket]:
        start, end = day_window_utc(day, tz_name)
        return self.list_tickets(session, unit_id, created_from=start, created_to=end)

    def count_waiting(self, session: Session, unit_id: str, organ_id: Optional[str] = None) -> int:
        stmt = select(func.count()).select_from(Ticket).where(
            Ticket.unit_id == unit_id,
            Ticket.status == TicketStatus.waiting,
        )
        if organ_id is not None:
            stmt = stmt.where(Ticket.organ_id == organ_id)
        return session.exec(stmt).one()

    def delete_day(self, session: Session, unit_id: str, day: date) -> int:
        """Remove every ticket of the unit's day, whatever its status."""
        stmt = delete(Ticket).where(Ticket.unit_id == unit_id, Ticket.service_date == day)
        return session.connection().execute(stmt).rowcount

    def transition(
        self,
        session: Session,
        ticket_id: str,
        new_status: TicketStatus,
        now: datetime,
        **fields: Any,
    ) -> Ticket:
        ticket = self.get(session, ticket_id)
        current = TicketStatus(ticket.status)
        try:
            new_status = TicketStatus(new_status)
        except ValueError:
            raise InvalidTransition(f"Unknown status {new_status!r}") from None

        if not can_transition(current, new_status):
            raise InvalidTransition(
                f"Ticket {ticket.display_code} cannot go from {current.value} to {new_status.value}"
            )

        values = self._values_for(ticket, new_status, now, fields)
        values.update(status=new_status, updated_at=_not_before(now, ticket.updated_at))
        stmt = (
            update(Ticket)
            .where(Ticket.id == ticket.id, Ticket.status == current)
            .values(**values)
        )
        result = session.connection().execute(stmt)
        if result.rowcount != 1:
            raise Conflict(f"Ticket {ticket.display_code} was changed by another request")

        updated = session.get(Ticket, ticket.id, populate_existing=True)
        logger.info(
            "Ticket %s %s -> %s (unit=%s)",
            updated.display_code, current.value, new_status.value, updated.unit_id,
        )
        return updated

    def _values_for(
        self,
        ticket: Ticket,
        new_status: TicketStatus,
        now: datetime,
        fields: Dict[str, Any],
    ) -> Dict[str, Any]:
        if new_status == TicketStatus.called:
            counter_id = fields.get("counter_id")
            attendant_id = fields.get("attendant_id")
            if not counter_id or not attendant_id:
                raise InvalidTransition("counter_id and attendant_id are required to call a ticket")
            return {
                "counter_id": counter_id,
                "attendant_id": attendant_id,
                "called_at": _not_before(now, ticket.created_at),
            }

        if new_status == TicketStatus.in_service:
            return {"service_started_at": _not_before(now, ticket.called_at)}

        if new_status == TicketStatus.skipped:
            reason = (fields.get("reason") or "").strip()
            if len(reason) < MIN_SKIP_REASON_LENGTH:
                raise InvalidTransition(
                    f"A skip reason of at least {MIN_SKIP_REASON_LENGTH} characters is required"
                )
            return {"skip_reason": reason, "completed_at": _not_before(now, ticket.called_at)}

        if new_status == TicketStatus.completed:
            try:
                service_type = ServiceType(fields.get("service_type"))
                completion_status = CompletionStatus(fields.get("completion_status"))
            except ValueError:
                raise InvalidTransition(
                    "A valid service_type and completion_status are required to complete a ticket"
                ) from None
            return {
                "service_type": service_type,
                "completion_status": completion_status,
                "completed_at": _not_before(now, ticket.service_started_at),
            }

        if new_status == TicketStatus.cancelled:
            reason = (fields.get("reason") or "").strip()
            return {"cancel_reason": reason or None}

        # called -> waiting: back in the queue, keeping its original place.
        return {"counter_id": None, "attendant_id": None, "called_at": None}
