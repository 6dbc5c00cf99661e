"""Daily ticket number allocation.

One ``ticket_counters`` row exists per (unit, ticket type, day, numbering
scope).  ``last_number`` is advanced with a conditional UPDATE so two
writers that read the same value cannot both succeed; the loser gets
``Conflict`` and the service layer retries with a fresh read.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Dict, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from errors import BelowMinimum, Conflict, DuplicateNumber, ManualModeDisabled
from models import Organ, Ticket, TicketCounter, TicketType, UnitSettings, utcnow

logger = logging.getLogger(__name__)

UNIT_SCOPE = ""


def number_scope(settings: UnitSettings, organ: Optional[Organ]) -> str:
    """Organs only get their own sequence when per-organ numbering is on."""
    if organ is not None and settings.per_organ_numbers_enabled:
        return organ.id
    return UNIT_SCOPE


def minimum_number(settings: UnitSettings, ticket_type: TicketType, organ: Optional[Organ] = None) -> int:
    if number_scope(settings, organ) != UNIT_SCOPE:
        return organ.minimum_for(ticket_type)
    return settings.minimum_for(ticket_type)


class CounterAllocator:
    def __init__(self, row_locks: bool = False):
        # SELECT ... FOR UPDATE is only meaningful on PostgreSQL; SQLite
        # serialises writers itself and the conditional UPDATE does the rest.
        self.row_locks = row_locks

    def allocate(
        self,
        session: Session,
        settings: UnitSettings,
        ticket_type: TicketType,
        day: date,
        requested_number: Optional[int] = None,
        organ: Optional[Organ] = None,
    ) -> int:
        ticket_type = TicketType(ticket_type)
        scope = number_scope(settings, organ)
        minimum = minimum_number(settings, ticket_type, organ)
        counter = self._load(session, settings.unit_id, ticket_type, day, scope)

        if requested_number is None:
            if counter is None:
                number = minimum
            else:
                number = max(counter.last_number + 1, minimum)
            new_last = number
        else:
            if not settings.manual_mode_enabled:
                raise ManualModeDisabled("Manual numbering is not enabled for this unit")
            if requested_number < minimum:
                raise BelowMinimum(f"Minimum allowed number is {minimum}")
            if self.number_taken(session, settings.unit_id, ticket_type, day, scope, requested_number):
                raise DuplicateNumber(
                    f"Ticket {ticket_type.prefix}-{requested_number:03d} was already issued today"
                )
            number = requested_number
            # Never regress: a manual number below the counter leaves it alone.
            new_last = requested_number if counter is None else max(counter.last_number, requested_number)

        if counter is None:
            self._create(session, settings.unit_id, ticket_type, day, scope, new_last)
        elif new_last != counter.last_number:
            self._advance(session, counter, new_last)

        logger.debug(
            "Allocated %s for unit=%s type=%s day=%s scope=%r",
            number, settings.unit_id, ticket_type.value, day, scope,
        )
        return number

    def number_taken(
        self,
        session: Session,
        unit_id: str,
        ticket_type: TicketType,
        day: date,
        scope: str,
        number: int,
    ) -> bool:
        stmt = select(Ticket.id).where(
            Ticket.unit_id == unit_id,
            Ticket.ticket_type == ticket_type,
            Ticket.service_date == day,
            Ticket.number_scope == scope,
            Ticket.ticket_number == number,
        )
        return session.exec(stmt).first() is not None

    def last_numbers(self, session: Session, unit_id: str, day: date) -> Dict[str, Dict[str, int]]:
        """Last issued number per scope and type, e.g. ``{"unit": {"normal": 504}}``."""
        stmt = select(TicketCounter).where(
            TicketCounter.unit_id == unit_id,
            TicketCounter.counter_date == day,
        )
        result: Dict[str, Dict[str, int]] = {}
        for counter in session.exec(stmt):
            label = counter.number_scope or "unit"
            result.setdefault(label, {})[TicketType(counter.ticket_type).value] = counter.last_number
        return result

    def _load(
        self,
        session: Session,
        unit_id: str,
        ticket_type: TicketType,
        day: date,
        scope: str,
    ) -> Optional[TicketCounter]:
        stmt = select(TicketCounter).where(
            TicketCounter.unit_id == unit_id,
            TicketCounter.ticket_type == ticket_type,
            TicketCounter.counter_date == day,
            TicketCounter.number_scope == scope,
        ).execution_options(populate_existing=True)
        if self.row_locks:
            stmt = stmt.with_for_update()
        return session.exec(stmt).first()

    def _create(
        self,
        session: Session,
        unit_id: str,
        ticket_type: TicketType,
        day: date,
        scope: str,
        last_number: int,
    ) -> None:
        session.add(
            TicketCounter(
                unit_id=unit_id,
                ticket_type=ticket_type,
                counter_date=day,
                number_scope=scope,
                last_number=last_number,
            )
        )
        try:
            session.flush()
        except IntegrityError as exc:
            # Another request created today's counter first.
            raise Conflict("Ticket counter was created concurrently") from exc

    def _advance(self, session: Session, counter: TicketCounter, new_last: int) -> None:
        stmt = (
            update(TicketCounter)
            .where(
                TicketCounter.id == counter.id,
                TicketCounter.last_number == counter.last_number,
            )
            .values(last_number=new_last, updated_at=utcnow())
        )
        result = session.connection().execute(stmt)
        if result.rowcount != 1:
            raise Conflict("Ticket counter changed concurrently")
