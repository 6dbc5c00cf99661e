"""Choosing the next ticket to call.

Weighted FIFO: highest ``priority`` first, oldest ``created_at`` among equal
priorities.  The ticket id breaks exact timestamp ties so the choice is
deterministic for a given set of tickets.
"""

from __future__ import annotations

from typing import Iterable, List, Optional

from sqlmodel import Session, col, select

from models import Ticket, TicketStatus


def queue_order_key(ticket: Ticket):
    return (-ticket.priority, ticket.created_at, ticket.id)


def order_waiting(tickets: Iterable[Ticket]) -> List[Ticket]:
    """Waiting tickets in the order they will be called."""
    waiting = [t for t in tickets if TicketStatus(t.status) == TicketStatus.waiting]
    return sorted(waiting, key=queue_order_key)


class QueueSelector:
    def select_next(self, session: Session, unit_id: str, organ_id: Optional[str] = None) -> Optional[Ticket]:
        stmt = select(Ticket).where(
            Ticket.unit_id == unit_id,
            Ticket.status == TicketStatus.waiting,
        )
        if organ_id is not None:
            stmt = stmt.where(Ticket.organ_id == organ_id)
        stmt = stmt.order_by(
            col(Ticket.priority).desc(),
            col(Ticket.created_at).asc(),
            col(Ticket.id).asc(),
        ).limit(1)
        return session.exec(stmt).first()

    def waiting_queue(self, session: Session, unit_id: str, organ_id: Optional[str] = None) -> List[Ticket]:
        stmt = select(Ticket).where(
            Ticket.unit_id == unit_id,
            Ticket.status == TicketStatus.waiting,
        )
        if organ_id is not None:
            stmt = stmt.where(Ticket.organ_id == organ_id)
        return order_waiting(session.exec(stmt))
