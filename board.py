"""Display board read model.

The board (queue in call order, tickets at the counters, today's totals and
the last number issued per type) is derived from the tickets and counters
tables.  It may be cached in Redis, but any event for the unit drops the
cached copy, and a cache miss simply rebuilds it.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Callable, Dict

from sqlmodel import Session

import cache
from broadcaster import EventBroadcaster, QueueEvent
from counters import CounterAllocator
from models import TicketStatus, UnitSettings, utcnow
from queue_selector import order_waiting
from ticket_store import TicketStore

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (TicketStatus.waiting, TicketStatus.called, TicketStatus.in_service)


def build_board(
    session: Session,
    settings: UnitSettings,
    day: date,
    store: TicketStore,
    allocator: CounterAllocator,
) -> Dict[str, Any]:
    unit_id = settings.unit_id
    active = store.list_by_unit_and_status(session, unit_id, ACTIVE_STATUSES)
    today = store.list_by_day(session, unit_id, day, settings.timezone)

    board: Dict[str, Any] = {
        "unit_id": unit_id,
        "day": day.isoformat(),
        "calling_system_active": settings.calling_system_active,
        "waiting": [t.snapshot() for t in order_waiting(active)],
        "called": [],
        "in_service": [],
        "finished": {"completed": 0, "skipped": 0, "cancelled": 0},
        "last_numbers": allocator.last_numbers(session, unit_id, day),
        "generated_at": utcnow().isoformat(),
    }
    for ticket in active:
        status = TicketStatus(ticket.status)
        if status in (TicketStatus.called, TicketStatus.in_service):
            board[status.value].append(ticket.snapshot())
    for ticket in today:
        status = TicketStatus(ticket.status)
        if status.value in board["finished"]:
            board["finished"][status.value] += 1
    board["waiting_count"] = len(board["waiting"])
    return board


def _drop_cached_board(event: QueueEvent) -> None:
    cache.invalidate_board(event.unit_id)


def invalidate_on_events(broadcaster: EventBroadcaster) -> Callable[[], None]:
    """Keep the cached board honest: any event for a unit evicts its board."""
    return broadcaster.subscribe(None, _drop_cached_board)
