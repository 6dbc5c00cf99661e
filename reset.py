"""Daily reset of a unit's queue.

Every ticket of the day is removed, finished ones included, together with
the day's counters, inside one transaction.  If anything fails the
transaction rolls back and the caller gets ``ResetFailed``; nothing is
announced.  On success ``system_reset`` is published before returning so
displays drop their state before the next ticket is issued.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Dict, Optional

from sqlalchemy import delete
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

import cache
from broadcaster import EventBroadcaster, EventType, QueueEvent
from database import run_in_transaction
from errors import Conflict, ResetFailed
from models import AuditLog, TicketCounter
from ticket_store import TicketStore

logger = logging.getLogger(__name__)


@dataclass
class ResetResult:
    unit_id: str
    day: date
    tickets_deleted: int
    counters_deleted: int
    success: bool = True

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["day"] = self.day.isoformat()
        return data


class ResetCoordinator:
    def __init__(self, engine: Engine, store: TicketStore, broadcaster: EventBroadcaster):
        self.engine = engine
        self.store = store
        self.broadcaster = broadcaster

    def reset_day(self, unit_id: str, day: date, user_id: Optional[str] = None) -> ResetResult:
        def work(session: Session) -> ResetResult:
            tickets_deleted = self.store.delete_day(session, unit_id, day)
            counters_deleted = session.connection().execute(
                delete(TicketCounter).where(
                    TicketCounter.unit_id == unit_id,
                    TicketCounter.counter_date == day,
                )
            ).rowcount
            session.add(
                AuditLog(
                    unit_id=unit_id,
                    user_id=user_id,
                    action="SYSTEM_RESET",
                    entity_type="unit",
                    entity_id=unit_id,
                    details={
                        "day": day.isoformat(),
                        "tickets_deleted": tickets_deleted,
                        "counters_deleted": counters_deleted,
                    },
                )
            )
            return ResetResult(unit_id, day, tickets_deleted, counters_deleted)

        try:
            result = run_in_transaction(self.engine, work)
        except (Conflict, SQLAlchemyError) as exc:
            logger.exception("Reset of unit %s for %s failed; nothing was deleted", unit_id, day)
            raise ResetFailed(f"Reset failed, the queue was left unchanged: {exc}") from exc

        logger.info(
            "Reset unit %s for %s: %d tickets, %d counters removed",
            unit_id, day, result.tickets_deleted, result.counters_deleted,
        )
        cache.invalidate_board(unit_id)
        self.broadcaster.publish(
            QueueEvent(EventType.system_reset, unit_id, {"day": day.isoformat()})
        )
        return result
