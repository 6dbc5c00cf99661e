"""Queue operations used by the API.

Every mutating operation runs in its own database transaction (retried on
``Conflict`` with a fresh read), writes an audit row in that transaction,
and announces its events only after the commit succeeded.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

import cache
from board import build_board, invalidate_on_events
from broadcaster import EventBroadcaster, EventType, QueueEvent
from counters import CounterAllocator, number_scope
from database import local_day, run_in_transaction, supports_row_locks
from errors import Conflict, InvalidTransition, NoTicketsWaiting, NotFound
from models import (
    AuditLog,
    Organ,
    Ticket,
    TicketStatus,
    TicketType,
    UnitSettings,
    display_code,
    utcnow,
)
from queue_selector import QueueSelector
from reset import ResetCoordinator, ResetResult
from ticket_store import TicketStore

logger = logging.getLogger(__name__)

TRANSITION_ACTIONS = {
    TicketStatus.called: "TICKET_CALL",
    TicketStatus.in_service: "TICKET_START_SERVICE",
    TicketStatus.completed: "TICKET_COMPLETE",
    TicketStatus.skipped: "TICKET_SKIP",
    TicketStatus.cancelled: "TICKET_CANCEL",
    TicketStatus.waiting: "TICKET_REQUEUE",
}


class QueueService:
    def __init__(
        self,
        engine: Engine,
        broadcaster: Optional[EventBroadcaster] = None,
        clock: Optional[Callable[[], datetime]] = None,
        attempts: Optional[int] = None,
    ):
        self.engine = engine
        self.broadcaster = broadcaster or EventBroadcaster()
        self.clock = clock or utcnow
        self.attempts = attempts
        self.allocator = CounterAllocator(row_locks=supports_row_locks(engine))
        self.store = TicketStore()
        self.selector = QueueSelector()
        self.resetter = ResetCoordinator(engine, self.store, self.broadcaster)
        self._stop_board_invalidation = invalidate_on_events(self.broadcaster)

    def close(self) -> None:
        self._stop_board_invalidation()
        self.broadcaster.close()

    # ----- issuing -----

    def issue_ticket(
        self,
        unit_id: str,
        ticket_type: TicketType = TicketType.normal,
        manual_number: Optional[int] = None,
        organ_id: Optional[str] = None,
        client_label: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Ticket:
        def work(session: Session) -> Ticket:
            ticket = self._issue(session, unit_id, ticket_type, manual_number, organ_id, client_label)
            self._audit(
                session, ticket.unit_id, user_id, "TICKET_CREATE", ticket.id,
                display_code=ticket.display_code,
                ticket_type=TicketType(ticket.ticket_type).value,
                manual=manual_number is not None,
            )
            return ticket

        ticket = self._transaction(work)
        self._announce(EventType.ticket_created, ticket)
        return ticket

    def manual_call(
        self,
        unit_id: str,
        ticket_number: int,
        ticket_type: TicketType,
        counter_id: str,
        attendant_id: str,
        organ_id: Optional[str] = None,
    ) -> Ticket:
        """Issue a ticket with a chosen number and call it in the same transaction."""

        def work(session: Session) -> Tuple[Dict[str, Any], Ticket]:
            created = self._issue(session, unit_id, ticket_type, ticket_number, organ_id, None)
            # transition() refreshes the same instance, so keep the waiting state now.
            created_snapshot = created.snapshot()
            called = self.store.transition(
                session, created.id, TicketStatus.called, self.clock(),
                counter_id=counter_id, attendant_id=attendant_id,
            )
            self._audit(
                session, unit_id, attendant_id, "TICKET_MANUAL_CALL", called.id,
                display_code=called.display_code, counter_id=counter_id,
            )
            return created_snapshot, called

        created_snapshot, called = self._transaction(work)
        self._publish(EventType.ticket_created, unit_id, {"ticket": created_snapshot})
        self._announce(
            EventType.ticket_status_changed, called, previous_status=TicketStatus.waiting.value
        )
        return called

    # ----- calling and status changes -----

    def call_next(
        self,
        unit_id: str,
        counter_id: str,
        attendant_id: str,
        organ_id: Optional[str] = None,
    ) -> Ticket:
        def work(session: Session) -> Ticket:
            candidate = self.selector.select_next(session, unit_id, organ_id)
            if candidate is None:
                raise NoTicketsWaiting("There are no tickets waiting")
            ticket = self.store.transition(
                session, candidate.id, TicketStatus.called, self.clock(),
                counter_id=counter_id, attendant_id=attendant_id,
            )
            self._audit(
                session, unit_id, attendant_id, "TICKET_CALL", ticket.id,
                display_code=ticket.display_code, counter_id=counter_id,
            )
            return ticket

        ticket = self._transaction(work)
        self._announce(
            EventType.ticket_status_changed, ticket, previous_status=TicketStatus.waiting.value
        )
        return ticket

    def transition_status(
        self,
        ticket_id: str,
        new_status: TicketStatus,
        reason: Optional[str] = None,
        service_type: Optional[str] = None,
        completion_status: Optional[str] = None,
        counter_id: Optional[str] = None,
        attendant_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Ticket:
        try:
            new_status = TicketStatus(new_status)
        except ValueError:
            raise InvalidTransition(f"Unknown status {new_status!r}") from None

        def work(session: Session) -> Tuple[Ticket, TicketStatus]:
            current = self.store.get(session, ticket_id)
            previous = TicketStatus(current.status)
            # transition() refreshes this instance, and requeue clears called_at.
            previous_called_at, previous_counter = current.called_at, current.counter_id
            if new_status == TicketStatus.called and previous == TicketStatus.waiting:
                # Out-of-order calls go through manual_call.
                head = self.selector.select_next(session, current.unit_id, current.organ_id)
                if head is None or head.id != current.id:
                    raise InvalidTransition(
                        f"Ticket {current.display_code} is not the next ticket in line"
                    )
            ticket = self.store.transition(
                session, ticket_id, new_status, self.clock(),
                reason=reason,
                service_type=service_type,
                completion_status=completion_status,
                counter_id=counter_id,
                attendant_id=attendant_id,
            )
            details: Dict[str, Any] = {"display_code": ticket.display_code, "from": previous.value}
            if reason:
                details["reason"] = reason
            if new_status == TicketStatus.waiting and previous_called_at is not None:
                details["previous_called_at"] = previous_called_at.isoformat()
                details["previous_counter_id"] = previous_counter
            if new_status == TicketStatus.completed:
                details["service_type"] = service_type
                details["completion_status"] = completion_status
            self._audit(
                session, ticket.unit_id, user_id or attendant_id, TRANSITION_ACTIONS[new_status],
                ticket.id, **details,
            )
            return ticket, previous

        ticket, previous = self._transaction(work)
        self._announce(EventType.ticket_status_changed, ticket, previous_status=previous.value)
        return ticket

    def start_service(self, ticket_id: str, attendant_id: Optional[str] = None) -> Ticket:
        return self.transition_status(ticket_id, TicketStatus.in_service, user_id=attendant_id)

    def complete(
        self,
        ticket_id: str,
        service_type: str,
        completion_status: str,
        attendant_id: Optional[str] = None,
    ) -> Ticket:
        return self.transition_status(
            ticket_id, TicketStatus.completed,
            service_type=service_type, completion_status=completion_status, user_id=attendant_id,
        )

    def skip(self, ticket_id: str, reason: str, attendant_id: Optional[str] = None) -> Ticket:
        return self.transition_status(ticket_id, TicketStatus.skipped, reason=reason, user_id=attendant_id)

    def cancel(self, ticket_id: str, reason: Optional[str] = None, user_id: Optional[str] = None) -> Ticket:
        return self.transition_status(ticket_id, TicketStatus.cancelled, reason=reason, user_id=user_id)

    def requeue(self, ticket_id: str, user_id: Optional[str] = None) -> Ticket:
        return self.transition_status(ticket_id, TicketStatus.waiting, user_id=user_id)

    def repeat_call(self, ticket_id: str, attendant_id: Optional[str] = None) -> Ticket:
        """Announce a called ticket again; no timestamp changes."""

        def work(session: Session) -> Ticket:
            ticket = self.store.get(session, ticket_id)
            if TicketStatus(ticket.status) != TicketStatus.called:
                raise InvalidTransition(f"Ticket {ticket.display_code} is not currently called")
            self._audit(
                session, ticket.unit_id, attendant_id, "TICKET_RECALL", ticket.id,
                display_code=ticket.display_code,
            )
            return ticket

        ticket = self._transaction(work)
        self._announce(
            EventType.ticket_status_changed, ticket,
            previous_status=TicketStatus.called.value, repeat=True,
        )
        return ticket

    # ----- reset -----

    def reset_day(self, unit_id: str, user_id: Optional[str] = None) -> ResetResult:
        day = self._transaction(lambda session: self._today(session, unit_id))
        return self.resetter.reset_day(unit_id, day, user_id=user_id)

    # ----- queries -----

    def get_ticket(self, ticket_id: str) -> Ticket:
        return self._transaction(lambda session: self.store.get(session, ticket_id))

    def list_tickets(
        self,
        unit_id: str,
        statuses: Optional[Iterable[TicketStatus]] = None,
        organ_id: Optional[str] = None,
    ) -> List[Ticket]:
        if statuses is None:
            statuses = list(TicketStatus)
        statuses = list(statuses)
        return self._transaction(
            lambda session: self.store.list_by_unit_and_status(session, unit_id, statuses, organ_id)
        )

    def list_day(self, unit_id: str, day: Optional[date] = None) -> List[Ticket]:
        def work(session: Session) -> List[Ticket]:
            settings = self._settings(session, unit_id)
            target = day or local_day(self.clock(), settings.timezone)
            return self.store.list_by_day(session, unit_id, target, settings.timezone)

        return self._transaction(work)

    def select_next(self, unit_id: str, organ_id: Optional[str] = None) -> Optional[Ticket]:
        return self._transaction(lambda session: self.selector.select_next(session, unit_id, organ_id))

    def count_waiting(self, unit_id: str, organ_id: Optional[str] = None) -> int:
        return self._transaction(lambda session: self.store.count_waiting(session, unit_id, organ_id))

    def get_board(self, unit_id: str, use_cache: bool = True) -> Dict[str, Any]:
        if use_cache:
            cached = cache.get_cached_board(unit_id)
            if cached:
                return cached

        def work(session: Session) -> Dict[str, Any]:
            settings = self._settings(session, unit_id)
            day = local_day(self.clock(), settings.timezone)
            return build_board(session, settings, day, self.store, self.allocator)

        board = self._transaction(work)
        cache.cache_board_data(unit_id, board)
        return board

    # ----- configuration -----

    def get_settings(self, unit_id: str) -> UnitSettings:
        return self._transaction(lambda session: self._settings(session, unit_id))

    def update_settings(self, unit_id: str, changes: Dict[str, Any], user_id: Optional[str] = None) -> UnitSettings:
        def work(session: Session) -> UnitSettings:
            settings = self._settings(session, unit_id)
            for name, value in changes.items():
                setattr(settings, name, value)
            settings.updated_at = self.clock()
            session.add(settings)
            try:
                session.flush()
            except IntegrityError as exc:
                raise Conflict("Settings were created concurrently") from exc
            self._audit(session, unit_id, user_id, "SETTINGS_UPDATE", unit_id, **changes)
            return settings

        settings = self._transaction(work)
        cache.invalidate_board(unit_id)
        logger.info("Updated settings for unit %s: %s", unit_id, sorted(changes))
        return settings

    def upsert_organ(self, unit_id: str, organ_id: str, data: Dict[str, Any], user_id: Optional[str] = None) -> Organ:
        def work(session: Session) -> Organ:
            organ = session.get(Organ, organ_id)
            if organ is None:
                organ = Organ(id=organ_id, unit_id=unit_id, **data)
            elif organ.unit_id != unit_id:
                raise NotFound(f"Organ {organ_id} not found in unit {unit_id}")
            else:
                for name, value in data.items():
                    setattr(organ, name, value)
            session.add(organ)
            try:
                session.flush()
            except IntegrityError as exc:
                raise Conflict("Organ was created concurrently") from exc
            self._audit(session, unit_id, user_id, "ORGAN_UPSERT", organ_id, **data)
            return organ

        return self._transaction(work)

    # ----- helpers -----

    def _transaction(self, work):
        return run_in_transaction(self.engine, work, attempts=self.attempts)

    def _settings(self, session: Session, unit_id: str) -> UnitSettings:
        """Stored settings, or unsaved defaults when the unit has none yet."""
        settings = session.exec(select(UnitSettings).where(UnitSettings.unit_id == unit_id)).first()
        if settings is None:
            settings = UnitSettings(unit_id=unit_id)
        return settings

    def _today(self, session: Session, unit_id: str) -> date:
        return local_day(self.clock(), self._settings(session, unit_id).timezone)

    def _organ(self, session: Session, settings: UnitSettings, organ_id: Optional[str]) -> Optional[Organ]:
        if organ_id is None:
            return None
        organ = session.get(Organ, organ_id)
        if organ is None or organ.unit_id != settings.unit_id or not organ.active:
            if settings.per_organ_numbers_enabled:
                raise NotFound(f"Organ {organ_id} not found in unit {settings.unit_id}")
            # Without per-organ numbering the organ id is only a grouping tag.
            return None
        return organ

    def _issue(
        self,
        session: Session,
        unit_id: str,
        ticket_type: TicketType,
        requested_number: Optional[int],
        organ_id: Optional[str],
        client_label: Optional[str],
    ) -> Ticket:
        ticket_type = TicketType(ticket_type)
        settings = self._settings(session, unit_id)
        self.store.ensure_active(settings)
        organ = self._organ(session, settings, organ_id)
        now = self.clock()
        day = local_day(now, settings.timezone)
        number = self.allocator.allocate(session, settings, ticket_type, day, requested_number, organ)
        ticket = Ticket(
            unit_id=unit_id,
            ticket_type=ticket_type,
            ticket_number=number,
            display_code=display_code(ticket_type, number),
            priority=settings.priority_for(ticket_type),
            status=TicketStatus.waiting,
            organ_id=organ_id,
            number_scope=number_scope(settings, organ),
            client_label=client_label,
            service_date=day,
            created_at=now,
            updated_at=now,
        )
        return self.store.create(session, ticket, settings)

    def _audit(
        self,
        session: Session,
        unit_id: Optional[str],
        user_id: Optional[str],
        action: str,
        entity_id: Optional[str],
        **details: Any,
    ) -> None:
        session.add(
            AuditLog(
                unit_id=unit_id,
                user_id=user_id,
                action=action,
                entity_type="unit" if action.startswith(("SETTINGS", "ORGAN")) else "ticket",
                entity_id=entity_id,
                details=details or None,
            )
        )

    def _announce(self, event_type: EventType, ticket: Ticket, **extra: Any) -> None:
        payload = {"ticket": ticket.snapshot()}
        payload.update(extra)
        self._publish(event_type, ticket.unit_id, payload)

    def _publish(self, event_type: EventType, unit_id: str, payload: Dict[str, Any]) -> None:
        cache.invalidate_board(unit_id)
        self.broadcaster.publish(QueueEvent(event_type, unit_id, payload))
