import pytest

import cache
from errors import Conflict, DuplicateNumber, InvalidTransition, NoTicketsWaiting, SystemInactive
from models import TicketStatus, TicketType
from services import QueueService
from ticket_store import TicketStore

UNIT = "unit-a"


def test_issue_announces_created_ticket(service, broadcaster, recorder):
    ticket = service.issue_ticket(UNIT, client_label="Maria")
    broadcaster.drain()

    assert recorder.types == ["ticket_created"]
    payload = recorder.events[0].payload
    assert payload["ticket"]["id"] == ticket.id
    assert payload["ticket"]["display_code"] == "N-500"
    assert payload["ticket"]["client_label"] == "Maria"


def test_failed_operation_announces_nothing(service, broadcaster, recorder):
    service.update_settings(UNIT, {"calling_system_active": False})
    with pytest.raises(SystemInactive):
        service.issue_ticket(UNIT)
    with pytest.raises(NoTicketsWaiting):
        service.call_next(UNIT, "c1", "att-1")
    broadcaster.drain()
    assert recorder.events == []


def test_call_next_with_empty_queue(service):
    with pytest.raises(NoTicketsWaiting):
        service.call_next(UNIT, "c1", "att-1")


def test_events_follow_the_life_cycle(service, broadcaster, recorder):
    ticket = service.issue_ticket(UNIT)
    service.call_next(UNIT, "c1", "att-1")
    service.start_service(ticket.id)
    service.complete(ticket.id, "revisao", "realizado_sucesso")
    broadcaster.drain()

    assert recorder.types == [
        "ticket_created",
        "ticket_status_changed",
        "ticket_status_changed",
        "ticket_status_changed",
    ]
    statuses = [(e.payload.get("previous_status"), e.payload["ticket"]["status"]) for e in recorder.events]
    assert statuses == [
        (None, "waiting"),
        ("waiting", "called"),
        ("called", "in_service"),
        ("in_service", "completed"),
    ]


def test_manual_call_issues_and_calls_in_one_step(service, broadcaster, recorder):
    service.update_settings(UNIT, {"manual_mode_enabled": True})
    service.issue_ticket(UNIT)

    called = service.manual_call(UNIT, 520, TicketType.normal, "c3", "att-3")
    broadcaster.drain()

    assert called.status == TicketStatus.called
    assert called.display_code == "N-520"
    assert called.counter_id == "c3"
    assert recorder.types[-2:] == ["ticket_created", "ticket_status_changed"]
    assert recorder.events[-2].payload["ticket"]["status"] == "waiting"
    assert recorder.events[-1].payload["ticket"]["status"] == "called"
    assert service.issue_ticket(UNIT).ticket_number == 521


def test_manual_call_rejects_duplicates(service, broadcaster, recorder):
    service.update_settings(UNIT, {"manual_mode_enabled": True})
    service.manual_call(UNIT, 530, TicketType.normal, "c1", "att-1")
    with pytest.raises(DuplicateNumber):
        service.manual_call(UNIT, 530, TicketType.normal, "c2", "att-2")
    broadcaster.drain()
    assert recorder.types == ["ticket_created", "ticket_status_changed"]


def test_manual_call_rolls_back_issue_when_call_fails(service):
    service.update_settings(UNIT, {"manual_mode_enabled": True})
    with pytest.raises(InvalidTransition):
        service.manual_call(UNIT, 540, TicketType.normal, "c1", "")
    assert service.list_day(UNIT) == []


def test_repeat_call_announces_again(service, broadcaster, recorder):
    service.issue_ticket(UNIT)
    ticket = service.call_next(UNIT, "c1", "att-1")
    broadcaster.drain()
    recorder.events.clear()

    again = service.repeat_call(ticket.id, "att-1")
    broadcaster.drain()

    assert again.called_at == ticket.called_at
    assert recorder.types == ["ticket_status_changed"]
    assert recorder.events[0].payload["repeat"] is True


def test_repeat_call_requires_called_ticket(service):
    ticket = service.issue_ticket(UNIT)
    with pytest.raises(InvalidTransition):
        service.repeat_call(ticket.id)


def test_board_shows_queue_and_counters(service):
    service.issue_ticket(UNIT)
    preferential = service.issue_ticket(UNIT, TicketType.preferential)
    waiting = service.issue_ticket(UNIT)
    called = service.call_next(UNIT, "c1", "att-1")
    assert called.id == preferential.id
    skipped_source = service.call_next(UNIT, "c2", "att-2")
    service.skip(skipped_source.id, "not present")

    board = service.get_board(UNIT)

    assert board["unit_id"] == UNIT
    assert board["day"] == "2026-03-10"
    assert [t["id"] for t in board["waiting"]] == [waiting.id]
    assert [t["id"] for t in board["called"]] == [called.id]
    assert board["in_service"] == []
    assert board["finished"] == {"completed": 0, "skipped": 1, "cancelled": 0}
    assert board["last_numbers"] == {"unit": {"normal": 501, "preferential": 0}}
    assert board["waiting_count"] == 1


def test_board_is_served_from_cache_when_available(service, monkeypatch):
    monkeypatch.setattr(cache, "get_cached_board", lambda unit_id: {"cached": True})
    assert service.get_board(UNIT) == {"cached": True}
    assert service.get_board(UNIT, use_cache=False)["unit_id"] == UNIT


def test_changes_drop_the_cached_board(service, broadcaster, monkeypatch):
    dropped = []
    monkeypatch.setattr(cache, "invalidate_board", dropped.append)
    service.issue_ticket(UNIT)
    broadcaster.drain()
    assert UNIT in dropped


def test_settings_defaults_and_updates(service):
    settings = service.get_settings(UNIT)
    assert settings.normal_priority == 5
    assert settings.preferential_priority == 10
    assert settings.manual_mode_min_number == 500
    assert settings.calling_system_active is True

    updated = service.update_settings(UNIT, {"preferential_priority": 15, "timezone": "America/Sao_Paulo"})
    assert updated.preferential_priority == 15
    assert service.get_settings(UNIT).timezone == "America/Sao_Paulo"


def test_organ_upsert_updates_in_place(service):
    service.upsert_organ(UNIT, "organ-1", {"name": "Junta"})
    organ = service.upsert_organ(UNIT, "organ-1", {"name": "Junta Comercial", "active": False})
    assert organ.name == "Junta Comercial"
    assert organ.active is False


def test_call_next_per_organ(service):
    service.issue_ticket(UNIT, TicketType.preferential, organ_id="organ-a")
    normal_b = service.issue_ticket(UNIT, organ_id="organ-b")
    assert service.call_next(UNIT, "c1", "att-1", organ_id="organ-b").id == normal_b.id
    assert service.count_waiting(UNIT, "organ-a") == 1


def test_conflicts_are_retried_with_a_fresh_read(engine, broadcaster, clock, monkeypatch):
    service = QueueService(engine, broadcaster=broadcaster, clock=clock, attempts=3)
    service.issue_ticket(UNIT)
    original = TicketStore.transition
    calls = []

    def flaky(self, session, ticket_id, new_status, now, **fields):
        calls.append(ticket_id)
        if len(calls) == 1:
            raise Conflict("simulated concurrent call")
        return original(self, session, ticket_id, new_status, now, **fields)

    monkeypatch.setattr(TicketStore, "transition", flaky)
    ticket = service.call_next(UNIT, "c1", "att-1")

    assert len(calls) == 2
    assert ticket.status == TicketStatus.called


def test_conflict_surfaces_after_last_attempt(engine, broadcaster, clock, monkeypatch):
    service = QueueService(engine, broadcaster=broadcaster, clock=clock, attempts=2)
    service.issue_ticket(UNIT)

    def always_conflict(self, *args, **kwargs):
        raise Conflict("busy")

    monkeypatch.setattr(TicketStore, "transition", always_conflict)
    with pytest.raises(Conflict) as excinfo:
        service.call_next(UNIT, "c1", "att-1")
    assert excinfo.value.retryable
    assert service.count_waiting(UNIT) == 1


def test_settings_updates_use_the_service_clock(service, clock):
    updated = service.update_settings(UNIT, {"normal_priority": 7})
    assert updated.updated_at == clock.now
    assert service.get_settings(UNIT).updated_at == clock.now
