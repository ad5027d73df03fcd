from __future__ import annotations

from datetime import date, datetime

import pytest

from backend.sampledesk.models import Role, SampleRecord, SampleStatus
from backend.sampledesk.services.lifecycle import (
    can_transition,
    days_elapsed,
    format_date,
    is_follow_up_due,
    is_past_overdue_threshold,
    local_date,
    parse_follow_up_date,
    reference_zone,
    short_id,
)
from backend.sampledesk.store import InMemoryStore, StoreConflictError

ZONE = reference_zone("America/Sao_Paulo")


def _sample(received: datetime, **changes) -> SampleRecord:
    return SampleRecord(id="smp_abcdef123456", owner_id="agent", received_at_utc=received, **changes)


def test_terminal_statuses_have_no_exits() -> None:
    for terminal in (SampleStatus.closed_deal, SampleStatus.feedback_received):
        for target in SampleStatus:
            assert not can_transition(terminal, target)


def test_allowed_transitions() -> None:
    assert can_transition(SampleStatus.pending_feedback, SampleStatus.overdue)
    assert can_transition(
        SampleStatus.awaiting_client_response, SampleStatus.awaiting_client_response
    )
    assert not can_transition(SampleStatus.overdue, SampleStatus.pending_feedback)
    assert not can_transition(SampleStatus.awaiting_client_response, SampleStatus.overdue)


def test_store_rejects_invalid_transition() -> None:
    store = InMemoryStore()
    store.add_participant("agent@c.us", "Agent", Role.agent)
    sample = store.deliver_samples("agent@c.us", 1)[0]
    store.update_sample(sample.id, status=SampleStatus.closed_deal)

    with pytest.raises(StoreConflictError):
        store.update_sample(sample.id, status=SampleStatus.overdue)
    with pytest.raises(ValueError):
        store.update_sample(sample.id, owner_id="someone-else")


def test_local_date_uses_reference_timezone() -> None:
    # 01:00 UTC on Jan 1st is still Dec 31st in Sao Paulo.
    assert local_date(datetime(2030, 1, 1, 1, 0), ZONE) == date(2029, 12, 31)


def test_overdue_threshold_boundary() -> None:
    today = date(2030, 5, 20)
    seven_days = _sample(datetime(2030, 5, 13, 15, 0))
    eight_days = _sample(datetime(2030, 5, 12, 15, 0))

    assert not is_past_overdue_threshold(seven_days, today=today, threshold_days=7, zone=ZONE)
    assert is_past_overdue_threshold(eight_days, today=today, threshold_days=7, zone=ZONE)
    assert days_elapsed(eight_days, today, ZONE) == 8


def test_follow_up_due() -> None:
    today = date(2030, 5, 20)
    waiting = _sample(
        datetime(2030, 5, 1, 12, 0),
        status=SampleStatus.awaiting_client_response,
        follow_up_date=today,
    )

    assert is_follow_up_due(waiting, today)
    assert not is_follow_up_due(waiting.model_copy(update={"follow_up_notified": True}), today)
    assert not is_follow_up_due(waiting, date(2030, 5, 19))


def test_parse_follow_up_date() -> None:
    assert parse_follow_up_date("05/11/2030") == date(2030, 11, 5)
    for bad in ["2030-11-05", "31/02/2030", "5/11/30", "tomorrow", ""]:
        with pytest.raises(ValueError):
            parse_follow_up_date(bad)


def test_formatting_helpers() -> None:
    assert format_date(date(2030, 1, 2)) == "02/01/2030"
    assert format_date(None) == "-"
    assert short_id("smp_abcdef123456") == "...123456"
