from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from backend.sampledesk.models import SampleRecord, SampleStatus

ALLOWED_TRANSITIONS = {
    SampleStatus.pending_feedback: {
        SampleStatus.overdue,
        SampleStatus.closed_deal,
        SampleStatus.feedback_received,
        SampleStatus.awaiting_client_response,
    },
    SampleStatus.overdue: {
        SampleStatus.closed_deal,
        SampleStatus.feedback_received,
        SampleStatus.awaiting_client_response,
    },
    SampleStatus.awaiting_client_response: {
        SampleStatus.closed_deal,
        SampleStatus.feedback_received,
        SampleStatus.awaiting_client_response,
    },
    SampleStatus.closed_deal: set(),
    SampleStatus.feedback_received: set(),
}

DEVOLVABLE_STATUSES = frozenset({SampleStatus.pending_feedback, SampleStatus.overdue})
FOLLOW_UP_STATUSES = frozenset({SampleStatus.awaiting_client_response})
RESOLVED_STATUSES = frozenset({SampleStatus.closed_deal, SampleStatus.feedback_received})

STATUS_LABELS = {
    SampleStatus.pending_feedback: "Pending feedback",
    SampleStatus.overdue: "Overdue",
    SampleStatus.awaiting_client_response: "Awaiting client",
    SampleStatus.closed_deal: "Contract closed",
    SampleStatus.feedback_received: "Feedback received (no sale)",
}

DATE_FORMAT = "%d/%m/%Y"

# Largest batch a single delivery may register.
MAX_DELIVERY_QUANTITY = 100


def can_transition(current: SampleStatus, target: SampleStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def can_devolve(sample: SampleRecord) -> bool:
    return sample.status in DEVOLVABLE_STATUSES


def can_follow_up(sample: SampleRecord) -> bool:
    return sample.status in FOLLOW_UP_STATUSES


def reference_zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def local_date(value_utc: datetime, zone: ZoneInfo) -> date:
    aware = value_utc if value_utc.tzinfo else value_utc.replace(tzinfo=timezone.utc)
    return aware.astimezone(zone).date()


def local_today(zone: ZoneInfo, now_utc: Optional[datetime] = None) -> date:
    return local_date(now_utc or datetime.now(timezone.utc), zone)


def days_elapsed(sample: SampleRecord, today: date, zone: ZoneInfo) -> int:
    return (today - local_date(sample.received_at_utc, zone)).days


def is_past_overdue_threshold(
    sample: SampleRecord, *, today: date, threshold_days: int, zone: ZoneInfo
) -> bool:
    cutoff = today - timedelta(days=threshold_days)
    return local_date(sample.received_at_utc, zone) < cutoff


def is_follow_up_due(sample: SampleRecord, today: date) -> bool:
    return (
        sample.status == SampleStatus.awaiting_client_response
        and not sample.follow_up_notified
        and sample.follow_up_date is not None
        and sample.follow_up_date <= today
    )


def follow_up_in(days: int, today: date) -> date:
    return today + timedelta(days=days)


def parse_follow_up_date(text: str) -> date:
    parts = [part.strip() for part in text.strip().split("/")]
    if len(parts) != 3 or not all(part.isdigit() for part in parts):
        raise ValueError(f"expected DD/MM/YYYY, got {text!r}")
    day, month, year = (int(part) for part in parts)
    if year < 100:
        raise ValueError("year must have four digits")
    return date(year, month, day)


def format_date(value: Optional[date]) -> str:
    if value is None:
        return "-"
    return value.strftime(DATE_FORMAT)


def short_id(sample_id: str) -> str:
    return f"...{sample_id[-6:]}"
