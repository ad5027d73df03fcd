from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from threading import Lock
from typing import TYPE_CHECKING, Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from backend.sampledesk.models import SampleRecord, SampleStatus
from backend.sampledesk.services.lifecycle import (
    days_elapsed,
    format_date,
    is_follow_up_due,
    local_date,
    local_today,
    short_id,
)

if TYPE_CHECKING:
    from backend.sampledesk.observability import MetricsRegistry
    from backend.sampledesk.services.transport import Messenger
    from backend.sampledesk.store import InMemoryStore

logger = logging.getLogger("sampledesk.scheduler")


@dataclass
class SweepResult:
    today: date
    promoted: int = 0
    overdue_reminders: int = 0
    escalations: int = 0
    follow_up_reminders: int = 0


def overdue_reminder(sample: SampleRecord, *, received: date) -> str:
    return (
        "*OVERDUE SAMPLE RETURN*\n\n"
        f"Sample *{short_id(sample.id)}*, picked up on {format_date(received)}, "
        "still has no feedback.\n\nPlease see a steward to return it."
    )


def very_overdue_reminder(sample: SampleRecord, *, elapsed: int) -> str:
    return (
        "*SAMPLE RETURN VERY OVERDUE*\n\n"
        f"Sample *{short_id(sample.id)}* has been pending for *{elapsed} days*.\n\n"
        "The return deadline has passed. Please see a steward urgently."
    )


def maximum_attention_reminder(sample: SampleRecord, *, elapsed: int) -> str:
    return (
        "*MAXIMUM ATTENTION - SAMPLE RETURN OVERDUE*\n\n"
        f"Sample *{short_id(sample.id)}* has been pending for *{elapsed} days*.\n\n"
        "This is a final notice and your manager has been informed. "
        "Please resolve it *immediately*."
    )


def escalation_notice(agent_name: str, sample: SampleRecord, *, elapsed: int) -> str:
    return (
        "*[MANAGER ALERT]*\n"
        f"Agent *{agent_name}* has sample ({short_id(sample.id)}) overdue for {elapsed} days."
    )


def follow_up_reminder(sample: SampleRecord) -> str:
    return (
        f"Reminder: you have a follow-up scheduled today with client *{sample.customer_name}*.\n\n"
        'Start it by choosing "Give follow-up feedback" in your menu.'
    )


class EscalationScheduler:
    """Daily sweep: promote overdue samples, nag their owners, and fire follow-up reminders."""

    def __init__(
        self,
        *,
        store: "InMemoryStore",
        messenger: "Messenger",
        zone: ZoneInfo,
        hour: int = 9,
        minute: int = 0,
        metrics: Optional["MetricsRegistry"] = None,
    ) -> None:
        self.store = store
        self.messenger = messenger
        self.zone = zone
        self.hour = hour
        self.minute = minute
        self.metrics = metrics
        self._sweep_lock = Lock()
        self._scheduler: Optional[BackgroundScheduler] = None

    def sweep(self, today: Optional[date] = None) -> SweepResult:
        with self._sweep_lock:
            day = today or local_today(self.zone)
            config = self.store.get_config()
            result = SweepResult(today=day)

            promoted = self.store.promote_overdue(
                today=day,
                threshold_days=config.overdue_threshold_days,
                zone=self.zone,
            )
            result.promoted = len(promoted)

            for sample in self.store.list_samples(statuses=[SampleStatus.overdue]):
                owner = self.store.find_participant(sample.owner_id)
                if owner is None:
                    continue
                elapsed = days_elapsed(sample, day, self.zone)
                if elapsed >= config.reminder_tier2_days:
                    self.messenger.text(owner.id, maximum_attention_reminder(sample, elapsed=elapsed))
                    if config.oversight_contact:
                        self.messenger.text(
                            config.oversight_contact,
                            escalation_notice(owner.name, sample, elapsed=elapsed),
                        )
                        result.escalations += 1
                elif elapsed >= config.reminder_tier1_days:
                    self.messenger.text(owner.id, very_overdue_reminder(sample, elapsed=elapsed))
                else:
                    received = local_date(sample.received_at_utc, self.zone)
                    self.messenger.text(
                        owner.id, overdue_reminder(sample, received=received)
                    )
                result.overdue_reminders += 1

            for sample in self.store.list_samples(statuses=[SampleStatus.awaiting_client_response]):
                if not is_follow_up_due(sample, day):
                    continue
                claimed = self.store.claim_follow_up_notification(sample.id, day)
                if claimed is None:
                    continue
                self.messenger.text(claimed.owner_id, follow_up_reminder(claimed))
                result.follow_up_reminders += 1

        logger.info(
            "sweep_complete today=%s promoted=%s overdue_reminders=%s escalations=%s follow_ups=%s",
            day.isoformat(),
            result.promoted,
            result.overdue_reminders,
            result.escalations,
            result.follow_up_reminders,
        )
        if self.metrics:
            self.metrics.increment("sweeps_run")
            self.metrics.increment(
                "reminders_queued", result.overdue_reminders + result.follow_up_reminders
            )
        return result

    def start(self) -> None:
        if self._scheduler is not None:
            return
        scheduler = BackgroundScheduler(timezone=self.zone)
        scheduler.add_job(
            self._run_scheduled,
            CronTrigger(hour=self.hour, minute=self.minute, timezone=self.zone),
            name="sampledesk_daily_sweep",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "scheduler_started hour=%02d minute=%02d timezone=%s", self.hour, self.minute, self.zone
        )

    def shutdown(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("scheduler_stopped")

    def _run_scheduled(self) -> None:
        try:
            self.sweep()
        except Exception:
            logger.exception("sweep_failed")
