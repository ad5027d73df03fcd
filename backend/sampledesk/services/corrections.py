from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Optional, Protocol
from uuid import uuid4

from pydantic import BaseModel

from backend.sampledesk.models import SampleRecord, utc_now
from backend.sampledesk.services.lifecycle import short_id

if TYPE_CHECKING:
    from backend.sampledesk.services.reports import ReportDispatcher
    from backend.sampledesk.store import InMemoryStore

logger = logging.getLogger("sampledesk.corrections")


class TimerHandle(Protocol):
    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]


def thread_timer(seconds: float, callback: Callable[[], None]) -> TimerHandle:
    timer = threading.Timer(seconds, callback)
    timer.daemon = True
    return timer


@dataclass
class CorrectionSnapshot:
    participant_id: str
    sample: SampleRecord
    session: BaseModel
    deadline_utc: datetime
    token: str
    timer: Optional[Any] = field(default=None, repr=False)


class CorrectionWindowManager:
    """
    Holds at most one undo snapshot per participant after a devolution is finalized.
    The final report goes out when the window closes unless the participant corrects first.
    """

    def __init__(
        self,
        *,
        store: "InMemoryStore",
        dispatcher: "ReportDispatcher",
        timer_factory: Optional[TimerFactory] = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self._timer_factory = timer_factory or thread_timer
        self._lock = threading.RLock()
        self._snapshots: dict[str, CorrectionSnapshot] = {}

    def finalize(
        self, participant_id: str, session: BaseModel, updates: dict[str, Any]
    ) -> tuple[SampleRecord, CorrectionSnapshot]:
        sample_id = getattr(session, "sample_id")
        with self._lock:
            original = self.store.get_sample(sample_id)
            window_seconds = self.store.get_config().correction_window_seconds
            updated = self.store.update_sample(sample_id, **updates)
            try:
                self.store.clear_session(participant_id)
            except Exception:
                self.store.restore_sample(original)
                raise

            previous = self._snapshots.pop(participant_id, None)
            if previous:
                self._cancel(previous)
                logger.warning(
                    "correction_snapshot_replaced participant=%s dropped_sample=%s",
                    participant_id,
                    short_id(previous.sample.id),
                )

            token = uuid4().hex
            snapshot = CorrectionSnapshot(
                participant_id=participant_id,
                sample=original,
                session=session,
                deadline_utc=utc_now() + timedelta(seconds=window_seconds),
                token=token,
            )
            snapshot.timer = self._timer_factory(
                float(window_seconds), lambda: self._fire(participant_id, token)
            )
            self._snapshots[participant_id] = snapshot
            snapshot.timer.start()
        logger.info(
            "devolution_finalized participant=%s sample=%s status=%s window_s=%s",
            participant_id,
            short_id(sample_id),
            updated.status.value,
            window_seconds,
        )
        return updated, snapshot

    def correct(self, participant_id: str) -> Optional[CorrectionSnapshot]:
        with self._lock:
            snapshot = self._snapshots.pop(participant_id, None)
            if snapshot is None:
                return None
            self._cancel(snapshot)
            self.store.restore_sample(snapshot.sample)
            self.store.set_session(participant_id, snapshot.session)
        logger.info(
            "devolution_corrected participant=%s sample=%s",
            participant_id,
            short_id(snapshot.sample.id),
        )
        return snapshot

    def expire(self, participant_id: str, token: str) -> bool:
        with self._lock:
            snapshot = self._snapshots.get(participant_id)
            if snapshot is None or snapshot.token != token:
                logger.debug("correction_expiry_noop participant=%s", participant_id)
                return False
            del self._snapshots[participant_id]
        participant = self.store.find_participant(participant_id)
        sample = self.store.find_sample(snapshot.sample.id)
        return self.dispatcher.send_final_report(participant, sample)

    def pending(self, participant_id: str) -> Optional[CorrectionSnapshot]:
        with self._lock:
            return self._snapshots.get(participant_id)

    def discard(self, participant_id: str) -> None:
        with self._lock:
            snapshot = self._snapshots.pop(participant_id, None)
            if snapshot:
                self._cancel(snapshot)

    def shutdown(self) -> None:
        with self._lock:
            for snapshot in self._snapshots.values():
                self._cancel(snapshot)
            self._snapshots.clear()

    def _fire(self, participant_id: str, token: str) -> None:
        try:
            self.expire(participant_id, token)
        except Exception:
            logger.exception("correction_expiry_failed participant=%s", participant_id)

    @staticmethod
    def _cancel(snapshot: CorrectionSnapshot) -> None:
        if snapshot.timer is not None:
            snapshot.timer.cancel()
