from __future__ import annotations

from dataclasses import dataclass, field
from io import BytesIO
from typing import Callable, Optional

import pytest
from fastapi.testclient import TestClient
from openpyxl import load_workbook

from backend.sampledesk.main import create_app
from backend.sampledesk.models import BotConfig, InboundMessage, Role
from backend.sampledesk.observability import MetricsRegistry
from backend.sampledesk.services.corrections import CorrectionWindowManager
from backend.sampledesk.services.engine import ConversationEngine
from backend.sampledesk.services.lifecycle import reference_zone
from backend.sampledesk.services.reports import ReportDispatcher
from backend.sampledesk.services.scheduler import EscalationScheduler
from backend.sampledesk.services.transport import InMemoryTransport, Messenger
from backend.sampledesk.store import InMemoryStore

ADMIN = "5511900000001@c.us"
STEWARD = "5511900000002@c.us"
AGENT = "5511900000003@c.us"
OTHER_AGENT = "5511900000004@c.us"
OVERSIGHT = "5511900000099@c.us"


def workbook_rows(content: bytes) -> list[list]:
    sheet = load_workbook(BytesIO(content)).active
    return [list(row) for row in sheet.iter_rows(values_only=True)]


@dataclass
class ManualTimer:
    seconds: float
    callback: Callable[[], None]
    started: bool = False
    cancelled: bool = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.callback()


@dataclass
class ManualTimerFactory:
    timers: list[ManualTimer] = field(default_factory=list)

    def __call__(self, seconds: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(seconds=seconds, callback=callback)
        self.timers.append(timer)
        return timer

    @property
    def last(self) -> ManualTimer:
        return self.timers[-1]


@dataclass
class Desk:
    store: InMemoryStore
    transport: InMemoryTransport
    engine: ConversationEngine
    corrections: CorrectionWindowManager
    scheduler: EscalationScheduler
    timers: ManualTimerFactory
    metrics: MetricsRegistry

    def send(self, sender: str, body: str = "", selection_id: Optional[str] = None) -> str:
        event = InboundMessage(sender_id=sender, body=body, selection_id=selection_id)
        return self.engine.handle(sender, event)

    def last_text(self, to: str) -> str:
        message = self.transport.last_to(to)
        assert message is not None, f"nothing sent to {to}"
        return message.text

    def texts_to(self, to: str) -> list[str]:
        return [item.text for item in self.transport.messages_to(to)]

    def awaiting(self, participant_id: str) -> Optional[str]:
        record = self.store.get_session(participant_id)
        return record.awaiting if record else None


def build_desk(store: Optional[InMemoryStore] = None) -> Desk:
    zone = reference_zone("America/Sao_Paulo")
    metrics = MetricsRegistry()
    store = store or InMemoryStore(config_defaults=BotConfig(oversight_contact=OVERSIGHT))
    transport = InMemoryTransport()
    messenger = Messenger(transport, metrics=metrics)
    dispatcher = ReportDispatcher(store=store, messenger=messenger, zone=zone, metrics=metrics)
    timers = ManualTimerFactory()
    corrections = CorrectionWindowManager(store=store, dispatcher=dispatcher, timer_factory=timers)
    engine = ConversationEngine(
        store=store,
        messenger=messenger,
        corrections=corrections,
        dispatcher=dispatcher,
        zone=zone,
        metrics=metrics,
    )
    scheduler = EscalationScheduler(store=store, messenger=messenger, zone=zone, metrics=metrics)
    return Desk(
        store=store,
        transport=transport,
        engine=engine,
        corrections=corrections,
        scheduler=scheduler,
        timers=timers,
        metrics=metrics,
    )


@pytest.fixture()
def desk() -> Desk:
    desk = build_desk()
    desk.store.add_participant(ADMIN, "Ana Admin", Role.admin)
    desk.store.add_participant(STEWARD, "Sergio Steward", Role.steward)
    desk.store.add_participant(AGENT, "Alice Agent", Role.agent)
    desk.store.add_participant(OTHER_AGENT, "Bruno Agent", Role.agent)
    return desk


@pytest.fixture()
def client(monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("GATEWAY_URL", "")
    monkeypatch.setenv("CHANNEL_WEBHOOK_SECRET", "")
    monkeypatch.setenv("OVERSIGHT_CONTACT", OVERSIGHT)
    app = create_app()
    return TestClient(app)
