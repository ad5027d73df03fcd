from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import date

from conftest import AGENT

from backend.sampledesk.models import InboundMessage, Role, SampleStatus
from backend.sampledesk.store import InMemoryStore


def test_sample_delivery_and_read_concurrent() -> None:
    store = InMemoryStore()
    for index in range(20):
        store.add_participant(f"55119000{index:05d}@c.us", f"Agent {index}", Role.agent)
    read_errors: list[Exception] = []

    def writer(index: int) -> None:
        store.deliver_samples(f"55119000{index % 20:05d}@c.us", 2)

    def reader() -> None:
        for _ in range(300):
            try:
                store.list_samples(statuses=[SampleStatus.pending_feedback])
                store.eligible_delivery_agents()
            except Exception as exc:  # pragma: no cover - regression trap
                read_errors.append(exc)

    with ThreadPoolExecutor(max_workers=10) as executor:
        futures = [executor.submit(writer, i) for i in range(200)]
        futures.extend(executor.submit(reader) for _ in range(4))
        for future in futures:
            future.result()

    assert not read_errors
    assert len(store.list_samples()) == 400
    assert len({item.id for item in store.list_samples()}) == 400


def test_follow_up_claim_is_granted_once() -> None:
    store = InMemoryStore()
    store.add_participant(AGENT, "Alice Agent", Role.agent)
    sample = store.deliver_samples(AGENT, 1)[0]
    store.update_sample(
        sample.id,
        status=SampleStatus.awaiting_client_response,
        follow_up_date=date(2030, 5, 20),
    )

    with ThreadPoolExecutor(max_workers=16) as executor:
        claims = list(
            executor.map(
                lambda _: store.claim_follow_up_notification(sample.id, date(2030, 5, 20)),
                range(64),
            )
        )

    assert len([claim for claim in claims if claim is not None]) == 1


def test_same_participant_messages_are_serialized(desk) -> None:
    desk.store.deliver_samples(AGENT, 1)
    event = InboundMessage(sender_id=AGENT, selection_id="start_devolution")

    with ThreadPoolExecutor(max_workers=8) as executor:
        outcomes = list(executor.map(lambda _: desk.engine.handle(AGENT, event), range(16)))

    assert outcomes.count("menu") == 1
    assert outcomes.count("invalid_input") == 15
    assert desk.awaiting(AGENT) == "select_sample_for_devolution"
