from __future__ import annotations

import pytest
from conftest import AGENT, OTHER_AGENT, STEWARD

from backend.sampledesk.models import ListPrompt, Role, SampleStatus


def _rows(desk, to: str) -> list[str]:
    message = desk.transport.last_to(to).message
    assert isinstance(message, ListPrompt)
    return [row.id for row in message.rows()]


def test_delivery_creates_batch_and_notifies_agent(desk) -> None:
    desk.send(STEWARD, selection_id="deliver_samples")
    assert desk.awaiting(STEWARD) == "select_agent_for_delivery"
    assert set(_rows(desk, STEWARD)) == {f"deliver_{AGENT}", f"deliver_{OTHER_AGENT}"}

    desk.send(STEWARD, selection_id=f"deliver_{AGENT}")
    assert desk.awaiting(STEWARD) == "delivery_quantity"
    desk.send(STEWARD, "3")

    samples = desk.store.list_samples(owner_id=AGENT)
    assert len(samples) == 3
    assert {item.status for item in samples} == {SampleStatus.pending_feedback}
    assert len({item.id for item in samples}) == 3
    assert desk.awaiting(STEWARD) is None
    assert any("*3* sample(s) registered for *Alice Agent*" in text for text in desk.texts_to(STEWARD))
    notice = desk.last_text(AGENT)
    assert "*3* new sample(s)" in notice
    assert "*7 days*" in notice


def test_agents_with_open_samples_are_not_offered(desk) -> None:
    desk.store.deliver_samples(AGENT, 1)

    desk.send(STEWARD, "deliver")

    assert _rows(desk, STEWARD) == [f"deliver_{OTHER_AGENT}"]


def test_no_eligible_agents(desk) -> None:
    desk.store.deliver_samples(AGENT, 1)
    desk.store.deliver_samples(OTHER_AGENT, 1)

    desk.send(STEWARD, selection_id="deliver_samples")

    assert any("No agents can receive samples" in text for text in desk.texts_to(STEWARD))
    assert desk.awaiting(STEWARD) is None


@pytest.mark.parametrize("quantity", ["0", "-2", "abc", "2.5", "", "101", "9" * 4096])
def test_invalid_quantity_is_rejected(desk, quantity: str) -> None:
    desk.send(STEWARD, selection_id="deliver_samples")
    desk.send(STEWARD, selection_id=f"deliver_{AGENT}")

    assert desk.send(STEWARD, quantity) == "invalid_input"
    assert desk.awaiting(STEWARD) == "delivery_quantity"
    assert desk.store.list_samples(owner_id=AGENT) == []
    assert desk.last_text(STEWARD) == "How many samples did you hand to *Alice Agent*?"


def test_delivery_accepts_largest_batch(desk) -> None:
    desk.send(STEWARD, selection_id="deliver_samples")
    desk.send(STEWARD, selection_id=f"deliver_{AGENT}")

    assert desk.send(STEWARD, "100") == "resolved"
    assert len(desk.store.list_samples(owner_id=AGENT)) == 100


def test_store_rejects_oversized_batch(desk) -> None:
    with pytest.raises(ValueError):
        desk.store.deliver_samples(AGENT, 101)
    assert desk.store.list_samples(owner_id=AGENT) == []


def test_failed_agent_notification_is_reported_to_steward(desk) -> None:
    desk.transport.failing_recipients.add(AGENT)
    desk.send(STEWARD, selection_id="deliver_samples")
    desk.send(STEWARD, selection_id=f"deliver_{AGENT}")
    desk.send(STEWARD, "2")

    assert len(desk.store.list_samples(owner_id=AGENT)) == 2
    assert desk.last_text(STEWARD) == "Could not notify *Alice Agent*."


def test_agent_that_became_ineligible_is_not_found(desk) -> None:
    desk.send(STEWARD, selection_id="deliver_samples")
    desk.store.deliver_samples(AGENT, 1)

    assert desk.send(STEWARD, selection_id=f"deliver_{AGENT}") == "not_found"
    assert desk.awaiting(STEWARD) == "select_agent_for_delivery"
    assert _rows(desk, STEWARD) == [f"deliver_{OTHER_AGENT}"]


def test_agent_that_received_samples_after_selection_is_not_found(desk) -> None:
    desk.send(STEWARD, selection_id="deliver_samples")
    desk.send(STEWARD, selection_id=f"deliver_{AGENT}")
    desk.store.deliver_samples(AGENT, 1)

    assert desk.send(STEWARD, "3") == "not_found"
    assert len(desk.store.list_samples(owner_id=AGENT)) == 1
    assert any("still has open samples" in text for text in desk.texts_to(STEWARD))
    assert desk.awaiting(STEWARD) == "select_agent_for_delivery"
    assert _rows(desk, STEWARD) == [f"deliver_{OTHER_AGENT}"]


def test_cancel_during_delivery_creates_nothing(desk) -> None:
    desk.send(STEWARD, selection_id="deliver_samples")
    desk.send(STEWARD, selection_id=f"deliver_{AGENT}")

    assert desk.send(STEWARD, "sair") == "cancelled"
    assert desk.awaiting(STEWARD) is None
    assert desk.store.list_samples() == []


def test_add_agent(desk) -> None:
    desk.send(STEWARD, selection_id="add_agent")
    assert desk.awaiting(STEWARD) == "add_agent_info"

    assert desk.send(STEWARD, "Carla Agent") == "invalid_input"
    assert desk.awaiting(STEWARD) == "add_agent_info"

    desk.send(STEWARD, "Carla Agent, 5511988887777")

    added = desk.store.get_participant("5511988887777@c.us")
    assert added.name == "Carla Agent"
    assert added.role == Role.agent
    assert desk.awaiting(STEWARD) is None


def test_add_agent_rejects_registered_number(desk) -> None:
    desk.send(STEWARD, selection_id="add_agent")
    desk.send(STEWARD, "Someone Else, 5511900000003")

    assert any("already registered" in text for text in desk.texts_to(STEWARD))
    assert desk.store.get_participant(AGENT).name == "Alice Agent"


def test_remove_agent_cascades(desk) -> None:
    desk.store.deliver_samples(AGENT, 2)
    desk.send(AGENT, selection_id="start_devolution")
    assert desk.awaiting(AGENT) is not None

    desk.send(STEWARD, selection_id="remove_agent")
    desk.send(STEWARD, selection_id=f"remove_{AGENT}")

    assert desk.store.find_participant(AGENT) is None
    assert desk.store.list_samples(owner_id=AGENT) == []
    assert desk.store.get_session(AGENT) is None
    assert any("Agent *Alice Agent* removed." in text for text in desk.texts_to(STEWARD))


def test_granular_clearance_ignores_out_of_range_numbers(desk) -> None:
    waiting = desk.store.deliver_samples(AGENT, 3)[0]
    desk.store.update_sample(
        waiting.id, status=SampleStatus.awaiting_client_response, customer_name="Acme"
    )
    listed = desk.store.list_samples(owner_id=AGENT, statuses=[SampleStatus.pending_feedback])

    desk.send(STEWARD, selection_id="clear_samples")
    desk.send(STEWARD, selection_id=f"clear_{AGENT}")
    assert desk.awaiting(STEWARD) == "confirm_clearance"
    desk.send(STEWARD, "1, 5")

    remaining = {item.id for item in desk.store.list_samples(owner_id=AGENT)}
    assert remaining == {listed[1].id, waiting.id}
    assert any("*1* sample(s) from *Alice Agent* cleared." in text for text in desk.texts_to(STEWARD))


def test_clearance_without_valid_numbers_reprompts(desk) -> None:
    desk.store.deliver_samples(AGENT, 2)
    desk.send(STEWARD, selection_id="clear_samples")
    desk.send(STEWARD, selection_id=f"clear_{AGENT}")

    assert desk.send(STEWARD, "9") == "invalid_input"
    assert desk.awaiting(STEWARD) == "confirm_clearance"
    assert len(desk.store.list_samples(owner_id=AGENT)) == 2


def test_clearance_for_agent_without_pending_samples(desk) -> None:
    desk.send(STEWARD, selection_id="clear_samples")
    desk.send(STEWARD, selection_id=f"clear_{OTHER_AGENT}")

    assert any("has no pending samples" in text for text in desk.texts_to(STEWARD))
    assert desk.awaiting(STEWARD) is None


def test_unknown_text_shows_steward_menu(desk) -> None:
    assert desk.send(STEWARD, "good morning") == "menu"

    message = desk.transport.last_to(STEWARD).message
    assert isinstance(message, ListPrompt)
    assert "Steward main menu" in message.description
