from __future__ import annotations

from datetime import datetime, timedelta

from conftest import AGENT, OVERSIGHT, workbook_rows

from backend.sampledesk.models import DeliveryQuantityStep, Role, SampleStatus
from backend.sampledesk.services.reports import XLSX_CONTENT_TYPE


def _create(client, name: str, number: str, role: str):
    return client.post("/participants", json={"name": name, "number": number, "role": role})


def test_participant_crud(client) -> None:
    created = _create(client, "Carla Agent", "5511988887777", "agent")
    assert created.status_code == 201
    assert created.json() == {
        "participant_id": "5511988887777@c.us",
        "name": "Carla Agent",
        "role": "agent",
        "sample_count": 0,
        "open_sample_count": 0,
    }

    duplicate = _create(client, "Carla Again", "5511988887777", "steward")
    assert duplicate.status_code == 409

    invalid = _create(client, "Carla", "55-11", "agent")
    assert invalid.status_code == 422

    renamed = client.patch("/participants/5511988887777@c.us", json={"name": "Carla A."})
    assert renamed.status_code == 200
    assert renamed.json()["name"] == "Carla A."

    removed = client.delete("/participants/5511988887777@c.us")
    assert removed.status_code == 200
    assert client.get("/participants").json() == []
    assert client.delete("/participants/5511988887777@c.us").status_code == 404


def test_participant_listing_counts_samples(client) -> None:
    store = client.app.state.store
    store.add_participant(AGENT, "Alice Agent", Role.agent)
    closed, _, _ = store.deliver_samples(AGENT, 3)
    store.update_sample(closed.id, status=SampleStatus.closed_deal)

    listed = client.get("/participants", params={"role": "agent"}).json()

    assert listed[0]["sample_count"] == 3
    assert listed[0]["open_sample_count"] == 2


def test_role_change_clears_session(client) -> None:
    store = client.app.state.store
    store.add_participant(AGENT, "Alice Agent", Role.steward)
    store.set_session(AGENT, DeliveryQuantityStep(agent_id="x", agent_name="X"))

    response = client.patch(f"/participants/{AGENT}", json={"role": "agent"})

    assert response.status_code == 200
    assert store.get_session(AGENT) is None


def test_config_read_update_and_validation(client) -> None:
    current = client.get("/config").json()
    assert current["oversight_contact"] == OVERSIGHT
    assert current["overdue_threshold_days"] == 7
    assert current["correction_window_seconds"] == 300

    updated = client.put("/config", json={"overdue_threshold_days": 5})
    assert updated.status_code == 200
    assert updated.json()["overdue_threshold_days"] == 5

    inverted = client.put("/config", json={"reminder_tier1_days": 20})
    assert inverted.status_code == 422
    assert client.get("/config").json()["reminder_tier1_days"] == 8

    assert client.put("/config", json={}).status_code == 400
    assert client.post("/config/reload").json()["overdue_threshold_days"] == 5


def test_manual_sweep(client) -> None:
    store = client.app.state.store
    store.add_participant(AGENT, "Alice Agent", Role.agent)
    store.deliver_samples(AGENT, 1, received_at_utc=datetime(2030, 5, 20, 15, 0) - timedelta(days=9))

    response = client.post("/scheduler/sweep", params={"today": "2030-05-20"})

    assert response.status_code == 200
    assert response.json() == {
        "today": "2030-05-20",
        "promoted": 1,
        "overdue_reminders": 1,
        "escalations": 0,
        "follow_up_reminders": 0,
    }


def test_samples_export(client) -> None:
    store = client.app.state.store
    store.add_participant(AGENT, "Alice Agent", Role.agent)
    overdue, _ = store.deliver_samples(AGENT, 2)
    store.update_sample(overdue.id, status=SampleStatus.overdue)

    response = client.get("/reports/samples", params={"status": "overdue"})

    assert response.status_code == 200
    assert response.headers["content-type"] == XLSX_CONTENT_TYPE
    assert ".xlsx" in response.headers["content-disposition"]
    rows = workbook_rows(response.content)
    assert len(rows) == 2
    assert rows[1][:2] == ["Alice Agent", "Overdue"]
    assert rows[1][6] == overdue.id

    missing = client.get("/reports/samples", params={"owner_id": "nobody@c.us"})
    assert missing.status_code == 404
