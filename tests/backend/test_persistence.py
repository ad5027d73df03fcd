from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest
from conftest import AGENT, OVERSIGHT, STEWARD, build_desk
from fastapi.testclient import TestClient

from backend.sampledesk.main import create_app
from backend.sampledesk.models import BotConfig, Role, SampleStatus
from backend.sampledesk.persistence import SqlitePersistence, StorageError
from backend.sampledesk.store import InMemoryStore


def _new_client(monkeypatch, db_path: Path) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "true")
    monkeypatch.setenv("PERSISTENCE_DB_PATH", str(db_path))
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{str(db_path).replace(chr(92), '/')}")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("GATEWAY_URL", "")
    return TestClient(create_app())


def _persistent_store(db_path: Path) -> InMemoryStore:
    persistence = SqlitePersistence(f"sqlite:///{db_path.as_posix()}")
    return InMemoryStore(persistence, config_defaults=BotConfig(oversight_contact=OVERSIGHT))


def test_participants_persist_across_restart(monkeypatch, tmp_path) -> None:
    db_path = tmp_path / "sample_desk.sqlite3"
    first_client = _new_client(monkeypatch, db_path)
    create = first_client.post(
        "/participants",
        json={"name": "Carla Agent", "number": "5511988887777", "role": "agent"},
    )
    assert create.status_code == 201

    restarted_client = _new_client(monkeypatch, db_path)
    listed = restarted_client.get("/participants")
    assert listed.status_code == 200
    assert [item["participant_id"] for item in listed.json()] == ["5511988887777@c.us"]


def test_ledger_sessions_and_config_survive_restart(tmp_path) -> None:
    db_path = tmp_path / "sample_desk.sqlite3"
    store = _persistent_store(db_path)
    store.add_participant(AGENT, "Alice Agent", Role.agent)
    batch = store.deliver_samples(AGENT, 2)
    store.update_sample(batch[0].id, status=SampleStatus.overdue)
    store.set_config_values({"overdue_threshold_days": 10})

    reloaded = _persistent_store(db_path)

    assert {item.id for item in reloaded.list_samples(owner_id=AGENT)} == {item.id for item in batch}
    assert reloaded.get_sample(batch[0].id).status == SampleStatus.overdue
    assert reloaded.get_config().overdue_threshold_days == 10
    assert reloaded.get_config().oversight_contact == OVERSIGHT


def test_conversation_resumes_after_restart(tmp_path) -> None:
    db_path = tmp_path / "sample_desk.sqlite3"
    desk = build_desk(_persistent_store(db_path))
    desk.store.add_participant(AGENT, "Alice Agent", Role.agent)
    sample = desk.store.deliver_samples(AGENT, 1)[0]
    desk.send(AGENT, selection_id="start_devolution")
    desk.send(AGENT, selection_id=f"sample_{sample.id}")
    desk.send(AGENT, "Acme")

    restarted = build_desk(_persistent_store(db_path))
    assert restarted.awaiting(AGENT) == "contract_closed"
    restarted.send(AGENT, selection_id="contract_yes")

    stored = restarted.store.get_sample(sample.id)
    assert stored.status == SampleStatus.closed_deal
    assert stored.customer_name == "Acme"


def test_removal_cascade_is_persisted(tmp_path) -> None:
    db_path = tmp_path / "sample_desk.sqlite3"
    store = _persistent_store(db_path)
    store.add_participant(AGENT, "Alice Agent", Role.agent)
    store.add_participant(STEWARD, "Sergio Steward", Role.steward)
    store.deliver_samples(AGENT, 3)

    store.remove_participant(AGENT)

    reloaded = _persistent_store(db_path)
    assert reloaded.find_participant(AGENT) is None
    assert reloaded.list_samples() == []
    assert reloaded.find_participant(STEWARD) is not None


def test_failed_write_leaves_memory_untouched(tmp_path, monkeypatch) -> None:
    store = _persistent_store(tmp_path / "sample_desk.sqlite3")
    store.add_participant(AGENT, "Alice Agent", Role.agent)

    def broken_insert(records) -> None:
        raise StorageError("samples insert failed: OperationalError")

    monkeypatch.setattr(store.persistence, "insert_samples", broken_insert)

    with pytest.raises(StorageError):
        store.deliver_samples(AGENT, 4)
    assert store.list_samples() == []


def test_storage_failure_maps_to_service_unavailable(monkeypatch, tmp_path) -> None:
    client = _new_client(monkeypatch, tmp_path / "sample_desk.sqlite3")
    store = client.app.state.store

    def broken_upsert(record) -> None:
        raise StorageError("participant upsert failed: OperationalError")

    monkeypatch.setattr(store.persistence, "upsert_participant", broken_upsert)

    response = client.post(
        "/participants",
        json={"name": "Carla Agent", "number": "5511988887777", "role": "agent"},
    )
    assert response.status_code == 503
    assert store.find_participant("5511988887777@c.us") is None


def test_sqlite_url_creates_missing_parent_directories(tmp_path) -> None:
    db_path = tmp_path / "nested" / "sample_desk.sqlite3"
    persistence = SqlitePersistence(f"sqlite:///{db_path.as_posix()}")
    assert db_path.parent.exists()
    assert persistence.ping()


def test_persisted_ledger_loads_in_received_order(tmp_path) -> None:
    persistence = SqlitePersistence(f"sqlite:///{(tmp_path / 'ledger.sqlite3').as_posix()}")
    store = InMemoryStore(persistence)
    store.add_participant(AGENT, "Alice Agent", Role.agent)
    later = store.deliver_samples(AGENT, 1, received_at_utc=datetime(2030, 5, 2, 12, 0))
    earlier = store.deliver_samples(AGENT, 2, received_at_utc=datetime(2030, 5, 1, 12, 0))

    loaded = persistence.list_samples()

    assert [item.id for item in loaded] == sorted(item.id for item in earlier) + [later[0].id]
    assert {item.owner_id for item in loaded} == {AGENT}
