from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import date, datetime
from threading import RLock
from typing import TYPE_CHECKING, Any, Optional
from uuid import uuid4
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ValidationError

from backend.sampledesk.models import (
    MUTABLE_SAMPLE_FIELDS,
    BotConfig,
    ExportRow,
    ParticipantRecord,
    Role,
    SampleRecord,
    SampleStatus,
    SessionRecord,
    utc_now,
)
from backend.sampledesk.services.lifecycle import (
    DEVOLVABLE_STATUSES,
    MAX_DELIVERY_QUANTITY,
    can_transition,
    is_follow_up_due,
    is_past_overdue_threshold,
)

if TYPE_CHECKING:
    from backend.sampledesk.persistence import SqlitePersistence

logger = logging.getLogger("sampledesk.store")


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


class StoreConflictError(Exception):
    pass


class IneligibleAgentError(StoreConflictError):
    pass


class StoreNotFoundError(Exception):
    pass


class InMemoryStore:
    def __init__(
        self,
        persistence: Optional["SqlitePersistence"] = None,
        *,
        config_defaults: Optional[BotConfig] = None,
    ) -> None:
        self._lock = RLock()
        self.persistence = persistence
        self.participants: dict[str, ParticipantRecord] = {}
        self.samples: dict[str, SampleRecord] = {}
        self.sessions: dict[str, SessionRecord] = {}
        self._config_defaults = config_defaults or BotConfig()
        self._config_values: dict[str, str] = {}
        self._config: Optional[BotConfig] = None

        if self.persistence:
            for participant in self.persistence.list_participants():
                self.participants[participant.id] = participant
            for sample in self.persistence.list_samples():
                self.samples[sample.id] = sample
            for session in self.persistence.list_sessions():
                self.sessions[session.participant_id] = session
            self._config_values = self.persistence.load_config()
        if not self._config_values:
            self._seed_config()

    # Directory

    def add_participant(self, participant_id: str, name: str, role: Role) -> ParticipantRecord:
        with self._lock:
            if participant_id in self.participants:
                existing = self.participants[participant_id]
                raise StoreConflictError(
                    f"participant already registered: {participant_id} "
                    f"({existing.name}, {existing.role.value})"
                )
            participant = ParticipantRecord(
                id=participant_id,
                name=name.strip(),
                role=role,
                created_at_utc=utc_now(),
            )
            if self.persistence:
                self.persistence.upsert_participant(participant)
            self.participants[participant.id] = participant
            return participant

    def find_participant(self, participant_id: str) -> Optional[ParticipantRecord]:
        return self.participants.get(participant_id)

    def get_participant(self, participant_id: str) -> ParticipantRecord:
        participant = self.participants.get(participant_id)
        if not participant:
            raise StoreNotFoundError(f"participant not found: {participant_id}")
        return participant

    def list_participants(
        self, *, role: Optional[Role] = None, exclude_id: Optional[str] = None
    ) -> list[ParticipantRecord]:
        with self._lock:
            records = list(self.participants.values())
        if role:
            records = [item for item in records if item.role == role]
        if exclude_id:
            records = [item for item in records if item.id != exclude_id]
        return sorted(records, key=lambda item: item.name.lower())

    def update_participant(
        self,
        participant_id: str,
        *,
        name: Optional[str] = None,
        role: Optional[Role] = None,
    ) -> ParticipantRecord:
        with self._lock:
            participant = self.get_participant(participant_id)
            changes: dict[str, Any] = {}
            if name is not None:
                changes["name"] = name.strip()
            if role is not None:
                changes["role"] = role
            updated = participant.model_copy(update=changes)
            if self.persistence:
                self.persistence.upsert_participant(updated)
            self.participants[participant_id] = updated
            return updated

    def remove_participant(self, participant_id: str) -> ParticipantRecord:
        """Delete a participant together with their samples and session state."""
        with self._lock:
            participant = self.get_participant(participant_id)
            if self.persistence:
                self.persistence.delete_participant_cascade(participant_id)
            self.samples = {
                sample_id: sample
                for sample_id, sample in self.samples.items()
                if sample.owner_id != participant_id
            }
            self.sessions.pop(participant_id, None)
            del self.participants[participant_id]
            return participant

    def eligible_delivery_agents(self) -> list[ParticipantRecord]:
        with self._lock:
            blocked = {
                sample.owner_id
                for sample in self.samples.values()
                if sample.status in DEVOLVABLE_STATUSES
            }
            return [
                agent
                for agent in self.list_participants(role=Role.agent)
                if agent.id not in blocked
            ]

    # Sample ledger

    def deliver_samples(
        self,
        owner_id: str,
        quantity: int,
        *,
        received_at_utc: Optional[datetime] = None,
        only_if_eligible: bool = False,
    ) -> list[SampleRecord]:
        if not 0 < quantity <= MAX_DELIVERY_QUANTITY:
            raise ValueError(f"quantity must be between 1 and {MAX_DELIVERY_QUANTITY}")
        with self._lock:
            owner = self.get_participant(owner_id)
            if owner.role != Role.agent:
                raise StoreConflictError(f"samples can only be delivered to agents: {owner_id}")
            if only_if_eligible and any(
                sample.owner_id == owner_id and sample.status in DEVOLVABLE_STATUSES
                for sample in self.samples.values()
            ):
                raise IneligibleAgentError(f"agent still holds open samples: {owner_id}")
            received = received_at_utc or utc_now()
            batch: list[SampleRecord] = []
            taken: set[str] = set()
            while len(batch) < quantity:
                sample_id = new_id("smp")
                if sample_id in self.samples or sample_id in taken:
                    continue
                taken.add(sample_id)
                batch.append(
                    SampleRecord(
                        id=sample_id,
                        owner_id=owner_id,
                        status=SampleStatus.pending_feedback,
                        received_at_utc=received,
                    )
                )
            if self.persistence:
                self.persistence.insert_samples(batch)
            for sample in batch:
                self.samples[sample.id] = sample
            return batch

    def find_sample(self, sample_id: str) -> Optional[SampleRecord]:
        return self.samples.get(sample_id)

    def get_sample(self, sample_id: str) -> SampleRecord:
        sample = self.samples.get(sample_id)
        if not sample:
            raise StoreNotFoundError(f"sample not found: {sample_id}")
        return sample

    def list_samples(
        self,
        *,
        owner_id: Optional[str] = None,
        statuses: Optional[Iterable[SampleStatus]] = None,
    ) -> list[SampleRecord]:
        with self._lock:
            records = list(self.samples.values())
        if owner_id:
            records = [item for item in records if item.owner_id == owner_id]
        if statuses is not None:
            wanted = set(statuses)
            records = [item for item in records if item.status in wanted]
        return sorted(records, key=lambda item: (item.received_at_utc, item.id))

    def update_sample(self, sample_id: str, **changes: Any) -> SampleRecord:
        unknown = set(changes) - set(MUTABLE_SAMPLE_FIELDS)
        if unknown:
            raise ValueError(f"immutable sample fields: {sorted(unknown)}")
        with self._lock:
            sample = self.get_sample(sample_id)
            if "status" in changes:
                target = SampleStatus(changes["status"])
                if not can_transition(sample.status, target):
                    raise StoreConflictError(
                        f"invalid transition {sample.status.value} -> {target.value}"
                    )
                changes["status"] = target
            updated = sample.model_copy(update=changes)
            self._write_sample(updated)
            return updated

    def restore_sample(self, snapshot: SampleRecord) -> SampleRecord:
        with self._lock:
            current = self.get_sample(snapshot.id)
            restored = current.model_copy(
                update={field: getattr(snapshot, field) for field in MUTABLE_SAMPLE_FIELDS}
            )
            self._write_sample(restored)
            return restored

    def promote_overdue(
        self, *, today: date, threshold_days: int, zone: ZoneInfo
    ) -> list[SampleRecord]:
        promoted: list[SampleRecord] = []
        for candidate in self.list_samples(statuses=[SampleStatus.pending_feedback]):
            with self._lock:
                sample = self.samples.get(candidate.id)
                if not sample or sample.status != SampleStatus.pending_feedback:
                    continue
                if not is_past_overdue_threshold(
                    sample, today=today, threshold_days=threshold_days, zone=zone
                ):
                    continue
                updated = sample.model_copy(update={"status": SampleStatus.overdue})
                self._write_sample(updated)
                promoted.append(updated)
        return promoted

    def claim_follow_up_notification(self, sample_id: str, today: date) -> Optional[SampleRecord]:
        """Flip follow_up_notified if the reminder is due; None when already claimed."""
        with self._lock:
            sample = self.samples.get(sample_id)
            if not sample or not is_follow_up_due(sample, today):
                return None
            updated = sample.model_copy(update={"follow_up_notified": True})
            self._write_sample(updated)
            return updated

    def delete_samples(
        self, sample_ids: Iterable[str], *, allowed_statuses: Iterable[SampleStatus]
    ) -> list[SampleRecord]:
        allowed = set(allowed_statuses)
        with self._lock:
            doomed = [
                self.samples[sample_id]
                for sample_id in dict.fromkeys(sample_ids)
                if sample_id in self.samples and self.samples[sample_id].status in allowed
            ]
            if self.persistence:
                self.persistence.delete_samples([sample.id for sample in doomed])
            for sample in doomed:
                del self.samples[sample.id]
            return doomed

    def report_rows(
        self,
        *,
        status: Optional[SampleStatus] = None,
        owner_id: Optional[str] = None,
    ) -> list[ExportRow]:
        samples = self.list_samples(
            owner_id=owner_id,
            statuses=[status] if status else None,
        )
        rows: list[ExportRow] = []
        for sample in samples:
            owner = self.participants.get(sample.owner_id)
            rows.append(ExportRow(agent_name=owner.name if owner else "-", sample=sample))
        return sorted(rows, key=lambda row: (row.agent_name.lower(), row.sample.received_at_utc))

    # Session state

    def get_session(self, participant_id: str) -> Optional[SessionRecord]:
        return self.sessions.get(participant_id)

    def set_session(self, participant_id: str, state: BaseModel) -> SessionRecord:
        data = state.model_dump(mode="json")
        awaiting = data.pop("awaiting")
        record = SessionRecord(
            participant_id=participant_id,
            awaiting=awaiting,
            payload=data,
            updated_at_utc=utc_now(),
        )
        with self._lock:
            if self.persistence:
                self.persistence.save_session(record)
            self.sessions[participant_id] = record
            return record

    def clear_session(self, participant_id: str) -> None:
        with self._lock:
            if participant_id not in self.sessions:
                return
            if self.persistence:
                self.persistence.delete_session(participant_id)
            del self.sessions[participant_id]

    def gauges(self) -> dict[str, int]:
        with self._lock:
            counts = {f"samples_{status.value}": 0 for status in SampleStatus}
            for sample in self.samples.values():
                counts[f"samples_{sample.status.value}"] += 1
            for role in Role:
                counts[f"participants_{role.value}"] = 0
            for participant in self.participants.values():
                counts[f"participants_{participant.role.value}"] += 1
            counts["open_sessions"] = len(self.sessions)
            return counts

    # Config

    def get_config(self) -> BotConfig:
        with self._lock:
            if self._config is None:
                self._config = self._config_from_values(self._config_values)
            return self._config

    def set_config_values(self, updates: dict[str, Any]) -> BotConfig:
        with self._lock:
            merged = self.get_config().model_dump()
            merged.update(updates)
            config = BotConfig.model_validate(merged)
            values = {
                key: "" if value is None else str(value)
                for key, value in config.model_dump().items()
            }
            if self.persistence:
                self.persistence.save_config_values(values)
            self._config_values = values
            self._config = config
            logger.info("config_updated keys=%s", ",".join(sorted(updates)))
            return config

    def reload_config(self) -> BotConfig:
        with self._lock:
            if self.persistence:
                self._config_values = self.persistence.load_config()
            self._config = None
            return self.get_config()

    def _seed_config(self) -> None:
        values = {
            key: "" if value is None else str(value)
            for key, value in self._config_defaults.model_dump().items()
        }
        if self.persistence:
            self.persistence.save_config_values(values)
        self._config_values = values

    def _config_from_values(self, values: dict[str, str]) -> BotConfig:
        data = {
            key: value
            for key, value in values.items()
            if key in BotConfig.model_fields and value != ""
        }
        try:
            return BotConfig.model_validate(data)
        except ValidationError:
            logger.exception("config_invalid falling back to defaults")
            return self._config_defaults

    def _write_sample(self, record: SampleRecord) -> None:
        if self.persistence:
            self.persistence.upsert_sample(record)
        self.samples[record.id] = record
