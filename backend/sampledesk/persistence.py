from __future__ import annotations

import json
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from threading import Lock

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.sampledesk.models import (
    ParticipantRecord,
    Role,
    SampleRecord,
    SampleStatus,
    SessionRecord,
)


class StorageError(Exception):
    pass


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


@contextmanager
def _storage_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        raise StorageError(f"{operation} failed: {exc.__class__.__name__}") from exc


class SqlitePersistence:
    """
    Relational storage for the directory, the sample ledger, session state and config.
    Uses SQLAlchemy Core, so any SQLAlchemy URL works; SQLite is the default.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = Lock()
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
        )
        self.metadata = MetaData()
        self.participants = Table(
            "participants",
            self.metadata,
            Column("id", String(120), primary_key=True),
            Column("name", String(120), nullable=False),
            Column("role", String(20), nullable=False),
            Column("created_at_utc", DateTime, nullable=False),
        )
        self.samples = Table(
            "samples",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column(
                "owner_id",
                String(120),
                ForeignKey("participants.id", ondelete="CASCADE"),
                nullable=False,
                index=True,
            ),
            Column("status", String(40), nullable=False, index=True),
            Column("received_at_utc", DateTime, nullable=False, index=True),
            Column("customer_name", String(200), nullable=True),
            Column("contract_closed", Boolean, nullable=True),
            Column("follow_up_date", Date, nullable=True),
            Column("follow_up_notified", Boolean, nullable=False, default=False),
            Column("client_feedback", Text, nullable=True),
        )
        self.session_state = Table(
            "session_state",
            self.metadata,
            Column(
                "participant_id",
                String(120),
                ForeignKey("participants.id", ondelete="CASCADE"),
                primary_key=True,
            ),
            Column("awaiting", String(80), nullable=False),
            Column("payload_json", Text, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.config = Table(
            "config",
            self.metadata,
            Column("key", String(80), primary_key=True),
            Column("value", Text, nullable=False),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with _storage_errors("schema creation"):
            self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    # Directory

    def list_participants(self) -> list[ParticipantRecord]:
        with self._lock, _storage_errors("participant read"):
            with self.engine.connect() as conn:
                rows = conn.execute(select(self.participants)).all()
        return [
            ParticipantRecord(
                id=row.id,
                name=row.name,
                role=Role(row.role),
                created_at_utc=row.created_at_utc or datetime.utcnow(),
            )
            for row in rows
        ]

    def upsert_participant(self, record: ParticipantRecord) -> None:
        payload = {
            "name": record.name,
            "role": record.role.value,
            "created_at_utc": record.created_at_utc,
        }
        with self._lock, _storage_errors("participant write"):
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.participants.c.id).where(self.participants.c.id == record.id)
                ).first()
                if existing:
                    conn.execute(
                        self.participants.update()
                        .where(self.participants.c.id == record.id)
                        .values(**payload)
                    )
                else:
                    conn.execute(self.participants.insert().values(id=record.id, **payload))

    def delete_participant_cascade(self, participant_id: str) -> None:
        with self._lock, _storage_errors("participant delete"):
            with self.engine.begin() as conn:
                conn.execute(delete(self.samples).where(self.samples.c.owner_id == participant_id))
                conn.execute(
                    delete(self.session_state).where(
                        self.session_state.c.participant_id == participant_id
                    )
                )
                conn.execute(delete(self.participants).where(self.participants.c.id == participant_id))

    # Sample ledger

    def list_samples(self) -> list[SampleRecord]:
        query = select(self.samples).order_by(self.samples.c.received_at_utc, self.samples.c.id)
        with self._lock, _storage_errors("sample read"):
            with self.engine.connect() as conn:
                rows = conn.execute(query).all()
        return [
            SampleRecord(
                id=row.id,
                owner_id=row.owner_id,
                status=SampleStatus(row.status),
                received_at_utc=row.received_at_utc,
                customer_name=row.customer_name,
                contract_closed=row.contract_closed,
                follow_up_date=row.follow_up_date,
                follow_up_notified=bool(row.follow_up_notified),
                client_feedback=row.client_feedback,
            )
            for row in rows
        ]

    def insert_samples(self, records: Iterable[SampleRecord]) -> None:
        # One transaction: either every sample of the batch lands or none does.
        with self._lock, _storage_errors("sample batch insert"):
            with self.engine.begin() as conn:
                for record in records:
                    conn.execute(self.samples.insert().values(**self._sample_row(record)))

    def upsert_sample(self, record: SampleRecord) -> None:
        row = self._sample_row(record)
        with self._lock, _storage_errors("sample write"):
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.samples.c.id).where(self.samples.c.id == record.id)
                ).first()
                if existing:
                    conn.execute(
                        self.samples.update().where(self.samples.c.id == record.id).values(**row)
                    )
                else:
                    conn.execute(self.samples.insert().values(**row))

    def delete_samples(self, sample_ids: list[str]) -> None:
        if not sample_ids:
            return
        with self._lock, _storage_errors("sample delete"):
            with self.engine.begin() as conn:
                conn.execute(delete(self.samples).where(self.samples.c.id.in_(sample_ids)))

    # Session state

    def list_sessions(self) -> list[SessionRecord]:
        with self._lock, _storage_errors("session read"):
            with self.engine.connect() as conn:
                rows = conn.execute(select(self.session_state)).all()
        output: list[SessionRecord] = []
        for row in rows:
            try:
                payload = json.loads(row.payload_json)
            except json.JSONDecodeError:
                payload = {}
            output.append(
                SessionRecord(
                    participant_id=row.participant_id,
                    awaiting=row.awaiting,
                    payload=payload if isinstance(payload, dict) else {},
                    updated_at_utc=row.updated_at_utc or datetime.utcnow(),
                )
            )
        return output

    def save_session(self, record: SessionRecord) -> None:
        payload = {
            "awaiting": record.awaiting,
            "payload_json": json.dumps(record.payload),
            "updated_at_utc": record.updated_at_utc,
        }
        with self._lock, _storage_errors("session write"):
            with self.engine.begin() as conn:
                self._upsert_session(conn, record.participant_id, payload)

    def delete_session(self, participant_id: str) -> None:
        with self._lock, _storage_errors("session delete"):
            with self.engine.begin() as conn:
                conn.execute(
                    delete(self.session_state).where(
                        self.session_state.c.participant_id == participant_id
                    )
                )

    # Config

    def load_config(self) -> dict[str, str]:
        with self._lock, _storage_errors("config read"):
            with self.engine.connect() as conn:
                rows = conn.execute(select(self.config.c.key, self.config.c.value)).all()
        return {row.key: row.value for row in rows}

    def save_config_values(self, values: dict[str, str]) -> None:
        with self._lock, _storage_errors("config write"):
            with self.engine.begin() as conn:
                for key, value in values.items():
                    existing = conn.execute(
                        select(self.config.c.key).where(self.config.c.key == key)
                    ).first()
                    if existing:
                        conn.execute(
                            self.config.update().where(self.config.c.key == key).values(value=value)
                        )
                    else:
                        conn.execute(self.config.insert().values(key=key, value=value))

    def _upsert_session(self, conn: Connection, participant_id: str, payload: dict) -> None:
        existing = conn.execute(
            select(self.session_state.c.participant_id).where(
                self.session_state.c.participant_id == participant_id
            )
        ).first()
        if existing:
            conn.execute(
                self.session_state.update()
                .where(self.session_state.c.participant_id == participant_id)
                .values(**payload)
            )
        else:
            conn.execute(
                self.session_state.insert().values(participant_id=participant_id, **payload)
            )

    @staticmethod
    def _sample_row(record: SampleRecord) -> dict:
        return {
            "id": record.id,
            "owner_id": record.owner_id,
            "status": record.status.value,
            "received_at_utc": record.received_at_utc,
            "customer_name": record.customer_name,
            "contract_closed": record.contract_closed,
            "follow_up_date": record.follow_up_date,
            "follow_up_notified": record.follow_up_notified,
            "client_feedback": record.client_feedback,
        }
