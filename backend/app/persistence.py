from __future__ import annotations

import json
from datetime import date, datetime
from pathlib import Path
from threading import Lock
from typing import Optional

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.app.models import DailyUserMessageSummaryRecord, utc_now
from backend.app.store import StoreUnavailableError


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


class SqlPersistence:
    """
    Snapshot and derived-table storage. Uses SQLAlchemy and supports both SQLite and
    PostgreSQL URLs. Driver failures surface as ``StoreUnavailableError``.
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
        self.state_snapshots = Table(
            "state_snapshots",
            self.metadata,
            Column("id", String(50), primary_key=True),
            Column("payload_json", Text, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.daily_user_message_summaries = Table(
            "daily_user_message_summaries",
            self.metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("agent_id", String(120), nullable=False),
            Column("business_date", Date, nullable=False),
            Column("first_message_id", String(120), nullable=True),
            Column("last_message_id", String(120), nullable=True),
            Column("first_timestamp", DateTime, nullable=True),
            Column("last_timestamp", DateTime, nullable=True),
            Column("total_messages", Integer, nullable=False),
            Column("active_duration_minutes", Integer, nullable=True),
            Column("first_text", String(250), nullable=True),
            Column("last_text", String(250), nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
            UniqueConstraint("agent_id", "business_date", name="uq_summary_agent_date"),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        try:
            self.metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(f"schema setup failed: {exc}") from exc

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def save_snapshot(self, payload: dict) -> None:
        with self._lock:
            serialized = json.dumps(payload)
            now = utc_now()
            try:
                with self.engine.begin() as conn:
                    existing = conn.execute(
                        select(self.state_snapshots.c.id).where(
                            self.state_snapshots.c.id == "default"
                        )
                    ).first()
                    if existing:
                        conn.execute(
                            self.state_snapshots.update()
                            .where(self.state_snapshots.c.id == "default")
                            .values(payload_json=serialized, updated_at_utc=now)
                        )
                    else:
                        conn.execute(
                            self.state_snapshots.insert().values(
                                id="default",
                                payload_json=serialized,
                                updated_at_utc=now,
                            )
                        )
            except SQLAlchemyError as exc:
                raise StoreUnavailableError(f"snapshot write failed: {exc}") from exc

    def load_snapshot(self) -> Optional[dict]:
        with self._lock:
            try:
                with self.engine.connect() as conn:
                    row = conn.execute(
                        select(self.state_snapshots.c.payload_json).where(
                            self.state_snapshots.c.id == "default"
                        )
                    ).first()
            except SQLAlchemyError as exc:
                raise StoreUnavailableError(f"snapshot read failed: {exc}") from exc
            if not row:
                return None
            return json.loads(row[0])

    def upsert_daily_user_summary(self, record: DailyUserMessageSummaryRecord) -> None:
        table = self.daily_user_message_summaries
        payload = {
            "first_message_id": record.first_message_id,
            "last_message_id": record.last_message_id,
            "first_timestamp": record.first_timestamp,
            "last_timestamp": record.last_timestamp,
            "total_messages": record.total_messages,
            "active_duration_minutes": record.active_duration_minutes,
            "first_text": record.first_text,
            "last_text": record.last_text,
            "updated_at_utc": record.updated_at,
        }
        with self._lock:
            try:
                with self.engine.begin() as conn:
                    existing = conn.execute(
                        select(table.c.id).where(
                            table.c.agent_id == record.agent_id,
                            table.c.business_date == record.business_date,
                        )
                    ).first()
                    if existing:
                        conn.execute(
                            table.update().where(table.c.id == existing.id).values(**payload)
                        )
                    else:
                        conn.execute(
                            table.insert().values(
                                agent_id=record.agent_id,
                                business_date=record.business_date,
                                created_at_utc=record.created_at,
                                **payload,
                            )
                        )
            except SQLAlchemyError as exc:
                raise StoreUnavailableError(f"summary upsert failed: {exc}") from exc

    def list_daily_user_summaries(
        self, since: Optional[date] = None
    ) -> list[DailyUserMessageSummaryRecord]:
        table = self.daily_user_message_summaries
        query = select(table).order_by(table.c.business_date.desc(), table.c.agent_id)
        if since is not None:
            query = query.where(table.c.business_date >= since)
        with self._lock:
            try:
                with self.engine.connect() as conn:
                    rows = conn.execute(query).all()
            except SQLAlchemyError as exc:
                raise StoreUnavailableError(f"summary read failed: {exc}") from exc

        output: list[DailyUserMessageSummaryRecord] = []
        for row in rows:
            output.append(
                DailyUserMessageSummaryRecord(
                    agent_id=row.agent_id,
                    business_date=row.business_date,
                    first_message_id=row.first_message_id,
                    last_message_id=row.last_message_id,
                    first_timestamp=row.first_timestamp,
                    last_timestamp=row.last_timestamp,
                    total_messages=row.total_messages,
                    active_duration_minutes=row.active_duration_minutes,
                    first_text=row.first_text,
                    last_text=row.last_text,
                    created_at=row.created_at_utc or utc_now(),
                    updated_at=row.updated_at_utc or utc_now(),
                )
            )
        return output
