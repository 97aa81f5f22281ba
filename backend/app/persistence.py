from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

IN_MEMORY_URL = "sqlite://"


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


def _build_engine(database_url: str) -> Engine:
    if database_url in {IN_MEMORY_URL, "sqlite:///:memory:"}:
        # One shared connection so every request sees the same in-memory database.
        return create_engine(
            IN_MEMORY_URL,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, future=True, pool_pre_ping=True)


class Persistence:
    """
    SQLAlchemy Core schema for the lead autopilot. Works with SQLite and PostgreSQL URLs.

    Invariants that must hold across processes live here as constraints:
    proof events, idempotency keys, inboxes, per-lead SLA/run rows and the
    single default scenario per workspace.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self.engine: Engine = _build_engine(self.database_url)
        self.metadata = MetaData()
        self.leads = Table(
            "leads",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("workspace_id", String(120), nullable=False),
            Column("first_name", String(120), nullable=True),
            Column("last_name", String(120), nullable=True),
            Column("email", String(254), nullable=True),
            Column("phone", String(40), nullable=True),
            Column("source", String(80), nullable=True),
            Column("external_id", String(255), nullable=True),
            Column("status", String(20), nullable=False),
            Column("created_at", DateTime, nullable=False),
            Column("updated_at", DateTime, nullable=False),
            Index("ix_leads_workspace_phone", "workspace_id", "phone"),
        )
        self.workspace_inboxes = Table(
            "workspace_inboxes",
            self.metadata,
            Column("workspace_id", String(120), primary_key=True),
            Column("lead_id", String(64), nullable=False, unique=True),
            Column("created_at", DateTime, nullable=False),
        )
        self.users = Table(
            "users",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("workspace_id", String(120), nullable=False, index=True),
            Column("name", String(120), nullable=False),
            Column("email", String(254), nullable=True),
            Column("phone", String(40), nullable=True),
            Column("created_at", DateTime, nullable=False),
        )
        self.sla_states = Table(
            "sla_states",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("lead_id", String(64), nullable=False, unique=True),
            Column("started_at", DateTime, nullable=False),
            Column("deadline_at", DateTime, nullable=False),
            Column("target_minutes", Integer, nullable=False),
            Column("stopped_at", DateTime, nullable=True),
            Column("stop_reason", String(80), nullable=True),
            Column("stop_proof_event_id", String(64), nullable=True),
            Column("breached_at", DateTime, nullable=True),
            Index("ix_sla_states_open_deadline", "deadline_at", "breached_at", "stopped_at"),
        )
        self.autopilot_scenarios = Table(
            "autopilot_scenarios",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("workspace_id", String(120), nullable=False),
            Column("name", String(120), nullable=False),
            Column("mode", String(10), nullable=False),
            Column("max_questions", Integer, nullable=False),
            Column("handover_user_id", String(64), nullable=True),
            Column("ai_prompt", Text, nullable=True),
            Column("agent_name", String(80), nullable=False),
            Column("company_name", String(120), nullable=False),
            Column("offer_summary", Text, nullable=True),
            Column("calendar_link", String(500), nullable=True),
            Column("required_slots_json", Text, nullable=False),
            Column("is_default", Boolean, nullable=False),
            Column("created_at", DateTime, nullable=False),
            Column("updated_at", DateTime, nullable=False),
        )
        Index(
            "uq_autopilot_scenarios_default",
            self.autopilot_scenarios.c.workspace_id,
            unique=True,
            sqlite_where=self.autopilot_scenarios.c.is_default.is_(True),
            postgresql_where=self.autopilot_scenarios.c.is_default.is_(True),
        )
        self.autopilot_runs = Table(
            "autopilot_runs",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("lead_id", String(64), nullable=False, unique=True),
            Column("workspace_id", String(120), nullable=False, index=True),
            Column("scenario_id", String(64), nullable=False, index=True),
            Column("status", String(20), nullable=False),
            Column("current_step", String(40), nullable=False),
            Column("state_json", Text, nullable=False),
            Column("last_inbound_at", DateTime, nullable=True),
            Column("last_outbound_at", DateTime, nullable=True),
            Column("created_at", DateTime, nullable=False),
            Column("updated_at", DateTime, nullable=False),
        )
        self.outbound_messages = Table(
            "outbound_messages",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("lead_id", String(64), nullable=False, index=True),
            Column("workspace_id", String(120), nullable=False),
            Column("channel", String(20), nullable=False),
            Column("recipient", String(10), nullable=False),
            Column("to_phone", String(40), nullable=True),
            Column("text", Text, nullable=False),
            Column("status", String(10), nullable=False),
            Column("provider", String(40), nullable=True),
            Column("provider_message_id", String(255), nullable=True),
            Column("sent_at", DateTime, nullable=True),
            Column("failure_reason", Text, nullable=True),
            Column("retry_of", String(64), nullable=True),
            Column("created_at", DateTime, nullable=False),
            Column("updated_at", DateTime, nullable=False),
            Index("ix_outbound_messages_status_created", "status", "created_at"),
        )
        self.proof_events = Table(
            "proof_events",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("lead_id", String(64), nullable=False),
            Column("channel", String(20), nullable=False),
            Column("type", String(20), nullable=False),
            Column("provider", String(40), nullable=False),
            Column("provider_message_id", String(255), nullable=False),
            Column("occurred_at", DateTime, nullable=False),
            Column("note", Text, nullable=True),
            Column("created_at", DateTime, nullable=False),
            UniqueConstraint(
                "lead_id",
                "provider_message_id",
                "type",
                "channel",
                name="uq_proof_events_identity",
            ),
        )
        self.event_logs = Table(
            "event_logs",
            self.metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("lead_id", String(64), nullable=False, index=True),
            Column("type", String(80), nullable=False),
            Column("payload_json", Text, nullable=False),
            Column("occurred_at", DateTime, nullable=False),
        )
        self.idempotency_keys = Table(
            "idempotency_keys",
            self.metadata,
            Column("id", String(64), primary_key=True),
            Column("workspace_id", String(120), nullable=False),
            Column("key", String(255), nullable=False),
            Column("request_hash", String(64), nullable=False),
            Column("status", String(20), nullable=False),
            Column("response_json", Text, nullable=True),
            Column("created_at", DateTime, nullable=False),
            Column("updated_at", DateTime, nullable=False),
            UniqueConstraint("workspace_id", "key", name="uq_idempotency_keys_scope"),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        with self.engine.begin() as conn:
            yield conn

    def dispose(self) -> None:
        self.engine.dispose()
