from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any, ContextManager, Mapping, Optional
from uuid import uuid4

from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.engine import Connection

from backend.app.models import (
    CLOSED_LEAD_STATUSES,
    EventLogRecord,
    IdempotencyKeyRecord,
    LeadRecord,
    LeadStatus,
    MessageChannel,
    MessageRecipient,
    MessageStatus,
    OutboundMessageRecord,
    ProofChannel,
    ProofEventRecord,
    ProofType,
    RunRecord,
    RunState,
    RunStatus,
    SLAStateRecord,
    ScenarioRecord,
    SlaFilter,
    UserRecord,
    isoformat_utc,
    utc_now,
)
from backend.app.persistence import Persistence


class StoreNotFoundError(Exception):
    pass


class StoreConflictError(Exception):
    pass


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:10]}"


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return isoformat_utc(value)
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"unserializable event payload value: {type(value).__name__}")


def _dump_json(payload: Any) -> str:
    return json.dumps(payload, default=_json_default)


class LeadStore:
    """
    Data access for every entity. Methods take the caller's connection so a
    service can compose several writes into one transaction.

    The ``mark_*``/``stop_*`` methods are compare-and-set updates: they return
    True only for the caller whose conditional UPDATE actually changed a row.
    """

    def __init__(self, persistence: Persistence) -> None:
        self.persistence = persistence

    def transaction(self) -> ContextManager[Connection]:
        return self.persistence.transaction()

    def ping(self) -> bool:
        return self.persistence.ping()

    # Leads

    def insert_lead(
        self,
        conn: Connection,
        *,
        workspace_id: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        source: Optional[str] = None,
        external_id: Optional[str] = None,
        status: LeadStatus = LeadStatus.NEW,
        now: Optional[datetime] = None,
    ) -> LeadRecord:
        now = now or utc_now()
        record = LeadRecord(
            id=new_id("lead"),
            workspace_id=workspace_id,
            first_name=first_name,
            last_name=last_name,
            email=email,
            phone=phone,
            source=source,
            external_id=external_id,
            status=status,
            created_at=now,
            updated_at=now,
        )
        values = record.model_dump(mode="python")
        values["status"] = record.status.value
        conn.execute(insert(self.persistence.leads).values(**values))
        return record

    def find_lead(self, conn: Connection, lead_id: str) -> Optional[LeadRecord]:
        table = self.persistence.leads
        row = conn.execute(select(table).where(table.c.id == lead_id)).mappings().first()
        return LeadRecord.model_validate(dict(row)) if row else None

    def get_lead(self, conn: Connection, lead_id: str) -> LeadRecord:
        lead = self.find_lead(conn, lead_id)
        if lead is None:
            raise StoreNotFoundError(f"lead not found: {lead_id}")
        return lead

    def find_open_lead_by_phone(
        self, conn: Connection, *, workspace_id: str, phone: str
    ) -> Optional[LeadRecord]:
        table = self.persistence.leads
        closed = [status.value for status in CLOSED_LEAD_STATUSES]
        row = (
            conn.execute(
                select(table)
                .where(
                    table.c.workspace_id == workspace_id,
                    table.c.phone == phone,
                    table.c.status.not_in(closed),
                )
                .order_by(table.c.created_at.desc())
                .limit(1)
            )
            .mappings()
            .first()
        )
        return LeadRecord.model_validate(dict(row)) if row else None

    def update_lead_status(
        self, conn: Connection, lead_id: str, status: LeadStatus
    ) -> LeadRecord:
        table = self.persistence.leads
        result = conn.execute(
            update(table)
            .where(table.c.id == lead_id)
            .values(status=status.value, updated_at=utc_now())
        )
        if result.rowcount == 0:
            raise StoreNotFoundError(f"lead not found: {lead_id}")
        return self.get_lead(conn, lead_id)

    def list_leads(
        self,
        conn: Connection,
        *,
        workspace_id: Optional[str] = None,
        sla_filter: Optional[SlaFilter] = None,
        limit: int = 50,
    ) -> list[tuple[LeadRecord, Optional[SLAStateRecord]]]:
        leads = self.persistence.leads
        sla = self.persistence.sla_states
        inboxes = self.persistence.workspace_inboxes
        query = (
            select(leads, sla.c.id.label("sla_id"))
            .select_from(leads.outerjoin(sla, sla.c.lead_id == leads.c.id))
            .where(leads.c.id.not_in(select(inboxes.c.lead_id)))
        )
        if workspace_id:
            query = query.where(leads.c.workspace_id == workspace_id)
        if sla_filter == SlaFilter.running:
            query = query.where(sla.c.stopped_at.is_(None), sla.c.breached_at.is_(None))
        elif sla_filter == SlaFilter.stopped:
            query = query.where(sla.c.stopped_at.is_not(None))
        elif sla_filter == SlaFilter.breached:
            query = query.where(sla.c.breached_at.is_not(None))
        rows = conn.execute(
            query.order_by(leads.c.created_at.desc()).limit(limit)
        ).mappings().all()
        output: list[tuple[LeadRecord, Optional[SLAStateRecord]]] = []
        for row in rows:
            values = dict(row)
            values.pop("sla_id")
            lead = LeadRecord.model_validate(values)
            output.append((lead, self.find_sla_state(conn, lead.id)))
        return output

    def lead_has_history(self, conn: Connection, lead_id: str) -> bool:
        p = self.persistence
        for table in (
            p.event_logs,
            p.proof_events,
            p.outbound_messages,
            p.sla_states,
            p.autopilot_runs,
        ):
            count = conn.execute(
                select(func.count()).select_from(table).where(table.c.lead_id == lead_id)
            ).scalar_one()
            if count:
                return True
        return False

    def delete_lead(self, conn: Connection, lead_id: str) -> None:
        self.get_lead(conn, lead_id)
        if self.lead_has_history(conn, lead_id):
            raise StoreConflictError(f"lead has history and cannot be deleted: {lead_id}")
        conn.execute(delete(self.persistence.leads).where(self.persistence.leads.c.id == lead_id))

    # Workspace inbox

    def find_inbox_lead_id(self, conn: Connection, workspace_id: str) -> Optional[str]:
        table = self.persistence.workspace_inboxes
        return conn.execute(
            select(table.c.lead_id).where(table.c.workspace_id == workspace_id)
        ).scalar_one_or_none()

    def insert_inbox(self, conn: Connection, *, workspace_id: str, lead_id: str) -> None:
        conn.execute(
            insert(self.persistence.workspace_inboxes).values(
                workspace_id=workspace_id,
                lead_id=lead_id,
                created_at=utc_now(),
            )
        )

    # Users

    def insert_user(
        self,
        conn: Connection,
        *,
        workspace_id: str,
        name: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> UserRecord:
        record = UserRecord(
            id=new_id("usr"),
            workspace_id=workspace_id,
            name=name,
            email=email,
            phone=phone,
            created_at=utc_now(),
        )
        conn.execute(insert(self.persistence.users).values(**record.model_dump(mode="python")))
        return record

    def find_user(self, conn: Connection, user_id: str) -> Optional[UserRecord]:
        table = self.persistence.users
        row = conn.execute(select(table).where(table.c.id == user_id)).mappings().first()
        return UserRecord.model_validate(dict(row)) if row else None

    # SLA clock

    def insert_sla_state(
        self,
        conn: Connection,
        *,
        lead_id: str,
        started_at: datetime,
        deadline_at: datetime,
        target_minutes: int,
    ) -> SLAStateRecord:
        record = SLAStateRecord(
            id=new_id("sla"),
            lead_id=lead_id,
            started_at=started_at,
            deadline_at=deadline_at,
            target_minutes=target_minutes,
        )
        conn.execute(
            insert(self.persistence.sla_states).values(**record.model_dump(mode="python"))
        )
        return record

    def find_sla_state(self, conn: Connection, lead_id: str) -> Optional[SLAStateRecord]:
        table = self.persistence.sla_states
        row = conn.execute(select(table).where(table.c.lead_id == lead_id)).mappings().first()
        return SLAStateRecord.model_validate(dict(row)) if row else None

    def stop_sla_clock(
        self,
        conn: Connection,
        *,
        lead_id: str,
        reason: str,
        proof_event_id: Optional[str],
        now: datetime,
    ) -> bool:
        table = self.persistence.sla_states
        result = conn.execute(
            update(table)
            .where(table.c.lead_id == lead_id, table.c.stopped_at.is_(None))
            .values(stopped_at=now, stop_reason=reason, stop_proof_event_id=proof_event_id)
        )
        return result.rowcount == 1

    def list_overdue_sla_states(
        self, conn: Connection, *, now: datetime, limit: int = 500
    ) -> list[SLAStateRecord]:
        table = self.persistence.sla_states
        rows = conn.execute(
            select(table)
            .where(
                table.c.deadline_at <= now,
                table.c.breached_at.is_(None),
                table.c.stopped_at.is_(None),
            )
            .order_by(table.c.deadline_at.asc())
            .limit(limit)
        ).mappings().all()
        return [SLAStateRecord.model_validate(dict(row)) for row in rows]

    def mark_sla_breached(self, conn: Connection, *, sla_id: str, now: datetime) -> bool:
        table = self.persistence.sla_states
        result = conn.execute(
            update(table)
            .where(
                table.c.id == sla_id,
                table.c.breached_at.is_(None),
                table.c.stopped_at.is_(None),
                table.c.deadline_at <= now,
            )
            .values(breached_at=now)
        )
        return result.rowcount == 1

    # Scenarios

    def _scenario_from_row(self, row: Mapping[str, Any]) -> ScenarioRecord:
        values = dict(row)
        values["required_slots"] = json.loads(values.pop("required_slots_json") or "[]")
        values["is_default"] = bool(values["is_default"])
        return ScenarioRecord.model_validate(values)

    def insert_scenario(self, conn: Connection, **fields: Any) -> ScenarioRecord:
        now = utc_now()
        record = ScenarioRecord(id=new_id("scn"), created_at=now, updated_at=now, **fields)
        values = record.model_dump(mode="python", exclude={"required_slots"})
        values["required_slots_json"] = _dump_json(record.required_slots)
        values["mode"] = record.mode.value
        conn.execute(insert(self.persistence.autopilot_scenarios).values(**values))
        return record

    def find_scenario(self, conn: Connection, scenario_id: str) -> Optional[ScenarioRecord]:
        table = self.persistence.autopilot_scenarios
        row = conn.execute(select(table).where(table.c.id == scenario_id)).mappings().first()
        return self._scenario_from_row(row) if row else None

    def get_scenario(self, conn: Connection, scenario_id: str) -> ScenarioRecord:
        scenario = self.find_scenario(conn, scenario_id)
        if scenario is None:
            raise StoreNotFoundError(f"scenario not found: {scenario_id}")
        return scenario

    def find_default_scenario(
        self, conn: Connection, workspace_id: str
    ) -> Optional[ScenarioRecord]:
        table = self.persistence.autopilot_scenarios
        row = conn.execute(
            select(table).where(
                table.c.workspace_id == workspace_id,
                table.c.is_default.is_(True),
            )
        ).mappings().first()
        return self._scenario_from_row(row) if row else None

    def list_scenarios(self, conn: Connection, workspace_id: str) -> list[ScenarioRecord]:
        table = self.persistence.autopilot_scenarios
        rows = conn.execute(
            select(table)
            .where(table.c.workspace_id == workspace_id)
            .order_by(table.c.created_at.asc(), table.c.id.asc())
        ).mappings().all()
        return [self._scenario_from_row(row) for row in rows]

    def update_scenario(
        self, conn: Connection, scenario_id: str, values: dict[str, Any]
    ) -> ScenarioRecord:
        table = self.persistence.autopilot_scenarios
        row_values = dict(values)
        if "required_slots" in row_values:
            row_values["required_slots_json"] = _dump_json(row_values.pop("required_slots"))
        if "mode" in row_values and isinstance(row_values["mode"], Enum):
            row_values["mode"] = row_values["mode"].value
        row_values["updated_at"] = utc_now()
        result = conn.execute(update(table).where(table.c.id == scenario_id).values(**row_values))
        if result.rowcount == 0:
            raise StoreNotFoundError(f"scenario not found: {scenario_id}")
        return self.get_scenario(conn, scenario_id)

    def clear_default_scenarios(self, conn: Connection, workspace_id: str) -> None:
        table = self.persistence.autopilot_scenarios
        conn.execute(
            update(table)
            .where(table.c.workspace_id == workspace_id, table.c.is_default.is_(True))
            .values(is_default=False, updated_at=utc_now())
        )

    def delete_scenario(self, conn: Connection, scenario_id: str) -> None:
        table = self.persistence.autopilot_scenarios
        conn.execute(delete(table).where(table.c.id == scenario_id))

    # Autopilot runs

    def _run_from_row(self, row: Mapping[str, Any]) -> RunRecord:
        values = dict(row)
        values["state"] = RunState.model_validate_json(values.pop("state_json"))
        return RunRecord.model_validate(values)

    def insert_run(
        self,
        conn: Connection,
        *,
        lead_id: str,
        workspace_id: str,
        scenario_id: str,
        state: RunState,
        current_step: str,
    ) -> RunRecord:
        now = utc_now()
        record = RunRecord(
            id=new_id("run"),
            lead_id=lead_id,
            workspace_id=workspace_id,
            scenario_id=scenario_id,
            status=RunStatus.ACTIVE,
            current_step=current_step,
            state=state,
            created_at=now,
            updated_at=now,
        )
        values = record.model_dump(mode="python", exclude={"state"})
        values["status"] = record.status.value
        values["state_json"] = state.model_dump_json(by_alias=True)
        conn.execute(insert(self.persistence.autopilot_runs).values(**values))
        return record

    def find_run_by_lead(self, conn: Connection, lead_id: str) -> Optional[RunRecord]:
        table = self.persistence.autopilot_runs
        row = conn.execute(select(table).where(table.c.lead_id == lead_id)).mappings().first()
        return self._run_from_row(row) if row else None

    def get_run(self, conn: Connection, run_id: str) -> RunRecord:
        table = self.persistence.autopilot_runs
        row = conn.execute(select(table).where(table.c.id == run_id)).mappings().first()
        if row is None:
            raise StoreNotFoundError(f"autopilot run not found: {run_id}")
        return self._run_from_row(row)

    def list_runs(
        self,
        conn: Connection,
        *,
        workspace_id: Optional[str] = None,
        scenario_id: Optional[str] = None,
    ) -> list[RunRecord]:
        table = self.persistence.autopilot_runs
        query = select(table)
        if workspace_id is not None:
            query = query.where(table.c.workspace_id == workspace_id)
        if scenario_id is not None:
            query = query.where(table.c.scenario_id == scenario_id)
        rows = conn.execute(query.order_by(table.c.created_at.asc())).mappings().all()
        return [self._run_from_row(row) for row in rows]

    def save_run(
        self,
        conn: Connection,
        run: RunRecord,
    ) -> RunRecord:
        table = self.persistence.autopilot_runs
        updated = run.model_copy(update={"updated_at": utc_now()})
        result = conn.execute(
            update(table)
            .where(table.c.id == run.id)
            .values(
                scenario_id=updated.scenario_id,
                status=updated.status.value,
                current_step=updated.current_step,
                state_json=updated.state.model_dump_json(by_alias=True),
                last_inbound_at=updated.last_inbound_at,
                last_outbound_at=updated.last_outbound_at,
                updated_at=updated.updated_at,
            )
        )
        if result.rowcount == 0:
            raise StoreNotFoundError(f"autopilot run not found: {run.id}")
        return updated

    # Outbound messages

    def insert_outbound_message(
        self,
        conn: Connection,
        *,
        lead_id: str,
        workspace_id: str,
        recipient: MessageRecipient,
        to_phone: Optional[str],
        text: str,
        retry_of: Optional[str] = None,
    ) -> OutboundMessageRecord:
        now = utc_now()
        record = OutboundMessageRecord(
            id=new_id("msg"),
            lead_id=lead_id,
            workspace_id=workspace_id,
            channel=MessageChannel.WHATSAPP,
            recipient=recipient,
            to_phone=to_phone,
            text=text,
            status=MessageStatus.QUEUED,
            retry_of=retry_of,
            created_at=now,
            updated_at=now,
        )
        values = record.model_dump(mode="python")
        for key in ("channel", "recipient", "status"):
            values[key] = values[key].value
        conn.execute(insert(self.persistence.outbound_messages).values(**values))
        return record

    def find_outbound_message(
        self, conn: Connection, message_id: str
    ) -> Optional[OutboundMessageRecord]:
        table = self.persistence.outbound_messages
        row = conn.execute(select(table).where(table.c.id == message_id)).mappings().first()
        return OutboundMessageRecord.model_validate(dict(row)) if row else None

    def list_queued_message_ids(self, conn: Connection, *, limit: int) -> list[str]:
        table = self.persistence.outbound_messages
        return list(
            conn.execute(
                select(table.c.id)
                .where(table.c.status == MessageStatus.QUEUED.value)
                .order_by(table.c.created_at.asc(), table.c.id.asc())
                .limit(limit)
            ).scalars()
        )

    def list_lead_messages(self, conn: Connection, lead_id: str) -> list[OutboundMessageRecord]:
        table = self.persistence.outbound_messages
        rows = conn.execute(
            select(table).where(table.c.lead_id == lead_id).order_by(table.c.created_at.asc())
        ).mappings().all()
        return [OutboundMessageRecord.model_validate(dict(row)) for row in rows]

    def mark_message_sent(
        self,
        conn: Connection,
        *,
        message_id: str,
        provider: str,
        provider_message_id: str,
        sent_at: datetime,
    ) -> bool:
        table = self.persistence.outbound_messages
        result = conn.execute(
            update(table)
            .where(table.c.id == message_id, table.c.status == MessageStatus.QUEUED.value)
            .values(
                status=MessageStatus.SENT.value,
                provider=provider,
                provider_message_id=provider_message_id,
                sent_at=sent_at,
                updated_at=utc_now(),
            )
        )
        return result.rowcount == 1

    def mark_message_failed(self, conn: Connection, *, message_id: str, reason: str) -> bool:
        table = self.persistence.outbound_messages
        result = conn.execute(
            update(table)
            .where(table.c.id == message_id, table.c.status == MessageStatus.QUEUED.value)
            .values(
                status=MessageStatus.FAILED.value,
                failure_reason=reason,
                updated_at=utc_now(),
            )
        )
        return result.rowcount == 1

    # Proof events

    def insert_proof_event(
        self,
        conn: Connection,
        *,
        lead_id: str,
        channel: ProofChannel,
        type: ProofType,
        provider: str,
        provider_message_id: str,
        occurred_at: datetime,
        note: Optional[str] = None,
    ) -> ProofEventRecord:
        """Raises ``IntegrityError`` when the proof identity was already recorded."""
        record = ProofEventRecord(
            id=new_id("prf"),
            lead_id=lead_id,
            channel=channel,
            type=type,
            provider=provider,
            provider_message_id=provider_message_id,
            occurred_at=occurred_at,
            note=note,
            created_at=utc_now(),
        )
        values = record.model_dump(mode="python")
        values["channel"] = record.channel.value
        values["type"] = record.type.value
        conn.execute(insert(self.persistence.proof_events).values(**values))
        return record

    def find_proof_event(
        self,
        conn: Connection,
        *,
        lead_id: str,
        provider_message_id: str,
        type: ProofType,
        channel: ProofChannel,
    ) -> Optional[ProofEventRecord]:
        table = self.persistence.proof_events
        row = conn.execute(
            select(table).where(
                table.c.lead_id == lead_id,
                table.c.provider_message_id == provider_message_id,
                table.c.type == type.value,
                table.c.channel == channel.value,
            )
        ).mappings().first()
        return ProofEventRecord.model_validate(dict(row)) if row else None

    def list_proof_events(
        self, conn: Connection, lead_id: str, *, type: Optional[ProofType] = None
    ) -> list[ProofEventRecord]:
        table = self.persistence.proof_events
        query = select(table).where(table.c.lead_id == lead_id)
        if type is not None:
            query = query.where(table.c.type == type.value)
        rows = conn.execute(query.order_by(table.c.created_at.asc())).mappings().all()
        return [ProofEventRecord.model_validate(dict(row)) for row in rows]

    # Event log

    def log_event(
        self,
        conn: Connection,
        *,
        lead_id: str,
        event_type: str,
        payload: Optional[dict[str, Any]] = None,
        occurred_at: Optional[datetime] = None,
    ) -> None:
        conn.execute(
            insert(self.persistence.event_logs).values(
                lead_id=lead_id,
                type=event_type,
                payload_json=_dump_json(payload or {}),
                occurred_at=occurred_at or utc_now(),
            )
        )

    def list_events(
        self,
        conn: Connection,
        lead_id: str,
        *,
        event_type: Optional[str] = None,
    ) -> list[EventLogRecord]:
        table = self.persistence.event_logs
        query = select(table).where(table.c.lead_id == lead_id)
        if event_type is not None:
            query = query.where(table.c.type == event_type)
        rows = conn.execute(
            query.order_by(table.c.occurred_at.asc(), table.c.id.asc())
        ).mappings().all()
        output: list[EventLogRecord] = []
        for row in rows:
            values = dict(row)
            values["payload"] = json.loads(values.pop("payload_json"))
            output.append(EventLogRecord.model_validate(values))
        return output

    def backlog_counts(self, conn: Connection) -> dict[str, int]:
        messages = self.persistence.outbound_messages
        sla = self.persistence.sla_states
        queued = conn.execute(
            select(func.count())
            .select_from(messages)
            .where(messages.c.status == MessageStatus.QUEUED.value)
        ).scalar_one()
        running = conn.execute(
            select(func.count())
            .select_from(sla)
            .where(sla.c.stopped_at.is_(None), sla.c.breached_at.is_(None))
        ).scalar_one()
        breached_open = conn.execute(
            select(func.count())
            .select_from(sla)
            .where(sla.c.stopped_at.is_(None), sla.c.breached_at.is_not(None))
        ).scalar_one()
        return {
            "queued_messages": queued,
            "sla_running": running,
            "sla_breached_open": breached_open,
        }

    # Idempotency keys

    def find_idempotency_key(
        self, conn: Connection, *, workspace_id: str, key: str
    ) -> Optional[IdempotencyKeyRecord]:
        table = self.persistence.idempotency_keys
        row = conn.execute(
            select(table).where(and_(table.c.workspace_id == workspace_id, table.c.key == key))
        ).mappings().first()
        if row is None:
            return None
        values = dict(row)
        values.pop("updated_at")
        return IdempotencyKeyRecord.model_validate(values)

    def insert_idempotency_key(
        self, conn: Connection, *, workspace_id: str, key: str, request_hash: str
    ) -> IdempotencyKeyRecord:
        """Raises ``IntegrityError`` when the key is already taken in this workspace."""
        now = utc_now()
        record = IdempotencyKeyRecord(
            id=new_id("idem"),
            workspace_id=workspace_id,
            key=key,
            request_hash=request_hash,
            status="IN_PROGRESS",
            created_at=now,
        )
        conn.execute(
            insert(self.persistence.idempotency_keys).values(
                **record.model_dump(mode="python"), updated_at=now
            )
        )
        return record

    def complete_idempotency_key(
        self, conn: Connection, *, record_id: str, response_json: str
    ) -> None:
        table = self.persistence.idempotency_keys
        conn.execute(
            update(table)
            .where(table.c.id == record_id)
            .values(status="COMPLETED", response_json=response_json, updated_at=utc_now())
        )
