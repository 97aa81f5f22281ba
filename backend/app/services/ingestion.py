from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError

from backend.app.models import (
    IdempotencyInfo,
    IdempotencyKeyRecord,
    LeadCreateRequest,
    LeadCreateResponse,
    SlaWindow,
    isoformat_utc,
)
from backend.app.services.autopilot import AutopilotEngine
from backend.app.services.sla import start_clock
from backend.app.store import LeadStore

logger = logging.getLogger("lead_autopilot.ingestion")


class IdempotencyConflictError(Exception):
    pass


def request_hash(payload: LeadCreateRequest) -> str:
    canonical = json.dumps(
        payload.model_dump(mode="json", by_alias=True), sort_keys=True, separators=(",", ":")
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _replay(record: IdempotencyKeyRecord, digest: str) -> Optional[dict[str, Any]]:
    if record.request_hash != digest:
        raise IdempotencyConflictError(
            f"idempotency key reused with a different request body: {record.key}"
        )
    if record.status != "COMPLETED" or record.response_json is None:
        return None
    body = json.loads(record.response_json)
    body["idempotency"] = {"reused": True}
    return body


class IngestionGateway:
    """Idempotent lead intake: lead, SLA clock and autopilot run in one transaction."""

    def __init__(self, *, store: LeadStore, engine: AutopilotEngine, default_sla_minutes: int) -> None:
        self.store = store
        self.engine = engine
        self.default_sla_minutes = default_sla_minutes

    def _lookup(self, workspace_id: str, key: str) -> Optional[IdempotencyKeyRecord]:
        with self.store.transaction() as conn:
            return self.store.find_idempotency_key(conn, workspace_id=workspace_id, key=key)

    def create_lead(self, *, payload: LeadCreateRequest, idempotency_key: str) -> tuple[dict[str, Any], bool]:
        """Returns ``(body, reused)``; a replay returns the stored snapshot."""
        digest = request_hash(payload)
        existing = self._lookup(payload.workspace_id, idempotency_key)
        if existing is not None:
            body = _replay(existing, digest)
            if body is not None:
                return body, True

        target_minutes = payload.sla_target_minutes or self.default_sla_minutes
        try:
            with self.store.transaction() as conn:
                key_record = self.store.insert_idempotency_key(
                    conn,
                    workspace_id=payload.workspace_id,
                    key=idempotency_key,
                    request_hash=digest,
                )
                lead = self.store.insert_lead(
                    conn,
                    workspace_id=payload.workspace_id,
                    first_name=_clean(payload.first_name),
                    last_name=_clean(payload.last_name),
                    email=_clean(payload.email),
                    phone=_clean(payload.phone),
                    source=_clean(payload.source),
                    external_id=_clean(payload.external_id),
                )
                self.store.log_event(
                    conn,
                    lead_id=lead.id,
                    event_type="lead_received",
                    payload={"workspaceId": lead.workspace_id, "source": lead.source},
                    occurred_at=lead.created_at,
                )
                sla = start_clock(
                    conn,
                    store=self.store,
                    lead_id=lead.id,
                    target_minutes=target_minutes,
                    now=lead.created_at,
                )
                self.engine.start_run(conn, lead)
                body = LeadCreateResponse(
                    lead_id=lead.id,
                    sla=SlaWindow(
                        started_at=isoformat_utc(sla.started_at),
                        deadline_at=isoformat_utc(sla.deadline_at),
                    ),
                    idempotency=IdempotencyInfo(reused=False),
                ).model_dump(by_alias=True)
                self.store.complete_idempotency_key(
                    conn, record_id=key_record.id, response_json=json.dumps(body)
                )
        except IntegrityError:
            # Another request with this key committed first.
            winner = self._lookup(payload.workspace_id, idempotency_key)
            if winner is None:
                raise
            replay = _replay(winner, digest)
            if replay is None:
                raise
            return replay, True

        logger.info(
            "lead_received lead_id=%s workspace_id=%s target_minutes=%s",
            lead.id,
            lead.workspace_id,
            target_minutes,
        )
        return body, False
