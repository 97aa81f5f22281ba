from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from backend.app.models import (
    DeliveryStatus,
    InboundMessageRequest,
    LeadStatus,
    ProofChannel,
    ProofEventRecord,
    ProofType,
    WhatsAppStatusRequest,
    as_utc_naive,
    utc_now,
)
from backend.app.services.autopilot import AutopilotEngine, ReplyTurn
from backend.app.services.sla import stop_clock
from backend.app.store import LeadStore, new_id

logger = logging.getLogger("lead_autopilot.proofs")

INBOX_EXTERNAL_ID = "__webhook_inbox__"

STATUS_PROOF_TYPES = {
    DeliveryStatus.sent: ProofType.SENT,
    DeliveryStatus.delivered: ProofType.DELIVERED,
    DeliveryStatus.read: ProofType.READ,
    DeliveryStatus.replied: ProofType.REPLIED,
}
SLA_STOPPING_TYPES = {ProofType.DELIVERED, ProofType.READ, ProofType.REPLIED, ProofType.MANUAL}


@dataclass(frozen=True)
class ProofOutcome:
    proof_event_id: str
    lead_id: str
    type: ProofType
    reused: bool
    sla_stopped: bool


@dataclass(frozen=True)
class InboundOutcome:
    lead_id: Optional[str]
    processed: bool
    reused: bool


def record_proof(
    conn: Connection,
    *,
    store: LeadStore,
    lead_id: str,
    channel: ProofChannel,
    type: ProofType,
    provider: str,
    provider_message_id: str,
    occurred_at: datetime,
    note: Optional[str] = None,
) -> tuple[ProofEventRecord, bool]:
    """
    Returns ``(proof, reused)``. A concurrent writer that loses on the unique
    constraint surfaces as ``IntegrityError`` and aborts the caller's transaction.
    """
    existing = store.find_proof_event(
        conn,
        lead_id=lead_id,
        provider_message_id=provider_message_id,
        type=type,
        channel=channel,
    )
    if existing is not None:
        return existing, True
    proof = store.insert_proof_event(
        conn,
        lead_id=lead_id,
        channel=channel,
        type=type,
        provider=provider,
        provider_message_id=provider_message_id,
        occurred_at=occurred_at,
        note=note,
    )
    return proof, False


def _existing_proof(
    store: LeadStore,
    *,
    lead_id: str,
    provider_message_id: str,
    type: ProofType,
    channel: ProofChannel,
) -> Optional[ProofEventRecord]:
    with store.transaction() as conn:
        return store.find_proof_event(
            conn,
            lead_id=lead_id,
            provider_message_id=provider_message_id,
            type=type,
            channel=channel,
        )


def _stop_for_proof(
    conn: Connection, *, store: LeadStore, proof: ProofEventRecord, reason: str
) -> bool:
    if proof.type not in SLA_STOPPING_TYPES:
        return False
    if store.find_sla_state(conn, proof.lead_id) is None:
        return False
    result = stop_clock(
        store=store,
        lead_id=proof.lead_id,
        reason=reason,
        proof_event_id=proof.id,
        conn=conn,
    )
    return not result.already_stopped


def record_whatsapp_status(*, store: LeadStore, payload: WhatsAppStatusRequest) -> ProofOutcome:
    proof_type = STATUS_PROOF_TYPES[payload.status]
    occurred_at = as_utc_naive(payload.occurred_at) if payload.occurred_at else utc_now()
    try:
        with store.transaction() as conn:
            store.get_lead(conn, payload.lead_id)
            proof, reused = record_proof(
                conn,
                store=store,
                lead_id=payload.lead_id,
                channel=ProofChannel.WHATSAPP,
                type=proof_type,
                provider=payload.provider.value,
                provider_message_id=payload.provider_message_id,
                occurred_at=occurred_at,
            )
            if reused:
                return ProofOutcome(proof.id, payload.lead_id, proof_type, True, False)
            store.log_event(
                conn,
                lead_id=payload.lead_id,
                event_type="proof_whatsapp_status",
                payload={
                    "proofEventId": proof.id,
                    "provider": payload.provider,
                    "providerMessageId": payload.provider_message_id,
                    "status": payload.status,
                    "type": proof_type,
                },
            )
            sla_stopped = _stop_for_proof(conn, store=store, proof=proof, reason="proof_received")
    except IntegrityError:
        existing = _existing_proof(
            store,
            lead_id=payload.lead_id,
            provider_message_id=payload.provider_message_id,
            type=proof_type,
            channel=ProofChannel.WHATSAPP,
        )
        if existing is None:
            raise
        return ProofOutcome(existing.id, payload.lead_id, proof_type, True, False)
    return ProofOutcome(proof.id, payload.lead_id, proof_type, False, sla_stopped)


def record_manual_proof(*, store: LeadStore, lead_id: str, note: str) -> ProofOutcome:
    with store.transaction() as conn:
        store.get_lead(conn, lead_id)
        proof, _ = record_proof(
            conn,
            store=store,
            lead_id=lead_id,
            channel=ProofChannel.MANUAL,
            type=ProofType.MANUAL,
            provider="manual",
            provider_message_id=new_id("note"),
            occurred_at=utc_now(),
            note=note,
        )
        store.log_event(
            conn,
            lead_id=lead_id,
            event_type="proof_manual_recorded",
            payload={"proofEventId": proof.id, "note": note},
        )
        sla_stopped = _stop_for_proof(conn, store=store, proof=proof, reason="manual_proof")
    return ProofOutcome(proof.id, lead_id, ProofType.MANUAL, False, sla_stopped)


def ensure_inbox_lead(*, store: LeadStore, workspace_id: str) -> str:
    with store.transaction() as conn:
        lead_id = store.find_inbox_lead_id(conn, workspace_id)
    if lead_id is not None:
        return lead_id
    try:
        with store.transaction() as conn:
            lead = store.insert_lead(
                conn,
                workspace_id=workspace_id,
                first_name="WhatsApp Inbox",
                source="whatsapp_inbox",
                external_id=INBOX_EXTERNAL_ID,
                status=LeadStatus.ARCHIVED,
            )
            store.insert_inbox(conn, workspace_id=workspace_id, lead_id=lead.id)
            return lead.id
    except IntegrityError:
        with store.transaction() as conn:
            lead_id = store.find_inbox_lead_id(conn, workspace_id)
        if lead_id is None:
            raise
        return lead_id


def _record_unmatched(*, store: LeadStore, payload: InboundMessageRequest, occurred_at: datetime) -> InboundOutcome:
    inbox_lead_id = ensure_inbox_lead(store=store, workspace_id=payload.workspace_id)
    try:
        with store.transaction() as conn:
            proof, reused = record_proof(
                conn,
                store=store,
                lead_id=inbox_lead_id,
                channel=ProofChannel.WHATSAPP,
                type=ProofType.INBOUND,
                provider=payload.provider.value,
                provider_message_id=payload.provider_message_id,
                occurred_at=occurred_at,
            )
            if reused:
                return InboundOutcome(lead_id=None, processed=False, reused=True)
            store.log_event(
                conn,
                lead_id=inbox_lead_id,
                event_type="whatsapp_inbound_unmatched",
                payload={
                    "workspaceId": payload.workspace_id,
                    "fromPhone": payload.from_phone.strip(),
                    "text": payload.text,
                    "provider": payload.provider,
                    "providerMessageId": payload.provider_message_id,
                    "proofEventId": proof.id,
                },
            )
    except IntegrityError:
        if _existing_proof(
            store,
            lead_id=inbox_lead_id,
            provider_message_id=payload.provider_message_id,
            type=ProofType.INBOUND,
            channel=ProofChannel.WHATSAPP,
        ) is None:
            raise
        return InboundOutcome(lead_id=None, processed=False, reused=True)
    logger.info(
        "whatsapp_inbound_unmatched workspace_id=%s provider_message_id=%s",
        payload.workspace_id,
        payload.provider_message_id,
    )
    return InboundOutcome(lead_id=None, processed=False, reused=False)


def handle_inbound_message(
    *, store: LeadStore, engine: AutopilotEngine, payload: InboundMessageRequest
) -> InboundOutcome:
    occurred_at = as_utc_naive(payload.occurred_at) if payload.occurred_at else utc_now()
    from_phone = payload.from_phone.strip()
    with store.transaction() as conn:
        lead = store.find_open_lead_by_phone(
            conn, workspace_id=payload.workspace_id, phone=from_phone
        )
    if lead is None:
        return _record_unmatched(store=store, payload=payload, occurred_at=occurred_at)

    turn: Optional[ReplyTurn] = None
    try:
        with store.transaction() as conn:
            proof, reused = record_proof(
                conn,
                store=store,
                lead_id=lead.id,
                channel=ProofChannel.WHATSAPP,
                type=ProofType.INBOUND,
                provider=payload.provider.value,
                provider_message_id=payload.provider_message_id,
                occurred_at=occurred_at,
            )
            if reused:
                return InboundOutcome(lead_id=lead.id, processed=False, reused=True)
            run, _ = engine.ensure_run(conn, lead)
            store.log_event(
                conn,
                lead_id=lead.id,
                event_type="whatsapp_inbound",
                payload={
                    "fromPhone": from_phone,
                    "text": payload.text,
                    "provider": payload.provider,
                    "providerMessageId": payload.provider_message_id,
                    "proofEventId": proof.id,
                    "scenarioId": run.scenario_id,
                },
            )
            turn = engine.advance(conn, lead_id=lead.id, text=payload.text)
    except IntegrityError:
        if _existing_proof(
            store,
            lead_id=lead.id,
            provider_message_id=payload.provider_message_id,
            type=ProofType.INBOUND,
            channel=ProofChannel.WHATSAPP,
        ) is None:
            raise
        return InboundOutcome(lead_id=lead.id, processed=False, reused=True)
    engine.complete_turn(turn)
    return InboundOutcome(lead_id=lead.id, processed=True, reused=False)
