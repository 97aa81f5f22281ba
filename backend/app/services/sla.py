from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.engine import Connection

from backend.app.models import SLAStateRecord, utc_now
from backend.app.store import LeadStore, StoreNotFoundError

logger = logging.getLogger("lead_autopilot.sla")


@dataclass(frozen=True)
class StopResult:
    already_stopped: bool
    stopped_at: Optional[datetime] = None


@dataclass(frozen=True)
class BreachSweepResult:
    processed: int
    breached: int


def start_clock(
    conn: Connection,
    *,
    store: LeadStore,
    lead_id: str,
    target_minutes: int,
    now: Optional[datetime] = None,
) -> SLAStateRecord:
    started_at = now or utc_now()
    record = store.insert_sla_state(
        conn,
        lead_id=lead_id,
        started_at=started_at,
        deadline_at=started_at + timedelta(minutes=target_minutes),
        target_minutes=target_minutes,
    )
    store.log_event(
        conn,
        lead_id=lead_id,
        event_type="sla_started",
        payload={
            "startedAt": record.started_at,
            "deadlineAt": record.deadline_at,
            "targetMinutes": target_minutes,
        },
        occurred_at=started_at,
    )
    return record


def _stop(
    conn: Connection,
    *,
    store: LeadStore,
    lead_id: str,
    reason: str,
    proof_event_id: Optional[str],
    now: datetime,
) -> StopResult:
    if store.find_sla_state(conn, lead_id) is None:
        raise StoreNotFoundError(f"sla clock not found for lead: {lead_id}")
    if not store.stop_sla_clock(
        conn, lead_id=lead_id, reason=reason, proof_event_id=proof_event_id, now=now
    ):
        return StopResult(already_stopped=True)
    store.log_event(
        conn,
        lead_id=lead_id,
        event_type="sla_stopped",
        payload={"reason": reason, "proofEventId": proof_event_id, "stoppedAt": now},
        occurred_at=now,
    )
    logger.info("sla_stopped lead_id=%s reason=%s", lead_id, reason)
    return StopResult(already_stopped=False, stopped_at=now)


def stop_clock(
    *,
    store: LeadStore,
    lead_id: str,
    reason: str,
    proof_event_id: Optional[str] = None,
    conn: Optional[Connection] = None,
    now: Optional[datetime] = None,
) -> StopResult:
    now = now or utc_now()
    if conn is not None:
        return _stop(
            conn, store=store, lead_id=lead_id, reason=reason, proof_event_id=proof_event_id, now=now
        )
    with store.transaction() as own_conn:
        return _stop(
            own_conn,
            store=store,
            lead_id=lead_id,
            reason=reason,
            proof_event_id=proof_event_id,
            now=now,
        )


def breach_sweep(*, store: LeadStore, now: Optional[datetime] = None) -> BreachSweepResult:
    now = now or utc_now()
    with store.transaction() as conn:
        candidates = store.list_overdue_sla_states(conn, now=now)
    breached = 0
    for candidate in candidates:
        with store.transaction() as conn:
            if not store.mark_sla_breached(conn, sla_id=candidate.id, now=now):
                continue
            store.log_event(
                conn,
                lead_id=candidate.lead_id,
                event_type="sla_breached",
                payload={"deadlineAt": candidate.deadline_at, "breachedAt": now},
                occurred_at=now,
            )
        breached += 1
    if candidates:
        logger.info("sla_breach_sweep processed=%s breached=%s", len(candidates), breached)
    return BreachSweepResult(processed=len(candidates), breached=breached)
