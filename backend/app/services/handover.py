from __future__ import annotations

import logging
from typing import Optional

from backend.app.models import (
    DispatchResult,
    LeadRecord,
    MessageRecipient,
    OutboundMessageRecord,
    ScenarioRecord,
)
from backend.app.services.dispatch import Dispatcher
from backend.app.services.templates import handover_notification
from backend.app.store import LeadStore

logger = logging.getLogger("lead_autopilot.handover")


class HandoverNotifier:
    """Best-effort agent notification. Writes messages and event logs, never the run."""

    def __init__(self, *, store: LeadStore, dispatcher: Dispatcher, app_base_url: str) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.app_base_url = app_base_url

    def notify(
        self,
        *,
        lead: LeadRecord,
        scenario: ScenarioRecord,
        answers: Optional[dict[str, str]] = None,
    ) -> str:
        user_id = scenario.handover_user_id
        if not user_id:
            return "skipped"

        intent = (answers or {}).get("intent") or "other"
        message: Optional[OutboundMessageRecord] = None
        with self.store.transaction() as conn:
            user = self.store.find_user(conn, user_id)
            phone = (user.phone or "").strip() if user else ""
            if not phone:
                self.store.log_event(
                    conn,
                    lead_id=lead.id,
                    event_type="handover_notification_blocked",
                    payload={
                        "reason": "missing_agent_phone" if user else "missing_agent",
                        "handoverUserId": user_id,
                        "scenarioId": scenario.id,
                    },
                )
                logger.info(
                    "handover_notification_blocked lead_id=%s handover_user_id=%s", lead.id, user_id
                )
                return "blocked"
            message = self.store.insert_outbound_message(
                conn,
                lead_id=lead.id,
                workspace_id=lead.workspace_id,
                recipient=MessageRecipient.agent,
                to_phone=phone,
                text=handover_notification(
                    lead=lead,
                    reason=f"autopilot handover (intent: {intent})",
                    app_base_url=self.app_base_url,
                ),
            )
            self.store.log_event(
                conn,
                lead_id=lead.id,
                event_type="message_queued",
                payload={
                    "messageId": message.id,
                    "recipient": MessageRecipient.agent,
                    "scenarioId": scenario.id,
                },
            )

        outcome = self.dispatcher.dispatch_one(message.id)
        with self.store.transaction() as conn:
            if outcome.result == DispatchResult.sent:
                self.store.log_event(
                    conn,
                    lead_id=lead.id,
                    event_type="handover_notified",
                    payload={
                        "handoverUserId": user_id,
                        "channel": "whatsapp",
                        "toPhone": phone,
                        "scenarioId": scenario.id,
                        "messageId": message.id,
                    },
                )
                return "notified"
            self.store.log_event(
                conn,
                lead_id=lead.id,
                event_type="handover_notification_failed",
                payload={
                    "handoverUserId": user_id,
                    "scenarioId": scenario.id,
                    "messageId": message.id,
                    "reason": outcome.reason,
                },
            )
        logger.warning(
            "handover_notification_failed lead_id=%s handover_user_id=%s reason=%s",
            lead.id,
            user_id,
            outcome.reason,
        )
        return "failed"
