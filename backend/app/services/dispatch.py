from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError

from backend.app.models import (
    DispatchResult,
    MessageRecipient,
    MessageStatus,
    OutboundMessageRecord,
    ProofChannel,
    ProofType,
)
from backend.app.services.messaging import ProviderError, SendProvider, sanitize_error
from backend.app.store import LeadStore, StoreConflictError, StoreNotFoundError

logger = logging.getLogger("lead_autopilot.dispatch")


@dataclass(frozen=True)
class DispatchOutcome:
    message_id: str
    result: DispatchResult
    reason: Optional[str] = None
    provider_message_id: Optional[str] = None


@dataclass(frozen=True)
class SweepSummary:
    processed: int
    sent: int
    failed: int


class Dispatcher:
    """
    Sends queued outbound messages. The QUEUED -> SENT/FAILED moves are
    conditional updates; whoever loses the race reports ``skipped(raced)``
    and writes nothing.
    """

    def __init__(self, *, store: LeadStore, provider: SendProvider) -> None:
        self.store = store
        self.provider = provider

    def dispatch_one(self, message_id: str) -> DispatchOutcome:
        with self.store.transaction() as conn:
            message = self.store.find_outbound_message(conn, message_id)
        if message is None:
            return DispatchOutcome(message_id, DispatchResult.skipped, "not_found")
        if message.status != MessageStatus.QUEUED:
            return DispatchOutcome(message_id, DispatchResult.skipped, "not_queued")

        to_phone = (message.to_phone or "").strip()
        if not to_phone:
            return self._fail(message, reason="missing_toPhone", failure_reason="missing_toPhone")

        # No transaction is open across the provider call.
        try:
            receipt = self.provider.send_text(to_phone=to_phone, text=message.text)
        except ProviderError as exc:
            sanitized = sanitize_error(str(exc))
            logger.warning(
                "dispatch_provider_error message_id=%s provider=%s error=%s",
                message.id,
                self.provider.name,
                sanitized,
            )
            return self._fail(message, reason="provider_error", failure_reason=sanitized)

        with self.store.transaction() as conn:
            won = self.store.mark_message_sent(
                conn,
                message_id=message.id,
                provider=receipt.provider,
                provider_message_id=receipt.provider_message_id,
                sent_at=receipt.sent_at,
            )
            if not won:
                logger.info("dispatch_raced message_id=%s", message.id)
                return DispatchOutcome(message.id, DispatchResult.skipped, "raced")
            if message.recipient == MessageRecipient.lead:
                # The provider's "sent" status webhook may have recorded this proof
                # already; only the savepoint is undone, the SENT move still commits.
                try:
                    with conn.begin_nested():
                        self.store.insert_proof_event(
                            conn,
                            lead_id=message.lead_id,
                            channel=ProofChannel.WHATSAPP,
                            type=ProofType.SENT,
                            provider=receipt.provider,
                            provider_message_id=receipt.provider_message_id,
                            occurred_at=receipt.sent_at,
                        )
                except IntegrityError:
                    logger.info(
                        "dispatch_proof_already_recorded message_id=%s provider_message_id=%s",
                        message.id,
                        receipt.provider_message_id,
                    )
            self.store.log_event(
                conn,
                lead_id=message.lead_id,
                event_type="message_sent",
                payload={
                    "messageId": message.id,
                    "channel": message.channel,
                    "provider": receipt.provider,
                    "providerMessageId": receipt.provider_message_id,
                    "toPhone": to_phone,
                    "recipient": message.recipient,
                },
            )
            self.store.log_event(
                conn,
                lead_id=message.lead_id,
                event_type="auto_dispatch_attempted",
                payload={"messageId": message.id, "result": DispatchResult.sent},
            )
        return DispatchOutcome(
            message.id,
            DispatchResult.sent,
            provider_message_id=receipt.provider_message_id,
        )

    def _fail(
        self, message: OutboundMessageRecord, *, reason: str, failure_reason: str
    ) -> DispatchOutcome:
        with self.store.transaction() as conn:
            won = self.store.mark_message_failed(conn, message_id=message.id, reason=failure_reason)
            if not won:
                return DispatchOutcome(message.id, DispatchResult.skipped, "raced")
            failed_payload = {"messageId": message.id, "reason": reason}
            if reason == "provider_error":
                failed_payload["errorMessage"] = failure_reason
            self.store.log_event(
                conn,
                lead_id=message.lead_id,
                event_type="message_failed",
                payload=failed_payload,
            )
            self.store.log_event(
                conn,
                lead_id=message.lead_id,
                event_type="auto_dispatch_attempted",
                payload={"messageId": message.id, "result": DispatchResult.failed, "reason": reason},
            )
        return DispatchOutcome(message.id, DispatchResult.failed, reason)

    def dispatch_queued(self, *, limit: int) -> SweepSummary:
        with self.store.transaction() as conn:
            message_ids = self.store.list_queued_message_ids(conn, limit=limit)
        sent = 0
        failed = 0
        for message_id in message_ids:
            outcome = self.dispatch_one(message_id)
            if outcome.result == DispatchResult.sent:
                sent += 1
            elif outcome.result == DispatchResult.failed:
                failed += 1
        logger.info(
            "dispatch_sweep processed=%s sent=%s failed=%s", len(message_ids), sent, failed
        )
        return SweepSummary(processed=len(message_ids), sent=sent, failed=failed)

    def requeue_failed(self, message_id: str) -> OutboundMessageRecord:
        """Manual re-dispatch: FAILED rows stay FAILED, a fresh QUEUED copy is created."""
        with self.store.transaction() as conn:
            message = self.store.find_outbound_message(conn, message_id)
            if message is None:
                raise StoreNotFoundError(f"outbound message not found: {message_id}")
            if message.status != MessageStatus.FAILED:
                raise StoreConflictError(
                    f"only FAILED messages can be retried, got: {message.status.value}"
                )
            retry = self.store.insert_outbound_message(
                conn,
                lead_id=message.lead_id,
                workspace_id=message.workspace_id,
                recipient=message.recipient,
                to_phone=message.to_phone,
                text=message.text,
                retry_of=message.id,
            )
            self.store.log_event(
                conn,
                lead_id=message.lead_id,
                event_type="message_queued",
                payload={"messageId": retry.id, "retryOf": message.id, "text": retry.text},
            )
        return retry
