from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from backend.app.models import (
    MessageRecipient,
    MessageStatus,
    ProofType,
    WhatsAppStatusRequest,
    utc_now,
)
from backend.app.services.messaging import (
    ProviderError,
    SendReceipt,
    StubProvider,
    TwilioProvider,
    build_provider,
    sanitize_error,
)
from backend.app.services.proofs import record_whatsapp_status
from backend.app.settings import ServerMisconfigurationError, load_settings


class FailingProvider:
    name = "twilio"

    def send_text(self, *, to_phone: str, text: str) -> SendReceipt:
        raise ProviderError("Twilio returned 401 for account AC0123: bad credentials")


class ReentrantProvider:
    """Re-dispatches the same message from inside the first send, so the outer caller loses."""

    name = "stub"

    def __init__(self) -> None:
        self.dispatcher = None
        self.pending_id = ""
        self.calls = 0
        self.inner_outcome = None

    def send_text(self, *, to_phone: str, text: str) -> SendReceipt:
        self.calls += 1
        if self.calls == 1:
            self.inner_outcome = self.dispatcher.dispatch_one(self.pending_id)
        return SendReceipt(provider=self.name, provider_message_id=f"race_{self.calls}", sent_at=utc_now())


class StatusFirstProvider:
    """The provider's "sent" status webhook is recorded before send_text returns."""

    name = "stub"

    def __init__(self, store, lead_id: str) -> None:
        self.store = store
        self.lead_id = lead_id

    def send_text(self, *, to_phone: str, text: str) -> SendReceipt:
        record_whatsapp_status(
            store=self.store,
            payload=WhatsAppStatusRequest(
                lead_id=self.lead_id,
                provider="stub",
                provider_message_id="pm_1",
                status="sent",
            ),
        )
        return SendReceipt(provider=self.name, provider_message_id="pm_1", sent_at=utc_now())


class LoopRecordingProvider(StubProvider):
    """Notes whether each send ran on a thread that is driving an event loop."""

    def __init__(self) -> None:
        super().__init__()
        self.on_event_loop: list[bool] = []

    def send_text(self, *, to_phone: str, text: str) -> SendReceipt:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self.on_event_loop.append(False)
        else:
            self.on_event_loop.append(True)
        return super().send_text(to_phone=to_phone, text=text)


def _messages(store, lead_id: str):
    with store.transaction() as conn:
        return store.list_lead_messages(conn, lead_id)


def test_sweep_sends_queued_welcome(client, store, ingest_lead, events) -> None:
    lead_id = ingest_lead()

    first = client.post("/messages/dispatch")
    second = client.post("/messages/dispatch")

    assert first.json() == {"processed": 1, "sent": 1, "failed": 0}
    assert second.json() == {"processed": 0, "sent": 0, "failed": 0}
    [message] = _messages(store, lead_id)
    assert message.status == MessageStatus.SENT
    assert message.provider == "stub"
    assert message.provider_message_id.startswith("stub_")
    sent = events(lead_id, "message_sent")
    assert len(sent) == 1
    assert sent[0].payload["toPhone"] == "+40700000001"
    with store.transaction() as conn:
        proofs = store.list_proof_events(conn, lead_id, type=ProofType.SENT)
    assert [proof.provider_message_id for proof in proofs] == [message.provider_message_id]


def test_concurrent_dispatch_has_single_winner(client, store, ingest_lead, events) -> None:
    lead_id = ingest_lead()
    [message] = _messages(store, lead_id)
    dispatcher = client.app.state.dispatcher
    provider = ReentrantProvider()
    provider.dispatcher = dispatcher
    provider.pending_id = message.id
    dispatcher.provider = provider

    outer = dispatcher.dispatch_one(message.id)

    assert provider.inner_outcome.result.value == "sent"
    assert outer.result.value == "skipped"
    assert outer.reason == "raced"
    [after] = _messages(store, lead_id)
    assert after.status == MessageStatus.SENT
    assert after.provider_message_id == "race_2"
    with store.transaction() as conn:
        proofs = store.list_proof_events(conn, lead_id, type=ProofType.SENT)
    assert len(proofs) == 1
    assert len(events(lead_id, "message_sent")) == 1


def test_status_webhook_before_send_returns_keeps_message_sent(client, store, ingest_lead, events) -> None:
    lead_id = ingest_lead()
    client.app.state.dispatcher.provider = StatusFirstProvider(store, lead_id)

    sweep = client.post("/messages/dispatch")
    reply = client.post("/autopilot/reply", json={"leadId": lead_id, "text": "I need pricing"})

    assert sweep.status_code == 200
    assert sweep.json() == {"processed": 1, "sent": 1, "failed": 0}
    assert reply.status_code == 200
    assert reply.json()["queuedMessage"]["status"] == "SENT"
    assert [item.status for item in _messages(store, lead_id)] == [MessageStatus.SENT, MessageStatus.SENT]
    with store.transaction() as conn:
        proofs = store.list_proof_events(conn, lead_id, type=ProofType.SENT)
    assert [proof.provider_message_id for proof in proofs] == ["pm_1"]
    assert len(events(lead_id, "message_sent")) == 2


def test_provider_sends_run_off_the_event_loop(client, ingest_lead) -> None:
    lead_id = ingest_lead()
    provider = LoopRecordingProvider()
    client.app.state.dispatcher.provider = provider

    reply = client.post("/autopilot/reply", json={"leadId": lead_id, "text": "I need pricing"})
    inbound = client.post(
        "/whatsapp/webhook/inbound",
        json={
            "workspaceId": "ws_1",
            "fromPhone": "+40700000001",
            "text": "2 bedrooms",
            "provider": "twilio",
            "providerMessageId": "wamid.loop",
        },
    )

    assert reply.status_code == 200
    assert inbound.status_code == 201
    assert len(provider.on_event_loop) >= 2
    assert not any(provider.on_event_loop)


def test_provider_failure_marks_failed_without_failing_reply(client, store, ingest_lead, events) -> None:
    lead_id = ingest_lead()
    client.app.state.dispatcher.provider = FailingProvider()

    response = client.post("/autopilot/reply", json={"leadId": lead_id, "text": "I need pricing"})

    assert response.status_code == 200
    assert response.json()["queuedMessage"]["status"] == "FAILED"
    assert response.json()["autopilot"]["questionIndex"] == 1
    failed = events(lead_id, "message_failed")
    assert len(failed) == 1
    assert failed[0].payload["reason"] == "provider_error"
    assert failed[0].payload["errorMessage"] == "provider_error"
    failed_rows = [item for item in _messages(store, lead_id) if item.status == MessageStatus.FAILED]
    assert len(failed_rows) == 1
    assert failed_rows[0].failure_reason == "provider_error"


def test_retry_requeues_failed_message(client, store, ingest_lead) -> None:
    lead_id = ingest_lead()
    dispatcher = client.app.state.dispatcher
    dispatcher.provider = FailingProvider()
    client.post("/messages/dispatch")
    [failed] = _messages(store, lead_id)
    assert failed.status == MessageStatus.FAILED

    retry = client.post(f"/messages/{failed.id}/retry")
    again = client.post(f"/messages/{retry.json()['messageId']}/retry")
    dispatcher.provider = StubProvider()
    sweep = client.post("/messages/dispatch")

    assert retry.status_code == 201
    assert retry.json()["retryOf"] == failed.id
    assert retry.json()["status"] == "QUEUED"
    assert again.status_code == 409
    assert sweep.json()["sent"] == 1
    statuses = sorted(item.status.value for item in _messages(store, lead_id))
    assert statuses == ["FAILED", "SENT"]
    assert client.post("/messages/msg_missing/retry").status_code == 404


def test_missing_phone_fails_message(client, store, ingest_lead, events) -> None:
    lead_id = ingest_lead(phone=None, email="ana@example.com")
    with store.transaction() as conn:
        message = store.insert_outbound_message(
            conn,
            lead_id=lead_id,
            workspace_id="ws_1",
            recipient=MessageRecipient.lead,
            to_phone="  ",
            text="Hello",
        )

    response = client.post(f"/messages/{message.id}/dispatch")

    assert response.status_code == 200
    assert response.json()["result"] == "failed"
    assert response.json()["reason"] == "missing_toPhone"
    assert [item.payload["reason"] for item in events(lead_id, "message_failed")] == ["missing_toPhone"]


def test_dispatch_of_sent_or_unknown_message_writes_nothing(client, store, ingest_lead, events) -> None:
    lead_id = ingest_lead()
    client.post("/messages/dispatch")
    [message] = _messages(store, lead_id)
    before = len(events(lead_id))

    repeat = client.post(f"/messages/{message.id}/dispatch")
    unknown = client.post("/messages/msg_missing/dispatch")

    assert repeat.json()["result"] == "skipped"
    assert repeat.json()["reason"] == "not_queued"
    assert unknown.json()["reason"] == "not_found"
    assert len(events(lead_id)) == before


def test_sanitize_error_hides_provider_details() -> None:
    assert sanitize_error("Twilio auth failed") == "provider_error"
    assert sanitize_error("bad sid supplied") == "provider_error"
    assert sanitize_error("invalid account_sid") == "provider_error"
    assert sanitize_error("Bad SID") == "provider_error"
    assert sanitize_error("number considered residential") == "number considered residential"
    assert sanitize_error("recipient inside quiet hours") == "recipient inside quiet hours"
    assert sanitize_error("message SM" + "a" * 32 + " rejected") == "provider_error"
    assert sanitize_error("  connection\n reset  ") == "connection reset"
    assert sanitize_error("") == "provider_error"
    assert len(sanitize_error("x" * 500)) == 200


def test_build_provider_selects_backend(monkeypatch) -> None:
    monkeypatch.delenv("TWILIO_ACCOUNT_SID", raising=False)
    settings = load_settings()

    assert isinstance(build_provider(replace(settings, messaging_provider="stub")), StubProvider)
    with pytest.raises(ServerMisconfigurationError):
        build_provider(replace(settings, messaging_provider="twilio", twilio_account_sid=""))
    with pytest.raises(ServerMisconfigurationError):
        build_provider(replace(settings, messaging_provider="carrier-pigeon"))

    provider = build_provider(
        replace(
            settings,
            messaging_provider="twilio",
            twilio_account_sid="AC" + "0" * 32,
            twilio_auth_token="token",
            twilio_whatsapp_from="+40700000000",
        )
    )
    assert isinstance(provider, TwilioProvider)
    assert provider.name == "twilio"
