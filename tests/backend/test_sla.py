from __future__ import annotations

from datetime import datetime, timedelta

from backend.app.services.sla import breach_sweep, stop_clock


def _after_deadline(client, lead_id: str, minutes: int = 1) -> str:
    deadline = client.get(f"/leads/{lead_id}").json()["sla"]["deadlineAt"]
    parsed = datetime.fromisoformat(deadline.replace("Z", "+00:00"))
    return (parsed + timedelta(minutes=minutes)).isoformat()


def test_stop_is_idempotent(client, ingest_lead, events) -> None:
    lead_id = ingest_lead()

    first = client.post(f"/leads/{lead_id}/sla/stop", json={"reason": "called_back"})
    second = client.post(f"/leads/{lead_id}/sla/stop", json={})

    assert first.status_code == 200
    assert first.json()["alreadyStopped"] is False
    assert first.json()["stoppedAt"] is not None
    assert second.status_code == 200
    assert second.json()["alreadyStopped"] is True
    stops = events(lead_id, "sla_stopped")
    assert len(stops) == 1
    assert stops[0].payload["reason"] == "called_back"

    sla = client.get(f"/leads/{lead_id}").json()["sla"]
    assert sla["stopReason"] == "called_back"


def test_stop_unknown_lead_is_not_found(client) -> None:
    response = client.post("/leads/lead_missing/sla/stop", json={})
    assert response.status_code == 404


def test_breach_sweep_logs_each_breach_once(client, ingest_lead, events) -> None:
    lead_id = ingest_lead()
    now = _after_deadline(client, lead_id)

    first = client.post("/sla/breach-sweep", json={"now": now})
    breached_at = client.get(f"/leads/{lead_id}").json()["sla"]["breachedAt"]
    second = client.post("/sla/breach-sweep", json={"now": now})

    assert first.json() == {"processed": 1, "breached": 1}
    assert second.json() == {"processed": 0, "breached": 0}
    assert breached_at is not None
    assert client.get(f"/leads/{lead_id}").json()["sla"]["breachedAt"] == breached_at
    assert len(events(lead_id, "sla_breached")) == 1

    listed = client.get("/leads?workspaceId=ws_1&sla=breached").json()
    assert [item["lead"]["id"] for item in listed] == [lead_id]


def test_breach_sweep_skips_stopped_and_future_deadlines(client, ingest_lead, events) -> None:
    stopped_lead = ingest_lead(phone="+40700000001")
    pending_lead = ingest_lead(phone="+40700000002", slaTargetMinutes=600)
    client.post(f"/leads/{stopped_lead}/sla/stop", json={})

    response = client.post("/sla/breach-sweep", json={"now": _after_deadline(client, stopped_lead)})

    assert response.json() == {"processed": 0, "breached": 0}
    assert events(stopped_lead, "sla_breached") == []
    assert events(pending_lead, "sla_breached") == []


def test_breach_sweep_without_now_uses_clock(client, ingest_lead) -> None:
    ingest_lead()
    response = client.post("/sla/breach-sweep")
    assert response.status_code == 200
    assert response.json() == {"processed": 0, "breached": 0}


def test_breach_compare_and_set_has_single_winner(store, ingest_lead) -> None:
    lead_id = ingest_lead()
    with store.transaction() as conn:
        state = store.find_sla_state(conn, lead_id)
    now = state.deadline_at + timedelta(seconds=1)

    with store.transaction() as conn:
        first = store.mark_sla_breached(conn, sla_id=state.id, now=now)
    with store.transaction() as conn:
        second = store.mark_sla_breached(conn, sla_id=state.id, now=now + timedelta(minutes=5))
    with store.transaction() as conn:
        after = store.find_sla_state(conn, lead_id)

    assert first is True
    assert second is False
    assert after.breached_at == now


def test_stopped_clock_cannot_be_breached_later(store, ingest_lead, events) -> None:
    lead_id = ingest_lead()
    with store.transaction() as conn:
        state = store.find_sla_state(conn, lead_id)

    result = stop_clock(store=store, lead_id=lead_id, reason="manual_stop")
    sweep = breach_sweep(store=store, now=state.deadline_at + timedelta(hours=1))

    assert result.already_stopped is False
    assert sweep.breached == 0
    assert events(lead_id, "sla_breached") == []


def test_manual_proof_stops_clock(client, ingest_lead, events) -> None:
    lead_id = ingest_lead()

    response = client.post(f"/leads/{lead_id}/proof", json={"note": "Called the lead by phone"})
    again = client.post(f"/leads/{lead_id}/proof", json={"note": "Second call"})

    assert response.status_code == 201
    assert response.json()["slaStopped"] is True
    assert again.status_code == 201
    assert again.json()["slaStopped"] is False
    stops = events(lead_id, "sla_stopped")
    assert len(stops) == 1
    assert stops[0].payload["reason"] == "manual_proof"
    assert stops[0].payload["proofEventId"] == response.json()["proofEventId"]
