from __future__ import annotations

from backend.app.models import ScenarioMode, utc_now
from backend.app.services.messaging import ProviderError, SendReceipt
from backend.app.services.planning import PlannerBackendError


class FailingBackend:
    model = "broken-model"

    def complete(self, *, system: str, user: str) -> str:
        raise PlannerBackendError("planner timed out")


class AgentFailingProvider:
    name = "stub"

    def __init__(self, agent_phone: str) -> None:
        self.agent_phone = agent_phone

    def send_text(self, *, to_phone: str, text: str) -> SendReceipt:
        if to_phone == self.agent_phone:
            raise ProviderError("connection reset")
        return SendReceipt(provider=self.name, provider_message_id=f"ok_{len(text)}_{to_phone}", sent_at=utc_now())


def _reply(client, lead_id: str, text: str) -> dict:
    response = client.post("/autopilot/reply", json={"leadId": lead_id, "text": text})
    assert response.status_code == 200, response.text
    return response.json()


def _create_scenario(client, **fields) -> dict:
    payload = {"workspaceId": "ws_1", "name": "Custom Flow", **fields}
    response = client.post("/autopilot/scenarios", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_two_replies_hand_over_with_default_limit(client, ingest_lead, events) -> None:
    lead_id = ingest_lead()

    first = _reply(client, lead_id, "I need pricing for a haircut")
    second = _reply(client, lead_id, "Ana")

    assert first["autopilot"]["status"] == "ACTIVE"
    assert first["autopilot"]["node"] == "q2"
    assert first["autopilot"]["questionIndex"] == 1
    assert first["autopilot"]["answers"]["intent"] == "pricing"
    assert first["queuedMessage"]["status"] == "SENT"
    assert first["messageBlocked"] is False

    assert second["autopilot"]["status"] == "HANDED_OVER"
    assert second["autopilot"]["node"] == "handover"
    assert second["autopilot"]["questionIndex"] == 2
    assert second["autopilot"]["answers"]["name"] == "Ana"
    handovers = events(lead_id, "autopilot_handover")
    assert len(handovers) == 1
    assert handovers[0].payload["questionIndex"] == 2


def test_reply_after_handover_sends_holding_message(client, ingest_lead, events) -> None:
    lead_id = ingest_lead()
    _reply(client, lead_id, "booking please")
    _reply(client, lead_id, "Ana")

    after = _reply(client, lead_id, "hello again?")

    assert after["autopilot"]["status"] == "HANDED_OVER"
    assert after["autopilot"]["questionIndex"] == 2
    assert after["queuedMessage"]["text"] == "An agent will contact you shortly."
    assert len(events(lead_id, "autopilot_handover")) == 1
    assert len(events(lead_id, "autopilot_inbound")) == 3


def test_greeting_does_not_consume_intent_slot(client, ingest_lead) -> None:
    lead_id = ingest_lead()

    result = _reply(client, lead_id, "Hello!")

    assert "intent" not in result["autopilot"]["answers"]
    assert result["autopilot"]["questionIndex"] == 1


def test_reply_without_phone_is_blocked_but_advances(client, store, ingest_lead, events) -> None:
    lead_id = ingest_lead(phone=None, email="ana@example.com")

    result = _reply(client, lead_id, "pricing")

    assert result["queuedMessage"] is None
    assert result["messageBlocked"] is True
    assert result["autopilot"]["questionIndex"] == 1
    with store.transaction() as conn:
        assert store.list_lead_messages(conn, lead_id) == []
    blocked = events(lead_id, "message_blocked")
    assert len(blocked) == 2
    assert blocked[-1].payload["reason"] == "missing_phone"
    assert blocked[-1].payload["channel"] == "whatsapp"
    assert blocked[-1].payload["scenarioId"]


def test_reply_for_unknown_lead_is_not_found(client) -> None:
    response = client.post("/autopilot/reply", json={"leadId": "lead_missing", "text": "hi"})
    assert response.status_code == 404


def test_switching_default_to_ai_resets_and_plans_once(client, ingest_lead, events) -> None:
    lead_id = ingest_lead()
    _reply(client, lead_id, "pricing")
    default_id = client.get(f"/leads/{lead_id}").json()["scenarioId"]
    ai = _create_scenario(client, name="AI Flow", mode="AI", maxQuestions=3, agentName="Mara")
    assert ai["isDefault"] is False

    promoted = client.post(f"/autopilot/scenarios/{ai['id']}/default")
    assert promoted.status_code == 200
    assert promoted.json() == {"scenarioId": ai["id"], "migratedRuns": 1}

    detail = client.get(f"/leads/{lead_id}").json()
    assert detail["scenarioId"] == ai["id"]
    assert detail["autopilot"] == {"status": "ACTIVE", "node": "q1", "answers": {}, "questionIndex": 0}
    switched = events(lead_id, "autopilot_scenario_switched")
    assert len(switched) == 1
    assert switched[0].payload == {"fromScenarioId": default_id, "toScenarioId": ai["id"], "mode": "AI"}

    result = _reply(client, lead_id, "I want to book an appointment")

    planned = events(lead_id, "autopilot_ai_planned")
    assert len(planned) == 1
    assert planned[0].payload["fallbackUsed"] is False
    assert planned[0].payload["scenarioId"] == ai["id"]
    assert "Mara" in planned[0].payload["promptPreview"]
    assert result["autopilot"]["questionIndex"] == 1
    assert result["autopilot"]["answers"]["intent"] == "booking"

    scenarios = {item["id"]: item for item in client.get("/autopilot/scenarios?workspaceId=ws_1").json()}
    assert scenarios[ai["id"]]["isDefault"] is True
    assert scenarios[default_id]["isDefault"] is False


def test_ai_backend_failure_falls_back_to_rules(client, ingest_lead, events) -> None:
    _create_scenario(client, name="AI First", mode="AI", maxQuestions=3)
    client.app.state.engine.strategies[ScenarioMode.AI].backend = FailingBackend()
    lead_id = ingest_lead()

    result = _reply(client, lead_id, "what is the price?")

    assert result["autopilot"]["status"] == "ACTIVE"
    assert result["autopilot"]["answers"]["intent"] == "pricing"
    planned = events(lead_id, "autopilot_ai_planned")
    assert len(planned) == 1
    assert planned[0].payload["fallbackUsed"] is True
    assert planned[0].payload["jsonValid"] is False
    assert planned[0].payload["model"] == "broken-model"


def test_required_slots_trigger_early_handover(client, ingest_lead) -> None:
    _create_scenario(client, maxQuestions=5, requiredSlots=["intent"])
    lead_id = ingest_lead()

    result = _reply(client, lead_id, "I need pricing")

    assert result["autopilot"]["status"] == "HANDED_OVER"
    assert result["autopilot"]["questionIndex"] == 1


def test_switch_run_scenario(client, ingest_lead, events) -> None:
    lead_id = ingest_lead()
    _reply(client, lead_id, "pricing")
    _reply(client, lead_id, "Ana")
    run_id = client.post("/autopilot/start", json={"leadId": lead_id}).json()["runId"]
    other = _create_scenario(client, name="Second Flow", maxQuestions=4)

    response = client.post(f"/autopilot/runs/{run_id}/scenario", json={"scenarioId": other["id"]})

    assert response.status_code == 200
    body = response.json()
    assert body["toScenarioId"] == other["id"]
    assert body["status"] == "ACTIVE"
    assert body["node"] == "q1"
    assert len(events(lead_id, "autopilot_scenario_switched")) == 1
    follow_up = _reply(client, lead_id, "booking")
    assert follow_up["autopilot"]["status"] == "ACTIVE"
    assert follow_up["autopilot"]["questionIndex"] == 1


def test_switch_run_scenario_rejects_foreign_or_missing(client, ingest_lead) -> None:
    lead_id = ingest_lead()
    run_id = client.post("/autopilot/start", json={"leadId": lead_id}).json()["runId"]
    foreign = client.post(
        "/autopilot/scenarios", json={"workspaceId": "ws_2", "name": "Other Workspace"}
    ).json()

    missing_run = client.post("/autopilot/runs/run_missing/scenario", json={"scenarioId": foreign["id"]})
    wrong_workspace = client.post(f"/autopilot/runs/{run_id}/scenario", json={"scenarioId": foreign["id"]})
    missing_scenario = client.post(f"/autopilot/runs/{run_id}/scenario", json={"scenarioId": "scn_missing"})

    assert missing_run.status_code == 404
    assert wrong_workspace.status_code == 400
    assert missing_scenario.status_code == 400


def test_autopilot_start_is_idempotent_for_existing_run(client, store, ingest_lead) -> None:
    lead_id = ingest_lead()
    existing = client.post("/autopilot/start", json={"leadId": lead_id})
    with store.transaction() as conn:
        imported = store.insert_lead(conn, workspace_id="ws_1", first_name="Imported")
    created = client.post("/autopilot/start", json={"leadId": imported.id})
    missing = client.post("/autopilot/start", json={"leadId": "lead_missing"})

    assert existing.status_code == 200
    assert existing.json()["created"] is False
    assert created.status_code == 201
    assert created.json()["created"] is True
    assert missing.status_code == 404


def test_scenario_update_resets_runs_on_machine_change(client, ingest_lead, events) -> None:
    lead_id = ingest_lead()
    _reply(client, lead_id, "pricing")
    scenario_id = client.get(f"/leads/{lead_id}").json()["scenarioId"]

    renamed = client.patch(f"/autopilot/scenarios/{scenario_id}", json={"name": "Renamed"})
    limit_changed = client.patch(f"/autopilot/scenarios/{scenario_id}", json={"maxQuestions": 4})
    empty = client.patch(f"/autopilot/scenarios/{scenario_id}", json={})
    undefault = client.patch(f"/autopilot/scenarios/{scenario_id}", json={"isDefault": False})

    assert renamed.status_code == 200
    assert renamed.json()["resetRuns"] == 0
    assert renamed.json()["scenario"]["name"] == "Renamed"
    assert limit_changed.json()["resetRuns"] == 1
    assert limit_changed.json()["scenario"]["maxQuestions"] == 4
    assert empty.status_code == 400
    assert undefault.status_code == 400
    assert client.get(f"/leads/{lead_id}").json()["autopilot"]["questionIndex"] == 0
    assert len(events(lead_id, "autopilot_scenario_switched")) == 1


def test_scenario_delete_rules(client, ingest_lead, events) -> None:
    lead_id = ingest_lead()
    default_id = client.get(f"/leads/{lead_id}").json()["scenarioId"]

    last = client.delete(f"/autopilot/scenarios/{default_id}")
    assert last.status_code == 409

    second = _create_scenario(client, name="Second Flow")
    deleted = client.delete(f"/autopilot/scenarios/{default_id}")

    assert deleted.status_code == 200
    assert deleted.json() == {
        "deletedScenarioId": default_id,
        "defaultScenarioId": second["id"],
        "migratedRuns": 1,
    }
    assert client.get(f"/leads/{lead_id}").json()["scenarioId"] == second["id"]
    scenarios = client.get("/autopilot/scenarios?workspaceId=ws_1").json()
    assert [(item["id"], item["isDefault"]) for item in scenarios] == [(second["id"], True)]
    assert len(events(lead_id, "autopilot_scenario_switched")) == 1
    assert client.delete("/autopilot/scenarios/scn_missing").status_code == 404


def test_handover_notifies_agent(client, store, ingest_lead, events) -> None:
    agent = client.post(
        "/users", json={"workspaceId": "ws_1", "name": "Agent Dana", "phone": "+40700000999"}
    ).json()
    _create_scenario(client, maxQuestions=1, handoverUserId=agent["id"])
    lead_id = ingest_lead()

    result = _reply(client, lead_id, "I need pricing")

    assert result["autopilot"]["status"] == "HANDED_OVER"
    notified = events(lead_id, "handover_notified")
    assert len(notified) == 1
    assert notified[0].payload["handoverUserId"] == agent["id"]
    assert notified[0].payload["channel"] == "whatsapp"
    with store.transaction() as conn:
        messages = store.list_lead_messages(conn, lead_id)
    agent_messages = [item for item in messages if item.recipient.value == "agent"]
    assert len(agent_messages) == 1
    assert agent_messages[0].to_phone == "+40700000999"
    assert f"/app/leads/{lead_id}" in agent_messages[0].text
    assert agent_messages[0].status.value == "SENT"


def test_handover_blocked_without_agent_phone(client, ingest_lead, events) -> None:
    agent = client.post("/users", json={"workspaceId": "ws_1", "name": "Agent Dana"}).json()
    _create_scenario(client, maxQuestions=1, handoverUserId=agent["id"])
    lead_id = ingest_lead()

    result = _reply(client, lead_id, "pricing")

    assert result["autopilot"]["status"] == "HANDED_OVER"
    blocked = events(lead_id, "handover_notification_blocked")
    assert len(blocked) == 1
    assert blocked[0].payload["reason"] == "missing_agent_phone"
    assert events(lead_id, "handover_notified") == []


def test_handover_blocked_for_unknown_agent(client, ingest_lead, events) -> None:
    _create_scenario(client, maxQuestions=1, handoverUserId="usr_missing")
    lead_id = ingest_lead()

    _reply(client, lead_id, "pricing")

    blocked = events(lead_id, "handover_notification_blocked")
    assert [item.payload["reason"] for item in blocked] == ["missing_agent"]


def test_handover_failure_keeps_lead_handed_over(client, ingest_lead, events) -> None:
    agent = client.post(
        "/users", json={"workspaceId": "ws_1", "name": "Agent Dana", "phone": "+40700000999"}
    ).json()
    _create_scenario(client, maxQuestions=1, handoverUserId=agent["id"])
    client.app.state.dispatcher.provider = AgentFailingProvider("+40700000999")
    lead_id = ingest_lead()

    result = _reply(client, lead_id, "pricing")

    assert result["autopilot"]["status"] == "HANDED_OVER"
    assert result["queuedMessage"]["status"] == "SENT"
    failed = events(lead_id, "handover_notification_failed")
    assert len(failed) == 1
    assert failed[0].payload["reason"] == "provider_error"
    assert client.get(f"/leads/{lead_id}").json()["autopilot"]["status"] == "HANDED_OVER"
