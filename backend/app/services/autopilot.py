from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from backend.app.models import (
    DispatchResult,
    LeadRecord,
    MessageRecipient,
    MessageStatus,
    OutboundMessageRecord,
    RunRecord,
    RunState,
    RunStatus,
    ScenarioMode,
    ScenarioRecord,
    utc_now,
)
from backend.app.services.dispatch import DispatchOutcome, Dispatcher
from backend.app.services.handover import HandoverNotifier
from backend.app.services.planning import PlanContext, PlanDecision, PlanningStrategy
from backend.app.services.sla import start_clock
from backend.app.services.templates import HOLDING_MESSAGE, closing_message, welcome_message
from backend.app.services.workflow import can_transition, is_terminal
from backend.app.store import LeadStore, StoreConflictError, StoreNotFoundError

logger = logging.getLogger("lead_autopilot.autopilot")

HANDOVER_NODE = "handover"
FIRST_NODE = "q1"
DEFAULT_SCENARIO_NAME = "Default Qualification"


class InvalidScenarioError(Exception):
    pass


@dataclass(frozen=True)
class ReplyTurn:
    lead: LeadRecord
    run: RunRecord
    scenario: ScenarioRecord
    queued_message: Optional[OutboundMessageRecord]
    message_blocked: bool
    handed_over: bool


@dataclass(frozen=True)
class ReplyResult:
    lead_id: str
    run: RunRecord
    queued_message: Optional[OutboundMessageRecord]
    message_blocked: bool
    dispatch: Optional[DispatchOutcome] = None


def node_for_index(question_index: int) -> str:
    return f"q{question_index + 1}"


class AutopilotEngine:
    """
    Per-lead conversation state machine.

    ``advance`` runs inside the caller's transaction; ``complete_turn`` must run
    after that transaction commits because it talks to the messaging provider.
    """

    def __init__(
        self,
        *,
        store: LeadStore,
        dispatcher: Dispatcher,
        strategies: dict[ScenarioMode, PlanningStrategy],
        notifier: HandoverNotifier,
        default_sla_minutes: int,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.strategies = strategies
        self.notifier = notifier
        self.default_sla_minutes = default_sla_minutes

    # Scenario resolution

    def resolve_default_scenario(self, conn: Connection, workspace_id: str) -> ScenarioRecord:
        default = self.store.find_default_scenario(conn, workspace_id)
        if default is not None:
            return default
        scenarios = self.store.list_scenarios(conn, workspace_id)
        if scenarios:
            return self.store.update_scenario(conn, scenarios[0].id, {"is_default": True})
        return self.store.insert_scenario(
            conn,
            workspace_id=workspace_id,
            name=DEFAULT_SCENARIO_NAME,
            mode=ScenarioMode.RULES,
            max_questions=2,
            agent_name="Assistant",
            company_name="our team",
            required_slots=[],
            is_default=True,
        )

    # Bootstrap

    def start_run(
        self,
        conn: Connection,
        lead: LeadRecord,
        *,
        scenario: Optional[ScenarioRecord] = None,
        send_welcome: bool = True,
    ) -> RunRecord:
        scenario = scenario or self.resolve_default_scenario(conn, lead.workspace_id)
        run = self.store.insert_run(
            conn,
            lead_id=lead.id,
            workspace_id=lead.workspace_id,
            scenario_id=scenario.id,
            state=RunState(),
            current_step=FIRST_NODE,
        )
        self.store.log_event(
            conn,
            lead_id=lead.id,
            event_type="autopilot_started",
            payload={"runId": run.id, "scenarioId": scenario.id, "mode": scenario.mode},
        )
        if send_welcome:
            message = self._queue_for_lead(
                conn, lead, scenario, node=FIRST_NODE, text=welcome_message(scenario, lead)
            )
            if message is not None:
                run = self.store.save_run(conn, run.model_copy(update={"last_outbound_at": utc_now()}))
        return run

    def ensure_run(self, conn: Connection, lead: LeadRecord) -> tuple[RunRecord, bool]:
        """Bootstrap the run (and SLA clock) of a lead created outside the ingestion gateway."""
        run = self.store.find_run_by_lead(conn, lead.id)
        if run is not None:
            return run, False
        if self.store.find_sla_state(conn, lead.id) is None:
            start_clock(
                conn,
                store=self.store,
                lead_id=lead.id,
                target_minutes=self.default_sla_minutes,
            )
        return self.start_run(conn, lead, send_welcome=False), True

    def start_for_lead(self, lead_id: str) -> tuple[RunRecord, bool]:
        with self.store.transaction() as conn:
            lead = self.store.get_lead(conn, lead_id)
            return self.ensure_run(conn, lead)

    # Conversation

    def _should_hand_over(
        self, question_index: int, scenario: ScenarioRecord, decision: PlanDecision
    ) -> bool:
        if question_index >= scenario.max_questions:
            return True
        if decision.wants_handover:
            return True
        required = scenario.required_slots
        return bool(required) and all(
            (decision.answers.get(slot) or "").strip() for slot in required
        )

    def _queue_for_lead(
        self,
        conn: Connection,
        lead: LeadRecord,
        scenario: ScenarioRecord,
        *,
        node: str,
        text: str,
    ) -> Optional[OutboundMessageRecord]:
        phone = (lead.phone or "").strip()
        if not phone:
            self.store.log_event(
                conn,
                lead_id=lead.id,
                event_type="message_blocked",
                payload={
                    "reason": "missing_phone",
                    "channel": "whatsapp",
                    "scenarioId": scenario.id,
                    "nodeAfter": node,
                },
            )
            return None
        message = self.store.insert_outbound_message(
            conn,
            lead_id=lead.id,
            workspace_id=lead.workspace_id,
            recipient=MessageRecipient.lead,
            to_phone=phone,
            text=text,
        )
        self.store.log_event(
            conn,
            lead_id=lead.id,
            event_type="message_queued",
            payload={
                "messageId": message.id,
                "nodeAfter": node,
                "scenarioId": scenario.id,
                "text": text,
            },
        )
        return message

    def advance(self, conn: Connection, *, lead_id: str, text: str) -> ReplyTurn:
        run = self.store.find_run_by_lead(conn, lead_id)
        if run is None:
            raise StoreNotFoundError(f"autopilot run not found for lead: {lead_id}")
        lead = self.store.get_lead(conn, lead_id)
        scenario = self.store.find_scenario(conn, run.scenario_id)
        if scenario is None:
            scenario = self.resolve_default_scenario(conn, run.workspace_id)
        now = utc_now()

        self.store.log_event(
            conn,
            lead_id=lead_id,
            event_type="autopilot_inbound",
            payload={
                "mode": scenario.mode,
                "text": text,
                "scenarioId": scenario.id,
                "nodeBefore": run.state.node,
            },
        )
        run = run.model_copy(update={"last_inbound_at": now, "scenario_id": scenario.id})

        handed_over = False
        if is_terminal(run.status):
            outbound_text = HOLDING_MESSAGE
        else:
            strategy = self.strategies[scenario.mode]
            decision = strategy.plan(
                PlanContext(scenario=scenario, lead=lead, state=run.state, text=text)
            )
            if decision.audit is not None:
                self.store.log_event(
                    conn, lead_id=lead_id, event_type="autopilot_ai_planned", payload=decision.audit
                )
            question_index = run.state.question_index + 1
            if self._should_hand_over(question_index, scenario, decision):
                status, node = RunStatus.HANDED_OVER, HANDOVER_NODE
                outbound_text = decision.closing_message or closing_message(scenario)
                handed_over = True
            else:
                status, node = RunStatus.ACTIVE, node_for_index(question_index)
                outbound_text = decision.next_message
            if not can_transition(run.status, status):
                raise StoreConflictError(
                    f"invalid autopilot transition: {run.status.value} -> {status.value}"
                )
            run = run.model_copy(
                update={
                    "status": status,
                    "current_step": node,
                    "state": RunState(
                        node=node, answers=decision.answers, question_index=question_index
                    ),
                }
            )
            if handed_over:
                self.store.log_event(
                    conn,
                    lead_id=lead_id,
                    event_type="autopilot_handover",
                    payload={
                        "scenarioId": scenario.id,
                        "handoverUserId": scenario.handover_user_id,
                        "questionIndex": question_index,
                    },
                )
                logger.info("autopilot_handover lead_id=%s scenario_id=%s", lead_id, scenario.id)

        message = self._queue_for_lead(
            conn, lead, scenario, node=run.state.node, text=outbound_text
        )
        if message is not None:
            run = run.model_copy(update={"last_outbound_at": now})
        run = self.store.save_run(conn, run)
        return ReplyTurn(
            lead=lead,
            run=run,
            scenario=scenario,
            queued_message=message,
            message_blocked=message is None,
            handed_over=handed_over,
        )

    def complete_turn(self, turn: ReplyTurn) -> ReplyResult:
        message = turn.queued_message
        outcome: Optional[DispatchOutcome] = None
        if message is not None:
            outcome = self.dispatcher.dispatch_one(message.id)
            if outcome.result == DispatchResult.skipped:
                with self.store.transaction() as conn:
                    self.store.log_event(
                        conn,
                        lead_id=turn.lead.id,
                        event_type="auto_dispatch_attempted",
                        payload={
                            "messageId": message.id,
                            "result": outcome.result,
                            "reason": outcome.reason,
                        },
                    )
                    message = self.store.find_outbound_message(conn, message.id) or message
            else:
                status = (
                    MessageStatus.SENT if outcome.result == DispatchResult.sent else MessageStatus.FAILED
                )
                message = message.model_copy(update={"status": status})

        if turn.handed_over:
            try:
                self.notifier.notify(lead=turn.lead, scenario=turn.scenario, answers=turn.run.state.answers)
            except SQLAlchemyError:
                logger.exception(
                    "handover_notification_error lead_id=%s scenario_id=%s",
                    turn.lead.id,
                    turn.scenario.id,
                )
        return ReplyResult(
            lead_id=turn.lead.id,
            run=turn.run,
            queued_message=message,
            message_blocked=turn.message_blocked,
            dispatch=outcome,
        )

    def process_reply(self, *, lead_id: str, text: str) -> ReplyResult:
        with self.store.transaction() as conn:
            turn = self.advance(conn, lead_id=lead_id, text=text)
        return self.complete_turn(turn)

    # Administrative reset path

    def reset_run(self, conn: Connection, run: RunRecord, scenario: ScenarioRecord) -> RunRecord:
        updated = self.store.save_run(
            conn,
            run.model_copy(
                update={
                    "scenario_id": scenario.id,
                    "status": RunStatus.ACTIVE,
                    "current_step": FIRST_NODE,
                    "state": RunState(),
                }
            ),
        )
        self.store.log_event(
            conn,
            lead_id=run.lead_id,
            event_type="autopilot_scenario_switched",
            payload={
                "fromScenarioId": run.scenario_id,
                "toScenarioId": scenario.id,
                "mode": scenario.mode,
            },
        )
        return updated

    def switch_run_scenario(self, *, run_id: str, scenario_id: str) -> tuple[RunRecord, str]:
        with self.store.transaction() as conn:
            run = self.store.get_run(conn, run_id)
            scenario = self.store.find_scenario(conn, scenario_id)
            if scenario is None or scenario.workspace_id != run.workspace_id:
                raise InvalidScenarioError(
                    f"scenario not found in workspace {run.workspace_id}: {scenario_id}"
                )
            return self.reset_run(conn, run, scenario), run.scenario_id

    def _promote_default(self, conn: Connection, scenario: ScenarioRecord) -> tuple[ScenarioRecord, int]:
        self.store.clear_default_scenarios(conn, scenario.workspace_id)
        promoted = self.store.update_scenario(conn, scenario.id, {"is_default": True})
        runs = self.store.list_runs(conn, workspace_id=scenario.workspace_id)
        for run in runs:
            self.reset_run(conn, run, promoted)
        return promoted, len(runs)

    def set_default_scenario(self, *, scenario_id: str) -> tuple[ScenarioRecord, int]:
        with self.store.transaction() as conn:
            scenario = self.store.get_scenario(conn, scenario_id)
            return self._promote_default(conn, scenario)

    def create_scenario(self, fields: dict[str, Any]) -> tuple[ScenarioRecord, int]:
        values = dict(fields)
        make_default = bool(values.pop("is_default", False))
        with self.store.transaction() as conn:
            if not self.store.list_scenarios(conn, values["workspace_id"]):
                make_default = True
            scenario = self.store.insert_scenario(conn, is_default=False, **values)
            if make_default:
                return self._promote_default(conn, scenario)
            return scenario, 0

    def update_scenario(
        self, *, scenario_id: str, changes: dict[str, Any]
    ) -> tuple[ScenarioRecord, int]:
        values = {key: value for key, value in changes.items() if key != "is_default"}
        with self.store.transaction() as conn:
            current = self.store.get_scenario(conn, scenario_id)
            scenario = self.store.update_scenario(conn, scenario_id, values) if values else current
            if changes.get("is_default") and not current.is_default:
                return self._promote_default(conn, scenario)
            machine_changed = scenario.mode != current.mode or (
                scenario.max_questions != current.max_questions
            )
            if not machine_changed:
                return scenario, 0
            runs = self.store.list_runs(conn, scenario_id=scenario_id)
            for run in runs:
                self.reset_run(conn, run, scenario)
            return scenario, len(runs)

    def delete_scenario(self, *, scenario_id: str) -> tuple[str, int]:
        with self.store.transaction() as conn:
            scenario = self.store.get_scenario(conn, scenario_id)
            remaining = [
                item
                for item in self.store.list_scenarios(conn, scenario.workspace_id)
                if item.id != scenario_id
            ]
            if not remaining:
                raise StoreConflictError("workspace must keep at least one scenario")
            runs = self.store.list_runs(conn, scenario_id=scenario_id)
            self.store.delete_scenario(conn, scenario_id)
            if scenario.is_default:
                target = self.store.update_scenario(conn, remaining[0].id, {"is_default": True})
            else:
                target = self.resolve_default_scenario(conn, scenario.workspace_id)
            for run in runs:
                self.reset_run(conn, run, target)
            return target.id, len(runs)
