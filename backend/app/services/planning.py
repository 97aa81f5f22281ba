from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, replace
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field, ValidationError

from backend.app.models import LeadRecord, RunState, ScenarioMode, ScenarioRecord
from backend.app.services.templates import DEFAULT_AI_PROMPT, question_for_slot

logger = logging.getLogger("lead_autopilot.planning")

SLOT_ORDER = ("intent", "name", "phone", "email", "service", "preferredTime")

_GREETINGS = {"hi", "hello", "hey", "hiya", "salut", "buna", "ciao", "servus"}
_PHONE_LIKE = re.compile(r"^[\d+\s\-()]{7,}$")
_NAME_WORD = re.compile(r"^[^\W\d_]+$")
_INTENT_KEYWORDS = (
    ("pricing", ("price", "pricing", "cost", "quote", "tarif", "pret")),
    ("booking", ("booking", "book", "appointment", "calendar", "schedule", "meeting")),
    ("contact", ("contact", "agent", "operator", "human", "call me")),
)


def is_greeting(text: str) -> bool:
    lower = text.lower().strip().rstrip("!.")
    return lower in _GREETINGS or lower.startswith("good morning") or lower.startswith("good afternoon")


def is_likely_filling_slot(text: str) -> bool:
    """True when the text looks like a bare name, email or phone rather than an intent."""
    value = text.strip()
    if not value:
        return False
    if "@" in value and len(value) <= 80:
        return True
    if _PHONE_LIKE.match(value):
        return True
    words = value.split()
    return len(words) <= 2 and len(value) <= 40 and all(_NAME_WORD.match(w) for w in words)


def detect_intent(text: str) -> str:
    lower = text.lower()
    for intent, keywords in _INTENT_KEYWORDS:
        if any(keyword in lower for keyword in keywords):
            return intent
    return "other"


def next_missing_slot(answers: dict[str, str]) -> Optional[str]:
    for slot in SLOT_ORDER:
        if not (answers.get(slot) or "").strip():
            return slot
    return None


def build_scenario_prompt(scenario: ScenarioRecord, *, lead_name: Optional[str]) -> str:
    template = (scenario.ai_prompt or "").strip() or DEFAULT_AI_PROMPT
    replacements = {
        "{agent_name}": scenario.agent_name,
        "{company_name}": scenario.company_name,
        "{offer_summary}": scenario.offer_summary or "-",
        "{calendar_link}": scenario.calendar_link or "-",
        "{lead_name}": (lead_name or "").strip() or "there",
        "{max_questions}": str(scenario.max_questions),
    }
    for placeholder, value in replacements.items():
        template = template.replace(placeholder, value)
    return template


def prompt_preview(prompt: str, limit: int = 300) -> str:
    collapsed = " ".join(prompt.split())
    if len(collapsed) <= limit:
        return collapsed
    return collapsed[: limit - 3] + "..."


@dataclass(frozen=True)
class PlanContext:
    scenario: ScenarioRecord
    lead: LeadRecord
    state: RunState
    text: str


@dataclass(frozen=True)
class PlanDecision:
    answers: dict[str, str]
    intent: Optional[str]
    next_message: str
    wants_handover: bool = False
    closing_message: Optional[str] = None
    # Recorded as autopilot_ai_planned when present.
    audit: Optional[dict[str, Any]] = None


class PlanningStrategy(Protocol):
    mode: ScenarioMode

    def plan(self, context: PlanContext) -> PlanDecision: ...


class RulesPlanner:
    mode = ScenarioMode.RULES

    def plan(self, context: PlanContext) -> PlanDecision:
        answers = dict(context.state.answers)
        text = context.text.strip()
        slot = next_missing_slot(answers)
        if slot == "intent":
            # An opening greeting leaves intent unset so the first question is asked again.
            if not (is_greeting(text) and context.state.question_index == 0):
                if is_likely_filling_slot(text):
                    answers["name"] = text
                    answers["intent"] = "other"
                else:
                    answers["intent"] = detect_intent(text)
        elif slot is not None:
            answers[slot] = text
        else:
            answers[f"q{context.state.question_index + 1}_answer"] = text

        return PlanDecision(
            answers=answers,
            intent=answers.get("intent"),
            next_message=question_for_slot(
                next_missing_slot(answers), answers, context.lead.first_name
            ),
        )


class PlannerBackendError(Exception):
    pass


class PlannerBackend(Protocol):
    model: str

    def complete(self, *, system: str, user: str) -> str: ...


class PlannerReply(BaseModel):
    next_text: str = Field(alias="nextText", min_length=1, max_length=600)
    intent: str = "other"
    answers: dict[str, str] = Field(default_factory=dict)
    should_handover: bool = Field(alias="shouldHandover")


class StubPlannerBackend:
    """Deterministic stand-in for a hosted model: answers in the planner's JSON contract."""

    def __init__(self, model: str = "stub-planner") -> None:
        self.model = model

    def complete(self, *, system: str, user: str) -> str:
        request = json.loads(user)
        answers = dict(request["answers"])
        reply = request["reply"]
        slot = next_missing_slot(answers)
        if slot == "intent":
            answers["intent"] = detect_intent(reply)
        elif slot is not None:
            answers[slot] = reply.strip()
        required = request.get("requiredSlots") or []
        remaining = request["maxQuestions"] - request["questionIndex"] - 1
        collected = bool(required) and all(answers.get(item) for item in required)
        handover = remaining <= 0 or collected
        if handover:
            next_text = "Thank you! A colleague will take it from here."
        else:
            next_text = question_for_slot(next_missing_slot(answers), answers, request.get("leadName"))
        return json.dumps(
            {
                "nextText": next_text,
                "intent": answers.get("intent", "other"),
                "answers": answers,
                "shouldHandover": handover,
            }
        )


def _extract_json(raw: str) -> Optional[dict[str, Any]]:
    for candidate in (raw, raw[raw.find("{") : raw.rfind("}") + 1]):
        if not candidate:
            continue
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


class AiPlanner:
    mode = ScenarioMode.AI

    def __init__(self, backend: PlannerBackend, fallback: Optional[RulesPlanner] = None) -> None:
        self.backend = backend
        self.fallback = fallback or RulesPlanner()

    def _messages(self, context: PlanContext, prompt: str) -> tuple[str, str]:
        system = "\n".join(
            [
                "You are an assistant in a WhatsApp chat. Reply with JSON only.",
                'Schema: {"nextText": str, "intent": "pricing"|"booking"|"contact"|"other",'
                ' "answers": {}, "shouldHandover": bool}',
                "",
                prompt,
            ]
        )
        user = json.dumps(
            {
                "leadName": context.lead.first_name,
                "questionIndex": context.state.question_index,
                "maxQuestions": context.scenario.max_questions,
                "answers": context.state.answers,
                "requiredSlots": context.scenario.required_slots,
                "reply": context.text,
            }
        )
        return system, user

    def plan(self, context: PlanContext) -> PlanDecision:
        prompt = build_scenario_prompt(context.scenario, lead_name=context.lead.first_name)
        system, user = self._messages(context, prompt)
        audit: dict[str, Any] = {
            "scenarioId": context.scenario.id,
            "model": self.backend.model,
            "promptPreview": prompt_preview(prompt),
        }
        started = time.perf_counter()
        try:
            raw = self.backend.complete(system=system, user=user)
        except PlannerBackendError as exc:
            logger.warning(
                "ai_planner_failed scenario_id=%s error=%s", context.scenario.id, exc
            )
            raw = None
        audit["latencyMs"] = int((time.perf_counter() - started) * 1000)

        reply: Optional[PlannerReply] = None
        if raw is not None:
            parsed = _extract_json(raw)
            if parsed is not None:
                try:
                    reply = PlannerReply.model_validate(parsed)
                except ValidationError:
                    reply = None
        audit["jsonValid"] = reply is not None

        if reply is None:
            audit["fallbackUsed"] = True
            return replace(self.fallback.plan(context), audit=audit)

        audit["fallbackUsed"] = False
        answers = {**context.state.answers, **reply.answers}
        if not answers.get("intent") and reply.intent:
            answers["intent"] = reply.intent
        return PlanDecision(
            answers=answers,
            intent=answers.get("intent"),
            next_message=reply.next_text,
            wants_handover=reply.should_handover,
            closing_message=reply.next_text if reply.should_handover else None,
            audit=audit,
        )


def build_strategies(backend: PlannerBackend) -> dict[ScenarioMode, PlanningStrategy]:
    rules = RulesPlanner()
    return {
        ScenarioMode.RULES: rules,
        ScenarioMode.AI: AiPlanner(backend, fallback=rules),
    }
