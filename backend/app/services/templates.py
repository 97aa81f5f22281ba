from __future__ import annotations

from typing import Optional

from backend.app.models import LeadRecord, ScenarioRecord

HOLDING_MESSAGE = "An agent will contact you shortly."

DEFAULT_AI_PROMPT = """You are {agent_name}, the virtual assistant for {company_name}.

Current offer: {offer_summary}
Booking link: {calendar_link}

Goal: qualify the lead in at most {max_questions} questions, one short question per message.
Address the lead as {lead_name} when a name is known. Never present numbered menus.
Do not invent company facts."""


def welcome_message(scenario: ScenarioRecord, lead: LeadRecord) -> str:
    name = (lead.first_name or "").strip()
    greeting = f"Hi {name}!" if name else "Hi!"
    return (
        f"{greeting} I'm {scenario.agent_name}, the virtual assistant for "
        f"{scenario.company_name}. What can I help you with today?"
    )


def question_for_slot(slot: Optional[str], answers: dict[str, str], first_name: Optional[str]) -> str:
    name = answers.get("name") or (first_name or "").strip()
    prefix = f"{name}, " if name else ""
    if slot in {None, "intent"}:
        return "What can I help you with today?"
    if slot == "name":
        return f"{prefix}what is your name?"
    if slot == "phone":
        return f"{prefix}what phone number can we reach you on?"
    if slot == "email":
        return f"{prefix}what is your email address?"
    if slot == "service":
        intent = answers.get("intent", "other")
        if intent == "pricing":
            return f"{prefix}which service would you like pricing for?"
        if intent == "booking":
            return f"{prefix}which service would you like to book?"
        return f"{prefix}tell me briefly what you need."
    if slot == "preferredTime":
        return f"{prefix}which day or time slot suits you best?"
    return "Is there anything else you would like to add?"


def closing_message(scenario: ScenarioRecord) -> str:
    link = (scenario.calendar_link or "").strip()
    if link:
        return f"Thank you! Here is the booking link: {link}. See you soon."
    return "Thank you! I'm connecting you with a colleague."


def handover_notification(
    *,
    lead: LeadRecord,
    reason: str,
    app_base_url: str,
) -> str:
    lines = [
        "New lead to pick up",
        f"Name: {lead.display_name or '-'}",
        f"Phone: {lead.phone or '-'}",
        f"Email: {lead.email or '-'}",
        f"Reason: {reason}",
        f"Link: {app_base_url}/app/leads/{lead.id}",
    ]
    return "\n".join(lines)
