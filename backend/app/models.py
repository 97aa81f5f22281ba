from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat_utc(value: datetime) -> str:
    return value.isoformat(timespec="milliseconds") + "Z"


def as_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LeadStatus(str, Enum):
    NEW = "NEW"
    CONTACTED = "CONTACTED"
    QUALIFIED = "QUALIFIED"
    WON = "WON"
    LOST = "LOST"
    ARCHIVED = "ARCHIVED"
    SPAM = "SPAM"


CLOSED_LEAD_STATUSES = {LeadStatus.WON, LeadStatus.LOST, LeadStatus.ARCHIVED, LeadStatus.SPAM}


class RunStatus(str, Enum):
    ACTIVE = "ACTIVE"
    HANDED_OVER = "HANDED_OVER"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ScenarioMode(str, Enum):
    RULES = "RULES"
    AI = "AI"


class MessageStatus(str, Enum):
    QUEUED = "QUEUED"
    SENT = "SENT"
    FAILED = "FAILED"


class MessageChannel(str, Enum):
    WHATSAPP = "WHATSAPP"


class MessageRecipient(str, Enum):
    lead = "lead"
    agent = "agent"


class ProofChannel(str, Enum):
    WHATSAPP = "WHATSAPP"
    MANUAL = "MANUAL"


class ProofType(str, Enum):
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"
    REPLIED = "REPLIED"
    INBOUND = "INBOUND"
    MANUAL = "MANUAL"


class ProviderName(str, Enum):
    stub = "stub"
    twilio = "twilio"
    dialog360 = "360dialog"


class DeliveryStatus(str, Enum):
    sent = "sent"
    delivered = "delivered"
    read = "read"
    replied = "replied"


class DispatchResult(str, Enum):
    sent = "sent"
    failed = "failed"
    skipped = "skipped"


class SlaFilter(str, Enum):
    running = "running"
    stopped = "stopped"
    breached = "breached"


# Requests / responses


class LeadCreateRequest(ApiModel):
    workspace_id: str = Field(min_length=1, max_length=120)
    first_name: Optional[str] = Field(default=None, max_length=120)
    last_name: Optional[str] = Field(default=None, max_length=120)
    email: Optional[str] = Field(default=None, max_length=254)
    phone: Optional[str] = Field(default=None, max_length=40)
    source: Optional[str] = Field(default=None, max_length=80)
    external_id: Optional[str] = Field(default=None, max_length=255)
    sla_target_minutes: Optional[int] = Field(default=None, ge=1, le=10080)

    @model_validator(mode="after")
    def validate_identity(self) -> "LeadCreateRequest":
        if not any(
            (value or "").strip() for value in (self.first_name, self.email, self.phone)
        ):
            raise ValueError("one of firstName, email or phone is required")
        if self.email is not None and self.email.strip() and "@" not in self.email:
            raise ValueError("email must contain @")
        return self


class SlaWindow(ApiModel):
    started_at: str
    deadline_at: str


class IdempotencyInfo(ApiModel):
    reused: bool


class LeadCreateResponse(ApiModel):
    lead_id: str
    sla: SlaWindow
    idempotency: IdempotencyInfo


class WhatsAppStatusRequest(ApiModel):
    lead_id: str = Field(min_length=1, max_length=255)
    provider: ProviderName
    provider_message_id: str = Field(min_length=1, max_length=255)
    status: DeliveryStatus
    occurred_at: Optional[datetime] = None


class WhatsAppStatusResponse(ApiModel):
    proof_event_id: str
    lead_id: str
    status: ProofType
    reused: bool
    sla_stopped: bool


class InboundMessageRequest(ApiModel):
    workspace_id: str = Field(min_length=1, max_length=120)
    from_phone: str = Field(min_length=3, max_length=40)
    text: str = Field(min_length=1, max_length=4096)
    provider: ProviderName
    provider_message_id: str = Field(min_length=1, max_length=255)
    occurred_at: Optional[datetime] = None


class InboundMessageResponse(ApiModel):
    lead_id: Optional[str] = None
    processed: bool
    reused: bool


class AutopilotReplyRequest(ApiModel):
    lead_id: str = Field(min_length=1, max_length=255)
    text: str = Field(min_length=1, max_length=4096)


class AutopilotSummary(ApiModel):
    status: RunStatus
    node: str
    answers: dict[str, str]
    question_index: int


class QueuedMessageSummary(ApiModel):
    id: str
    text: str
    to_phone: str
    status: MessageStatus


class AutopilotReplyResponse(ApiModel):
    lead_id: str
    autopilot: AutopilotSummary
    queued_message: Optional[QueuedMessageSummary] = None
    message_blocked: bool = False


class AutopilotStartRequest(ApiModel):
    lead_id: str = Field(min_length=1, max_length=255)


class AutopilotStartResponse(ApiModel):
    run_id: str
    lead_id: str
    scenario_id: str
    created: bool


class DispatchSweepResponse(ApiModel):
    processed: int
    sent: int
    failed: int


class DispatchOneResponse(ApiModel):
    message_id: str
    result: DispatchResult
    reason: Optional[str] = None
    provider_message_id: Optional[str] = None


class MessageRetryResponse(ApiModel):
    message_id: str
    retry_of: str
    status: MessageStatus


class ScenarioCreateRequest(ApiModel):
    workspace_id: str = Field(min_length=1, max_length=120)
    name: str = Field(min_length=2, max_length=120)
    mode: ScenarioMode = ScenarioMode.RULES
    max_questions: int = Field(default=2, ge=1, le=10)
    handover_user_id: Optional[str] = Field(default=None, max_length=255)
    ai_prompt: Optional[str] = Field(default=None, max_length=8000)
    agent_name: str = Field(default="Assistant", min_length=1, max_length=80)
    company_name: str = Field(default="our team", min_length=1, max_length=120)
    offer_summary: Optional[str] = Field(default=None, max_length=2000)
    calendar_link: Optional[str] = Field(default=None, max_length=500)
    required_slots: list[str] = Field(default_factory=list, max_length=10)
    is_default: bool = False


_CLEARABLE_SCENARIO_FIELDS = {"handover_user_id", "ai_prompt", "offer_summary", "calendar_link"}


class ScenarioUpdateRequest(ApiModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=120)
    mode: Optional[ScenarioMode] = None
    max_questions: Optional[int] = Field(default=None, ge=1, le=10)
    handover_user_id: Optional[str] = Field(default=None, max_length=255)
    ai_prompt: Optional[str] = Field(default=None, max_length=8000)
    agent_name: Optional[str] = Field(default=None, min_length=1, max_length=80)
    company_name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    offer_summary: Optional[str] = Field(default=None, max_length=2000)
    calendar_link: Optional[str] = Field(default=None, max_length=500)
    required_slots: Optional[list[str]] = Field(default=None, max_length=10)
    is_default: Optional[bool] = None

    @model_validator(mode="after")
    def validate_not_empty(self) -> "ScenarioUpdateRequest":
        if not self.model_fields_set:
            raise ValueError("at least one field must be provided")
        if self.is_default is False:
            raise ValueError("isDefault can only be set to true; promote another scenario instead")
        return self

    def changes(self) -> dict[str, Any]:
        output: dict[str, Any] = {}
        for name in self.model_fields_set:
            value = getattr(self, name)
            if value is None and name not in _CLEARABLE_SCENARIO_FIELDS:
                continue
            output[name] = value
        return output


class ScenarioResponse(ApiModel):
    id: str
    workspace_id: str
    name: str
    mode: ScenarioMode
    max_questions: int
    handover_user_id: Optional[str] = None
    ai_prompt: Optional[str] = None
    agent_name: str
    company_name: str
    offer_summary: Optional[str] = None
    calendar_link: Optional[str] = None
    required_slots: list[str]
    is_default: bool


class ScenarioUpdateResponse(ApiModel):
    scenario: ScenarioResponse
    reset_runs: int


class ScenarioDeleteResponse(ApiModel):
    deleted_scenario_id: str
    default_scenario_id: str
    migrated_runs: int


class SetDefaultResponse(ApiModel):
    scenario_id: str
    migrated_runs: int


class SwitchScenarioRequest(ApiModel):
    scenario_id: str = Field(min_length=1, max_length=255)


class SwitchScenarioResponse(ApiModel):
    run_id: str
    lead_id: str
    from_scenario_id: str
    to_scenario_id: str
    status: RunStatus
    node: str


class UserCreateRequest(ApiModel):
    workspace_id: str = Field(min_length=1, max_length=120)
    name: str = Field(min_length=2, max_length=120)
    email: Optional[str] = Field(default=None, max_length=254)
    phone: Optional[str] = Field(default=None, max_length=40)


class UserResponse(ApiModel):
    id: str
    workspace_id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None


class BreachSweepRequest(ApiModel):
    now: Optional[datetime] = None


class BreachSweepResponse(ApiModel):
    processed: int
    breached: int


class SlaStopRequest(ApiModel):
    reason: str = Field(default="manual_stop", min_length=2, max_length=80)


class SlaStopResponse(ApiModel):
    lead_id: str
    already_stopped: bool
    stopped_at: Optional[datetime] = None


class ManualProofRequest(ApiModel):
    note: str = Field(min_length=2, max_length=2000)


class ManualProofResponse(ApiModel):
    proof_event_id: str
    lead_id: str
    sla_stopped: bool


class LeadStatusUpdateRequest(ApiModel):
    status: LeadStatus


class LeadItem(ApiModel):
    id: str
    workspace_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    source: Optional[str] = None
    external_id: Optional[str] = None
    status: LeadStatus
    created_at: datetime


class SlaItem(ApiModel):
    started_at: datetime
    deadline_at: datetime
    target_minutes: int
    stopped_at: Optional[datetime] = None
    stop_reason: Optional[str] = None
    breached_at: Optional[datetime] = None


class MessageItem(ApiModel):
    id: str
    recipient: MessageRecipient
    to_phone: Optional[str] = None
    text: str
    status: MessageStatus
    provider: Optional[str] = None
    provider_message_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime


class EventItem(ApiModel):
    id: int
    type: str
    payload: dict[str, Any]
    occurred_at: datetime


class LeadListItem(ApiModel):
    lead: LeadItem
    sla: Optional[SlaItem] = None


class LeadDetailResponse(ApiModel):
    lead: LeadItem
    sla: Optional[SlaItem] = None
    autopilot: Optional[AutopilotSummary] = None
    scenario_id: Optional[str] = None
    messages: list[MessageItem]
    events: list[EventItem]


# Records


class RunState(ApiModel):
    node: str = "q1"
    answers: dict[str, str] = Field(default_factory=dict)
    question_index: int = 0


class LeadRecord(BaseModel):
    id: str
    workspace_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    source: Optional[str] = None
    external_id: Optional[str] = None
    status: LeadStatus
    created_at: datetime
    updated_at: datetime

    @property
    def display_name(self) -> str:
        parts = [part for part in (self.first_name, self.last_name) if part]
        return " ".join(parts)


class SLAStateRecord(BaseModel):
    id: str
    lead_id: str
    started_at: datetime
    deadline_at: datetime
    target_minutes: int
    stopped_at: Optional[datetime] = None
    stop_reason: Optional[str] = None
    stop_proof_event_id: Optional[str] = None
    breached_at: Optional[datetime] = None


class ScenarioRecord(BaseModel):
    id: str
    workspace_id: str
    name: str
    mode: ScenarioMode
    max_questions: int
    handover_user_id: Optional[str] = None
    ai_prompt: Optional[str] = None
    agent_name: str
    company_name: str
    offer_summary: Optional[str] = None
    calendar_link: Optional[str] = None
    required_slots: list[str] = Field(default_factory=list)
    is_default: bool
    created_at: datetime
    updated_at: datetime


class RunRecord(BaseModel):
    id: str
    lead_id: str
    workspace_id: str
    scenario_id: str
    status: RunStatus
    current_step: str
    state: RunState
    last_inbound_at: Optional[datetime] = None
    last_outbound_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class OutboundMessageRecord(BaseModel):
    id: str
    lead_id: str
    workspace_id: str
    channel: MessageChannel
    recipient: MessageRecipient
    to_phone: Optional[str] = None
    text: str
    status: MessageStatus
    provider: Optional[str] = None
    provider_message_id: Optional[str] = None
    sent_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    retry_of: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ProofEventRecord(BaseModel):
    id: str
    lead_id: str
    channel: ProofChannel
    type: ProofType
    provider: str
    provider_message_id: str
    occurred_at: datetime
    note: Optional[str] = None
    created_at: datetime


class EventLogRecord(BaseModel):
    id: int
    lead_id: str
    type: str
    payload: dict[str, Any]
    occurred_at: datetime


class IdempotencyKeyRecord(BaseModel):
    id: str
    workspace_id: str
    key: str
    request_hash: str
    status: str
    response_json: Optional[str] = None
    created_at: datetime


class UserRecord(BaseModel):
    id: str
    workspace_id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    created_at: datetime
