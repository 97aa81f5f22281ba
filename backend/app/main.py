from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Optional, TypeVar

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy.engine import Connection

from backend.app.auth import AuthContext, ensure_workspace_access, require_roles
from backend.app.models import (
    AutopilotReplyRequest,
    AutopilotReplyResponse,
    AutopilotStartRequest,
    AutopilotStartResponse,
    AutopilotSummary,
    BreachSweepRequest,
    BreachSweepResponse,
    DispatchOneResponse,
    DispatchSweepResponse,
    EventItem,
    InboundMessageRequest,
    InboundMessageResponse,
    LeadCreateRequest,
    LeadDetailResponse,
    LeadItem,
    LeadListItem,
    LeadRecord,
    LeadStatusUpdateRequest,
    ManualProofRequest,
    ManualProofResponse,
    MessageItem,
    MessageRetryResponse,
    OutboundMessageRecord,
    QueuedMessageSummary,
    RunRecord,
    ScenarioCreateRequest,
    ScenarioDeleteResponse,
    ScenarioRecord,
    ScenarioResponse,
    ScenarioUpdateRequest,
    ScenarioUpdateResponse,
    SetDefaultResponse,
    SLAStateRecord,
    SlaFilter,
    SlaItem,
    SlaStopRequest,
    SlaStopResponse,
    SwitchScenarioRequest,
    SwitchScenarioResponse,
    UserCreateRequest,
    UserRecord,
    UserResponse,
    WhatsAppStatusRequest,
    WhatsAppStatusResponse,
    as_utc_naive,
)
from backend.app.observability import MetricsRegistry, configure_logging, observe_request
from backend.app.persistence import IN_MEMORY_URL, Persistence
from backend.app.services.autopilot import AutopilotEngine, InvalidScenarioError, ReplyResult
from backend.app.services.dispatch import Dispatcher
from backend.app.services.handover import HandoverNotifier
from backend.app.services.ingestion import IdempotencyConflictError, IngestionGateway
from backend.app.services.messaging import build_provider
from backend.app.services.planning import StubPlannerBackend, build_strategies
from backend.app.services.proofs import (
    ProofOutcome,
    handle_inbound_message,
    record_manual_proof,
    record_whatsapp_status,
)
from backend.app.services.sla import StopResult, breach_sweep, stop_clock
from backend.app.services.webhooks import SignatureVerificationError, verify_whatsapp_signature
from backend.app.settings import Settings, load_settings
from backend.app.store import LeadStore, StoreConflictError, StoreNotFoundError

ModelT = TypeVar("ModelT", bound=BaseModel)


def create_app() -> FastAPI:
    app = FastAPI(title="Lead Autopilot API", version="0.1.0")
    configure_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    settings = load_settings()
    persistence = Persistence(settings.database_url if settings.persistence_enabled else IN_MEMORY_URL)
    store = LeadStore(persistence)
    dispatcher = Dispatcher(store=store, provider=build_provider(settings))
    notifier = HandoverNotifier(
        store=store, dispatcher=dispatcher, app_base_url=settings.app_base_url
    )
    engine = AutopilotEngine(
        store=store,
        dispatcher=dispatcher,
        strategies=build_strategies(StubPlannerBackend(settings.ai_planner_model)),
        notifier=notifier,
        default_sla_minutes=settings.default_sla_minutes,
    )
    app.state.settings = settings
    app.state.persistence = persistence
    app.state.store = store
    app.state.dispatcher = dispatcher
    app.state.engine = engine
    app.state.gateway = IngestionGateway(
        store=store, engine=engine, default_sla_minutes=settings.default_sla_minutes
    )
    app.state.metrics = MetricsRegistry()

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def get_store(request: Request) -> LeadStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_engine(request: Request) -> AutopilotEngine:
    return request.app.state.engine


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


def _validation_detail(exc: ValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": [str(part) for part in error["loc"]], "msg": error["msg"]}
        for error in exc.errors()
    ]


async def parse_body(request: Request, model: type[ModelT], raw_body: Optional[bytes] = None) -> ModelT:
    raw = raw_body if raw_body is not None else await request.body()
    try:
        data = json.loads(raw.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="invalid json payload",
        ) from exc
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=_validation_detail(exc),
        ) from exc


async def verified_body(request: Request) -> bytes:
    raw_body = await request.body()
    try:
        verify_whatsapp_signature(
            headers=request.headers,
            raw_body=raw_body,
            secret=get_settings(request).whatsapp_webhook_secret,
        )
    except SignatureVerificationError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    return raw_body


def ensure_entity_scope(
    request: Request, context: AuthContext, load: Callable[[Connection], Any]
) -> None:
    """
    A workspace-scoped token may only act on leads, runs, scenarios and messages
    of its own workspace. Unknown ids pass through so the handler reports 404.
    """
    if context.workspace_id is None:
        return
    store = get_store(request)
    try:
        with store.transaction() as conn:
            entity = load(conn)
    except StoreNotFoundError:
        return
    if entity is not None:
        ensure_workspace_access(context, entity.workspace_id)


def not_found(exc: StoreNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def conflict(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


def autopilot_summary(run: RunRecord) -> AutopilotSummary:
    return AutopilotSummary(
        status=run.status,
        node=run.state.node,
        answers=run.state.answers,
        question_index=run.state.question_index,
    )


def queued_message_summary(message: Optional[OutboundMessageRecord]) -> Optional[QueuedMessageSummary]:
    if message is None:
        return None
    return QueuedMessageSummary(
        id=message.id,
        text=message.text,
        to_phone=message.to_phone or "",
        status=message.status,
    )


def sla_item(sla: Optional[SLAStateRecord]) -> Optional[SlaItem]:
    return SlaItem.model_validate(sla.model_dump()) if sla else None


def scenario_response(scenario: ScenarioRecord) -> ScenarioResponse:
    return ScenarioResponse.model_validate(scenario.model_dump())


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        if not get_store(request).ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        store = get_store(request)
        with store.transaction() as conn:
            gauges = store.backlog_counts(conn)
        return PlainTextResponse(registry.to_prometheus(gauges))

    # Leads

    @router.post("/leads")
    async def create_lead(
        request: Request,
        idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
        context: AuthContext = Depends(require_roles("service", "agent", "admin")),
    ) -> JSONResponse:
        key = (idempotency_key or "").strip()
        if not key:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="missing Idempotency-Key header",
            )
        if len(key) > 255:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Idempotency-Key header too long",
            )
        payload = await parse_body(request, LeadCreateRequest)
        ensure_workspace_access(context, payload.workspace_id)
        try:
            body, reused = await asyncio.to_thread(
                request.app.state.gateway.create_lead, payload=payload, idempotency_key=key
            )
        except IdempotencyConflictError as exc:
            raise conflict(exc) from exc
        get_metrics(request).record_outcome("lead_ingest", "replayed" if reused else "created")
        return JSONResponse(
            content=body,
            status_code=status.HTTP_200_OK if reused else status.HTTP_201_CREATED,
        )

    @router.get("/leads", response_model=list[LeadListItem])
    def list_leads(
        request: Request,
        workspace_id: Optional[str] = Query(default=None, alias="workspaceId"),
        sla: Optional[SlaFilter] = None,
        limit: int = Query(default=50, ge=1, le=500),
        context: AuthContext = Depends(require_roles("agent", "admin")),
    ) -> list[LeadListItem]:
        if context.workspace_id is not None:
            workspace_id = context.workspace_id
        store = get_store(request)
        with store.transaction() as conn:
            rows = store.list_leads(conn, workspace_id=workspace_id, sla_filter=sla, limit=limit)
        return [
            LeadListItem(lead=LeadItem.model_validate(lead.model_dump()), sla=sla_item(state))
            for lead, state in rows
        ]

    @router.get("/leads/{lead_id}", response_model=LeadDetailResponse)
    def get_lead_detail(
        lead_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles("agent", "admin")),
    ) -> LeadDetailResponse:
        store = get_store(request)
        try:
            with store.transaction() as conn:
                lead = store.get_lead(conn, lead_id)
                sla = store.find_sla_state(conn, lead_id)
                run = store.find_run_by_lead(conn, lead_id)
                messages = store.list_lead_messages(conn, lead_id)
                events = store.list_events(conn, lead_id)
        except StoreNotFoundError as exc:
            raise not_found(exc) from exc
        ensure_workspace_access(context, lead.workspace_id)
        return LeadDetailResponse(
            lead=LeadItem.model_validate(lead.model_dump()),
            sla=sla_item(sla),
            autopilot=autopilot_summary(run) if run else None,
            scenario_id=run.scenario_id if run else None,
            messages=[MessageItem.model_validate(item.model_dump()) for item in messages],
            events=[EventItem.model_validate(item.model_dump()) for item in events],
        )

    @router.post("/leads/{lead_id}/status", response_model=LeadItem)
    async def update_lead_status(
        lead_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles("agent", "admin")),
    ) -> LeadItem:
        payload = await parse_body(request, LeadStatusUpdateRequest)
        store = get_store(request)

        def update() -> LeadRecord:
            with store.transaction() as conn:
                current = store.get_lead(conn, lead_id)
                ensure_workspace_access(context, current.workspace_id)
                updated = store.update_lead_status(conn, lead_id, payload.status)
                if current.status != updated.status:
                    store.log_event(
                        conn,
                        lead_id=lead_id,
                        event_type="lead_status_changed",
                        payload={"from": current.status, "to": updated.status},
                    )
            return updated

        try:
            updated = await asyncio.to_thread(update)
        except StoreNotFoundError as exc:
            raise not_found(exc) from exc
        return LeadItem.model_validate(updated.model_dump())

    @router.delete("/leads/{lead_id}")
    def delete_lead(
        lead_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles("admin")),
    ) -> dict[str, Any]:
        store = get_store(request)
        try:
            with store.transaction() as conn:
                ensure_workspace_access(context, store.get_lead(conn, lead_id).workspace_id)
                store.delete_lead(conn, lead_id)
        except StoreNotFoundError as exc:
            raise not_found(exc) from exc
        except StoreConflictError as exc:
            raise conflict(exc) from exc
        return {"leadId": lead_id, "deleted": True}

    @router.post("/leads/{lead_id}/proof", response_model=ManualProofResponse, status_code=201)
    async def create_manual_proof(
        lead_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles("agent", "admin")),
    ) -> ManualProofResponse:
        payload = await parse_body(request, ManualProofRequest)
        store = get_store(request)

        def record() -> ProofOutcome:
            ensure_entity_scope(request, context, lambda conn: store.find_lead(conn, lead_id))
            return record_manual_proof(store=store, lead_id=lead_id, note=payload.note)

        try:
            outcome = await asyncio.to_thread(record)
        except StoreNotFoundError as exc:
            raise not_found(exc) from exc
        get_metrics(request).record_outcome("proof", "manual")
        return ManualProofResponse(
            proof_event_id=outcome.proof_event_id,
            lead_id=lead_id,
            sla_stopped=outcome.sla_stopped,
        )

    # SLA

    @router.post("/leads/{lead_id}/sla/stop", response_model=SlaStopResponse)
    async def stop_lead_sla(
        lead_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles("agent", "admin")),
    ) -> SlaStopResponse:
        payload = await parse_body(request, SlaStopRequest)
        store = get_store(request)

        def stop() -> StopResult:
            ensure_entity_scope(request, context, lambda conn: store.find_lead(conn, lead_id))
            return stop_clock(store=store, lead_id=lead_id, reason=payload.reason)

        try:
            result = await asyncio.to_thread(stop)
        except StoreNotFoundError as exc:
            raise not_found(exc) from exc
        return SlaStopResponse(
            lead_id=lead_id,
            already_stopped=result.already_stopped,
            stopped_at=result.stopped_at,
        )

    @router.post("/sla/breach-sweep", response_model=BreachSweepResponse)
    async def run_breach_sweep(
        request: Request,
        _: AuthContext = Depends(require_roles("service", "admin")),
    ) -> BreachSweepResponse:
        payload = await parse_body(request, BreachSweepRequest)
        now = as_utc_naive(payload.now) if payload.now else None
        result = await asyncio.to_thread(breach_sweep, store=get_store(request), now=now)
        get_metrics(request).record_outcome("sla", "breached", result.breached)
        return BreachSweepResponse(processed=result.processed, breached=result.breached)

    # Webhooks

    @router.post("/proof/whatsapp/status", response_model=WhatsAppStatusResponse)
    async def whatsapp_status_webhook(
        request: Request,
        response: Response,
        context: AuthContext = Depends(require_roles("service", "admin")),
    ) -> WhatsAppStatusResponse:
        raw_body = await verified_body(request)
        payload = await parse_body(request, WhatsAppStatusRequest, raw_body)
        store = get_store(request)

        def record() -> ProofOutcome:
            ensure_entity_scope(request, context, lambda conn: store.find_lead(conn, payload.lead_id))
            return record_whatsapp_status(store=store, payload=payload)

        try:
            outcome = await asyncio.to_thread(record)
        except StoreNotFoundError as exc:
            raise not_found(exc) from exc
        get_metrics(request).record_outcome("proof", "reused" if outcome.reused else "recorded")
        response.status_code = status.HTTP_200_OK if outcome.reused else status.HTTP_201_CREATED
        return WhatsAppStatusResponse(
            proof_event_id=outcome.proof_event_id,
            lead_id=outcome.lead_id,
            status=outcome.type,
            reused=outcome.reused,
            sla_stopped=outcome.sla_stopped,
        )

    @router.post("/whatsapp/webhook/inbound", response_model=InboundMessageResponse)
    async def whatsapp_inbound_webhook(
        request: Request,
        response: Response,
        context: AuthContext = Depends(require_roles("service", "admin")),
    ) -> InboundMessageResponse:
        raw_body = await verified_body(request)
        payload = await parse_body(request, InboundMessageRequest, raw_body)
        ensure_workspace_access(context, payload.workspace_id)
        outcome = await asyncio.to_thread(
            handle_inbound_message,
            store=get_store(request),
            engine=get_engine(request),
            payload=payload,
        )
        if outcome.reused:
            label = "reused"
        else:
            label = "processed" if outcome.processed else "unmatched"
        get_metrics(request).record_outcome("inbound", label)
        # Only a message that advanced a conversation counts as created.
        response.status_code = status.HTTP_201_CREATED if outcome.processed else status.HTTP_200_OK
        return InboundMessageResponse(
            lead_id=outcome.lead_id,
            processed=outcome.processed,
            reused=outcome.reused,
        )

    # Autopilot

    @router.post("/autopilot/reply", response_model=AutopilotReplyResponse)
    async def autopilot_reply(
        request: Request,
        context: AuthContext = Depends(require_roles("service", "admin")),
    ) -> AutopilotReplyResponse:
        payload = await parse_body(request, AutopilotReplyRequest)
        store = get_store(request)

        def reply() -> ReplyResult:
            ensure_entity_scope(request, context, lambda conn: store.find_lead(conn, payload.lead_id))
            return get_engine(request).process_reply(lead_id=payload.lead_id, text=payload.text)

        try:
            result = await asyncio.to_thread(reply)
        except StoreNotFoundError as exc:
            raise not_found(exc) from exc
        if result.dispatch is not None:
            get_metrics(request).record_outcome("dispatch", result.dispatch.result.value)
        return AutopilotReplyResponse(
            lead_id=result.lead_id,
            autopilot=autopilot_summary(result.run),
            queued_message=queued_message_summary(result.queued_message),
            message_blocked=result.message_blocked,
        )

    @router.post("/autopilot/start", response_model=AutopilotStartResponse)
    async def autopilot_start(
        request: Request,
        response: Response,
        context: AuthContext = Depends(require_roles("service", "agent", "admin")),
    ) -> AutopilotStartResponse:
        payload = await parse_body(request, AutopilotStartRequest)
        store = get_store(request)

        def start() -> tuple[RunRecord, bool]:
            ensure_entity_scope(request, context, lambda conn: store.find_lead(conn, payload.lead_id))
            return get_engine(request).start_for_lead(payload.lead_id)

        try:
            run, created = await asyncio.to_thread(start)
        except StoreNotFoundError as exc:
            raise not_found(exc) from exc
        response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
        return AutopilotStartResponse(
            run_id=run.id,
            lead_id=run.lead_id,
            scenario_id=run.scenario_id,
            created=created,
        )

    @router.post("/autopilot/scenarios", response_model=ScenarioResponse, status_code=201)
    async def create_scenario(
        request: Request,
        context: AuthContext = Depends(require_roles("admin")),
    ) -> ScenarioResponse:
        payload = await parse_body(request, ScenarioCreateRequest)
        ensure_workspace_access(context, payload.workspace_id)
        scenario, _ = await asyncio.to_thread(get_engine(request).create_scenario, payload.model_dump())
        return scenario_response(scenario)

    @router.get("/autopilot/scenarios", response_model=list[ScenarioResponse])
    def list_scenarios(
        request: Request,
        workspace_id: str = Query(alias="workspaceId", min_length=1),
        context: AuthContext = Depends(require_roles("agent", "admin")),
    ) -> list[ScenarioResponse]:
        ensure_workspace_access(context, workspace_id)
        store = get_store(request)
        with store.transaction() as conn:
            scenarios = store.list_scenarios(conn, workspace_id)
        return [scenario_response(item) for item in scenarios]

    @router.patch("/autopilot/scenarios/{scenario_id}", response_model=ScenarioUpdateResponse)
    async def update_scenario(
        scenario_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles("admin")),
    ) -> ScenarioUpdateResponse:
        payload = await parse_body(request, ScenarioUpdateRequest)
        store = get_store(request)

        def update() -> tuple[ScenarioRecord, int]:
            ensure_entity_scope(request, context, lambda conn: store.find_scenario(conn, scenario_id))
            return get_engine(request).update_scenario(
                scenario_id=scenario_id, changes=payload.changes()
            )

        try:
            scenario, reset_runs = await asyncio.to_thread(update)
        except StoreNotFoundError as exc:
            raise not_found(exc) from exc
        return ScenarioUpdateResponse(scenario=scenario_response(scenario), reset_runs=reset_runs)

    @router.delete("/autopilot/scenarios/{scenario_id}", response_model=ScenarioDeleteResponse)
    def delete_scenario(
        scenario_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles("admin")),
    ) -> ScenarioDeleteResponse:
        store = get_store(request)
        ensure_entity_scope(request, context, lambda conn: store.find_scenario(conn, scenario_id))
        try:
            default_id, migrated = get_engine(request).delete_scenario(scenario_id=scenario_id)
        except StoreNotFoundError as exc:
            raise not_found(exc) from exc
        except StoreConflictError as exc:
            raise conflict(exc) from exc
        return ScenarioDeleteResponse(
            deleted_scenario_id=scenario_id,
            default_scenario_id=default_id,
            migrated_runs=migrated,
        )

    @router.post("/autopilot/scenarios/{scenario_id}/default", response_model=SetDefaultResponse)
    def set_default_scenario(
        scenario_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles("admin")),
    ) -> SetDefaultResponse:
        store = get_store(request)
        ensure_entity_scope(request, context, lambda conn: store.find_scenario(conn, scenario_id))
        try:
            scenario, migrated = get_engine(request).set_default_scenario(scenario_id=scenario_id)
        except StoreNotFoundError as exc:
            raise not_found(exc) from exc
        return SetDefaultResponse(scenario_id=scenario.id, migrated_runs=migrated)

    @router.post("/autopilot/runs/{run_id}/scenario", response_model=SwitchScenarioResponse)
    async def switch_run_scenario(
        run_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles("agent", "admin")),
    ) -> SwitchScenarioResponse:
        payload = await parse_body(request, SwitchScenarioRequest)
        store = get_store(request)

        def switch() -> tuple[RunRecord, str]:
            ensure_entity_scope(request, context, lambda conn: store.get_run(conn, run_id))
            return get_engine(request).switch_run_scenario(
                run_id=run_id, scenario_id=payload.scenario_id
            )

        try:
            run, from_id = await asyncio.to_thread(switch)
        except StoreNotFoundError as exc:
            raise not_found(exc) from exc
        except InvalidScenarioError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return SwitchScenarioResponse(
            run_id=run.id,
            lead_id=run.lead_id,
            from_scenario_id=from_id,
            to_scenario_id=run.scenario_id,
            status=run.status,
            node=run.state.node,
        )

    # Messages

    @router.post("/messages/dispatch", response_model=DispatchSweepResponse)
    def dispatch_sweep(
        request: Request,
        _: AuthContext = Depends(require_roles("service", "admin")),
    ) -> DispatchSweepResponse:
        summary = get_dispatcher(request).dispatch_queued(
            limit=get_settings(request).dispatch_batch_limit
        )
        registry = get_metrics(request)
        registry.record_outcome("dispatch", "sent", summary.sent)
        registry.record_outcome("dispatch", "failed", summary.failed)
        return DispatchSweepResponse(
            processed=summary.processed, sent=summary.sent, failed=summary.failed
        )

    @router.post("/messages/{message_id}/dispatch", response_model=DispatchOneResponse)
    def dispatch_message(
        message_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles("service", "admin")),
    ) -> DispatchOneResponse:
        store = get_store(request)
        ensure_entity_scope(request, context, lambda conn: store.find_outbound_message(conn, message_id))
        outcome = get_dispatcher(request).dispatch_one(message_id)
        get_metrics(request).record_outcome("dispatch", outcome.result.value)
        return DispatchOneResponse(
            message_id=outcome.message_id,
            result=outcome.result,
            reason=outcome.reason,
            provider_message_id=outcome.provider_message_id,
        )

    @router.post("/messages/{message_id}/retry", response_model=MessageRetryResponse, status_code=201)
    def retry_message(
        message_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles("agent", "admin")),
    ) -> MessageRetryResponse:
        store = get_store(request)
        ensure_entity_scope(request, context, lambda conn: store.find_outbound_message(conn, message_id))
        try:
            retry = get_dispatcher(request).requeue_failed(message_id)
        except StoreNotFoundError as exc:
            raise not_found(exc) from exc
        except StoreConflictError as exc:
            raise conflict(exc) from exc
        return MessageRetryResponse(
            message_id=retry.id,
            retry_of=message_id,
            status=retry.status,
        )

    # Users

    @router.post("/users", response_model=UserResponse, status_code=201)
    async def create_user(
        request: Request,
        context: AuthContext = Depends(require_roles("admin")),
    ) -> UserResponse:
        payload = await parse_body(request, UserCreateRequest)
        ensure_workspace_access(context, payload.workspace_id)
        store = get_store(request)

        def insert() -> UserRecord:
            with store.transaction() as conn:
                return store.insert_user(
                    conn,
                    workspace_id=payload.workspace_id,
                    name=payload.name.strip(),
                    email=(payload.email or "").strip() or None,
                    phone=(payload.phone or "").strip() or None,
                )

        user = await asyncio.to_thread(insert)
        return UserResponse.model_validate(user.model_dump())

    return router


app = create_app()
