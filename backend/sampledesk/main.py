from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from backend.sampledesk.auth import AuthContext, require_admin, require_operator
from backend.sampledesk.models import (
    BotConfig,
    ConfigUpdateRequest,
    InboundMessage,
    InboundMessageResponse,
    ParticipantCreateRequest,
    ParticipantItem,
    ParticipantRecord,
    ParticipantUpdateRequest,
    Role,
    SampleStatus,
    SweepResponse,
)
from backend.sampledesk.observability import MetricsRegistry, configure_logging, observe_request
from backend.sampledesk.persistence import SqlitePersistence, StorageError
from backend.sampledesk.services.corrections import CorrectionWindowManager
from backend.sampledesk.services.engine import ConversationEngine
from backend.sampledesk.services.lifecycle import DEVOLVABLE_STATUSES, reference_zone
from backend.sampledesk.services.reports import ReportDispatcher
from backend.sampledesk.services.scheduler import EscalationScheduler
from backend.sampledesk.services.transport import (
    HttpGatewayTransport,
    InMemoryTransport,
    MessageTransport,
    Messenger,
)
from backend.sampledesk.services.webhooks import SignatureVerificationError, verify_channel_signature
from backend.sampledesk.settings import Settings, load_settings
from backend.sampledesk.store import InMemoryStore, StoreConflictError, StoreNotFoundError

logger = logging.getLogger("sampledesk.api")


def config_defaults(settings: Settings) -> BotConfig:
    return BotConfig(
        oversight_contact=settings.oversight_contact,
        overdue_threshold_days=settings.overdue_threshold_days,
        correction_window_seconds=settings.correction_window_seconds,
        reminder_tier1_days=settings.reminder_tier1_days,
        reminder_tier2_days=max(settings.reminder_tier1_days, settings.reminder_tier2_days),
    )


def build_transport(settings: Settings) -> MessageTransport:
    if settings.gateway_url:
        return HttpGatewayTransport(
            base_url=settings.gateway_url,
            token=settings.gateway_token,
            timeout_seconds=settings.gateway_timeout_seconds,
        )
    logger.warning("gateway_not_configured outbound messages are kept in memory")
    return InMemoryTransport()


def create_app() -> FastAPI:
    configure_logging()
    settings = load_settings()
    zone = reference_zone(settings.timezone)
    metrics = MetricsRegistry()
    persistence = SqlitePersistence(settings.database_url) if settings.persistence_enabled else None
    store = InMemoryStore(persistence=persistence, config_defaults=config_defaults(settings))
    transport = build_transport(settings)
    messenger = Messenger(transport, metrics=metrics)
    dispatcher = ReportDispatcher(store=store, messenger=messenger, zone=zone, metrics=metrics)
    corrections = CorrectionWindowManager(store=store, dispatcher=dispatcher)
    engine = ConversationEngine(
        store=store,
        messenger=messenger,
        corrections=corrections,
        dispatcher=dispatcher,
        zone=zone,
        address_suffix=settings.address_suffix,
        metrics=metrics,
    )
    scheduler = EscalationScheduler(
        store=store,
        messenger=messenger,
        zone=zone,
        hour=settings.sweep_hour,
        minute=settings.sweep_minute,
        metrics=metrics,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        logger.info(
            "app_started env=%s persistence=%s scheduler=%s gateway=%s",
            settings.app_env,
            settings.persistence_enabled,
            settings.scheduler_enabled,
            bool(settings.gateway_url),
        )
        if settings.scheduler_enabled:
            scheduler.start()
        try:
            yield
        finally:
            scheduler.shutdown()
            corrections.shutdown()

    app = FastAPI(title="Sample Desk API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.metrics = metrics
    app.state.store = store
    app.state.transport = transport
    app.state.corrections = corrections
    app.state.dispatcher = dispatcher
    app.state.engine = engine
    app.state.scheduler = scheduler

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
        logger.error("storage_failed path=%s error=%s", request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "storage unavailable"},
        )

    app.include_router(build_router())
    return app


def get_store(request: Request) -> InMemoryStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_engine(request: Request) -> ConversationEngine:
    return request.app.state.engine


def participant_item(store: InMemoryStore, participant: ParticipantRecord) -> ParticipantItem:
    samples = store.list_samples(owner_id=participant.id)
    return ParticipantItem(
        participant_id=participant.id,
        name=participant.name,
        role=participant.role,
        sample_count=len(samples),
        open_sample_count=len([item for item in samples if item.status in DEVOLVABLE_STATUSES]),
    )


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        settings = get_settings(request)
        persistence = getattr(request.app.state.store, "persistence", None)
        if settings.persistence_enabled and persistence and not persistence.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus(get_store(request).gauges()))

    @router.post("/webhooks/messages", response_model=InboundMessageResponse)
    async def inbound_message(
        request: Request,
        _: AuthContext = Depends(require_operator),
    ) -> InboundMessageResponse:
        settings = get_settings(request)
        raw_body = await request.body()
        try:
            verify_channel_signature(
                headers=request.headers,
                raw_body=raw_body,
                secret=settings.channel_webhook_secret,
            )
        except SignatureVerificationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

        try:
            payload = InboundMessage.model_validate(json.loads(raw_body.decode("utf-8")))
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="invalid json payload",
            ) from exc

        if payload.is_group or payload.from_me:
            return InboundMessageResponse(status="ignored", detail="group_or_self")

        outcome = await run_in_threadpool(get_engine(request).handle, payload.sender_id, payload)
        if outcome == "ignored_unregistered":
            return InboundMessageResponse(status="ignored", detail=outcome)
        return InboundMessageResponse(status="processed", detail=outcome)

    @router.get("/participants", response_model=list[ParticipantItem])
    def list_participants(
        request: Request,
        role: Optional[Role] = None,
        _: AuthContext = Depends(require_admin),
    ) -> list[ParticipantItem]:
        store = get_store(request)
        return [participant_item(store, item) for item in store.list_participants(role=role)]

    @router.post(
        "/participants",
        response_model=ParticipantItem,
        status_code=status.HTTP_201_CREATED,
    )
    def create_participant(
        payload: ParticipantCreateRequest,
        request: Request,
        _: AuthContext = Depends(require_admin),
    ) -> ParticipantItem:
        store = get_store(request)
        participant_id = get_engine(request).address_for(payload.number)
        try:
            participant = store.add_participant(participant_id, payload.name, payload.role)
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        return participant_item(store, participant)

    @router.patch("/participants/{participant_id}", response_model=ParticipantItem)
    def update_participant(
        participant_id: str,
        payload: ParticipantUpdateRequest,
        request: Request,
        _: AuthContext = Depends(require_admin),
    ) -> ParticipantItem:
        store = get_store(request)
        try:
            current = store.get_participant(participant_id)
            participant = store.update_participant(
                participant_id, name=payload.name, role=payload.role
            )
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        if participant.role != current.role:
            store.clear_session(participant_id)
            request.app.state.corrections.discard(participant_id)
        return participant_item(store, participant)

    @router.delete("/participants/{participant_id}")
    def delete_participant(
        participant_id: str,
        request: Request,
        _: AuthContext = Depends(require_admin),
    ) -> dict[str, str]:
        store = get_store(request)
        try:
            store.remove_participant(participant_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        request.app.state.corrections.discard(participant_id)
        return {"status": "removed", "participant_id": participant_id}

    @router.get("/config", response_model=BotConfig)
    def read_config(
        request: Request,
        _: AuthContext = Depends(require_admin),
    ) -> BotConfig:
        return get_store(request).get_config()

    @router.put("/config", response_model=BotConfig)
    def update_config(
        payload: ConfigUpdateRequest,
        request: Request,
        _: AuthContext = Depends(require_admin),
    ) -> BotConfig:
        updates = payload.model_dump(exclude_unset=True)
        if not updates:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="no config values provided",
            )
        try:
            return get_store(request).set_config_values(updates)
        except ValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=[error["msg"] for error in exc.errors()],
            ) from exc

    @router.post("/config/reload", response_model=BotConfig)
    def reload_config(
        request: Request,
        _: AuthContext = Depends(require_admin),
    ) -> BotConfig:
        return get_store(request).reload_config()

    @router.post("/scheduler/sweep", response_model=SweepResponse)
    def run_sweep(
        request: Request,
        today: Optional[date] = None,
        _: AuthContext = Depends(require_operator),
    ) -> SweepResponse:
        result = request.app.state.scheduler.sweep(today)
        return SweepResponse(
            today=result.today,
            promoted=result.promoted,
            overdue_reminders=result.overdue_reminders,
            escalations=result.escalations,
            follow_up_reminders=result.follow_up_reminders,
        )

    @router.get("/reports/samples")
    def export_samples(
        request: Request,
        status_filter: Optional[SampleStatus] = Query(default=None, alias="status"),
        owner_id: Optional[str] = None,
        _: AuthContext = Depends(require_admin),
    ) -> Response:
        store = get_store(request)
        label = "all samples"
        if owner_id:
            try:
                label = store.get_participant(owner_id).name
            except StoreNotFoundError as exc:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        if status_filter:
            label = f"{label} {status_filter.value}"
        attachment = request.app.state.dispatcher.export(
            label=label, status=status_filter, owner_id=owner_id
        )
        return Response(
            content=attachment.content,
            media_type=attachment.content_type,
            headers={"Content-Disposition": f'attachment; filename="{attachment.filename}"'},
        )

    return router


app = create_app()
