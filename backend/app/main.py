from __future__ import annotations

import json
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from backend.app.auth import ROLE_ADMIN, ROLE_AGENT, ROLE_SERVICE, AuthContext, require_roles
from backend.app.models import (
    Abandonment,
    AgentChatVolume,
    AgentRefundAttribution,
    AgentUnratedIssues,
    AttributionMode,
    BusinessDayKpiRecord,
    ClosureSlaReport,
    ComparisonReport,
    ConversationEventRequest,
    ConversationEventResponse,
    DailyUserMessageSummaryRecord,
    EpisodeCloseRequest,
    EpisodeMachineRequest,
    EpisodeOpenRequest,
    EpisodeRecord,
    FirstContactResolution,
    IssueFrtReport,
    JobRunResponse,
    LongRunningChats,
    MachineChatVolume,
    MachineIssueSummary,
    MessageFrtReport,
    RefundTrendReport,
    SatisfactionReport,
    Window,
    utc_now,
)
from backend.app.observability import MetricsRegistry, configure_logging, logger, observe_request
from backend.app.persistence import SqlPersistence
from backend.app.services.business_calendar import business_date
from backend.app.services.comparison import compare_windows
from backend.app.services.conversation_events import (
    PermanentEventError,
    process_conversation_event,
)
from backend.app.services.episodes import EpisodeManager
from backend.app.services.jobs import (
    BUSINESS_DAY_KPIS,
    DAILY_USER_SUMMARIES,
    handle_daily_user_summaries,
    last_completed_business_day,
    refresh_business_day_kpis,
)
from backend.app.services.metrics import MetricsEngine
from backend.app.services.ranges import resolve_range
from backend.app.services.webhooks import SignatureVerificationError, verify_whatsapp_signature
from backend.app.settings import Settings, load_settings
from backend.app.store import (
    InMemoryStore,
    StoreConflictError,
    StoreNotFoundError,
    StoreUnavailableError,
)

REPORT_ROLES = (ROLE_ADMIN, ROLE_AGENT)
JOB_ROLES = (ROLE_ADMIN, ROLE_SERVICE)


def create_app() -> FastAPI:
    app = FastAPI(title="Support Desk KPI API", version="0.1.0")
    configure_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    settings = load_settings()
    persistence = SqlPersistence(settings.database_url) if settings.persistence_enabled else None
    store = InMemoryStore(persistence=persistence)
    app.state.store = store
    app.state.settings = settings
    app.state.metrics = MetricsRegistry()
    app.state.episodes = EpisodeManager(store)
    app.state.engine = MetricsEngine(store)

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
        logger.error("store_unavailable path=%s error=%s", request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "event store unavailable"},
        )

    app.include_router(build_router())
    return app


def get_store(request: Request) -> InMemoryStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_episodes(request: Request) -> EpisodeManager:
    return request.app.state.episodes


def get_engine(request: Request) -> MetricsEngine:
    return request.app.state.engine


def metric_window(
    preset: Optional[str] = None,
    from_: Optional[str] = Query(default=None, alias="from"),
    to: Optional[str] = None,
) -> Window:
    try:
        return resolve_range(preset, from_, to)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        ) from exc


def _not_found(exc: StoreNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _conflict(exc: StoreConflictError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


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
        return PlainTextResponse(registry.to_prometheus())

    # --- KPI reports ---------------------------------------------------------

    @router.get("/metric/chats-per-agent", response_model=list[AgentChatVolume])
    def chats_per_agent(
        request: Request,
        window: Window = Depends(metric_window),
        _: AuthContext = Depends(require_roles(*REPORT_ROLES)),
    ) -> list[AgentChatVolume]:
        return get_engine(request).chat_volume_per_agent(window)

    @router.get("/metric/chats-per-machine", response_model=list[MachineChatVolume])
    def chats_per_machine(
        request: Request,
        window: Window = Depends(metric_window),
        _: AuthContext = Depends(require_roles(*REPORT_ROLES)),
    ) -> list[MachineChatVolume]:
        return get_engine(request).chat_volume_per_machine(window)

    @router.get("/metric/frt/messages", response_model=MessageFrtReport)
    def message_frt(
        request: Request,
        window: Window = Depends(metric_window),
        _: AuthContext = Depends(require_roles(*REPORT_ROLES)),
    ) -> MessageFrtReport:
        return get_engine(request).message_first_response_time(window)

    @router.get("/metric/frt/issues", response_model=IssueFrtReport)
    def issue_frt(
        request: Request,
        window: Window = Depends(metric_window),
        mode: AttributionMode = AttributionMode.opened,
        _: AuthContext = Depends(require_roles(*REPORT_ROLES)),
    ) -> IssueFrtReport:
        return get_engine(request).issue_first_response_time(window, mode)

    @router.get("/metric/closure-sla", response_model=ClosureSlaReport)
    def closure_sla(
        request: Request,
        window: Window = Depends(metric_window),
        mode: AttributionMode = AttributionMode.opened,
        _: AuthContext = Depends(require_roles(*REPORT_ROLES)),
    ) -> ClosureSlaReport:
        return get_engine(request).closure_sla(window, mode)

    @router.get("/metric/machine-issues", response_model=list[MachineIssueSummary])
    def machine_issues(
        request: Request,
        window: Window = Depends(metric_window),
        mode: AttributionMode = AttributionMode.opened,
        _: AuthContext = Depends(require_roles(*REPORT_ROLES)),
    ) -> list[MachineIssueSummary]:
        return get_engine(request).machine_issue_summary(window, mode)

    @router.get("/metric/refunds-per-agent", response_model=list[AgentRefundAttribution])
    def refunds_per_agent(
        request: Request,
        window: Window = Depends(metric_window),
        mode: AttributionMode = AttributionMode.opened,
        _: AuthContext = Depends(require_roles(*REPORT_ROLES)),
    ) -> list[AgentRefundAttribution]:
        return get_engine(request).refund_attribution_per_agent(window, mode)

    @router.get("/metric/manual-refund-trend", response_model=RefundTrendReport)
    def manual_refund_trend(
        request: Request,
        window: Window = Depends(metric_window),
        mode: AttributionMode = AttributionMode.opened,
        _: AuthContext = Depends(require_roles(*REPORT_ROLES)),
    ) -> RefundTrendReport:
        return get_engine(request).manual_refund_trend(window, mode)

    @router.get("/metric/fcr", response_model=FirstContactResolution)
    def first_contact_resolution(
        request: Request,
        window: Window = Depends(metric_window),
        _: AuthContext = Depends(require_roles(*REPORT_ROLES)),
    ) -> FirstContactResolution:
        return get_engine(request).first_contact_resolution(window)

    @router.get("/metric/long-running", response_model=LongRunningChats)
    def long_running(
        request: Request,
        window: Window = Depends(metric_window),
        _: AuthContext = Depends(require_roles(*REPORT_ROLES)),
    ) -> LongRunningChats:
        return get_engine(request).long_running_chats(window, utc_now())

    @router.get("/metric/abandonment", response_model=Abandonment)
    def abandonment(
        request: Request,
        window: Window = Depends(metric_window),
        _: AuthContext = Depends(require_roles(*REPORT_ROLES)),
    ) -> Abandonment:
        return get_engine(request).abandonment(window, utc_now())

    @router.get("/metric/satisfaction", response_model=SatisfactionReport)
    def satisfaction(
        request: Request,
        window: Window = Depends(metric_window),
        mode: AttributionMode = AttributionMode.opened,
        _: AuthContext = Depends(require_roles(*REPORT_ROLES)),
    ) -> SatisfactionReport:
        return get_engine(request).agent_satisfaction(window, mode)

    @router.get("/metric/unrated-issues", response_model=list[AgentUnratedIssues])
    def unrated_issues(
        request: Request,
        window: Window = Depends(metric_window),
        mode: AttributionMode = AttributionMode.opened,
        _: AuthContext = Depends(require_roles(*REPORT_ROLES)),
    ) -> list[AgentUnratedIssues]:
        return get_engine(request).unrated_issues_per_agent(window, mode)

    @router.get(
        "/metric/user-message-summaries",
        response_model=list[DailyUserMessageSummaryRecord],
    )
    def user_message_summaries(
        request: Request,
        window: Window = Depends(metric_window),
        agent_id: Optional[str] = None,
        _: AuthContext = Depends(require_roles(*REPORT_ROLES)),
    ) -> list[DailyUserMessageSummaryRecord]:
        return get_engine(request).user_message_summaries(window, agent_id=agent_id)

    @router.get("/metric/business-day-kpis", response_model=list[BusinessDayKpiRecord])
    def business_day_kpis(
        request: Request,
        window: Window = Depends(metric_window),
        _: AuthContext = Depends(require_roles(*REPORT_ROLES)),
    ) -> list[BusinessDayKpiRecord]:
        first_day = business_date(window.start)
        last_day = business_date(window.end)
        rows = get_store(request).list_business_day_kpis()
        return [row for row in rows if first_day <= row.business_date <= last_day]

    @router.get("/metric/comparison", response_model=ComparisonReport)
    def comparison(
        request: Request,
        window: Window = Depends(metric_window),
        mode: AttributionMode = AttributionMode.opened,
        _: AuthContext = Depends(require_roles(*REPORT_ROLES)),
    ) -> ComparisonReport:
        settings = get_settings(request)
        return compare_windows(
            get_engine(request),
            window,
            mode,
            now=utc_now(),
            max_workers=settings.comparison_max_workers,
        )

    # --- episodes ------------------------------------------------------------------

    @router.get("/cases/{case_id}/episodes", response_model=list[EpisodeRecord])
    def list_episodes(
        case_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*REPORT_ROLES)),
    ) -> list[EpisodeRecord]:
        try:
            return get_episodes(request).list_episodes(case_id)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc

    @router.post("/cases/{case_id}/episodes", response_model=EpisodeRecord)
    def open_episode(
        case_id: str,
        payload: EpisodeOpenRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(*REPORT_ROLES)),
    ) -> EpisodeRecord:
        try:
            return get_episodes(request).ensure_open_episode(
                case_id, payload.meta, machine_id=payload.machine_id
            )
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        except StoreConflictError as exc:
            raise _conflict(exc) from exc

    @router.post("/cases/{case_id}/episodes/close", response_model=Optional[EpisodeRecord])
    def close_episode(
        case_id: str,
        payload: EpisodeCloseRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(*REPORT_ROLES)),
    ) -> Optional[EpisodeRecord]:
        store = get_store(request)
        try:
            closed = get_episodes(request).close_current_episode(case_id, payload.final_status)
            if closed is not None:
                store.record_status_event(
                    case_id=case_id,
                    new_status=payload.final_status,
                    actor_id=context.actor_id,
                    timestamp=closed.ended_at,
                )
            return closed
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc

    @router.post("/cases/{case_id}/episodes/reopen", response_model=EpisodeRecord)
    def reopen_episode(
        case_id: str,
        payload: EpisodeOpenRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(*REPORT_ROLES)),
    ) -> EpisodeRecord:
        try:
            return get_episodes(request).reopen(case_id, payload.meta)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        except StoreConflictError as exc:
            raise _conflict(exc) from exc

    @router.get("/episodes/{episode_id}", response_model=EpisodeRecord)
    def get_episode(
        episode_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles(*REPORT_ROLES)),
    ) -> EpisodeRecord:
        try:
            return get_episodes(request).get_episode(episode_id)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc

    @router.patch("/episodes/{episode_id}/machine", response_model=EpisodeRecord)
    def tag_episode_machine(
        episode_id: str,
        payload: EpisodeMachineRequest,
        request: Request,
        _: AuthContext = Depends(require_roles(*REPORT_ROLES)),
    ) -> EpisodeRecord:
        try:
            return get_episodes(request).tag_machine(episode_id, payload.machine_id)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc

    # --- inbound conversation events ---------------------------------------------------

    @router.post("/events/conversation", response_model=ConversationEventResponse)
    async def conversation_event(
        request: Request,
        _: AuthContext = Depends(require_roles(ROLE_SERVICE, ROLE_ADMIN)),
    ) -> ConversationEventResponse:
        store = get_store(request)
        settings = get_settings(request)
        raw_body = await request.body()
        try:
            verify_whatsapp_signature(
                headers=request.headers,
                raw_body=raw_body,
                secret=settings.whatsapp_webhook_secret,
            )
        except SignatureVerificationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

        try:
            event = ConversationEventRequest.model_validate(json.loads(raw_body.decode("utf-8")))
        except (json.JSONDecodeError, ValueError) as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="invalid json payload",
            ) from exc

        if not store.claim_event(event.event_id):
            return ConversationEventResponse(status="duplicate")
        try:
            detail = process_conversation_event(
                store=store,
                episodes=get_episodes(request),
                event=event,
            )
        except PermanentEventError as exc:
            logger.warning("conversation_event_rejected event_id=%s error=%s", event.event_id, exc)
            return ConversationEventResponse(status="failed", detail=str(exc))
        except Exception as exc:
            logger.warning(
                "conversation_event_released event_id=%s error=%s", event.event_id, exc
            )
            store.release_event(event.event_id)
            raise
        if detail == "ignored_event_type":
            return ConversationEventResponse(status="ignored", detail=detail)
        return ConversationEventResponse(status="processed", detail=detail)

    # --- scheduled jobs ----------------------------------------------------------------

    @router.post("/jobs/daily-user-summaries", response_model=JobRunResponse)
    def run_daily_user_summaries(
        request: Request,
        business_day: Optional[date] = None,
        _: AuthContext = Depends(require_roles(*JOB_ROLES)),
    ) -> JobRunResponse:
        now = utc_now()
        day = business_day or last_completed_business_day(now)
        rows = handle_daily_user_summaries(
            get_store(request),
            get_settings(request),
            now,
            business_day=day,
            metrics=get_metrics(request),
        )
        if rows is None:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"{DAILY_USER_SUMMARIES} failed; see logs",
            )
        return JobRunResponse(
            job=DAILY_USER_SUMMARIES, succeeded=True, business_date=day, rows=len(rows)
        )

    @router.post("/jobs/business-day-kpis", response_model=JobRunResponse)
    def run_business_day_kpis(
        request: Request,
        business_day: Optional[date] = None,
        _: AuthContext = Depends(require_roles(*JOB_ROLES)),
    ) -> JobRunResponse:
        now = utc_now()
        day = business_day or last_completed_business_day(now)
        record = refresh_business_day_kpis(
            get_store(request), now, business_day=day, metrics=get_metrics(request)
        )
        if record is None:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"{BUSINESS_DAY_KPIS} failed; see logs",
            )
        return JobRunResponse(job=BUSINESS_DAY_KPIS, succeeded=True, business_date=day, rows=1)

    return router
