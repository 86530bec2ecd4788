from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Optional

from backend.app.filters import QueryBuilder
from backend.app.models import (
    AttributionMode,
    BusinessDayKpiRecord,
    CaseHandler,
    CaseStatus,
    DailyUserMessageSummaryRecord,
    IssueType,
    RefundMode,
    SenderType,
    Window,
)
from backend.app.observability import MetricsRegistry
from backend.app.services.business_calendar import BUSINESS_DAY, business_date, business_day_window
from backend.app.services.episodes import minutes_between
from backend.app.services.metrics import MetricsEngine, issue_window_filter
from backend.app.settings import Settings
from backend.app.store import EventStore

logger = logging.getLogger("support_desk.jobs")

PREVIEW_LENGTH = 250
DAILY_USER_SUMMARIES = "daily_user_summaries"
BUSINESS_DAY_KPIS = "business_day_kpis"


def last_completed_business_day(now: datetime) -> date:
    return business_date(now) - BUSINESS_DAY


def _preview(text: Optional[str], tail: bool = False) -> Optional[str]:
    """Opening characters of a text, or its closing characters when ``tail`` is set."""
    if text is None:
        return None
    return text[-PREVIEW_LENGTH:] if tail else text[:PREVIEW_LENGTH]


def _job_failed(job: str, metrics: Optional[MetricsRegistry], day: Optional[date]) -> None:
    logger.exception("job_failed job=%s business_date=%s", job, day)
    if metrics:
        metrics.record_job_failure(job)


def handle_daily_user_summaries(
    store: EventStore,
    settings: Settings,
    now: datetime,
    business_day: Optional[date] = None,
    metrics: Optional[MetricsRegistry] = None,
) -> Optional[list[DailyUserMessageSummaryRecord]]:
    """Summarize each tracked agent's messages for one business day.

    Rows are upserted on (agent, business day), so re-running the job for the
    same day rewrites the same rows. Returns ``None`` when the run failed.
    """
    day = business_day or last_completed_business_day(now)
    if metrics:
        metrics.record_job_run(DAILY_USER_SUMMARIES)
    try:
        start, end = business_day_window(day)
        stored: list[DailyUserMessageSummaryRecord] = []
        for agent_id in settings.tracked_agent_ids:
            messages = store.query_messages(
                QueryBuilder()
                .sender(SenderType.USER)
                .equals("agent_id", agent_id)
                .between("timestamp", start, end)
                .build()
            )
            if not messages:
                logger.info("daily_summary_skipped agent_id=%s business_date=%s", agent_id, day)
                continue
            first, last = messages[0], messages[-1]
            record = DailyUserMessageSummaryRecord(
                agent_id=agent_id,
                business_date=day,
                first_message_id=first.id,
                last_message_id=last.id,
                first_timestamp=first.timestamp,
                last_timestamp=last.timestamp,
                total_messages=len(messages),
                active_duration_minutes=minutes_between(first.timestamp, last.timestamp),
                first_text=_preview(first.text),
                last_text=_preview(last.text, tail=True),
                created_at=now,
                updated_at=now,
            )
            stored.append(store.upsert_daily_user_summary(record))
    except Exception:
        _job_failed(DAILY_USER_SUMMARIES, metrics, day)
        return None

    logger.info(
        "job_complete job=%s business_date=%s rows=%s", DAILY_USER_SUMMARIES, day, len(stored)
    )
    return stored


def refresh_business_day_kpis(
    store: EventStore,
    now: datetime,
    business_day: Optional[date] = None,
    metrics: Optional[MetricsRegistry] = None,
) -> Optional[BusinessDayKpiRecord]:
    """Compute and store the KPI snapshot for one business day."""
    day = business_day or last_completed_business_day(now)
    if metrics:
        metrics.record_job_run(BUSINESS_DAY_KPIS)
    try:
        start, end = business_day_window(day)
        window = Window(start=start, end=end)
        engine = MetricsEngine(store)

        opened = store.query_cases(QueryBuilder().between("created_at", start, end).build())
        solved_ids = {
            event.case_id
            for event in store.query_status_events(
                QueryBuilder()
                .status(CaseStatus.SOLVED)
                .between("timestamp", start, end)
                .build()
            )
        }
        solved_cases = store.query_cases(QueryBuilder().within("id", solved_ids).build())
        refunds = store.query_issue_events(
            QueryBuilder()
            .equals("issue_type", IssueType.REFUND)
            .extend((issue_window_filter(window, AttributionMode.opened),))
            .build()
        )

        record = BusinessDayKpiRecord(
            business_date=day,
            cases_opened=len(opened),
            cases_solved=len(solved_cases),
            solved_by_bot=sum(1 for case in solved_cases if case.assigned_to == CaseHandler.BOT),
            solved_by_agent=sum(
                1 for case in solved_cases if case.assigned_to == CaseHandler.USER
            ),
            fcr_rate=engine.first_contact_resolution(window).rate,
            avg_frt_minutes=engine.message_first_response_time(window).overall.avg,
            abandonment_rate=engine.abandonment(window, now).rate,
            long_running_pct=engine.long_running_chats(window, now).percentage,
            manual_refunds=sum(1 for issue in refunds if issue.refund_mode == RefundMode.MANUAL),
            auto_refunds=sum(1 for issue in refunds if issue.refund_mode == RefundMode.AUTO),
            created_at=now,
            updated_at=now,
        )
        stored = store.upsert_business_day_kpis(record)
    except Exception:
        _job_failed(BUSINESS_DAY_KPIS, metrics, day)
        return None

    logger.info("job_complete job=%s business_date=%s", BUSINESS_DAY_KPIS, day)
    return stored
