from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Optional

from backend.app.models import AttributionMode, ComparisonReport, KpiDelta, Window, utc_now
from backend.app.services.metrics import MetricsEngine
from backend.app.services.ranges import previous_window

logger = logging.getLogger("support_desk.comparison")

HIGHER_IS_BETTER = "higher"
LOWER_IS_BETTER = "lower"

POLARITY = {
    "total_chats": HIGHER_IS_BETTER,
    "fcr_rate": HIGHER_IS_BETTER,
    "agent_satisfaction_pct": HIGHER_IS_BETTER,
    "avg_frt_minutes": LOWER_IS_BETTER,
    "manual_refund_rate": LOWER_IS_BETTER,
    "abandonment_rate": LOWER_IS_BETTER,
    "long_running_pct": LOWER_IS_BETTER,
    "slow_closure_rate": LOWER_IS_BETTER,
}


def _total_chats(engine: MetricsEngine, window: Window, mode, now) -> float:
    return float(sum(row.total_chats for row in engine.chat_volume_per_agent(window)))


def _fcr_rate(engine: MetricsEngine, window: Window, mode, now) -> float:
    return engine.first_contact_resolution(window).rate


def _satisfaction_pct(engine: MetricsEngine, window: Window, mode, now) -> float:
    return engine.agent_satisfaction(window, mode).overall_percentage or 0.0


def _avg_frt(engine: MetricsEngine, window: Window, mode, now) -> float:
    return engine.message_first_response_time(window).overall.avg or 0.0


def _manual_refund_rate(engine: MetricsEngine, window: Window, mode, now) -> float:
    return engine.manual_refund_rate(window, mode)


def _abandonment_rate(engine: MetricsEngine, window: Window, mode, now) -> float:
    return engine.abandonment(window, now).rate


def _long_running_pct(engine: MetricsEngine, window: Window, mode, now) -> float:
    return engine.long_running_chats(window, now).percentage


def _slow_closure_rate(engine: MetricsEngine, window: Window, mode, now) -> float:
    report = engine.closure_sla(window, mode)
    if not report.total:
        return 0.0
    slow = sum(row.closed_after_4h for row in report.summary)
    return slow / report.total * 100.0


KPI_FUNCTIONS: dict[str, Callable[..., float]] = {
    "total_chats": _total_chats,
    "fcr_rate": _fcr_rate,
    "agent_satisfaction_pct": _satisfaction_pct,
    "avg_frt_minutes": _avg_frt,
    "manual_refund_rate": _manual_refund_rate,
    "abandonment_rate": _abandonment_rate,
    "long_running_pct": _long_running_pct,
    "slow_closure_rate": _slow_closure_rate,
}


def pct_change(current: float, previous: float) -> float:
    if previous == 0:
        return 0.0
    return (current - previous) / previous * 100.0


def is_positive(kpi: str, change: float) -> bool:
    if POLARITY[kpi] == HIGHER_IS_BETTER:
        return change >= 0
    return change <= 0


def kpi_snapshot(
    engine: MetricsEngine,
    window: Window,
    mode: AttributionMode = AttributionMode.opened,
    now: Optional[datetime] = None,
) -> dict[str, float]:
    current = now or window.end
    return {name: fn(engine, window, mode, current) for name, fn in KPI_FUNCTIONS.items()}


def compare_windows(
    engine: MetricsEngine,
    window: Window,
    mode: AttributionMode = AttributionMode.opened,
    *,
    now: Optional[datetime] = None,
    max_workers: int = 4,
) -> ComparisonReport:
    """KPI deltas between ``window`` and the equal-length window right before it.

    The previous window is evaluated as of its own end, so age-based KPIs
    (abandonment, long-running chats) are not inflated by the time elapsed since.
    """
    previous = previous_window(window)
    targets = {"current": (window, now or utc_now()), "previous": (previous, previous.end)}
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = {
            (name, key): pool.submit(fn, engine, target, mode, as_of)
            for name, fn in KPI_FUNCTIONS.items()
            for key, (target, as_of) in targets.items()
        }
        values = {key: future.result() for key, future in futures.items()}

    metrics = []
    for name in KPI_FUNCTIONS:
        current_value = values[(name, "current")]
        previous_value = values[(name, "previous")]
        change = pct_change(current_value, previous_value)
        metrics.append(
            KpiDelta(
                kpi=name,
                current=current_value,
                previous=previous_value,
                pct_change=change,
                is_positive=is_positive(name, change),
            )
        )
    logger.info(
        "comparison_complete start=%s end=%s mode=%s",
        window.start.isoformat(),
        window.end.isoformat(),
        AttributionMode(mode).value,
    )
    return ComparisonReport(
        current=window, previous=previous, mode=AttributionMode(mode), metrics=metrics
    )
