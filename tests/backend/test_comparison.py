from __future__ import annotations

from datetime import datetime, timedelta

from backend.app.models import AttributionMode, IssueType, RefundMode, Window
from backend.app.services.comparison import (
    KPI_FUNCTIONS,
    compare_windows,
    is_positive,
    kpi_snapshot,
    pct_change,
)

WINDOW = Window(start=datetime(2025, 6, 15), end=datetime(2025, 6, 16))


def _refunds(store, opened_at: datetime, manual: int, auto: int) -> None:
    for index in range(manual + auto):
        store.create_issue_event(
            issue_type=IssueType.REFUND,
            refund_mode=RefundMode.MANUAL if index < manual else RefundMode.AUTO,
            opened_at=opened_at + timedelta(minutes=index),
        )


def test_pct_change_handles_zero_baseline() -> None:
    assert pct_change(20.0, 25.0) == -20.0
    assert pct_change(5.0, 0.0) == 0.0
    assert pct_change(0.0, 0.0) == 0.0


def test_polarity_decides_direction() -> None:
    assert is_positive("total_chats", 10.0)
    assert not is_positive("total_chats", -10.0)
    assert is_positive("manual_refund_rate", -20.0)
    assert not is_positive("avg_frt_minutes", 3.0)
    assert is_positive("abandonment_rate", 0.0)
    assert is_positive("fcr_rate", 0.0)


def test_compare_windows_reports_manual_refund_improvement(store, engine) -> None:
    _refunds(store, datetime(2025, 6, 15, 9, 0), manual=1, auto=4)
    _refunds(store, datetime(2025, 6, 14, 9, 0), manual=1, auto=3)

    report = compare_windows(engine, WINDOW, AttributionMode.opened, now=WINDOW.end)

    assert report.previous.start == datetime(2025, 6, 14)
    assert report.previous.end == WINDOW.start
    assert [delta.kpi for delta in report.metrics] == list(KPI_FUNCTIONS)
    deltas = {delta.kpi: delta for delta in report.metrics}
    refund = deltas["manual_refund_rate"]
    assert refund.current == 20.0
    assert refund.previous == 25.0
    assert refund.pct_change == -20.0
    assert refund.is_positive is True
    chats = deltas["total_chats"]
    assert chats.pct_change == 0.0
    assert chats.is_positive is True


def test_compare_windows_single_worker_matches_pool(store, engine) -> None:
    _refunds(store, datetime(2025, 6, 15, 9, 0), manual=2, auto=1)

    serial = compare_windows(engine, WINDOW, now=WINDOW.end, max_workers=1)
    pooled = compare_windows(engine, WINDOW, now=WINDOW.end, max_workers=8)

    assert serial.model_dump() == pooled.model_dump()


def test_kpi_snapshot_defaults_now_to_window_end(store, engine) -> None:
    _refunds(store, datetime(2025, 6, 15, 9, 0), manual=1, auto=1)
    snapshot = kpi_snapshot(engine, WINDOW)
    assert set(snapshot) == set(KPI_FUNCTIONS)
    assert snapshot["manual_refund_rate"] == 50.0
    assert snapshot["slow_closure_rate"] == 0.0
