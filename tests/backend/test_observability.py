from __future__ import annotations

from backend.app.observability import MetricsRegistry


def test_metrics_endpoint_exposes_counters(client) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text
    assert "support_desk_requests_total" in body
    assert "support_desk_requests_5xx_total" in body
    assert 'support_desk_route_requests_total{route="/health",status="200"} 1' in body


def test_readiness_endpoint(client) -> None:
    response = client.get("/health/ready")
    assert response.status_code == 200
    assert response.json()["status"] == "ready"


def test_job_counters_in_exposition() -> None:
    registry = MetricsRegistry()
    registry.record_job_run("daily_user_summaries")
    registry.record_job_run("daily_user_summaries")
    registry.record_job_failure("daily_user_summaries")

    body = registry.to_prometheus()

    assert "support_desk_job_failures_total 1" in body
    assert 'support_desk_job_runs_total{job="daily_user_summaries"} 2' in body
    assert 'support_desk_job_failures{job="daily_user_summaries"} 1' in body
