from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi.testclient import TestClient

from backend.app.main import create_app


def _token(
    secret: str,
    subject: str,
    roles: list[str],
    agent_id: Optional[str] = None,
    expires_in: timedelta = timedelta(hours=1),
) -> str:
    payload = {
        "sub": subject,
        "roles": roles,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    if agent_id is not None:
        payload["agent_id"] = agent_id
    return jwt.encode(payload, secret, algorithm="HS256")


def _client(monkeypatch) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "true")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("WHATSAPP_WEBHOOK_SECRET", "")
    return TestClient(create_app())


def test_auth_blocks_missing_token_when_enabled(monkeypatch) -> None:
    client = _client(monkeypatch)
    response = client.get("/metric/fcr?preset=7d")
    assert response.status_code == 401


def test_auth_allows_agent_token_with_agent_id(monkeypatch) -> None:
    client = _client(monkeypatch)
    token = _token("test-secret", "agent-3", ["agent"], agent_id="3")

    response = client.get("/metric/fcr?preset=7d", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json() == {"count": 0, "total_solved": 0, "rate": 0.0}


def test_agent_token_requires_agent_id(monkeypatch) -> None:
    client = _client(monkeypatch)
    token = _token("test-secret", "agent-3", ["agent"])

    response = client.get("/metric/fcr", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 403
    assert response.json()["detail"] == "agent token missing agent_id"


def test_expired_and_forged_tokens_are_rejected(monkeypatch) -> None:
    client = _client(monkeypatch)
    expired = _token("test-secret", "admin-1", ["admin"], expires_in=timedelta(minutes=-5))
    forged = _token("other-secret", "admin-1", ["admin"])

    first = client.get("/metric/fcr", headers={"Authorization": f"Bearer {expired}"})
    second = client.get("/metric/fcr", headers={"Authorization": f"Bearer {forged}"})

    assert (first.status_code, first.json()["detail"]) == (401, "auth token expired")
    assert (second.status_code, second.json()["detail"]) == (401, "invalid auth token")


def test_agents_cannot_trigger_jobs(monkeypatch) -> None:
    client = _client(monkeypatch)
    agent = _token("test-secret", "agent-3", ["agent"], agent_id="3")
    service = _token("test-secret", "scheduler", ["service"])

    denied = client.post(
        "/jobs/daily-user-summaries", headers={"Authorization": f"Bearer {agent}"}
    )
    allowed = client.post(
        "/jobs/daily-user-summaries?business_day=2025-06-15",
        headers={"Authorization": f"Bearer {service}"},
    )

    assert denied.status_code == 403
    assert allowed.status_code == 200
    assert allowed.json() == {
        "job": "daily_user_summaries",
        "succeeded": True,
        "business_date": "2025-06-15",
        "rows": 0,
    }


def test_health_is_public_when_auth_enabled(monkeypatch) -> None:
    client = _client(monkeypatch)
    assert client.get("/health").status_code == 200
