from __future__ import annotations

import json

from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.services.webhooks import sign_payload
from backend.app.store import StoreUnavailableError

DAY = "from=2025-06-15T00:00:00Z&to=2025-06-16T00:00:00Z"


def _event(event_id: str, event_type: str, case_id: str, **payload) -> dict:
    return {"event_id": event_id, "event_type": event_type, "case_id": case_id, "payload": payload}


def _seed_conversation(client) -> None:
    events = [
        _event(
            "evt_flow_1",
            "message",
            "case_flow",
            sender_type="CUSTOMER",
            customer_id="919800000001",
            text="machine ate my coins",
            timestamp="2025-06-15T10:00:00Z",
        ),
        _event(
            "evt_flow_2",
            "message",
            "case_flow",
            sender_type="USER",
            agent_id="3",
            text="refund issued",
            timestamp="2025-06-15T10:05:00Z",
        ),
        _event(
            "evt_flow_3",
            "issue",
            "case_flow",
            agent_id="3",
            machine_name="VM-12",
            issue_type="REFUND",
            refund_mode="MANUAL",
            refund_amount_minor=1500,
            opened_at="2025-06-15T10:01:00Z",
            closed_at="2025-06-15T10:20:00Z",
            agent_rating=5,
        ),
        _event(
            "evt_flow_4",
            "status",
            "case_flow",
            status="SOLVED",
            actor_id="3",
            timestamp="2025-06-15T10:30:00Z",
        ),
    ]
    for event in events:
        response = client.post("/events/conversation", json=event)
        assert response.status_code == 200
        assert response.json()["status"] == "processed"


def test_end_to_end_conversation_to_kpis(client) -> None:
    _seed_conversation(client)

    episodes = client.get("/cases/case_flow/episodes").json()
    assert len(episodes) == 1
    assert episodes[0]["status"] == "SOLVED"
    assert episodes[0]["duration_minutes"] == 30

    chats = client.get(f"/metric/chats-per-agent?{DAY}")
    assert chats.status_code == 200
    assert chats.json() == [{"agent_id": "3", "agent_name": "Agent#3", "total_chats": 1}]

    fcr = client.get(f"/metric/fcr?{DAY}").json()
    assert fcr == {"count": 0, "total_solved": 1, "rate": 0.0}

    machines = client.get(f"/metric/machine-issues?{DAY}&mode=updated").json()
    assert machines[0]["machine_name"] == "VM-12"
    assert machines[0]["manual"] == {"count": 1, "total_amount_minor": 1500}
    assert machines[0]["active"] == 0

    satisfaction = client.get(f"/metric/satisfaction?{DAY}").json()
    assert satisfaction["overall_percentage"] == 100.0

    trend = client.get(f"/metric/manual-refund-trend?{DAY}").json()
    assert trend["labels"] == ["2025-06-15"]

    comparison = client.get(f"/metric/comparison?{DAY}&mode=updated")
    assert comparison.status_code == 200
    body = comparison.json()
    assert body["previous"]["start"] == "2025-06-14T00:00:00"
    assert body["mode"] == "updated"
    assert {item["kpi"] for item in body["metrics"]} >= {"total_chats", "manual_refund_rate"}


def test_duplicate_and_failed_events(client) -> None:
    _seed_conversation(client)

    duplicate = client.post(
        "/events/conversation",
        json=_event("evt_flow_1", "message", "case_flow", sender_type="CUSTOMER"),
    )
    assert duplicate.json() == {"status": "duplicate", "detail": None}

    failed = client.post(
        "/events/conversation",
        json=_event("evt_flow_bad", "status", "case_flow", status="UNSOLVED"),
    )
    assert failed.status_code == 200
    assert failed.json()["status"] == "failed"
    assert "invalid status transition" in failed.json()["detail"]

    ignored = client.post(
        "/events/conversation", json=_event("evt_flow_typing", "typing", "case_flow")
    )
    assert ignored.json()["status"] == "ignored"


def test_invalid_payloads(client) -> None:
    broken = client.post(
        "/events/conversation",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )
    assert broken.status_code == 400

    bad_range = client.get("/metric/fcr?preset=90d")
    assert bad_range.status_code == 422

    inverted = client.get("/metric/fcr?from=2025-06-16T00:00:00Z&to=2025-06-15T00:00:00Z")
    assert inverted.status_code == 422

    bad_mode = client.get("/metric/closure-sla?mode=closed")
    assert bad_mode.status_code == 422


def test_episode_endpoints(client) -> None:
    client.post(
        "/events/conversation",
        json=_event(
            "evt_ep_1",
            "message",
            "case_ep",
            sender_type="CUSTOMER",
            customer_id="919800000002",
        ),
    )

    opened = client.post("/cases/case_ep/episodes", json={"meta": {"channel": "whatsapp"}})
    assert opened.status_code == 200
    first = opened.json()
    assert first["sequence"] == 1

    tagged = client.patch(f"/episodes/{first['id']}/machine", json={"machine_id": "VM-3"})
    assert tagged.json()["machine_id"] == "VM-3"

    closed = client.post("/cases/case_ep/episodes/close", json={"final_status": "SOLVED"})
    assert closed.status_code == 200
    assert closed.json()["status"] == "SOLVED"

    again = client.post("/cases/case_ep/episodes/close", json={"final_status": "SOLVED"})
    assert again.status_code == 200
    assert again.json() is None

    invalid = client.post("/cases/case_ep/episodes/close", json={"final_status": "IN_PROGRESS"})
    assert invalid.status_code == 422

    reopened = client.post("/cases/case_ep/episodes/reopen", json={})
    assert reopened.json()["sequence"] == 2

    assert client.get(f"/episodes/{first['id']}").json()["status"] == "SOLVED"
    assert client.get("/episodes/ep_missing").status_code == 404
    assert client.get("/cases/case_missing/episodes").status_code == 404
    assert client.post("/cases/case_missing/episodes", json={}).status_code == 404


def test_jobs_endpoints(client) -> None:
    _seed_conversation(client)

    summaries = client.post("/jobs/daily-user-summaries?business_day=2025-06-15")
    assert summaries.status_code == 200
    assert summaries.json()["rows"] == 1

    kpis = client.post("/jobs/business-day-kpis?business_day=2025-06-15")
    assert kpis.status_code == 200

    window = "from=2025-06-14T22:30:00Z&to=2025-06-15T22:30:00Z"
    listed = client.get(f"/metric/user-message-summaries?{window}&agent_id=3").json()
    assert [(row["agent_id"], row["total_messages"]) for row in listed] == [("3", 1)]

    snapshots = client.get(f"/metric/business-day-kpis?{window}").json()
    assert snapshots[0]["cases_opened"] == 1
    assert snapshots[0]["manual_refunds"] == 1


def test_signed_events_require_valid_signature(monkeypatch) -> None:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("WHATSAPP_WEBHOOK_SECRET", "wa-secret")
    client = TestClient(create_app())
    body = json.dumps(
        _event("evt_signed_1", "message", "case_signed", sender_type="CUSTOMER", customer_id="91")
    ).encode("utf-8")

    missing = client.post(
        "/events/conversation", content=body, headers={"Content-Type": "application/json"}
    )
    forged = client.post(
        "/events/conversation",
        content=body,
        headers={"Content-Type": "application/json", "X-Hub-Signature-256": "sha256=deadbeef"},
    )
    valid = client.post(
        "/events/conversation",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Hub-Signature-256": sign_payload(body, "wa-secret"),
        },
    )

    assert missing.status_code == 403
    assert forged.status_code == 403
    assert valid.status_code == 200
    assert valid.json()["status"] == "processed"


def test_event_is_processed_again_after_store_outage(client, monkeypatch) -> None:
    store = client.app.state.store
    record_message = store.record_message
    calls: list[str] = []

    def flaky_record_message(**kwargs):
        calls.append(kwargs["case_id"])
        if len(calls) == 1:
            raise StoreUnavailableError("database is locked")
        return record_message(**kwargs)

    monkeypatch.setattr(store, "record_message", flaky_record_message)
    event = _event(
        "evt_outage_retry",
        "message",
        "case_outage_retry",
        sender_type="CUSTOMER",
        customer_id="919800000009",
        timestamp="2025-06-15T10:00:00Z",
    )

    first = client.post("/events/conversation", json=event)
    second = client.post("/events/conversation", json=event)
    third = client.post("/events/conversation", json=event)

    assert first.status_code == 503
    assert second.json()["status"] == "processed"
    assert third.json() == {"status": "duplicate", "detail": None}
    assert len(store.query_messages()) == 1
