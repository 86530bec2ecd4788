from __future__ import annotations

import argparse
import hashlib
import hmac
import json
import sys
import urllib.error
import urllib.request
from datetime import datetime, timedelta, timezone


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def post_json(url: str, body: bytes, headers: dict[str, str]) -> tuple[int, str]:
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            content = response.read().decode("utf-8")
            return response.status, content
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def _iso(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def conversation_events(index: int, agent_id: str, started: datetime) -> list[dict]:
    """One scripted chat: customer complaint, bot prompt, agent refund, solved."""
    case_id = f"case_mock_{index}"
    customer_id = f"9198{index:08d}"
    prefix = f"evt_mock_{index}"
    return [
        {
            "event_id": f"{prefix}_customer",
            "event_type": "message",
            "case_id": case_id,
            "payload": {
                "sender_type": "CUSTOMER",
                "customer_id": customer_id,
                "text": "Machine took my money but no drink",
                "timestamp": _iso(started),
            },
        },
        {
            "event_id": f"{prefix}_bot",
            "event_type": "message",
            "case_id": case_id,
            "payload": {
                "sender_type": "BOT",
                "message_type": "INTERACTIVE",
                "text": "Connecting you to an agent",
                "timestamp": _iso(started + timedelta(minutes=1)),
            },
        },
        {
            "event_id": f"{prefix}_agent",
            "event_type": "message",
            "case_id": case_id,
            "payload": {
                "sender_type": "USER",
                "agent_id": agent_id,
                "text": "Refund initiated",
                "timestamp": _iso(started + timedelta(minutes=4 + index % 7)),
            },
        },
        {
            "event_id": f"{prefix}_issue",
            "event_type": "issue",
            "case_id": case_id,
            "payload": {
                "agent_id": agent_id,
                "machine_name": f"VM-{100 + index % 4}",
                "issue_type": "REFUND",
                "refund_mode": "MANUAL" if index % 2 else "AUTO",
                "refund_amount_minor": 2000,
                "opened_at": _iso(started),
                "agent_called_at": _iso(started + timedelta(minutes=1)),
                "agent_linked_at": _iso(started + timedelta(minutes=3)),
                "closed_at": _iso(started + timedelta(minutes=20)),
                "agent_rating": 3 + index % 3,
            },
        },
        {
            "event_id": f"{prefix}_solved",
            "event_type": "status",
            "case_id": case_id,
            "payload": {
                "status": "SOLVED",
                "actor_id": agent_id,
                "timestamp": _iso(started + timedelta(minutes=25)),
            },
        },
    ]


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Send mock WhatsApp conversation events to a local Support Desk API."
    )
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--count", type=int, default=5)
    parser.add_argument("--start-index", type=int, default=1)
    parser.add_argument("--agents", default="3,6,8", help="Comma-separated agent ids to rotate")
    parser.add_argument("--secret", default="", help="WHATSAPP_WEBHOOK_SECRET of the target API")
    parser.add_argument("--token", default="", help="Bearer token with the service role")
    args = parser.parse_args()

    agents = [item.strip() for item in args.agents.split(",") if item.strip()]
    endpoint = f"{args.base_url.rstrip('/')}/events/conversation"
    now = datetime.now(timezone.utc).replace(microsecond=0)
    for index in range(args.start_index, args.start_index + args.count):
        started = now - timedelta(hours=index)
        agent_id = agents[index % len(agents)]
        for event in conversation_events(index, agent_id, started):
            body = json.dumps(event, separators=(",", ":")).encode("utf-8")
            headers: dict[str, str] = {}
            if args.secret:
                headers["X-Hub-Signature-256"] = sign_payload(args.secret, body)
            if args.token:
                headers["Authorization"] = f"Bearer {args.token}"
            status_code, response = post_json(endpoint, body, headers)
            print(f"{status_code} {event['event_id']} {response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
