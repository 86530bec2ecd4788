from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from pydantic import ValidationError

from backend.app.models import (
    CaseHandler,
    CaseStatus,
    ConversationEventRequest,
    IssueType,
    MessageType,
    RefundMode,
    SenderType,
    utc_now,
)
from backend.app.services.business_calendar import parse_instant
from backend.app.services.episodes import EpisodeManager
from backend.app.services.workflow import (
    CLOSING_STATUSES,
    OPENING_STATUSES,
    is_allowed_transition,
)
from backend.app.store import InMemoryStore, StoreConflictError, StoreNotFoundError

logger = logging.getLogger("support_desk.events")

ISSUE_FIELDS = {
    "agent_id",
    "machine_id",
    "machine_name",
    "issue_type",
    "refund_mode",
    "refund_amount_minor",
    "opened_at",
    "closed_at",
    "is_active",
    "agent_called_at",
    "agent_linked_at",
    "agent_rating",
}
ISSUE_TIMESTAMPS = {"opened_at", "closed_at", "agent_called_at", "agent_linked_at"}


class PermanentEventError(Exception):
    pass


def _enum(enum_cls, value: Any, field: str):
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise PermanentEventError(f"invalid {field}: {value!r}") from exc


def _instant(value: Any, field: str) -> Optional[datetime]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise PermanentEventError(f"{field} must be an ISO-8601 string")
    try:
        return parse_instant(value)
    except ValueError as exc:
        raise PermanentEventError(str(exc)) from exc


def _require_case(store: InMemoryStore, case_id: Optional[str]):
    if not case_id:
        raise PermanentEventError("event missing case_id")
    try:
        return store.find_case(case_id)
    except StoreNotFoundError as exc:
        raise PermanentEventError(str(exc)) from exc


def _case_for_message(
    store: InMemoryStore,
    event: ConversationEventRequest,
    sender: SenderType,
    timestamp: datetime,
):
    """A customer's first message starts the case when it carries a ``customer_id``."""
    customer_id = event.payload.get("customer_id")
    if sender != SenderType.CUSTOMER or not event.case_id or not customer_id:
        return _require_case(store, event.case_id)
    try:
        return store.find_case(event.case_id)
    except StoreNotFoundError:
        pass
    try:
        case = store.create_case(
            customer_id=str(customer_id), created_at=timestamp, case_id=event.case_id
        )
    except StoreConflictError:
        return store.find_case(event.case_id)
    logger.info("case_created case_id=%s customer_id=%s", case.id, case.customer_id)
    return case


def _handle_message(
    store: InMemoryStore,
    episodes: EpisodeManager,
    event: ConversationEventRequest,
    now: datetime,
) -> str:
    data = event.payload
    sender = _enum(SenderType, data.get("sender_type"), "sender_type")
    message_type = _enum(MessageType, data.get("message_type", MessageType.TEXT), "message_type")
    timestamp = _instant(data.get("timestamp"), "timestamp") or now
    case = _case_for_message(store, event, sender, timestamp)
    agent_id = data.get("agent_id")
    if sender == SenderType.USER and not agent_id:
        raise PermanentEventError("agent message missing agent_id")

    if sender == SenderType.CUSTOMER:
        if case.status in CLOSING_STATUSES:
            store.record_status_event(
                case_id=case.id, new_status=CaseStatus.INITIATED, timestamp=timestamp
            )
            episodes.reopen(case.id, {"reopened_by": "customer_message"}, now=timestamp)
        else:
            episodes.ensure_open_episode(case.id, now=timestamp)
    elif sender == SenderType.USER and (
        case.assigned_to != CaseHandler.USER or case.agent_id != agent_id
    ):
        store.update_case(case.id, {"assigned_to": CaseHandler.USER, "agent_id": agent_id})

    message = store.record_message(
        case_id=case.id,
        sender_type=sender,
        timestamp=timestamp,
        text=data.get("text"),
        agent_id=agent_id if sender == SenderType.USER else None,
        message_type=message_type,
        issue_event_id=data.get("issue_event_id"),
    )
    return f"message_recorded:{message.id}"


def _handle_status(
    store: InMemoryStore,
    episodes: EpisodeManager,
    event: ConversationEventRequest,
    now: datetime,
) -> str:
    data = event.payload
    case = _require_case(store, event.case_id)
    target = _enum(CaseStatus, data.get("status"), "status")
    if not is_allowed_transition(case.status, target):
        raise PermanentEventError(
            f"invalid status transition from {case.status.value} to {target.value}"
        )
    timestamp = _instant(data.get("timestamp"), "timestamp") or now

    if "assigned_to" in data:
        handler = _enum(CaseHandler, data["assigned_to"], "assigned_to")
        store.update_case(case.id, {"assigned_to": handler})
    store.record_status_event(
        case_id=case.id,
        new_status=target,
        actor_id=data.get("actor_id"),
        timestamp=timestamp,
    )
    if target in CLOSING_STATUSES:
        closed = episodes.close_current_episode(case.id, target, now=timestamp)
        return f"status_recorded:{target.value}:episode_closed={str(bool(closed)).lower()}"
    if target in OPENING_STATUSES:
        episode = episodes.ensure_open_episode(case.id, now=timestamp)
        return f"status_recorded:{target.value}:episode={episode.id}"
    return f"status_recorded:{target.value}"


def _issue_fields(data: dict[str, Any]) -> dict[str, Any]:
    unknown = set(data) - ISSUE_FIELDS - {"issue_id"}
    if unknown:
        raise PermanentEventError(f"unknown issue fields: {sorted(unknown)}")
    fields: dict[str, Any] = {}
    for key, value in data.items():
        if key == "issue_id":
            continue
        if key in ISSUE_TIMESTAMPS:
            fields[key] = _instant(value, key)
        elif key == "issue_type":
            fields[key] = _enum(IssueType, value, key)
        elif key == "refund_mode":
            fields[key] = _enum(RefundMode, value, key) if value is not None else None
        else:
            fields[key] = value
    return fields


def _handle_issue(
    store: InMemoryStore,
    event: ConversationEventRequest,
    now: datetime,
) -> str:
    data = event.payload
    fields = _issue_fields(data)
    issue_id = data.get("issue_id")
    try:
        if issue_id:
            if "closed_at" in fields and "is_active" not in fields:
                fields["is_active"] = fields["closed_at"] is None
            fields.setdefault("updated_at", now)
            issue = store.update_issue_event(issue_id, fields)
            return f"issue_updated:{issue.id}"
        if event.case_id:
            _require_case(store, event.case_id)
        fields.setdefault("opened_at", now)
        issue = store.create_issue_event(case_id=event.case_id, **fields)
    except StoreNotFoundError as exc:
        raise PermanentEventError(str(exc)) from exc
    except ValidationError as exc:
        raise PermanentEventError(f"invalid issue payload: {exc.errors()}") from exc
    return f"issue_created:{issue.id}"


def process_conversation_event(
    *,
    store: InMemoryStore,
    episodes: EpisodeManager,
    event: ConversationEventRequest,
    now: Optional[datetime] = None,
) -> str:
    current = now or utc_now()
    event_type = (event.event_type or "").strip().lower()
    if event_type == "message":
        detail = _handle_message(store, episodes, event, current)
    elif event_type == "status":
        detail = _handle_status(store, episodes, event, current)
    elif event_type == "issue":
        detail = _handle_issue(store, event, current)
    else:
        return "ignored_event_type"
    logger.info("conversation_event event_id=%s detail=%s", event.event_id, detail)
    return detail
