from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from threading import RLock
from typing import TYPE_CHECKING, Any, Iterable, Optional
from uuid import uuid4

from backend.app.filters import Filter, matches
from backend.app.models import (
    BusinessDayKpiRecord,
    CaseHandler,
    CaseRecord,
    CaseStatus,
    DailyUserMessageSummaryRecord,
    EpisodeRecord,
    IssueEventRecord,
    IssueType,
    MessageRecord,
    MessageType,
    RefundMode,
    SenderType,
    StatusEventRecord,
    UserRecord,
    utc_now,
)

if TYPE_CHECKING:
    from backend.app.persistence import SqlPersistence


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:10]}"


class StoreConflictError(Exception):
    pass


class StoreNotFoundError(Exception):
    pass


class StoreUnavailableError(Exception):
    pass


class EventStore(ABC):
    """Read/write contract the lifecycle manager and the KPI engine depend on."""

    @abstractmethod
    def find_case(self, case_id: str) -> CaseRecord: ...

    @abstractmethod
    def update_case(
        self, case_id: str, patch: dict[str, Any], expected: Optional[dict[str, Any]] = None
    ) -> CaseRecord: ...

    @abstractmethod
    def create_episode(self, data: dict[str, Any]) -> EpisodeRecord: ...

    @abstractmethod
    def get_episode(self, episode_id: str) -> EpisodeRecord: ...

    @abstractmethod
    def update_episode(
        self, episode_id: str, patch: dict[str, Any], expected: Optional[dict[str, Any]] = None
    ) -> EpisodeRecord: ...

    @abstractmethod
    def find_episodes_by_case(
        self, case_id: str, newest_first: bool = True
    ) -> list[EpisodeRecord]: ...

    @abstractmethod
    def query_cases(self, filters: Iterable[Filter] = ()) -> list[CaseRecord]: ...

    @abstractmethod
    def query_messages(self, filters: Iterable[Filter] = ()) -> list[MessageRecord]: ...

    @abstractmethod
    def query_status_events(self, filters: Iterable[Filter] = ()) -> list[StatusEventRecord]: ...

    @abstractmethod
    def query_issue_events(self, filters: Iterable[Filter] = ()) -> list[IssueEventRecord]: ...

    @abstractmethod
    def query_users(self, filters: Iterable[Filter] = ()) -> list[UserRecord]: ...

    @abstractmethod
    def upsert_daily_user_summary(
        self, record: DailyUserMessageSummaryRecord
    ) -> DailyUserMessageSummaryRecord: ...

    @abstractmethod
    def list_daily_user_summaries(
        self, filters: Iterable[Filter] = ()
    ) -> list[DailyUserMessageSummaryRecord]: ...

    @abstractmethod
    def upsert_business_day_kpis(self, record: BusinessDayKpiRecord) -> BusinessDayKpiRecord: ...

    @abstractmethod
    def list_business_day_kpis(
        self, filters: Iterable[Filter] = ()
    ) -> list[BusinessDayKpiRecord]: ...


def _check_expected(record: Any, expected: Optional[dict[str, Any]], label: str) -> None:
    if not expected:
        return
    for field, value in expected.items():
        actual = getattr(record, field)
        if actual != value:
            raise StoreConflictError(
                f"{label} {record.id}: expected {field}={value!r}, found {actual!r}"
            )


def _patched(record: Any, patch: dict[str, Any]) -> Any:
    """Apply a partial update with the same coercion and checks as creation."""
    return type(record).model_validate({**record.model_dump(), **patch})


def _same_content(left: Any, right: Any) -> bool:
    ignored = {"created_at", "updated_at"}
    return left.model_dump(exclude=ignored) == right.model_dump(exclude=ignored)


class InMemoryStore(EventStore):
    def __init__(self, persistence: Optional["SqlPersistence"] = None) -> None:
        self._lock = RLock()
        self.persistence = persistence
        self.users: dict[str, UserRecord] = {}
        self.cases: dict[str, CaseRecord] = {}
        self.episodes: dict[str, EpisodeRecord] = {}
        self.messages: dict[str, MessageRecord] = {}
        self.status_events: list[StatusEventRecord] = []
        self.issue_events: dict[str, IssueEventRecord] = {}
        self.daily_user_summaries: dict[tuple[str, str], DailyUserMessageSummaryRecord] = {}
        self.business_day_kpis: dict[str, BusinessDayKpiRecord] = {}
        self.processed_event_ids: set[str] = set()

        if self.persistence:
            snapshot = self.persistence.load_snapshot()
            if snapshot:
                self._hydrate_from_snapshot(snapshot)
            for summary in self.persistence.list_daily_user_summaries():
                self.daily_user_summaries[self._summary_key(summary)] = summary

    # --- cases --------------------------------------------------------------

    def find_case(self, case_id: str) -> CaseRecord:
        case = self.cases.get(case_id)
        if not case:
            raise StoreNotFoundError(f"case not found: {case_id}")
        return case

    def create_case(
        self,
        *,
        customer_id: str,
        status: CaseStatus = CaseStatus.INITIATED,
        assigned_to: CaseHandler = CaseHandler.BOT,
        agent_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        case_id: Optional[str] = None,
    ) -> CaseRecord:
        with self._lock:
            now = created_at or utc_now()
            case = CaseRecord(
                id=case_id or new_id("case"),
                customer_id=customer_id,
                status=status,
                assigned_to=assigned_to,
                agent_id=agent_id,
                timer=now + timedelta(hours=24),
                created_at=now,
                updated_at=now,
            )
            if case.id in self.cases:
                raise StoreConflictError(f"case already exists: {case.id}")
            self.cases[case.id] = case
            self._persist_state()
            return case

    def update_case(
        self, case_id: str, patch: dict[str, Any], expected: Optional[dict[str, Any]] = None
    ) -> CaseRecord:
        with self._lock:
            case = self.find_case(case_id)
            _check_expected(case, expected, "case")
            update = dict(patch)
            update.setdefault("updated_at", utc_now())
            updated = _patched(case, update)
            self.cases[case_id] = updated
            self._persist_state()
            return updated

    def query_cases(self, filters: Iterable[Filter] = ()) -> list[CaseRecord]:
        filters = tuple(filters)
        with self._lock:
            records = list(self.cases.values())
        return [record for record in records if matches(record, filters)]

    # --- episodes -----------------------------------------------------------

    def create_episode(self, data: dict[str, Any]) -> EpisodeRecord:
        with self._lock:
            self.find_case(data["case_id"])
            for episode in self.episodes.values():
                if episode.case_id == data["case_id"] and episode.sequence == data["sequence"]:
                    raise StoreConflictError(
                        f"episode sequence {data['sequence']} already exists for case "
                        f"{data['case_id']}"
                    )
            episode = EpisodeRecord(id=data.get("id") or new_id("ep"), **{
                key: value for key, value in data.items() if key != "id"
            })
            self.episodes[episode.id] = episode
            self._persist_state()
            return episode

    def get_episode(self, episode_id: str) -> EpisodeRecord:
        episode = self.episodes.get(episode_id)
        if not episode:
            raise StoreNotFoundError(f"episode not found: {episode_id}")
        return episode

    def update_episode(
        self, episode_id: str, patch: dict[str, Any], expected: Optional[dict[str, Any]] = None
    ) -> EpisodeRecord:
        with self._lock:
            episode = self.get_episode(episode_id)
            _check_expected(episode, expected, "episode")
            updated = _patched(episode, patch)
            self.episodes[episode_id] = updated
            self._persist_state()
            return updated

    def find_episodes_by_case(
        self, case_id: str, newest_first: bool = True
    ) -> list[EpisodeRecord]:
        with self._lock:
            records = [item for item in self.episodes.values() if item.case_id == case_id]
        records.sort(key=lambda item: item.sequence, reverse=newest_first)
        return records

    # --- users --------------------------------------------------------------

    def add_user(self, user: UserRecord) -> UserRecord:
        with self._lock:
            self.users[user.id] = user
            self._persist_state()
            return user

    def query_users(self, filters: Iterable[Filter] = ()) -> list[UserRecord]:
        filters = tuple(filters)
        with self._lock:
            records = list(self.users.values())
        return [record for record in records if matches(record, filters)]

    # --- messages and status events ----------------------------------------

    def record_message(
        self,
        *,
        case_id: str,
        sender_type: SenderType,
        timestamp: Optional[datetime] = None,
        text: Optional[str] = None,
        agent_id: Optional[str] = None,
        episode_id: Optional[str] = None,
        message_type: MessageType = MessageType.TEXT,
        issue_event_id: Optional[str] = None,
    ) -> MessageRecord:
        with self._lock:
            case = self.find_case(case_id)
            message = MessageRecord(
                id=new_id("msg"),
                case_id=case_id,
                episode_id=episode_id if episode_id is not None else case.current_episode_id,
                sender_type=sender_type,
                agent_id=agent_id,
                timestamp=timestamp or utc_now(),
                text=text,
                message_type=message_type,
                issue_event_id=issue_event_id,
            )
            self.messages[message.id] = message
            self._persist_state()
            return message

    def query_messages(self, filters: Iterable[Filter] = ()) -> list[MessageRecord]:
        filters = tuple(filters)
        with self._lock:
            records = list(self.messages.values())
        output = [record for record in records if matches(record, filters)]
        output.sort(key=lambda item: (item.timestamp, item.id))
        return output

    def record_status_event(
        self,
        *,
        case_id: str,
        new_status: CaseStatus,
        actor_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> StatusEventRecord:
        with self._lock:
            case = self.find_case(case_id)
            now = timestamp or utc_now()
            event = StatusEventRecord(
                id=new_id("sev"),
                case_id=case_id,
                previous_status=case.status,
                new_status=new_status,
                actor_id=actor_id,
                timestamp=now,
            )
            self.status_events.append(event)
            self.cases[case_id] = case.model_copy(
                update={"status": new_status, "updated_at": now}
            )
            self._persist_state()
            return event

    def query_status_events(self, filters: Iterable[Filter] = ()) -> list[StatusEventRecord]:
        filters = tuple(filters)
        with self._lock:
            records = list(self.status_events)
        output = [record for record in records if matches(record, filters)]
        output.sort(key=lambda item: item.timestamp)
        return output

    # --- issue events -------------------------------------------------------

    def create_issue_event(
        self,
        *,
        case_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        machine_id: Optional[str] = None,
        machine_name: Optional[str] = None,
        issue_type: IssueType = IssueType.OTHER,
        refund_mode: Optional[RefundMode] = None,
        refund_amount_minor: Optional[int] = None,
        opened_at: Optional[datetime] = None,
        closed_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        is_active: Optional[bool] = None,
        agent_called_at: Optional[datetime] = None,
        agent_linked_at: Optional[datetime] = None,
        agent_rating: Optional[int] = None,
    ) -> IssueEventRecord:
        with self._lock:
            if case_id is not None:
                self.find_case(case_id)
            opened = opened_at or utc_now()
            issue = IssueEventRecord(
                id=new_id("iss"),
                case_id=case_id,
                agent_id=agent_id,
                machine_id=machine_id,
                machine_name=machine_name,
                issue_type=issue_type,
                refund_mode=refund_mode,
                refund_amount_minor=refund_amount_minor,
                opened_at=opened,
                closed_at=closed_at,
                updated_at=updated_at or closed_at or opened,
                is_active=closed_at is None if is_active is None else is_active,
                agent_called_at=agent_called_at,
                agent_linked_at=agent_linked_at,
                agent_rating=agent_rating,
            )
            self.issue_events[issue.id] = issue
            self._persist_state()
            return issue

    def update_issue_event(self, issue_id: str, patch: dict[str, Any]) -> IssueEventRecord:
        with self._lock:
            issue = self.issue_events.get(issue_id)
            if not issue:
                raise StoreNotFoundError(f"issue event not found: {issue_id}")
            update = dict(patch)
            update.setdefault("updated_at", utc_now())
            updated = _patched(issue, update)
            self.issue_events[issue_id] = updated
            self._persist_state()
            return updated

    def query_issue_events(self, filters: Iterable[Filter] = ()) -> list[IssueEventRecord]:
        filters = tuple(filters)
        with self._lock:
            records = list(self.issue_events.values())
        output = [record for record in records if matches(record, filters)]
        output.sort(key=lambda item: item.updated_at, reverse=True)
        return output

    # --- inbound events ----------------------------------------------------

    def claim_event(self, event_id: str) -> bool:
        """Mark an inbound event as processed; False when it was seen before."""
        with self._lock:
            if event_id in self.processed_event_ids:
                return False
            self.processed_event_ids.add(event_id)
            try:
                self._persist_state()
            except StoreUnavailableError:
                self.processed_event_ids.discard(event_id)
                raise
            return True

    def release_event(self, event_id: str) -> None:
        """Forget a claim so a retried delivery is processed again."""
        with self._lock:
            if event_id in self.processed_event_ids:
                self.processed_event_ids.discard(event_id)
                self._persist_state()

    # --- derived tables -----------------------------------------------------

    def upsert_daily_user_summary(
        self, record: DailyUserMessageSummaryRecord
    ) -> DailyUserMessageSummaryRecord:
        with self._lock:
            key = self._summary_key(record)
            existing = self.daily_user_summaries.get(key)
            if existing and _same_content(existing, record):
                return existing
            if existing:
                record = record.model_copy(update={"created_at": existing.created_at})
            self.daily_user_summaries[key] = record
            if self.persistence:
                self.persistence.upsert_daily_user_summary(record)
            return record

    def list_daily_user_summaries(
        self, filters: Iterable[Filter] = ()
    ) -> list[DailyUserMessageSummaryRecord]:
        filters = tuple(filters)
        with self._lock:
            records = list(self.daily_user_summaries.values())
        output = [record for record in records if matches(record, filters)]
        output.sort(key=lambda item: (item.business_date, item.agent_id), reverse=True)
        return output

    def upsert_business_day_kpis(self, record: BusinessDayKpiRecord) -> BusinessDayKpiRecord:
        with self._lock:
            key = record.business_date.isoformat()
            existing = self.business_day_kpis.get(key)
            if existing and _same_content(existing, record):
                return existing
            if existing:
                record = record.model_copy(update={"created_at": existing.created_at})
            self.business_day_kpis[key] = record
            self._persist_state()
            return record

    def list_business_day_kpis(
        self, filters: Iterable[Filter] = ()
    ) -> list[BusinessDayKpiRecord]:
        filters = tuple(filters)
        with self._lock:
            records = list(self.business_day_kpis.values())
        output = [record for record in records if matches(record, filters)]
        output.sort(key=lambda item: item.business_date, reverse=True)
        return output

    # --- persistence --------------------------------------------------------

    def _persist_state(self) -> None:
        if not self.persistence:
            return
        with self._lock:
            self.persistence.save_snapshot(self._snapshot_data())

    def _snapshot_data(self) -> dict:
        return {
            "users": [record.model_dump(mode="json") for record in self.users.values()],
            "cases": [record.model_dump(mode="json") for record in self.cases.values()],
            "episodes": [record.model_dump(mode="json") for record in self.episodes.values()],
            "messages": [record.model_dump(mode="json") for record in self.messages.values()],
            "status_events": [record.model_dump(mode="json") for record in self.status_events],
            "issue_events": [
                record.model_dump(mode="json") for record in self.issue_events.values()
            ],
            "business_day_kpis": [
                record.model_dump(mode="json") for record in self.business_day_kpis.values()
            ],
            "processed_event_ids": sorted(self.processed_event_ids),
        }

    def _hydrate_from_snapshot(self, snapshot: dict) -> None:
        self.users = {
            record["id"]: UserRecord.model_validate(record)
            for record in snapshot.get("users", [])
        }
        self.cases = {
            record["id"]: CaseRecord.model_validate(record)
            for record in snapshot.get("cases", [])
        }
        self.episodes = {
            record["id"]: EpisodeRecord.model_validate(record)
            for record in snapshot.get("episodes", [])
        }
        self.messages = {
            record["id"]: MessageRecord.model_validate(record)
            for record in snapshot.get("messages", [])
        }
        self.status_events = [
            StatusEventRecord.model_validate(record)
            for record in snapshot.get("status_events", [])
        ]
        self.issue_events = {
            record["id"]: IssueEventRecord.model_validate(record)
            for record in snapshot.get("issue_events", [])
        }
        kpis = [
            BusinessDayKpiRecord.model_validate(record)
            for record in snapshot.get("business_day_kpis", [])
        ]
        self.business_day_kpis = {record.business_date.isoformat(): record for record in kpis}
        self.processed_event_ids = set(snapshot.get("processed_event_ids", []))

    @staticmethod
    def _summary_key(record: DailyUserMessageSummaryRecord) -> tuple[str, str]:
        return record.agent_id, record.business_date.isoformat()
