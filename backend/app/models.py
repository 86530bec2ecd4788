from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_serializer, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CaseStatus(str, Enum):
    INITIATED = "INITIATED"
    IN_PROGRESS = "IN_PROGRESS"
    SOLVED = "SOLVED"
    UNSOLVED = "UNSOLVED"
    UNKNOWN = "UNKNOWN"


class CaseHandler(str, Enum):
    BOT = "BOT"
    USER = "USER"


class SenderType(str, Enum):
    BOT = "BOT"
    USER = "USER"
    CUSTOMER = "CUSTOMER"


class MessageType(str, Enum):
    TEXT = "TEXT"
    INTERACTIVE = "INTERACTIVE"
    MEDIA = "MEDIA"


class IssueType(str, Enum):
    REFUND = "REFUND"
    MACHINE_OFFLINE = "MACHINE_OFFLINE"
    MACHINE_NOT_WORKING = "MACHINE_NOT_WORKING"
    FEEDBACK = "FEEDBACK"
    MACHINE_NOT_REFILLED = "MACHINE_NOT_REFILLED"
    OTHER = "OTHER"


class RefundMode(str, Enum):
    MANUAL = "MANUAL"
    AUTO = "AUTO"


class AttributionMode(str, Enum):
    opened = "opened"
    updated = "updated"


class RangePreset(str, Enum):
    today = "today"
    one_day = "1d"
    seven_days = "7d"
    thirty_days = "30d"


# --- stored records -------------------------------------------------------


class UserRecord(BaseModel):
    id: str
    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = None

    @property
    def display_name(self) -> str:
        full = f"{self.first_name} {self.last_name}".strip()
        return full or self.email or f"Agent#{self.id}"


class CaseRecord(BaseModel):
    id: str
    customer_id: str
    status: CaseStatus = CaseStatus.INITIATED
    assigned_to: CaseHandler = CaseHandler.BOT
    agent_id: Optional[str] = None
    current_episode_id: Optional[str] = None
    first_opened_at: Optional[datetime] = None
    last_closed_at: Optional[datetime] = None
    timer: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class EpisodeRecord(BaseModel):
    id: str
    case_id: str
    sequence: int = Field(ge=1)
    status: CaseStatus = CaseStatus.INITIATED
    assigned_to: CaseHandler = CaseHandler.BOT
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    meta: dict[str, Any] = Field(default_factory=dict)
    machine_id: Optional[str] = None


class MessageRecord(BaseModel):
    id: str
    case_id: str
    episode_id: Optional[str] = None
    sender_type: SenderType
    agent_id: Optional[str] = None
    timestamp: datetime
    text: Optional[str] = None
    message_type: MessageType = MessageType.TEXT
    issue_event_id: Optional[str] = None


class StatusEventRecord(BaseModel):
    id: str
    case_id: str
    previous_status: CaseStatus
    new_status: CaseStatus
    actor_id: Optional[str] = None
    timestamp: datetime


class IssueEventRecord(BaseModel):
    id: str
    case_id: Optional[str] = None
    agent_id: Optional[str] = None
    machine_id: Optional[str] = None
    machine_name: Optional[str] = None
    issue_type: IssueType = IssueType.OTHER
    refund_mode: Optional[RefundMode] = None
    refund_amount_minor: Optional[int] = None
    opened_at: datetime
    closed_at: Optional[datetime] = None
    updated_at: datetime
    is_active: bool = True
    agent_called_at: Optional[datetime] = None
    agent_linked_at: Optional[datetime] = None
    agent_rating: Optional[int] = None


class DailyUserMessageSummaryRecord(BaseModel):
    agent_id: str
    business_date: date
    first_message_id: Optional[str] = None
    last_message_id: Optional[str] = None
    first_timestamp: Optional[datetime] = None
    last_timestamp: Optional[datetime] = None
    total_messages: int = 0
    active_duration_minutes: Optional[int] = None
    first_text: Optional[str] = None
    last_text: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class BusinessDayKpiRecord(BaseModel):
    business_date: date
    cases_opened: int
    cases_solved: int
    solved_by_bot: int
    solved_by_agent: int
    fcr_rate: float
    avg_frt_minutes: Optional[float]
    abandonment_rate: float
    long_running_pct: float
    manual_refunds: int
    auto_refunds: int
    created_at: datetime
    updated_at: datetime


# --- report models ---------------------------------------------------------


def _present(value: Any) -> Any:
    if isinstance(value, float):
        return round(value, 2)
    if isinstance(value, list):
        return [_present(item) for item in value]
    if isinstance(value, dict):
        return {key: _present(item) for key, item in value.items()}
    return value


class Report(BaseModel):
    """Base for KPI results.

    Values keep full precision on the model; floats are rounded to two
    decimals only when the report is serialized.
    """

    @model_serializer(mode="wrap")
    def _round_floats(self, handler) -> dict[str, Any]:
        return _present(handler(self))


class Window(BaseModel):
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def validate_bounds(self) -> "Window":
        if self.start >= self.end:
            raise ValueError("window start must be before window end")
        return self

    @property
    def length(self):
        return self.end - self.start


class AgentChatVolume(Report):
    agent_id: Optional[str]
    agent_name: str
    total_chats: int


class MachineChatVolume(Report):
    machine_id: str
    total_chats: int


class FrtStats(Report):
    avg: Optional[float] = None
    p50: Optional[float] = None
    p90: Optional[float] = None
    samples: int = 0


class AgentMessageFrt(Report):
    agent_id: Optional[str]
    agent_name: str
    stats: FrtStats


class MessageFrtReport(Report):
    overall: FrtStats
    per_agent: list[AgentMessageFrt]


class AgentIssueFrt(Report):
    agent_id: str
    agent_name: str
    total_chats: int
    manual_refunds: int
    avg_frt_minutes: float


class IssueFrtReport(Report):
    overall: FrtStats
    per_agent: list[AgentIssueFrt]
    anomalies: int = 0


class AgentClosureSummary(Report):
    agent_id: str
    agent_name: str
    total_closed: int
    closed_after_4h: int
    avg_closure_hours: float
    slow_rate: float


class ClosureSlaReport(Report):
    total: int
    summary: list[AgentClosureSummary]
    anomalies: int = 0


class LatestIssue(Report):
    id: str
    at: datetime


class ManualRefundStats(Report):
    count: int = 0
    total_amount_minor: int = 0


class MachineIssueSummary(Report):
    machine_name: str
    total: int = 0
    active: int = 0
    by_type: dict[str, int]
    latest_issue: Optional[LatestIssue] = None
    manual: ManualRefundStats = Field(default_factory=ManualRefundStats)
    auto_count: int = 0


class AgentRefundAttribution(Report):
    agent_id: Optional[str]
    agent_name: str
    manual_count: int = 0
    manual_amount_minor: int = 0
    auto_count: int = 0


class RefundTrendPoint(Report):
    business_date: date
    count: int
    amount_minor: int


class AgentRefundTrend(Report):
    agent_id: str
    agent_name: str
    points: list[RefundTrendPoint]


class RefundTrendReport(Report):
    labels: list[date]
    datasets: list[AgentRefundTrend]


class FirstContactResolution(Report):
    count: int
    total_solved: int
    rate: float


class LongRunningChats(Report):
    total: int
    over_4h: int
    percentage: float


class Abandonment(Report):
    abandoned: int
    total_opened: int
    rate: float


class AgentSatisfaction(Report):
    agent_id: str
    agent_name: str
    ratings: int
    average: float
    percentage: float


class SatisfactionReport(Report):
    overall_average: Optional[float]
    overall_percentage: Optional[float]
    ratings: int
    per_agent: list[AgentSatisfaction]


class AgentUnratedIssues(Report):
    agent_id: str
    agent_name: str
    closed: int
    unrated: int


class KpiDelta(Report):
    kpi: str
    current: float
    previous: float
    pct_change: float
    is_positive: bool


class ComparisonReport(Report):
    current: Window
    previous: Window
    mode: AttributionMode
    metrics: list[KpiDelta]


# --- API payloads ---------------------------------------------------------


class EpisodeOpenRequest(BaseModel):
    meta: dict[str, Any] = Field(default_factory=dict)
    machine_id: Optional[str] = Field(default=None, max_length=120)


class EpisodeCloseRequest(BaseModel):
    final_status: CaseStatus

    @model_validator(mode="after")
    def validate_final_status(self) -> "EpisodeCloseRequest":
        if self.final_status not in {CaseStatus.SOLVED, CaseStatus.UNSOLVED}:
            raise ValueError("final_status must be SOLVED or UNSOLVED")
        return self


class EpisodeMachineRequest(BaseModel):
    machine_id: str = Field(min_length=1, max_length=120)


class ConversationEventRequest(BaseModel):
    event_id: str = Field(min_length=4, max_length=120)
    event_type: str
    case_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)


class ConversationEventResponse(BaseModel):
    status: str
    detail: Optional[str] = None


class JobRunResponse(BaseModel):
    job: str
    succeeded: bool
    business_date: Optional[date] = None
    rows: int = 0
