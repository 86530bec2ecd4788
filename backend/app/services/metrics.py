from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Iterable, Optional

from backend.app.filters import FieldIn, QueryBuilder, TimeRange
from backend.app.models import (
    Abandonment,
    AgentChatVolume,
    AgentClosureSummary,
    AgentIssueFrt,
    AgentMessageFrt,
    AgentRefundAttribution,
    AgentRefundTrend,
    AgentSatisfaction,
    AgentUnratedIssues,
    AttributionMode,
    CaseStatus,
    ClosureSlaReport,
    DailyUserMessageSummaryRecord,
    FirstContactResolution,
    FrtStats,
    IssueEventRecord,
    IssueFrtReport,
    IssueType,
    LatestIssue,
    LongRunningChats,
    MachineChatVolume,
    MachineIssueSummary,
    ManualRefundStats,
    MessageFrtReport,
    RefundMode,
    RefundTrendPoint,
    RefundTrendReport,
    SatisfactionReport,
    SenderType,
    Window,
    utc_now,
)
from backend.app.services.business_calendar import business_date, business_day_start_for
from backend.app.store import EventStore

logger = logging.getLogger("support_desk.metrics")

SLOW_CLOSURE = timedelta(hours=4)
LONG_RUNNING = timedelta(hours=4)
ABANDONED_AFTER = timedelta(hours=24)
MAX_RATING = 5
UNASSIGNED = "Unassigned"
BOT_RESOLVED = "Bot"
UNKNOWN_MACHINE = "unknown"


def issue_window_filter(window: Window, mode: AttributionMode) -> TimeRange:
    """The one predicate deciding which timestamp places an issue event in a window."""
    field = "opened_at" if AttributionMode(mode) == AttributionMode.opened else "updated_at"
    return TimeRange(field=field, start=window.start, end=window.end)


def _attribution_field(mode: AttributionMode) -> str:
    return "opened_at" if AttributionMode(mode) == AttributionMode.opened else "updated_at"


def percentile(ordered: list[float], q: float) -> Optional[float]:
    """Nearest-rank percentile over an ascending list: ``ordered[floor(q/100 * (n-1))]``."""
    if not ordered:
        return None
    return ordered[math.floor((q / 100.0) * (len(ordered) - 1))]


def frt_stats(samples: Iterable[float]) -> FrtStats:
    ordered = sorted(samples)
    if not ordered:
        return FrtStats()
    return FrtStats(
        avg=sum(ordered) / len(ordered),
        p50=percentile(ordered, 50),
        p90=percentile(ordered, 90),
        samples=len(ordered),
    )


def _minutes(delta: timedelta) -> float:
    return delta.total_seconds() / 60.0


def _data_anomaly(kind: str, **fields: object) -> None:
    details = " ".join(f"{key}={value}" for key, value in fields.items())
    logger.warning("data_anomaly kind=%s %s", kind, details)


class MetricsEngine:
    """Read-only KPI computations over the event store.

    Every operation takes a half-open window and never raises for empty data;
    empty denominators produce 0 or ``None`` depending on the field.
    """

    def __init__(self, store: EventStore) -> None:
        self.store = store

    # --- names ----------------------------------------------------------------

    def _agent_names(self, agent_ids: Iterable[Optional[str]]) -> dict[str, str]:
        ids = {agent_id for agent_id in agent_ids if agent_id is not None}
        if not ids:
            return {}
        users = self.store.query_users((FieldIn(field="id", values=frozenset(ids)),))
        names = {user.id: user.display_name for user in users}
        return {agent_id: names.get(agent_id, f"Agent#{agent_id}") for agent_id in ids}

    def _issues(self, window: Window, mode: AttributionMode, builder: QueryBuilder):
        return self.store.query_issue_events(
            builder.extend((issue_window_filter(window, mode),)).build()
        )

    # --- chat volume -----------------------------------------------------------

    def chat_volume_per_agent(self, window: Window) -> list[AgentChatVolume]:
        messages = self.store.query_messages(
            QueryBuilder()
            .between("timestamp", window.start, window.end)
            .sender(SenderType.USER)
            .build()
        )
        cases: dict[Optional[str], set[str]] = defaultdict(set)
        for message in messages:
            cases[message.agent_id].add(message.case_id)

        names = self._agent_names(cases.keys())
        rows = [
            AgentChatVolume(
                agent_id=agent_id,
                agent_name=names[agent_id] if agent_id is not None else UNASSIGNED,
                total_chats=len(case_ids),
            )
            for agent_id, case_ids in cases.items()
        ]
        rows.sort(key=lambda row: (-row.total_chats, row.agent_id is None, row.agent_id or ""))
        return rows

    def chat_volume_per_machine(self, window: Window) -> list[MachineChatVolume]:
        messages = self.store.query_messages(
            QueryBuilder().between("timestamp", window.start, window.end).build()
        )
        active_cases = {message.case_id for message in messages}
        cases: dict[str, set[str]] = defaultdict(set)
        for case_id in active_cases:
            for episode in self.store.find_episodes_by_case(case_id):
                cases[episode.machine_id or UNKNOWN_MACHINE].add(case_id)

        rows = [
            MachineChatVolume(machine_id=machine_id, total_chats=len(case_ids))
            for machine_id, case_ids in cases.items()
        ]
        rows.sort(key=lambda row: (-row.total_chats, row.machine_id))
        return rows

    # --- first response time ----------------------------------------------------

    def message_first_response_time(self, window: Window) -> MessageFrtReport:
        """Gap between each case's first agent reply in the window and the last bot
        message sent before it. Cases without such a bot message give no sample."""
        agent_messages = self.store.query_messages(
            QueryBuilder()
            .between("timestamp", window.start, window.end)
            .sender(SenderType.USER)
            .build()
        )
        first_reply = {}
        for message in agent_messages:
            first_reply.setdefault(message.case_id, message)
        if not first_reply:
            return MessageFrtReport(overall=FrtStats(), per_agent=[])

        bot_messages = self.store.query_messages(
            QueryBuilder()
            .within("case_id", first_reply.keys())
            .sender(SenderType.BOT)
            .between("timestamp", None, window.end)
            .build()
        )
        bot_by_case: dict[str, list[datetime]] = defaultdict(list)
        for message in bot_messages:
            bot_by_case[message.case_id].append(message.timestamp)

        samples: list[float] = []
        per_agent: dict[Optional[str], list[float]] = defaultdict(list)
        for case_id, reply in first_reply.items():
            before = [ts for ts in bot_by_case.get(case_id, []) if ts < reply.timestamp]
            if not before:
                continue
            diff = _minutes(reply.timestamp - max(before))
            samples.append(diff)
            per_agent[reply.agent_id].append(diff)

        names = self._agent_names(per_agent.keys())
        rows = [
            AgentMessageFrt(
                agent_id=agent_id,
                agent_name=names[agent_id] if agent_id is not None else UNASSIGNED,
                stats=frt_stats(values),
            )
            for agent_id, values in per_agent.items()
        ]
        rows.sort(key=lambda row: (-row.stats.samples, row.agent_id is None, row.agent_id or ""))
        return MessageFrtReport(overall=frt_stats(samples), per_agent=rows)

    def issue_first_response_time(
        self, window: Window, mode: AttributionMode = AttributionMode.opened
    ) -> IssueFrtReport:
        issues = self._issues(window, mode, QueryBuilder().present("agent_id"))
        samples: list[float] = []
        chats: dict[str, int] = defaultdict(int)
        manual: dict[str, int] = defaultdict(int)
        per_agent: dict[str, list[float]] = defaultdict(list)
        anomalies = 0

        for issue in issues:
            chats[issue.agent_id] += 1
            if issue.refund_mode == RefundMode.MANUAL:
                manual[issue.agent_id] += 1
            if issue.agent_called_at is None or issue.agent_linked_at is None:
                continue
            diff = _minutes(issue.agent_linked_at - issue.agent_called_at)
            if diff < 0:
                anomalies += 1
                _data_anomaly("negative_frt", issue_id=issue.id, minutes=f"{diff:.2f}")
                continue
            samples.append(diff)
            per_agent[issue.agent_id].append(diff)

        names = self._agent_names(chats.keys())
        rows = []
        for agent_id, total in chats.items():
            values = per_agent.get(agent_id, [])
            rows.append(
                AgentIssueFrt(
                    agent_id=agent_id,
                    agent_name=names[agent_id],
                    total_chats=total,
                    manual_refunds=manual.get(agent_id, 0),
                    avg_frt_minutes=sum(values) / len(values) if values else 0.0,
                )
            )
        rows.sort(key=lambda row: (-row.total_chats, row.agent_id))
        return IssueFrtReport(overall=frt_stats(samples), per_agent=rows, anomalies=anomalies)

    # --- closure and refunds -------------------------------------------------------

    def closure_sla(
        self, window: Window, mode: AttributionMode = AttributionMode.opened
    ) -> ClosureSlaReport:
        """Closure time of agent-handled issues, flagged slow past four hours."""
        issues = self._issues(
            window, mode, QueryBuilder().present("agent_id").present("closed_at")
        )
        durations: dict[str, list[timedelta]] = defaultdict(list)
        anomalies = 0
        for issue in issues:
            duration = issue.closed_at - issue.opened_at
            if duration < timedelta(0):
                anomalies += 1
                _data_anomaly("negative_closure", issue_id=issue.id)
                continue
            durations[issue.agent_id].append(duration)

        names = self._agent_names(durations.keys())
        summary = []
        for agent_id, values in durations.items():
            slow = sum(1 for value in values if value > SLOW_CLOSURE)
            hours = [value.total_seconds() / 3600.0 for value in values]
            summary.append(
                AgentClosureSummary(
                    agent_id=agent_id,
                    agent_name=names[agent_id],
                    total_closed=len(values),
                    closed_after_4h=slow,
                    avg_closure_hours=sum(hours) / len(hours),
                    slow_rate=slow / len(values) * 100.0,
                )
            )
        summary.sort(key=lambda row: (-row.slow_rate, -row.total_closed, row.agent_id))
        return ClosureSlaReport(
            total=sum(row.total_closed for row in summary),
            summary=summary,
            anomalies=anomalies,
        )

    def machine_issue_summary(
        self, window: Window, mode: AttributionMode = AttributionMode.opened
    ) -> list[MachineIssueSummary]:
        issues = self._issues(window, mode, QueryBuilder())
        field = _attribution_field(mode)
        grouped: dict[str, list[IssueEventRecord]] = defaultdict(list)
        for issue in issues:
            grouped[issue.machine_name or issue.machine_id or UNKNOWN_MACHINE].append(issue)

        output = []
        for machine_name, items in grouped.items():
            by_type = {issue_type.value: 0 for issue_type in IssueType}
            manual = ManualRefundStats()
            auto_count = 0
            for issue in items:
                by_type[issue.issue_type.value] += 1
                if issue.issue_type != IssueType.REFUND:
                    continue
                if issue.refund_mode == RefundMode.MANUAL:
                    manual = ManualRefundStats(
                        count=manual.count + 1,
                        total_amount_minor=manual.total_amount_minor
                        + (issue.refund_amount_minor or 0),
                    )
                elif issue.refund_mode == RefundMode.AUTO:
                    auto_count += 1
            latest = max(items, key=lambda issue: getattr(issue, field))
            output.append(
                MachineIssueSummary(
                    machine_name=machine_name,
                    total=len(items),
                    active=sum(1 for issue in items if issue.is_active),
                    by_type=by_type,
                    latest_issue=LatestIssue(id=latest.id, at=getattr(latest, field)),
                    manual=manual,
                    auto_count=auto_count,
                )
            )
        output.sort(key=lambda row: (-row.total, row.machine_name))
        return output

    def refund_attribution_per_agent(
        self, window: Window, mode: AttributionMode = AttributionMode.opened
    ) -> list[AgentRefundAttribution]:
        issues = self._issues(
            window,
            mode,
            QueryBuilder().equals("issue_type", IssueType.REFUND).present("refund_mode"),
        )
        manual_count: dict[Optional[str], int] = defaultdict(int)
        manual_amount: dict[Optional[str], int] = defaultdict(int)
        auto_count: dict[Optional[str], int] = defaultdict(int)
        for issue in issues:
            if issue.refund_mode == RefundMode.MANUAL:
                manual_count[issue.agent_id] += 1
                manual_amount[issue.agent_id] += issue.refund_amount_minor or 0
            else:
                auto_count[issue.agent_id] += 1

        agents = set(manual_count) | set(auto_count)
        names = self._agent_names(agents)
        rows = [
            AgentRefundAttribution(
                agent_id=agent_id,
                agent_name=names[agent_id] if agent_id is not None else BOT_RESOLVED,
                manual_count=manual_count.get(agent_id, 0),
                manual_amount_minor=manual_amount.get(agent_id, 0),
                auto_count=auto_count.get(agent_id, 0),
            )
            for agent_id in agents
        ]
        rows.sort(
            key=lambda row: (
                -(row.manual_count + row.auto_count),
                row.agent_id is None,
                row.agent_id or "",
            )
        )
        return rows

    def manual_refund_trend(
        self, window: Window, mode: AttributionMode = AttributionMode.opened
    ) -> RefundTrendReport:
        """Manual refunds per agent per business day of closure."""
        issues = self._issues(
            window,
            mode,
            QueryBuilder()
            .equals("issue_type", IssueType.REFUND)
            .equals("refund_mode", RefundMode.MANUAL)
            .present("agent_id")
            .present("closed_at"),
        )
        counts: dict[str, dict] = defaultdict(lambda: defaultdict(int))
        amounts: dict[str, dict] = defaultdict(lambda: defaultdict(int))
        labels = set()
        for issue in issues:
            day = business_date(issue.closed_at)
            labels.add(day)
            counts[issue.agent_id][day] += 1
            amounts[issue.agent_id][day] += issue.refund_amount_minor or 0

        ordered_labels = sorted(labels)
        names = self._agent_names(counts.keys())
        datasets = [
            AgentRefundTrend(
                agent_id=agent_id,
                agent_name=names[agent_id],
                points=[
                    RefundTrendPoint(
                        business_date=day,
                        count=counts[agent_id].get(day, 0),
                        amount_minor=amounts[agent_id].get(day, 0),
                    )
                    for day in ordered_labels
                ],
            )
            for agent_id in sorted(counts)
        ]
        return RefundTrendReport(labels=ordered_labels, datasets=datasets)

    def manual_refund_rate(
        self, window: Window, mode: AttributionMode = AttributionMode.opened
    ) -> float:
        """Share of refund issues handled as manual refunds, in percent."""
        refunds = self._issues(
            window, mode, QueryBuilder().equals("issue_type", IssueType.REFUND)
        )
        if not refunds:
            return 0.0
        manual = sum(1 for issue in refunds if issue.refund_mode == RefundMode.MANUAL)
        return manual / len(refunds) * 100.0

    # --- case outcomes -------------------------------------------------------------

    def _solved_case_ids(self, window: Window) -> set[str]:
        events = self.store.query_status_events(
            QueryBuilder()
            .status(CaseStatus.SOLVED)
            .between("timestamp", window.start, window.end)
            .build()
        )
        return {event.case_id for event in events}

    def first_contact_resolution(self, window: Window) -> FirstContactResolution:
        solved = self._solved_case_ids(window)
        if not solved:
            return FirstContactResolution(count=0, total_solved=0, rate=0.0)
        touched = {
            message.case_id
            for message in self.store.query_messages(
                QueryBuilder().within("case_id", solved).sender(SenderType.USER).build()
            )
        }
        count = len(solved - touched)
        return FirstContactResolution(count=count, total_solved=len(solved), rate=count / len(solved))

    def long_running_chats(
        self, window: Window, now: Optional[datetime] = None
    ) -> LongRunningChats:
        current = now or utc_now()
        active = {
            message.case_id
            for message in self.store.query_messages(
                QueryBuilder().between("timestamp", window.start, window.end).build()
            )
        }
        if not active:
            return LongRunningChats(total=0, over_4h=0, percentage=0.0)

        first_customer: dict[str, datetime] = {}
        for message in self.store.query_messages(
            QueryBuilder().within("case_id", active).sender(SenderType.CUSTOMER).build()
        ):
            first_customer.setdefault(message.case_id, message.timestamp)

        # a reopened case runs until now, not until its earlier SOLVED event
        solved_cases = {
            case.id
            for case in self.store.query_cases(
                QueryBuilder()
                .within("id", active)
                .status(CaseStatus.SOLVED, field="status")
                .build()
            )
        }
        solved_at: dict[str, datetime] = {}
        for event in self.store.query_status_events(
            QueryBuilder().within("case_id", solved_cases).status(CaseStatus.SOLVED).build()
        ):
            solved_at[event.case_id] = event.timestamp

        total = 0
        over = 0
        for case_id in active:
            started = first_customer.get(case_id)
            if started is None:
                continue
            total += 1
            if solved_at.get(case_id, current) - started > LONG_RUNNING:
                over += 1
        return LongRunningChats(
            total=total, over_4h=over, percentage=over / total * 100.0 if total else 0.0
        )

    def abandonment(self, window: Window, now: Optional[datetime] = None) -> Abandonment:
        """Cases opened in the window that the customer left without any agent reply.

        Age of the last customer message is measured against ``now``, not the
        window end.
        """
        current = now or utc_now()
        opened = {
            case.id
            for case in self.store.query_cases(
                QueryBuilder().between("created_at", window.start, window.end).build()
            )
        }
        if not opened:
            return Abandonment(abandoned=0, total_opened=0, rate=0.0)

        solved = {
            event.case_id
            for event in self.store.query_status_events(
                QueryBuilder().within("case_id", opened).status(CaseStatus.SOLVED).build()
            )
        }
        handled = set()
        last_customer: dict[str, datetime] = {}
        for message in self.store.query_messages(QueryBuilder().within("case_id", opened).build()):
            if message.sender_type == SenderType.USER:
                handled.add(message.case_id)
            elif message.sender_type == SenderType.CUSTOMER:
                last_customer[message.case_id] = message.timestamp

        abandoned = 0
        for case_id in opened:
            if case_id in solved or case_id in handled:
                continue
            last = last_customer.get(case_id)
            if last is not None and current - last > ABANDONED_AFTER:
                abandoned += 1
        return Abandonment(
            abandoned=abandoned, total_opened=len(opened), rate=abandoned / len(opened)
        )

    # --- satisfaction -----------------------------------------------------------------

    def agent_satisfaction(
        self, window: Window, mode: AttributionMode = AttributionMode.opened
    ) -> SatisfactionReport:
        issues = self._issues(
            window, mode, QueryBuilder().present("agent_id").present("agent_rating")
        )
        ratings: dict[str, list[int]] = defaultdict(list)
        for issue in issues:
            if not 1 <= issue.agent_rating <= MAX_RATING:
                _data_anomaly("rating_out_of_range", issue_id=issue.id, rating=issue.agent_rating)
                continue
            ratings[issue.agent_id].append(issue.agent_rating)

        all_ratings = [value for values in ratings.values() for value in values]
        if not all_ratings:
            return SatisfactionReport(
                overall_average=None, overall_percentage=None, ratings=0, per_agent=[]
            )

        names = self._agent_names(ratings.keys())
        rows = []
        for agent_id, values in ratings.items():
            average = sum(values) / len(values)
            rows.append(
                AgentSatisfaction(
                    agent_id=agent_id,
                    agent_name=names[agent_id],
                    ratings=len(values),
                    average=average,
                    percentage=average / MAX_RATING * 100.0,
                )
            )
        rows.sort(key=lambda row: (-row.average, -row.ratings, row.agent_id))
        overall = sum(all_ratings) / len(all_ratings)
        return SatisfactionReport(
            overall_average=overall,
            overall_percentage=overall / MAX_RATING * 100.0,
            ratings=len(all_ratings),
            per_agent=rows,
        )

    def unrated_issues_per_agent(
        self, window: Window, mode: AttributionMode = AttributionMode.opened
    ) -> list[AgentUnratedIssues]:
        issues = self._issues(
            window, mode, QueryBuilder().present("agent_id").present("closed_at")
        )
        closed: dict[str, int] = defaultdict(int)
        unrated: dict[str, int] = defaultdict(int)
        for issue in issues:
            closed[issue.agent_id] += 1
            if issue.agent_rating is None:
                unrated[issue.agent_id] += 1

        names = self._agent_names(closed.keys())
        rows = [
            AgentUnratedIssues(
                agent_id=agent_id,
                agent_name=names[agent_id],
                closed=total,
                unrated=unrated.get(agent_id, 0),
            )
            for agent_id, total in closed.items()
        ]
        rows.sort(key=lambda row: (-row.unrated, row.agent_id))
        return rows

    # --- stored summaries -----------------------------------------------------------

    def user_message_summaries(
        self, window: Window, agent_id: Optional[str] = None
    ) -> list[DailyUserMessageSummaryRecord]:
        builder = QueryBuilder()
        if agent_id is not None:
            builder.equals("agent_id", agent_id)
        summaries = self.store.list_daily_user_summaries(builder.build())
        return [
            summary
            for summary in summaries
            if window.start <= business_day_start_for(summary.business_date) < window.end
        ]

