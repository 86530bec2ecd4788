from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional, Union

from backend.app.models import CaseStatus, SenderType


@dataclass(frozen=True)
class TimeRange:
    """Half-open ``[start, end)`` match on a timestamp field; missing values never match."""

    field: str
    start: Optional[datetime] = None
    end: Optional[datetime] = None


@dataclass(frozen=True)
class SenderIs:
    sender: SenderType


@dataclass(frozen=True)
class StatusIs:
    status: CaseStatus
    field: str = "new_status"


@dataclass(frozen=True)
class FieldEquals:
    field: str
    value: Any


@dataclass(frozen=True)
class FieldIn:
    field: str
    values: frozenset


@dataclass(frozen=True)
class FieldPresent:
    field: str
    present: bool = True


Filter = Union[TimeRange, SenderIs, StatusIs, FieldEquals, FieldIn, FieldPresent]


class QueryBuilder:
    def __init__(self) -> None:
        self._filters: list[Filter] = []

    def between(
        self, field: str, start: Optional[datetime], end: Optional[datetime]
    ) -> "QueryBuilder":
        self._filters.append(TimeRange(field=field, start=start, end=end))
        return self

    def sender(self, sender: SenderType) -> "QueryBuilder":
        self._filters.append(SenderIs(sender=sender))
        return self

    def status(self, status: CaseStatus, field: str = "new_status") -> "QueryBuilder":
        self._filters.append(StatusIs(status=status, field=field))
        return self

    def equals(self, field: str, value: Any) -> "QueryBuilder":
        self._filters.append(FieldEquals(field=field, value=value))
        return self

    def within(self, field: str, values: Iterable[Any]) -> "QueryBuilder":
        self._filters.append(FieldIn(field=field, values=frozenset(values)))
        return self

    def present(self, field: str, present: bool = True) -> "QueryBuilder":
        self._filters.append(FieldPresent(field=field, present=present))
        return self

    def extend(self, filters: Iterable[Filter]) -> "QueryBuilder":
        self._filters.extend(filters)
        return self

    def build(self) -> tuple[Filter, ...]:
        return tuple(self._filters)


def _matches_one(record: Any, item: Filter) -> bool:
    if isinstance(item, TimeRange):
        value = getattr(record, item.field)
        if value is None:
            return False
        if item.start is not None and value < item.start:
            return False
        if item.end is not None and value >= item.end:
            return False
        return True
    if isinstance(item, SenderIs):
        return record.sender_type == item.sender
    if isinstance(item, StatusIs):
        return getattr(record, item.field) == item.status
    if isinstance(item, FieldEquals):
        return getattr(record, item.field) == item.value
    if isinstance(item, FieldIn):
        return getattr(record, item.field) in item.values
    if isinstance(item, FieldPresent):
        return (getattr(record, item.field) is not None) == item.present
    raise TypeError(f"unsupported filter: {item!r}")


def matches(record: Any, filters: Iterable[Filter]) -> bool:
    return all(_matches_one(record, item) for item in filters)
