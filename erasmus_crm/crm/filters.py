from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import ColumnElement, Select, and_, or_
from sqlalchemy.orm import InstrumentedAttribute

from erasmus_crm.crm.models import Activity, utcnow


Predicate = ColumnElement[bool]


def text_search(term: str | None, *columns: InstrumentedAttribute[Any]) -> Predicate | None:
    """Case-insensitive substring match against any of ``columns``."""
    if not term:
        return None
    pattern = f"%{term}%"
    return or_(*(column.ilike(pattern) for column in columns))


def equals(column: InstrumentedAttribute[Any], value: Any) -> Predicate | None:
    if value is None:
        return None
    return column == value


def member_of(column: InstrumentedAttribute[Any], values: Iterable[Any] | None) -> Predicate | None:
    # Values are not validated against the column's enum, unknown entries simply never match.
    if not values:
        return None
    return column.in_(list(values))


def at_least(column: InstrumentedAttribute[Any], bound: Any) -> Predicate | None:
    if bound is None:
        return None
    return column >= bound


def at_most(column: InstrumentedAttribute[Any], bound: Any) -> Predicate | None:
    if bound is None:
        return None
    return column <= bound


def activity_status(status: str | None, now: datetime | None = None) -> Predicate | None:
    if status is None:
        return None
    now = now or utcnow()
    if status == "completed":
        return Activity.is_completed.is_(True)
    if status == "pending":
        return and_(Activity.is_completed.is_(False), Activity.due_date >= now)
    if status == "overdue":
        return and_(Activity.is_completed.is_(False), Activity.due_date <= now)
    return None


def derive_activity_status(activity: Activity, now: datetime | None = None) -> str | None:
    """Status as rendered on reads and exports; never stored.

    An incomplete activity without a due date has no status.
    """
    if activity.is_completed:
        return "completed"
    if activity.due_date is None:
        return None
    now = now or utcnow()
    return "overdue" if as_utc(activity.due_date) <= now else "pending"


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PredicateBuilder:
    """Collects optional predicates and folds them into one conjunctive clause."""

    def __init__(self) -> None:
        self._predicates: list[Predicate] = []

    def add(self, predicate: Predicate | None) -> PredicateBuilder:
        if predicate is not None:
            self._predicates.append(predicate)
        return self

    def extend(self, predicates: Sequence[Predicate | None]) -> PredicateBuilder:
        for predicate in predicates:
            self.add(predicate)
        return self

    @property
    def predicates(self) -> list[Predicate]:
        return list(self._predicates)

    def clause(self) -> Predicate | None:
        if not self._predicates:
            return None
        if len(self._predicates) == 1:
            return self._predicates[0]
        return and_(*self._predicates)

    def apply(self, query: Select[Any]) -> Select[Any]:
        clause = self.clause()
        if clause is None:
            return query
        return query.where(clause)
