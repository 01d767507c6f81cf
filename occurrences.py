"""
Occurrence calculator: expand a recurrence rule into the dates it fires on.
Pure functions, no I/O. Each call recomputes from the task's start; nothing is cached between calls.
"""
from __future__ import annotations

import logging
from datetime import datetime, time, timedelta
from typing import NamedTuple

from recurrence_rules import EndByCount, EndByDate, RecurrenceRule, RecurrenceType, Weekday

logger = logging.getLogger("recurrence")

# Upper bound on emitted occurrences per calculation, whatever the rule and horizon say
SAFETY_CAP = 1000

_WEEKEND = frozenset({Weekday.SAT, Weekday.SUN})


def _month_max_day(year: int, month: int) -> int:
    if month in (4, 6, 9, 11):
        return 30
    if month == 2:
        return 29 if (year % 4 == 0 and (year % 100 != 0 or year % 400 == 0)) else 28
    return 31


def add_months(dt: datetime, months: int, day: int | None = None) -> datetime:
    """Move dt by a number of months, pinning the day to `day` (default dt.day) clamped to the target month."""
    total = dt.month - 1 + months
    year, month = dt.year + total // 12, total % 12 + 1
    want = day if day is not None else dt.day
    return dt.replace(year=year, month=month, day=min(want, _month_max_day(year, month)))


def next_occurrence(current: datetime, rule: RecurrenceRule, anchor_day: int | None = None) -> datetime:
    """
    Step function: the candidate after `current` for this rule type. Time of day is preserved.
    anchor_day pins monthly/yearly steps to the day the series started on, so a series that
    clamps to Feb 28 returns to the 31st in March instead of drifting.
    """
    rtype = RecurrenceType(rule.type)
    interval = rule.interval_value

    if rtype in (RecurrenceType.DAILY, RecurrenceType.CUSTOM):
        return current + timedelta(days=interval)

    if rtype is RecurrenceType.WEEKLY:
        if not rule.days_of_week:
            return current + timedelta(days=7 * interval)
        days = sorted(int(d) for d in rule.days_of_week)
        today = Weekday.of(current)
        for day in days:
            if day > today:
                return current + timedelta(days=day - today)
        # Wrap to the first listed weekday of the following week
        return current + timedelta(days=7 - today + days[0])

    if rtype is RecurrenceType.MONTHLY:
        return add_months(current, interval, rule.day_of_month or anchor_day)

    if rtype is RecurrenceType.YEARLY:
        return add_months(current, 12 * interval, anchor_day)

    if rtype is RecurrenceType.WORKDAYS:
        nxt = current + timedelta(days=1)
        while Weekday.of(nxt) in _WEEKEND:
            nxt += timedelta(days=1)
        return nxt

    if rtype is RecurrenceType.WEEKENDS:
        nxt = current + timedelta(days=1)
        while Weekday.of(nxt) not in _WEEKEND:
            nxt += timedelta(days=1)
        return nxt

    raise ValueError(f"unsupported recurrence type: {rule.type!r}")


def first_on_schedule(start: datetime, rule: RecurrenceRule, anchor_day: int | None = None) -> datetime:
    """
    Earliest date >= start that the rule's schedule actually lands on.
    Equal to start for daily/custom/interval-only weekly rules, and whenever start already matches.
    """
    rtype = RecurrenceType(rule.type)
    current = start
    if rtype is RecurrenceType.WEEKLY and rule.days_of_week:
        wanted = {int(d) for d in rule.days_of_week}
        while Weekday.of(current) not in wanted:
            current += timedelta(days=1)
    elif rtype is RecurrenceType.WORKDAYS:
        while Weekday.of(current) in _WEEKEND:
            current += timedelta(days=1)
    elif rtype is RecurrenceType.WEEKENDS:
        while Weekday.of(current) not in _WEEKEND:
            current += timedelta(days=1)
    elif rtype is RecurrenceType.MONTHLY and rule.day_of_month:
        current = add_months(start, 0, rule.day_of_month)
        if current < start:
            current = add_months(start, max(rule.interval_value, 1), rule.day_of_month)
    elif rtype is RecurrenceType.YEARLY and rule.month_of_year:
        day = anchor_day or start.day
        current = start.replace(month=rule.month_of_year, day=min(day, _month_max_day(start.year, rule.month_of_year)))
        if current < start:
            current = add_months(current, 12, day)
    return current


class Expansion(NamedTuple):
    """Occurrences plus whether SAFETY_CAP cut the series short."""

    dates: list[datetime]
    truncated: bool


def expand_occurrences(start: datetime, horizon_end: datetime, rule: RecurrenceRule) -> Expansion:
    """
    Ordered occurrence datetimes for the rule, from start up to the earlier of horizon_end and the
    rule's end date, stopping after end_count occurrences. Never more than SAFETY_CAP entries;
    truncated is True only when the cap stopped a series that had more to give.
    start and horizon_end must both be aware or both naive.
    """
    upper = horizon_end
    end = rule.end_condition
    if isinstance(end, EndByDate):
        # The end date is inclusive: anything scheduled during that day still fires
        upper = min(upper, datetime.combine(end.until, time.max, tzinfo=start.tzinfo))
    limit = end.count if isinstance(end, EndByCount) else None
    # Only monthly rules pin a day of month; the others keep the start's day
    anchor_day = (rule.day_of_month if RecurrenceType(rule.type) is RecurrenceType.MONTHLY else None) or start.day

    occurrences: list[datetime] = []
    current = first_on_schedule(start, rule, anchor_day)
    while current <= upper:
        if limit is not None and len(occurrences) >= limit:
            break
        if len(occurrences) >= SAFETY_CAP:
            logger.debug("[recurrence] safety cap of %d occurrences reached", SAFETY_CAP)
            return Expansion(occurrences, True)
        if current >= start:
            occurrences.append(current)
        nxt = next_occurrence(current, rule, anchor_day)
        if nxt <= current:
            logger.warning("[recurrence] rule %s does not advance from %s; stopping", rule.id, current.isoformat())
            break
        current = nxt
    return Expansion(occurrences, False)


def calculate_occurrences(start: datetime, horizon_end: datetime, rule: RecurrenceRule) -> list[datetime]:
    """The dates of expand_occurrences()."""
    return expand_occurrences(start, horizon_end, rule).dates
