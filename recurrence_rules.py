"""
Recurrence rule model: what a recurring task repeats on, and when it stops.

The API and the task_recurrence table use the flat shape (recurrence_type, days_of_week as a JSON
list, end_type + end_date + end_count). Internally a rule is a RecurrenceRule with a sorted weekday
tuple and a tagged end condition, so a rule that ends "by date" without a date cannot be built.
"""
from __future__ import annotations

import json
from datetime import date
from enum import Enum, IntEnum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator


class InvalidRule(ValueError):
    """Malformed recurrence rule. Raised before any calculation or storage happens."""


class RecurrenceType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    WORKDAYS = "workdays"
    WEEKENDS = "weekends"
    CUSTOM = "custom"


class Weekday(IntEnum):
    """Day of week as used by the API: 0=Sun..6=Sat."""

    SUN = 0
    MON = 1
    TUE = 2
    WED = 3
    THU = 4
    FRI = 5
    SAT = 6

    @classmethod
    def of(cls, d: date) -> "Weekday":
        # Python: Mon=0..Sun=6
        return cls((d.weekday() + 1) % 7)


# Types whose step is intervalValue units; workdays/weekends always move day by day
_INTERVAL_TYPES = frozenset({RecurrenceType.DAILY, RecurrenceType.MONTHLY, RecurrenceType.YEARLY, RecurrenceType.CUSTOM})

END_TYPES = ("never", "date", "count")


class EndNever(BaseModel):
    kind: Literal["never"] = "never"


class EndByDate(BaseModel):
    kind: Literal["date"] = "date"
    until: date


class EndByCount(BaseModel):
    kind: Literal["count"] = "count"
    count: int = Field(ge=1)


EndCondition = Annotated[Union[EndNever, EndByDate, EndByCount], Field(discriminator="kind")]


def rule_problems(rule: "RecurrenceRule") -> list[str]:
    """Return human-readable reasons the rule cannot be expanded (empty list = valid)."""
    problems: list[str] = []
    rtype = RecurrenceType(rule.type)
    if rtype in _INTERVAL_TYPES and rule.interval_value < 1:
        problems.append(f"interval_value must be >= 1 for {rtype.value} rules")
    if rtype is RecurrenceType.WEEKLY and not rule.days_of_week and rule.interval_value < 1:
        problems.append("weekly rules need days_of_week or an interval_value >= 1")
    for d in rule.days_of_week:
        if not 0 <= int(d) <= 6:
            problems.append(f"days_of_week entries must be 0-6, got {int(d)}")
    if rule.day_of_month is not None and not 1 <= rule.day_of_month <= 31:
        problems.append("day_of_month must be 1-31")
    if rule.month_of_year is not None and not 1 <= rule.month_of_year <= 12:
        problems.append("month_of_year must be 1-12")
    if isinstance(rule.end_condition, EndByCount) and rule.end_condition.count < 1:
        problems.append("end_count must be >= 1")
    return problems


class RecurrenceRule(BaseModel):
    """A recurrence rule attached 1:1 to a task."""

    id: str | None = None
    task_id: str | None = None
    type: RecurrenceType
    interval_value: int = 1
    days_of_week: tuple[Weekday, ...] = ()
    day_of_month: int | None = None
    month_of_year: int | None = None
    end_condition: EndCondition = Field(default_factory=EndNever)
    current_count: int = 0
    is_active: bool = True

    @field_validator("days_of_week", mode="before")
    @classmethod
    def _normalize_weekdays(cls, v: Any) -> tuple[int, ...]:
        if v is None:
            return ()
        if isinstance(v, (int, str)):
            v = [v]
        days = {int(d) for d in v}
        bad = sorted(d for d in days if not 0 <= d <= 6)
        if bad:
            raise ValueError(f"days_of_week entries must be 0-6, got {bad}")
        # Caller order is not trusted: wraparound needs ascending order
        return tuple(sorted(days))

    @model_validator(mode="after")
    def _check_consistency(self) -> "RecurrenceRule":
        problems = rule_problems(self)
        if problems:
            raise ValueError("; ".join(problems))
        return self


def validate_rule(rule: RecurrenceRule) -> RecurrenceRule:
    """Raise InvalidRule if the rule is malformed (also catches rules built with model_construct)."""
    problems = rule_problems(rule)
    if problems:
        raise InvalidRule("; ".join(problems))
    return rule


def _validation_message(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "__root__")
        msg = str(err.get("msg", "")).removeprefix("Value error, ")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or str(e)


def _parse_days_of_week(raw: Any) -> list[int]:
    """Stored as JSON array; older rows may hold a comma-separated list."""
    if raw is None or raw == "":
        return []
    if isinstance(raw, (list, tuple)):
        parsed = raw
    else:
        try:
            parsed = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            parsed = [p for p in str(raw).split(",") if p.strip()]
    if isinstance(parsed, int):
        parsed = [parsed]
    try:
        return [int(d) for d in parsed]
    except (TypeError, ValueError) as e:
        raise InvalidRule(f"days_of_week must be a list of integers 0-6, got {raw!r}") from e

def _end_condition_from_fields(end_type: Any, end_date: Any, end_count: Any) -> dict[str, Any]:
    kind = str(end_type or "never").strip().lower()
    if kind not in END_TYPES:
        raise InvalidRule(f"end_type must be one of {list(END_TYPES)}")
    if kind == "date":
        if not end_date:
            raise InvalidRule("end_type 'date' requires end_date")
        return {"kind": "date", "until": str(end_date)[:10]}
    if kind == "count":
        if end_count is None or end_count == "":
            raise InvalidRule("end_type 'count' requires end_count")
        return {"kind": "count", "count": end_count}
    return {"kind": "never"}


def rule_from_input(payload: dict[str, Any], base: RecurrenceRule | None = None) -> RecurrenceRule:
    """
    Build a rule from the API shape. With base, payload is a partial update applied on top of it:
    only keys present in payload change. Raises InvalidRule on any malformed field.
    """
    merged: dict[str, Any] = rule_to_input(base) if base is not None else {}
    merged.update(payload)
    rtype = merged.get("recurrence_type")
    if not rtype:
        raise InvalidRule("recurrence_type is required")
    fields: dict[str, Any] = {
        "id": base.id if base is not None else None,
        "task_id": base.task_id if base is not None else merged.get("task_id"),
        "type": rtype,
        "interval_value": merged.get("interval_value") if merged.get("interval_value") is not None else 1,
        "days_of_week": _parse_days_of_week(merged.get("days_of_week")),
        # day_of_month applies to monthly rules only
        "day_of_month": merged.get("day_of_month") if rtype == RecurrenceType.MONTHLY else None,
        "month_of_year": merged.get("month_of_year"),
        "end_condition": _end_condition_from_fields(
            merged.get("end_type"), merged.get("end_date"), merged.get("end_count")
        ),
        "current_count": base.current_count if base is not None else 0,
        "is_active": merged["is_active"] if merged.get("is_active") is not None else True,
    }
    try:
        return RecurrenceRule.model_validate(fields)
    except ValidationError as e:
        raise InvalidRule(_validation_message(e)) from e


def rule_to_input(rule: RecurrenceRule) -> dict[str, Any]:
    """Flat API shape of a rule (inverse of rule_from_input)."""
    end = rule.end_condition
    return {
        "recurrence_type": RecurrenceType(rule.type).value,
        "interval_value": rule.interval_value,
        "days_of_week": [int(d) for d in rule.days_of_week],
        "day_of_month": rule.day_of_month,
        "month_of_year": rule.month_of_year,
        "end_type": end.kind,
        "end_date": end.until.isoformat() if isinstance(end, EndByDate) else None,
        "end_count": end.count if isinstance(end, EndByCount) else None,
        "is_active": rule.is_active,
    }


def rule_to_row(rule: RecurrenceRule) -> dict[str, Any]:
    """Column values for task_recurrence (without id/task_id/timestamps)."""
    out = rule_to_input(rule)
    out["days_of_week"] = json.dumps(out["days_of_week"]) if out["days_of_week"] else None
    out["is_active"] = 1 if rule.is_active else 0
    out["current_count"] = rule.current_count
    return out


def rule_from_row(row: Any) -> RecurrenceRule:
    """Build a rule from a task_recurrence row (sqlite3.Row or dict)."""
    d = dict(row)
    rule = rule_from_input(
        {
            "task_id": d.get("task_id"),
            "recurrence_type": d.get("recurrence_type"),
            "interval_value": d.get("interval_value"),
            "days_of_week": d.get("days_of_week"),
            "day_of_month": d.get("day_of_month"),
            "month_of_year": d.get("month_of_year"),
            "end_type": d.get("end_type"),
            "end_date": d.get("end_date"),
            "end_count": d.get("end_count"),
            "is_active": d.get("is_active"),
        }
    )
    return rule.model_copy(update={"id": d.get("id"), "current_count": d.get("current_count") or 0})


def rule_to_dict(rule: RecurrenceRule, row: Any = None) -> dict[str, Any]:
    """API representation: flat fields plus id, task_id, current_count and timestamps from the row."""
    out: dict[str, Any] = {"id": rule.id, "task_id": rule.task_id}
    out.update(rule_to_input(rule))
    out["current_count"] = rule.current_count
    if row is not None:
        d = dict(row)
        out["created_at"] = d.get("created_at")
        out["updated_at"] = d.get("updated_at")
    return out
