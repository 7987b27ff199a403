"""
Pure workforce calculations.

Everything in this module works on already-loaded records (model instances,
ninja schemas or plain dicts) and never touches the database, so the same
functions back the API services, the seed loader and the unit tests.
"""
import math
from collections.abc import Iterable, Mapping, Sequence
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from django.utils import timezone

from .models import Activity, Driver, LogType

SECONDS_PER_HOUR = 3600
DATE_FORMAT = "%d/%m/%Y"
TIMESTAMP_FORMAT = "%d/%m/%Y, %H:%M:%S"

NUMERIC_STANDARD_FIELDS = ("cycle_time", "hourly_productivity", "daily_demand", "work_time", "break_time")

ONLINE = "Online"
OFFLINE = "Offline"

# Dashboard-wide productivity shown when there is nothing to measure (0/0).
OVERALL_PRODUCTIVITY_FALLBACK = 100


def _field(record: Any, name: str, default: Any = None) -> Any:
    if isinstance(record, Mapping):
        return record.get(name, default)
    return getattr(record, name, default)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _round_decimals(value: float, ndigits: int) -> float:
    # Ties go up, on the exact binary value of the float.
    return float(Decimal(value).quantize(Decimal(1).scaleb(-ndigits), rounding=ROUND_HALF_UP))


def to_number(value: Any) -> float:
    """Coerce raw form input to a float. Non-numeric, missing and non-finite values become 0."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return number


def hourly_productivity_from_cycle_time(cycle_time: float) -> float:
    return _round_decimals(SECONDS_PER_HOUR / cycle_time, 2) if cycle_time > 0 else 0.0


def cycle_time_from_hourly_productivity(hourly_productivity: float) -> float:
    return _round_decimals(SECONDS_PER_HOUR / hourly_productivity, 2) if hourly_productivity > 0 else 0.0


def required_headcounts(hourly_productivity: float, daily_demand: float, work_time: float, break_time: float) -> int:
    """Employees needed to cover the daily demand at the given rate and effective shift length."""
    effective_work_time = work_time - break_time
    if hourly_productivity > 0 and daily_demand > 0 and effective_work_time > 0:
        productivity_per_employee_per_day = hourly_productivity * effective_work_time
        return math.ceil(daily_demand / productivity_per_employee_per_day)
    return 0


def recompute_standard_field(record: Mapping[str, Any], changed_field: str, new_value: Any) -> dict[str, Any]:
    """
    Apply a single field edit to an engineering standard and return the
    resulting record with every derived field brought back in line.

    Editing ``cycle_time`` rewrites ``hourly_productivity`` and vice versa
    (both rounded to 2 decimals); ``headcounts`` is then recomputed from the
    current rate, demand and effective work time. The input is not mutated.
    """
    updated = dict(record)
    updated[changed_field] = to_number(new_value) if changed_field in NUMERIC_STANDARD_FIELDS else new_value
    for name in NUMERIC_STANDARD_FIELDS:
        updated[name] = to_number(updated.get(name))

    if changed_field == "cycle_time":
        updated["hourly_productivity"] = hourly_productivity_from_cycle_time(updated["cycle_time"])
    elif changed_field == "hourly_productivity":
        updated["cycle_time"] = cycle_time_from_hourly_productivity(updated["hourly_productivity"])

    updated["headcounts"] = required_headcounts(
        updated["hourly_productivity"],
        updated["daily_demand"],
        updated["work_time"],
        updated["break_time"],
    )
    return updated


def normalize_standard(record: Mapping[str, Any]) -> dict[str, Any]:
    """Fill whichever half of the cycle time / productivity pair is missing and refresh headcounts."""
    cycle_time = to_number(record.get("cycle_time"))
    hourly_productivity = to_number(record.get("hourly_productivity"))
    if hourly_productivity <= 0 and cycle_time > 0:
        return recompute_standard_field(record, "cycle_time", cycle_time)
    if cycle_time <= 0 and hourly_productivity > 0:
        return recompute_standard_field(record, "hourly_productivity", hourly_productivity)
    return recompute_standard_field(record, "daily_demand", record.get("daily_demand"))


def parse_execution_date(value: Any) -> date | None:
    """Accept a date or a ``DD/MM/YYYY`` string; anything else is ``None``."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.strptime(value.strip(), DATE_FORMAT).date()
        except ValueError:
            return None
    return None


def format_execution_date(value: date) -> str:
    return value.strftime(DATE_FORMAT)


def format_timestamp(value: datetime) -> str:
    if timezone.is_aware(value):
        value = timezone.localtime(value)
    return value.strftime(TIMESTAMP_FORMAT)


def log_date(timestamp: Any) -> date | None:
    if isinstance(timestamp, datetime):
        if timezone.is_aware(timestamp):
            timestamp = timezone.localtime(timestamp)
        return timestamp.date()
    if isinstance(timestamp, str):
        try:
            return datetime.strptime(timestamp.strip(), TIMESTAMP_FORMAT).date()
        except ValueError:
            return None
    return None


def is_in_range(record: Any, start_date: date, end_date: date) -> bool:
    execution_date = parse_execution_date(_field(record, "execution_date"))
    return execution_date is not None and start_date <= execution_date <= end_date


def filter_by_date_range(records: Iterable[Any], start_date: date, end_date: date) -> list[Any]:
    return [record for record in records if is_in_range(record, start_date, end_date)]


def period_bounds(reference_date: date, period: str = "day") -> tuple[date, date]:
    """Day, Monday-to-Sunday week or calendar month containing ``reference_date``."""
    if period == "day":
        return reference_date, reference_date
    if period == "week":
        start = reference_date - timedelta(days=reference_date.weekday())
        return start, start + timedelta(days=6)
    if period == "month":
        start = reference_date.replace(day=1)
        next_month = (start + timedelta(days=32)).replace(day=1)
        return start, next_month - timedelta(days=1)
    raise ValueError(f"Unknown period: {period}")


def first_matching_standard(activity: str, standards: Sequence[Any]) -> Any | None:
    # First match in list order, even when several standards share the activity.
    return next(
        (s for s in standards if _field(s, "activity") == activity and _field(s, "hourly_productivity", 0) > 0),
        None
    )


def productivity_totals(tasks: Iterable[Any], standards: Sequence[Any]) -> tuple[float, float]:
    """Return ``(standard_hours, actual_hours)`` for a population of task executions."""
    standard_hours = 0.0
    actual_hours = 0.0
    for task in tasks:
        standard = first_matching_standard(_field(task, "activity"), standards)
        if standard is not None:
            standard_hours += _field(task, "quantity", 0) / _field(standard, "hourly_productivity")
        actual_hours += _field(task, "execution_hours", 0)
    return standard_hours, actual_hours


def compute_productivity(tasks: Iterable[Any], standards: Sequence[Any], fallback: float = 0.0) -> float:
    """Standard hours earned per actual hour worked, as an unclamped percentage."""
    standard_hours, actual_hours = productivity_totals(tasks, standards)
    if actual_hours > 0:
        return (standard_hours / actual_hours) * 100
    return fallback


def overall_productivity(tasks: Iterable[Any], standards: Sequence[Any]) -> int:
    standard_hours, actual_hours = productivity_totals(tasks, standards)
    if actual_hours > 0:
        return _round_half_up((standard_hours / actual_hours) * 100)
    if standard_hours == 0:
        return OVERALL_PRODUCTIVITY_FALLBACK
    return 0


def productivity_by_activity(employee: Any, employees: Sequence[Any], tasks: Sequence[Any],
                             standards: Sequence[Any]) -> list[dict[str, Any]]:
    """Compare an employee with the rest of the team on each of the employee's activities."""
    employee_id = _field(employee, "id")
    rows = []
    for activity in _field(employee, "activities") or []:
        own_tasks = [t for t in tasks if _field(t, "employee_id") == employee_id and _field(t, "activity") == activity]
        team_ids = {_field(e, "id") for e in employees if activity in (_field(e, "activities") or [])}
        team_tasks = [t for t in tasks if _field(t, "employee_id") in team_ids and _field(t, "activity") == activity]
        rows.append({
            "name": activity,
            "employee_productivity": _round_decimals(compute_productivity(own_tasks, standards), 1),
            "team_productivity": _round_decimals(compute_productivity(team_tasks, standards), 1),
        })
    return rows


def latest_logs_by_employee(logs: Iterable[Any]) -> dict[Any, Any]:
    """
    Fold a log sequence sorted by timestamp descending into the most recent
    log of each employee. The first entry seen for an employee wins.
    """
    latest: dict[Any, Any] = {}
    for log in logs:
        latest.setdefault(_field(log, "employee_id"), log)
    return latest


def employee_status(log: Any | None) -> tuple[str, str | None]:
    if log is not None and _field(log, "type") == LogType.CHECK_IN:
        return ONLINE, _field(log, "activity")
    return OFFLINE, None


def active_employee_ids(logs: Iterable[Any]) -> set[Any]:
    return {
        employee_id
        for employee_id, log in latest_logs_by_employee(logs).items()
        if _field(log, "type") == LogType.CHECK_IN
    }


def employee_distribution(logs: Iterable[Any], employees: Iterable[Any] | None = None) -> dict[str, int]:
    """Number of checked-in employees currently working each activity."""
    latest = latest_logs_by_employee(logs)
    employee_ids = list(latest) if employees is None else [_field(e, "id") for e in employees]

    distribution: dict[str, int] = {}
    for employee_id in employee_ids:
        log = latest.get(employee_id)
        if log is None or _field(log, "type") != LogType.CHECK_IN:
            continue
        activity = _field(log, "activity")
        distribution[activity] = distribution.get(activity, 0) + 1
    return distribution


def demand_vs_execution(standards: Sequence[Any], tasks: Sequence[Any]) -> list[dict[str, Any]]:
    """Planned demand against executed quantity for every activity, in enumeration order."""
    rows = []
    for activity in Activity.values:
        activity_standards = [s for s in standards if _field(s, "activity") == activity]
        activity_tasks = [t for t in tasks if _field(t, "activity") == activity]
        rows.append({
            "name": activity,
            "planned": sum(_field(s, "daily_demand", 0) for s in activity_standards),
            "actual": sum(_field(t, "quantity", 0) for t in activity_tasks),
            "driver": _field(activity_standards[0], "driver") if activity_standards else Driver.LINES.value,
        })
    return rows


def tasks_progress(planned: float, actual: float) -> float:
    return (actual / planned) * 100 if planned > 0 else 0.0


def absenteeism(total_headcount: int, employees_on_vacation: int, active_employees: int) -> dict[str, Any] | None:
    if total_headcount == 0:
        return None
    effective_headcount = total_headcount - employees_on_vacation
    absent_today = max(0, effective_headcount - active_employees)
    return {
        "planned": total_headcount,
        "on_vacation": employees_on_vacation,
        "active": active_employees,
        "absent": absent_today,
        "rate": (absent_today / effective_headcount) * 100 if effective_headcount > 0 else 0.0,
    }


def headcount_vs_demand(standards: Sequence[Any], logs: Sequence[Any], end_date: date,
                        days: int = 7) -> list[dict[str, Any]]:
    """Daily required headcount against employees who checked in, for the ``days`` ending at ``end_date``."""
    checked_in: dict[date, set] = {}
    for log in logs:
        if _field(log, "type") != LogType.CHECK_IN:
            continue
        day = log_date(_field(log, "timestamp"))
        if day is not None:
            checked_in.setdefault(day, set()).add(_field(log, "employee_id"))

    series = []
    for offset in range(days - 1, -1, -1):
        day = end_date - timedelta(days=offset)
        series.append({
            "day": day.strftime("%a"),
            "date": format_execution_date(day),
            "headcount": len(checked_in.get(day, ())),
            "demand": sum(_field(s, "headcounts", 0) for s in standards if is_in_range(s, day, day)),
        })
    return series


def build_dashboard_snapshot(operation: Any, start_date: date, end_date: date,
                             activity_filter: Iterable[str] | None,
                             time_logs: Sequence[Any], tasks: Sequence[Any],
                             standards: Sequence[Any], employees: Sequence[Any],
                             trend_days: int = 7) -> dict[str, Any]:
    """
    Summarise one operation over ``[start_date, end_date]``.

    ``time_logs`` must already be sorted by timestamp descending. Every
    figure covers all activities; ``activity_filter`` is only echoed back
    so the client can narrow what it displays (empty means all).
    """
    relevant_tasks = filter_by_date_range(tasks, start_date, end_date)
    relevant_standards = filter_by_date_range(standards, start_date, end_date)

    breakdown = demand_vs_execution(relevant_standards, relevant_tasks)
    planned_tasks = sum(row["planned"] for row in breakdown)
    total_tasks = sum(row["actual"] for row in breakdown)

    active_employees = len(active_employee_ids(time_logs))
    total_headcount = _field(operation, "total_headcount", 0)
    employees_on_vacation = _field(operation, "employees_on_vacation", 0)

    return {
        "operation": {
            "id": _field(operation, "id"),
            "name": _field(operation, "name"),
            "total_headcount": total_headcount,
            "employees_on_vacation": employees_on_vacation,
        },
        "start_date": start_date,
        "end_date": end_date,
        "activity_filter": sorted(set(activity_filter or ())),
        "active_employees": active_employees,
        "tasks_progress": tasks_progress(planned_tasks, total_tasks),
        "total_tasks_today": total_tasks,
        "planned_tasks_today": planned_tasks,
        "overall_productivity": overall_productivity(relevant_tasks, relevant_standards),
        "demand_vs_execution_by_activity": breakdown,
        "employee_distribution": employee_distribution(time_logs, employees),
        "headcount_vs_demand": headcount_vs_demand(standards, time_logs, end_date, trend_days),
        "absenteeism": absenteeism(total_headcount, employees_on_vacation, active_employees),
    }


def format_duration(minutes: int) -> str:
    minutes = max(0, minutes)
    return f"{minutes // 60:02d}h {minutes % 60:02d}m"
