"""Pure recurrence arithmetic for reminders.

Architectural role:
    Computes the next occurrence of a recurring reminder from its current due
    instant. The scheduler owns the catch-up loop; this module never looks at the
    clock.

Calendar rules:
    - `hourly`: add `interval` hours of absolute time.
    - `daily`: add `interval` calendar days, keeping wall-clock time.
    - `weekly` without weekdays: add `interval` weeks.
    - `weekly` with weekdays: next listed weekday strictly after the current
      occurrence inside the same Monday-based week, else the earliest listed
      weekday of the week `interval` weeks later.
    - `monthly` / `yearly`: add months/years to the calendar date and clamp the day
      to the last day of the resulting month (Jan 31 + 1 month -> Feb 28 or 29).

    Every rule except `hourly` keeps the hour, minute, and second of the current
    occurrence.

Time zones:
    When `tz` is given, the arithmetic runs on the wall clock of that zone, so a
    daily reminder stays at 09:00 across a DST change.

Determinism:
    Pure function of its arguments.
"""

import calendar
from datetime import date, datetime, timedelta, timezone, tzinfo

from astra.reminders.reminder_types import Recurrence


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    total = value.year * 12 + (value.month - 1) + months
    year, month_index = divmod(total, 12)
    month = month_index + 1
    last_day = calendar.monthrange(year, month)[1]
    return value.replace(year=year, month=month, day=min(value.day, last_day))


def _on_date(template: datetime, day: date) -> datetime:
    """Return `template` moved to `day`, keeping time of day and tzinfo."""
    return template.replace(year=day.year, month=day.month, day=day.day)


def _next_weekly_on_days(current: datetime, weekdays: list[int], interval: int) -> datetime:
    week_start = current.date() - timedelta(days=current.weekday())
    days = sorted(set(weekdays))

    for weekday in days:
        candidate = _on_date(current, week_start + timedelta(days=weekday))
        if candidate > current:
            return candidate

    next_week_start = week_start + timedelta(weeks=interval)
    return _on_date(current, next_week_start + timedelta(days=days[0]))


def next_due_at(current: datetime, recurrence: Recurrence, tz: tzinfo | None = None) -> datetime:
    """Compute the occurrence that follows `current`.

    Args:
        current: Current due instant. Aware datetimes are recommended.
        recurrence: Repeat rule.
        tz: Optional zone whose wall clock drives day-based arithmetic.

    Returns:
        Next occurrence, strictly later than `current`, expressed in `tz` when
        given, otherwise in `current`'s own zone.

    Raises:
        ValueError: For an unknown frequency.
    """
    local = current.astimezone(tz) if tz is not None and current.tzinfo is not None else current
    interval = max(1, recurrence.interval)
    frequency = recurrence.frequency

    if frequency == "hourly":
        if local.tzinfo is None:
            return local + timedelta(hours=interval)
        shifted = local.astimezone(timezone.utc) + timedelta(hours=interval)
        return shifted.astimezone(local.tzinfo)

    if frequency == "daily":
        return local + timedelta(days=interval)

    if frequency == "weekly":
        if recurrence.weekdays:
            return _next_weekly_on_days(local, recurrence.weekdays, interval)
        return local + timedelta(weeks=interval)

    if frequency == "monthly":
        return add_months(local, interval)

    if frequency == "yearly":
        return add_months(local, 12 * interval)

    raise ValueError(f"Unsupported recurrence frequency: {frequency}")
