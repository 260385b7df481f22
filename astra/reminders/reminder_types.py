"""Reminder data contracts shared by the scheduler and reminder actions.

State machine:
    `scheduled -> preparing -> ready -> fired` for one-time reminders.
    `scheduled -> preparing -> ready -> scheduled` for recurring reminders, with
    `due_at` advanced by `astra.reminders.recurrence.next_due_at`.
    Cancellation removes the reminder from state regardless of status.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime


SCHEDULED = "scheduled"
PREPARING = "preparing"
READY = "ready"
FIRED = "fired"

ACTIVE_STATUSES = (SCHEDULED, PREPARING, READY)

FREQUENCIES = ("hourly", "daily", "weekly", "monthly", "yearly")

# Python weekday numbering, Monday first.
WEEKDAY_ABBREVIATIONS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


@dataclass
class Recurrence:
    """Repeat rule for a reminder.

    Attributes:
        frequency: One of `FREQUENCIES`.
        interval: Step size, at least 1.
        weekdays: Optional weekday numbers (`0` = Monday) for weekly rules.
    """

    frequency: str
    interval: int = 1
    weekdays: list[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.interval = max(1, int(self.interval))
        self.weekdays = sorted({day for day in self.weekdays if 0 <= day <= 6})

    def describe(self) -> str:
        """Return a short phrase such as `daily`, `every 2 weeks`, `weekly on Mon, Fri`."""
        if self.frequency == "weekly" and self.weekdays:
            days = ", ".join(WEEKDAY_ABBREVIATIONS[day].capitalize() for day in self.weekdays)
            if self.interval == 1:
                return f"weekly on {days}"
            return f"every {self.interval} weeks on {days}"
        if self.interval == 1:
            return self.frequency
        unit = {
            "hourly": "hours",
            "daily": "days",
            "weekly": "weeks",
            "monthly": "months",
            "yearly": "years",
        }.get(self.frequency, self.frequency)
        return f"every {self.interval} {unit}"


@dataclass
class Reminder:
    """One reminder owned by `AssistantState.reminders`.

    Attributes:
        title: Short user-facing title.
        work: Instruction executed when the reminder fires.
        due_at: Timezone-aware instant of the next occurrence.
        status: Current state machine status.
        recurrence: Repeat rule, `None` for one-time reminders.
        prepared_message: Output of the last fire-time generation.
        id: Stable identifier.
    """

    title: str
    work: str
    due_at: datetime
    status: str = SCHEDULED
    recurrence: Recurrence | None = None
    prepared_message: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


def parse_weekdays(values: list[str]) -> list[int]:
    """Map abbreviations like `["Mon", "wednesday"]` to weekday numbers.

    Unknown values are ignored. Matching uses the first three letters.
    """
    days: list[int] = []
    for value in values or []:
        abbreviation = str(value).strip().lower()[:3]
        if abbreviation in WEEKDAY_ABBREVIATIONS:
            day = WEEKDAY_ABBREVIATIONS.index(abbreviation)
            if day not in days:
                days.append(day)
    return days
