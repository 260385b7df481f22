"""Reminder sub-handler of the task dispatcher.

Handles the `reminder` intent for one turn: create, list, or cancel, and returns
the reply text. Nothing here raises for bad router output; missing or invalid
fields come back as a clarification-style reply.

Actions:
    - create: requires a title, work, and a parseable `schedule.at`. `type` other
      than `once` must name a supported frequency.
    - list: deterministic bullet list, or a model-written answer to the user's
      question when an API key is configured (falls back to the bullet list).
    - cancel: match `target_id` first, then the title (case-insensitive) among
      active reminders. The match is removed from state whatever its status.
"""

import logging
import re
from datetime import datetime, tzinfo
from typing import Callable

from astra.core.lifecycle import CancellationToken, ReplyCancelledError
from astra.core.routing_types import REMINDER_ACTIONS, ReminderRouting
from astra.core.state import AssistantState
from astra.llm.service import AIServiceProtocol
from astra.prompting.prompt_builder import (
    REMINDER_LIST_SYSTEM_PROMPT,
    build_reminder_list_payload,
    format_due,
)
from astra.reminders.reminder_types import FREQUENCIES, Recurrence, Reminder, parse_weekdays


logger = logging.getLogger(__name__)

_MISSING_SECONDS = re.compile(r"T(\d{2}:\d{2})([Zz+\-].*)?$")


def parse_iso8601(value: str, tz: tzinfo | None = None) -> datetime | None:
    """Parse an ISO-8601 timestamp as produced by the router.

    Accepts fractional seconds, a `Z` suffix, and a missing seconds field.
    A timestamp without offset is read in `tz` (or the process local zone).

    Returns:
        Aware datetime, or `None` when the text cannot be parsed.
    """
    text = (value or "").strip()
    if not text:
        return None
    text = _MISSING_SECONDS.sub(lambda m: f"T{m.group(1)}:00{m.group(2) or ''}", text)
    if text[-1] in "Zz":
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz) if tz is not None else parsed.astimezone()
    return parsed


def time_zone_name(tz: tzinfo | None, now: datetime) -> str:
    return getattr(tz, "key", None) or now.tzname() or "local"


def basic_reminder_list(reminders: list[Reminder], tz: tzinfo | None = None) -> str:
    lines = ["Here are your active reminders:"]
    for reminder in reminders:
        due = format_due(reminder.due_at.astimezone(tz))
        line = f"- '{reminder.title}' due on {due}"
        if reminder.recurrence is not None:
            line += f" (repeats {reminder.recurrence.describe()})"
        lines.append(line)
    return "\n".join(lines)


class ReminderActions:
    """Executes reminder create/list/cancel against `AssistantState`."""

    def __init__(
        self,
        state: AssistantState,
        ai: AIServiceProtocol,
        model: str,
        api_key: str,
        tz: tzinfo | None,
        clock: Callable[[], datetime],
    ):
        self.state = state
        self.ai = ai
        self.model = model
        self.api_key = api_key
        self.tz = tz
        self.clock = clock

    async def handle(
        self,
        routing: ReminderRouting | None,
        user_text: str,
        token: CancellationToken | None = None,
    ) -> str:
        action = routing.action if routing is not None else ""
        if routing is None or action not in REMINDER_ACTIONS:
            return f"I'm not sure how to handle the reminder action: {action}."
        if action == "create":
            return self.create_reminder(routing)
        if action == "list":
            return await self.list_reminders(user_text, token)
        return self.cancel_reminder(routing)

    # ---------------------------------------------------------
    # Create
    # ---------------------------------------------------------

    def create_reminder(self, routing: ReminderRouting) -> str:
        if not routing.title:
            return "I need a title to create a reminder."
        if not routing.work:
            return "I need to know what work to do for this reminder."

        schedule = routing.schedule
        due_at = parse_iso8601(schedule.at, self.tz) if schedule is not None else None
        if schedule is None or due_at is None:
            return "I need a valid date and time to set this reminder."

        recurrence = None
        if schedule.type != "once":
            if schedule.type not in FREQUENCIES:
                return (
                    f"Unsupported recurrence type: {schedule.type}. "
                    "I can do 'hourly', 'daily', 'weekly', 'monthly', or 'yearly'."
                )
            weekdays = parse_weekdays(schedule.weekdays) if schedule.type == "weekly" else []
            recurrence = Recurrence(frequency=schedule.type, interval=schedule.interval, weekdays=weekdays)

        reminder = Reminder(title=routing.title, work=routing.work, due_at=due_at, recurrence=recurrence)
        self.state.reminders.append(reminder)
        logger.info("Created reminder %s for %s", reminder.id, due_at.isoformat())

        local_due = due_at.astimezone(self.tz) if self.tz is not None else due_at
        confirmation = f"Okay, I've set a reminder for '{reminder.title}' on {format_due(local_due)}."
        if recurrence is not None:
            confirmation += f" It will recur {recurrence.describe()}."
        return confirmation

    # ---------------------------------------------------------
    # List
    # ---------------------------------------------------------

    async def list_reminders(self, user_text: str, token: CancellationToken | None = None) -> str:
        active = self.state.active_reminders()
        if not active:
            return "You don't have any active reminders set."

        fallback = basic_reminder_list(active, self.tz)
        if not self.api_key:
            return fallback

        now = self.clock().astimezone(self.tz)
        messages = [
            {"role": "system", "content": REMINDER_LIST_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": build_reminder_list_payload(user_text, active, now, time_zone_name(self.tz, now)),
            },
        ]
        try:
            text = await self.ai.classify(self.model, self.api_key, messages)
        except ReplyCancelledError:
            raise
        except Exception:
            logger.exception("Reminder summary failed; using basic list")
            return fallback

        if token is not None:
            token.raise_if_cancelled()
        return text.strip() or fallback

    # ---------------------------------------------------------
    # Cancel
    # ---------------------------------------------------------

    def cancel_reminder(self, routing: ReminderRouting) -> str:
        match = self.state.reminder(routing.target_id) if routing.target_id else None

        if match is None and routing.title:
            wanted = routing.title.lower()
            match = next(
                (r for r in self.state.active_reminders() if r.title.lower() == wanted),
                None,
            )

        if match is None:
            return "I couldn't find a reminder to cancel matching your request."

        self.state.remove_reminder(match.id)
        if self.state.active_reminder_panel_id == match.id:
            self.state.active_reminder_panel_id = None
        logger.info("Cancelled reminder %s", match.id)
        return f"Okay, I've cancelled the reminder for '{match.title}'."
