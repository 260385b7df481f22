"""Periodic reminder poll and per-reminder fire pipeline.

Architectural role:
    Drives every reminder through its state machine. `tick` finds due
    `scheduled` reminders and starts one independent task per reminder;
    `run` calls `tick` on a fixed interval for the application lifetime.

Fire pipeline (per reminder, strictly sequential):
    1. `scheduled -> preparing` inside `tick`, before any await, so the next
       poll cannot pick the same reminder again.
    2. Generate the deliverable from `work` with `reminder_fire_prompt`.
       Generation failures fall back to `Reminder: <work>`.
    3. `preparing -> ready`, store `prepared_message`, notify `From Astra:`,
       open the reminder panel on it.
    4. One-time: `ready -> fired`. Recurring: advance `due_at` past now with the
       catch-up rule, then `ready -> scheduled`.

Catch-up rule:
    A reminder that was due several periods ago is advanced repeatedly (at most
    `MAX_CATCH_UP_ITERATIONS` steps) until its next occurrence is in the future,
    so it fires once instead of once per missed period.

Concurrency:
    All state mutation happens on the event loop that calls `tick`. A reminder
    removed while its generation call is in flight is left alone.
"""

import asyncio
import logging
from datetime import datetime, timezone, tzinfo
from typing import Callable

from astra.core.state import AssistantState, LoggingNotifier, NotifierProtocol
from astra.llm.service import AIServiceProtocol
from astra.prompting.prompt_builder import reminder_fire_prompt
from astra.reminders.recurrence import next_due_at
from astra.reminders.reminder_types import FIRED, PREPARING, READY, SCHEDULED, Recurrence, Reminder


logger = logging.getLogger(__name__)

MAX_CATCH_UP_ITERATIONS = 5000
DEFAULT_POLL_SECONDS = 30.0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def advance_past(
    due_at: datetime,
    recurrence: Recurrence,
    now: datetime,
    tz: tzinfo | None = None,
    max_iterations: int = MAX_CATCH_UP_ITERATIONS,
) -> datetime:
    """Return the first occurrence after `due_at` that is strictly later than `now`.

    Edge cases:
        - At least one step is always taken.
        - When `max_iterations` is exhausted the last computed occurrence is
          returned even if it is still in the past.
    """
    candidate = next_due_at(due_at, recurrence, tz)
    iterations = 1
    while candidate <= now and iterations < max_iterations:
        candidate = next_due_at(candidate, recurrence, tz)
        iterations += 1
    if candidate <= now:
        logger.warning("Reminder catch-up stopped after %d iterations at %s", iterations, candidate)
    return candidate


class ReminderScheduler:
    """Poll loop that fires due reminders held in `AssistantState`."""

    def __init__(
        self,
        state: AssistantState,
        ai: AIServiceProtocol,
        model: str,
        api_key: str,
        notifier: NotifierProtocol | None = None,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] = utc_now,
        poll_seconds: float = DEFAULT_POLL_SECONDS,
    ):
        self.state = state
        self.ai = ai
        self.model = model
        self.api_key = api_key
        self.notifier = notifier or LoggingNotifier()
        self.tz = tz
        self.clock = clock
        self.poll_seconds = poll_seconds
        self._tasks: set[asyncio.Task] = set()

    def due_reminders(self, now: datetime) -> list[Reminder]:
        return [
            reminder for reminder in self.state.reminders
            if reminder.status == SCHEDULED and reminder.due_at <= now
        ]

    def tick(self, now: datetime | None = None) -> list[asyncio.Task]:
        """Start fire tasks for every due reminder.

        Must be called from a running event loop.

        Returns:
            Tasks started in this tick, one per reminder.
        """
        now = now or self.clock()
        started: list[asyncio.Task] = []

        for reminder in self.due_reminders(now):
            reminder.status = PREPARING
            logger.info("Reminder %s due (%s); preparing", reminder.id, reminder.title)
            task = asyncio.create_task(self._fire(reminder))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started.append(task)

        return started

    async def _generate(self, reminder: Reminder) -> str:
        messages = [{"role": "user", "content": reminder_fire_prompt(reminder.work)}]
        try:
            text = await self.ai.classify(self.model, self.api_key, messages)
        except Exception:
            logger.exception("Reminder %s generation failed; using fallback text", reminder.id)
            return f"Reminder: {reminder.work}"
        text = (text or "").strip()
        return text or f"Reminder: {reminder.work}"

    async def _fire(self, reminder: Reminder) -> None:
        message = await self._generate(reminder)

        if self.state.reminder(reminder.id) is not reminder:
            logger.info("Reminder %s was removed while preparing", reminder.id)
            return

        reminder.prepared_message = message
        reminder.status = READY
        self.state.active_reminder_panel_id = reminder.id
        self.notifier.notify("From Astra:", reminder.title)
        logger.info("Reminder %s ready", reminder.id)

        if reminder.recurrence is None:
            reminder.status = FIRED
            logger.info("Reminder %s fired", reminder.id)
            return

        reminder.due_at = advance_past(reminder.due_at, reminder.recurrence, self.clock(), self.tz)
        reminder.status = SCHEDULED
        logger.info("Reminder %s rescheduled for %s", reminder.id, reminder.due_at.isoformat())

    async def run(self) -> None:
        """Poll until cancelled."""
        logger.info("Reminder scheduler started (poll every %ss)", self.poll_seconds)
        try:
            while True:
                self.tick()
                await asyncio.sleep(self.poll_seconds)
        finally:
            for task in list(self._tasks):
                task.cancel()
            logger.info("Reminder scheduler stopped")
