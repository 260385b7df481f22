"""
Tests for the reminder create/list/cancel sub-handler.

Tests cover:
1. parse_iso8601 - offsets, Z suffix, missing seconds, naive timestamps
2. create - validation replies, recurrence, confirmation text
3. list - empty, basic list, model summary, summary failure fallback
4. cancel - by id, by title, not found, panel reset

Run with: pytest tests/test_reminder_actions.py -v
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from astra.core.routing_types import ReminderRouting, ReminderSchedule
from astra.core.state import AssistantState
from astra.reminders.reminder_actions import ReminderActions, basic_reminder_list, parse_iso8601
from astra.reminders.reminder_types import FIRED, Recurrence, Reminder
from tests.fakes import CENTRAL, FIXED_NOW, FakeAI


# =============================================================================
# FIXTURES - Common test data
# =============================================================================

@pytest.fixture
def reminder_state():
    return AssistantState()


@pytest.fixture
def reminder_ai():
    return FakeAI()


def make_actions(state, ai, api_key="key"):
    return ReminderActions(state, ai, "simple-m", api_key, CENTRAL, lambda: FIXED_NOW)


def create_routing(**schedule) -> ReminderRouting:
    return ReminderRouting(
        action="create",
        title="Call mom",
        work="Remind me to call mom",
        schedule=ReminderSchedule(**schedule) if schedule else None,
    )


# =============================================================================
# TIMESTAMPS
# =============================================================================

class TestParseIso8601:
    def test_offset_timestamp(self):
        parsed = parse_iso8601("2026-01-11T15:00:00-06:00")
        assert parsed == datetime(2026, 1, 11, 21, 0, tzinfo=timezone.utc)

    def test_z_suffix_and_missing_seconds(self):
        assert parse_iso8601("2026-01-11T21:00Z") == datetime(2026, 1, 11, 21, 0, tzinfo=timezone.utc)

    def test_naive_uses_given_zone(self):
        parsed = parse_iso8601("2026-01-11T15:00:00", CENTRAL)
        assert parsed.utcoffset() == timedelta(hours=-6)
        assert parsed.hour == 15

    def test_fractional_seconds(self):
        assert parse_iso8601("2026-01-11T15:00:00.250+00:00").microsecond == 250000

    @pytest.mark.parametrize("value", ["", "tomorrow at 3", "2026-13-40T99:00:00"])
    def test_invalid(self, value):
        assert parse_iso8601(value) is None


# =============================================================================
# CREATE
# =============================================================================

class TestCreate:
    def test_one_time_reminder(self, reminder_state, reminder_ai):
        actions = make_actions(reminder_state, reminder_ai)
        reply = actions.create_reminder(create_routing(type="once", at="2026-01-11T15:00:00"))

        assert reply == "Okay, I've set a reminder for 'Call mom' on Jan 11, 2026 at 3:00 PM."
        assert len(reminder_state.reminders) == 1
        assert reminder_state.reminders[0].due_at == datetime(2026, 1, 11, 15, 0, tzinfo=CENTRAL)

    def test_recurring_reminder(self, reminder_state, reminder_ai):
        actions = make_actions(reminder_state, reminder_ai)
        reply = actions.create_reminder(create_routing(
            type="weekly",
            at="2026-01-12T09:00:00-06:00",
            weekdays=["Mon", "Thu"],
        ))

        recurrence = reminder_state.reminders[0].recurrence
        assert recurrence.frequency == "weekly"
        assert recurrence.weekdays == [0, 3]
        assert reply.endswith(" It will recur weekly on Mon, Thu.")

    def test_validation_replies(self, reminder_state, reminder_ai):
        actions = make_actions(reminder_state, reminder_ai)

        no_title = create_routing(type="once", at="2026-01-11T15:00:00")
        no_title.title = ""
        assert actions.create_reminder(no_title) == "I need a title to create a reminder."

        no_work = create_routing(type="once", at="2026-01-11T15:00:00")
        no_work.work = ""
        assert actions.create_reminder(no_work) == "I need to know what work to do for this reminder."

        assert actions.create_reminder(create_routing()) == "I need a valid date and time to set this reminder."
        assert actions.create_reminder(create_routing(type="once", at="soon")) == (
            "I need a valid date and time to set this reminder."
        )
        assert actions.create_reminder(create_routing(type="biweekly", at="2026-01-11T15:00:00")).startswith(
            "Unsupported recurrence type: biweekly."
        )
        assert reminder_state.reminders == []

    def test_unknown_action(self, reminder_state, reminder_ai):
        actions = make_actions(reminder_state, reminder_ai)
        reply = asyncio.run(actions.handle(ReminderRouting(action="snooze"), "snooze it"))
        assert reply == "I'm not sure how to handle the reminder action: snooze."


# =============================================================================
# LIST
# =============================================================================

class TestList:
    def test_no_active_reminders(self, reminder_state, reminder_ai):
        reminder_state.reminders = [Reminder(title="Old", work="w", due_at=FIXED_NOW, status=FIRED)]
        reply = asyncio.run(make_actions(reminder_state, reminder_ai).list_reminders("what's on?"))
        assert reply == "You don't have any active reminders set."

    def test_basic_list_without_api_key(self, reminder_state, reminder_ai):
        reminder_state.reminders = [
            Reminder(title="Later", work="w", due_at=FIXED_NOW + timedelta(days=2)),
            Reminder(title="Soon", work="w", due_at=FIXED_NOW + timedelta(hours=1), recurrence=Recurrence("daily")),
        ]
        reply = asyncio.run(make_actions(reminder_state, reminder_ai, api_key="").list_reminders("list"))

        assert reply.splitlines() == [
            "Here are your active reminders:",
            "- 'Soon' due on Jan 10, 2026 at 1:00 PM (repeats daily)",
            "- 'Later' due on Jan 12, 2026 at 12:00 PM",
        ]
        assert reminder_ai.classify_calls == []

    def test_model_summary(self, reminder_state, reminder_ai):
        reminder_state.reminders = [Reminder(title="Dentist", work="w", due_at=FIXED_NOW + timedelta(days=1))]
        reminder_ai.other_outputs.append("Yes, the dentist tomorrow at noon.")

        reply = asyncio.run(make_actions(reminder_state, reminder_ai).list_reminders("anything tomorrow?"))

        assert reply == "Yes, the dentist tomorrow at noon."
        payload = reminder_ai.classify_calls[0][2][1]["content"]
        assert "anything tomorrow?" in payload
        assert '"Dentist"' in payload

    def test_summary_failure_falls_back(self, reminder_state, reminder_ai):
        reminder_state.reminders = [Reminder(title="Dentist", work="w", due_at=FIXED_NOW + timedelta(days=1))]
        reminder_ai.other_outputs.append(RuntimeError("down"))

        reply = asyncio.run(make_actions(reminder_state, reminder_ai).list_reminders("list"))

        assert reply == basic_reminder_list(reminder_state.active_reminders(), CENTRAL)


# =============================================================================
# CANCEL
# =============================================================================

class TestCancel:
    def test_cancel_by_id(self, reminder_state, reminder_ai):
        reminder = Reminder(title="Call mom", work="w", due_at=FIXED_NOW)
        reminder_state.reminders = [reminder]
        reminder_state.active_reminder_panel_id = reminder.id

        reply = make_actions(reminder_state, reminder_ai).cancel_reminder(
            ReminderRouting(action="cancel", target_id=reminder.id)
        )

        assert reply == "Okay, I've cancelled the reminder for 'Call mom'."
        assert reminder_state.reminders == []
        assert reminder_state.active_reminder_panel_id is None

    def test_cancel_by_title_case_insensitive(self, reminder_state, reminder_ai):
        reminder_state.reminders = [Reminder(title="Call Mom", work="w", due_at=FIXED_NOW)]
        reply = make_actions(reminder_state, reminder_ai).cancel_reminder(
            ReminderRouting(action="cancel", target_id="unknown", title="call mom")
        )
        assert reply == "Okay, I've cancelled the reminder for 'Call Mom'."
        assert reminder_state.reminders == []

    def test_cancel_not_found(self, reminder_state, reminder_ai):
        reply = make_actions(reminder_state, reminder_ai).cancel_reminder(
            ReminderRouting(action="cancel", title="nothing")
        )
        assert reply == "I couldn't find a reminder to cancel matching your request."
