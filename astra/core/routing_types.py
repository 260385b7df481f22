"""Routing decision data contracts for `astra.core.engine`.

Architectural role:
    Defines the schema returned by the decision router and consumed by the task
    dispatcher when selecting which sub-tasks run for one user turn.

Control-flow interaction:
    `engine.AssistantEngine` inspects `intents` after the intent adjustments in
    `astra.nlp.heuristics` and runs the memory, web search, image, reminder, and
    text paths in fixed order.

Decoding model:
    Every field has a zero value. `from_dict` helpers decode each field on its own so
    a malformed field degrades to its default instead of invalidating the decision.
    Unknown intents are discarded, and task lists for intents that were not declared
    are dropped.

Determinism:
    Pure data transformation. Determinism depends on the model output fed in.
"""

from dataclasses import dataclass, field
from typing import Any


KNOWN_INTENTS = (
    "text",
    "code",
    "image_generate",
    "image_edit",
    "web_search",
    "reminder",
)

REMINDER_ACTIONS = ("create", "list", "cancel")


def _as_str(value: Any) -> str:
    """Return `value` stripped when it is a string, else an empty string."""
    if isinstance(value, str):
        return value.strip()
    return ""


def _as_bool(value: Any) -> bool:
    """Decode a boolean that may arrive as bool, number, or `"true"` string."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return False


def _as_str_list(value: Any) -> list[str]:
    """Decode a list of non-empty strings. A bare string becomes a one-item list."""
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    out: list[str] = []
    for item in value:
        text = _as_str(item)
        if text:
            out.append(text)
    return out


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


@dataclass
class MemorySelection:
    """Memories the router judged relevant, plus their prompt-ready injection."""

    selected_memories: list[str] = field(default_factory=list)
    memory_injection: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "MemorySelection":
        data = _as_dict(data)
        return cls(
            selected_memories=_as_str_list(data.get("selected_memories")),
            memory_injection=_as_str(data.get("memory_injection")),
        )


@dataclass
class BoardSelection:
    """Workspace entry ids the router judged relevant, plus their injection."""

    selected_entry_ids: list[str] = field(default_factory=list)
    board_injection: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "BoardSelection":
        data = _as_dict(data)
        return cls(
            selected_entry_ids=_as_str_list(data.get("selected_entry_ids")),
            board_injection=_as_str(data.get("board_injection")),
        )


@dataclass
class ReminderSchedule:
    """Raw schedule block as produced by the router.

    Attributes:
        type: `once`, `hourly`, `daily`, `weekly`, `monthly`, or `yearly`.
            Validation happens in `astra.reminders.reminder_actions`.
        at: ISO-8601 timestamp of the first occurrence.
        weekdays: Three-letter weekday abbreviations (weekly only).
        interval: Step size, normalized to at least 1.
    """

    type: str = "once"
    at: str = ""
    weekdays: list[str] = field(default_factory=list)
    interval: int = 1

    @classmethod
    def from_dict(cls, data: Any) -> "ReminderSchedule":
        data = _as_dict(data)
        interval_raw = data.get("interval", 1)
        try:
            interval = int(interval_raw)
        except (TypeError, ValueError):
            interval = 1
        return cls(
            type=_as_str(data.get("type")).lower() or "once",
            at=_as_str(data.get("at")),
            weekdays=_as_str_list(data.get("weekdays")),
            interval=max(1, interval),
        )


@dataclass
class ReminderRouting:
    """Reminder action requested by the router."""

    action: str = ""
    title: str = ""
    work: str = ""
    schedule: ReminderSchedule | None = None
    target_id: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> "ReminderRouting | None":
        if not isinstance(data, dict):
            return None
        schedule_raw = data.get("schedule")
        return cls(
            action=_as_str(data.get("action")).lower(),
            title=_as_str(data.get("title")),
            work=_as_str(data.get("work")),
            schedule=ReminderSchedule.from_dict(schedule_raw) if isinstance(schedule_raw, dict) else None,
            target_id=_as_str(data.get("targetId") or data.get("target_id")),
        )


@dataclass
class RouterDecision:
    """Structured routing decision for one user turn.

    Attributes:
        intents: Ordered, de-duplicated intents from `KNOWN_INTENTS`.
        tasks: Task labels keyed by intent. Only declared intents have entries.
        complexity: `simple` or `complex`; selects the text model tier.
        needs_clarification: Whether the router wants to ask before acting.
        clarifying_question: User-facing question when clarification is needed.
        tell_user_on_router_fail: Router hint, kept for diagnostics.
        user_name: Display name inferred by the router, empty if unknown.
        text_instruction: User-facing restatement for worker models.
        memory_selection: Selected memories and their injection block.
        board_selection: Selected workspace entries and their injection block.
        reminder: Reminder action, present only for reminder turns.
    """

    intents: list[str] = field(default_factory=list)
    tasks: dict[str, list[str]] = field(default_factory=dict)
    complexity: str = "simple"
    needs_clarification: bool = False
    clarifying_question: str = ""
    tell_user_on_router_fail: bool = False
    user_name: str = ""
    text_instruction: str = ""
    memory_selection: MemorySelection = field(default_factory=MemorySelection)
    board_selection: BoardSelection = field(default_factory=BoardSelection)
    reminder: ReminderRouting | None = None

    def has(self, intent: str) -> bool:
        return intent in self.intents

    def add_intent(self, intent: str) -> None:
        if intent not in self.intents:
            self.intents.append(intent)

    def remove_intent(self, intent: str) -> None:
        if intent in self.intents:
            self.intents.remove(intent)
        self.tasks.pop(intent, None)

    def tasks_for(self, intent: str) -> list[str]:
        """Return task labels for `intent`, or `[]` when it is not declared."""
        if intent not in self.intents:
            return []
        return list(self.tasks.get(intent, []))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RouterDecision":
        """Decode a parsed router JSON object field by field.

        Args:
            data: JSON object produced by the router model.

        Returns:
            Decision with every malformed or missing field at its zero value.

        Important behavior:
            - `intent` may be a list or a single string.
            - Unknown intents are dropped; order of first appearance is kept.
            - Task lists for intents that are not declared are dropped.
            - `clarifying_question` is cleared when clarification is not requested,
              and clarification is disabled when the question is empty.
        """
        intents: list[str] = []
        for intent in _as_str_list(data.get("intent", data.get("intents"))):
            intent = intent.lower()
            if intent in KNOWN_INTENTS and intent not in intents:
                intents.append(intent)

        tasks: dict[str, list[str]] = {}
        for key, value in _as_dict(data.get("tasks")).items():
            key = str(key).strip().lower()
            if key in intents:
                tasks[key] = _as_str_list(value)

        complexity = _as_str(data.get("complexity")).lower()
        if complexity not in ("simple", "complex"):
            complexity = "simple"

        question = _as_str(data.get("clarifying_question"))
        needs_clarification = _as_bool(data.get("needs_clarification")) and bool(question)

        return cls(
            intents=intents,
            tasks=tasks,
            complexity=complexity,
            needs_clarification=needs_clarification,
            clarifying_question=question if needs_clarification else "",
            tell_user_on_router_fail=_as_bool(data.get("tell_user_on_router_fail")),
            user_name=_as_str(data.get("user's name") or data.get("user_name")),
            text_instruction=_as_str(data.get("text_instruction")),
            memory_selection=MemorySelection.from_dict(data.get("memory_selection")),
            board_selection=BoardSelection.from_dict(data.get("board_selection")),
            reminder=ReminderRouting.from_dict(data.get("reminder")),
        )
