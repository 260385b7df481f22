"""Explicit state container for the assistant and its workspace-facing surface.

Architectural role:
    Holds every piece of mutable document state the engine touches: chat messages
    (user turns and assistant replies), memories, reminders, workspace entries
    supplied by the surrounding application, and the status flags it reads back
    (pending reply count, attention flag, warning text, active reminder panel).

Ownership model:
    One `AssistantState` is owned by one asyncio event loop. Only coroutines and
    callbacks running on that loop mutate it. Background work (model calls in
    worker threads, streaming transports) marshals results back to the loop with
    `loop.call_soon_threadsafe` before anything here changes, so no locks are used.

Notifications:
    Notification delivery is the workspace's concern. The engine only calls
    `NotifierProtocol.notify(title, body)`. `LoggingNotifier` is the default.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Protocol

from astra.memory.memory_system import MemoryEntry
from astra.reminders.reminder_types import Reminder


logger = logging.getLogger(__name__)


REPLY_STREAMING = "streaming"
REPLY_FINISHED = "finished"
REPLY_FAILED = "failed"
REPLY_CANCELLED = "cancelled"


class NotifierProtocol(Protocol):
    """Minimal interface for surfacing user-facing notifications."""

    def notify(self, title: str, body: str) -> None:
        """Deliver one notification."""
        ...


class LoggingNotifier:
    """Notifier that writes notifications to the application log."""

    def notify(self, title: str, body: str) -> None:
        logger.info("Notification: %s | %s", title, body)


@dataclass
class AttachedFile:
    """File attached to a user turn. `text` holds extracted content, if any."""

    name: str
    text: str = ""


@dataclass
class BoardEntry:
    """Workspace element visible to the assistant.

    Attributes:
        id: Stable identifier shown to the router only.
        kind: `text`, `image`, or `file`.
        text: Text content for text entries.
        image: Image bytes for image entries.
        file_name: File name for file entries.
        file_text: Extracted file content for file entries.
        selected: Whether the user currently has the entry selected.
    """

    id: str
    kind: str
    text: str = ""
    image: bytes | None = None
    file_name: str = ""
    file_text: str = ""
    selected: bool = False


@dataclass
class ChatMessage:
    """One chat message. Assistant messages double as the reply under construction.

    Attributes:
        role: `user` or `assistant`.
        text: Message text. For replies, accumulated streamed text.
        images: Attached (user) or produced (assistant) images.
        files: Files attached to a user turn.
        status: Reply status marker; user messages are always finished.
    """

    role: str
    text: str = ""
    images: list[bytes] = field(default_factory=list)
    files: list[AttachedFile] = field(default_factory=list)
    status: str = REPLY_FINISHED
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)


@dataclass
class PendingClarification:
    """User request parked while the assistant waits for a clarification."""

    original_text: str
    question: str
    images: list[bytes] = field(default_factory=list)
    files: list[AttachedFile] = field(default_factory=list)


@dataclass
class AssistantState:
    """Mutable document state. See module docstring for the ownership rule."""

    messages: list[ChatMessage] = field(default_factory=list)
    memories: list[MemoryEntry] = field(default_factory=list)
    reminders: list[Reminder] = field(default_factory=list)
    board_entries: list[BoardEntry] = field(default_factory=list)

    pending_chat_replies: int = 0
    chat_needs_attention: bool = False
    chat_warning: str = ""
    chat_panel_open: bool = True
    active_reminder_panel_id: str | None = None
    pending_clarification: PendingClarification | None = None

    user_name: str = ""
    personality: str = ""

    # ---------------------------------------------------------
    # Chat
    # ---------------------------------------------------------

    def message(self, message_id: str) -> ChatMessage | None:
        return next((m for m in self.messages if m.id == message_id), None)

    def message_index(self, message_id: str) -> int | None:
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                return index
        return None

    def history_before(self, message_id: str) -> list[ChatMessage]:
        """Return messages preceding `message_id`, or all messages if unknown."""
        index = self.message_index(message_id)
        if index is None:
            return list(self.messages)
        return self.messages[:index]

    # ---------------------------------------------------------
    # Reminders
    # ---------------------------------------------------------

    def reminder(self, reminder_id: str) -> Reminder | None:
        return next((r for r in self.reminders if r.id == reminder_id), None)

    def active_reminders(self) -> list[Reminder]:
        """Return active reminders sorted by due time."""
        return sorted(
            (r for r in self.reminders if r.is_active),
            key=lambda r: r.due_at,
        )

    def remove_reminder(self, reminder_id: str) -> Reminder | None:
        reminder = self.reminder(reminder_id)
        if reminder is not None:
            self.reminders = [r for r in self.reminders if r.id != reminder_id]
        return reminder

    # ---------------------------------------------------------
    # Workspace
    # ---------------------------------------------------------

    def board_entry(self, entry_id: str) -> BoardEntry | None:
        return next((e for e in self.board_entries if e.id == entry_id), None)

    def memory_texts(self) -> list[str]:
        return [entry.text for entry in self.memories]
