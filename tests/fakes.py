"""
Shared fakes for the Astra test suite.

The fakes stand in for the model service, the web search module, and the
notifier so orchestration can be exercised without network access:

- FakeAI: answers `classify` from per-role queues chosen by the system prompt
  (router, memory update, consistency check, anything else), and streams
  scripted chunks for `stream_text`.
- FakeWebModule: returns canned search items and page excerpts.
- RecordingNotifier: keeps every notification for assertions.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from astra.image.service import ImageResult
from astra.prompting.prompt_builder import MEMORY_CHECK_SYSTEM_PROMPT, ROUTER_SYSTEM_PROMPT


# =============================================================================
# COMMON TEST DATA
# =============================================================================

CENTRAL = timezone(timedelta(hours=-6), "CST")
FIXED_NOW = datetime(2026, 1, 10, 12, 0, tzinfo=CENTRAL)

GENERATED_IMAGE = b"generated-image"
EDITED_IMAGE = b"edited-image"


class FakeAI:
    """Scripted `AIServiceProtocol` implementation.

    Queue items may be strings, exceptions (raised), or callables taking the
    messages and returning a string. Empty queues fall back to defaults.
    """

    def __init__(self):
        self.router_outputs: list = []
        self.memory_outputs: list = []
        self.check_outputs: list = []
        self.other_outputs: list = []
        self.stream_outputs: list = []

        self.classify_calls: list[tuple[str, str, list]] = []
        self.stream_calls: list[tuple[str, list]] = []
        self.image_calls: list[tuple[str, str, bytes | None]] = []

        self.stream_gate: asyncio.Event | None = None
        self.image_error: Exception | None = None

    @staticmethod
    def _role(messages) -> str:
        first = messages[0].get("content") if messages else ""
        if first == ROUTER_SYSTEM_PROMPT:
            return "router"
        if first == MEMORY_CHECK_SYSTEM_PROMPT:
            return "check"
        if isinstance(first, str) and first.startswith("Update stored memories"):
            return "memory"
        return "other"

    @staticmethod
    def _next(queue: list, messages, default):
        item = queue.pop(0) if queue else default
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item(messages)
        return item

    async def classify(self, model, api_key, messages):
        role = self._role(messages)
        self.classify_calls.append((role, model, messages))
        queue = {
            "router": self.router_outputs,
            "memory": self.memory_outputs,
            "check": self.check_outputs,
            "other": self.other_outputs,
        }[role]
        default = {
            "router": '{"intent": ["text"]}',
            "memory": '{"add": [], "update": [], "delete": []}',
            "check": '{"conflicts": false, "conflicting_memories": [], "reason": ""}',
            "other": "",
        }[role]
        await asyncio.sleep(0)
        return self._next(queue, messages, default)

    async def stream_text(self, model, api_key, messages, on_delta, should_stop=None):
        self.stream_calls.append((model, messages))
        item = self.stream_outputs.pop(0) if self.stream_outputs else ["Hello", " there."]
        if isinstance(item, BaseException):
            raise item
        chunks = [item] if isinstance(item, str) else list(item)

        text = ""
        for index, chunk in enumerate(chunks):
            if should_stop is not None and should_stop():
                break
            on_delta(chunk)
            text += chunk
            await asyncio.sleep(0)
            if index == 0 and self.stream_gate is not None:
                await self.stream_gate.wait()
        return text

    async def generate_image(self, model, api_key, prompt):
        self.image_calls.append(("generate", prompt, None))
        if self.image_error is not None:
            raise self.image_error
        return ImageResult(data=GENERATED_IMAGE)

    async def edit_image(self, model, api_key, prompt, image_bytes):
        self.image_calls.append(("edit", prompt, image_bytes))
        if self.image_error is not None:
            raise self.image_error
        return ImageResult(data=EDITED_IMAGE)

    def calls_for(self, role: str) -> list:
        return [call for call in self.classify_calls if call[0] == role]


class FakeWebModule:
    def __init__(self, items=None, pages=None, error: Exception | None = None):
        self.items = items if items is not None else [
            {"title": "Result A", "url": "https://a.example.com", "snippet": "Alpha"},
            {"title": "Result B", "url": "https://b.example.com", "snippet": "Beta"},
        ]
        self.pages = pages if pages is not None else [
            {"title": "Result A", "url": "https://a.example.com", "text": "Alpha page text"},
        ]
        self.error = error
        self.queries: list[str] = []

    async def search(self, query):
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return list(self.items)

    async def fetch_page_excerpts(self, items, max_pages):
        return list(self.pages)


class RecordingNotifier:
    def __init__(self):
        self.notifications: list[tuple[str, str]] = []

    def notify(self, title, body):
        self.notifications.append((title, body))


async def wait_until(predicate, attempts: int = 200) -> None:
    """Yield to the loop until `predicate()` holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")
