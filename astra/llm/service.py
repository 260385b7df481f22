"""Async model-service facade used by orchestration.

Architectural role:
    Provides the collaborator contract the engine, router, reviewer, and reminder
    scheduler depend on (`AIServiceProtocol`) and its production implementation
    (`AIService`), which runs the blocking transports of `astra.llm.client` and
    `astra.image.service` in worker threads via `asyncio.to_thread`.

Threading model:
    Streaming deltas are produced on a worker thread. `AIService.stream_text`
    forwards each one to the event loop with `loop.call_soon_threadsafe`, so the
    `on_delta` callback always runs on the loop that owns `AssistantState`.

Determinism:
    Payload construction is deterministic for fixed inputs and configuration.
    Generated output remains non-deterministic because inference runs remotely.
"""

import asyncio
from typing import Any, Callable, Protocol

from astra.image.service import ImageResult, edit_image, generate_image
from astra.llm.client import complete_chat, stream_chat


Messages = list[dict[str, Any]]


class AIServiceProtocol(Protocol):
    """Model calls consumed by orchestration."""

    async def classify(self, model: str, api_key: str, messages: Messages) -> str:
        """Return the full text of one non-streaming completion."""
        ...

    async def stream_text(
        self,
        model: str,
        api_key: str,
        messages: Messages,
        on_delta: Callable[[str], None],
        should_stop: Callable[[], bool] | None = None,
    ) -> str:
        """Stream one completion, calling `on_delta` on the event loop."""
        ...

    async def generate_image(self, model: str, api_key: str, prompt: str) -> ImageResult:
        """Generate one image."""
        ...

    async def edit_image(
        self,
        model: str,
        api_key: str,
        prompt: str,
        image_bytes: bytes,
    ) -> ImageResult:
        """Edit one image."""
        ...


class AIService:
    """Production `AIServiceProtocol` backed by the HTTP transports."""

    async def classify(self, model: str, api_key: str, messages: Messages) -> str:
        return await asyncio.to_thread(complete_chat, model, api_key, messages)

    async def stream_text(
        self,
        model: str,
        api_key: str,
        messages: Messages,
        on_delta: Callable[[str], None],
        should_stop: Callable[[], bool] | None = None,
    ) -> str:
        """Stream a completion from a worker thread.

        Important behavior:
            - Each delta is scheduled onto the calling loop before the final text is
              returned, so all `on_delta` calls have run when this coroutine resumes.
            - `should_stop` is polled on the worker thread between chunks.
        """
        loop = asyncio.get_running_loop()

        def forward(delta: str) -> None:
            loop.call_soon_threadsafe(on_delta, delta)

        return await asyncio.to_thread(
            stream_chat,
            model,
            api_key,
            messages,
            forward,
            should_stop,
        )

    async def generate_image(self, model: str, api_key: str, prompt: str) -> ImageResult:
        return await asyncio.to_thread(generate_image, model, api_key, prompt)

    async def edit_image(
        self,
        model: str,
        api_key: str,
        prompt: str,
        image_bytes: bytes,
    ) -> ImageResult:
        return await asyncio.to_thread(edit_image, model, api_key, prompt, image_bytes)
