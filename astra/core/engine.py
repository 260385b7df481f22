"""Core turn orchestration: routing, task dispatch, and reply lifecycle.

Architectural role:
    Provides the pipeline used by API/CLI layers to turn one user message into a
    finalized assistant reply. `AssistantEngine.send_message` appends the user
    message and an empty reply to `AssistantState`, then hands `_process_turn` to
    `ReplyLifecycleManager`, which owns cancellation and finalization.

Control-flow model (`_process_turn`):
    1. Manual `/search` command bypasses routing.
    2. A parked clarification is merged into the turn text.
    3. `DecisionRouter.route`; `RouterFailure` ends the turn with `Router Failed`.
    4. Clarification requests park the turn and reply with the question.
    5. Intent adjustments from `astra.nlp.heuristics`.
    6. `reminder` runs the reminder sub-handler and nothing else.
    7. Memory update (remember turns), then web search, then image work.
    8. Text/code generation streams into the reply, followed by the consistency
       review.

Error handling strategy:
    Sub-task exceptions propagate to the lifecycle task wrapper, which finalizes
    the reply as failed with the exception message appended to partial text.
    Validation problems (missing image, missing query) are ordinary replies.

Side effects:
    - Mutates `AssistantState` (messages, memories, reminders, clarification,
      counters) on the event loop only.
    - Calls external model, image, and web search collaborators.

Determinism:
    Dispatch order and prompt assembly are deterministic for a fixed decision.
    Model output, web retrieval, and clock-dependent reminder math are not.
"""

import asyncio
import base64
import logging
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Any, Callable, Protocol

from astra.core.consistency import ConsistencyReviewer
from astra.core.lifecycle import (
    CancellationToken,
    ReplyCancelledError,
    ReplyInProgressError,
    ReplyLifecycleManager,
    retry_model_request,
)
from astra.core.routing_types import RouterDecision
from astra.core.state import (
    REPLY_STREAMING,
    AssistantState,
    AttachedFile,
    ChatMessage,
    NotifierProtocol,
    PendingClarification,
)
from astra.image.service import image_mime_type
from astra.llm import provider_config
from astra.llm.service import AIService, AIServiceProtocol, Messages
from astra.memory.memory_system import (
    memory_status,
    merge_memories,
    normalize_memory_delta,
    parse_delta_output,
    status_message,
)
from astra.nlp.heuristics import (
    cleaned_web_search_query,
    image_prompt,
    manual_search_query,
    wants_image_action,
    wants_memory_save,
)
from astra.nlp.intent_router import DecisionRouter, RouterFailure
from astra.prompting.prompt_builder import (
    BASE_SYSTEM_PROMPT,
    BOARD_USAGE_PROMPT,
    MEMORY_USAGE_PROMPT,
    build_memory_update_payload,
    build_router_payload,
    clarification_merged_text,
    file_content_description,
    format_memory_injection,
    format_search_results,
    format_web_sources,
    image_part,
    image_prompt_with_style,
    memory_status_line,
    memory_update_prompt,
    text_part,
    worker_instruction,
)
from astra.reminders.reminder_actions import ReminderActions, time_zone_name
from astra.reminders.scheduler import ReminderScheduler, utc_now


logger = logging.getLogger(__name__)

WEB_MAX_QUERIES = 2
WEB_MAX_ITEMS = 12
WEB_MAX_PAGES = 3
MAX_MEMORY_IMAGES = 2
HISTORY_MAX_MESSAGES = 20

DISPATCHABLE_INTENTS = ("text", "code", "image_generate", "image_edit", "web_search", "reminder")


class WebModuleProtocol(Protocol):
    """Minimal async interface required by the web search steps."""

    async def search(self, query: str) -> list[dict[str, str]]:
        """Return `[{title, url, snippet}]` for a query."""
        ...

    async def fetch_page_excerpts(
        self,
        items: list[dict[str, str]],
        max_pages: int,
    ) -> list[dict[str, str]]:
        """Return `[{title, url, text}]` for the first fetchable items."""
        ...


_DEFAULT_WEB_MODULE: WebModuleProtocol | None = None


def set_web_module(module: WebModuleProtocol | None) -> None:
    """Override or clear the default web module used by search steps.

    Edge cases:
        - Passing `None` re-enables lazy construction on next use.
    """
    global _DEFAULT_WEB_MODULE
    _DEFAULT_WEB_MODULE = module


def _get_default_web_module() -> WebModuleProtocol | None:
    """Lazily instantiate and cache the default web search module.

    Returns:
        The cached/created module, or `None` when it cannot be configured.

    Edge cases:
        - Initialization failures (e.g. missing `SEARCH_API_KEY`) are logged and
          converted to `None`.
    """
    global _DEFAULT_WEB_MODULE
    if _DEFAULT_WEB_MODULE is not None:
        return _DEFAULT_WEB_MODULE

    try:
        from astra.retrieval.web.web_module import WebModuleConfig, WebSearchModule
        _DEFAULT_WEB_MODULE = WebSearchModule(config=WebModuleConfig())
    except Exception:
        logger.exception("Failed to initialize default WebSearchModule")
        _DEFAULT_WEB_MODULE = None

    return _DEFAULT_WEB_MODULE


@dataclass
class ModelTiers:
    """Model names per role."""

    router: str = provider_config.ROUTER_MODEL
    simple_text: str = provider_config.SIMPLE_TEXT_MODEL
    complex_text: str = provider_config.COMPLEX_TEXT_MODEL
    image: str = provider_config.IMAGE_MODEL

    def text_for(self, complexity: str) -> str:
        return self.complex_text if complexity == "complex" else self.simple_text


@dataclass
class TurnInput:
    """Effective input of one turn after clarification merging."""

    text: str
    images: list[bytes]
    files: list[AttachedFile]


def data_url(data: bytes) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{image_mime_type(data)};base64,{encoded}"


class WebSearchError(RuntimeError):
    """Raised when the web search step cannot produce context."""


class AssistantEngine:
    """Owns routing, dispatch, and reply lifecycle for one `AssistantState`."""

    def __init__(
        self,
        state: AssistantState,
        ai: AIServiceProtocol,
        web_module: WebModuleProtocol | None = None,
        notifier: NotifierProtocol | None = None,
        api_key: str = "",
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] = utc_now,
        models: ModelTiers | None = None,
        max_retries: int = provider_config.MODEL_MAX_RETRIES,
    ):
        self.state = state
        self.ai = ai
        self.web_module = web_module
        self.api_key = api_key
        self.tz = tz
        self.clock = clock
        self.models = models or ModelTiers()
        self.max_retries = max_retries

        self.lifecycle = ReplyLifecycleManager(state, notifier)
        self.router = DecisionRouter(ai, self.models.router, api_key)
        self.reviewer = ConsistencyReviewer(ai, self.models.router, api_key)
        self.reminder_actions = ReminderActions(
            state,
            ai,
            self.models.simple_text,
            api_key,
            tz,
            clock,
        )

    @classmethod
    def from_env(
        cls,
        state: AssistantState | None = None,
        notifier: NotifierProtocol | None = None,
    ) -> "AssistantEngine":
        """Build an engine from `astra.llm.provider_config` settings."""
        state = state or AssistantState(
            user_name=provider_config.USER_NAME,
            personality=provider_config.PERSONALITY,
        )
        return cls(
            state=state,
            ai=AIService(),
            notifier=notifier,
            api_key=provider_config.get_api_key(),
            tz=provider_config.resolve_time_zone(),
        )

    def make_scheduler(self, poll_seconds: float = provider_config.REMINDER_POLL_SECONDS) -> ReminderScheduler:
        return ReminderScheduler(
            self.state,
            self.ai,
            self.models.simple_text,
            self.api_key,
            notifier=self.lifecycle.notifier,
            tz=self.tz,
            clock=self.clock,
            poll_seconds=poll_seconds,
        )

    # =========================================================
    # PUBLIC OPERATIONS
    # =========================================================

    def send_message(
        self,
        text: str,
        images: list[bytes] | None = None,
        files: list[AttachedFile] | None = None,
    ) -> tuple[str, asyncio.Task]:
        """Append a user turn and start its reply.

        Must be called from the event loop that owns the state.

        Returns:
            `(reply_id, task)`; the task completes after finalization.
        """
        user_message = ChatMessage(role="user", text=text or "", images=list(images or []), files=list(files or []))
        reply = ChatMessage(role="assistant", status=REPLY_STREAMING)
        self.state.messages.append(user_message)
        self.state.messages.append(reply)

        task = self.lifecycle.start(reply.id, lambda token: self._process_turn(token, user_message))
        return reply.id, task

    def stop_chat_replies(self) -> int:
        return self.lifecycle.stop_chat_replies()

    def retry_reply(self, reply_id: str) -> asyncio.Task:
        """Re-run the turn that produced `reply_id`, reusing the reply message.

        Raises:
            ReplyInProgressError: While any reply is pending.
            KeyError: When `reply_id` is not an assistant reply with a user turn before it.
        """
        if self.state.pending_chat_replies > 0:
            raise ReplyInProgressError("Wait for the current reply to finish before retrying.")

        index = self.state.message_index(reply_id)
        if index is None or self.state.messages[index].role != "assistant":
            raise KeyError(reply_id)

        user_message = next(
            (m for m in reversed(self.state.messages[:index]) if m.role == "user"),
            None,
        )
        if user_message is None:
            raise KeyError(reply_id)

        reply = self.state.messages[index]
        reply.text = ""
        reply.images = []
        logger.info("Retrying reply %s", reply_id)
        return self.lifecycle.start(reply_id, lambda token: self._process_turn(token, user_message))

    def resend_edited(self, message_id: str, text: str) -> tuple[str, asyncio.Task]:
        """Replace a user message's text, drop everything after it, and reply again.

        Raises:
            ReplyInProgressError: While any reply is pending.
            KeyError: When `message_id` is not a user message.
        """
        if self.state.pending_chat_replies > 0:
            raise ReplyInProgressError("Wait for the current reply to finish before resending.")

        index = self.state.message_index(message_id)
        if index is None or self.state.messages[index].role != "user":
            raise KeyError(message_id)

        user_message = self.state.messages[index]
        user_message.text = text or ""
        del self.state.messages[index + 1:]
        self.state.pending_clarification = None

        reply = ChatMessage(role="assistant", status=REPLY_STREAMING)
        self.state.messages.append(reply)
        task = self.lifecycle.start(reply.id, lambda token: self._process_turn(token, user_message))
        return reply.id, task

    # =========================================================
    # TURN PIPELINE
    # =========================================================

    async def _process_turn(self, token: CancellationToken, user_message: ChatMessage) -> None:
        query = manual_search_query(user_message.text)
        if query is not None:
            await self._manual_search(token, query)
            return

        turn = self._merge_clarification(user_message)
        history = self.state.history_before(user_message.id)
        now = self.clock().astimezone(self.tz)

        payload = build_router_payload(
            text=turn.text,
            image_count=len(turn.images),
            file_names=[f.name for f in turn.files],
            user_name=self.state.user_name,
            now=now,
            time_zone_name=time_zone_name(self.tz, now),
            history=history,
            personality=self.state.personality,
            memories=self.state.memory_texts(),
            board_entries=self.state.board_entries,
        )

        try:
            decision = await self.router.route(payload, token)
        except RouterFailure as failure:
            self.lifecycle.set_text(token, f"Router Failed: {failure.detail}")
            return

        if decision.user_name and not self.state.user_name:
            self.state.user_name = decision.user_name

        if decision.needs_clarification:
            self.state.pending_clarification = PendingClarification(
                original_text=turn.text,
                question=decision.clarifying_question,
                images=list(turn.images),
                files=list(turn.files),
            )
            self.lifecycle.set_text(token, decision.clarifying_question)
            return

        remember = self._apply_intent_adjustments(decision, turn.text)

        memory_state = "none"
        if remember:
            memory_state = await self._update_memory(token, turn)

        if decision.has("reminder"):
            reply = await self.reminder_actions.handle(decision.reminder, turn.text, token)
            token.raise_if_cancelled()
            acknowledgement = status_message(memory_state)
            self.lifecycle.set_text(token, f"{reply}\n\n{acknowledgement}" if acknowledgement else reply)
            return

        web_context = ""
        if decision.has("web_search"):
            web_context = await self._web_search_context(token, decision, turn.text)
            if web_context is None:
                self.lifecycle.set_text(token, "Web search needs a query.")
                return

        image_prompt_text = ""
        if decision.has("image_edit") or decision.has("image_generate"):
            image_prompt_text = image_prompt(turn.text) or turn.text
            validation = await self._run_image_task(token, decision, turn, image_prompt_text)
            if validation:
                self.lifecycle.set_text(token, validation)
                return

        if not (decision.has("text") or decision.has("code")):
            if not self._reply_images(token):
                self.lifecycle.set_text(token, status_message(memory_state) or "No response.")
            return

        await self._generate_text(token, decision, turn, history, memory_state, web_context)

    def _merge_clarification(self, user_message: ChatMessage) -> TurnInput:
        pending = self.state.pending_clarification
        if pending is None:
            return TurnInput(user_message.text.strip(), list(user_message.images), list(user_message.files))

        self.state.pending_clarification = None
        text = clarification_merged_text(
            pending.original_text,
            user_message.text,
            len(user_message.images),
            len(user_message.files),
        )
        logger.info("Merged clarification into parked request")
        return TurnInput(
            text=text,
            images=list(user_message.images) or list(pending.images),
            files=list(user_message.files) or list(pending.files),
        )

    def _apply_intent_adjustments(self, decision: RouterDecision, text: str) -> bool:
        """Apply heuristic intent adjustments. Returns whether the turn saves memory.

        Precedence:
            - Remember (task label or phrase) without an explicit image action drops
              image work and forces `text`.
            - `web_search` without `text`/`code` forces `text`.
            - A decision with no dispatchable intent falls back to `text`.
        """
        text_tasks = [t.lower() for t in decision.tasks_for("text")]
        remember = "remember" in text_tasks or wants_memory_save(text)

        if remember and not wants_image_action(text):
            decision.remove_intent("image_edit")
            decision.remove_intent("image_generate")
            decision.add_intent("text")

        if decision.has("web_search") and not (decision.has("text") or decision.has("code")):
            decision.add_intent("text")

        if not any(decision.has(intent) for intent in DISPATCHABLE_INTENTS):
            decision.add_intent("text")

        return remember

    def _reply_images(self, token: CancellationToken) -> list[bytes]:
        message = self.state.message(token.reply_id)
        return message.images if message is not None else []

    # ---------------------------------------------------------
    # Manual search
    # ---------------------------------------------------------

    async def _manual_search(self, token: CancellationToken, query: str) -> None:
        if not query:
            self.lifecycle.set_text(token, "Usage: /search <query>")
            return

        module = self.web_module or _get_default_web_module()
        if module is None:
            raise WebSearchError("Web search is not configured.")

        items = await module.search(query)
        token.raise_if_cancelled()
        self.lifecycle.set_text(token, format_search_results(query, items))

    # ---------------------------------------------------------
    # Memory
    # ---------------------------------------------------------

    async def _update_memory(self, token: CancellationToken, turn: TurnInput) -> str:
        """Run the memory-update call and merge its delta into state.

        Returns:
            Memory status (`none`, `already_known`, `updated`, `saved`).
        """
        user_name = self.state.user_name
        content: list[dict[str, Any]] = [
            text_part(build_memory_update_payload(turn.text, self.state.memory_texts()))
        ]
        content += [image_part(data_url(image)) for image in turn.images]
        messages = [
            {"role": "system", "content": memory_update_prompt(user_name)},
            {"role": "user", "content": content},
        ]

        raw = await retry_model_request(
            lambda: self.ai.classify(self.models.complex_text, self.api_key, messages),
            token,
            self.max_retries,
        )
        token.raise_if_cancelled()

        delta = normalize_memory_delta(parse_delta_output(raw), user_name)
        entries, counts = merge_memories(
            self.state.memories,
            delta,
            turn.images[0] if turn.images else None,
        )
        self.state.memories = entries
        status = memory_status(delta, counts)
        logger.info("Memory status: %s", status)
        return status

    # ---------------------------------------------------------
    # Web search
    # ---------------------------------------------------------

    async def _web_search_context(
        self,
        token: CancellationToken,
        decision: RouterDecision,
        text: str,
    ) -> str | None:
        """Run up to two queries and return the web context block.

        Returns:
            Context block, or `None` when no query could be derived.

        Raises:
            WebSearchError: When the search collaborator is missing or fails.
        """
        queries: list[str] = []
        for query in decision.tasks_for("web_search"):
            if query and query not in queries:
                queries.append(query)
        if not queries:
            fallback = cleaned_web_search_query(text)
            if fallback:
                queries.append(fallback)
        queries = queries[:WEB_MAX_QUERIES]
        if not queries:
            return None

        module = self.web_module or _get_default_web_module()
        if module is None:
            raise WebSearchError("Web search failed: web search is not configured.")

        try:
            combined: list[dict[str, str]] = []
            seen: set[str] = set()
            for query in queries:
                for item in await module.search(query):
                    url = (item.get("url") or "").strip()
                    if not url or url in seen:
                        continue
                    seen.add(url)
                    combined.append(item)
                token.raise_if_cancelled()

            items = combined[:WEB_MAX_ITEMS]
            pages = await module.fetch_page_excerpts(items, max_pages=WEB_MAX_PAGES)
        except ReplyCancelledError:
            raise
        except Exception as exc:
            logger.exception("Web search failed for queries=%r", queries)
            raise WebSearchError(f"Web search failed: {exc}") from exc
        token.raise_if_cancelled()

        label = queries[0] if len(queries) == 1 else f"{queries[0]} (+{len(queries) - 1} more)"
        logger.info("Web search %r returned %d items, %d pages", label, len(items), len(pages))
        return format_web_sources(label, items, pages)

    # ---------------------------------------------------------
    # Images
    # ---------------------------------------------------------

    def _selected_board_image(self, decision: RouterDecision) -> bytes | None:
        for entry_id in decision.board_selection.selected_entry_ids:
            entry = self.state.board_entry(entry_id)
            if entry is not None and entry.kind == "image" and entry.image:
                return entry.image
        return None

    async def _run_image_task(
        self,
        token: CancellationToken,
        decision: RouterDecision,
        turn: TurnInput,
        prompt_text: str,
    ) -> str | None:
        """Generate or edit an image and attach it to the reply.

        Returns:
            A validation reply when the request cannot run, otherwise `None`.
        """
        prompt = image_prompt_with_style(prompt_text, self.state.personality)

        if decision.has("image_edit"):
            source = turn.images[-1] if turn.images else self._selected_board_image(decision)
            if source is None:
                return "Please attach or select an image to edit."
            if not prompt:
                return "Please describe how to edit the image."
            result = await retry_model_request(
                lambda: self.ai.edit_image(self.models.image, self.api_key, prompt, source),
                token,
                self.max_retries,
            )
        else:
            if not prompt:
                return "Please describe the image you want."
            result = await retry_model_request(
                lambda: self.ai.generate_image(self.models.image, self.api_key, prompt),
                token,
                self.max_retries,
            )

        token.raise_if_cancelled()
        self.lifecycle.add_image(token, result.data)
        logger.info("Image %s attached to reply %s", "edit" if decision.has("image_edit") else "generation", token.reply_id)
        return None

    # ---------------------------------------------------------
    # Text
    # ---------------------------------------------------------

    def _system_prompts(
        self,
        decision: RouterDecision,
        memory_state: str,
        web_context: str,
    ) -> list[str]:
        prompts = [BASE_SYSTEM_PROMPT]
        if self.state.personality.strip():
            prompts.append(self.state.personality.strip())

        memory_injection = decision.memory_selection.memory_injection
        if not memory_injection:
            memory_injection = format_memory_injection(decision.memory_selection.selected_memories)
        if not memory_injection:
            memory_injection = format_memory_injection(self.state.memory_texts())
        if memory_injection:
            prompts.append(MEMORY_USAGE_PROMPT)
            prompts.append(memory_injection)

        if decision.board_selection.board_injection:
            prompts.append(BOARD_USAGE_PROMPT)
            prompts.append(decision.board_selection.board_injection)

        if web_context:
            prompts.append(web_context)

        prompts.append(worker_instruction(decision))
        if memory_state in ("saved", "updated"):
            prompts.append(memory_status_line(status_message(memory_state)))
        return prompts

    def _history_messages(self, history: list[ChatMessage]) -> Messages:
        messages: Messages = []
        for message in history[-HISTORY_MAX_MESSAGES:]:
            text = message.text.strip()
            if not text or message.status == REPLY_STREAMING:
                continue
            role = "user" if message.role == "user" else "assistant"
            messages.append({"role": role, "content": text})
        return messages

    def _current_turn_message(self, turn: TurnInput) -> dict[str, Any]:
        if not turn.images and not turn.files:
            return {"role": "user", "content": turn.text or "(no text)"}

        parts: list[dict[str, Any]] = [image_part(data_url(image)) for image in turn.images]
        if turn.files:
            parts.append(text_part(f"Attached files: {', '.join(f.name for f in turn.files)}"))
            parts += [text_part(file_content_description(f.name, f.text)) for f in turn.files]
        if turn.text:
            parts.append(text_part(turn.text))
        return {"role": "user", "content": parts}

    def _context_image_messages(self, decision: RouterDecision) -> Messages:
        messages: Messages = []

        selected = set(decision.memory_selection.selected_memories)
        image_memories = [m for m in self.state.memories if m.text in selected and m.image][:MAX_MEMORY_IMAGES]
        if image_memories:
            parts = [text_part("Memory images (context only; not user message):")]
            for index, memory in enumerate(image_memories, start=1):
                parts.append(text_part(f"Memory {index}: {memory.text}"))
                parts.append(image_part(data_url(memory.image)))
            messages.append({"role": "user", "content": parts})

        board_images = []
        for entry_id in decision.board_selection.selected_entry_ids:
            entry = self.state.board_entry(entry_id)
            if entry is not None and entry.kind == "image" and entry.image:
                board_images.append(entry.image)
        if board_images:
            parts = [text_part("Reference images:")]
            for index, image in enumerate(board_images, start=1):
                parts.append(text_part(f"Image {index}:"))
                parts.append(image_part(data_url(image)))
            messages.append({"role": "user", "content": parts})

        return messages

    def _text_instruction(self, decision: RouterDecision, memory_state: str) -> str:
        instruction = decision.text_instruction
        text_tasks = decision.tasks_for("text")
        remember_only = (
            decision.intents == ["text"]
            and bool(text_tasks)
            and all(task.strip().lower() == "remember" for task in text_tasks)
        )
        if remember_only and not instruction:
            instruction = status_message(memory_state) or "Acknowledge the memory update briefly."
        return instruction

    def build_text_messages(
        self,
        decision: RouterDecision,
        turn: TurnInput,
        history: list[ChatMessage],
        memory_state: str,
        web_context: str,
        generated_image: bytes | None = None,
    ) -> Messages:
        """Assemble the text-model message list.

        Order:
            system prompts, prior history, current turn (with attachments as content
            parts), memory and reference images, then the text instruction (with the
            generated image when the turn also produced one).
        """
        messages: Messages = [
            {"role": "system", "content": prompt}
            for prompt in self._system_prompts(decision, memory_state, web_context)
        ]
        messages += self._history_messages(history)
        messages.append(self._current_turn_message(turn))
        messages += self._context_image_messages(decision)

        instruction = self._text_instruction(decision, memory_state)
        if generated_image is not None:
            parts = [
                image_part(data_url(generated_image)),
                text_part(instruction or "Use the attached image to respond to the user's request."),
            ]
            messages.append({"role": "user", "content": parts})
        elif instruction:
            messages.append({"role": "user", "content": instruction})
        return messages

    async def _generate_text(
        self,
        token: CancellationToken,
        decision: RouterDecision,
        turn: TurnInput,
        history: list[ChatMessage],
        memory_state: str,
        web_context: str,
    ) -> None:
        images = self._reply_images(token)
        messages = self.build_text_messages(
            decision,
            turn,
            history,
            memory_state,
            web_context,
            generated_image=images[0] if images else None,
        )
        model = self.models.text_for(decision.complexity)

        self.lifecycle.set_text(token, "")
        await retry_model_request(
            lambda: self.ai.stream_text(
                model,
                self.api_key,
                messages,
                lambda delta: self.lifecycle.append_delta(token, delta),
                should_stop=lambda: token.cancelled,
            ),
            token,
            self.max_retries,
            on_retry=lambda: self.lifecycle.set_text(token, ""),
        )
        token.raise_if_cancelled()

        reply = self.state.message(token.reply_id)
        draft = reply.text if reply is not None else ""
        revised = await self.reviewer.revise_reply_if_needed(
            draft,
            turn.text,
            self.state.memory_texts(),
            model,
            messages,
            token,
        )
        token.raise_if_cancelled()
        if revised != draft:
            self.lifecycle.set_text(token, revised)
