"""Reply lifecycle: cancellation, retry, and exactly-once finalization.

Architectural role:
    Owns the asynchronous unit of work behind every assistant reply. The engine
    hands `ReplyLifecycleManager.start` a coroutine factory; the manager runs it as
    an `asyncio.Task`, feeds streamed text into the reply message, and reaches
    exactly one of three terminal outcomes: finished, failed, or cancelled.

Cancellation model:
    Each unit of work receives a `CancellationToken`. Code awaiting a collaborator
    calls `token.raise_if_cancelled()` before its next side effect, which raises
    `ReplyCancelledError`. `stop_chat_replies` sets every active token, finalizes
    the reply as cancelled immediately, and cancels the task.

Exactly-once finalization:
    `token.finalized` is flipped by whichever terminal path runs first. Every
    later attempt (natural completion racing a stop, a late failure, a repeated
    stop) is a no-op, so the pending-reply counter is decremented once per start.

Retry model:
    `retry_model_request` re-runs one collaborator call while `is_retryable`
    accepts the error, up to `max_retries` extra attempts. Cancellation aborts
    retrying immediately.

Threading:
    Every method here mutates `AssistantState` and must run on the event loop
    that owns it. Worker threads reach these methods only through
    `loop.call_soon_threadsafe` (see `astra.llm.service.AIService`).
"""

import asyncio
import json
import logging
import re
from typing import Awaitable, Callable, TypeVar

import httpx
import requests

from astra.core.state import (
    REPLY_CANCELLED,
    REPLY_FAILED,
    REPLY_FINISHED,
    REPLY_STREAMING,
    AssistantState,
    ChatMessage,
    LoggingNotifier,
    NotifierProtocol,
)
from astra.llm.client import BadStatusError, InvalidResponseError
from astra.llm.provider_config import MODEL_MAX_RETRIES


logger = logging.getLogger(__name__)

T = TypeVar("T")

STOPPED_NOTE = "Stopped by user."
NOTIFICATION_BODY_LIMIT = 180


class ReplyCancelledError(Exception):
    """Raised at a suspension point once the reply has been cancelled."""


class ReplyInProgressError(RuntimeError):
    """Raised when work is started for a reply id that is still active."""


class CancellationToken:
    """Per-reply cancellation and finalization bits.

    Attributes:
        reply_id: Reply message this token belongs to.
        cancelled: Set once by `cancel`; never cleared.
        finalized: Set by the first terminal transition; never cleared.
    """

    def __init__(self, reply_id: str) -> None:
        self.reply_id = reply_id
        self.cancelled = False
        self.finalized = False

    def cancel(self) -> None:
        self.cancelled = True

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ReplyCancelledError(self.reply_id)


# =========================================================
# RETRY
# =========================================================

def is_retryable(exc: BaseException) -> bool:
    """Classify a collaborator error as transient (retry) or terminal.

    Retryable:
        - network and timeout errors (`requests`, `httpx` transports)
        - response decoding errors and responses missing expected content
        - HTTP 5xx

    Terminal:
        - cancellation
        - HTTP 4xx
        - everything else
    """
    if isinstance(exc, (ReplyCancelledError, asyncio.CancelledError)):
        return False
    if isinstance(exc, BadStatusError):
        return exc.status_code >= 500
    if isinstance(exc, requests.HTTPError):
        return exc.response is not None and exc.response.status_code >= 500
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    if isinstance(
        exc,
        (
            requests.ConnectionError,
            requests.Timeout,
            requests.exceptions.ChunkedEncodingError,
            httpx.TransportError,
        ),
    ):
        return True
    if isinstance(exc, (json.JSONDecodeError, InvalidResponseError)):
        return True
    return False


async def retry_model_request(
    operation: Callable[[], Awaitable[T]],
    token: CancellationToken | None = None,
    max_retries: int = MODEL_MAX_RETRIES,
    on_retry: Callable[[], None] | None = None,
) -> T:
    """Run `operation`, retrying transient failures.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        token: Reply token checked before every attempt.
        max_retries: Extra attempts allowed after the first failure.
        on_retry: Reset hook run before each re-attempt (e.g. clear streamed text).

    Returns:
        Result of the first successful attempt.

    Raises:
        ReplyCancelledError: When the token is cancelled before or during an attempt.
        Exception: The last error when it is terminal or retries are exhausted.
    """
    attempt = 0
    while True:
        if token is not None:
            token.raise_if_cancelled()
        try:
            return await operation()
        except ReplyCancelledError:
            raise
        except Exception as exc:
            if token is not None and token.cancelled:
                raise ReplyCancelledError(token.reply_id) from exc
            if attempt >= max_retries or not is_retryable(exc):
                raise
            attempt += 1
            logger.warning("Model request failed (%s); retry %d/%d", exc, attempt, max_retries)
            if on_retry is not None:
                on_retry()


# =========================================================
# SANITIZATION
# =========================================================

_UUID_PATTERN = re.compile(r"[0-9A-Fa-f]{8}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{12}")
_BOARD_MARKER_PATTERNS = (
    re.compile(r"\(\s*board id\b[^\)]*\)", re.IGNORECASE),
    re.compile(r"\bboard id\b\s*[:#]?\s*", re.IGNORECASE),
)
_PROCESS_LINE_PREFIXES = (
    "generated image",
    "edited image",
    "original request:",
    "clarification question:",
    "user clarification:",
)


def sanitize_reply_text(raw: str) -> str:
    """Strip internal identifiers and leaked process lines from reply text.

    Important behavior:
        - UUIDs and `(board id ...)` / `board id:` markers are removed in place.
        - Lines starting with a process label, and a bare `here you go:` line,
          are dropped.
        - Runs of blank lines collapse to one; trailing whitespace is removed.
        - Leading indentation is kept so code blocks survive.
    """
    text = _UUID_PATTERN.sub("", raw or "")
    for pattern in _BOARD_MARKER_PATTERNS:
        text = pattern.sub("", text)

    kept: list[str] = []
    last_blank = False
    for line in text.splitlines():
        line = line.rstrip()
        lowered = line.strip().lower()
        if lowered.startswith(_PROCESS_LINE_PREFIXES) or lowered == "here you go:":
            continue
        if not lowered:
            if not last_blank:
                kept.append("")
            last_blank = True
            continue
        kept.append(line)
        last_blank = False

    return "\n".join(kept).strip()


def _truncate(text: str, limit: int = NOTIFICATION_BODY_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


# =========================================================
# LIFECYCLE MANAGER
# =========================================================

ReplyWork = Callable[[CancellationToken], Awaitable[None]]


class ReplyLifecycleManager:
    """Runs reply work and guarantees exactly one terminal transition per start."""

    def __init__(self, state: AssistantState, notifier: NotifierProtocol | None = None) -> None:
        self.state = state
        self.notifier = notifier or LoggingNotifier()
        self._tokens: dict[str, CancellationToken] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._watchers: dict[str, list[asyncio.Queue]] = {}

    # ---------------------------------------------------------
    # Start / stop
    # ---------------------------------------------------------

    def is_active(self, reply_id: str) -> bool:
        token = self._tokens.get(reply_id)
        return token is not None and not token.finalized

    def active_reply_ids(self) -> list[str]:
        return [reply_id for reply_id in self._tokens if self.is_active(reply_id)]

    def start(self, reply_id: str, work: ReplyWork) -> asyncio.Task:
        """Start the unit of work for `reply_id`.

        Side effects:
            - Marks the reply message as streaming.
            - Increments `pending_chat_replies`.

        Raises:
            ReplyInProgressError: When earlier work for `reply_id` is not finalized.
        """
        if self.is_active(reply_id):
            raise ReplyInProgressError(f"Reply {reply_id} is already in progress")

        token = CancellationToken(reply_id)
        self._tokens[reply_id] = token

        message = self.state.message(reply_id)
        if message is not None:
            message.status = REPLY_STREAMING

        self.state.pending_chat_replies += 1
        task = asyncio.create_task(self._run(token, work))
        self._tasks[reply_id] = task
        return task

    async def _run(self, token: CancellationToken, work: ReplyWork) -> None:
        try:
            await work(token)
        except (asyncio.CancelledError, ReplyCancelledError):
            self.finalize_cancelled(token)
        except Exception as exc:
            logger.exception("Reply %s failed", token.reply_id)
            self.fail(token, str(exc) or exc.__class__.__name__)
        else:
            if token.cancelled:
                self.finalize_cancelled(token)
            else:
                self.finish(token)
        finally:
            if self._tasks.get(token.reply_id) is asyncio.current_task():
                self._tasks.pop(token.reply_id, None)
            # A retry may already own the id with a fresh token.
            if token.finalized and self._tokens.get(token.reply_id) is token:
                del self._tokens[token.reply_id]

    def stop_chat_replies(self) -> int:
        """Cancel every active reply. Returns how many were stopped."""
        stopped = 0
        for reply_id in self.active_reply_ids():
            token = self._tokens[reply_id]
            token.cancel()
            if self.finalize_cancelled(token):
                stopped += 1
            task = self._tasks.get(reply_id)
            if task is not None and not task.done():
                task.cancel()
        if stopped:
            logger.info("Stopped %d chat repl%s", stopped, "y" if stopped == 1 else "ies")
        return stopped

    # ---------------------------------------------------------
    # Streaming updates
    # ---------------------------------------------------------

    def _message(self, token: CancellationToken) -> ChatMessage | None:
        return self.state.message(token.reply_id)

    def _live(self, token: CancellationToken) -> bool:
        return not token.cancelled and not token.finalized

    def append_delta(self, token: CancellationToken, delta: str) -> None:
        """Append streamed text; ignored once the reply is cancelled or final."""
        if not delta or not self._live(token):
            return
        message = self._message(token)
        if message is None:
            return
        message.text += delta
        for queue in self._watchers.get(token.reply_id, []):
            queue.put_nowait(delta)

    def set_text(self, token: CancellationToken, text: str) -> None:
        """Replace the reply text (retry reset, revision, non-streamed replies)."""
        if not self._live(token):
            return
        message = self._message(token)
        if message is not None:
            message.text = text

    def add_image(self, token: CancellationToken, data: bytes) -> None:
        if not self._live(token):
            return
        message = self._message(token)
        if message is not None:
            message.images.append(data)

    def watch(self, reply_id: str) -> asyncio.Queue:
        """Return a queue receiving streamed deltas, then `None` when finalized."""
        queue: asyncio.Queue = asyncio.Queue()
        if self.is_active(reply_id):
            self._watchers.setdefault(reply_id, []).append(queue)
        else:
            queue.put_nowait(None)
        return queue

    # ---------------------------------------------------------
    # Terminal transitions
    # ---------------------------------------------------------

    def _begin_finalize(self, token: CancellationToken) -> bool:
        if token.finalized:
            return False
        token.finalized = True
        self.state.pending_chat_replies = max(0, self.state.pending_chat_replies - 1)
        return True

    def _close_watchers(self, reply_id: str) -> None:
        for queue in self._watchers.pop(reply_id, []):
            queue.put_nowait(None)

    def _flag_attention(self) -> None:
        if not self.state.chat_panel_open:
            self.state.chat_needs_attention = True

    def finish(self, token: CancellationToken) -> bool:
        """Finalize as finished. Returns False when already finalized.

        Side effects:
            - Sanitizes the reply text; an empty result becomes `Here you go.` when
              images are attached, else `No response from the model.`.
            - Emits an `Astra replied` notification (or `Astra generated an image`
              for image-only replies).
        """
        if token.cancelled or not self._begin_finalize(token):
            return False

        message = self._message(token)
        if message is not None:
            cleaned = sanitize_reply_text(message.text)
            if not cleaned:
                cleaned = "Here you go." if message.images else "No response from the model."
            message.text = cleaned
            message.status = REPLY_FINISHED

            self._flag_attention()
            if message.images and cleaned == "Here you go.":
                self.notifier.notify("Astra generated an image", cleaned)
            else:
                self.notifier.notify("Astra replied", _truncate(cleaned))

        self._close_watchers(token.reply_id)
        return True

    def fail(self, token: CancellationToken, error_message: str) -> bool:
        """Finalize as failed, keeping any partial text. Returns False when already final."""
        if token.cancelled or not self._begin_finalize(token):
            return False

        self.state.chat_warning = f"Model request failed: {error_message}"
        note = f"Request failed: {error_message}"

        message = self._message(token)
        if message is not None:
            message.text = f"{message.text}\n\n{note}" if message.text.strip() else note
            message.status = REPLY_FAILED
        self._flag_attention()
        self._close_watchers(token.reply_id)
        return True

    def finalize_cancelled(self, token: CancellationToken) -> bool:
        """Finalize as cancelled. Returns False when already final."""
        token.cancel()
        if not self._begin_finalize(token):
            return False

        message = self._message(token)
        if message is not None:
            message.text = f"{message.text}\n\n{STOPPED_NOTE}" if message.text.strip() else STOPPED_NOTE
            message.status = REPLY_CANCELLED
        self._close_watchers(token.reply_id)
        return True
