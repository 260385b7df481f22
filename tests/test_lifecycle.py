"""
Tests for the reply lifecycle manager.

Tests cover:
1. is_retryable - transient vs terminal classification
2. retry_model_request - retry budget, reset hook, cancellation
3. sanitize_reply_text - identifier and process-line stripping
4. ReplyLifecycleManager - finish/fail/cancel outcomes, exactly-once
   finalization, pending counter, watchers, notifications

Run with: pytest tests/test_lifecycle.py -v
"""

import asyncio
import json

import httpx
import pytest
import requests

from astra.core.lifecycle import (
    STOPPED_NOTE,
    CancellationToken,
    ReplyCancelledError,
    ReplyInProgressError,
    ReplyLifecycleManager,
    is_retryable,
    retry_model_request,
    sanitize_reply_text,
)
from astra.core.state import (
    REPLY_CANCELLED,
    REPLY_FAILED,
    REPLY_FINISHED,
    REPLY_STREAMING,
    AssistantState,
    ChatMessage,
)
from astra.llm.client import BadStatusError, InvalidResponseError, MissingAPIKeyError
from tests.fakes import RecordingNotifier, wait_until


# =============================================================================
# FIXTURES - Common test data
# =============================================================================

def make_manager(panel_open=True):
    state = AssistantState(chat_panel_open=panel_open)
    reply = ChatMessage(role="assistant", status=REPLY_STREAMING)
    state.messages.append(reply)
    notifier = RecordingNotifier()
    return state, reply, ReplyLifecycleManager(state, notifier), notifier


def http_status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://example.com")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError("status", request=request, response=response)


# =============================================================================
# RETRY CLASSIFICATION
# =============================================================================

class TestIsRetryable:
    @pytest.mark.parametrize("exc", [
        BadStatusError(503, "unavailable"),
        requests.ConnectionError("reset"),
        requests.Timeout("slow"),
        httpx.ConnectError("refused"),
        http_status_error(502),
        json.JSONDecodeError("bad", "doc", 0),
        InvalidResponseError("no choices"),
    ])
    def test_transient(self, exc):
        assert is_retryable(exc) is True

    @pytest.mark.parametrize("exc", [
        BadStatusError(401, "unauthorized"),
        http_status_error(404),
        MissingAPIKeyError("missing"),
        ValueError("bad input"),
        ReplyCancelledError("reply"),
        asyncio.CancelledError(),
    ])
    def test_terminal(self, exc):
        assert is_retryable(exc) is False


class TestRetryModelRequest:
    def test_retries_transient_then_succeeds(self):
        attempts = []
        resets = []

        async def operation():
            attempts.append(1)
            if len(attempts) < 3:
                raise BadStatusError(500, "oops")
            return "ok"

        result = asyncio.run(retry_model_request(operation, max_retries=2, on_retry=lambda: resets.append(1)))

        assert result == "ok"
        assert len(attempts) == 3
        assert len(resets) == 2

    def test_exhausted_budget_raises_last_error(self):
        async def operation():
            raise BadStatusError(500, "oops")

        with pytest.raises(BadStatusError):
            asyncio.run(retry_model_request(operation, max_retries=1))

    def test_terminal_error_not_retried(self):
        attempts = []

        async def operation():
            attempts.append(1)
            raise BadStatusError(400, "bad request")

        with pytest.raises(BadStatusError):
            asyncio.run(retry_model_request(operation, max_retries=3))
        assert len(attempts) == 1

    def test_cancelled_token_aborts(self):
        token = CancellationToken("r")
        attempts = []

        async def operation():
            attempts.append(1)
            token.cancel()
            raise BadStatusError(500, "oops")

        with pytest.raises(ReplyCancelledError):
            asyncio.run(retry_model_request(operation, token, max_retries=3))
        assert len(attempts) == 1


# =============================================================================
# SANITIZATION
# =============================================================================

class TestSanitizeReplyText:
    def test_removes_uuids_and_board_markers(self):
        raw = "See the note (board id 1b4e28ba-2fa1-11d2-883f-0016d3cca427) above."
        assert sanitize_reply_text(raw) == "See the note  above."

    def test_board_id_inside_words_is_kept(self):
        raw = "Here are some keyboard ideas for your desk."
        assert sanitize_reply_text(raw) == raw

    def test_bare_board_id_label_is_removed(self):
        assert sanitize_reply_text("Saved to board id: notes") == "Saved to notes"

    def test_drops_process_lines(self):
        raw = "Generated image: cat.png\nHere you go:\nA cat on a mat.\nOriginal request: draw"
        assert sanitize_reply_text(raw) == "A cat on a mat."

    def test_collapses_blank_lines_and_keeps_indentation(self):
        raw = "Code:\n\n\n\n    print('hi')\n"
        assert sanitize_reply_text(raw) == "Code:\n\n    print('hi')"


# =============================================================================
# LIFECYCLE
# =============================================================================

class TestReplyLifecycleManager:
    def test_finish_streams_and_notifies(self):
        async def scenario():
            state, reply, manager, notifier = make_manager(panel_open=False)

            async def work(token):
                manager.append_delta(token, "Hello")
                manager.append_delta(token, " world")

            await manager.start(reply.id, work)

            assert reply.text == "Hello world"
            assert reply.status == REPLY_FINISHED
            assert state.pending_chat_replies == 0
            assert state.chat_needs_attention is True
            assert notifier.notifications == [("Astra replied", "Hello world")]

        asyncio.run(scenario())

    def test_empty_reply_placeholders(self):
        async def scenario():
            state, reply, manager, notifier = make_manager()

            async def nothing(token):
                return None

            await manager.start(reply.id, nothing)
            assert reply.text == "No response from the model."

            async def image_only(token):
                manager.set_text(token, "")
                manager.add_image(token, b"png")

            await manager.start(reply.id, image_only)
            assert reply.text == "Here you go."
            assert notifier.notifications[-1] == ("Astra generated an image", "Here you go.")

        asyncio.run(scenario())

    def test_failure_keeps_partial_text(self):
        async def scenario():
            state, reply, manager, _ = make_manager()

            async def work(token):
                manager.append_delta(token, "Partial")
                raise BadStatusError(401, "invalid key")

            await manager.start(reply.id, work)

            assert reply.status == REPLY_FAILED
            assert reply.text.startswith("Partial\n\nRequest failed: ")
            assert state.chat_warning.startswith("Model request failed: ")
            assert state.pending_chat_replies == 0

        asyncio.run(scenario())

    def test_start_while_active_raises(self):
        async def scenario():
            _, reply, manager, _ = make_manager()
            gate = asyncio.Event()

            async def work(token):
                await gate.wait()

            task = manager.start(reply.id, work)
            with pytest.raises(ReplyInProgressError):
                manager.start(reply.id, work)
            gate.set()
            await task

        asyncio.run(scenario())

    def test_stop_during_stream_finalizes_once(self):
        """A stop racing natural completion yields one note and one decrement."""
        async def scenario():
            state, reply, manager, notifier = make_manager()
            gate = asyncio.Event()
            tokens = []

            async def work(token):
                tokens.append(token)
                manager.append_delta(token, "Hello")
                await gate.wait()
                manager.append_delta(token, " late")

            task = manager.start(reply.id, work)
            await wait_until(lambda: reply.text == "Hello")

            assert manager.stop_chat_replies() == 1
            # natural completion and a repeated stop arrive after the cancel
            assert manager.finish(tokens[0]) is False
            assert manager.fail(tokens[0], "late error") is False
            assert manager.stop_chat_replies() == 0
            gate.set()
            await asyncio.gather(task, return_exceptions=True)

            assert reply.status == REPLY_CANCELLED
            assert reply.text == f"Hello\n\n{STOPPED_NOTE}"
            assert reply.text.count(STOPPED_NOTE) == 1
            assert state.pending_chat_replies == 0
            assert notifier.notifications == []

        asyncio.run(scenario())

    def test_stop_before_text_uses_note_only(self):
        async def scenario():
            state, reply, manager, _ = make_manager()

            async def work(token):
                await asyncio.sleep(10)

            task = manager.start(reply.id, work)
            await asyncio.sleep(0)
            manager.stop_chat_replies()
            await asyncio.gather(task, return_exceptions=True)

            assert reply.text == STOPPED_NOTE
            assert state.pending_chat_replies == 0

        asyncio.run(scenario())

    def test_deltas_ignored_after_cancel(self):
        async def scenario():
            _, reply, manager, _ = make_manager()
            tokens = []

            async def work(token):
                tokens.append(token)
                await asyncio.sleep(10)

            task = manager.start(reply.id, work)
            await wait_until(lambda: bool(tokens))
            manager.stop_chat_replies()
            manager.append_delta(tokens[0], "ignored")
            manager.set_text(tokens[0], "ignored")
            await asyncio.gather(task, return_exceptions=True)

            assert "ignored" not in reply.text

        asyncio.run(scenario())

    def test_watch_receives_deltas_then_none(self):
        async def scenario():
            _, reply, manager, _ = make_manager()
            gate = asyncio.Event()

            async def work(token):
                await gate.wait()
                manager.append_delta(token, "a")
                manager.append_delta(token, "b")

            task = manager.start(reply.id, work)
            queue = manager.watch(reply.id)
            gate.set()
            await task

            received = []
            while True:
                item = await queue.get()
                if item is None:
                    break
                received.append(item)
            assert received == ["a", "b"]

            finished_queue = manager.watch(reply.id)
            assert await finished_queue.get() is None

        asyncio.run(scenario())

    def test_pending_counter_tracks_concurrent_replies(self):
        async def scenario():
            state = AssistantState()
            first = ChatMessage(role="assistant")
            second = ChatMessage(role="assistant")
            state.messages += [first, second]
            manager = ReplyLifecycleManager(state, RecordingNotifier())
            gate = asyncio.Event()

            async def work(token):
                await gate.wait()

            tasks = [manager.start(first.id, work), manager.start(second.id, work)]
            assert state.pending_chat_replies == 2
            gate.set()
            await asyncio.gather(*tasks)
            assert state.pending_chat_replies == 0

        asyncio.run(scenario())

    def test_finalized_replies_are_released(self):
        """Finished and stopped replies leave no bookkeeping behind and can restart."""
        async def scenario():
            state, reply, manager, _ = make_manager()

            async def work(token):
                manager.append_delta(token, "Done")

            await manager.start(reply.id, work)
            assert manager._tokens == {}
            assert manager.active_reply_ids() == []

            async def slow(token):
                await asyncio.sleep(10)

            task = manager.start(reply.id, slow)
            await asyncio.sleep(0)
            manager.stop_chat_replies()
            await asyncio.gather(task, return_exceptions=True)
            assert manager._tokens == {}
            assert manager._tasks == {}

            await manager.start(reply.id, work)
            assert state.pending_chat_replies == 0

        asyncio.run(scenario())
