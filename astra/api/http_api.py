"""
HTTP API adapter for the Astra assistant engine.

Architectural role:
- Expose an OpenAI-compatible chat endpoint plus reply, memory, and reminder
  endpoints for the surrounding workspace.
- Delegate all orchestration to `astra.core.engine.AssistantEngine`.
- Run the reminder scheduler for the lifetime of the app.

Endpoint responsibilities:
- `POST /v1/chat/completions`: send the latest user turn, return the finalized
  reply (JSON) or stream reply deltas (SSE).
- `POST /v1/replies/stop`: cancel every in-flight reply.
- `POST /v1/replies/{reply_id}/retry`: re-run a finished reply.
- `POST /v1/messages/{message_id}/resend`: edit a user message and reply again.
- `GET /v1/replies/{reply_id}`: reply text, status, image count.
- `GET /v1/memories`, `GET /v1/reminders`, `DELETE /v1/reminders/{reminder_id}`.
- `GET /v1/status`: pending replies, attention flag, warning, reminder panel.

API request lifecycle (`POST /v1/chat/completions`):
1. Parse request JSON (`messages`, optional `model`, optional `stream`).
2. Extract the latest user message; `image_url` parts with data URLs become
   image attachments.
3. `engine.send_message` starts the reply task.
4. Non-stream: await the task and return the final text. Stream: forward
   deltas from `lifecycle.watch` as `chat.completion.chunk` frames.

Error handling strategy:
- Missing `messages` or no user message -> HTTP 400.
- Retry/resend while a reply is pending -> HTTP 409.
- Unknown reply/message/reminder ids -> HTTP 404.
- Reply failures are reported in the reply text, not as HTTP errors.

Side effects:
- Loads environment variables at import time via `load_dotenv()`.
- Mutates the engine's in-process `AssistantState`.
"""

from dotenv import load_dotenv

load_dotenv()

import asyncio
import base64
import binascii
import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from astra.core.engine import AssistantEngine, data_url
from astra.core.lifecycle import ReplyInProgressError
from astra.core.state import ChatMessage
from astra.reminders.reminder_types import Reminder


logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

MODEL_NAME = "astra"


# ============================================================
# Request Schema
# ============================================================

class ResendRequest(BaseModel):
    text: str


# ============================================================
# Content Helpers
# ============================================================

def decode_data_url(url: str) -> bytes | None:
    """Decode a `data:<mime>;base64,<payload>` URL. Other URLs return `None`."""
    if not url.startswith("data:") or ";base64," not in url:
        return None
    try:
        return base64.b64decode(url.split(";base64,", 1)[1])
    except (binascii.Error, ValueError):
        logger.warning("Ignoring undecodable image data URL")
        return None


def split_content(content: Any) -> tuple[str, list[bytes]]:
    """
    Split OpenAI-style message content into text and image attachments.

    - String content is returned as text.
    - List content joins `text` parts with newlines and decodes `image_url`
      data URLs. Remote image URLs are ignored.
    """
    if isinstance(content, str):
        return content, []
    texts: list[str] = []
    images: list[bytes] = []
    if isinstance(content, list):
        for part in content:
            if not isinstance(part, dict):
                continue
            if part.get("type") == "text" and isinstance(part.get("text"), str):
                texts.append(part["text"])
            elif part.get("type") == "image_url":
                image_url = part.get("image_url")
                url = image_url.get("url") if isinstance(image_url, dict) else image_url
                data = decode_data_url(url) if isinstance(url, str) else None
                if data:
                    images.append(data)
    return "\n".join(texts), images


def reply_content(message: ChatMessage) -> str:
    """Reply text with produced images appended as markdown data URLs."""
    parts = [message.text] if message.text else []
    parts += [f"![image]({data_url(image)})" for image in message.images]
    return "\n\n".join(parts)


def serialize_reminder(reminder: Reminder) -> dict[str, Any]:
    return {
        "id": reminder.id,
        "title": reminder.title,
        "work": reminder.work,
        "due_at": reminder.due_at.isoformat(),
        "status": reminder.status,
        "recurrence": reminder.recurrence.describe() if reminder.recurrence else None,
        "prepared_message": reminder.prepared_message,
    }


def completion_chunk(completion_id: str, created: int, delta: dict[str, Any], finish_reason: str | None) -> str:
    data = {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": MODEL_NAME,
        "choices": [
            {
                "index": 0,
                "delta": delta,
                "finish_reason": finish_reason,
            }
        ],
    }
    return f"data: {json.dumps(data)}\n\n"


# ============================================================
# App Factory
# ============================================================

def create_app(engine: AssistantEngine | None = None, run_scheduler: bool = True) -> FastAPI:
    """
    Build the FastAPI app around one engine.

    Args:
        engine: Engine to serve; built from environment settings when omitted.
        run_scheduler: Whether the reminder scheduler runs during the lifespan.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler_task = None
        if run_scheduler:
            scheduler_task = asyncio.create_task(app.state.engine.make_scheduler().run())
        try:
            yield
        finally:
            if scheduler_task is not None:
                scheduler_task.cancel()
                try:
                    await scheduler_task
                except asyncio.CancelledError:
                    logger.info("Reminder scheduler task cancelled")

    app = FastAPI(lifespan=lifespan)
    app.state.engine = engine or AssistantEngine.from_env()

    def current_engine() -> AssistantEngine:
        return app.state.engine

    # ============================================================
    # OpenAI-Compatible Chat Completions
    # ============================================================

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request):
        """
        OpenAI-compatible chat completions endpoint.

        Only the latest user message is forwarded; conversation history lives in
        the engine state.
        """
        body = await request.json()
        messages = body.get("messages", [])
        stream = bool(body.get("stream", False))

        if not messages:
            return JSONResponse(status_code=400, content={"error": "No messages provided"})

        user_message = next((m for m in reversed(messages) if m.get("role") == "user"), None)
        if user_message is None:
            return JSONResponse(status_code=400, content={"error": "No user message provided"})

        text, images = split_content(user_message.get("content", ""))
        engine = current_engine()
        reply_id, task = engine.send_message(text, images=images)

        completion_id = f"chatcmpl-{uuid.uuid4().hex}"
        created = int(time.time())

        if not stream:
            await task
            reply = engine.state.message(reply_id)
            return {
                "id": completion_id,
                "object": "chat.completion",
                "created": created,
                "model": MODEL_NAME,
                "reply_id": reply_id,
                "choices": [
                    {
                        "index": 0,
                        "message": {"role": "assistant", "content": reply_content(reply) if reply else ""},
                        "finish_reason": "stop",
                    }
                ],
            }

        queue = engine.lifecycle.watch(reply_id)

        async def event_generator():
            """
            Yield SSE frames matching OpenAI chunk semantics.

            Deltas are forwarded as they stream. After finalization, any text the
            finalizer appended (stop note, failure note, image placeholder) is
            sent as one last content chunk.
            """
            streamed = ""
            try:
                while True:
                    delta = await queue.get()
                    if delta is None:
                        break
                    streamed += delta
                    yield completion_chunk(completion_id, created, {"content": delta}, None)

                await task
                reply = engine.state.message(reply_id)
                final = reply_content(reply) if reply else streamed
                if final.startswith(streamed) and len(final) > len(streamed):
                    yield completion_chunk(completion_id, created, {"content": final[len(streamed):]}, None)

                yield completion_chunk(completion_id, created, {}, "stop")
                yield "data: [DONE]\n\n"
            except (asyncio.CancelledError, BrokenPipeError, ConnectionResetError):
                logger.info("Stream for reply %s closed by client", reply_id)
                raise

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={"X-Reply-Id": reply_id},
        )

    # ============================================================
    # Replies
    # ============================================================

    @app.post("/v1/replies/stop")
    async def stop_replies():
        return {"stopped": current_engine().stop_chat_replies()}

    @app.post("/v1/replies/{reply_id}/retry")
    async def retry_reply(reply_id: str):
        try:
            current_engine().retry_reply(reply_id)
        except ReplyInProgressError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Unknown reply") from exc
        return {"reply_id": reply_id, "status": "streaming"}

    @app.post("/v1/messages/{message_id}/resend")
    async def resend_message(message_id: str, payload: ResendRequest):
        try:
            reply_id, _ = current_engine().resend_edited(message_id, payload.text)
        except ReplyInProgressError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Unknown message") from exc
        return {"reply_id": reply_id, "status": "streaming"}

    @app.get("/v1/replies/{reply_id}")
    async def get_reply(reply_id: str):
        reply = current_engine().state.message(reply_id)
        if reply is None or reply.role != "assistant":
            raise HTTPException(status_code=404, detail="Unknown reply")
        return {
            "id": reply.id,
            "status": reply.status,
            "text": reply.text,
            "image_count": len(reply.images),
        }

    # ============================================================
    # Memories / Reminders / Status
    # ============================================================

    @app.get("/v1/memories")
    async def list_memories():
        return {
            "object": "list",
            "data": [
                {"id": m.id, "text": m.text, "has_image": m.image is not None}
                for m in current_engine().state.memories
            ],
        }

    @app.get("/v1/reminders")
    async def list_reminders():
        state = current_engine().state
        return {
            "object": "list",
            "data": [serialize_reminder(r) for r in state.reminders],
        }

    @app.delete("/v1/reminders/{reminder_id}")
    async def delete_reminder(reminder_id: str):
        state = current_engine().state
        removed = state.remove_reminder(reminder_id)
        if removed is None:
            raise HTTPException(status_code=404, detail="Unknown reminder")
        if state.active_reminder_panel_id == reminder_id:
            state.active_reminder_panel_id = None
        return {"deleted": reminder_id}

    @app.get("/v1/status")
    async def status():
        state = current_engine().state
        return {
            "pending_chat_replies": state.pending_chat_replies,
            "chat_needs_attention": state.chat_needs_attention,
            "chat_warning": state.chat_warning,
            "active_reminder_panel_id": state.active_reminder_panel_id,
            "awaiting_clarification": state.pending_clarification is not None,
        }

    return app


app = create_app()
