"""
Minimal interactive CLI entrypoint for Astra.

Architectural role:
- Provides a terminal-only interface over `astra.core.engine.AssistantEngine`.
- Runs the reminder scheduler in the background of the same event loop.

Interface responsibilities:
- Accept stdin prompts and stream reply deltas to stdout.
- Handle local control commands.
- Print reminder notifications as they fire.

Request lifecycle (per user turn, CLI):
1. Read a single line from stdin (in a worker thread, so the loop keeps running).
2. Handle local control commands (`exit`/`quit`, `/memories`, `/reminders`).
3. Send everything else to `engine.send_message` and stream the reply.

Error handling strategy:
- Ctrl-C while a reply streams stops in-flight replies; Ctrl-C at the prompt and
  EOF end the session without a traceback.
- Reply failures arrive as reply text from the lifecycle manager.

Side effects:
- State is in-process only and is lost on exit.
"""

import asyncio
import logging
import os
import sys

from astra.core.engine import AssistantEngine
from astra.reminders.reminder_actions import basic_reminder_list


class ConsoleNotifier:
    """Prints reminder notifications; reply notifications are already on screen."""

    def notify(self, title: str, body: str) -> None:
        if title.startswith("From Astra"):
            print(f"\n[{title} {body}]", flush=True)


# =========================================================
# UTF-8 SAFE STDOUT
# =========================================================

if hasattr(sys.stdout, "reconfigure"):
    sys.stdout.reconfigure(encoding="utf-8", errors="ignore")


async def stream_reply(engine: AssistantEngine, text: str) -> None:
    """Send one turn and print its deltas until the reply is finalized."""
    reply_id, task = engine.send_message(text)
    queue = engine.lifecycle.watch(reply_id)

    streamed = ""
    try:
        while True:
            delta = await queue.get()
            if delta is None:
                break
            streamed += delta
            print(delta, end="", flush=True)
        await task
    except (KeyboardInterrupt, asyncio.CancelledError):
        engine.stop_chat_replies()
        await asyncio.gather(task, return_exceptions=True)

    reply = engine.state.message(reply_id)
    final = reply.text if reply is not None else streamed
    if final.startswith(streamed):
        print(final[len(streamed):], end="")
    else:
        print("\n" + final, end="")
    if reply is not None and reply.images:
        print(f"\n[{len(reply.images)} image(s) attached]", end="")
    print()


async def run_cli() -> None:
    """
    Run the interactive terminal session.

    Interaction with core:
    - Calls `engine.send_message(text)` for non-command input.
    - Runs `engine.make_scheduler().run()` until the session ends.
    """
    engine = AssistantEngine.from_env(notifier=ConsoleNotifier())
    scheduler_task = asyncio.create_task(engine.make_scheduler().run())

    print("Astra started. (Type 'exit' to quit)\n")
    print("-" * 60)

    try:
        while True:
            try:
                text = (await asyncio.to_thread(input, "You: ")).strip()
            except (EOFError, asyncio.CancelledError):
                print("\nSession ended.")
                break

            if not text:
                continue

            if text.lower() in ("exit", "quit"):
                print("Shutting down.")
                break

            if text.lower() == "/memories":
                memories = engine.state.memory_texts()
                print("\n".join(f"- {m}" for m in memories) if memories else "No memories stored.")
                continue

            if text.lower() == "/reminders":
                active = engine.state.active_reminders()
                print(basic_reminder_list(active, engine.tz) if active else "You don't have any active reminders set.")
                continue

            print("\nAstra: ", end="", flush=True)
            await stream_reply(engine, text)
            print("\n" + "-" * 60 + "\n")
    finally:
        scheduler_task.cancel()
        await asyncio.gather(scheduler_task, return_exceptions=True)


def main():
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "WARNING").upper())
    try:
        asyncio.run(run_cli())
    except KeyboardInterrupt:
        print("\nInterrupted.")


if __name__ == "__main__":
    main()
