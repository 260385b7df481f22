"""Prompt assembly helpers used by core orchestration.

This module only builds prompt strings and message payloads from already routed
inputs. Model calls, retries, and state mutation happen elsewhere.

Design constraints:
    - Deterministic construction for identical inputs.
    - Fixed ordering of prompt components.
    - No hidden side effects (no I/O, no global state mutation).

Prompt safety model:
    - The current user request is always delimited (`<<<USER_MESSAGE`) so the
      router can tell instructions from context.
    - Memories, workspace entries, and web content are labelled as context only.
    - Internal identifiers are shown to the router but never to worker models as
      user-facing text.
"""

from datetime import datetime
from typing import Any

from astra.core.routing_types import RouterDecision
from astra.core.state import BoardEntry, ChatMessage
from astra.reminders.reminder_types import Reminder


# =========================================================
# SYSTEM IDENTITY (GLOBAL)
# =========================================================
# Base persona for worker text models. Personality text from settings is appended
# after it, never merged into it.

BASE_SYSTEM_PROMPT = (
    "Core identity:\n"
    "- You are Astra, a personal assistant that lives inside the user's workspace.\n"
    "- You are confident, warm, witty, and direct. If unsure, say so cleanly.\n"
    "\n"
    "Voice and tone:\n"
    "- Keep things short and conversational unless the user asks for detailed work.\n"
    "- Do not end with unsolicited questions or 'next steps'.\n"
    "- Avoid overexplaining. Do not narrate your process.\n"
    "\n"
    "Memory and continuity behavior:\n"
    "- Treat the user's life like an ongoing story and connect relevant context briefly.\n"
    "- Only bring up past context when it is relevant.\n"
    "\n"
    "Practical formatting rules:\n"
    "- Prefer normal paragraphs. Use bullets only when they improve clarity.\n"
    "- If you give steps, keep them tight and actionable.\n"
)

MEMORY_USAGE_PROMPT = (
    "Memory usage:\n"
    "- Always check stored memories.\n"
    "- Use them without asking the user to repeat themselves.\n"
    "- If memory is unclear, ask a brief clarification, then update the memory."
)

BOARD_USAGE_PROMPT = (
    "Board context usage:\n"
    "- Use board elements when they are relevant.\n"
    "- If board context is unclear, ask a brief clarification."
)


# =========================================================
# ROUTER
# =========================================================

ROUTER_SYSTEM_PROMPT = """You are a routing model. Output a single JSON object and nothing else.

Input:
- The only current user request is in the USER_MESSAGE block.
- Conversation context, personality instructions, stored memories, and board entries are system context.
- Use the USER_MESSAGE as the primary signal. Use other context only to resolve references/ambiguity.

You MUST output these fields:
- intent: array of one or more of ["text","code","image_generate","image_edit","web_search","log_and_continue","reminder"]
- tasks: object mapping each chosen intent to an array of tasks (strings)
- complexity: "simple" or "complex"
- needs_clarification: boolean
- clarifying_question: string (only if needs_clarification is true)
- tell_user_on_router_fail: boolean (default false)
- "user's name": string (empty if unknown)
- text_instruction: string (a concise, user-facing restatement for worker models; NEVER include internal IDs/UUIDs)
- memory_selection: { selected_memories: [], memory_injection: "" }
- board_selection: { selected_entry_ids: [], board_injection: "" }
- reminder: object (only if the user is asking to create, list, or cancel a reminder)

Intent guidance:
- text: normal conversational answer.
- code: debugging, implementation steps, pasted code, refactors, architecture.
- image_generate: user wants a new image.
- image_edit: user wants to modify an existing image.
- web_search: use when the user asks to look up/search/verify, or when the answer likely depends on current or rapidly-changing facts
  (news, prices, schedules, releases, policy changes, "latest/current/today").
  Do NOT use web_search for pure coding help, creative writing, or summarizing text the user already provided.
- reminder: use when the user asks to create, list, or cancel a reminder.

Tasks allowed (examples):
- text: answer, explain, summarize, compare, remember
- code: debug, create, modify, refactor, explain
- web_search: one or more search queries (strings). Provide 1-3 short queries. Put the BEST query first.
- image_generate: create
- image_edit: modify
- log_and_continue: record_context
- reminder: create, list, cancel

Reminder fields (use ISO8601 for dates and times):
- action: "create" | "list" | "cancel"
- title: short UI title (3-7 words).
- work: the task to perform at trigger time, written as a direct instruction. It must NOT include the scheduling phrasing.
- schedule: { type: "once" | "hourly" | "daily" | "weekly" | "monthly" | "yearly", at: "YYYY-MM-DDTHH:MM:SS+HH:MM", weekdays: ["Mon", "Tue"], interval: N }
  - at: ISO8601 for the first occurrence (required). Always include the explicit offset of the provided user time zone.
  - weekdays: only for "weekly". 3-letter abbreviations.
  - interval: integer; default 1
- targetId: string (id of the reminder to cancel, if known)

Example:
User: "Remind me to call mom tomorrow at 3 PM"
{"intent": ["reminder"], "tasks": {"reminder": ["create"]}, "complexity": "simple", "needs_clarification": false,
 "reminder": {"action": "create", "title": "Call mom", "work": "Call mom",
              "schedule": {"type": "once", "at": "2026-01-11T15:00:00-06:00"}}}

Memory selection:
- Select only relevant stored memories, verbatim, into selected_memories.
- If any are selected, memory_injection must be a single formatted string:
  Memories (context only; not user message):
  - memory 1
- If none are selected, selected_memories must be [] and memory_injection must be "".

Board selection:
- Prefer entries marked selected when deciding relevance.
- selected_entry_ids MUST contain the full id string exactly as shown.
- board_injection must be a single formatted string:
  Board context (context only; not user message):
  - [text] ...

Critical privacy/output rule:
- Never include internal IDs in any user-facing strings (text_instruction, clarifying_question).

Do not include tasks for intents that are not present.

Return valid JSON only.
"""

CONTEXT_MAX_MESSAGES = 10
CONTEXT_MAX_MESSAGE_CHARS = 360
CONTEXT_MAX_TOTAL_CHARS = 2400


def collapse_whitespace(text: str) -> str:
    return " ".join((text or "").split())


def format_utc_offset(moment: datetime) -> str:
    """Return `UTC+hh:mm` / `UTC-hh:mm` for an aware datetime."""
    offset = moment.utcoffset()
    if offset is None:
        return "UTC+00:00"
    total_minutes = int(offset.total_seconds() // 60)
    sign = "+" if total_minutes >= 0 else "-"
    hours, minutes = divmod(abs(total_minutes), 60)
    return f"UTC{sign}{hours:02d}:{minutes:02d}"


def _attachment_tag(count: int, singular: str, plural: str) -> str:
    if count == 1:
        return f" [{singular}]"
    if count > 1:
        return f" [{plural}: {count}]"
    return ""


def summarize_history(history: list[ChatMessage]) -> str:
    """Build the router CONTEXT block from prior messages.

    Important behavior:
        - Uses at most `CONTEXT_MAX_MESSAGES` most recent messages.
        - Each message is whitespace-collapsed and cut at
          `CONTEXT_MAX_MESSAGE_CHARS` with a trailing `...`.
        - Lines are collected newest-first until `CONTEXT_MAX_TOTAL_CHARS` would
          be exceeded, then returned oldest-first.
    """
    lines: list[str] = []
    total = 0

    for message in reversed(history[-CONTEXT_MAX_MESSAGES:]):
        role = "User" if message.role == "user" else "Assistant"
        text = collapse_whitespace(message.text)
        if len(text) > CONTEXT_MAX_MESSAGE_CHARS:
            text = text[:CONTEXT_MAX_MESSAGE_CHARS] + "..."
        tags = _attachment_tag(len(message.images), "image", "images")
        tags += _attachment_tag(len(message.files), "file", "files")
        line = f"{role}:{tags} {text}".rstrip()
        if total + len(line) > CONTEXT_MAX_TOTAL_CHARS:
            break
        lines.append(line)
        total += len(line) + 1

    lines.reverse()
    return "\n".join(lines)


def format_board_entries(entries: list[BoardEntry]) -> str:
    """List workspace entries for the router, selected entries first."""
    ordered = [e for e in entries if e.selected] + [e for e in entries if not e.selected]
    lines: list[str] = []
    for entry in ordered:
        selected = " selected" if entry.selected else ""
        if entry.kind == "image":
            lines.append(f"- [image]{selected} id: {entry.id}")
        elif entry.kind == "file":
            content = collapse_whitespace(entry.file_text)[:CONTEXT_MAX_MESSAGE_CHARS]
            line = f"- [file]{selected} id: {entry.id} name: {entry.file_name}"
            if content:
                line += f" content: {content}"
            lines.append(line)
        else:
            text = collapse_whitespace(entry.text)[:CONTEXT_MAX_MESSAGE_CHARS]
            lines.append(f"- [text]{selected} id: {entry.id} text: {text}")
    return "\n".join(lines)


def build_router_payload(
    text: str,
    image_count: int,
    file_names: list[str],
    user_name: str,
    now: datetime,
    time_zone_name: str,
    history: list[ChatMessage],
    personality: str,
    memories: list[str],
    board_entries: list[BoardEntry],
) -> str:
    """Build the router user message.

    Args:
        text: Current user request (already merged with any clarification).
        image_count: Number of images attached to the turn.
        file_names: Names of files attached to the turn.
        user_name: Known display name, may be empty.
        now: Current local time (aware).
        time_zone_name: Display name of the user time zone.
        history: Messages before the current turn.
        personality: Personality text from settings.
        memories: Stored memory texts.
        board_entries: Workspace entries visible to the assistant.

    Returns:
        Payload text with the user request delimited from all context blocks.
    """
    trimmed = (text or "").strip()
    lines = [
        "User message (current request only):",
        "<<<USER_MESSAGE",
        trimmed if trimmed else "(no text)",
        "USER_MESSAGE>>>",
        "",
        f"Has image attachment: {'true' if image_count > 0 else 'false'}",
        f"Image attachment count: {image_count}",
        f"Has file attachment: {'true' if file_names else 'false'}",
        f"File attachment count: {len(file_names)}",
    ]
    if file_names:
        lines.append(f"Attached files: {', '.join(file_names)}")
    lines.append(f"User's name: {user_name.strip() or '(unknown)'}")
    lines.append(f"User time zone: {time_zone_name} ({format_utc_offset(now)})")
    lines.append(f"Current local time (ISO8601): {now.isoformat(timespec='seconds')}")

    context = summarize_history(history)
    if context:
        lines += ["", "CONTEXT (system context only; NOT user content):", context]

    if personality.strip():
        lines += ["", "PERSONALITY (system context only; NOT user content):", personality.strip()]

    lines += ["", "Stored memories (system context only; NOT user content):"]
    lines += [f"- {memory}" for memory in memories] if memories else ["(none)"]

    lines += ["", "Board entries (system context only; NOT user content):"]
    board = format_board_entries(board_entries)
    if board:
        lines += ["<<<BOARD", board, "BOARD>>>"]
    else:
        lines.append("(none)")

    return "\n".join(lines)


# =========================================================
# MEMORY UPDATE
# =========================================================

def memory_update_prompt(user_name: str) -> str:
    """Return the system prompt for the memory-update classification call."""
    subject = user_name.strip() or "the user"
    return (
        "Update stored memories using the user's new message.\n\n"
        "Return a JSON object with:\n"
        "- add: [string]\n"
        "- update: [{ \"old\": string, \"new\": string }]\n"
        "- delete: [string]\n\n"
        "Non-negotiable rules:\n"
        "- Only use the USER'S MESSAGE as the source of truth for new/changed memories. "
        "Do not store personality/system instructions.\n"
        "- Use exact strings from Stored memories for \"old\" and for \"delete\".\n\n"
        "Core goal:\n"
        "- Detect when the user's message is about an existing memory even if phrased "
        "differently, and UPDATE that memory instead of adding a duplicate.\n\n"
        "If user-attached images are provided:\n"
        "- Describe only what is visible and what the user described. Keep it to 1-2 sentences.\n\n"
        "Action selection:\n"
        "- Prefer UPDATE over ADD when the new info overlaps an existing memory topic.\n"
        "- Use DELETE when the memory is no longer true.\n"
        "- Use ADD only when the fact is clearly new.\n"
        "- If the user restates a memory with no new information, do nothing.\n\n"
        "Memory writing rules:\n"
        "- Each memory string is 1-4 sentences in plain language.\n"
        f"- Use \"{subject}\" as the subject when possible.\n"
        "- Preserve time qualifiers if stated.\n\n"
        "If nothing should change, return {\"add\":[],\"update\":[],\"delete\":[]}."
    )


def build_memory_update_payload(text: str, memories: list[str]) -> str:
    lines = ["User message:", "<<<USER_MESSAGE", text.strip() or "(no text)", "USER_MESSAGE>>>", ""]
    lines.append("Stored memories:")
    lines += [f"- {memory}" for memory in memories] if memories else ["(none)"]
    return "\n".join(lines)


def format_memory_injection(memories: list[str]) -> str:
    if not memories:
        return ""
    return "Memories (context only; not user message):\n" + "\n".join(f"- {m}" for m in memories)


def memory_status_line(message: str) -> str:
    return f"Memory status: {message} Acknowledge this in one short sentence."


# =========================================================
# WORKER (TEXT / CODE)
# =========================================================

def worker_instruction(decision: RouterDecision) -> str:
    """Build task guidance for the text model from the routing decision."""
    lines: list[str] = []
    text_tasks = [t for t in decision.tasks_for("text") if t.lower() != "remember"]
    code_tasks = decision.tasks_for("code")

    if text_tasks:
        lines.append(f"Text tasks: {', '.join(text_tasks)}")
    if code_tasks:
        lines.append(f"Code tasks: {', '.join(code_tasks)}")
    if not lines:
        lines.append("Tasks: respond to the user's request.")
    if decision.has("code"):
        lines.append("If code is requested, include code blocks and only the necessary code.")

    lines.append("Do not narrate actions or include process labels.")
    lines.append("Never mention internal IDs/UUIDs, board ids, or context markers.")
    lines.append(
        "Avoid meta headers like: 'Generated image...', 'Edited image...', "
        "'Original request:', 'Clarification question:', 'User clarification:'."
    )

    if decision.has("image_generate") or decision.has("image_edit"):
        lines.append(
            "If an image is included and the user did not explicitly ask for a description, "
            "keep the text to one short user-facing line (e.g., 'Here you go.')."
        )

    if decision.has("web_search"):
        lines.append("Web search was performed by the app. If web search results appear above, use them.")
        lines.append(
            "Do NOT say you can't browse the web. If results are empty, say that plainly "
            "and answer from general knowledge."
        )

    lines.append("Return only the final deliverable.")
    return "\n".join(lines)


def image_part(data_url: str) -> dict[str, Any]:
    return {"type": "image_url", "image_url": {"url": data_url}}


def text_part(text: str) -> dict[str, Any]:
    return {"type": "text", "text": text}


# =========================================================
# WEB SEARCH
# =========================================================

def format_web_sources(query: str, items: list[dict[str, str]], pages: list[dict[str, str]]) -> str:
    """Format search items and page excerpts as a context-only system block."""
    lines = ["Web search (context only; not user message):", f'Query: "{query}"']

    if items:
        lines.append("Top results:")
        for index, item in enumerate(items, start=1):
            title = item.get("title") or item.get("url", "")
            lines.append(f"[{index}] {title} - {item.get('url', '')}")
            snippet = collapse_whitespace(item.get("snippet", ""))
            if snippet:
                lines.append(f"Snippet: {snippet}")
    else:
        lines.append("No results.")

    if pages:
        lines.append("")
        lines.append("Fetched page excerpts (use these to answer; cite by [#] where possible):")
        urls = [item.get("url", "") for item in items]
        for page in pages:
            number = urls.index(page["url"]) + 1 if page["url"] in urls else "?"
            lines.append(f"[{number}] {page.get('title') or page['url']}")
            lines.append(page.get("text", ""))

    return "\n".join(lines)


def format_search_results(query: str, items: list[dict[str, str]]) -> str:
    """Format a manual `/search` reply."""
    if not items:
        return f'No web results for "{query}".'
    lines = ["Web search results:", f'Query: "{query}"', ""]
    for index, item in enumerate(items, start=1):
        title = item.get("title") or item.get("url", "")
        lines.append(f"{index}. [{title}]({item.get('url', '')})")
        snippet = collapse_whitespace(item.get("snippet", ""))
        if snippet:
            lines.append(f"   {snippet}")
    return "\n".join(lines)


# =========================================================
# CONSISTENCY CHECK
# =========================================================

MEMORY_CHECK_SYSTEM_PROMPT = (
    "You are a routing model that checks assistant responses against stored memories. "
    "Output a single JSON object and nothing else.\n\n"
    "Return JSON with:\n"
    "- conflicts: boolean\n"
    "- conflicting_memories: []   (use only entries verbatim from Stored memories)\n"
    "- reason: string             (short; empty if no conflicts)\n\n"
    "Rules:\n"
    "- A conflict is a user fact stated or implied by the response that directly "
    "contradicts a stored memory.\n"
    "- It is NOT a conflict to omit a memory, ask a question, or speak hypothetically.\n"
    "- conflicting_memories must be exact strings copied verbatim from Stored memories.\n\n"
    "Return valid JSON only."
)


def build_memory_check_payload(draft: str, user_text: str, memories: list[str]) -> str:
    lines = [
        "Assistant response:",
        "<<<ASSISTANT_RESPONSE",
        draft.strip(),
        "ASSISTANT_RESPONSE>>>",
        "",
        "User message:",
        user_text.strip() or "(no text)",
        "",
        "Stored memories:",
    ]
    lines += [f"- {memory}" for memory in memories]
    return "\n".join(lines)


def conflict_memories_block(memories: list[str]) -> str:
    return "Memories that must be respected (conflict check):\n" + "\n".join(f"- {m}" for m in memories)


def revision_instruction(draft: str) -> str:
    return (
        "The previous assistant response conflicts with stored memories. Revise it to be "
        "consistent with memory while still answering the user's request. Preserve the "
        "original style and formatting, changing only what is needed for consistency.\n\n"
        "<<<DRAFT\n"
        f"{draft.strip()}\n"
        "DRAFT>>>\n\n"
        "Return only the revised response, with no preamble."
    )


# =========================================================
# REMINDERS
# =========================================================

REMINDER_LIST_SYSTEM_PROMPT = (
    "You are Astra. The user is asking about their reminders.\n\n"
    "Use ONLY the reminders provided. Do not invent reminders.\n\n"
    "Goal:\n"
    "- If the user asks a question like \"tomorrow\", \"today\", \"next week\", answer that "
    "question directly and include only relevant reminders.\n"
    "- If the user asks \"do I have any\", answer yes/no first, then show matching reminders.\n"
    "- If the user asks to \"list/show\" reminders, list them all.\n"
    "Be concise. Use bullets when listing reminders."
)


def reminder_fire_prompt(work: str) -> str:
    """Return the prompt executed when a reminder triggers."""
    return (
        "You are Astra. A reminder just triggered.\n\n"
        "You must EXECUTE the user's instruction and output ONLY the final deliverable.\n\n"
        "Rules:\n"
        "- No heading/title line.\n"
        "- No preamble like \"Here are...\".\n"
        "- If the instruction asks for a list, produce the list immediately.\n"
        "- Default to 12 items unless the instruction specifies a number.\n"
        "- Format as a bullet list.\n"
        "- If helpful, add a short one-line reason after each item.\n\n"
        "User instruction:\n"
        f"{work}"
    )


def format_due(moment: datetime) -> str:
    """Return a user-facing date like `Jan 11, 2026 at 3:00 PM`."""
    clock = moment.strftime("%I:%M %p").lstrip("0")
    return f"{moment.strftime('%b')} {moment.day}, {moment.year} at {clock}"


def build_reminder_list_payload(
    query: str,
    reminders: list[Reminder],
    now: datetime,
    time_zone_name: str,
) -> str:
    lines = []
    for reminder in reminders:
        due = reminder.due_at.astimezone(now.tzinfo).isoformat(timespec="seconds")
        recurrence = reminder.recurrence.describe() if reminder.recurrence else "one-time"
        lines.append(
            f'- id={reminder.id} | "{reminder.title}" | due={due} | {recurrence} | status={reminder.status}'
        )
    return (
        f"User time zone: {time_zone_name} ({format_utc_offset(now)})\n"
        f"Current local time: {now.isoformat(timespec='seconds')}\n\n"
        f"User query:\n{query}\n\n"
        "Reminders:\n" + "\n".join(lines)
    )



# =========================================================
# CLARIFICATION / IMAGE PROMPTS
# =========================================================

def _count_phrase(count: int, singular: str, plural: str) -> str:
    return singular if count == 1 else f"{count} {plural}"


def clarification_merged_text(original: str, clarification: str, image_count: int = 0, file_count: int = 0) -> str:
    """Merge a parked request with the user's clarification turn.

    Examples:
        - `("Draw a cat", "orange")` -> `"Draw a cat\\n\\nClarification: orange"`
        - attachments only -> `"...\\n\\nClarification: provided an image and 2 files."`
    """
    merged = (original or "").strip()
    clarification = (clarification or "").strip()

    addition = ""
    if clarification:
        addition = f"Clarification: {clarification}"
    elif image_count > 0 or file_count > 0:
        parts = []
        if image_count > 0:
            parts.append(_count_phrase(image_count, "an image", "images"))
        if file_count > 0:
            parts.append(_count_phrase(file_count, "a file", "files"))
        addition = f"Clarification: provided {' and '.join(parts)}."

    if addition:
        merged = f"{merged}\n\n{addition}" if merged else addition
    return merged


def image_prompt_with_style(prompt: str, personality: str) -> str:
    prompt = (prompt or "").strip()
    if not prompt:
        return ""
    personality = (personality or "").strip()
    if not personality:
        return prompt
    return f"{prompt}\n\nStyle guidance: {personality}"


def file_content_description(name: str, text: str) -> str:
    content = (text or "").strip()
    if not content:
        return f"File: {name} (no readable text)"
    return f"File: {name}\n{content}"
