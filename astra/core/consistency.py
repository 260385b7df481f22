"""Post-hoc memory consistency review for drafted text replies.

Architectural role:
    Runs after a text reply has streamed and before it is finalized. Asks a
    classification model whether the draft contradicts stored memories and, if
    so, requests one revision from the text model.

Important behavior:
    - Skipped when there are no memories or the draft is empty.
    - Only conflicting memories that match stored memories verbatim (after
      trimming) are trusted; a conflict without such memories is ignored.
    - At most one revision pass; the revision is never re-checked.

Failure handling:
    Check and revision failures are logged and the draft is kept. Cancellation
    propagates.
"""

import logging
from dataclasses import dataclass, field

from astra.core.lifecycle import CancellationToken, ReplyCancelledError
from astra.llm.service import AIServiceProtocol, Messages
from astra.nlp.model_output import load_json_object
from astra.prompting.prompt_builder import (
    MEMORY_CHECK_SYSTEM_PROMPT,
    build_memory_check_payload,
    conflict_memories_block,
    revision_instruction,
)


logger = logging.getLogger(__name__)


@dataclass
class ConsistencyVerdict:
    conflicts: bool = False
    conflicting_memories: list[str] = field(default_factory=list)
    reason: str = ""


def parse_consistency_verdict(raw: str, memories: list[str]) -> ConsistencyVerdict:
    """Decode the check output, keeping only memories that exist in storage.

    Edge cases:
        - Undecodable output -> no conflicts.
        - `conflicts: true` with no verbatim memories -> no conflicts.
    """
    data = load_json_object(raw)
    if data is None:
        return ConsistencyVerdict()

    stored = {memory.strip(): memory for memory in memories}
    cited = data.get("conflicting_memories")
    matched: list[str] = []
    if isinstance(cited, list):
        for item in cited:
            if isinstance(item, str) and item.strip() in stored:
                memory = stored[item.strip()]
                if memory not in matched:
                    matched.append(memory)

    reason = data.get("reason") if isinstance(data.get("reason"), str) else ""
    conflicts = data.get("conflicts") is True and bool(matched)
    return ConsistencyVerdict(
        conflicts=conflicts,
        conflicting_memories=matched if conflicts else [],
        reason=reason.strip(),
    )


class ConsistencyReviewer:
    """One-pass memory contradiction check and revision."""

    def __init__(self, ai: AIServiceProtocol, check_model: str, api_key: str):
        self.ai = ai
        self.check_model = check_model
        self.api_key = api_key

    async def check(self, draft: str, user_text: str, memories: list[str]) -> ConsistencyVerdict:
        messages = [
            {"role": "system", "content": MEMORY_CHECK_SYSTEM_PROMPT},
            {"role": "user", "content": build_memory_check_payload(draft, user_text, memories)},
        ]
        raw = await self.ai.classify(self.check_model, self.api_key, messages)
        return parse_consistency_verdict(raw, memories)

    async def revise_reply_if_needed(
        self,
        draft: str,
        user_text: str,
        memories: list[str],
        text_model: str,
        messages: Messages,
        token: CancellationToken | None = None,
    ) -> str:
        """Return the draft, or its revision when it contradicts memory.

        Args:
            draft: Fully streamed reply text.
            user_text: Current user request.
            memories: Stored memory texts.
            text_model: Model used for the revision call.
            messages: Message list that produced the draft; the revision extends it.
            token: Reply token checked after each call.
        """
        if not memories or not draft.strip():
            return draft

        try:
            verdict = await self.check(draft, user_text, memories)
        except ReplyCancelledError:
            raise
        except Exception:
            logger.exception("Memory consistency check failed; keeping draft")
            return draft

        if token is not None:
            token.raise_if_cancelled()

        if not verdict.conflicts:
            return draft

        logger.info(
            "Draft conflicts with %d memor%s: %s",
            len(verdict.conflicting_memories),
            "y" if len(verdict.conflicting_memories) == 1 else "ies",
            verdict.reason,
        )

        revision_messages = list(messages)
        revision_messages.insert(
            1 if messages and messages[0].get("role") == "system" else 0,
            {"role": "system", "content": conflict_memories_block(verdict.conflicting_memories)},
        )
        revision_messages.append({"role": "assistant", "content": draft})
        revision_messages.append({"role": "user", "content": revision_instruction(draft)})

        try:
            revised = await self.ai.classify(text_model, self.api_key, revision_messages)
        except ReplyCancelledError:
            raise
        except Exception:
            logger.exception("Memory consistency revision failed; keeping draft")
            return draft

        if token is not None:
            token.raise_if_cancelled()

        revised = (revised or "").strip()
        return revised or draft
