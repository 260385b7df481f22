"""Decision router producing `RouterDecision` for core orchestration.

Intent classification logic:
- Sends one classification request: `ROUTER_SYSTEM_PROMPT` plus the payload built
  by `astra.prompting.prompt_builder.build_router_payload`.
- Extracts the JSON object from the raw output (surrounding prose tolerated) and
  decodes it with `RouterDecision.from_dict`, which defaults every field.

Retry behavior:
- Up to `ROUTER_MAX_ATTEMPTS` attempts. An attempt is discarded when the call
  raises or when no JSON object can be decoded from its output.
- The first syntactically valid decision is returned, even when it declares no
  intents.

Interaction with core:
- Returns `RouterDecision` consumed by `astra.core.engine.AssistantEngine`.
- Raises `RouterFailure` after the last attempt; the engine turns it into a
  `Router Failed: <detail>` reply and dispatches no sub-task.

Failure handling:
- Cancellation (`ReplyCancelledError`, `asyncio.CancelledError`) is never retried.
"""

import logging

from astra.core.lifecycle import CancellationToken, ReplyCancelledError
from astra.core.routing_types import RouterDecision
from astra.llm.service import AIServiceProtocol
from astra.nlp.model_output import load_json_object
from astra.prompting.prompt_builder import ROUTER_SYSTEM_PROMPT


logger = logging.getLogger(__name__)

ROUTER_MAX_ATTEMPTS = 3
UNPARSEABLE_PREVIEW_CHARS = 200


class RouterFailure(Exception):
    """No usable decision after all attempts.

    Attributes:
        detail: Last error message, or a preview of the last unparseable output.
    """

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)


def parse_router_decision(raw: str) -> RouterDecision | None:
    """
    Decode raw router output into a decision.

    Edge cases:
    - Prose around the JSON object is ignored.
    - Truncated or malformed JSON -> `None`.
    - A JSON value that is not an object -> `None`.
    """
    data = load_json_object(raw)
    if data is None:
        return None
    return RouterDecision.from_dict(data)


def failure_detail(last_error: str | None, last_output: str | None) -> str:
    if last_error:
        return last_error
    if last_output and last_output.strip():
        return f"Unparseable output: {last_output.strip()[:UNPARSEABLE_PREVIEW_CHARS]}"
    return "Unknown error."


class DecisionRouter:
    """Classification-model router with bounded retries on unusable output."""

    def __init__(
        self,
        ai: AIServiceProtocol,
        model: str,
        api_key: str,
        max_attempts: int = ROUTER_MAX_ATTEMPTS,
    ):
        self.ai = ai
        self.model = model
        self.api_key = api_key
        self.max_attempts = max_attempts

    async def route(self, payload: str, token: CancellationToken | None = None) -> RouterDecision:
        """
        Route one user turn.

        Args:
            payload: Router user message (current turn plus delimited context).
            token: Reply token checked before each attempt.

        Returns:
            First decision decoded from model output.

        Raises:
            RouterFailure: No attempt produced a decodable decision.
            ReplyCancelledError: The reply was cancelled while routing.
        """
        messages = [
            {"role": "system", "content": ROUTER_SYSTEM_PROMPT},
            {"role": "user", "content": payload},
        ]

        last_error: str | None = None
        last_output: str | None = None

        for attempt in range(1, self.max_attempts + 1):
            if token is not None:
                token.raise_if_cancelled()

            try:
                raw = await self.ai.classify(self.model, self.api_key, messages)
            except ReplyCancelledError:
                raise
            except Exception as exc:
                last_error = str(exc) or exc.__class__.__name__
                logger.warning("Router attempt %d/%d failed: %s", attempt, self.max_attempts, last_error)
                continue

            if token is not None:
                token.raise_if_cancelled()

            last_output = raw
            decision = parse_router_decision(raw)
            if decision is not None:
                logger.info(
                    "Routed turn: intents=%s complexity=%s clarification=%s",
                    decision.intents,
                    decision.complexity,
                    decision.needs_clarification,
                )
                return decision

            last_error = None
            logger.warning(
                "Router attempt %d/%d returned output that wasn't valid JSON",
                attempt,
                self.max_attempts,
            )
            logger.debug("Unparseable router output: %r", raw[:UNPARSEABLE_PREVIEW_CHARS])

        detail = failure_detail(last_error, last_output)
        logger.warning("Router failed after %d attempts: %s", self.max_attempts, detail)
        raise RouterFailure(detail)
