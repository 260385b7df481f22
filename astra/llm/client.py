"""Transport client for OpenAI-compatible chat-completion requests.

Architectural role:
    Executes blocking HTTP requests against the configured chat provider and parses
    complete or streamed responses. `astra.llm.service.AIService` runs these calls
    in worker threads.

Model invocation flow:
    `AIService.classify` -> `complete_chat(model, api_key, messages)`.
    `AIService.stream_text` -> `stream_chat(model, api_key, messages, on_delta)`.

Retry behavior:
    No retry loop is implemented here. Each call is attempted once with
    `REQUEST_TIMEOUT_SECONDS`; retries belong to
    `astra.core.lifecycle.retry_model_request`, which classifies the exceptions
    raised below.

Failure handling model:
    - Missing credentials -> `MissingAPIKeyError`.
    - Non-2xx status -> `BadStatusError(status_code, body)`.
    - Well-formed JSON without the expected fields -> `InvalidResponseError`.
    - Network errors propagate as `requests` exceptions; undecodable bodies as
      `requests.JSONDecodeError`.
"""

import json
import logging
from typing import Any, Callable

import requests

from astra.llm.provider_config import (
    PROVIDER,
    PROVIDERS,
    REQUEST_TIMEOUT_SECONDS,
    load_key,
)


logger = logging.getLogger(__name__)

_ERROR_BODY_LIMIT = 300


class ModelRequestError(RuntimeError):
    """Base class for model transport failures."""


class MissingAPIKeyError(ModelRequestError):
    """Raised when the active provider needs a key and none is configured."""


class BadStatusError(ModelRequestError):
    """Raised for non-2xx HTTP responses.

    Attributes:
        status_code: HTTP status of the response.
        body: Response body, truncated for log and user display.
    """

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = (body or "")[:_ERROR_BODY_LIMIT]
        message = f"HTTP {status_code}"
        if self.body:
            message = f"{message}: {self.body}"
        super().__init__(message)


class InvalidResponseError(ModelRequestError):
    """Raised when a response decodes but lacks the expected content."""


def build_headers(api_key: str | None, key_file: str | None) -> dict[str, str]:
    """Build request headers, resolving the key from config when not passed.

    Raises:
        MissingAPIKeyError: When `key_file` is configured but no key resolves.
    """
    headers = {"Content-Type": "application/json"}
    if key_file is None and not api_key:
        return headers
    key = api_key or load_key(key_file)
    if not key:
        raise MissingAPIKeyError(f"{PROVIDER.upper()} API key not configured")
    headers["Authorization"] = f"Bearer {key}"
    return headers


def _provider_url_and_headers(api_key: str | None) -> tuple[str, dict[str, str]]:
    config = PROVIDERS.get(PROVIDER)
    if config is None:
        raise ModelRequestError(f"Invalid provider: {PROVIDER}")
    return config["url"], build_headers(api_key, config["key_file"])


def _content_text(content: Any) -> str:
    """Flatten string or content-part list into plain text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts)
    return ""


def _raise_for_status(response: requests.Response) -> None:
    if 200 <= response.status_code < 300:
        return
    raise BadStatusError(response.status_code, response.text)


def complete_chat(model: str, api_key: str | None, messages: list[dict[str, Any]]) -> str:
    """Send one non-streaming chat completion and return the message text.

    Args:
        model: Provider model name.
        api_key: Explicit key, or `None`/`""` to resolve from config.
        messages: OpenAI-style message list. `content` may be a string or a list
            of content parts.

    Returns:
        Assistant message text, stripped.

    Raises:
        MissingAPIKeyError, BadStatusError, InvalidResponseError,
        requests.RequestException, requests.JSONDecodeError.
    """
    url, headers = _provider_url_and_headers(api_key)
    payload = {
        "model": model,
        "messages": messages,
        "stream": False,
    }

    response = requests.post(
        url,
        headers=headers,
        json=payload,
        timeout=REQUEST_TIMEOUT_SECONDS,
    )
    _raise_for_status(response)
    data = response.json()

    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise InvalidResponseError("Model response had no message content") from exc

    return _content_text(content).strip()


def _delta_from_chunk(data: dict[str, Any]) -> str | None:
    """Extract incremental text from one streamed JSON chunk."""
    if "choices" in data and data["choices"]:
        choice = data["choices"][0]
        if "delta" in choice and "content" in choice["delta"]:
            return _content_text(choice["delta"]["content"])
        if "message" in choice and "content" in choice["message"]:
            return _content_text(choice["message"]["content"])
        if "text" in choice:
            return str(choice["text"])
    elif "message" in data and "content" in data["message"]:
        return _content_text(data["message"]["content"])
    return None


def stream_chat(
    model: str,
    api_key: str | None,
    messages: list[dict[str, Any]],
    on_delta: Callable[[str], None],
    should_stop: Callable[[], bool] | None = None,
) -> str:
    """Stream one chat completion, forwarding each text delta.

    Args:
        model: Provider model name.
        api_key: Explicit key, or `None`/`""` to resolve from config.
        messages: OpenAI-style message list.
        on_delta: Called with each non-empty delta, in order.
        should_stop: Polled before each chunk; returning `True` closes the stream.

    Returns:
        Full concatenated text received before completion or stop.

    Behavior:
        - Parses `data: ` prefixed SSE lines and ends on `[DONE]`.
        - Lines that are not JSON are skipped.

    Raises:
        Same as `complete_chat`.
    """
    url, headers = _provider_url_and_headers(api_key)
    payload = {
        "model": model,
        "messages": messages,
        "stream": True,
    }

    full_text = ""

    with requests.post(
        url,
        headers=headers,
        json=payload,
        stream=True,
        timeout=REQUEST_TIMEOUT_SECONDS,
    ) as response:

        _raise_for_status(response)
        response.encoding = "utf-8"

        for line in response.iter_lines(decode_unicode=True):

            if should_stop is not None and should_stop():
                logger.debug("Stream closed early by caller")
                break

            if not line:
                continue

            if line.startswith("data: "):
                line = line[6:]

            if line.strip() == "[DONE]":
                break

            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                continue

            if not isinstance(data, dict):
                continue

            delta = _delta_from_chunk(data)
            if delta:
                full_text += delta
                on_delta(delta)

    return full_text
