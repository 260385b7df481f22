"""HTTP client for OpenAI-style image generation and editing endpoints.

Processing flow:
    1. Resolve active provider config from `astra.llm.provider_config`.
    2. Resolve the API key (explicit argument, else configured key file).
    3. Submit a JSON body (generate) or multipart form (edit).
    4. Decode the first returned image from `b64_json`, or download its `url`.

Error handling strategy:
    - Unknown provider -> `ModelRequestError`.
    - Missing key -> `MissingAPIKeyError`.
    - Non-2xx response -> `BadStatusError`.
    - Response without image data -> `InvalidResponseError`.
    Network failures propagate as `requests` exceptions so the retry wrapper can
    classify them.

Determinism:
    - Request assembly is deterministic for fixed inputs/configuration.
    - Returned images are provider dependent.
"""

import base64
import binascii
import logging
from typing import Any

import requests

from astra.llm.client import (
    BadStatusError,
    InvalidResponseError,
    ModelRequestError,
    build_headers,
)
from astra.llm.provider_config import (
    IMAGE_PROVIDER,
    IMAGE_PROVIDERS,
    IMAGE_SIZE,
    REQUEST_TIMEOUT_SECONDS,
)


logger = logging.getLogger(__name__)


def _provider_config() -> dict[str, Any]:
    config = IMAGE_PROVIDERS.get(IMAGE_PROVIDER)
    if not config:
        raise ModelRequestError(f"Unknown image provider: {IMAGE_PROVIDER}")
    return config


def _first_image(data: dict[str, Any]) -> tuple[bytes, str | None]:
    """Return `(image_bytes, revised_prompt)` from an images API response."""
    items = data.get("data") if isinstance(data, dict) else None
    if not items or not isinstance(items[0], dict):
        raise InvalidResponseError("Image response contained no images")

    item = items[0]
    revised_prompt = item.get("revised_prompt")

    if item.get("b64_json"):
        try:
            return base64.b64decode(item["b64_json"]), revised_prompt
        except (binascii.Error, ValueError) as exc:
            raise InvalidResponseError("Image response was not valid base64") from exc

    if item.get("url"):
        response = requests.get(item["url"], timeout=REQUEST_TIMEOUT_SECONDS)
        if response.status_code != 200:
            raise BadStatusError(response.status_code, response.text)
        return response.content, revised_prompt

    raise InvalidResponseError("Image response had neither b64_json nor url")


def send_image_generation(model: str, api_key: str | None, prompt: str) -> tuple[bytes, str | None]:
    """Request one generated image.

    Args:
        model: Image model name.
        api_key: Explicit key, or `None`/`""` to resolve from config.
        prompt: Final (style-augmented) prompt.

    Returns:
        Tuple `(image_bytes, revised_prompt)`.
    """
    config = _provider_config()
    headers = build_headers(api_key, config.get("key_file"))
    payload = {
        "model": model,
        "prompt": prompt,
        "size": IMAGE_SIZE,
        "n": 1,
    }

    response = requests.post(
        config["generate_url"],
        json=payload,
        headers=headers,
        timeout=REQUEST_TIMEOUT_SECONDS,
    )

    if response.status_code != 200:
        raise BadStatusError(response.status_code, response.text)

    return _first_image(response.json())


def send_image_edit(
    model: str,
    api_key: str | None,
    prompt: str,
    image_bytes: bytes,
    filename: str,
    mime_type: str,
) -> tuple[bytes, str | None]:
    """Request one edited image from a source image and prompt.

    Args:
        model: Image model name.
        api_key: Explicit key, or `None`/`""` to resolve from config.
        prompt: Final (style-augmented) edit instruction.
        image_bytes: Source image.
        filename: Upload filename, extension matching `mime_type`.
        mime_type: Source image MIME type.

    Returns:
        Tuple `(image_bytes, revised_prompt)`.
    """
    config = _provider_config()
    headers = build_headers(api_key, config.get("key_file"))
    # Multipart body sets its own content type.
    headers.pop("Content-Type", None)

    response = requests.post(
        config["edit_url"],
        data={"model": model, "prompt": prompt, "size": IMAGE_SIZE, "n": "1"},
        files={"image": (filename, image_bytes, mime_type)},
        headers=headers,
        timeout=REQUEST_TIMEOUT_SECONDS,
    )

    if response.status_code != 200:
        raise BadStatusError(response.status_code, response.text)

    return _first_image(response.json())
