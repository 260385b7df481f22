"""Helpers for reading JSON out of free-form model output.

Classification calls (router, memory update, consistency check) are asked for a
single JSON object, but models sometimes wrap it in prose or code fences. These
helpers locate the outermost object and decode it without trusting anything else
in the text.
"""

import json
from typing import Any


def extract_json_object(raw: str) -> str | None:
    """Return the substring from the first `{` to the last `}`.

    Args:
        raw: Model output text.

    Returns:
        Candidate JSON text, or `None` when no braces are present in order.

    Edge cases:
        - Text already starting with `{` and ending with `}` is returned trimmed.
        - Truncated output (no closing brace) returns `None`.
    """
    text = (raw or "").strip()
    if not text:
        return None
    if text.startswith("{") and text.endswith("}"):
        return text
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return text[start:end + 1]


def load_json_object(raw: str) -> dict[str, Any] | None:
    """Decode the outermost JSON object in `raw`, or return `None`."""
    candidate = extract_json_object(raw)
    if candidate is None:
        return None
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None
