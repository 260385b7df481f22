"""Environment-driven settings for the model layer and the assistant runtime.

Everything here is resolved once at import time (after `.env` is loaded);
only `load_key` touches the filesystem later.

Model roles:
    ROUTER_MODEL        decision router, memory consistency check
    SIMPLE_TEXT_MODEL   simple replies, reminder work, reminder summaries
    COMPLEX_TEXT_MODEL  replies routed as `complex`
    IMAGE_MODEL         image generation and editing

Keys:
    A provider's key is looked up as `<NAME>_API_KEY` first, then in
    `config/<name>.key`. Local providers need no key. A missing key is not an
    error here; the transport clients raise `MissingAPIKeyError` when they
    actually need one.
"""

import logging
import os
from datetime import datetime, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

KEY_DIR = os.getenv("ASTRA_KEY_DIR", "config")


def _key_file(name: str) -> str:
    return os.path.join(KEY_DIR, f"{name}.key")


# =========================================================
# CHAT MODELS
# =========================================================

PROVIDER = os.getenv("PROVIDER", "openai")
ROUTER_MODEL = os.getenv("ROUTER_MODEL", "gpt-4.1-mini")
SIMPLE_TEXT_MODEL = os.getenv("SIMPLE_TEXT_MODEL", "gpt-4.1-mini")
COMPLEX_TEXT_MODEL = os.getenv("COMPLEX_TEXT_MODEL", "gpt-4.1")

REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "120"))
MODEL_MAX_RETRIES = int(os.getenv("MODEL_MAX_RETRIES", "2"))

# OpenAI-compatible chat endpoints by provider name.
_CHAT_ENDPOINTS = {
    "local": os.getenv("LOCAL_CHAT_URL", "http://127.0.0.1:8080/v1/chat/completions"),
    "openai": "https://api.openai.com/v1/chat/completions",
    "groq": "https://api.groq.com/openai/v1/chat/completions",
    "together": "https://api.together.xyz/v1/chat/completions",
    "openrouter": "https://openrouter.ai/api/v1/chat/completions",
    "mistral": "https://api.mistral.ai/v1/chat/completions",
    "deepinfra": "https://api.deepinfra.com/v1/openai/chat/completions",
    "fireworks": "https://api.fireworks.ai/inference/v1/chat/completions",
}

PROVIDERS = {
    name: {"url": url, "key_file": None if name == "local" else _key_file(name)}
    for name, url in _CHAT_ENDPOINTS.items()
}


def load_key(path):
    """Resolve an API key for a configured key file.

    `config/openai.key` is checked as `OPENAI_API_KEY` in the environment
    before the file itself is read.

    Returns:
        The key, or `None` for a `None` path or when neither source has it.
    """
    if not path:
        return None
    stem = os.path.splitext(os.path.basename(path))[0]
    from_env = os.getenv(f"{stem.upper()}_API_KEY")
    if from_env:
        return from_env
    try:
        with open(path, "r") as handle:
            return handle.read().strip() or None
    except FileNotFoundError:
        return None


def get_api_key() -> str:
    """Key for the active chat provider; `""` when unset."""
    entry = PROVIDERS.get(PROVIDER)
    if entry is None:
        return ""
    return load_key(entry["key_file"]) or ""


# =========================================================
# IMAGE MODELS
# =========================================================

IMAGE_PROVIDER = os.getenv("IMAGE_PROVIDER", "openai")
IMAGE_MODEL = os.getenv("IMAGE_MODEL", "gpt-image-1")
IMAGE_SIZE = os.getenv("IMAGE_SIZE", "1024x1024")

# Base URLs of OpenAI-style images APIs; `/generations` and `/edits` are appended.
_IMAGE_BASES = {
    "openai": "https://api.openai.com/v1/images",
    "local": os.getenv("LOCAL_IMAGE_URL", "http://127.0.0.1:8080/v1/images"),
}

IMAGE_PROVIDERS = {
    name: {
        "generate_url": f"{base}/generations",
        "edit_url": f"{base}/edits",
        "key_file": None if name == "local" else _key_file(name),
    }
    for name, base in _IMAGE_BASES.items()
}


# =========================================================
# ASSISTANT RUNTIME
# =========================================================

USER_NAME = os.getenv("ASTRA_USER_NAME", "").strip()
PERSONALITY = os.getenv("ASTRA_PERSONALITY", "").strip()
TIME_ZONE = os.getenv("ASTRA_TIME_ZONE", "").strip()
REMINDER_POLL_SECONDS = float(os.getenv("REMINDER_POLL_SECONDS", "30"))


def resolve_time_zone(name: str | None = None) -> tzinfo:
    """`ZoneInfo` for `name` (default `ASTRA_TIME_ZONE`), else the local zone.

    An unknown zone name is logged and falls back to the process-local zone.
    """
    zone_name = TIME_ZONE if name is None else name
    if not zone_name:
        return datetime.now().astimezone().tzinfo
    try:
        return ZoneInfo(zone_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown time zone %r, using the process-local zone", zone_name)
        return datetime.now().astimezone().tzinfo
