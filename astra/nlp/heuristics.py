"""Phrase-matching rules that complement the model-based router.

Architectural role:
    Holds every string heuristic the dispatcher consults, as data tables plus small
    predicate functions, so the rules can be swapped for a classifier without
    touching `astra.core.engine`.

Rule tables:
    - `REMEMBER_PHRASES` / `REMEMBER_EXCLUSIONS`: explicit memory-save requests.
    - `IMAGE_ACTION_KEYWORDS`: explicit edit/generate requests that survive a
      memory-save turn.
    - `SEARCH_COMMAND_PREFIXES`: manual `/search` commands that bypass routing.
    - `WEB_QUERY_PREFIXES`: prefixes stripped when the raw text becomes a query.
    - `IMAGE_PROMPT_PREFIXES`: command prefixes stripped from image prompts.

Precedence:
    A turn that matches the remember rule and is routed to image work keeps the
    image work only if `wants_image_action` also matches. The router is not asked
    again.

Determinism:
    Pure and deterministic. Matching is case-insensitive substring or prefix search,
    so it is imprecise by construction.
"""


REMEMBER_EXCLUSIONS = (
    "remember when",
)

REMEMBER_EXACT = (
    "remember",
)

REMEMBER_PHRASES = (
    "add to memory",
    "save to memory",
    "save this to memory",
    "store this",
    "put this in memory",
    "memorize",
    "don't forget",
    "dont forget",
    "you should know",
    "remember this",
    "remember that",
    "remember it",
    "remember how this looks",
    "remember how it looks",
    "remember how they look",
    "remember what they look like",
    "remember what this looks like",
    "remember their appearance",
    "remember this character",
    "remember this mock",
    "remember this place",
    "remember this look",
    "remember this photo",
    "remember this image",
    "remember this picture",
    "remember this screenshot",
    "save this photo",
    "save this image",
    "save this picture",
    "save this screenshot",
)

IMAGE_ACTION_KEYWORDS = (
    "edit",
    "modify",
    "change",
    "make it",
    "generate",
    "create an image",
)

SEARCH_COMMAND_PREFIXES = (
    "/search ",
    "/s ",
    "search:",
)

WEB_QUERY_PREFIXES = (
    "/search",
    "/s ",
    "search:",
    "web search:",
)

IMAGE_PROMPT_PREFIXES = (
    "/image",
    "/img",
    "image:",
    "img:",
    "draw ", "draw:",
    "sketch ", "sketch:",
    "illustrate ", "illustrate:",
    "paint ", "paint:",
    "generate image of ", "generate an image of ",
    "generate image ", "generate an image ",
    "create image of ", "create an image of ",
    "create image ", "create an image ",
    "make image of ", "make an image of ",
    "make image ", "make an image ",
    "image of ", "picture of ", "photo of ",
)


def wants_memory_save(text: str) -> bool:
    """Return whether the raw user text explicitly asks to remember something.

    Edge cases:
        - Any text containing "remember when" is reminiscence, never a save.
        - The bare word "remember" counts as a save request.
    """
    lowered = (text or "").strip().lower()
    if not lowered:
        return False
    if any(phrase in lowered for phrase in REMEMBER_EXCLUSIONS):
        return False
    if lowered in REMEMBER_EXACT:
        return True
    return any(phrase in lowered for phrase in REMEMBER_PHRASES)


def wants_image_action(text: str) -> bool:
    """Return whether the raw user text explicitly asks to edit or generate."""
    lowered = (text or "").lower()
    return any(keyword in lowered for keyword in IMAGE_ACTION_KEYWORDS)


def manual_search_query(text: str) -> str | None:
    """Extract the query of a manual search command.

    Returns:
        Query text (possibly empty) when the message is a search command,
        otherwise `None`.

    Edge cases:
        - `"/search"` alone (no trailing space) is treated as an empty command.
    """
    stripped = (text or "").strip()
    lowered = stripped.lower()
    if lowered in ("/search", "/s", "search:"):
        return ""
    for prefix in SEARCH_COMMAND_PREFIXES:
        if lowered.startswith(prefix):
            return stripped[len(prefix):].strip()
    return None


def cleaned_web_search_query(text: str) -> str:
    """Turn raw user text into a search query by stripping command prefixes."""
    query = (text or "").strip()
    lowered = query.lower()
    for prefix in WEB_QUERY_PREFIXES:
        if lowered.startswith(prefix):
            query = query[len(prefix):].strip()
            break
    return query


def image_prompt(text: str) -> str:
    """Strip image command prefixes and return the remaining prompt text."""
    prompt = (text or "").strip()
    lowered = prompt.lower()
    for prefix in IMAGE_PROMPT_PREFIXES:
        if lowered.startswith(prefix):
            return prompt[len(prefix):].strip(" :")
    return prompt
