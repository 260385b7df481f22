"""Web search collaborator for the engine's web-search sub-task.

The engine only needs two coroutines from this module:

    search(query)                      -> [{title, url, snippet}]
    fetch_page_excerpts(items, pages)  -> [{title, url, text}]

Search results come from one configured provider (Brave, SerpAPI or Tavily).
Each provider is described by a `SearchProvider` row, so adding one means
adding a row instead of another branch.

Everything returned here is untrusted. Page text goes through `trafilatura`,
then markup and role-marker stripping, before the engine places it inside the
"context only" block of the web answer prompt.

Failure handling:
    - search: transient HTTP failures (429/5xx, transport errors) are retried
      with exponential backoff, then raised to the engine, which fails the reply.
    - page excerpts: each page is independent; a failing page is logged and
      left out.
"""

from __future__ import annotations

import asyncio
import html
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import urlparse

import httpx
import trafilatura


logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


# =========================================================
# CONFIG
# =========================================================

@dataclass(frozen=True)
class WebModuleConfig:
    """Provider and network settings.

    Defaults come from the environment (`WEB_SEARCH_PROVIDER`, `SEARCH_API_KEY`,
    `WEB_TIMEOUT_SECONDS`, `WEB_MAX_RESULTS`, `WEB_MAX_CHARS`, `WEB_USER_AGENT`,
    `WEB_RETRY_ATTEMPTS`, `WEB_BACKOFF_SECONDS`) when the class is defined.
    """

    provider: str = os.getenv("WEB_SEARCH_PROVIDER", "brave").strip().lower()
    search_api_key: str = os.getenv("SEARCH_API_KEY", "").strip()
    timeout_seconds: float = float(os.getenv("WEB_TIMEOUT_SECONDS", "12"))
    max_results: int = int(os.getenv("WEB_MAX_RESULTS", "8"))
    max_chars: int = int(os.getenv("WEB_MAX_CHARS", "3000"))
    user_agent: str = os.getenv("WEB_USER_AGENT", "astra/1.0").strip()
    retry_attempts: int = int(os.getenv("WEB_RETRY_ATTEMPTS", "3"))
    backoff_seconds: float = float(os.getenv("WEB_BACKOFF_SECONDS", "0.5"))


# =========================================================
# PROVIDERS
# =========================================================

@dataclass(frozen=True)
class SearchProvider:
    """How to call one search API and where its results live in the response.

    `build_request` receives `(query, config)` and returns keyword arguments
    for `httpx.AsyncClient.request` (`params`, `json`, `headers`).
    """

    name: str
    method: str
    endpoint: str
    build_request: Callable[[str, WebModuleConfig], dict[str, Any]]
    results_path: tuple[str, ...]
    url_field: str
    snippet_field: str


def _brave_request(query: str, config: WebModuleConfig) -> dict[str, Any]:
    return {
        "params": {"q": query, "count": config.max_results},
        "headers": {"X-Subscription-Token": config.search_api_key},
    }


def _serpapi_request(query: str, config: WebModuleConfig) -> dict[str, Any]:
    return {
        "params": {
            "engine": "google",
            "q": query,
            "num": config.max_results,
            "api_key": config.search_api_key,
        },
    }


def _tavily_request(query: str, config: WebModuleConfig) -> dict[str, Any]:
    return {
        "json": {
            "api_key": config.search_api_key,
            "query": query,
            "search_depth": "advanced",
            "max_results": config.max_results,
        },
        "headers": {"Content-Type": "application/json"},
    }


PROVIDERS: dict[str, SearchProvider] = {
    "brave": SearchProvider(
        name="brave",
        method="GET",
        endpoint="https://api.search.brave.com/res/v1/web/search",
        build_request=_brave_request,
        results_path=("web", "results"),
        url_field="url",
        snippet_field="description",
    ),
    "serpapi": SearchProvider(
        name="serpapi",
        method="GET",
        endpoint="https://serpapi.com/search.json",
        build_request=_serpapi_request,
        results_path=("organic_results",),
        url_field="link",
        snippet_field="snippet",
    ),
    "tavily": SearchProvider(
        name="tavily",
        method="POST",
        endpoint="https://api.tavily.com/search",
        build_request=_tavily_request,
        results_path=("results",),
        url_field="url",
        snippet_field="content",
    ),
}


# =========================================================
# TEXT CLEANUP
# =========================================================

_SCRIPT_BLOCK = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_ANY_TAG = re.compile(r"<[^>]+>")
_JS_SCHEME = re.compile(r"\bjavascript\s*:", re.IGNORECASE)
_INLINE_HANDLER = re.compile(r"\bon\w+\s*=\s*['\"].*?['\"]", re.IGNORECASE | re.DOTALL)

# Role markers and instruction overrides that page authors plant for models.
_ROLE_MARKERS = re.compile(
    r"ignore\s+previous\s+instructions?|\b(?:system|assistant|user)\s*:",
    re.IGNORECASE,
)


def _collapse_whitespace(text: str) -> str:
    text = text.replace("\r", "\n")
    text = re.sub(r"[\t\x0b\x0c ]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


# =========================================================
# MODULE
# =========================================================

class WebSearchModule:
    """Provider search plus page excerpt extraction.

    Raises:
        RuntimeError: At construction when no search key is configured or the
            provider name is unknown.
    """

    def __init__(self, config: WebModuleConfig) -> None:
        if not config.search_api_key:
            raise RuntimeError("SEARCH_API_KEY not configured")
        provider = PROVIDERS.get(config.provider)
        if provider is None:
            raise RuntimeError(f"Unsupported WEB_SEARCH_PROVIDER: {config.provider}")
        self.config = config
        self.provider = provider

    # ---------------------------------------------------------
    # Public API
    # ---------------------------------------------------------

    async def search(self, query: str) -> list[dict[str, str]]:
        """Run one provider query.

        Returns:
            Up to `max_results` items with distinct HTTP(S) URLs, provider order.
            A blank query returns `[]` without a network call.
        """
        query = (query or "").strip()
        if not query:
            return []

        request = self.provider.build_request(query, self.config)
        headers = {**self._headers(), **request.pop("headers", {})}

        async with self._client() as client:
            response = await self._send(client, self.provider.method, self.provider.endpoint, headers=headers, **request)

        payload = response.json() if response.content else {}
        if not isinstance(payload, dict):
            payload = {}
        items = self._parse_search_results(payload)
        logger.debug("Search %r via %s returned %d items", query, self.provider.name, len(items))
        return self._unique_http_items(items)

    async def fetch_page_excerpts(
        self,
        items: list[dict[str, str]],
        max_pages: int,
    ) -> list[dict[str, str]]:
        """Fetch the first `max_pages` HTTP(S) items and return cleaned excerpts.

        Pages are fetched concurrently. Excerpts keep item order; pages that
        error out or yield no readable text are skipped.
        """
        targets = [item for item in items if self._is_http_url(item.get("url", ""))][:max(0, max_pages)]
        if not targets:
            return []

        outcomes = await asyncio.gather(
            *(self._fetch_and_clean(item["url"]) for item in targets),
            return_exceptions=True,
        )

        excerpts: list[dict[str, str]] = []
        for item, outcome in zip(targets, outcomes):
            if isinstance(outcome, Exception):
                logger.warning("Dropping page %s: %s", item["url"], outcome)
                continue
            if outcome:
                excerpts.append({"title": item.get("title", ""), "url": item["url"], "text": outcome})
        return excerpts

    # ---------------------------------------------------------
    # Result handling
    # ---------------------------------------------------------

    def _parse_search_results(self, data: dict[str, Any]) -> list[dict[str, str]]:
        """Map the provider payload onto `{title, url, snippet}` items."""
        node: Any = data
        for key in self.provider.results_path:
            node = node.get(key, {}) if isinstance(node, dict) else {}
        rows = node if isinstance(node, list) else []

        parsed: list[dict[str, str]] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            parsed.append({
                "title": self._strip_html_js(str(row.get("title") or "")).strip(),
                "url": str(row.get(self.provider.url_field) or "").strip(),
                "snippet": self._strip_html_js(str(row.get(self.provider.snippet_field) or "")).strip(),
            })
        return parsed

    def _unique_http_items(self, items: list[dict[str, str]]) -> list[dict[str, str]]:
        """First occurrence of each HTTP(S) URL, capped at `max_results`."""
        kept: dict[str, dict[str, str]] = {}
        for item in items:
            if len(kept) >= self.config.max_results:
                break
            url = item.get("url", "")
            if url not in kept and self._is_http_url(url):
                kept[url] = item
        return list(kept.values())

    @staticmethod
    def _is_http_url(url: str) -> bool:
        try:
            parts = urlparse(url)
        except ValueError:
            return False
        return parts.scheme in ("http", "https") and bool(parts.netloc)

    # ---------------------------------------------------------
    # Pages
    # ---------------------------------------------------------

    async def _fetch_and_clean(self, url: str) -> str:
        """Download one page and return its readable text, or `""`."""
        async with self._client() as client:
            response = await self._send(client, "GET", url, headers=self._headers())
        if not response.text:
            return ""

        extracted = trafilatura.extract(
            response.text,
            output_format="txt",
            favor_precision=True,
            include_comments=False,
            include_tables=False,
            include_images=False,
            include_links=False,
        )
        if not extracted or not extracted.strip():
            return ""

        text = _ROLE_MARKERS.sub(" ", self._strip_html_js(extracted))
        text = _collapse_whitespace(text)
        return text[: self.config.max_chars].rstrip()

    @staticmethod
    def _strip_html_js(text: str) -> str:
        """Drop tags, script/style blocks and inline JS, then unescape entities."""
        text = _SCRIPT_BLOCK.sub(" ", text)
        text = _ANY_TAG.sub(" ", text)
        text = _JS_SCHEME.sub(" ", text)
        text = _INLINE_HANDLER.sub(" ", text)
        return html.unescape(text)

    # ---------------------------------------------------------
    # Transport
    # ---------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.config.timeout_seconds, follow_redirects=True)

    def _headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json, text/html;q=0.9,*/*;q=0.8",
            "User-Agent": self.config.user_agent,
        }

    async def _send(self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, retrying 429/5xx and transport errors with backoff.

        Raises:
            httpx.HTTPStatusError: Non-transient status, or a transient one on
                the last attempt.
            httpx.TransportError: Network failure on the last attempt.
        """
        attempts = max(1, self.config.retry_attempts)
        for attempt in range(1, attempts + 1):
            try:
                response = await client.request(method, url, **kwargs)
                response.raise_for_status()
                return response
            except httpx.HTTPStatusError as exc:
                if exc.response.status_code not in TRANSIENT_STATUS_CODES or attempt == attempts:
                    raise
                reason = f"status {exc.response.status_code}"
            except httpx.TransportError as exc:
                if attempt == attempts:
                    raise
                reason = type(exc).__name__

            delay = self.config.backoff_seconds * (2 ** (attempt - 1))
            logger.warning("%s %s failed (%s); retry %d/%d in %.2fs", method, url, reason, attempt, attempts - 1, delay)
            await asyncio.sleep(delay)

        raise RuntimeError(f"No request attempts made for {url}")
