import asyncio
import logging
from typing import Any, Optional

import httpx

from ..config import AppConfig
from ..errors import SearchError
from .base import SearchBackend, SearchResult

logger = logging.getLogger(__name__)

SEARCH_PROMPT_SUFFIX = "Based on the search results above, please answer my question."


def format_results(results: list[dict]) -> str:
    formatted = []
    entries = [r for r in results if isinstance(r, dict)]
    for i, r in enumerate(entries, 1):
        formatted.append(
            f"{i}. **{r.get('title') or 'No title'}**\n"
            f"   {r.get('snippet') or 'No description'}\n"
            f"   URL: {r.get('url') or 'N/A'}"
        )
    return "\n\n".join(formatted)


def _image_urls(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    urls = []
    for item in raw:
        if isinstance(item, str):
            urls.append(item)
        elif isinstance(item, dict):
            url = item.get("url") or item.get("image")
            if isinstance(url, str) and url:
                urls.append(url)
    return urls


class ProxySearchBackend(SearchBackend):
    """Search through an HTTP proxy: ``POST {query, max_results}``."""

    name = "proxy"

    def __init__(
        self,
        url: str,
        max_results: int = 5,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self._url = url
        self._max_results = max_results
        self._http = http
        self._timeout = timeout

    def is_configured(self) -> bool:
        return bool(self._url)

    async def _post(self, body: dict) -> httpx.Response:
        if self._http is not None:
            return await self._http.post(self._url, json=body)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(self._url, json=body)

    async def search(self, query: str) -> SearchResult:
        try:
            resp = await self._post({"query": query, "max_results": self._max_results})
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise SearchError(f"Search request failed: {e}") from e

        if not isinstance(data, dict):
            raise SearchError("Search proxy returned an unexpected payload")
        results = data.get("results") or []
        if not isinstance(results, list):
            raise SearchError("Search proxy returned malformed results")
        logger.info("Search '%s': %d results", query, len(results))
        return SearchResult(
            content=format_results(results),
            images=_image_urls(data.get("images")),
        )


class DuckDuckGoSearchBackend(SearchBackend):
    """Keyless search via the ``ddgs`` package."""

    name = "duckduckgo"

    def __init__(self, max_results: int = 5) -> None:
        self._max_results = max_results

    def is_configured(self) -> bool:
        return True

    def _search_sync(self, query: str) -> SearchResult:
        from ddgs import DDGS

        with DDGS() as ddgs:
            text_results = list(ddgs.text(query, region="wt-wt", max_results=self._max_results))
        with DDGS() as ddgs:
            image_results = list(ddgs.images(query, max_results=self._max_results))

        results = [
            {"title": r.get("title", ""), "snippet": r.get("body", ""), "url": r.get("href", "")}
            for r in text_results
        ]
        logger.info(
            "DuckDuckGo search '%s': %d text + %d images",
            query, len(text_results), len(image_results),
        )
        return SearchResult(content=format_results(results), images=_image_urls(image_results))

    async def search(self, query: str) -> SearchResult:
        try:
            return await asyncio.to_thread(self._search_sync, query)
        except Exception as e:
            raise SearchError(f"DuckDuckGo search failed: {e}") from e


def get_search_backend(config: AppConfig) -> Optional[SearchBackend]:
    services = config.services
    if services.search_backend == "duckduckgo":
        return DuckDuckGoSearchBackend(max_results=services.search_max_results)
    backend = ProxySearchBackend(
        services.search_url,
        max_results=services.search_max_results,
        timeout=services.request_timeout,
    )
    return backend if backend.is_configured() else None


def augment_messages(messages: list[dict], context: str) -> list[dict]:
    """Append search context to the final user message.

    Only the outgoing request is shaped; stored history keeps the plain
    question.
    """
    if not context or not messages or messages[-1].get("role") != "user":
        return list(messages)
    last = messages[-1]
    shaped = (
        f"{last['content']}\n\n---\nSearch Results:\n{context}\n---\n\n{SEARCH_PROMPT_SUFFIX}"
    )
    return [*messages[:-1], {**last, "content": shaped}]
