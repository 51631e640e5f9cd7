# =============================================================================
# Web Search — Serper / Bing / Brave
# =============================================================================
#
# `search(query)` returns a list of {"title", "link", "snippet"} dicts,
# normalised across providers. Raises DataSourceError on transport or HTTP
# failure; the agent runner logs that and continues without web results.
#
# The provider and key come from settings (WEB_SEARCH_PROVIDER,
# WEB_SEARCH_API_KEY).
# =============================================================================

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from aihub.config import settings
from aihub.errors import ConfigurationError, DataSourceError

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("serper", "bing", "brave")


class WebSearch(Protocol):
    async def search(self, query: str) -> list[dict[str, str]]:
        ...


class HttpWebSearch:
    """Web search over httpx against one of the supported providers."""

    def __init__(
        self,
        provider: str | None = None,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        max_results: int | None = None,
    ) -> None:
        self.provider = (provider or settings.web_search_provider).lower()
        if self.provider not in SUPPORTED_PROVIDERS:
            raise ConfigurationError(
                f"Unsupported search provider: {self.provider}. "
                f"Supported: {list(SUPPORTED_PROVIDERS)}"
            )
        self._api_key = api_key if api_key is not None else settings.web_search_api_key
        self._client = client
        self._max_results = max_results or settings.web_search_max_results

    async def search(self, query: str) -> list[dict[str, str]]:
        if not self._api_key:
            raise ConfigurationError(
                f"Search provider '{self.provider}' has no API key configured"
            )

        if self.provider == "serper":
            payload = await self._call(
                "POST",
                "https://google.serper.dev/search",
                headers={"X-API-KEY": self._api_key},
                json={"q": query, "num": self._max_results},
            )
            items = payload.get("organic") or []
            results = [
                {
                    "title": r.get("title", ""),
                    "link": r.get("link", ""),
                    "snippet": r.get("snippet", ""),
                }
                for r in items
            ]
        elif self.provider == "bing":
            payload = await self._call(
                "GET",
                "https://api.bing.microsoft.com/v7.0/search",
                headers={"Ocp-Apim-Subscription-Key": self._api_key},
                params={"q": query, "count": self._max_results},
            )
            items = (payload.get("webPages") or {}).get("value") or []
            results = [
                {
                    "title": r.get("name", ""),
                    "link": r.get("url", ""),
                    "snippet": r.get("snippet", ""),
                }
                for r in items
            ]
        else:
            payload = await self._call(
                "GET",
                "https://api.search.brave.com/res/v1/web/search",
                headers={"X-Subscription-Token": self._api_key},
                params={"q": query, "count": self._max_results},
            )
            items = (payload.get("web") or {}).get("results") or []
            results = [
                {
                    "title": r.get("title", ""),
                    "link": r.get("url", ""),
                    "snippet": r.get("description", ""),
                }
                for r in items
            ]

        logger.info(
            "Web search (%s) returned %d results for: %.100s",
            self.provider, len(results), query,
        )
        return results

    async def _call(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            if self._client is not None:
                response = await self._client.request(method, url, **kwargs)
            else:
                async with httpx.AsyncClient(
                    timeout=settings.web_search_timeout_seconds,
                ) as client:
                    response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise DataSourceError(self.provider, str(exc) or type(exc).__name__) from exc

        if response.is_error:
            raise DataSourceError(
                self.provider,
                f"status {response.status_code}: {response.text[:500]}",
            )
        return response.json()
