# =============================================================================
# External Data Connectors — HTTP Clients for Data-Source Providers
# =============================================================================
#
# `fetch(config, query)` takes a data-source config plus a free-text query and
# returns a normalised result:
#
#   {"source": "fda", "status": "SUCCESS" | "FAILED_OR_EMPTY",
#    "data": [...] | None, "url": "...", ...}
#
# Transport failures and non-2xx answers raise DataSourceError. The tool
# invoker and the eager prefetch turn that into evidence text.
#
# PROVIDERS:
#   fda         → api.fda.gov drug label / 510k / classification / enforcement
#   crunchbase  → Crunchbase v4 organization search
#   patents     → Google Custom Search restricted to patents.google.com
#   news        → NewsAPI /v2/everything
#   generic     → config.base_url, key placed per config["api_key_location"]
# =============================================================================

from __future__ import annotations

import logging
import re
from typing import Any, Protocol

import httpx

from aihub.config import settings
from aihub.db.models import ExternalDataSourceConfig
from aihub.errors import DataSourceError
from aihub.services.crypto import decrypt
from aihub.services.tool_catalog import provider_family

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "SUCCESS"
STATUS_EMPTY = "FAILED_OR_EMPTY"

FDA_ENDPOINTS = {
    "drug": "https://api.fda.gov/drug/label.json",
    "device": "https://api.fda.gov/device/510k.json",
    "device_classification": "https://api.fda.gov/device/classification.json",
}
FDA_RECALL_ENDPOINT = "https://api.fda.gov/drug/enforcement.json"

_FETCH_ALL_RE = re.compile(
    r"\b(fetch|get|list|show|find|search)\s+(all|every)\s+"
    r"(drugs|drug|medications|medication|devices|device)\b",
    re.IGNORECASE,
)
_STOP_WORDS_RE = re.compile(
    r"\b(what|who|where|when|why|how|is|are|can|could|should|will|would|"
    r"the|a|an|fetch|get|details|information|about)\b",
    re.IGNORECASE,
)
_DRUG_QUERY_RE = re.compile(
    r"\b(drugs?|medications?|medicine|pharmaceutical)\b", re.IGNORECASE,
)
_DEVICE_QUERY_RE = re.compile(
    r"\b(devices?|medical\s+device|equipment)\b", re.IGNORECASE,
)
_LIMIT_RE = re.compile(r"\blimit\s+(\d+)\b", re.IGNORECASE)
_YEAR_RE = re.compile(r"\s+approved in (\d{4})\b", re.IGNORECASE)


def empty_result(source: str, message: str | None = None) -> dict[str, Any]:
    result: dict[str, Any] = {
        "source": source,
        "status": STATUS_EMPTY,
        "data": None,
        "url": None,
    }
    if message:
        result["message"] = message
    return result


def extract_search_term(query: str) -> str | None:
    """
    Reduce a free-text query to a search term.

    Returns None when the query asks for "all" items or nothing specific
    remains after dropping question words.
    """
    if _FETCH_ALL_RE.search(query):
        return None
    term = _STOP_WORDS_RE.sub("", query)
    term = re.sub(r"\s+", " ", term).strip()[:50].strip()
    if not term or re.fullmatch(r"(drugs?|medications?|devices?)", term, re.IGNORECASE):
        return None
    return term


def _join(values: Any) -> str:
    if isinstance(values, list):
        return ", ".join(str(v) for v in values)
    return str(values or "")


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class DataConnector(Protocol):
    """Fetches structured data for one config and one free-text query."""

    async def fetch(
        self, config: ExternalDataSourceConfig, query: str,
    ) -> dict[str, Any]:
        ...


# ---------------------------------------------------------------------------
# Implementation: httpx
# ---------------------------------------------------------------------------


class HttpDataConnector:
    """
    DataConnector over httpx.AsyncClient.

    A client can be injected (tests use httpx.MockTransport); otherwise a
    short-lived client is opened per request.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ) -> None:
        self._client = client
        self._timeout = timeout or settings.tool_timeout_seconds

    async def fetch(
        self, config: ExternalDataSourceConfig, query: str,
    ) -> dict[str, Any]:
        family = provider_family(config.provider)
        handler = {
            "fda": self._fetch_fda,
            "crunchbase": self._fetch_crunchbase,
            "patents": self._fetch_patents,
            "news": self._fetch_news,
        }.get(family, self._fetch_generic)

        logger.info(
            "Fetching data source %s (provider=%s) for query: %.100s",
            config.id, config.provider, query,
        )
        return await handler(config, query)

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _request(
        self, source: str, method: str, url: str, **kwargs: Any,
    ) -> httpx.Response:
        try:
            if self._client is not None:
                response = await self._client.request(method, url, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise DataSourceError(source, f"timed out after {self._timeout}s") from exc
        except httpx.HTTPError as exc:
            raise DataSourceError(source, str(exc)) from exc
        return response

    async def _request_ok(
        self, source: str, method: str, url: str, **kwargs: Any,
    ) -> Any:
        response = await self._request(source, method, url, **kwargs)
        if response.is_error:
            raise DataSourceError(
                source, f"status {response.status_code}: {response.text[:500]}",
            )
        return response.json()

    # -------------------------------------------------------------------------
    # FDA (OpenFDA)
    # -------------------------------------------------------------------------

    async def _fda_results(self, url: str, params: dict[str, Any]) -> list[dict]:
        """One OpenFDA call; HTTP 404 is how OpenFDA reports zero matches."""
        response = await self._request("fda", "GET", url, params=params)
        if response.status_code == 404:
            return []
        if response.is_error:
            logger.warning(
                "FDA request failed (url=%s, status=%d): %.500s",
                url, response.status_code, response.text,
            )
            return []
        return response.json().get("results") or []

    async def _fetch_fda(
        self, config: ExternalDataSourceConfig, query: str,
    ) -> dict[str, Any]:
        if query.lower().startswith("recall "):
            return await self._fetch_fda_recalls(query[len("recall "):].strip())

        year_match = _YEAR_RE.search(query)
        base_query = _YEAR_RE.sub("", query) if year_match else query
        limit_match = _LIMIT_RE.search(base_query)
        limit = min(int(limit_match.group(1)), 100) if limit_match else 20
        if limit_match:
            base_query = _LIMIT_RE.sub("", base_query)

        is_device = query.lower().startswith("device ") or bool(
            _DEVICE_QUERY_RE.search(base_query)
        )
        is_drug = not is_device and bool(_DRUG_QUERY_RE.search(base_query))
        if is_device and base_query.lower().startswith("device "):
            base_query = base_query[len("device "):]
        term = extract_search_term(base_query)

        data: list[dict] = []
        endpoint_used = None
        for kind, url in FDA_ENDPOINTS.items():
            if is_drug and kind != "drug":
                continue
            if is_device and kind == "drug":
                continue

            try:
                if kind == "drug":
                    data = await self._search_fda_drugs(
                        url, term, limit, year_match.group(1) if year_match else None,
                    )
                else:
                    params: dict[str, Any] = {"limit": limit}
                    if term:
                        params["search"] = f'device_name:"{term}"'
                    data = await self._fda_results(url, params)
            except DataSourceError as exc:
                logger.warning("FDA endpoint %s failed: %s", kind, exc)
                continue

            if data:
                endpoint_used = kind
                break

        if not data:
            return empty_result("fda", f"No results found for query: {query}")

        normalised = []
        for record in data:
            if endpoint_used == "drug":
                openfda = record.get("openfda") or {}
                normalised.append({
                    "brand_name": _join(openfda.get("brand_name")),
                    "generic_name": _join(openfda.get("generic_name")),
                    "substance_name": _join(openfda.get("substance_name")),
                    "indications_and_usage": record.get("indications_and_usage", []),
                    "description": record.get("description", []),
                    "warnings": record.get("warnings", []),
                    "dosage_and_administration": record.get(
                        "dosage_and_administration", [],
                    ),
                    "product_ndc": _join(openfda.get("product_ndc")),
                })
            else:
                normalised.append({
                    "device_name": record.get("device_name", ""),
                    "device_class": record.get("device_class", ""),
                    "regulation_number": record.get("regulation_number", ""),
                    "product_code": record.get("product_code", ""),
                })

        return {
            "source": "fda",
            "status": STATUS_SUCCESS,
            "data": normalised,
            "url": "https://www.fda.gov",
            "endpoint": endpoint_used,
        }

    async def _search_fda_drugs(
        self, url: str, term: str | None, limit: int, year: str | None,
    ) -> list[dict]:
        """Drug label search, falling back from all name fields to brand, then generic."""
        year_filter = (
            f" AND effective_time:[{year}0101 TO {year}1231]" if year else ""
        )
        if term is None:
            params: dict[str, Any] = {"limit": limit}
            if year_filter:
                params["search"] = year_filter.removeprefix(" AND ")
            return await self._fda_results(url, params)

        searches = [
            f"(openfda.brand_name:{term} OR openfda.generic_name:{term} "
            f"OR openfda.substance_name:{term})",
            f"openfda.brand_name:{term}",
            f"openfda.generic_name:{term}",
        ]
        for search in searches:
            results = await self._fda_results(
                url, {"limit": limit, "search": search + year_filter},
            )
            if results:
                return results
            logger.info("FDA search '%s' returned nothing, trying next form", search)
        return []

    async def _fetch_fda_recalls(self, product: str) -> dict[str, Any]:
        params: dict[str, Any] = {"limit": 20}
        if product:
            params["search"] = (
                f'product_description:"{product}" OR recalling_firm:"{product}"'
            )
        results = await self._fda_results(FDA_RECALL_ENDPOINT, params)
        if not results:
            return empty_result("fda", f"No recalls found for: {product}")

        return {
            "source": "fda",
            "status": STATUS_SUCCESS,
            "data": [
                {
                    "product_description": r.get("product_description", ""),
                    "recalling_firm": r.get("recalling_firm", ""),
                    "reason_for_recall": r.get("reason_for_recall", ""),
                    "classification": r.get("classification", ""),
                    "status": r.get("status", ""),
                    "recall_initiation_date": r.get("recall_initiation_date", ""),
                }
                for r in results
            ],
            "url": "https://www.fda.gov/safety/recalls-market-withdrawals-safety-alerts",
            "endpoint": "recall",
        }

    # -------------------------------------------------------------------------
    # Crunchbase
    # -------------------------------------------------------------------------

    async def _fetch_crunchbase(
        self, config: ExternalDataSourceConfig, query: str,
    ) -> dict[str, Any]:
        api_key = decrypt(config.encrypted_api_key)
        term = extract_search_term(query) or query

        payload = await self._request_ok(
            "crunchbase",
            "POST",
            config.base_url or "https://api.crunchbase.com/v4/searches/organizations",
            headers={"X-cb-user-key": api_key},
            json={
                "field_ids": [
                    "name", "short_description", "funding_total",
                    "num_funding_rounds", "website", "linkedin",
                ],
                "query": [{
                    "type": "predicate",
                    "field_id": "identifier",
                    "operator_id": "contains",
                    "values": [term],
                }],
                "limit": 5,
            },
        )
        entities = payload.get("entities") or []
        if not entities:
            return empty_result("crunchbase")

        results = []
        for entity in entities:
            properties = entity.get("properties") or {}
            results.append({
                "name": properties.get("name", ""),
                "description": properties.get("short_description", ""),
                "funding_total": properties.get("funding_total"),
                "num_funding_rounds": properties.get("num_funding_rounds", 0),
                "website": properties.get("website"),
                "linkedin": properties.get("linkedin"),
            })
        return {
            "source": "crunchbase",
            "status": STATUS_SUCCESS,
            "data": results,
            "url": "https://www.crunchbase.com",
        }

    # -------------------------------------------------------------------------
    # Google Patents (Custom Search)
    # -------------------------------------------------------------------------

    async def _fetch_patents(
        self, config: ExternalDataSourceConfig, query: str,
    ) -> dict[str, Any]:
        payload = await self._request_ok(
            "patents",
            "GET",
            config.base_url or "https://www.googleapis.com/customsearch/v1",
            params={
                "key": decrypt(config.encrypted_api_key),
                "cx": (config.config or {}).get("search_engine_id", ""),
                "q": f"{query} site:patents.google.com",
                "num": 5,
            },
        )
        items = payload.get("items") or []
        if not items:
            return empty_result("patents")

        return {
            "source": "patents",
            "status": STATUS_SUCCESS,
            "data": [
                {
                    "title": item.get("title", ""),
                    "snippet": item.get("snippet", ""),
                    "link": item.get("link", ""),
                }
                for item in items
            ],
            "url": "https://patents.google.com",
        }

    # -------------------------------------------------------------------------
    # NewsAPI
    # -------------------------------------------------------------------------

    async def _fetch_news(
        self, config: ExternalDataSourceConfig, query: str,
    ) -> dict[str, Any]:
        payload = await self._request_ok(
            "news",
            "GET",
            config.base_url or "https://newsapi.org/v2/everything",
            params={
                "q": query,
                "apiKey": decrypt(config.encrypted_api_key),
                "pageSize": 5,
                "sortBy": "relevancy",
            },
        )
        articles = payload.get("articles") or []
        if not articles:
            return empty_result("news")

        return {
            "source": "news",
            "status": STATUS_SUCCESS,
            "data": [
                {
                    "title": article.get("title", ""),
                    "description": article.get("description", ""),
                    "url": article.get("url", ""),
                    "published_at": article.get("publishedAt", ""),
                    "source": (article.get("source") or {}).get("name", ""),
                }
                for article in articles
            ],
            "url": "https://newsapi.org",
        }

    # -------------------------------------------------------------------------
    # Generic REST
    # -------------------------------------------------------------------------

    async def _fetch_generic(
        self, config: ExternalDataSourceConfig, query: str,
    ) -> dict[str, Any]:
        """
        Call config.base_url with the query as `q`.

        config keys:
            api_key_location: "query" (default), "header" or "body"
            api_key_param: parameter / header name for the key
            pagination: when true, `page_size` is sent as `page_size`
        """
        if not config.base_url:
            logger.warning(
                "Data source %s (%s) has no base_url configured",
                config.id, config.provider,
            )
            return empty_result(config.provider, "No base_url configured")

        options = config.config or {}
        api_key = decrypt(config.encrypted_api_key) if config.encrypted_api_key else ""
        location = options.get("api_key_location", "query")

        headers: dict[str, str] = {}
        params: dict[str, Any] = {"q": query}
        body: dict[str, Any] | None = None

        if options.get("pagination") and options.get("page_size"):
            params["page_size"] = options["page_size"]

        if api_key:
            if location == "header":
                headers[options.get("api_key_param", "X-API-Key")] = api_key
            elif location == "body":
                body = {options.get("api_key_param", "api_key"): api_key, **params}
            else:
                params[options.get("api_key_param", "api_key")] = api_key

        if body is not None:
            payload = await self._request_ok(
                config.provider, "POST", config.base_url, headers=headers, json=body,
            )
        else:
            payload = await self._request_ok(
                config.provider, "GET", config.base_url, headers=headers, params=params,
            )

        if not payload:
            return empty_result(config.provider)
        return {
            "source": config.provider,
            "status": STATUS_SUCCESS,
            "data": payload,
            "url": config.base_url,
        }
