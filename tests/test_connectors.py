# =============================================================================
# Unit Tests — HTTP Data Connectors & Web Search
# =============================================================================
#
# Uses httpx.MockTransport, so requests never leave the process.
# =============================================================================

from __future__ import annotations

import json

import httpx
import pytest

from aihub.db.models import ExternalDataSourceConfig
from aihub.errors import ConfigurationError, DataSourceError
from aihub.services.connectors import HttpDataConnector, extract_search_term
from aihub.services.crypto import encrypt
from aihub.services.websearch import HttpWebSearch
from fakes import _run


def _fetch(handler, query, **config):
    values = {"id": 1, "name": "Source", "provider": "fda", "config": {}}
    values.update(config)
    source = ExternalDataSourceConfig(**values)

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await HttpDataConnector(client=client).fetch(source, query)

    return _run(go())


class TestExtractSearchTerm:
    def test_strips_question_words(self):
        assert extract_search_term("what is aspirin") == "aspirin"

    def test_fetch_all_has_no_term(self):
        assert extract_search_term("fetch all drugs limit 20") is None

    def test_bare_category_has_no_term(self):
        assert extract_search_term("drugs") is None


# ---------------------------------------------------------------------------
# Test: FDA
# ---------------------------------------------------------------------------


class TestFdaConnector:
    def test_drug_search_normalised(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"results": [{
                "openfda": {"brand_name": ["Bayer"], "generic_name": ["aspirin"]},
                "indications_and_usage": ["pain relief"],
            }]})

        result = _fetch(handler, "aspirin")
        assert result["status"] == "SUCCESS"
        assert result["endpoint"] == "drug"
        assert result["data"][0]["brand_name"] == "Bayer"
        assert result["data"][0]["indications_and_usage"] == ["pain relief"]
        assert seen[0].url.path == "/drug/label.json"
        assert seen[0].url.params["search"].startswith("(openfda.brand_name:aspirin")

    def test_drug_search_falls_back_to_brand_name(self):
        searches = []

        def handler(request):
            search = request.url.params.get("search", "")
            searches.append(search)
            if search.startswith("openfda.brand_name:"):
                return httpx.Response(200, json={"results": [{"openfda": {"brand_name": "Advil"}}]})
            return httpx.Response(404, json={"error": {"code": "NOT_FOUND"}})

        result = _fetch(handler, "advil")
        assert result["data"][0]["brand_name"] == "Advil"
        assert len(searches) == 2

    def test_year_filter(self):
        searches = []

        def handler(request):
            searches.append(request.url.params.get("search"))
            return httpx.Response(200, json={"results": [{"openfda": {}}]})

        _fetch(handler, "aspirin approved in 2023")
        assert searches[0].endswith(" AND effective_time:[20230101 TO 20231231]")

    def test_recall(self):
        def handler(request):
            assert request.url.path == "/drug/enforcement.json"
            return httpx.Response(200, json={"results": [{
                "product_description": "Ibuprofen tablets",
                "recalling_firm": "Acme Pharma",
                "reason_for_recall": "contamination",
            }]})

        result = _fetch(handler, "recall ibuprofen")
        assert result["endpoint"] == "recall"
        assert result["data"][0]["recalling_firm"] == "Acme Pharma"

    def test_device_search_skips_drug_labels(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(200, json={"results": [{
                "device_name": "Coronary stent", "device_class": "3",
            }]})

        result = _fetch(handler, "device stent")
        assert paths == ["/device/510k.json"]
        assert result["endpoint"] == "device"
        assert result["data"][0]["device_class"] == "3"

    def test_no_results_is_empty(self):
        result = _fetch(lambda request: httpx.Response(404), "aspirin")
        assert result["status"] == "FAILED_OR_EMPTY"
        assert result["data"] is None
        assert result["message"] == "No results found for query: aspirin"


# ---------------------------------------------------------------------------
# Test: keyed providers
# ---------------------------------------------------------------------------


class TestKeyedConnectors:
    def test_crunchbase_sends_decrypted_key(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"entities": [
                {"properties": {"name": "Acme", "short_description": "Widgets"}},
            ]})

        result = _fetch(
            handler, "Acme", provider="crunchbase", encrypted_api_key=encrypt("cb-secret"),
        )
        assert seen[0].method == "POST"
        assert seen[0].headers["X-cb-user-key"] == "cb-secret"
        assert json.loads(seen[0].content)["query"][0]["values"] == ["Acme"]
        assert result["data"][0]["description"] == "Widgets"

    def test_news(self):
        def handler(request):
            assert request.url.params["apiKey"] == "news-key"
            return httpx.Response(200, json={"articles": [{
                "title": "FDA approves", "url": "https://n", "source": {"name": "Reuters"},
            }]})

        result = _fetch(
            handler, "FDA approval", provider="newsapi", encrypted_api_key=encrypt("news-key"),
        )
        assert result["source"] == "news"
        assert result["data"][0]["source"] == "Reuters"

    def test_http_error_raises(self):
        with pytest.raises(DataSourceError, match="status 401"):
            _fetch(
                lambda request: httpx.Response(401, text="bad key"), "x",
                provider="news", encrypted_api_key=encrypt("k"),
            )


# ---------------------------------------------------------------------------
# Test: generic REST
# ---------------------------------------------------------------------------


class TestGenericConnector:
    def test_key_in_header(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"items": [1, 2]})

        result = _fetch(
            handler, "widgets",
            provider="acme", base_url="https://api.acme.test/search",
            encrypted_api_key=encrypt("s3cret"),
            config={"api_key_location": "header", "api_key_param": "X-Acme-Key"},
        )
        assert seen[0].headers["X-Acme-Key"] == "s3cret"
        assert seen[0].url.params["q"] == "widgets"
        assert result == {
            "source": "acme",
            "status": "SUCCESS",
            "data": {"items": [1, 2]},
            "url": "https://api.acme.test/search",
        }

    def test_key_in_body(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        _fetch(
            handler, "widgets",
            provider="acme", base_url="https://api.acme.test/search",
            encrypted_api_key=encrypt("s3cret"),
            config={"api_key_location": "body"},
        )
        assert seen[0].method == "POST"
        assert json.loads(seen[0].content) == {"api_key": "s3cret", "q": "widgets"}

    def test_key_in_query_with_pagination(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        _fetch(
            handler, "widgets",
            provider="acme", base_url="https://api.acme.test/search",
            encrypted_api_key=encrypt("s3cret"),
            config={"pagination": True, "page_size": 25},
        )
        params = seen[0].url.params
        assert params["api_key"] == "s3cret"
        assert params["page_size"] == "25"

    def test_missing_base_url_is_empty(self):
        result = _fetch(lambda request: httpx.Response(500), "x", provider="acme")
        assert result["status"] == "FAILED_OR_EMPTY"
        assert result["message"] == "No base_url configured"

    def test_transport_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(DataSourceError, match="connection refused"):
            _fetch(handler, "x", provider="acme", base_url="https://api.acme.test")


# ---------------------------------------------------------------------------
# Test: web search
# ---------------------------------------------------------------------------


def _search(provider, handler, api_key="key"):
    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await HttpWebSearch(provider, api_key, client=client).search("stents")

    return _run(go())


class TestWebSearch:
    def test_serper(self):
        def handler(request):
            assert request.method == "POST"
            assert request.headers["X-API-KEY"] == "key"
            return httpx.Response(200, json={"organic": [
                {"title": "T", "link": "https://a", "snippet": "S"},
            ]})

        assert _search("serper", handler) == [
            {"title": "T", "link": "https://a", "snippet": "S"},
        ]

    def test_bing(self):
        def handler(request):
            return httpx.Response(200, json={"webPages": {"value": [
                {"name": "T", "url": "https://b", "snippet": "S"},
            ]}})

        assert _search("bing", handler)[0]["link"] == "https://b"

    def test_brave(self):
        def handler(request):
            return httpx.Response(200, json={"web": {"results": [
                {"title": "T", "url": "https://c", "description": "D"},
            ]}})

        assert _search("brave", handler)[0]["snippet"] == "D"

    def test_missing_key(self):
        with pytest.raises(ConfigurationError, match="no API key"):
            _search("serper", lambda request: httpx.Response(200), api_key="")

    def test_unsupported_provider(self):
        with pytest.raises(ConfigurationError, match="Unsupported search provider"):
            HttpWebSearch("altavista", "key")

    def test_error_status(self):
        with pytest.raises(DataSourceError, match="status 429"):
            _search("brave", lambda request: httpx.Response(429, text="slow down"))
