# =============================================================================
# Unit Tests — ToolCatalog & ToolInvoker
# =============================================================================
#
# Tool schema generation, tool-name parsing, config resolution, query
# synthesis and result formatting. Data sources are faked; no network.
# =============================================================================

from __future__ import annotations

import asyncio
import json

import pytest

from aihub.db.store import InMemoryRecordStore
from aihub.errors import DataSourceError, ToolNameInvalid
from aihub.services.tool_catalog import (
    TOOL_METHODS,
    ToolCatalog,
    provider_family,
    sanitise_name,
)
from aihub.services.tool_invoker import (
    ToolInvoker,
    ToolResult,
    format_drug_records,
    format_tool_result,
    parse_tool_name,
    synthesise_query,
)
from fakes import FakeConnector, _run, make_data_source


def _names(tools):
    return [t["function"]["name"] for t in tools]


# ---------------------------------------------------------------------------
# Test: catalog helpers
# ---------------------------------------------------------------------------


class TestCatalogHelpers:
    def test_sanitise_name(self):
        assert sanitise_name("OpenFDA  Drugs (US)") == "openfda_drugs_us"
        assert sanitise_name("--News--") == "news"

    def test_provider_aliases(self):
        assert provider_family("openfda") == "fda"
        assert provider_family("FDA") == "fda"
        assert provider_family("google_patents") == "patents"
        assert provider_family("newsapi") == "news"
        assert provider_family("something-else") == "generic"
        assert provider_family(None) == "generic"


# ---------------------------------------------------------------------------
# Test: generate_tools
# ---------------------------------------------------------------------------


class TestGenerateTools:
    def test_fda_methods(self):
        store = InMemoryRecordStore()

        async def go():
            source = await make_data_source(store)
            return await ToolCatalog(store).generate_tools([source.id])

        tools = _run(go())
        assert _names(tools) == [
            "openfda_searchDrug", "openfda_getAllDrugs",
            "openfda_getRecallInfo", "openfda_searchDevice",
        ]
        assert all(t["type"] == "function" for t in tools)
        assert tools[0]["function"]["parameters"]["required"] == ["query"]

    def test_generic_source_description(self):
        store = InMemoryRecordStore()

        async def go():
            described = await make_data_source(
                store, name="Acme Data (v2)", provider="acme",
                config={"description": "Acme company registry"},
            )
            plain = await make_data_source(store, name="Widgets", provider="widgets")
            return await ToolCatalog(store).generate_tools([described.id, plain.id])

        tools = _run(go())
        assert _names(tools) == ["acme_data_v2_call", "widgets_call"]
        assert tools[0]["function"]["description"] == "Acme company registry"
        assert tools[1]["function"]["description"] == "Call the Widgets API"

    def test_inactive_and_missing_skipped(self):
        store = InMemoryRecordStore()

        async def go():
            inactive = await make_data_source(store, is_active=False)
            news = await make_data_source(store, name="NewsAPI", provider="newsapi")
            return await ToolCatalog(store).generate_tools([inactive.id, 999, news.id])

        assert _names(_run(go())) == ["newsapi_searchNews"]

    def test_deterministic_and_ordered(self):
        store = InMemoryRecordStore()

        async def go():
            patents = await make_data_source(store, name="Patents", provider="google_patents")
            crunch = await make_data_source(store, name="Crunchbase", provider="crunchbase")
            catalog = ToolCatalog(store)
            first = await catalog.generate_tools([crunch.id, patents.id])
            second = await catalog.generate_tools([crunch.id, patents.id])
            return first, second

        first, second = _run(go())
        assert json.dumps(first) == json.dumps(second)
        assert _names(first) == ["crunchbase_searchCompany", "patents_searchPatent"]

    def test_schemas_are_copies(self):
        store = InMemoryRecordStore()

        async def go():
            source = await make_data_source(store)
            return await ToolCatalog(store).generate_tools([source.id])

        tools = _run(go())
        tools[0]["function"]["parameters"]["properties"].clear()
        assert TOOL_METHODS["fda"]["searchDrug"][1]["properties"]


# ---------------------------------------------------------------------------
# Test: parsing and query synthesis
# ---------------------------------------------------------------------------


class TestParseToolName:
    def test_splits_at_first_underscore(self):
        parsed = parse_tool_name("openfda_searchDrug")
        assert (parsed.provider_base, parsed.method) == ("openfda", "searchDrug")

    def test_method_keeps_remaining_underscores(self):
        parsed = parse_tool_name("openfda_drugs_searchDrug")
        assert (parsed.provider_base, parsed.method) == ("openfda", "drugs_searchDrug")

    @pytest.mark.parametrize("name", ["searchDrug", "_searchDrug", "openfda_", ""])
    def test_invalid(self, name):
        with pytest.raises(ToolNameInvalid):
            parse_tool_name(name)


class TestSynthesiseQuery:
    def test_search_drug_with_year(self):
        assert synthesise_query("searchDrug", {"query": "aspirin", "year": "2023"}) == (
            "aspirin approved in 2023"
        )

    def test_search_drug_without_year(self):
        assert synthesise_query("searchDrug", {"query": "aspirin"}) == "aspirin"

    def test_get_all_drugs_default_limit(self):
        assert synthesise_query("getAllDrugs", {}) == "fetch all drugs limit 20"
        assert synthesise_query("getAllDrugs", {"limit": 50}) == "fetch all drugs limit 50"

    def test_recall_and_device(self):
        assert synthesise_query("getRecallInfo", {"product": "ibuprofen"}) == "recall ibuprofen"
        assert synthesise_query("searchDevice", {"query": "stent"}) == "device stent"

    def test_other_methods_use_query(self):
        assert synthesise_query("searchNews", {"query": "FDA approval"}) == "FDA approval"


# ---------------------------------------------------------------------------
# Test: execute_tool
# ---------------------------------------------------------------------------


class SlowConnector:
    async def fetch(self, config, query):
        await asyncio.sleep(1)
        return {"status": "SUCCESS", "data": [1]}


class TestExecuteTool:
    def _execute(self, tool_name, args, connector=None, timeout=5, **source):
        store = InMemoryRecordStore()
        connector = connector or FakeConnector()

        async def go():
            config = await make_data_source(store, **source)
            invoker = ToolInvoker(store, connector, timeout=timeout)
            return await invoker.execute_tool(tool_name, args, [config.id])

        return _run(go()), connector

    def test_success(self):
        result, connector = self._execute("openfda_searchDrug", {"query": "aspirin"})
        assert result.ok
        assert result.data["status"] == "SUCCESS"
        assert connector.calls == [(1, "aspirin")]

    def test_unknown_provider_is_config_not_found(self):
        result, connector = self._execute("unknownprovider_call", {"query": "x"})
        assert not result.ok
        assert result.data is None
        assert result.error_kind == "config_not_found"
        assert result.error.startswith(
            "API configuration not found for provider: unknownprovider"
        )
        assert connector.calls == []

    def test_invalid_name(self):
        result, _ = self._execute("searchDrug", {})
        assert result.error_kind == "tool_name_invalid"

    def test_unknown_method(self):
        result, _ = self._execute("openfda_deleteDrug", {})
        assert result.error_kind == "tool_method_unknown"
        assert result.error == "Unknown fda tool method: deleteDrug"

    def test_full_config_name_prefix(self):
        result, connector = self._execute(
            "openfda_drugs_searchDrug", {"query": "insulin"}, name="OpenFDA Drugs",
        )
        assert result.ok
        assert connector.calls == [(1, "insulin")]

    def test_config_matched_by_name(self):
        result, connector = self._execute(
            "acme_call", {"query": "widgets"}, name="Acme Data", provider="acme-rest",
        )
        assert result.ok
        assert connector.calls == [(1, "widgets")]

    def test_config_outside_available_ids(self):
        store = InMemoryRecordStore()

        async def go():
            await make_data_source(store)
            invoker = ToolInvoker(store, FakeConnector())
            return await invoker.execute_tool("openfda_searchDrug", {"query": "x"}, [])

        assert _run(go()).error_kind == "config_not_found"

    def test_connector_error_becomes_result(self):
        result, _ = self._execute(
            "openfda_searchDrug", {"query": "x"},
            connector=FakeConnector(error=DataSourceError("fda", "boom")),
        )
        assert result.error == "fda request failed: boom"
        assert result.error_kind == "data_source_failed"

    def test_timeout_becomes_result(self):
        result, _ = self._execute(
            "openfda_searchDrug", {"query": "x"}, connector=SlowConnector(), timeout=0.01,
        )
        assert result.error == "Tool openfda_searchDrug timed out after 0.01s"

    def test_non_dict_arguments_tolerated(self):
        result, connector = self._execute("openfda_getAllDrugs", None)
        assert result.ok
        assert connector.calls == [(1, "fetch all drugs limit 20")]


class TestCatalogRoundTrip:
    """Every name the catalog generates resolves back to its own config."""

    def test_multi_word_names_resolve_to_their_config(self):
        store = InMemoryRecordStore()
        connector = FakeConnector()

        async def go():
            business = await make_data_source(store, name="Business Data", provider="crunchbase")
            drugs = await make_data_source(store, name="US Drug Database", provider="fda")
            ids = [business.id, drugs.id]
            tools = await ToolCatalog(store).generate_tools(ids)
            invoker = ToolInvoker(store, connector, timeout=5)
            results = [
                await invoker.execute_tool(name, {"query": "acme"}, ids)
                for name in _names(tools)
            ]
            return business, drugs, tools, results

        business, drugs, tools, results = _run(go())
        assert _names(tools) == [
            "business_data_searchCompany",
            "us_drug_database_searchDrug", "us_drug_database_getAllDrugs",
            "us_drug_database_getRecallInfo", "us_drug_database_searchDevice",
        ]
        assert [r.error for r in results] == [None] * 5
        assert [config_id for config_id, _ in connector.calls] == [
            business.id, drugs.id, drugs.id, drugs.id, drugs.id,
        ]
        assert connector.calls[2] == (drugs.id, "fetch all drugs limit 20")

    def test_short_provider_base_still_resolves(self):
        store = InMemoryRecordStore()
        connector = FakeConnector()

        async def go():
            business = await make_data_source(store, name="Business Data", provider="crunchbase")
            drugs = await make_data_source(store, name="US Drug Database", provider="fda")
            invoker = ToolInvoker(store, connector, timeout=5)
            result = await invoker.execute_tool(
                "fda_searchDrug", {"query": "aspirin"}, [business.id, drugs.id],
            )
            return drugs, result

        drugs, result = _run(go())
        assert result.ok
        assert connector.calls == [(drugs.id, "aspirin")]


class TestFetchAll:
    def test_failures_become_entries(self):
        store = InMemoryRecordStore()

        async def go():
            good = await make_data_source(store)
            bad = await make_data_source(store, name="Broken", provider="broken")

            class MixedConnector(FakeConnector):
                async def fetch(self, config, query):
                    if config.id == bad.id:
                        raise DataSourceError("broken", "status 500")
                    return await super().fetch(config, query)

            invoker = ToolInvoker(store, MixedConnector())
            return await invoker.fetch_all([good.id, 999, bad.id], "aspirin")

        results = _run(go())
        assert len(results) == 2
        assert results[0]["status"] == "SUCCESS"
        assert results[1] == {
            "source": "broken",
            "status": "FAILED_OR_EMPTY",
            "error": "broken request failed: status 500",
            "data": None,
        }


# ---------------------------------------------------------------------------
# Test: format_tool_result
# ---------------------------------------------------------------------------


class TestFormatToolResult:
    def test_error(self):
        text = format_tool_result("x_call", ToolResult(tool="x_call", error="boom"))
        assert text == "Error: boom"

    def test_no_data(self):
        assert format_tool_result("x_call", ToolResult(tool="x_call", data=None)) == (
            "No data returned from tool."
        )
        empty = ToolResult(tool="x_call", data={"status": "FAILED_OR_EMPTY", "data": None})
        assert format_tool_result("x_call", empty) == "No data returned from tool."

    def test_fda_drug_records_listed(self):
        records = [{"brand_name": f"Drug {i}", "generic_name": "g"} for i in range(12)]
        result = ToolResult(
            tool="openfda_searchDrug",
            data={"source": "fda", "status": "SUCCESS", "endpoint": "drug", "data": records},
        )
        text = format_tool_result("openfda_searchDrug", result)
        assert text.startswith("FDA Drug Data (12 records):")
        assert "Brand Name: Drug 9" in text
        assert "Brand Name: Drug 10" not in text
        assert text.endswith("... and 2 more drug records.")

    def test_drug_lines_shared_with_prompt_indent(self):
        records = [{
            "brand_name": "Bayer Aspirin",
            "substance_name": "ASPIRIN",
            "indications_and_usage": ["pain", "fever", "other"],
        }]
        assert format_drug_records(records, indent="  ") == [
            "  Drug 1:",
            "    Brand Name: Bayer Aspirin",
            "    Substance: ASPIRIN",
            "    Indications: pain; fever",
        ]

    def test_other_payloads_pretty_json(self):
        payload = {"source": "news", "status": "SUCCESS", "data": [{"title": "t"}]}
        text = format_tool_result("news_searchNews", ToolResult(tool="n", data=payload))
        assert text == json.dumps(payload, indent=4, ensure_ascii=False, default=str)
