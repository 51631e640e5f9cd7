# =============================================================================
# Tool Catalog — Function-Calling Schemas from Data-Source Configs
# =============================================================================
#
# Turns an agent's ordered list of ExternalDataSourceConfig ids into tool
# schemas in OpenAI function-calling format:
#
#   {"type": "function",
#    "function": {"name": "{prefix}_{method}", "description": ...,
#                 "parameters": {JSON schema}}}
#
# prefix = sanitised config name (fallback: provider id).
#
# PROVIDER FAMILIES:
#   fda / openfda                → searchDrug, getAllDrugs, getRecallInfo,
#                                  searchDevice
#   crunchbase                   → searchCompany
#   patents / google_patents     → searchPatent
#   news / newsapi               → searchNews
#   anything else (generic REST) → call
#
# Output is deterministic: the same ids in the same order always yield
# byte-identical schemas (no sets, no timestamps, no randomness).
# =============================================================================

from __future__ import annotations

import copy
import logging
import re
from typing import Any

from aihub.db.models import ExternalDataSourceConfig
from aihub.db.store import RecordStore

logger = logging.getLogger(__name__)

ToolSchema = dict[str, Any]

GENERIC_FAMILY = "generic"

# Alternate provider spellings → canonical family
PROVIDER_ALIASES: dict[str, str] = {
    "openfda": "fda",
    "google_patents": "patents",
    "newsapi": "news",
}


def _query_param(description: str) -> dict[str, Any]:
    return {"type": "string", "description": description}


# ---------------------------------------------------------------------------
# Method Table
# ---------------------------------------------------------------------------
# family → method → (description, parameters). Dict insertion order is the
# order tools are emitted in.
# ---------------------------------------------------------------------------

TOOL_METHODS: dict[str, dict[str, tuple[str, dict[str, Any]]]] = {
    "fda": {
        "searchDrug": (
            "Search FDA drug database by brand name, generic name, or "
            "indication. Returns drug information including brand name, "
            "generic name, indications, warnings, and dosage.",
            {
                "type": "object",
                "properties": {
                    "query": _query_param(
                        "Search term: drug name (brand or generic), "
                        'indication, or condition (e.g., "aspirin", '
                        '"diabetes", "hypertension")'
                    ),
                    "year": _query_param(
                        'Optional: Filter by approval year (e.g., "2023")'
                    ),
                },
                "required": ["query"],
            },
        ),
        "getAllDrugs": (
            "Fetch a list of recent FDA-approved drugs. Use when the user "
            'asks for "all drugs" or wants to browse available drugs.',
            {
                "type": "object",
                "properties": {
                    "limit": {
                        "type": "integer",
                        "description": (
                            "Number of drugs to return (default: 20, max: 100)"
                        ),
                    },
                },
                "required": [],
            },
        ),
        "getRecallInfo": (
            "Get FDA recall information for a product, company, or brand name.",
            {
                "type": "object",
                "properties": {
                    "product": _query_param(
                        "Product name, brand name, or company name to search "
                        'for recalls (e.g., "aspirin", "Johnson & Johnson")'
                    ),
                },
                "required": ["product"],
            },
        ),
        "searchDevice": (
            "Search FDA medical device database by device name or "
            "classification.",
            {
                "type": "object",
                "properties": {
                    "query": _query_param(
                        "Device name or classification to search for"
                    ),
                },
                "required": ["query"],
            },
        ),
    },
    "crunchbase": {
        "searchCompany": (
            "Search Crunchbase for company information by name.",
            {
                "type": "object",
                "properties": {
                    "query": _query_param("Company name to search for"),
                },
                "required": ["query"],
            },
        ),
    },
    "patents": {
        "searchPatent": (
            "Search Google Patents database for patents by keyword, "
            "inventor, or assignee.",
            {
                "type": "object",
                "properties": {
                    "query": _query_param(
                        "Search term: patent title, keyword, inventor name, "
                        "or assignee company"
                    ),
                },
                "required": ["query"],
            },
        ),
    },
    "news": {
        "searchNews": (
            "Search for recent news articles by keyword or topic.",
            {
                "type": "object",
                "properties": {
                    "query": _query_param(
                        'Search term or topic (e.g., "artificial '
                        'intelligence", "FDA approval")'
                    ),
                },
                "required": ["query"],
            },
        ),
    },
    GENERIC_FAMILY: {
        "call": (
            "",  # replaced by config["description"] or "Call the {name} API"
            {
                "type": "object",
                "properties": {
                    "query": _query_param(
                        "Search query or parameters for the API"
                    ),
                },
                "required": ["query"],
            },
        ),
    },
}


# ---------------------------------------------------------------------------
# Helpers (shared with the invoker and connectors)
# ---------------------------------------------------------------------------


def provider_family(provider: str | None) -> str:
    """Canonical provider family for a provider id ("openfda" → "fda")."""
    key = (provider or "").strip().lower()
    key = PROVIDER_ALIASES.get(key, key)
    return key if key in TOOL_METHODS else GENERIC_FAMILY


def sanitise_name(name: str) -> str:
    """
    Lower-case slug usable as a function-name prefix.

    Non-alphanumeric runs collapse to a single "_", leading and trailing
    "_" are trimmed: "OpenFDA  Drugs (US)" → "openfda_drugs_us".
    """
    slug = re.sub(r"[^a-z0-9]+", "_", (name or "").lower())
    return slug.strip("_")


def tool_prefix(config: ExternalDataSourceConfig) -> str:
    return sanitise_name(config.name or "") or sanitise_name(config.provider)


def build_tools_for_config(config: ExternalDataSourceConfig) -> list[ToolSchema]:
    """Tool schemas for one data-source config, in method-table order."""
    family = provider_family(config.provider)
    prefix = tool_prefix(config)

    tools: list[ToolSchema] = []
    for method, (description, parameters) in TOOL_METHODS[family].items():
        if family == GENERIC_FAMILY:
            description = (config.config or {}).get("description") or (
                f"Call the {config.name} API"
            )
        tools.append({
            "type": "function",
            "function": {
                "name": f"{prefix}_{method}",
                "description": description,
                "parameters": copy.deepcopy(parameters),
            },
        })
    return tools


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class ToolCatalog:
    """Generates tool schemas for an agent's configured data sources."""

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    async def generate_tools(self, config_ids: list[int]) -> list[ToolSchema]:
        """
        Build tool schemas for every active config, in input order.

        Missing or inactive configs are skipped with a log line. Storage
        errors propagate to the caller.
        """
        tools: list[ToolSchema] = []
        for config_id in config_ids:
            config = await self._store.get(ExternalDataSourceConfig, config_id)
            if config is None:
                logger.warning("Data source config %s not found, skipping", config_id)
                continue
            if not config.is_active:
                logger.info("Data source config %s is inactive, skipping", config_id)
                continue
            tools.extend(build_tools_for_config(config))

        logger.debug(
            "Generated %d tools from %d config ids", len(tools), len(config_ids),
        )
        return tools
