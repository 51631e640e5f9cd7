# =============================================================================
# Tool Invoker — Execute Model-Requested Tool Calls
# =============================================================================
#
# FLOW (one tool call):
#   "openfda_searchDrug" ──parse──▶ ToolName(provider_base="openfda",
#                                            method="searchDrug")
#        ──resolve──▶ active ExternalDataSourceConfig among the caller's ids
#        ──validate──▶ method defined for the config's provider family
#        ──synthesise──▶ "aspirin approved in 2023"
#        ──fetch──▶ DataConnector.fetch(config, query)  (own timeout)
#        ──▶ ToolResult(tool, data, error)
#
# execute_tool() never raises (cancellation aside). Every failure becomes
# ToolResult(error=..., data=None) so the tool loop can hand it back to the
# model as evidence instead of aborting the turn.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any

from aihub.config import settings
from aihub.db.models import ExternalDataSourceConfig
from aihub.db.store import RecordStore
from aihub.errors import (
    ConfigNotFound,
    ToolExecutionError,
    ToolMethodUnknown,
    ToolNameInvalid,
)
from aihub.services.connectors import DataConnector
from aihub.services.tool_catalog import (
    PROVIDER_ALIASES,
    TOOL_METHODS,
    provider_family,
    tool_prefix,
)

logger = logging.getLogger(__name__)

MAX_FORMATTED_DRUGS = 10

_DRUG_FIELDS = (
    ("Brand Name", "brand_name"),
    ("Generic Name", "generic_name"),
    ("Substance", "substance_name"),
)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolName:
    """A tool name split once at the first underscore."""

    provider_base: str
    method: str


@dataclass
class ToolResult:
    """
    Outcome of one tool call.

    Exactly one of `data` / `error` is meaningful; `error_kind` carries the
    ToolExecutionError.kind for failures raised by the invoker itself.
    """

    tool: str
    data: Any = None
    error: str | None = None
    error_kind: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def as_evidence(self) -> dict[str, Any]:
        """JSON-safe snapshot stored in Message.external_data."""
        return {
            "tool": self.tool,
            "data": self.data,
            "error": self.error,
        }


def parse_tool_name(tool_name: str) -> ToolName:
    """
    Split "{provider_base}_{method}" at the first underscore.

    The method may itself contain underscores. Raises ToolNameInvalid when
    there is no underscore or either side is empty.
    """
    provider_base, sep, method = (tool_name or "").partition("_")
    if not sep or not provider_base or not method:
        raise ToolNameInvalid(f"Invalid tool name format: {tool_name}")
    return ToolName(provider_base=provider_base, method=method)


def synthesise_query(method: str, arguments: dict[str, Any]) -> str:
    """Method-specific free-text query for the data connector."""
    if method == "searchDrug":
        query = str(arguments.get("query", ""))
        if arguments.get("year"):
            query += f" approved in {arguments['year']}"
        return query
    if method == "getAllDrugs":
        return f"fetch all drugs limit {arguments.get('limit') or 20}"
    if method == "getRecallInfo":
        return f"recall {arguments.get('product', '')}"
    if method == "searchDevice":
        return f"device {arguments.get('query', '')}"
    return str(arguments.get("query", ""))


def _canonical(provider: str) -> str:
    key = provider.lower()
    return PROVIDER_ALIASES.get(key, key)


# ---------------------------------------------------------------------------
# Result Formatting
# ---------------------------------------------------------------------------


def format_drug_records(records: list[dict[str, Any]], indent: str = "") -> list[str]:
    """Readable lines for the first MAX_FORMATTED_DRUGS FDA drug records."""
    lines: list[str] = []
    for index, drug in enumerate(records[:MAX_FORMATTED_DRUGS], start=1):
        lines.append(f"{indent}Drug {index}:")
        for label, key in _DRUG_FIELDS:
            if drug.get(key):
                lines.append(f"{indent}  {label}: {drug[key]}")
        indications = drug.get("indications_and_usage")
        if isinstance(indications, list) and indications:
            lines.append(f"{indent}  Indications: {'; '.join(indications[:2])}")
        description = drug.get("description")
        if isinstance(description, list) and description:
            lines.append(f"{indent}  Description: {str(description[0])[:200]}...")
    if len(records) > MAX_FORMATTED_DRUGS:
        lines.append(
            f"{indent}... and {len(records) - MAX_FORMATTED_DRUGS} more drug records."
        )
    return lines


def format_tool_result(tool_name: str, result: ToolResult) -> str:
    """
    Render a tool result as the content of a tool-result message.

    - failures          → "Error: {message}"
    - no data           → "No data returned from tool."
    - FDA drug records  → readable list of the first 10 records
    - anything else     → pretty-printed JSON
    """
    if result.error is not None:
        return f"Error: {result.error}"

    payload = result.data
    if not payload:
        return "No data returned from tool."
    if isinstance(payload, dict) and "status" in payload and not payload.get("data"):
        return "No data returned from tool."

    records = payload.get("data") if isinstance(payload, dict) else None
    if (
        "fda" in tool_name.lower()
        and isinstance(records, list)
        and payload.get("endpoint", "drug") == "drug"
    ):
        lines = [f"FDA Drug Data ({len(records)} records):", ""]
        lines.extend(format_drug_records(records))
        return "\n".join(lines)

    return json.dumps(payload, indent=4, ensure_ascii=False, default=str)


# ---------------------------------------------------------------------------
# Invoker
# ---------------------------------------------------------------------------


class ToolInvoker:
    """Resolves and executes tool calls against configured data sources."""

    def __init__(
        self,
        store: RecordStore,
        connector: DataConnector,
        timeout: float | None = None,
    ) -> None:
        self._store = store
        self._connector = connector
        self._timeout = timeout or settings.tool_timeout_seconds

    @property
    def connector(self) -> DataConnector:
        return self._connector

    async def execute_tool(
        self,
        tool_name: str,
        arguments: dict[str, Any] | None,
        available_config_ids: list[int],
    ) -> ToolResult:
        """
        Execute one tool call. Never raises; failures land in ToolResult.error.

        Args:
            tool_name: Name the model called, e.g. "openfda_searchDrug".
            arguments: Parsed JSON arguments from the model.
            available_config_ids: The agent's configured data-source ids;
                resolution never looks outside this list.
        """
        arguments = arguments if isinstance(arguments, dict) else {}

        try:
            parsed = parse_tool_name(tool_name)
            config, method = await self._resolve(
                tool_name, parsed, available_config_ids,
            )
        except ToolExecutionError as exc:
            logger.warning("Tool %s rejected (%s): %s", tool_name, exc.kind, exc)
            return ToolResult(tool=tool_name, error=str(exc), error_kind=exc.kind)
        except Exception as exc:
            logger.exception("Tool %s could not be resolved", tool_name)
            return ToolResult(tool=tool_name, error=f"Tool resolution failed: {exc}")

        query = synthesise_query(method, arguments)
        logger.info(
            "Executing tool %s via config %s (method=%s, query=%.100s)",
            tool_name, config.id, method, query,
        )

        try:
            data = await asyncio.wait_for(
                self._connector.fetch(config, query), timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %.1fs", tool_name, self._timeout)
            return ToolResult(
                tool=tool_name,
                error=f"Tool {tool_name} timed out after {self._timeout:g}s",
            )
        except ToolExecutionError as exc:
            logger.warning("Tool %s failed (%s): %s", tool_name, exc.kind, exc)
            return ToolResult(tool=tool_name, error=str(exc), error_kind=exc.kind)
        except Exception as exc:
            logger.exception("Tool %s failed", tool_name)
            return ToolResult(tool=tool_name, error=str(exc) or type(exc).__name__)

        return ToolResult(tool=tool_name, data=data)

    async def fetch_all(
        self, config_ids: list[int], query: str,
    ) -> list[dict[str, Any]]:
        """
        Eager prefetch: query every active configured source upfront.

        Used when tool schemas could not be generated. Failed sources are
        returned as FAILED_OR_EMPTY entries carrying their error.
        """
        results: list[dict[str, Any]] = []
        for config_id in config_ids:
            config = await self._store.get(ExternalDataSourceConfig, config_id)
            if config is None or not config.is_active:
                logger.warning(
                    "Data source %s not found or inactive, skipping prefetch",
                    config_id,
                )
                continue
            try:
                data = await asyncio.wait_for(
                    self._connector.fetch(config, query), timeout=self._timeout,
                )
            except asyncio.TimeoutError:
                results.append(self._failed_entry(
                    config, f"timed out after {self._timeout:g}s",
                ))
                continue
            except Exception as exc:
                logger.warning("Prefetch from data source %s failed: %s", config_id, exc)
                results.append(self._failed_entry(config, str(exc)))
                continue
            if data:
                results.append(data)
        return results

    @staticmethod
    def _failed_entry(config: ExternalDataSourceConfig, error: str) -> dict[str, Any]:
        return {
            "source": config.provider,
            "status": "FAILED_OR_EMPTY",
            "error": error,
            "data": None,
        }

    async def _resolve(
        self, tool_name: str, parsed: ToolName, config_ids: list[int],
    ) -> tuple[ExternalDataSourceConfig, str]:
        """
        Find the config and method a tool name refers to.

        Catalog names are "{sanitised config name}_{method}", and the config
        name may contain underscores itself ("us_drug_database_searchDrug").
        A config whose full prefix matches and whose family defines the
        remainder wins. Otherwise the first config whose provider matches the
        provider base (aliases applied) or whose name contains it is used.
        """
        configs = []
        for config_id in config_ids:
            config = await self._store.get(ExternalDataSourceConfig, config_id)
            if config is not None and config.is_active:
                configs.append(config)

        lowered = tool_name.lower()
        for config in configs:
            prefix = tool_prefix(config) + "_"
            if lowered.startswith(prefix):
                remainder = tool_name[len(prefix):]
                if remainder in TOOL_METHODS[provider_family(config.provider)]:
                    return config, remainder

        base = parsed.provider_base.lower()
        for config in configs:
            if (
                _canonical(config.provider or "") == _canonical(base)
                or base in (config.name or "").lower()
            ):
                family = provider_family(config.provider)
                if parsed.method not in TOOL_METHODS[family]:
                    raise ToolMethodUnknown(
                        f"Unknown {family} tool method: {parsed.method}"
                    )
                return config, parsed.method

        raise ConfigNotFound(
            f"API configuration not found for provider: {parsed.provider_base}. "
            f"Available configs: {', '.join(str(i) for i in config_ids)}"
        )
