# =============================================================================
# Model Provider Gateway — Pluggable LLM Backends with Tool Calling
# =============================================================================
#
# One `generate()` call shape for every backend: model name + ordered chat
# messages + GenerationOptions in, LLMResponse (text, token counts, tool
# calls) out.
#
# Messages use the OpenAI chat format internally:
#   {"role": "system" | "user" | "assistant", "content": "..."}
#   {"role": "assistant", "content": "...", "tool_calls": [...]}
#   {"role": "tool", "tool_call_id": "...", "content": "..."}
# Adapters translate to their wire format where it differs.
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── OpenAIProvider       — OpenAI SDK, native function calling
#   │   ├── GeminiProvider   — Gemini's OpenAI-compatible endpoint
#   │   └── MistralProvider  — Mistral's OpenAI-compatible endpoint
#   ├── ClaudeProvider       — Anthropic SDK, tool_use / tool_result blocks,
#   │                          system prompt as top-level kwarg
#   ├── PROVIDER_REGISTRY    — ModelProvider enum → adapter class
#   ├── get_provider()       — cached adapter per provider
#   └── ModelProviderGateway — dispatches generate() by provider
#
# Retries live in the SDK clients (settings.llm_max_retries); every call has
# its own timeout (settings.llm_timeout_seconds). A timeout surfaces as
# ProviderUnavailable, a non-2xx answer as ProviderRequestFailed.
# =============================================================================

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from aihub.config import settings
from aihub.db.models import ModelProvider
from aihub.errors import (
    ConfigurationError,
    ProviderRequestFailed,
    ProviderUnavailable,
)

logger = logging.getLogger(__name__)

ChatMessage = dict[str, Any]
ToolSchema = dict[str, Any]


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ToolCall:
    """One tool invocation requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class GenerationOptions:
    """
    Per-call generation parameters.

    `extra` carries provider-specific keys from Agent.model_config
    (e.g. top_p) and is passed through to the SDK unchanged.
    """

    temperature: float | None = None
    max_tokens: int | None = None
    tools: list[ToolSchema] | None = None
    tool_choice: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_model_config(
        cls,
        model_config: dict[str, Any] | None,
        tools: list[ToolSchema] | None = None,
    ) -> GenerationOptions:
        """Build options from an agent's model_config map."""
        config = dict(model_config or {})
        temperature = config.pop("temperature", None)
        max_tokens = config.pop("max_tokens", None)
        tool_choice = config.pop("tool_choice", None)
        try:
            temperature = (
                float(temperature) if temperature is not None
                else settings.default_temperature
            )
            max_tokens = (
                int(max_tokens) if max_tokens is not None
                else settings.default_max_tokens
            )
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(
                f"Invalid model_config value: {exc}"
            ) from exc
        return cls(
            temperature=temperature,
            max_tokens=max_tokens,
            tools=tools or None,
            tool_choice=tool_choice or ("auto" if tools else None),
            extra=config,
        )


@dataclass
class LLMResponse:
    """
    Standardised response from any provider.

    Empty content with no tool calls is returned as-is.
    """

    content: str           # Generated text ("" when only tools were requested)
    model: str             # Model identifier echoed by the provider
    input_tokens: int      # Tokens consumed by the prompt
    output_tokens: int     # Tokens generated in the response
    tool_calls: list[ToolCall] = field(default_factory=list)


def assistant_tool_call_message(response: LLMResponse) -> ChatMessage:
    """Render a tool-requesting response as an assistant chat message."""
    return {
        "role": "assistant",
        "content": response.content or "",
        "tool_calls": [
            {
                "id": call.id,
                "type": "function",
                "function": {
                    "name": call.name,
                    "arguments": json.dumps(call.arguments),
                },
            }
            for call in response.tool_calls
        ],
    }


def tool_result_message(tool_call_id: str, content: str) -> ChatMessage:
    return {"role": "tool", "tool_call_id": tool_call_id, "content": content}


def _parse_arguments(raw: str | dict | None) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Tool call arguments are not valid JSON: %.200s", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """Interface every backend adapter implements."""

    async def generate(
        self,
        model_name: str,
        messages: list[ChatMessage],
        options: GenerationOptions,
    ) -> LLMResponse:
        """
        Generate one completion.

        Args:
            model_name: Provider model identifier.
            messages: Ordered chat messages (OpenAI format, system first).
            options: Sampling parameters and optional tool schemas.

        Raises:
            ProviderUnavailable: No key, connection error or timeout.
            ProviderRequestFailed: Upstream answered with an error status.
        """
        ...


# ---------------------------------------------------------------------------
# Implementation 1: OpenAI (and OpenAI-compatible endpoints)
# ---------------------------------------------------------------------------


class OpenAIProvider:
    """
    OpenAI chat completions with native function calling.

    Subclasses only change the key and base URL, since Gemini and Mistral
    both expose OpenAI-compatible endpoints.
    """

    provider = ModelProvider.OPENAI

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
    ) -> None:
        from openai import AsyncOpenAI

        resolved_key = api_key or self._default_api_key()
        if not resolved_key:
            raise ProviderUnavailable(
                self.provider.value,
                "no API key configured",
            )

        resolved_base_url = base_url or self._default_base_url()
        client_kwargs: dict = {
            "api_key": resolved_key,
            "timeout": settings.llm_timeout_seconds,
            "max_retries": settings.llm_max_retries,
        }
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url

        self._client = AsyncOpenAI(**client_kwargs)

        logger.info(
            "Initialized %s (base_url=%s)",
            type(self).__name__,
            resolved_base_url or "https://api.openai.com/v1",
        )

    def _default_api_key(self) -> str:
        return settings.openai_api_key

    def _default_base_url(self) -> str | None:
        return settings.openai_base_url

    async def generate(
        self,
        model_name: str,
        messages: list[ChatMessage],
        options: GenerationOptions,
    ) -> LLMResponse:
        import openai

        kwargs: dict[str, Any] = {
            "model": model_name,
            "messages": messages,
            **options.extra,
        }
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature
        if options.max_tokens is not None:
            kwargs["max_tokens"] = options.max_tokens
        if options.tools:
            kwargs["tools"] = options.tools
            kwargs["tool_choice"] = options.tool_choice or "auto"

        try:
            response = await self._client.chat.completions.create(**kwargs)
        except openai.APIStatusError as exc:
            raise ProviderRequestFailed(
                self.provider.value, exc.status_code, exc.response.text,
            ) from exc
        except openai.APIConnectionError as exc:
            # APITimeoutError is a subclass of APIConnectionError
            raise ProviderUnavailable(self.provider.value, str(exc)) from exc

        if not response.choices:
            raise ProviderRequestFailed(
                self.provider.value, None, "response contained no choices",
            )
        message = response.choices[0].message

        tool_calls = [
            ToolCall(
                id=call.id,
                name=call.function.name,
                arguments=_parse_arguments(call.function.arguments),
            )
            for call in (message.tool_calls or [])
            if getattr(call, "function", None) is not None
        ]

        usage = response.usage
        return LLMResponse(
            content=message.content or "",
            model=response.model or model_name,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            tool_calls=tool_calls,
        )


class GeminiProvider(OpenAIProvider):
    """Google Gemini through its OpenAI-compatible endpoint."""

    provider = ModelProvider.GEMINI

    def _default_api_key(self) -> str:
        return settings.gemini_api_key

    def _default_base_url(self) -> str | None:
        return settings.gemini_base_url


class MistralProvider(OpenAIProvider):
    """Mistral AI through its OpenAI-compatible endpoint."""

    provider = ModelProvider.MISTRAL

    def _default_api_key(self) -> str:
        return settings.mistral_api_key

    def _default_base_url(self) -> str | None:
        return settings.mistral_base_url


# ---------------------------------------------------------------------------
# Implementation 2: Anthropic (Claude)
# ---------------------------------------------------------------------------


_CLAUDE_TOOL_CHOICE = {
    "auto": {"type": "auto"},
    "required": {"type": "any"},
    "any": {"type": "any"},
    "none": {"type": "none"},
}


def _to_claude_tools(tools: list[ToolSchema]) -> list[dict[str, Any]]:
    """OpenAI function schemas → Anthropic tool definitions."""
    converted = []
    for tool in tools:
        function = tool.get("function", tool)
        converted.append({
            "name": function["name"],
            "description": function.get("description", ""),
            "input_schema": function.get(
                "parameters", {"type": "object", "properties": {}},
            ),
        })
    return converted


def _to_claude_messages(
    messages: list[ChatMessage],
) -> tuple[str | None, list[dict[str, Any]]]:
    """
    Split out the system prompt and translate tool turns.

    Consecutive tool results are merged into a single user message, since
    Anthropic expects every tool_result of one assistant turn together.
    """
    system_parts: list[str] = []
    converted: list[dict[str, Any]] = []

    for message in messages:
        role = message["role"]
        if role == "system":
            system_parts.append(message.get("content") or "")
        elif role == "tool":
            block = {
                "type": "tool_result",
                "tool_use_id": message["tool_call_id"],
                "content": message.get("content") or "",
            }
            previous = converted[-1] if converted else None
            if (
                previous is not None
                and previous["role"] == "user"
                and isinstance(previous["content"], list)
                and previous["content"]
                and previous["content"][0].get("type") == "tool_result"
            ):
                previous["content"].append(block)
            else:
                converted.append({"role": "user", "content": [block]})
        elif role == "assistant" and message.get("tool_calls"):
            blocks: list[dict[str, Any]] = []
            if message.get("content"):
                blocks.append({"type": "text", "text": message["content"]})
            for call in message["tool_calls"]:
                blocks.append({
                    "type": "tool_use",
                    "id": call["id"],
                    "name": call["function"]["name"],
                    "input": _parse_arguments(call["function"].get("arguments")),
                })
            converted.append({"role": "assistant", "content": blocks})
        else:
            converted.append({"role": role, "content": message.get("content") or ""})

    system = "\n\n".join(p for p in system_parts if p) or None
    return system, converted


class ClaudeProvider:
    """
    Anthropic Claude via the native SDK.

    Anthropic takes the system prompt as a top-level `system=` kwarg and
    represents tool traffic as content blocks, so messages are translated
    on the way in and tool_use blocks are lifted back into ToolCall.
    """

    provider = ModelProvider.CLAUDE

    def __init__(self, api_key: str | None = None) -> None:
        from anthropic import AsyncAnthropic

        resolved_key = api_key or settings.anthropic_api_key
        if not resolved_key:
            raise ProviderUnavailable(self.provider.value, "no API key configured")

        self._client = AsyncAnthropic(
            api_key=resolved_key,
            timeout=settings.llm_timeout_seconds,
            max_retries=settings.llm_max_retries,
        )
        logger.info("Initialized ClaudeProvider")

    async def generate(
        self,
        model_name: str,
        messages: list[ChatMessage],
        options: GenerationOptions,
    ) -> LLMResponse:
        import anthropic

        system, converted = _to_claude_messages(messages)

        kwargs: dict[str, Any] = {
            "model": model_name,
            "messages": converted,
            # max_tokens is mandatory for the Messages API
            "max_tokens": options.max_tokens or settings.default_max_tokens,
            **options.extra,
        }
        if system:
            kwargs["system"] = system
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature
        if options.tools:
            kwargs["tools"] = _to_claude_tools(options.tools)
            kwargs["tool_choice"] = _CLAUDE_TOOL_CHOICE.get(
                options.tool_choice or "auto", {"type": "auto"},
            )

        try:
            response = await self._client.messages.create(**kwargs)
        except anthropic.APIStatusError as exc:
            raise ProviderRequestFailed(
                self.provider.value, exc.status_code, exc.response.text,
            ) from exc
        except anthropic.APIConnectionError as exc:
            raise ProviderUnavailable(self.provider.value, str(exc)) from exc

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(
                    id=block.id,
                    name=block.name,
                    arguments=dict(block.input or {}),
                ))

        return LLMResponse(
            content="".join(text_parts),
            model=response.model or model_name,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            tool_calls=tool_calls,
        )


# ---------------------------------------------------------------------------
# Registry & Factory
# ---------------------------------------------------------------------------
# Adding a backend = one enum value in ModelProvider + one entry here.
# ---------------------------------------------------------------------------

PROVIDER_REGISTRY: dict[ModelProvider, type] = {
    ModelProvider.OPENAI: OpenAIProvider,
    ModelProvider.CLAUDE: ClaudeProvider,
    ModelProvider.GEMINI: GeminiProvider,
    ModelProvider.MISTRAL: MistralProvider,
}

# Lazy per-provider singletons; SDK clients pool their own connections
_providers: dict[ModelProvider, LLMProvider] = {}


def resolve_provider(provider: str | ModelProvider) -> ModelProvider:
    """Parse a provider string into the enum, or raise ConfigurationError."""
    try:
        return ModelProvider(provider)
    except ValueError:
        raise ConfigurationError(
            f"Unsupported model provider: {provider}. "
            f"Supported: {[p.value for p in ModelProvider]}"
        ) from None


def get_provider(provider: str | ModelProvider) -> LLMProvider:
    """Return the cached adapter for a provider, creating it on first use."""
    key = resolve_provider(provider)
    if key not in _providers:
        _providers[key] = PROVIDER_REGISTRY[key]()
    return _providers[key]


class ModelProviderGateway:
    """
    Entry point used by the runners.

    Resolves the adapter for the agent's provider and forwards the call.
    Tests substitute a scripted gateway with the same `generate` signature.
    """

    async def generate(
        self,
        provider: str | ModelProvider,
        model_name: str,
        messages: list[ChatMessage],
        options: GenerationOptions,
    ) -> LLMResponse:
        adapter = get_provider(provider)
        logger.debug(
            "Generating with %s/%s (%d messages, %d tools)",
            resolve_provider(provider).value,
            model_name,
            len(messages),
            len(options.tools or []),
        )
        return await adapter.generate(model_name, messages, options)
