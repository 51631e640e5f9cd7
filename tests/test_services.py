# =============================================================================
# Unit Tests — Pricing, Usage, Crypto, Provider Gateway
# =============================================================================

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import anthropic
import httpx
import openai
import pytest

from aihub.db.models import Agent
from aihub.db.store import InMemoryRecordStore
from aihub.errors import ConfigurationError, ProviderRequestFailed, ProviderUnavailable
from aihub.services import crypto
from aihub.services.llm import (
    ClaudeProvider,
    GenerationOptions,
    LLMResponse,
    ModelProviderGateway,
    OpenAIProvider,
    ToolCall,
    _to_claude_messages,
    _to_claude_tools,
    assistant_tool_call_message,
    resolve_provider,
    tool_result_message,
)
from aihub.services.pricing import (
    DEFAULT_PRICING,
    PRICING_REGISTRY,
    ModelPricing,
    calculate_cost,
    get_pricing,
)
from aihub.services.usage import TokenUsage, UsageRecorder
from fakes import _run

# ---------------------------------------------------------------------------
# Test: pricing
# ---------------------------------------------------------------------------


class TestPricing:
    def test_one_million_each_way(self):
        with patch.dict(PRICING_REGISTRY, {("openai", "test-model"): ModelPricing(10.0, 30.0)}):
            assert calculate_cost("openai", "test-model", 1_000_000, 1_000_000) == pytest.approx(40.0)

    def test_unknown_model_uses_default(self):
        assert get_pricing("openai", "no-such-model") == DEFAULT_PRICING
        assert calculate_cost("mistral", "nope", 500_000, 500_000) == pytest.approx(1.0)

    def test_zero_tokens(self):
        assert calculate_cost("openai", "gpt-4-turbo", 0, 0) == 0.0

    def test_registry_keys_are_known_providers(self):
        providers = {provider for provider, _ in PRICING_REGISTRY}
        assert providers <= {"openai", "claude", "gemini", "mistral"}


class TestUsageRecorder:
    def _agent(self):
        return Agent(
            id=3, suite_id=2, name="A", model_provider="openai", model_name="gpt-4-turbo",
        )

    def test_record_written(self):
        store = InMemoryRecordStore()
        tokens = TokenUsage()
        tokens.add(1_000_000, 0)
        tokens.add(0, 1_000_000)

        record = _run(UsageRecorder(store).log(self._agent(), tokens, 9, 4, action="workflow_step"))
        assert record.id == 1
        assert (record.user_id, record.suite_id, record.agent_id, record.chat_id) == (9, 2, 3, 4)
        assert record.action == "workflow_step"
        assert record.status == "success"
        assert record.cost_usd == pytest.approx(40.0)
        assert record.created_at is not None

    def test_store_failure_swallowed(self):
        store = InMemoryRecordStore()
        store.add = AsyncMock(side_effect=RuntimeError("db down"))
        assert _run(UsageRecorder(store).log(self._agent(), TokenUsage(), 1, 1)) is None


# ---------------------------------------------------------------------------
# Test: credential encryption
# ---------------------------------------------------------------------------


class TestCrypto:
    def setup_method(self):
        crypto.reset_cipher()

    def teardown_method(self):
        crypto.reset_cipher()

    def test_round_trip_and_not_plaintext(self):
        token = crypto.encrypt("sk-secret")
        assert token != "sk-secret"
        assert crypto.decrypt(token) == "sk-secret"

    def test_empty_values(self):
        assert crypto.encrypt("") == ""
        assert crypto.decrypt(None) == ""

    def test_wrong_key_rejected(self):
        with patch.object(crypto.settings, "encryption_key", "first passphrase"):
            token = crypto.encrypt("sk-secret")
        crypto.reset_cipher()
        with patch.object(crypto.settings, "encryption_key", "second passphrase"):
            with pytest.raises(ConfigurationError, match="cannot be decrypted"):
                crypto.decrypt(token)


# ---------------------------------------------------------------------------
# Test: provider gateway
# ---------------------------------------------------------------------------


class TestGenerationOptions:
    def test_defaults_from_settings(self):
        options = GenerationOptions.from_model_config(None)
        assert options.temperature == 0.7
        assert options.max_tokens == 2000
        assert options.tools is None
        assert options.tool_choice is None

    def test_tools_enable_auto_choice(self):
        tools = [{"type": "function", "function": {"name": "x_call"}}]
        options = GenerationOptions.from_model_config({"temperature": "0.2"}, tools)
        assert options.temperature == 0.2
        assert options.tool_choice == "auto"
        assert options.tools == tools

    def test_model_config_not_mutated(self):
        config = {"temperature": 0.3, "seed": 7}
        GenerationOptions.from_model_config(config)
        assert config == {"temperature": 0.3, "seed": 7}

    def test_malformed_temperature_is_configuration_error(self):
        with pytest.raises(ConfigurationError, match="Invalid model_config"):
            GenerationOptions.from_model_config({"temperature": "hot"})

    def test_malformed_max_tokens_is_configuration_error(self):
        with pytest.raises(ConfigurationError, match="Invalid model_config"):
            GenerationOptions.from_model_config({"max_tokens": [100]})


class TestProviderResolution:
    def test_unknown_provider(self):
        with pytest.raises(ConfigurationError, match="Unsupported model provider"):
            resolve_provider("cohere")

    def test_agent_rejects_unknown_provider(self):
        with pytest.raises(ConfigurationError):
            Agent(name="x", model_provider="cohere", model_name="m")

    def test_missing_key_is_unavailable(self):
        with patch("aihub.services.llm.settings.openai_api_key", ""):
            with pytest.raises(ProviderUnavailable, match="no API key configured"):
                OpenAIProvider()

    def test_gateway_forwards_to_adapter(self):
        adapter = AsyncMock()
        adapter.generate.return_value = LLMResponse("hi", "m", 1, 2)
        options = GenerationOptions()
        with patch("aihub.services.llm.get_provider", return_value=adapter):
            response = _run(ModelProviderGateway().generate(
                "claude", "m", [{"role": "user", "content": "q"}], options,
            ))
        assert response.content == "hi"
        adapter.generate.assert_awaited_once_with(
            "m", [{"role": "user", "content": "q"}], options,
        )


class TestClaudeTranslation:
    def _conversation(self):
        response = LLMResponse(
            content="Let me check.",
            model="claude-3-5-sonnet",
            input_tokens=1,
            output_tokens=1,
            tool_calls=[
                ToolCall("tu_1", "openfda_searchDrug", {"query": "aspirin"}),
                ToolCall("tu_2", "news_searchNews", {"query": "aspirin"}),
            ],
        )
        return [
            {"role": "system", "content": "system prompt"},
            {"role": "user", "content": "question"},
            assistant_tool_call_message(response),
            tool_result_message("tu_1", "drug data"),
            tool_result_message("tu_2", "news data"),
        ]

    def test_system_lifted_out(self):
        system, messages = _to_claude_messages(self._conversation())
        assert system == "system prompt"
        assert messages[0] == {"role": "user", "content": "question"}

    def test_tool_use_blocks(self):
        _, messages = _to_claude_messages(self._conversation())
        assistant = messages[1]
        assert assistant["role"] == "assistant"
        assert assistant["content"][0] == {"type": "text", "text": "Let me check."}
        assert assistant["content"][1] == {
            "type": "tool_use",
            "id": "tu_1",
            "name": "openfda_searchDrug",
            "input": {"query": "aspirin"},
        }

    def test_consecutive_tool_results_merged(self):
        _, messages = _to_claude_messages(self._conversation())
        assert len(messages) == 3
        results = messages[2]
        assert results["role"] == "user"
        assert [b["tool_use_id"] for b in results["content"]] == ["tu_1", "tu_2"]
        assert results["content"][1]["content"] == "news data"

    def test_tool_definitions(self):
        tools = [{
            "type": "function",
            "function": {
                "name": "x_call",
                "description": "Call X",
                "parameters": {"type": "object", "properties": {"query": {"type": "string"}}},
            },
        }]
        assert _to_claude_tools(tools) == [{
            "name": "x_call",
            "description": "Call X",
            "input_schema": {"type": "object", "properties": {"query": {"type": "string"}}},
        }]


# ---------------------------------------------------------------------------
# Test: SDK adapters (client calls mocked)
# ---------------------------------------------------------------------------

TOOLS = [{
    "type": "function",
    "function": {
        "name": "openfda_searchDrug",
        "description": "Search drugs",
        "parameters": {"type": "object", "properties": {"query": {"type": "string"}}},
    },
}]


def _http_response(status: int, text: str) -> httpx.Response:
    return httpx.Response(
        status, text=text, request=httpx.Request("POST", "https://api.test/v1"),
    )


def _http_request() -> httpx.Request:
    return httpx.Request("POST", "https://api.test/v1")


class TestOpenAIAdapter:
    def _provider(self, create: AsyncMock) -> OpenAIProvider:
        provider = OpenAIProvider(api_key="sk-test")
        provider._client = MagicMock()
        provider._client.chat.completions.create = create
        return provider

    def _completion(self, content=None, tool_calls=None, choices=True):
        message = MagicMock(content=content, tool_calls=tool_calls)
        return MagicMock(
            choices=[MagicMock(message=message)] if choices else [],
            usage=MagicMock(prompt_tokens=120, completion_tokens=30),
            model="gpt-4o-2024-08-06",
        )

    def test_tool_calls_and_usage_parsed(self):
        call = MagicMock(id="call_1")
        call.function.name = "openfda_searchDrug"
        call.function.arguments = '{"query": "aspirin"}'
        create = AsyncMock(return_value=self._completion(tool_calls=[call]))
        options = GenerationOptions(temperature=0.2, max_tokens=50, tools=TOOLS)

        response = _run(self._provider(create).generate(
            "gpt-4o", [{"role": "user", "content": "q"}], options,
        ))

        assert response.content == ""
        assert response.model == "gpt-4o-2024-08-06"
        assert (response.input_tokens, response.output_tokens) == (120, 30)
        assert response.tool_calls == [
            ToolCall("call_1", "openfda_searchDrug", {"query": "aspirin"}),
        ]
        kwargs = create.await_args.kwargs
        assert kwargs["tools"] == TOOLS
        assert kwargs["tool_choice"] == "auto"
        assert (kwargs["temperature"], kwargs["max_tokens"]) == (0.2, 50)

    def test_plain_text_answer(self):
        create = AsyncMock(return_value=self._completion(content="Hello"))
        response = _run(self._provider(create).generate(
            "gpt-4o", [{"role": "user", "content": "q"}], GenerationOptions(),
        ))
        assert response.content == "Hello"
        assert response.tool_calls == []
        assert "tools" not in create.await_args.kwargs

    def test_status_error_is_request_failed(self):
        error = openai.APIStatusError(
            "rate limited", response=_http_response(429, "slow down"), body=None,
        )
        provider = self._provider(AsyncMock(side_effect=error))

        with pytest.raises(ProviderRequestFailed, match="status 429") as exc_info:
            _run(provider.generate("gpt-4o", [], GenerationOptions()))
        assert exc_info.value.status_code == 429
        assert exc_info.value.body == "slow down"
        assert exc_info.value.provider == "openai"

    def test_connection_error_is_unavailable(self):
        error = openai.APIConnectionError(request=_http_request())
        provider = self._provider(AsyncMock(side_effect=error))

        with pytest.raises(ProviderUnavailable):
            _run(provider.generate("gpt-4o", [], GenerationOptions()))

    def test_timeout_is_unavailable(self):
        error = openai.APITimeoutError(request=_http_request())
        provider = self._provider(AsyncMock(side_effect=error))

        with pytest.raises(ProviderUnavailable):
            _run(provider.generate("gpt-4o", [], GenerationOptions()))

    def test_empty_choices_is_request_failed(self):
        create = AsyncMock(return_value=self._completion(choices=False))

        with pytest.raises(ProviderRequestFailed) as exc_info:
            _run(self._provider(create).generate("gpt-4o", [], GenerationOptions()))
        assert exc_info.value.status_code is None
        assert exc_info.value.body == "response contained no choices"


class TestClaudeAdapter:
    def _provider(self, create: AsyncMock) -> ClaudeProvider:
        provider = ClaudeProvider(api_key="sk-ant-test")
        provider._client = MagicMock()
        provider._client.messages.create = create
        return provider

    def _message(self, *blocks):
        return MagicMock(
            content=list(blocks),
            usage=MagicMock(input_tokens=80, output_tokens=20),
            model="claude-3-5-sonnet-20241022",
        )

    def test_blocks_and_usage_parsed(self):
        text = MagicMock(type="text", text="Checking the label.")
        tool_use = MagicMock(type="tool_use", id="tu_1", input={"query": "aspirin"})
        tool_use.name = "openfda_searchDrug"
        create = AsyncMock(return_value=self._message(text, tool_use))
        messages = [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "q"},
        ]

        response = _run(self._provider(create).generate(
            "claude-3-5-sonnet", messages, GenerationOptions(max_tokens=64, tools=TOOLS),
        ))

        assert response.content == "Checking the label."
        assert response.model == "claude-3-5-sonnet-20241022"
        assert (response.input_tokens, response.output_tokens) == (80, 20)
        assert response.tool_calls == [
            ToolCall("tu_1", "openfda_searchDrug", {"query": "aspirin"}),
        ]
        kwargs = create.await_args.kwargs
        assert kwargs["system"] == "be brief"
        assert kwargs["messages"] == [{"role": "user", "content": "q"}]
        assert kwargs["max_tokens"] == 64
        assert kwargs["tool_choice"] == {"type": "auto"}
        assert kwargs["tools"][0]["name"] == "openfda_searchDrug"

    def test_status_error_is_request_failed(self):
        error = anthropic.APIStatusError(
            "overloaded", response=_http_response(529, "overloaded"), body=None,
        )
        provider = self._provider(AsyncMock(side_effect=error))

        with pytest.raises(ProviderRequestFailed, match="status 529") as exc_info:
            _run(provider.generate("claude-3-5-sonnet", [], GenerationOptions()))
        assert exc_info.value.body == "overloaded"
        assert exc_info.value.provider == "claude"

    def test_connection_error_is_unavailable(self):
        error = anthropic.APIConnectionError(request=_http_request())
        provider = self._provider(AsyncMock(side_effect=error))

        with pytest.raises(ProviderUnavailable):
            _run(provider.generate("claude-3-5-sonnet", [], GenerationOptions()))
