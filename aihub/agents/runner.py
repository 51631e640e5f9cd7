# =============================================================================
# Agent Runner — One Agent Turn as a LangGraph State Machine
# =============================================================================
#
# GRAPH TOPOLOGY:
#   START ──▶ gather_context ──▶ generate ──▶ persist ──▶ END
#
#   gather_context  catalog tools, then concurrently: scoped retrieval,
#                   web search, eager API prefetch; load chat history
#   generate        assemble prompts, run the bounded tool loop
#                   (MAX_TOOL_ITERATIONS provider calls at most)
#   persist         write the assistant Message
#
# Any exception leaves the graph and ends the turn (Failed). Whatever the
# outcome, run() records usage with the tokens accumulated so far:
#   success / failed / cancelled
#
# The tool loop is a plain Python loop inside the generate node rather than
# a graph cycle, so the iteration cap is one `for` statement.
#
# Collaborators are injected through the constructor, and the graph is
# compiled once per runner with bound-method nodes.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from aihub.agents.prompts import build_system_prompt, build_user_turn
from aihub.config import settings
from aihub.db.models import Agent, Chat, Message, MessageRole, UsageRecord, UsageStatus
from aihub.db.store import RecordStore
from aihub.errors import (
    AgentExecutionError,
    ProviderError,
    RetrievalScopeViolation,
    ToolLoopExhausted,
)
from aihub.services.llm import (
    ChatMessage,
    GenerationOptions,
    ModelProviderGateway,
    ToolSchema,
    assistant_tool_call_message,
    tool_result_message,
)
from aihub.services.retrieval import RetrievalStore, RetrievedSnippet, scope_key
from aihub.services.tool_catalog import ToolCatalog
from aihub.services.tool_invoker import ToolInvoker, format_tool_result
from aihub.services.usage import TokenUsage, UsageRecorder
from aihub.services.websearch import WebSearch

logger = logging.getLogger(__name__)

MAX_TOOL_ITERATIONS = 5

PromptHook = Callable[[Agent, str, str], None]


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class AgentTurnResult:
    """Outcome of a successful agent turn."""

    response_text: str
    tokens_used: TokenUsage
    model: str
    iterations: int
    message: Message
    rag_context: list[dict[str, Any]] = field(default_factory=list)
    external_data: list[dict[str, Any]] = field(default_factory=list)
    tools_used: bool = False
    usage_record: UsageRecord | None = None


class TurnState(TypedDict, total=False):
    """
    State flowing through the turn graph.

    total=False so nodes only return the keys they update. Holds ORM
    objects and the mutable TokenUsage, so no checkpointer is configured.
    """

    # --- Input (set by run) ---
    agent: Agent
    chat: Chat
    user_message: str
    previous_agent_output: str | None
    eager_fetch: bool
    history_before: int | None
    tokens: TokenUsage

    # --- Set by gather_context ---
    tools: list[ToolSchema]
    rag_context: list[dict[str, Any]]
    web_results: list[dict[str, Any]]
    external_data: list[dict[str, Any]]
    chat_history: list[dict[str, str]]

    # --- Set by generate ---
    response_text: str
    model: str
    iterations: int
    tool_evidence: list[dict[str, Any]]

    # --- Set by persist ---
    message: Message


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class AgentRunner:
    """
    Executes one agent turn: context gathering, tool loop, persistence and
    usage accounting.

    Args:
        store: Record store for configs, history and messages.
        gateway: Model provider gateway (anything with `generate`).
        tool_catalog: Builds tool schemas from data-source configs.
        tool_invoker: Executes tool calls and eager prefetches.
        retrieval: Scoped snippet search; None disables retrieval.
        web_search: Web search collaborator; None disables web search.
        usage_recorder: Defaults to a UsageRecorder over `store`.
        on_prompt: Called with (agent, system_prompt, user_turn) for every
            assembled prompt.
    """

    def __init__(
        self,
        store: RecordStore,
        gateway: ModelProviderGateway,
        tool_catalog: ToolCatalog,
        tool_invoker: ToolInvoker,
        retrieval: RetrievalStore | None = None,
        web_search: WebSearch | None = None,
        usage_recorder: UsageRecorder | None = None,
        on_prompt: PromptHook | None = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._catalog = tool_catalog
        self._invoker = tool_invoker
        self._retrieval = retrieval
        self._web_search = web_search
        self._usage = usage_recorder or UsageRecorder(store)
        self._on_prompt = on_prompt
        self._graph = self._build_graph()

    def _build_graph(self):
        builder = StateGraph(TurnState)
        builder.add_node("gather_context", self._gather_context_node)
        builder.add_node("generate", self._generate_node)
        builder.add_node("persist", self._persist_node)

        builder.add_edge(START, "gather_context")
        builder.add_edge("gather_context", "generate")
        builder.add_edge("generate", "persist")
        builder.add_edge("persist", END)
        return builder.compile()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def run(
        self,
        agent: Agent,
        chat: Chat,
        user_message: str,
        user_id: int,
        *,
        previous_agent_output: str | None = None,
        action: str = "chat",
        eager_fetch_on_catalog_failure: bool | None = None,
        history_before: int | None = None,
    ) -> AgentTurnResult:
        """
        Run one agent turn and persist its assistant message.

        Args:
            agent: Agent configuration (read-only during the turn).
            chat: Chat the turn belongs to; also the retrieval scope.
            user_message: The user's message text.
            user_id: Owner of the turn, recorded on the usage record.
            previous_agent_output: Prior step output inside a workflow.
            action: Usage action ("chat" or "workflow_step").
            eager_fetch_on_catalog_failure: Override for the eager
                prefetch fallback; None uses settings.
            history_before: Only messages before this position count as
                history (the current user message's position).

        Raises:
            AgentExecutionError: Provider failure or tool-loop exhaustion.
            ConfigurationError: Invalid agent configuration.
        """
        tokens = TokenUsage()
        eager = (
            settings.eager_fetch_on_catalog_failure
            if eager_fetch_on_catalog_failure is None
            else eager_fetch_on_catalog_failure
        )
        initial_state: TurnState = {
            "agent": agent,
            "chat": chat,
            "user_message": user_message,
            "previous_agent_output": previous_agent_output,
            "eager_fetch": eager,
            "history_before": history_before,
            "tokens": tokens,
        }

        logger.info(
            "Running agent %s (%s/%s) in chat %s",
            agent.id, agent.model_provider, agent.model_name, chat.id,
        )

        try:
            final = await self._graph.ainvoke(initial_state)
        except asyncio.CancelledError:
            await self._usage.log(
                agent, tokens, user_id, chat.id,
                action=action, status=UsageStatus.CANCELLED.value,
            )
            raise
        except ProviderError as exc:
            logger.error("Agent %s failed: %s", agent.id, exc)
            await self._usage.log(
                agent, tokens, user_id, chat.id,
                action=action, status=UsageStatus.FAILED.value,
            )
            raise AgentExecutionError(agent.id, str(exc)) from exc
        except Exception:
            await self._usage.log(
                agent, tokens, user_id, chat.id,
                action=action, status=UsageStatus.FAILED.value,
            )
            raise

        usage_record = await self._usage.log(
            agent, tokens, user_id, chat.id, action=action,
        )

        return AgentTurnResult(
            response_text=final["response_text"],
            tokens_used=tokens,
            model=final["model"],
            iterations=final["iterations"],
            message=final["message"],
            rag_context=final.get("rag_context", []),
            external_data=final["message"].external_data or [],
            tools_used=bool(final.get("tools")),
            usage_record=usage_record,
        )

    # -------------------------------------------------------------------------
    # Node: gather_context
    # -------------------------------------------------------------------------

    async def _gather_context_node(self, state: TurnState) -> dict:
        agent = state["agent"]
        chat = state["chat"]
        question = state["user_message"]
        config_ids = list(agent.external_api_configs or [])

        tools: list[ToolSchema] = []
        eager_fetch = False
        if agent.enable_external_apis and config_ids:
            try:
                tools = await self._catalog.generate_tools(config_ids)
            except Exception:
                logger.warning(
                    "Tool generation failed for agent %s", agent.id, exc_info=True,
                )
                tools = []
            if not tools:
                eager_fetch = state["eager_fetch"]
                logger.info(
                    "No tools for agent %s, eager prefetch %s",
                    agent.id, "enabled" if eager_fetch else "disabled",
                )

        async def _no_results() -> list:
            return []

        rag_task = (
            self._retrieve(question, chat, agent)
            if agent.enable_rag and self._retrieval is not None
            else _no_results()
        )
        web_task = (
            self._search_web(question, agent)
            if agent.enable_web_search and not tools and self._web_search is not None
            else _no_results()
        )
        api_task = (
            self._invoker.fetch_all(config_ids, question)
            if eager_fetch
            else _no_results()
        )

        rag_context, web_results, external_data = await asyncio.gather(
            rag_task, web_task, api_task,
        )

        history = await self._store.list_messages(
            chat.id,
            limit=settings.chat_history_turns * 2,
            before_position=state.get("history_before"),
        )
        chat_history = [{"role": m.role, "content": m.content} for m in history]

        logger.info(
            "Context for agent %s: %d doc snippets, %d web results, "
            "%d API entries, %d tools, %d history messages",
            agent.id, len(rag_context), len(web_results),
            len(external_data), len(tools), len(chat_history),
        )

        return {
            "tools": tools,
            "rag_context": rag_context,
            "web_results": web_results,
            "external_data": external_data,
            "chat_history": chat_history,
        }

    async def _retrieve(
        self, question: str, chat: Chat, agent: Agent,
    ) -> list[dict[str, Any]]:
        """
        Search the chat's own documents and the agent's suite-level
        documents, re-check every snippet's scope tag, keep the top K.
        """
        scopes = [("chat", chat.id), ("agent", agent.id)]
        results = await asyncio.gather(
            *(self._search_scope(question, kind, scope_id) for kind, scope_id in scopes)
        )

        snippets: list[RetrievedSnippet] = [s for batch in results for s in batch]
        snippets.sort(key=lambda s: s.score, reverse=True)
        return [s.as_context() for s in snippets[: settings.retrieval_top_k]]

    async def _search_scope(
        self, question: str, scope_kind: str, scope_id: int,
    ) -> list[RetrievedSnippet]:
        try:
            snippets = await self._retrieval.search(
                question, scope_kind, scope_id, limit=settings.retrieval_top_k,
            )
        except Exception:
            logger.warning(
                "Retrieval failed for %s=%s", scope_kind, scope_id, exc_info=True,
            )
            return []

        key = scope_key(scope_kind)
        kept = []
        for snippet in snippets:
            tag = snippet.metadata.get(key)
            if tag is None or str(tag) != str(scope_id):
                violation = RetrievalScopeViolation(
                    (scope_kind, scope_id), dict(snippet.metadata),
                )
                logger.warning("Dropping snippet: %s", violation)
                continue
            kept.append(snippet)
        return kept

    async def _search_web(self, question: str, agent: Agent) -> list[dict[str, Any]]:
        try:
            return await self._web_search.search(question)
        except Exception as exc:
            logger.warning("Web search failed for agent %s: %s", agent.id, exc)
            return []

    # -------------------------------------------------------------------------
    # Node: generate (tool loop)
    # -------------------------------------------------------------------------

    async def _generate_node(self, state: TurnState) -> dict:
        agent = state["agent"]
        tokens = state["tokens"]
        tools = state.get("tools") or []

        system_prompt = build_system_prompt(
            agent, state.get("previous_agent_output"), tools or None,
        )
        user_turn = build_user_turn(
            state["user_message"],
            retrieved_context=state.get("rag_context"),
            web_results=state.get("web_results"),
            external_data=state.get("external_data"),
            chat_history=state.get("chat_history"),
            tools_available=bool(tools),
        )
        if self._on_prompt is not None:
            self._on_prompt(agent, system_prompt, user_turn)

        options = GenerationOptions.from_model_config(agent.model_config, tools)
        messages: list[ChatMessage] = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_turn},
        ]
        tool_evidence: list[dict[str, Any]] = []
        config_ids = list(agent.external_api_configs or [])

        for iteration in range(1, MAX_TOOL_ITERATIONS + 1):
            response = await self._gateway.generate(
                agent.model_provider, agent.model_name, messages, options,
            )
            tokens.add(response.input_tokens, response.output_tokens)

            if not response.tool_calls or not tools:
                if response.tool_calls:
                    logger.warning(
                        "Agent %s model requested tools but none were offered, "
                        "using text response",
                        agent.id,
                    )
                return {
                    "response_text": response.content,
                    "model": response.model or agent.model_name,
                    "iterations": iteration,
                    "tool_evidence": tool_evidence,
                }

            if iteration == MAX_TOOL_ITERATIONS:
                break

            logger.info(
                "Agent %s iteration %d: executing %d tool calls (%s)",
                agent.id, iteration, len(response.tool_calls),
                ", ".join(c.name for c in response.tool_calls),
            )
            messages.append(assistant_tool_call_message(response))
            for call in response.tool_calls:
                result = await self._invoker.execute_tool(
                    call.name, call.arguments, config_ids,
                )
                tool_evidence.append(result.as_evidence())
                messages.append(
                    tool_result_message(call.id, format_tool_result(call.name, result))
                )

        raise ToolLoopExhausted(agent.id, MAX_TOOL_ITERATIONS)

    # -------------------------------------------------------------------------
    # Node: persist
    # -------------------------------------------------------------------------

    async def _persist_node(self, state: TurnState) -> dict:
        agent = state["agent"]
        chat = state["chat"]
        tokens = state["tokens"]

        position = await self._store.count_messages(chat.id) + 1
        message = await self._store.add(Message(
            chat_id=chat.id,
            agent_id=agent.id,
            role=MessageRole.ASSISTANT.value,
            content=state["response_text"],
            position=position,
            rag_context=state.get("rag_context") or [],
            external_data=(
                (state.get("external_data") or []) + (state.get("tool_evidence") or [])
            ),
            metadata_={
                "tokens_used": tokens.as_dict(),
                "model": state["model"],
                "iterations": state["iterations"],
            },
        ))
        await self._store.update(chat, last_message_at=datetime.now(timezone.utc))

        logger.info(
            "Persisted assistant message %s (chat=%s, position=%d)",
            message.id, chat.id, position,
        )
        return {"message": message}
