# =============================================================================
# Chat Engine — Turn Entry Points
# =============================================================================
#
# FLOW (send_message):
#   lock(chat_id)
#     ──▶ persist user Message (position = count + 1, title, last_message_at)
#     ──▶ chat.workflow_id ? WorkflowRunner.run : AgentRunner.run
#     ──▶ TurnResult
#   unlock
#
# The user message is written before any agent work, so a failed turn never
# drops it. One asyncio.Lock per chat id serialises turns of the same chat,
# which keeps message positions strictly increasing and unique.
#
# ChatEngine holds no per-turn state; collaborators are injected, or built
# from settings by build_chat_engine().
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from aihub.agents.runner import AgentRunner, AgentTurnResult
from aihub.agents.workflow import WorkflowResult, WorkflowRunner
from aihub.config import settings
from aihub.db.models import Agent, Chat, Message, MessageRole, Workflow
from aihub.db.store import RecordStore, get_record_store
from aihub.errors import ChatNotFound, ConfigurationError

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 50


# ---------------------------------------------------------------------------
# Per-chat Locks
# ---------------------------------------------------------------------------


class ChatLockRegistry:
    """
    Hands out one asyncio.Lock per chat id.

    Entries are weak: a lock lives while a turn holds or awaits it, then
    drops out of the registry.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def get(self, chat_id: int) -> asyncio.Lock:
        lock = self._locks.get(chat_id)
        if lock is None:
            lock = self._locks[chat_id] = asyncio.Lock()
        return lock

    def __len__(self) -> int:
        return len(self._locks)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class TurnResult:
    """
    Outcome of send_message.

    Exactly one of agent_result / workflow_result is set, matching the
    chat's target. `response` is None when a workflow produced no output.
    """

    chat: Chat
    user_message: Message
    response: str | None
    agent_result: AgentTurnResult | None = None
    workflow_result: WorkflowResult | None = None

    @property
    def produced_output(self) -> bool:
        return self.response is not None


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ChatEngine:
    """Creates chats and runs agent or workflow turns against them."""

    def __init__(
        self,
        store: RecordStore,
        agent_runner: AgentRunner,
        workflow_runner: WorkflowRunner | None = None,
        locks: ChatLockRegistry | None = None,
    ) -> None:
        self._store = store
        self._agent_runner = agent_runner
        self._workflow_runner = workflow_runner or WorkflowRunner(store, agent_runner)
        self._locks = locks if locks is not None else ChatLockRegistry()

    @property
    def store(self) -> RecordStore:
        return self._store

    # -------------------------------------------------------------------------
    # Chats
    # -------------------------------------------------------------------------

    async def create_chat(
        self,
        user_id: int,
        *,
        agent_id: int | None = None,
        workflow_id: int | None = None,
        suite_id: int | None = None,
        title: str | None = None,
    ) -> Chat:
        """
        Create a chat bound to exactly one agent or workflow.

        suite_id defaults to the target's suite.

        Raises:
            ConfigurationError: Both or neither target given, or the target
                does not exist.
        """
        if (agent_id is None) == (workflow_id is None):
            raise ConfigurationError(
                "A chat must target exactly one of agent_id or workflow_id"
            )

        target: Agent | Workflow | None
        if agent_id is not None:
            target = await self._store.get(Agent, agent_id)
            if target is None:
                raise ConfigurationError(f"Agent {agent_id} not found")
        else:
            target = await self._store.get(Workflow, workflow_id)
            if target is None:
                raise ConfigurationError(f"Workflow {workflow_id} not found")

        chat = await self._store.add(Chat(
            user_id=user_id,
            suite_id=suite_id if suite_id is not None else target.suite_id,
            agent_id=agent_id,
            workflow_id=workflow_id,
            title=title,
        ))
        logger.info(
            "Created chat %s for user %s (agent=%s, workflow=%s)",
            chat.id, user_id, agent_id, workflow_id,
        )
        return chat

    async def get_chat(self, chat_id: int, user_id: int | None = None) -> Chat:
        """Load a chat; a chat owned by another user counts as missing."""
        chat = await self._store.get(Chat, chat_id)
        if chat is None or (user_id is not None and chat.user_id != user_id):
            raise ChatNotFound(chat_id)
        return chat

    async def list_messages(self, chat_id: int, user_id: int | None = None) -> list[Message]:
        await self.get_chat(chat_id, user_id)
        return await self._store.list_messages(chat_id)

    # -------------------------------------------------------------------------
    # Turns
    # -------------------------------------------------------------------------

    async def send_message(self, chat_id: int, user_id: int, text: str) -> TurnResult:
        """
        Persist the user's message, then run the chat's agent or workflow.

        Raises:
            ChatNotFound: Unknown chat, or not owned by user_id.
            ConfigurationError: Invalid agent or workflow configuration.
            AgentExecutionError: Single-agent turn failed.
            WorkflowStepError: Workflow halted on a failed step.
        """
        chat = await self.get_chat(chat_id, user_id)

        async with self._locks.get(chat_id):
            user_message = await self._persist_user_message(chat, text)

            if chat.workflow_id is not None:
                workflow_result = await self._run_workflow(
                    chat.workflow_id, chat, text, user_id,
                    history_before=user_message.position,
                )
                return TurnResult(
                    chat=chat,
                    user_message=user_message,
                    response=workflow_result.response,
                    workflow_result=workflow_result,
                )

            agent_result = await self._run_agent(
                chat.agent_id, chat, text, user_id,
                history_before=user_message.position,
            )
            return TurnResult(
                chat=chat,
                user_message=user_message,
                response=agent_result.response_text,
                agent_result=agent_result,
            )

    async def run_agent_turn(
        self, agent_id: int, chat_id: int, user_message: str, user_id: int,
    ) -> AgentTurnResult:
        """
        Run one agent against a chat without persisting a user message.

        History is every stored message of the chat, up to the configured
        window.
        """
        chat = await self.get_chat(chat_id, user_id)
        async with self._locks.get(chat_id):
            return await self._run_agent(agent_id, chat, user_message, user_id)

    async def run_workflow_turn(
        self, workflow_id: int, chat_id: int, user_message: str, user_id: int,
    ) -> WorkflowResult:
        """Run a workflow against a chat without persisting a user message."""
        chat = await self.get_chat(chat_id, user_id)
        async with self._locks.get(chat_id):
            return await self._run_workflow(workflow_id, chat, user_message, user_id)

    async def backfill_message_metadata(
        self, message_id: int, metadata: dict[str, Any],
    ) -> Message:
        """
        Merge keys into a stored message's metadata.

        The only mutation a message allows after creation.
        """
        message = await self._store.get(Message, message_id)
        if message is None:
            raise ConfigurationError(f"Message {message_id} not found")
        merged = {**(message.metadata_ or {}), **metadata}
        return await self._store.update(message, metadata_=merged)

    # -------------------------------------------------------------------------
    # Internals (caller holds the chat lock)
    # -------------------------------------------------------------------------

    async def _persist_user_message(self, chat: Chat, text: str) -> Message:
        position = await self._store.count_messages(chat.id) + 1
        message = await self._store.add(Message(
            chat_id=chat.id,
            role=MessageRole.USER.value,
            content=text,
            position=position,
        ))

        values: dict[str, Any] = {"last_message_at": datetime.now(timezone.utc)}
        if not chat.title:
            values["title"] = text[:TITLE_MAX_CHARS]
        await self._store.update(chat, **values)
        return message

    async def _run_agent(
        self,
        agent_id: int | None,
        chat: Chat,
        user_message: str,
        user_id: int,
        history_before: int | None = None,
    ) -> AgentTurnResult:
        agent = await self._store.get(Agent, agent_id) if agent_id is not None else None
        if agent is None:
            raise ConfigurationError(f"Agent {agent_id} not found")
        if not agent.is_active:
            raise ConfigurationError(f"Agent {agent_id} is inactive")
        return await self._agent_runner.run(
            agent, chat, user_message, user_id, history_before=history_before,
        )

    async def _run_workflow(
        self,
        workflow_id: int,
        chat: Chat,
        user_message: str,
        user_id: int,
        history_before: int | None = None,
    ) -> WorkflowResult:
        workflow = await self._store.get(Workflow, workflow_id)
        if workflow is None:
            raise ConfigurationError(f"Workflow {workflow_id} not found")
        return await self._workflow_runner.run(
            workflow, chat, user_message, user_id, history_before=history_before,
        )


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_engine: ChatEngine | None = None


def build_chat_engine(store: RecordStore | None = None) -> ChatEngine:
    """
    Wire a ChatEngine with the default collaborators.

    Retrieval is enabled when chromadb can be reached at settings.chroma_url
    (or in-process when unset); web search only when an API key is set.
    """
    from aihub.services.connectors import HttpDataConnector
    from aihub.services.llm import ModelProviderGateway
    from aihub.services.retrieval import ChromaRetrievalStore
    from aihub.services.tool_catalog import ToolCatalog
    from aihub.services.tool_invoker import ToolInvoker
    from aihub.services.websearch import HttpWebSearch

    store = store or get_record_store()

    try:
        retrieval = ChromaRetrievalStore()
    except Exception:
        logger.warning("Retrieval store unavailable, RAG disabled", exc_info=True)
        retrieval = None

    web_search = HttpWebSearch() if settings.web_search_api_key else None

    runner = AgentRunner(
        store=store,
        gateway=ModelProviderGateway(),
        tool_catalog=ToolCatalog(store),
        tool_invoker=ToolInvoker(store, HttpDataConnector()),
        retrieval=retrieval,
        web_search=web_search,
    )
    return ChatEngine(store, runner)


def get_chat_engine() -> ChatEngine:
    """Return the process-wide ChatEngine (lazy singleton)."""
    global _engine
    if _engine is None:
        _engine = build_chat_engine()
    return _engine
