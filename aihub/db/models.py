# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
#   suites ──1:N──▶ agents
#     │  └───1:N──▶ workflows (agent_ids: ordered JSON list of agents.id)
#     │
#   chats ──1:N──▶ messages          (ON DELETE CASCADE)
#     ├─ agent_id    ┐ exactly one of these is set (CHECK constraint)
#     └─ workflow_id ┘
#
#   external_data_sources             (referenced by agents.external_api_configs)
#   usage_records                     (append-only audit trail)
#
# JSON columns use JSONB on PostgreSQL and plain JSON elsewhere, so the same
# models work with any SQLAlchemy dialect.
#
# The ORM classes double as plain records for InMemoryRecordStore: a
# transient instance is a fully usable value object, the store fills in ids
# and column defaults the way a flush would.
# =============================================================================

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, validates

from aihub.errors import ConfigurationError

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class for all ORM models."""

    pass


class ModelProvider(str, enum.Enum):
    """
    Closed set of model provider backends.

    Each value maps to exactly one adapter in
    aihub.services.llm.PROVIDER_REGISTRY.
    """

    OPENAI = "openai"
    CLAUDE = "claude"
    GEMINI = "gemini"
    MISTRAL = "mistral"


class MessageRole(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class UsageStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


# =============================================================================
# Suites, Agents, Workflows
# =============================================================================


class Suite(Base):
    """A named grouping of agents and workflows exposed to end users."""

    __tablename__ = "suites"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[str | None] = mapped_column(String(200), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Subscription tier gating access (e.g. "free", "pro", "enterprise")
    subscription_tier: Mapped[str | None] = mapped_column(
        String(50), nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Suite(id={self.id}, name='{self.name}')>"


class Agent(Base):
    """
    A configured LLM persona bound to a provider/model.

    Capability flags decide what context a turn gathers:
    - enable_rag: retrieve document snippets scoped to the chat
    - enable_web_search: query the web search collaborator
    - enable_external_apis: expose external_api_configs as callable tools
    """

    __tablename__ = "agents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    suite_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("suites.id", ondelete="CASCADE"),
        nullable=True,
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Provider enum value ("openai", "claude", ...) + model name
    model_provider: Mapped[str] = mapped_column(String(50), nullable=False)
    model_name: Mapped[str] = mapped_column(String(200), nullable=False)

    # Free-text persona; only used when no built-in specialisation matches
    system_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Generation parameters: temperature, max_tokens, provider-specific keys
    model_config: Mapped[dict | None] = mapped_column(
        JSONType, nullable=True, default=dict,
    )

    # Ordered list of external_data_sources.id
    external_api_configs: Mapped[list | None] = mapped_column(
        JSONType, nullable=True, default=list,
    )

    enable_rag: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False,
    )
    enable_web_search: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False,
    )
    enable_external_apis: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False,
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    @validates("model_provider")
    def _validate_model_provider(self, key: str, value: str) -> str:
        try:
            return ModelProvider(value).value
        except ValueError:
            raise ConfigurationError(
                f"Unsupported model provider: {value}. "
                f"Supported: {[p.value for p in ModelProvider]}"
            ) from None

    def __repr__(self) -> str:
        return (
            f"<Agent(id={self.id}, name='{self.name}', "
            f"model={self.model_provider}/{self.model_name})>"
        )


class Workflow(Base):
    """
    An ordered chain of agents executed in sequence per chat turn.

    workflow_config keys:
        stop_on_error (bool): halt the chain on the first failed step
        eager_fetch_on_catalog_failure (bool): overrides the global setting
    """

    __tablename__ = "workflows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    suite_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("suites.id", ondelete="CASCADE"),
        nullable=True,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    # Execution sequence: ordered agents.id values
    agent_ids: Mapped[list] = mapped_column(
        JSONType, nullable=False, default=list,
    )
    workflow_config: Mapped[dict | None] = mapped_column(
        JSONType, nullable=True, default=dict,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    @property
    def stop_on_error(self) -> bool:
        return bool((self.workflow_config or {}).get("stop_on_error", False))

    def __repr__(self) -> str:
        return f"<Workflow(id={self.id}, name='{self.name}', agents={self.agent_ids})>"


# =============================================================================
# Chats & Messages
# =============================================================================


class Chat(Base):
    """
    A conversation owned by a user, bound to exactly one agent or workflow.
    """

    __tablename__ = "chats"
    __table_args__ = (
        CheckConstraint(
            "(agent_id IS NULL) <> (workflow_id IS NULL)",
            name="ck_chat_exactly_one_target",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    suite_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("suites.id", ondelete="SET NULL"),
        nullable=True,
    )
    agent_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("agents.id", ondelete="SET NULL"),
        nullable=True,
    )
    workflow_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("workflows.id", ondelete="SET NULL"),
        nullable=True,
    )
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_message_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<Chat(id={self.id}, user={self.user_id}, "
            f"agent={self.agent_id}, workflow={self.workflow_id})>"
        )


class Message(Base):
    """
    One chat message. Immutable once created, except metadata back-fill.

    position is strictly increasing per chat (unique with chat_id).
    rag_context / external_data snapshot exactly what the agent saw.
    """

    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chat_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("chats.id", ondelete="CASCADE"),
        nullable=False,
    )
    agent_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("agents.id", ondelete="SET NULL"),
        nullable=True,
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    rag_context: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    external_data: Mapped[list | None] = mapped_column(JSONType, nullable=True)

    # Token counts and model name. `metadata_` avoids the clash with
    # DeclarativeBase.metadata.
    metadata_: Mapped[dict | None] = mapped_column(
        "metadata", JSONType, nullable=True, default=dict,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<Message(id={self.id}, chat={self.chat_id}, "
            f"position={self.position}, role='{self.role}')>"
        )


message_chat_position_idx = Index(
    "idx_message_chat_position",
    Message.chat_id,
    Message.position,
    unique=True,
)


# =============================================================================
# External Data Sources
# =============================================================================


class ExternalDataSourceConfig(Base):
    """
    A configured external data connector the model may call as a tool.

    The API key is stored Fernet-encrypted and is never part of any read
    schema or repr.
    """

    __tablename__ = "external_data_sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    # "fda", "crunchbase", "patents", "news", or anything else (generic REST)
    provider: Mapped[str] = mapped_column(String(100), nullable=False)
    base_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    encrypted_api_key: Mapped[str | None] = mapped_column(Text, nullable=True)

    # api_key_location (query|header|body), api_key_param, pagination,
    # page_size, description, search_engine_id
    config: Mapped[dict | None] = mapped_column(
        JSONType, nullable=True, default=dict,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<ExternalDataSourceConfig(id={self.id}, name='{self.name}', "
            f"provider='{self.provider}', active={self.is_active})>"
        )


# =============================================================================
# Usage Records — append-only audit trail
# =============================================================================


class UsageRecord(Base):
    """Token usage and computed cost for one generation event."""

    __tablename__ = "usage_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    suite_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    agent_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    chat_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # "chat" for single-agent turns, "workflow_step" for workflow steps
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=UsageStatus.SUCCESS.value,
    )

    model_provider: Mapped[str] = mapped_column(String(50), nullable=False)
    model_name: Mapped[str] = mapped_column(String(200), nullable=False)
    input_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost_usd: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<UsageRecord(id={self.id}, agent={self.agent_id}, "
            f"tokens={self.input_tokens}+{self.output_tokens}, "
            f"cost={self.cost_usd})>"
        )


usage_record_user_idx = Index(
    "idx_usage_record_user_created",
    UsageRecord.user_id,
    UsageRecord.created_at,
)

usage_record_chat_idx = Index(
    "idx_usage_record_chat",
    UsageRecord.chat_id,
)
