# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of data going OUT of the API.
#
# DataSourceResponse is built field by field from ExternalDataSourceConfig;
# it exposes only whether a key is configured, never the key or its
# ciphertext.
# =============================================================================

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    """Response for GET /health — confirms the API is running."""

    status: str = "ok"
    version: str
    service: str


class ChatResponse(BaseModel):
    id: int
    user_id: int
    suite_id: int | None = None
    agent_id: int | None = None
    workflow_id: int | None = None
    title: str | None = None
    last_message_at: datetime | None = None
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class MessageResponse(BaseModel):
    """
    One stored chat message.

    `metadata` is read from the ORM attribute `metadata_` (token counts,
    model, tool-loop iterations).
    """

    id: int
    chat_id: int
    agent_id: int | None = None
    role: str
    content: str
    position: int
    rag_context: list[dict[str, Any]] | None = None
    external_data: list[dict[str, Any]] | None = None
    metadata: dict[str, Any] | None = Field(
        default=None, validation_alias="metadata_",
    )
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class WorkflowStepResponse(BaseModel):
    agent_id: int
    agent_name: str
    status: str = Field(description="success, failed or skipped")
    message_id: int | None = None
    error: str | None = None

    model_config = ConfigDict(from_attributes=True)


class TokenUsageResponse(BaseModel):
    input: int = 0
    output: int = 0


class SendMessageResponse(BaseModel):
    """
    Response for POST /chats/{chat_id}/messages.

    For workflow chats `response` is the last successful step's output and
    `steps` holds the per-agent trace; `produced_output` is False when no
    step succeeded.
    """

    chat_id: int
    user_message: MessageResponse
    response: str | None
    produced_output: bool
    assistant_message_ids: list[int] = Field(default_factory=list)
    tokens_used: TokenUsageResponse | None = None
    steps: list[WorkflowStepResponse] = Field(default_factory=list)


class DataSourceResponse(BaseModel):
    """Read schema of an external data source. Credential material excluded."""

    id: int
    name: str
    provider: str
    base_url: str | None = None
    config: dict[str, Any] | None = None
    is_active: bool
    has_api_key: bool
    created_at: datetime | None = None
