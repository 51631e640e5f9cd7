# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of data coming INTO the API. User identity is an explicit field of
# every request; authentication is handled in front of this service.
# =============================================================================

from pydantic import BaseModel, ConfigDict, Field, model_validator


class CreateChatRequest(BaseModel):
    """
    Request body for POST /chats.

    Exactly one of agent_id / workflow_id must be given.

    Example:
        {"user_id": 7, "agent_id": 3, "title": "Aspirin landscape"}
    """

    user_id: int = Field(..., description="Owner of the chat")
    agent_id: int | None = Field(
        default=None, description="Single agent the chat talks to",
    )
    workflow_id: int | None = Field(
        default=None, description="Workflow run on every message",
    )
    suite_id: int | None = Field(
        default=None,
        description="Suite the chat belongs to. Defaults to the target's suite.",
    )
    title: str | None = Field(default=None, max_length=255)

    @model_validator(mode="after")
    def _exactly_one_target(self) -> "CreateChatRequest":
        if (self.agent_id is None) == (self.workflow_id is None):
            raise ValueError("Provide exactly one of agent_id or workflow_id")
        return self

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {"user_id": 7, "agent_id": 3},
                {"user_id": 7, "workflow_id": 1, "title": "Due diligence"},
            ]
        }
    )


class SendMessageRequest(BaseModel):
    """Request body for POST /chats/{chat_id}/messages."""

    user_id: int
    content: str = Field(
        ...,
        min_length=1,
        max_length=20000,
        description="The user's message text",
        examples=["What drugs for hypertension were approved in 2023?"],
    )
