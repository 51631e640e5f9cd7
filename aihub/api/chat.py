# =============================================================================
# Chat API — Chats, Message Turns, Data-Source Read Schema
# =============================================================================
#
# ENDPOINTS:
#   POST /chats                        create a chat (agent XOR workflow)
#   POST /chats/{chat_id}/messages     run one turn
#   GET  /chats/{chat_id}/messages     messages in position order
#   GET  /data-sources/{config_id}     config without credential material
#
# ERROR MAPPING:
#   ChatNotFound                          → 404
#   ConfigurationError                    → 422
#   AgentExecutionError/WorkflowStepError → 502 (user message already stored)
#
# Handlers stay thin: validation, ChatEngine call, response mapping.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from aihub.agents.engine import ChatEngine, TurnResult
from aihub.api.deps import get_engine, get_store
from aihub.db.models import ExternalDataSourceConfig
from aihub.db.store import RecordStore
from aihub.errors import (
    AgentExecutionError,
    ChatNotFound,
    ConfigurationError,
    WorkflowStepError,
)
from aihub.models.requests import CreateChatRequest, SendMessageRequest
from aihub.models.responses import (
    ChatResponse,
    DataSourceResponse,
    MessageResponse,
    SendMessageResponse,
    TokenUsageResponse,
    WorkflowStepResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Chats"])


def _to_send_response(result: TurnResult) -> SendMessageResponse:
    if result.agent_result is not None:
        tokens = result.agent_result.tokens_used
        return SendMessageResponse(
            chat_id=result.chat.id,
            user_message=MessageResponse.model_validate(result.user_message),
            response=result.response,
            produced_output=True,
            assistant_message_ids=[result.agent_result.message.id],
            tokens_used=TokenUsageResponse(input=tokens.input, output=tokens.output),
        )

    workflow = result.workflow_result
    steps = workflow.steps if workflow is not None else []
    return SendMessageResponse(
        chat_id=result.chat.id,
        user_message=MessageResponse.model_validate(result.user_message),
        response=result.response,
        produced_output=result.produced_output,
        assistant_message_ids=[s.message_id for s in steps if s.message_id is not None],
        steps=[WorkflowStepResponse.model_validate(s) for s in steps],
    )


# ---------------------------------------------------------------------------
# POST /chats
# ---------------------------------------------------------------------------


@router.post(
    "/chats",
    response_model=ChatResponse,
    status_code=201,
    summary="Create a chat bound to an agent or a workflow",
)
async def create_chat_endpoint(
    request: CreateChatRequest,
    engine: ChatEngine = Depends(get_engine),
) -> ChatResponse:
    try:
        chat = await engine.create_chat(
            request.user_id,
            agent_id=request.agent_id,
            workflow_id=request.workflow_id,
            suite_id=request.suite_id,
            title=request.title,
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    return ChatResponse.model_validate(chat)


# ---------------------------------------------------------------------------
# POST /chats/{chat_id}/messages
# ---------------------------------------------------------------------------


@router.post(
    "/chats/{chat_id}/messages",
    response_model=SendMessageResponse,
    summary="Send a message and run the chat's agent or workflow",
)
async def send_message_endpoint(
    chat_id: int,
    request: SendMessageRequest,
    engine: ChatEngine = Depends(get_engine),
) -> SendMessageResponse:
    """
    Persist the user's message and run one turn.

    Error handling:
    - Unknown chat → 404
    - Invalid agent/workflow configuration → 422
    - Provider failure, tool-loop exhaustion, halted workflow → 502
    """
    logger.info(
        "Message for chat %s from user %s: '%s'",
        chat_id, request.user_id, request.content[:80],
    )
    try:
        result = await engine.send_message(chat_id, request.user_id, request.content)
    except ChatNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ConfigurationError as e:
        logger.error("Configuration error in chat %s: %s", chat_id, e)
        raise HTTPException(status_code=422, detail=str(e)) from e
    except (AgentExecutionError, WorkflowStepError) as e:
        logger.exception("Turn failed in chat %s", chat_id)
        raise HTTPException(status_code=502, detail=str(e)) from e

    return _to_send_response(result)


# ---------------------------------------------------------------------------
# GET /chats/{chat_id}/messages
# ---------------------------------------------------------------------------


@router.get(
    "/chats/{chat_id}/messages",
    response_model=list[MessageResponse],
    summary="List a chat's messages in position order",
)
async def list_messages_endpoint(
    chat_id: int,
    user_id: int | None = None,
    engine: ChatEngine = Depends(get_engine),
) -> list[MessageResponse]:
    try:
        messages = await engine.list_messages(chat_id, user_id)
    except ChatNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return [MessageResponse.model_validate(m) for m in messages]


# ---------------------------------------------------------------------------
# GET /data-sources/{config_id}
# ---------------------------------------------------------------------------


@router.get(
    "/data-sources/{config_id}",
    response_model=DataSourceResponse,
    summary="Read an external data source configuration",
)
async def get_data_source_endpoint(
    config_id: int,
    store: RecordStore = Depends(get_store),
) -> DataSourceResponse:
    config = await store.get(ExternalDataSourceConfig, config_id)
    if config is None:
        raise HTTPException(
            status_code=404, detail=f"Data source {config_id} not found",
        )
    return DataSourceResponse(
        id=config.id,
        name=config.name,
        provider=config.provider,
        base_url=config.base_url,
        config=config.config,
        is_active=config.is_active,
        has_api_key=bool(config.encrypted_api_key),
        created_at=config.created_at,
    )
