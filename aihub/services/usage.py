# =============================================================================
# Usage Recorder — Token & Cost Audit Trail
# =============================================================================
#
# Every generation event (one agent turn or one workflow step) writes exactly
# one UsageRecord, whatever the outcome:
#   success   → the turn produced a response
#   failed    → provider error, tool-loop exhaustion, ...
#   cancelled → the turn's task was cancelled mid-flight
#
# Tokens are accumulated into a mutable TokenUsage across all tool-loop
# iterations, so a failed turn still records what it consumed.
#
# A failing recorder never masks the turn's outcome: write errors are logged
# and swallowed.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass

from aihub.db.models import Agent, UsageRecord, UsageStatus
from aihub.db.store import RecordStore
from aihub.services.pricing import calculate_cost

logger = logging.getLogger(__name__)


@dataclass
class TokenUsage:
    """Running token totals for one turn."""

    input: int = 0
    output: int = 0

    def add(self, input_tokens: int, output_tokens: int) -> None:
        self.input += input_tokens or 0
        self.output += output_tokens or 0

    def as_dict(self) -> dict[str, int]:
        return {"input": self.input, "output": self.output}


class UsageRecorder:
    """Writes one immutable UsageRecord per generation event."""

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    async def log(
        self,
        agent: Agent,
        tokens: TokenUsage,
        user_id: int,
        chat_id: int | None,
        action: str = "chat",
        status: str = UsageStatus.SUCCESS.value,
    ) -> UsageRecord | None:
        """
        Record token usage and cost for an agent turn.

        Returns the stored record, or None when the write failed.
        """
        cost = calculate_cost(
            agent.model_provider, agent.model_name, tokens.input, tokens.output,
        )
        record = UsageRecord(
            user_id=user_id,
            suite_id=agent.suite_id,
            agent_id=agent.id,
            chat_id=chat_id,
            action=action,
            status=status,
            model_provider=agent.model_provider,
            model_name=agent.model_name,
            input_tokens=tokens.input,
            output_tokens=tokens.output,
            cost_usd=cost,
        )
        try:
            record = await self._store.add(record)
        except Exception:
            logger.exception(
                "Failed to record usage (agent=%s, chat=%s, status=%s)",
                agent.id, chat_id, status,
            )
            return None

        logger.info(
            "Usage recorded: agent=%s chat=%s action=%s status=%s "
            "tokens=%d+%d cost=$%.6f",
            agent.id, chat_id, action, status,
            tokens.input, tokens.output, cost,
        )
        return record
