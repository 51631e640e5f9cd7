# =============================================================================
# Workflow Runner — Sequential Agent Chains
# =============================================================================
#
# STATES:
#   Init ──▶ PerAgent(0) ──▶ PerAgent(1) ──▶ ... ──▶ Complete
#
# For each agent id in workflow.agent_ids, in order:
#   inactive  → recorded as "skipped"
#   active    → AgentRunner.run(previous_agent_output=last successful output)
#   failure   → stop_on_error: raise WorkflowStepError
#               otherwise:     record "failed", keep previous output, go on
#
# Each step persists its own Message and UsageRecord (action
# "workflow_step") inside AgentRunner, and step N+1 only starts after step
# N has returned, so its Message is already stored.
#
# produced_output=False with response=None is the explicit "no agent
# produced output" signal.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from aihub.agents.runner import AgentRunner, AgentTurnResult
from aihub.db.models import Agent, Chat, Workflow
from aihub.db.store import RecordStore
from aihub.errors import ConfigurationError, WorkflowStepError

logger = logging.getLogger(__name__)

STEP_SUCCESS = "success"
STEP_FAILED = "failed"
STEP_SKIPPED = "skipped"


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class WorkflowStep:
    """Trace entry for one agent in the chain."""

    agent_id: int
    agent_name: str
    status: str
    response_text: str | None = None
    error: str | None = None
    message_id: int | None = None


@dataclass
class WorkflowResult:
    """Final output of a workflow turn plus the per-step trace."""

    response: str | None
    produced_output: bool
    steps: list[WorkflowStep] = field(default_factory=list)

    @property
    def succeeded_steps(self) -> list[WorkflowStep]:
        return [s for s in self.steps if s.status == STEP_SUCCESS]


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class WorkflowRunner:
    """Runs a workflow's agents in sequence over one user message."""

    def __init__(self, store: RecordStore, agent_runner: AgentRunner) -> None:
        self._store = store
        self._agent_runner = agent_runner

    async def load_agents(self, workflow: Workflow) -> list[Agent]:
        """
        Load the workflow's agents in sequence order.

        Raises ConfigurationError when the workflow is inactive, empty,
        references a missing agent or an agent from another suite.
        """
        if not workflow.is_active:
            raise ConfigurationError(f"Workflow {workflow.id} is inactive")
        if not workflow.agent_ids:
            raise ConfigurationError(f"Workflow {workflow.id} has no agents")

        agents: list[Agent] = []
        for agent_id in workflow.agent_ids:
            agent = await self._store.get(Agent, agent_id)
            if agent is None:
                raise ConfigurationError(
                    f"Workflow {workflow.id} references missing agent {agent_id}"
                )
            if workflow.suite_id is not None and agent.suite_id != workflow.suite_id:
                raise ConfigurationError(
                    f"Agent {agent_id} does not belong to suite "
                    f"{workflow.suite_id} of workflow {workflow.id}"
                )
            agents.append(agent)
        return agents

    async def run(
        self,
        workflow: Workflow,
        chat: Chat,
        user_message: str,
        user_id: int,
        *,
        history_before: int | None = None,
    ) -> WorkflowResult:
        """
        Execute the chain.

        Raises:
            ConfigurationError: Invalid workflow definition.
            WorkflowStepError: A step failed and stop_on_error is set.
        """
        agents = await self.load_agents(workflow)
        config = workflow.workflow_config or {}
        eager_fetch = config.get("eager_fetch_on_catalog_failure")

        logger.info(
            "Running workflow %s (%d agents, stop_on_error=%s) in chat %s",
            workflow.id, len(agents), workflow.stop_on_error, chat.id,
        )

        steps: list[WorkflowStep] = []
        previous_output: str | None = None

        for index, agent in enumerate(agents, start=1):
            if not agent.is_active:
                logger.info(
                    "Workflow %s step %d: agent %s inactive, skipped",
                    workflow.id, index, agent.id,
                )
                steps.append(WorkflowStep(agent.id, agent.name, STEP_SKIPPED))
                continue

            try:
                result: AgentTurnResult = await self._agent_runner.run(
                    agent,
                    chat,
                    user_message,
                    user_id,
                    previous_agent_output=previous_output,
                    action="workflow_step",
                    eager_fetch_on_catalog_failure=eager_fetch,
                    history_before=history_before,
                )
            except Exception as exc:
                logger.error(
                    "Workflow %s step %d: agent %s failed: %s",
                    workflow.id, index, agent.id, exc,
                )
                if workflow.stop_on_error:
                    raise WorkflowStepError(workflow.id, agent.id, str(exc)) from exc
                steps.append(WorkflowStep(
                    agent.id, agent.name, STEP_FAILED, error=str(exc),
                ))
                continue

            previous_output = result.response_text
            steps.append(WorkflowStep(
                agent.id,
                agent.name,
                STEP_SUCCESS,
                response_text=result.response_text,
                message_id=result.message.id,
            ))

        produced = any(s.status == STEP_SUCCESS for s in steps)
        if not produced:
            logger.warning(
                "Workflow %s produced no output (%d steps)", workflow.id, len(steps),
            )

        return WorkflowResult(
            response=previous_output if produced else None,
            produced_output=produced,
            steps=steps,
        )
