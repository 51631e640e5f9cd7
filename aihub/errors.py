# =============================================================================
# Error Taxonomy
# =============================================================================
#
#   AIHubError
#   ├── ConfigurationError        unsupported provider, missing reference
#   ├── ChatNotFound              unknown chat or chat of another user
#   ├── ProviderError             upstream LLM call failed or timed out
#   │   ├── ProviderUnavailable
#   │   └── ProviderRequestFailed
#   ├── ToolExecutionError        one tool call failed (never escapes the
#   │   ├── ToolNameInvalid       invoker; rendered as tool evidence)
#   │   ├── ConfigNotFound
#   │   ├── ToolMethodUnknown
#   │   └── DataSourceError
#   ├── RetrievalScopeViolation   snippet outside the requested scope
#   ├── AgentExecutionError       one agent turn failed
#   │   └── ToolLoopExhausted
#   └── WorkflowStepError         workflow halted on a failed step
#
# Every message is safe to show to an end user; raw upstream bodies are kept
# on attributes for logging.
# =============================================================================

from __future__ import annotations


class AIHubError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(AIHubError):
    """Invalid or missing configuration. Fatal, never retried."""


class ChatNotFound(AIHubError):
    """The chat does not exist or is not owned by the requesting user."""

    def __init__(self, chat_id: int) -> None:
        super().__init__(f"Chat {chat_id} not found")
        self.chat_id = chat_id


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------


class ProviderError(AIHubError):
    """A model provider call failed."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class ProviderUnavailable(ProviderError):
    """Provider could not be reached (no key, connection error, timeout)."""


class ProviderRequestFailed(ProviderError):
    """Provider answered with a non-success status."""

    def __init__(
        self,
        provider: str,
        status_code: int | None,
        body: str | None,
    ) -> None:
        super().__init__(
            provider,
            f"request failed with status {status_code}",
        )
        self.status_code = status_code
        self.body = body


# ---------------------------------------------------------------------------
# Tool errors
# ---------------------------------------------------------------------------


class ToolExecutionError(AIHubError):
    """A single tool call failed. Converted into evidence, never fatal."""

    kind = "tool_execution_failed"


class ToolNameInvalid(ToolExecutionError):
    kind = "tool_name_invalid"


class ConfigNotFound(ToolExecutionError):
    kind = "config_not_found"


class ToolMethodUnknown(ToolExecutionError):
    kind = "tool_method_unknown"


class DataSourceError(ToolExecutionError):
    """An external data source answered with an error or could not be reached."""

    kind = "data_source_failed"

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source} request failed: {message}")
        self.source = source


# ---------------------------------------------------------------------------
# Orchestration errors
# ---------------------------------------------------------------------------


class RetrievalScopeViolation(AIHubError):
    """A retrieval result carried a scope tag other than the one requested."""

    def __init__(self, expected: tuple[str, int], actual: dict) -> None:
        super().__init__(
            f"snippet scope {actual} does not match requested {expected}"
        )
        self.expected = expected
        self.actual = actual


class AgentExecutionError(AIHubError):
    """An agent turn failed; the cause is chained via __cause__."""

    def __init__(self, agent_id: int | None, reason: str) -> None:
        super().__init__(f"Agent {agent_id} failed: {reason}")
        self.agent_id = agent_id
        self.reason = reason


class ToolLoopExhausted(AgentExecutionError):
    """The model kept requesting tools after the iteration cap."""

    def __init__(self, agent_id: int | None, iterations: int) -> None:
        super().__init__(
            agent_id,
            f"model still requested tools after {iterations} iterations",
        )
        self.iterations = iterations


class WorkflowStepError(AIHubError):
    """A workflow step failed and the workflow is configured to halt."""

    def __init__(self, workflow_id: int, agent_id: int, reason: str) -> None:
        super().__init__(
            f"Workflow {workflow_id} halted at agent {agent_id}: {reason}"
        )
        self.workflow_id = workflow_id
        self.agent_id = agent_id
