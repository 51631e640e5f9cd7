# =============================================================================
# AI Hub — Multi-Agent Execution Engine
# =============================================================================
# Runs operator-defined agents (LLM persona + provider + capabilities) and
# agent workflows (ordered chains) against a user's chat turn. Each turn may
# retrieve document context, search the web, or let the model call external
# data sources as tools, and every generation is logged with token usage and
# cost.
#
# Package structure:
#   aihub/
#   ├── agents/       → Turn orchestration (AgentRunner LangGraph, workflow
#   │                    chain, prompt assembly, ChatEngine entry points)
#   ├── api/          → FastAPI route handlers (chats, messages, data sources)
#   ├── db/           → Database engine, ORM models, record store protocol
#   ├── models/       → Pydantic V2 request/response schemas
#   └── services/     → Provider gateway, tool catalog/invoker, connectors,
#                        retrieval, web search, pricing, usage recording
# =============================================================================

__version__ = "0.1.0"
