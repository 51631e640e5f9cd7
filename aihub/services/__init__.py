# =============================================================================
# Services Package — Collaborators of the Orchestration Core
# =============================================================================
#   - llm.py:          ModelProviderGateway and provider adapters
#   - tool_catalog.py: tool schemas from external data-source configs
#   - tool_invoker.py: tool-call resolution, execution, result formatting
#   - connectors.py:   HTTP data connectors (FDA, Crunchbase, patents, news,
#                      generic REST)
#   - retrieval.py:    scoped snippet search over ChromaDB
#   - websearch.py:    Serper / Bing / Brave web search
#   - pricing.py, usage.py: token cost table and UsageRecorder
#   - crypto.py:       Fernet encryption of data-source credentials
# =============================================================================
