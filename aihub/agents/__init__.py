# =============================================================================
# Agents Package — Turn Orchestration
# =============================================================================
#   - prompts.py:  system prompt and user turn assembly
#   - runner.py:   one agent turn as a LangGraph graph
#                  (gather_context → generate/tool loop → persist)
#   - workflow.py: sequential agent chains with stop_on_error
#   - engine.py:   ChatEngine entry points and per-chat locks
# =============================================================================
