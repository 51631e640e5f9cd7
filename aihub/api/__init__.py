# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
#   - chat.py: chat creation, message turns, message listing, data-source
#     read schema
#   - deps.py: ChatEngine dependency (overridable in tests)
# =============================================================================
