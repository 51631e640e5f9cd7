# =============================================================================
# API Dependencies — FastAPI Dependency Injection
# =============================================================================
#
# Route handlers receive the ChatEngine through Depends(get_engine), so
# tests swap in an engine over InMemoryRecordStore and a scripted gateway:
#
#   app.dependency_overrides[get_engine] = lambda: test_engine
# =============================================================================

from __future__ import annotations

from fastapi import Depends

from aihub.agents.engine import ChatEngine, get_chat_engine
from aihub.db.store import RecordStore


def get_engine() -> ChatEngine:
    """FastAPI dependency returning the process-wide ChatEngine."""
    return get_chat_engine()


def get_store(engine: ChatEngine = Depends(get_engine)) -> RecordStore:
    """The record store behind the current engine."""
    return engine.store
