# =============================================================================
# FastAPI Application
# =============================================================================
#
# Run locally:
#   uvicorn aihub.main:app --reload
#
# With record_store="sql" the tables are created on startup and the engine
# pool is disposed on shutdown; the in-memory store needs neither.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from aihub.api.chat import router as chat_router
from aihub.config import settings
from aihub.models.responses import HealthResponse

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    uses_sql = settings.record_store.lower() == "sql"
    if uses_sql:
        from aihub.db.engine import create_all

        await create_all()
    logger.info("%s %s started", settings.app_name, settings.app_version)
    yield
    if uses_sql:
        from aihub.db.engine import dispose_engine

        await dispose_engine()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description=(
        "Executes configured agents and agent workflows against chat turns, "
        "with document retrieval, web search, external data tools and "
        "per-generation usage accounting."
    ),
    lifespan=lifespan,
)

app.include_router(chat_router)


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health() -> HealthResponse:
    return HealthResponse(version=settings.app_version, service=settings.app_name)
