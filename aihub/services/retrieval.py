# =============================================================================
# Retrieval Store — Scoped Document Snippet Search (ChromaDB)
# =============================================================================
#
# Document snippets are indexed with a scope tag in their metadata:
#   chat_id  → files uploaded into a conversation   (scope_kind="chat")
#   agent_id → suite-level documents of an agent    (scope_kind="agent")
#
# `search(query, scope_kind, scope_id, limit)` always filters on exactly one
# scope; there is no unscoped search. Callers re-check the scope tag of every
# returned snippet anyway (see AgentRunner).
#
# ARCHITECTURE:
#   RetrievalStore (Protocol)
#   └── ChromaRetrievalStore
#       ├── add_snippets()  — index pre-chunked text with embeddings
#       └── search()        — async via asyncio.to_thread() wrapper
#
# Chunking and file extraction happen upstream and are not part of this
# module. Embeddings come from the OpenAI embeddings API unless an
# `embed_fn` is injected.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import chromadb

from aihub.config import settings
from aihub.errors import ConfigurationError

logger = logging.getLogger(__name__)

SCOPE_KINDS = ("chat", "agent")

EmbedFn = Callable[[Sequence[str]], list[list[float]]]


@dataclass
class RetrievedSnippet:
    """One ranked snippet with its source metadata."""

    content: str
    source: str                  # File name or other human-readable source
    score: float                 # Cosine similarity (higher = more relevant)
    metadata: dict[str, Any] = field(default_factory=dict)

    def as_context(self) -> dict[str, Any]:
        """JSON-safe snapshot stored in Message.rag_context."""
        return {
            "content": self.content,
            "source": self.source,
            "score": self.score,
            "metadata": self.metadata,
        }


def scope_key(scope_kind: str) -> str:
    if scope_kind not in SCOPE_KINDS:
        raise ConfigurationError(
            f"Unknown retrieval scope '{scope_kind}'. Supported: {list(SCOPE_KINDS)}"
        )
    return f"{scope_kind}_id"


class RetrievalStore(Protocol):
    async def search(
        self,
        query: str,
        scope_kind: str,
        scope_id: int,
        limit: int = 5,
    ) -> list[RetrievedSnippet]:
        ...


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------

_openai_client = None


def openai_embed(texts: Sequence[str]) -> list[list[float]]:
    """Embed texts with the configured OpenAI embedding model (sync)."""
    global _openai_client
    if _openai_client is None:
        from openai import OpenAI

        if not settings.openai_api_key:
            raise ConfigurationError(
                "No API key configured for embeddings. Set OPENAI_API_KEY in .env"
            )
        _openai_client = OpenAI(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            timeout=settings.retrieval_timeout_seconds,
        )
    response = _openai_client.embeddings.create(
        model=settings.embedding_model, input=list(texts),
    )
    return [item.embedding for item in response.data]


# ---------------------------------------------------------------------------
# Implementation: ChromaDB
# ---------------------------------------------------------------------------


class ChromaRetrievalStore:
    """
    ChromaDB-backed snippet store, one collection for every scope.

    - In-process client by default (local development, tests)
    - Client/server when CHROMA_URL is set
    """

    def __init__(
        self,
        collection_name: str | None = None,
        embed_fn: EmbedFn | None = None,
        client: Any = None,
    ) -> None:
        if client is not None:
            self._client = client
        elif settings.chroma_url:
            self._client = chromadb.HttpClient(host=settings.chroma_url)
        else:
            self._client = chromadb.Client()

        self._collection = self._client.get_or_create_collection(
            name=collection_name or settings.chroma_collection,
            metadata={"hnsw:space": "cosine"},
            embedding_function=None,
        )
        self._embed = embed_fn or openai_embed

    def add_snippets(
        self,
        scope_kind: str,
        scope_id: int,
        contents: list[str],
        metadatas: list[dict] | None = None,
        source: str = "document",
    ) -> list[str]:
        """Index snippets under one scope. Returns the Chroma ids."""
        key = scope_key(scope_kind)
        metadatas = metadatas or [{} for _ in contents]
        ids = [
            f"{scope_kind}{scope_id}_{meta.get('source', source)}_{i}"
            for i, meta in enumerate(metadatas)
        ]
        enriched = [
            _sanitise_chroma_metadata({"source": source, **meta, key: scope_id})
            for meta in metadatas
        ]
        self._collection.upsert(
            ids=ids,
            documents=contents,
            embeddings=self._embed(contents),
            metadatas=enriched,
        )
        logger.info(
            "Indexed %d snippets for %s=%d", len(ids), key, scope_id,
        )
        return ids

    async def search(
        self,
        query: str,
        scope_kind: str,
        scope_id: int,
        limit: int = 5,
    ) -> list[RetrievedSnippet]:
        """
        Similarity search restricted to one scope.

        The Chroma client is synchronous, so the query runs in a worker
        thread under settings.retrieval_timeout_seconds.
        """
        key = scope_key(scope_kind)

        def _sync_search() -> list[RetrievedSnippet]:
            embedding = self._embed([query])[0]
            results = self._collection.query(
                query_embeddings=[embedding],
                n_results=limit,
                where={key: scope_id},
                include=["documents", "metadatas", "distances"],
            )

            snippets: list[RetrievedSnippet] = []
            if not results or not results["ids"] or not results["ids"][0]:
                return snippets

            for i in range(len(results["ids"][0])):
                distance = results["distances"][0][i] if results["distances"] else 0.0
                metadata = dict(results["metadatas"][0][i] or {}) if results["metadatas"] else {}
                content = results["documents"][0][i] if results["documents"] else ""
                snippets.append(RetrievedSnippet(
                    content=content,
                    source=str(metadata.get("source", "document")),
                    score=round(1.0 - distance, 4),
                    metadata=metadata,
                ))
            return snippets

        return await asyncio.wait_for(
            asyncio.to_thread(_sync_search),
            timeout=settings.retrieval_timeout_seconds,
        )


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _sanitise_chroma_metadata(metadata: dict) -> dict:
    """
    ChromaDB metadata values must be str, int, float or bool.

    list → comma-separated string, None → "", anything else → str().
    """
    sanitised = {}
    for key, value in metadata.items():
        if value is None:
            sanitised[key] = ""
        elif isinstance(value, list):
            sanitised[key] = ",".join(str(v) for v in value)
        elif isinstance(value, (str, int, float, bool)):
            sanitised[key] = value
        else:
            sanitised[key] = str(value)
    return sanitised
