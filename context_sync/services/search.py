from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from context_sync.clients.embeddings_client import EmbeddingsClient
from context_sync.clients.llm_client import LLMClient
from context_sync.core.config import settings
from context_sync.core.logging import log_event
from context_sync.core.metrics import search_requests_total
from context_sync.db.repositories import ContextItemRepository

LOGGER = logging.getLogger(__name__)


def extract_snippet(content: str | None, query: str, length: int | None = None) -> str:
    """Window of ``content`` around the first case-insensitive hit of ``query``."""
    content = content or ""
    length = length or settings.SNIPPET_LENGTH
    index = content.lower().find(query.lower()) if query else -1
    if index == -1:
        return content[:length] + ("..." if len(content) > length else "")
    start = max(0, index - 50)
    end = min(len(content), index + len(query) + 150)
    snippet = content[start:end]
    if start > 0:
        snippet = "..." + snippet
    if end < len(content):
        snippet = snippet + "..."
    return snippet


def lexical_rank_score(rank: int) -> float:
    return max(0.1, 1.0 - rank * 0.1)


def build_context(results: list[dict[str, Any]]) -> str:
    return "\n\n---\n\n".join(
        f"[{result['sourceType']}] {result['title']} (relevance: {round(result['score'] * 100)}%):\n{result['snippet']}"
        for result in results
    )


def apology_answer(document_count: int) -> str:
    return (
        "Sorry, something went wrong while generating the answer. "
        f"I found {document_count} related documents in your workspace."
    )


class SearchService:
    def __init__(
        self,
        db: Session,
        workspace_id: str,
        embeddings_client: EmbeddingsClient | None = None,
        llm_client: LLMClient | None = None,
        repository: ContextItemRepository | None = None,
    ):
        self.workspace_id = str(workspace_id)
        self.db = db
        self.repository = repository or ContextItemRepository(db, self.workspace_id)
        self.embeddings_client = embeddings_client or EmbeddingsClient()
        self.llm_client = llm_client or LLMClient()

    def _vector_results(self, query: str, sources: list[str] | None, limit: int) -> list[dict[str, Any]]:
        embedding = self.embeddings_client.embed_text(query)
        rows = self.repository.vector_search(embedding, sources=sources, limit=limit)
        return [
            {
                "id": row["id"],
                "title": row["title"],
                "snippet": extract_snippet(row["content"], query),
                "sourceType": row["source_type"],
                "sourceUrl": row["source_url"],
                "score": 1.0 - float(row["distance"]),
            }
            for row in rows
        ]

    def _lexical_results(self, query: str, sources: list[str] | None, limit: int) -> list[dict[str, Any]]:
        items = self.repository.lexical_search(query, sources=sources, limit=limit)
        return [
            {
                "id": str(item.id),
                "title": item.title or "",
                "snippet": extract_snippet(item.content, query),
                "sourceType": item.source_type,
                "sourceUrl": item.source_url,
                "score": lexical_rank_score(rank),
            }
            for rank, item in enumerate(items)
        ]

    def search(self, query: str, sources: list[str] | None = None, limit: int | None = None) -> list[dict[str, Any]]:
        limit = min(limit or settings.SEARCH_DEFAULT_LIMIT, settings.SEARCH_MAX_LIMIT)
        sources = list(sources) if sources else None
        if settings.PGVECTOR_ENABLED:
            try:
                results = self._vector_results(query, sources, limit)
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("vector_search_failed", extra={"workspace_id": self.workspace_id, "error": str(exc)})
                if isinstance(exc, SQLAlchemyError) and self.db is not None:
                    # a failed statement aborts the Postgres transaction
                    self.db.rollback()
                results = []
                fallback_reason = "vector_error"
            else:
                fallback_reason = "vector_empty"
            if results:
                search_requests_total.labels(path="vector").inc()
                return results
        else:
            fallback_reason = "vector_disabled"

        log_event("search.fallback", payload={"reason": fallback_reason}, workspace_id=self.workspace_id)
        search_requests_total.labels(path="lexical").inc()
        return self._lexical_results(query, sources, limit)

    def ask(self, question: str, include_context: bool = True) -> dict[str, Any]:
        results = self.search(question, limit=settings.ASK_TOP_K)
        context = build_context(results)
        try:
            answer = self.llm_client.generate_answer(question, context)
        except Exception as exc:  # noqa: BLE001
            LOGGER.error("ask_llm_failed", extra={"workspace_id": self.workspace_id, "error": str(exc)})
            answer = apology_answer(len(results))
        sources = None
        if include_context:
            sources = [
                {
                    "id": result["id"],
                    "title": result["title"],
                    "sourceType": result["sourceType"],
                    "sourceUrl": result["sourceUrl"],
                    "relevantSnippet": result["snippet"],
                }
                for result in results
            ]
        return {"answer": answer, "sources": sources}
