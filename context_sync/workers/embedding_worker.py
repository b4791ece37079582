from __future__ import annotations

import asyncio
import logging
from typing import Any

from sqlalchemy.orm import sessionmaker

from context_sync.clients.embeddings_client import EmbeddingsAPIError, EmbeddingsClient
from context_sync.core.config import settings
from context_sync.core.logging import log_event
from context_sync.core.metrics import embedding_items_total
from context_sync.db.repositories import ContextItemRepository, VectorRepository
from context_sync.db.session import SessionLocal, session_scope
from context_sync.services.job_queue import QueueJob
from context_sync.workers.base import ProgressCallback, Sleep

LOGGER = logging.getLogger(__name__)


def embedding_text(title: str | None, content: str | None) -> str:
    return "\n\n".join(part for part in (title, content) if part)


class EmbeddingStore:
    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    def load_texts(self, workspace_id: str, item_ids: list[str]) -> dict[str, str]:
        with session_scope(self._session_factory) as db:
            items = ContextItemRepository(db, workspace_id).get_many(item_ids)
            return {item_id: embedding_text(item.title, item.content) for item_id, item in items.items()}

    def save_vector(self, item_id: str, embedding: list[float], model: str) -> None:
        with session_scope(self._session_factory) as db:
            VectorRepository(db).upsert_vector(item_id, embedding, model)


class EmbeddingWorker:
    def __init__(
        self,
        embeddings_client: EmbeddingsClient,
        store: EmbeddingStore | None = None,
        batch_size: int | None = None,
        batch_delay_seconds: float | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.client = embeddings_client
        self.store = store or EmbeddingStore()
        self.batch_size = batch_size or settings.EMBEDDING_WORKER_BATCH_SIZE
        self.batch_delay_seconds = (
            settings.EMBEDDING_BATCH_DELAY_MS / 1000 if batch_delay_seconds is None else batch_delay_seconds
        )
        self._sleep = sleep

    async def _embed_batch(self, texts: dict[str, str]) -> tuple[dict[str, list[float]], Exception | None]:
        """Embed a batch in one call.

        A retryable API error is returned so the whole batch is marked failed;
        the client already spent its retry budget on it. Any other error leaves
        the items to be embedded one at a time, isolating a bad input.
        """
        if not texts:
            return {}, None
        item_ids = list(texts.keys())
        try:
            vectors = await asyncio.to_thread(self.client.embed_texts, [texts[item_id] for item_id in item_ids])
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("embedding_batch_failed", extra={"item_count": len(item_ids), "error": str(exc)})
            if isinstance(exc, EmbeddingsAPIError) and exc.retryable:
                return {}, exc
            return {}, None
        return dict(zip(item_ids, vectors)), None

    async def process(self, job: QueueJob, report_progress: ProgressCallback) -> dict[str, Any]:
        workspace_id = str(job.data["workspaceId"])
        item_ids = [str(item_id) for item_id in job.data.get("itemIds") or []]
        total = len(item_ids)
        processed = skipped = failed = 0
        errors: list[str] = []

        for start in range(0, total, self.batch_size):
            batch = item_ids[start : start + self.batch_size]
            texts = self.store.load_texts(workspace_id, batch)
            truncated = {item_id: self.client.truncate(text) for item_id, text in texts.items() if text.strip()}
            vectors, batch_error = await self._embed_batch(truncated)

            for offset, item_id in enumerate(batch):
                try:
                    if item_id not in texts:
                        raise LookupError(f"Item {item_id} not found in workspace {workspace_id}")
                    text = truncated.get(item_id)
                    if not text:
                        LOGGER.info("embedding_item_skipped", extra={"item_id": item_id, "reason": "empty_text"})
                        skipped += 1
                        embedding_items_total.labels(result="skipped").inc()
                    else:
                        vector = vectors.get(item_id)
                        if vector is None and batch_error is not None:
                            raise batch_error
                        if vector is None:
                            vector = await asyncio.to_thread(self.client.embed_text, text)
                        self.store.save_vector(item_id, vector, self.client.model)
                        processed += 1
                        embedding_items_total.labels(result="processed").inc()
                except Exception as exc:  # noqa: BLE001
                    failed += 1
                    errors.append(f"Item {item_id}: {exc}")
                    embedding_items_total.labels(result="failed").inc()
                    LOGGER.error("embedding_item_failed", extra={"item_id": item_id, "error": str(exc)})

                done = start + offset + 1
                report_progress(
                    {
                        "processed": processed,
                        "skipped": skipped,
                        "failed": failed,
                        "total": total,
                        "percentage": (done * 100) // total,
                    }
                )

            if start + self.batch_size < total:
                await self._sleep(self.batch_delay_seconds)

        log_event(
            "embedding.job.completed",
            payload={"processed": processed, "skipped": skipped, "failed": failed, "total": total},
            workspace_id=workspace_id,
        )
        return {"processedCount": processed, "skippedCount": skipped, "failedCount": failed, "errors": errors}
