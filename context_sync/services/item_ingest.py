from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy.orm import sessionmaker

from context_sync.db.repositories import ContextItemRepository
from context_sync.db.session import SessionLocal, session_scope
from context_sync.services.job_queue import JobQueue
from context_sync.services.transformers.base import ItemDraft

LOGGER = logging.getLogger(__name__)

EMBEDDING_JOB_NAME = "generate"


class ItemIngestor:
    """Upsert and embedding-enqueue primitives shared by polling sync and webhooks."""

    def __init__(self, embedding_queue: JobQueue, session_factory: sessionmaker = SessionLocal):
        self.embedding_queue = embedding_queue
        self._session_factory = session_factory

    def upsert(self, workspace_id: str, draft: ItemDraft) -> str:
        with session_scope(self._session_factory) as db:
            item = ContextItemRepository(db, workspace_id).upsert(draft)
            return str(item.id)

    def enqueue_embedding(self, workspace_id: str, item_ids: Iterable[str]) -> str | None:
        ids = list(dict.fromkeys(str(item_id) for item_id in item_ids))
        if not ids:
            return None
        job_id = self.embedding_queue.add(EMBEDDING_JOB_NAME, {"itemIds": ids, "workspaceId": workspace_id})
        LOGGER.info("embedding_job_enqueued", extra={"workspace_id": workspace_id, "item_count": len(ids), "job_id": job_id})
        return job_id
