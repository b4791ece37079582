from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from context_sync.clients.embeddings_client import EmbeddingsClient
from context_sync.core.config import settings
from context_sync.core.logging import clear_request_context, configure_logging, log_event, set_request_context
from context_sync.core.metrics import sync_job_duration_seconds, sync_jobs_total
from context_sync.db.session import SessionLocal
from context_sync.models.models import Provider
from context_sync.services.credentials import IntegrationCredentialStore
from context_sync.services.item_ingest import ItemIngestor
from context_sync.services.job_queue import JobQueue, QueueJob, QueueSet, build_queues
from context_sync.workers.base import ProgressCallback, ProviderSyncWorker
from context_sync.workers.embedding_worker import EmbeddingStore, EmbeddingWorker
from context_sync.workers.github_sync import GitHubSyncWorker
from context_sync.workers.notion_sync import NotionSyncWorker
from context_sync.workers.slack_sync import SlackSyncWorker

LOGGER = logging.getLogger(__name__)

JobHandler = Callable[[QueueJob, ProgressCallback], Awaitable[dict[str, Any]]]

SYNC_WORKER_TYPES: dict[Provider, type[ProviderSyncWorker]] = {
    Provider.GITHUB: GitHubSyncWorker,
    Provider.SLACK: SlackSyncWorker,
    Provider.NOTION: NotionSyncWorker,
}


class QueueRunner:
    """Consumes one queue, one job at a time."""

    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        label: str,
        event_prefix: str = "sync.job",
        poll_interval_seconds: float | None = None,
    ):
        self.queue = queue
        self.handler = handler
        self.label = label
        self.event_prefix = event_prefix
        self.poll_interval_seconds = (
            settings.WORKER_POLL_INTERVAL_SECONDS if poll_interval_seconds is None else poll_interval_seconds
        )

    async def process_next(self) -> bool:
        job = self.queue.claim_next()
        if job is None:
            return False

        workspace_id = job.data.get("workspaceId")
        set_request_context(request_id=job.job_id, workspace_id=workspace_id)
        log_event(f"{self.event_prefix}.started", payload={"queue": self.queue.queue_name, "job_id": job.job_id})
        try:
            with sync_job_duration_seconds.labels(provider=self.label).time():
                result = await self.handler(job, lambda progress: self.queue.update_progress(job.job_id, progress))
        except Exception as exc:  # noqa: BLE001
            retryable = bool(getattr(exc, "retryable", True))
            state = self.queue.fail(job.job_id, str(exc), retryable=retryable)
            sync_jobs_total.labels(provider=self.label, result="retry" if state == "delayed" else "failed").inc()
            log_event(
                f"{self.event_prefix}.failed",
                level=logging.ERROR,
                payload={
                    "queue": self.queue.queue_name,
                    "job_id": job.job_id,
                    "error": str(exc),
                    "error_code": getattr(exc, "error_code", None),
                    "next_state": state,
                },
            )
        else:
            self.queue.complete(job.job_id, result)
            sync_jobs_total.labels(provider=self.label, result="completed").inc()
            log_event(
                f"{self.event_prefix}.completed",
                payload={"queue": self.queue.queue_name, "job_id": job.job_id, "result": result},
            )
        finally:
            clear_request_context()
        return True

    async def run_forever(self, stop: asyncio.Event) -> None:
        LOGGER.info("queue_runner_started", extra={"queue": self.queue.queue_name})
        while not stop.is_set():
            has_work = await self.process_next()
            if has_work:
                continue
            try:
                await asyncio.wait_for(stop.wait(), timeout=max(0.1, self.poll_interval_seconds))
            except asyncio.TimeoutError:
                pass
        LOGGER.info("queue_runner_stopped", extra={"queue": self.queue.queue_name})


def build_runners(
    queues: QueueSet,
    credentials: IntegrationCredentialStore | None = None,
    embeddings_client: EmbeddingsClient | None = None,
    session_factory=SessionLocal,
) -> list[QueueRunner]:
    credentials = credentials or IntegrationCredentialStore(session_factory)
    ingestor = ItemIngestor(queues.embedding, session_factory)
    runners = [
        QueueRunner(
            queues.for_provider(provider),
            worker_type(ingestor, credentials, session_factory=session_factory).process,
            label=provider.value,
        )
        for provider, worker_type in SYNC_WORKER_TYPES.items()
    ]
    embedding_worker = EmbeddingWorker(embeddings_client or EmbeddingsClient(), EmbeddingStore(session_factory))
    runners.append(QueueRunner(queues.embedding, embedding_worker.process, label="embedding", event_prefix="embedding.job"))
    return runners


async def run_workers(stop: asyncio.Event | None = None) -> None:
    stop = stop or asyncio.Event()
    runners = build_runners(build_queues())
    await asyncio.gather(*(runner.run_forever(stop) for runner in runners))


if __name__ == "__main__":
    configure_logging()
    asyncio.run(run_workers())
