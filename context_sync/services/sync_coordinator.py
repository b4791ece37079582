from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.orm import sessionmaker

from context_sync.core.config import settings
from context_sync.core.logging import log_event
from context_sync.db.repositories import IntegrationRepository
from context_sync.db.session import SessionLocal, session_scope
from context_sync.models.models import Provider
from context_sync.services.job_queue import JobQueue, QueueJob, QueueSet

LOGGER = logging.getLogger(__name__)

SYNC_JOB_NAME = "sync"


@dataclass(frozen=True)
class SyncOptions:
    providers: list[Provider] | None = None
    sync_type: str = "incremental"
    since: str | None = None
    target_items: list[str] | None = None


@dataclass
class SyncStatus:
    provider: str
    status: str
    progress: dict[str, Any] | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "status": self.status,
            "progress": self.progress,
            "error": self.error,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class WorkspaceSyncStatus:
    workspace_id: str
    is_running: bool
    jobs: list[SyncStatus] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"workspaceId": self.workspace_id, "isRunning": self.is_running, "jobs": [job.to_dict() for job in self.jobs]}


def _belongs_to(job: QueueJob, workspace_id: str) -> bool:
    return str(job.data.get("workspaceId")) == str(workspace_id)


class SyncCoordinator:
    def __init__(self, queues: QueueSet, session_factory: sessionmaker = SessionLocal):
        self.queues = queues
        self._session_factory = session_factory

    def _connected_providers(self, workspace_id: str) -> list[Provider]:
        with session_scope(self._session_factory) as db:
            return IntegrationRepository(db).connected_providers(workspace_id)

    def trigger_sync(self, workspace_id: str, user_id: str, options: SyncOptions | None = None) -> dict[str, str]:
        options = options or SyncOptions()
        connected = self._connected_providers(workspace_id)
        if options.providers:
            requested = {Provider(provider) for provider in options.providers}
            providers = [provider for provider in connected if provider in requested]
        else:
            providers = connected

        payload = {
            "workspaceId": workspace_id,
            "userId": user_id,
            "syncType": options.sync_type,
            "since": options.since,
            "targetItems": list(options.target_items) if options.target_items else None,
        }
        job_ids: dict[str, str] = {}
        for provider in providers:
            queue = self.queues.sync.get(provider)
            if queue is None:
                LOGGER.warning("sync_provider_without_queue", extra={"provider": provider.value})
                continue
            try:
                job_ids[provider.value] = queue.add(
                    SYNC_JOB_NAME,
                    payload,
                    job_id=f"{provider.value}-{workspace_id}-{int(time.time() * 1000)}",
                    attempts=settings.SYNC_JOB_ATTEMPTS,
                    backoff_ms=settings.SYNC_JOB_BACKOFF_MS,
                )
            except Exception as exc:  # noqa: BLE001
                LOGGER.error(
                    "sync_enqueue_failed",
                    extra={"provider": provider.value, "workspace_id": workspace_id, "error": str(exc)},
                )

        log_event(
            "sync.triggered",
            plane="control",
            payload={"providers": sorted(job_ids), "sync_type": options.sync_type, "user_id": user_id},
            workspace_id=workspace_id,
        )
        return job_ids

    def _queue_status(self, queue: JobQueue, workspace_id: str, provider: Provider) -> SyncStatus | None:
        lookback = settings.STATUS_LOOKBACK_JOBS
        active = next((job for job in queue.get_active() if _belongs_to(job, workspace_id)), None)
        if active is not None:
            return SyncStatus(
                provider=provider.value,
                status="active",
                progress=active.progress or None,
                started_at=active.processed_on or active.created_at,
            )
        waiting = next((job for job in queue.get_waiting() if _belongs_to(job, workspace_id)), None)
        if waiting is not None:
            return SyncStatus(provider=provider.value, status="pending", started_at=waiting.created_at)
        completed = next((job for job in queue.get_completed(lookback) if _belongs_to(job, workspace_id)), None)
        if completed is not None:
            return SyncStatus(
                provider=provider.value,
                status="completed",
                progress=completed.result,
                started_at=completed.processed_on or completed.created_at,
                completed_at=completed.finished_on,
            )
        failed = next((job for job in queue.get_failed(lookback) if _belongs_to(job, workspace_id)), None)
        if failed is not None:
            return SyncStatus(
                provider=provider.value,
                status="failed",
                error=failed.failed_reason,
                started_at=failed.processed_on or failed.created_at,
                completed_at=failed.finished_on,
            )
        return None

    def get_sync_status(self, workspace_id: str) -> WorkspaceSyncStatus:
        statuses: list[SyncStatus] = []
        for provider in self._connected_providers(workspace_id):
            queue = self.queues.sync.get(provider)
            if queue is None:
                continue
            status = self._queue_status(queue, workspace_id, provider)
            if status is not None:
                statuses.append(status)
        is_running = any(status.status in ("active", "pending") for status in statuses)
        return WorkspaceSyncStatus(workspace_id=workspace_id, is_running=is_running, jobs=statuses)

    def cancel_sync(self, workspace_id: str, provider: Provider | None = None) -> int:
        queues = [self.queues.sync[provider]] if provider else list(self.queues.sync.values())
        removed = sum(queue.remove_waiting(lambda job: _belongs_to(job, workspace_id)) for queue in queues)
        LOGGER.info("sync_cancelled", extra={"workspace_id": workspace_id, "provider": provider.value if provider else None, "removed": removed})
        return removed
