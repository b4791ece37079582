from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from context_sync.core.config import settings
from context_sync.db.repositories import _commit_or_raise
from context_sync.db.session import SessionLocal, session_scope
from context_sync.models.models import Provider, QueueJobs

LOGGER = logging.getLogger(__name__)

SYNC_QUEUE_NAMES: dict[Provider, str] = {
    Provider.GITHUB: "github-sync",
    Provider.SLACK: "slack-sync",
    Provider.NOTION: "notion-sync",
}
EMBEDDING_QUEUE_NAME = "embedding"

PENDING_STATES = ("waiting", "delayed")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class QueueRetention:
    completed_age_seconds: int
    completed_count: int
    failed_age_seconds: int
    failed_count: int

    @classmethod
    def from_settings(cls) -> "QueueRetention":
        return cls(
            completed_age_seconds=settings.QUEUE_KEEP_COMPLETED_SECONDS,
            completed_count=settings.QUEUE_KEEP_COMPLETED_COUNT,
            failed_age_seconds=settings.QUEUE_KEEP_FAILED_SECONDS,
            failed_count=settings.QUEUE_KEEP_FAILED_COUNT,
        )


@dataclass(frozen=True)
class QueueJob:
    job_id: str
    name: str
    data: dict[str, Any]
    state: str
    attempts_made: int
    max_attempts: int
    progress: dict[str, Any] | None
    result: dict[str, Any] | None
    failed_reason: str | None
    created_at: datetime | None
    processed_on: datetime | None
    finished_on: datetime | None


def _snapshot(row: QueueJobs) -> QueueJob:
    return QueueJob(
        job_id=row.job_id,
        name=row.name,
        data=dict(row.data or {}),
        state=row.state,
        attempts_made=row.attempts_made,
        max_attempts=row.max_attempts,
        progress=row.progress,
        result=row.result,
        failed_reason=row.failed_reason,
        created_at=row.created_at,
        processed_on=row.processed_on,
        finished_on=row.finished_on,
    )


class JobQueue:
    """Database-backed job queue for one logical queue name.

    Jobs move waiting -> active -> completed, or active -> delayed -> active on
    a retryable failure, ending in failed once attempts run out. Claiming uses
    row locks with SKIP LOCKED so several runners can share one queue. An
    active job whose heartbeat is older than ``stalled_after_seconds`` is
    treated as abandoned by a dead runner and counts as a failed attempt.
    """

    def __init__(
        self,
        queue_name: str,
        session_factory: sessionmaker = SessionLocal,
        *,
        attempts: int = 1,
        backoff_ms: int = 0,
        retention: QueueRetention | None = None,
        stalled_after_seconds: int | None = None,
    ) -> None:
        self.queue_name = queue_name
        self._session_factory = session_factory
        self.attempts = attempts
        self.backoff_ms = backoff_ms
        self.retention = retention or QueueRetention.from_settings()
        self.stalled_after_seconds = stalled_after_seconds or settings.QUEUE_STALLED_SECONDS

    def add(
        self,
        name: str,
        data: dict[str, Any],
        *,
        job_id: str | None = None,
        attempts: int | None = None,
        backoff_ms: int | None = None,
    ) -> str:
        job_id = job_id or uuid.uuid4().hex
        now = _utcnow()
        with session_scope(self._session_factory) as db:
            db.add(
                QueueJobs(
                    job_id=job_id,
                    queue_name=self.queue_name,
                    name=name,
                    data=data,
                    state="waiting",
                    attempts_made=0,
                    max_attempts=attempts or self.attempts,
                    backoff_ms=self.backoff_ms if backoff_ms is None else backoff_ms,
                    created_at=now,
                    available_at=now,
                )
            )
            _commit_or_raise(db)
        LOGGER.info("queue_job_added", extra={"queue": self.queue_name, "job_id": job_id, "job_name": name})
        return job_id

    def get_job(self, job_id: str) -> QueueJob | None:
        with session_scope(self._session_factory) as db:
            row = db.get(QueueJobs, job_id)
            if row is None or row.queue_name != self.queue_name:
                return None
            return _snapshot(row)

    def claim_next(self) -> QueueJob | None:
        self.recover_stalled()
        now = _utcnow()
        with session_scope(self._session_factory) as db:
            row = db.execute(
                select(QueueJobs)
                .where(QueueJobs.queue_name == self.queue_name)
                .where(QueueJobs.state.in_(PENDING_STATES))
                .where(QueueJobs.available_at <= now)
                .order_by(QueueJobs.available_at.asc(), QueueJobs.created_at.asc(), QueueJobs.job_id.asc())
                .limit(1)
                .with_for_update(skip_locked=True)
            ).scalar_one_or_none()
            if row is None:
                db.rollback()
                return None
            row.state = "active"
            row.processed_on = now
            row.heartbeat_at = now
            db.add(row)
            _commit_or_raise(db)
            return _snapshot(row)

    def update_progress(self, job_id: str, progress: dict[str, Any]) -> None:
        with session_scope(self._session_factory) as db:
            row = db.get(QueueJobs, job_id)
            if row is None:
                return
            row.progress = dict(progress)
            row.heartbeat_at = _utcnow()
            db.add(row)
            _commit_or_raise(db)

    def recover_stalled(self) -> int:
        """Move abandoned active jobs back to delayed, or to failed when out of attempts."""
        now = _utcnow()
        cutoff = now - timedelta(seconds=self.stalled_after_seconds)
        recovered: list[str] = []
        failed = 0
        with session_scope(self._session_factory) as db:
            rows = db.execute(
                select(QueueJobs)
                .where(QueueJobs.queue_name == self.queue_name)
                .where(QueueJobs.state == "active")
                .where(QueueJobs.heartbeat_at < cutoff)
                .with_for_update(skip_locked=True)
            ).scalars()
            for row in list(rows):
                row.attempts_made += 1
                row.failed_reason = "job stalled"
                if row.attempts_made < row.max_attempts:
                    row.state = "delayed"
                    row.available_at = now
                else:
                    row.state = "failed"
                    row.finished_on = now
                    failed += 1
                db.add(row)
                recovered.append(row.job_id)
            if not recovered:
                db.rollback()
                return 0
            _commit_or_raise(db)
        LOGGER.warning(
            "queue_jobs_stalled",
            extra={"queue": self.queue_name, "job_ids": recovered, "failed_count": failed},
        )
        if failed:
            self._prune("failed", self.retention.failed_age_seconds, self.retention.failed_count)
        return len(recovered)

    def complete(self, job_id: str, result: dict[str, Any] | None = None) -> None:
        now = _utcnow()
        with session_scope(self._session_factory) as db:
            row = db.get(QueueJobs, job_id)
            if row is None:
                return
            row.state = "completed"
            row.result = result
            row.finished_on = now
            db.add(row)
            _commit_or_raise(db)
        self._prune("completed", self.retention.completed_age_seconds, self.retention.completed_count)

    def fail(self, job_id: str, reason: str, *, retryable: bool = True) -> str | None:
        """Record a failed attempt and return the job's new state."""
        now = _utcnow()
        with session_scope(self._session_factory) as db:
            row = db.get(QueueJobs, job_id)
            if row is None:
                return None
            row.attempts_made += 1
            row.failed_reason = reason
            if retryable and row.attempts_made < row.max_attempts:
                delay_ms = row.backoff_ms * 2 ** (row.attempts_made - 1)
                row.state = "delayed"
                row.available_at = now + timedelta(milliseconds=delay_ms)
            else:
                row.state = "failed"
                row.finished_on = now
            state = row.state
            db.add(row)
            _commit_or_raise(db)
        if state == "failed":
            self._prune("failed", self.retention.failed_age_seconds, self.retention.failed_count)
        return state

    def _list(self, states: tuple[str, ...], *, newest_first: bool, limit: int | None = None) -> list[QueueJob]:
        order = (
            (QueueJobs.finished_on.desc(), QueueJobs.created_at.desc())
            if newest_first
            else (QueueJobs.created_at.asc(), QueueJobs.job_id.asc())
        )
        stmt = (
            select(QueueJobs)
            .where(QueueJobs.queue_name == self.queue_name)
            .where(QueueJobs.state.in_(states))
            .order_by(*order)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with session_scope(self._session_factory) as db:
            return [_snapshot(row) for row in db.execute(stmt).scalars()]

    def get_active(self) -> list[QueueJob]:
        return self._list(("active",), newest_first=False)

    def get_waiting(self) -> list[QueueJob]:
        return self._list(PENDING_STATES, newest_first=False)

    def get_completed(self, limit: int = 10) -> list[QueueJob]:
        return self._list(("completed",), newest_first=True, limit=limit)

    def get_failed(self, limit: int = 10) -> list[QueueJob]:
        return self._list(("failed",), newest_first=True, limit=limit)

    def remove_waiting(self, predicate: Callable[[QueueJob], bool]) -> int:
        """Delete jobs that have never started and match ``predicate``."""
        removed = 0
        with session_scope(self._session_factory) as db:
            rows = db.execute(
                select(QueueJobs)
                .where(QueueJobs.queue_name == self.queue_name)
                .where(QueueJobs.state == "waiting")
                .with_for_update(skip_locked=True)
            ).scalars()
            for row in list(rows):
                if predicate(_snapshot(row)):
                    db.delete(row)
                    removed += 1
            _commit_or_raise(db)
        return removed

    def _prune(self, state: str, max_age_seconds: int, max_count: int) -> None:
        cutoff = _utcnow() - timedelta(seconds=max_age_seconds)
        with session_scope(self._session_factory) as db:
            db.execute(
                delete(QueueJobs)
                .where(QueueJobs.queue_name == self.queue_name)
                .where(QueueJobs.state == state)
                .where(QueueJobs.finished_on < cutoff)
            )
            overflow = db.execute(
                select(QueueJobs.job_id)
                .where(QueueJobs.queue_name == self.queue_name)
                .where(QueueJobs.state == state)
                .order_by(QueueJobs.finished_on.desc(), QueueJobs.created_at.desc())
                .offset(max_count)
            ).scalars().all()
            if overflow:
                db.execute(delete(QueueJobs).where(QueueJobs.job_id.in_(overflow)))
            _commit_or_raise(db)


@dataclass
class QueueSet:
    sync: dict[Provider, JobQueue]
    embedding: JobQueue

    def for_provider(self, provider: Provider) -> JobQueue:
        return self.sync[provider]


def build_queues(session_factory: sessionmaker = SessionLocal) -> QueueSet:
    retention = QueueRetention.from_settings()
    sync = {
        provider: JobQueue(
            queue_name,
            session_factory,
            attempts=settings.SYNC_JOB_ATTEMPTS,
            backoff_ms=settings.SYNC_JOB_BACKOFF_MS,
            retention=retention,
        )
        for provider, queue_name in SYNC_QUEUE_NAMES.items()
    }
    embedding = JobQueue(
        EMBEDDING_QUEUE_NAME,
        session_factory,
        attempts=settings.SYNC_JOB_ATTEMPTS,
        backoff_ms=settings.SYNC_JOB_BACKOFF_MS,
        retention=retention,
    )
    return QueueSet(sync=sync, embedding=embedding)
