from datetime import datetime, timedelta, timezone

import pytest

pytest.importorskip("sqlalchemy")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from context_sync.db.session import Base
from context_sync.models.models import QueueJobs
from context_sync.services.job_queue import JobQueue, QueueRetention


def _session_factory():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine, tables=[QueueJobs.__table__])
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def _queue(factory, name="github-sync", attempts=3, backoff_ms=0, completed_count=100, failed_count=100):
    retention = QueueRetention(
        completed_age_seconds=3600,
        completed_count=completed_count,
        failed_age_seconds=86400,
        failed_count=failed_count,
    )
    return JobQueue(name, factory, attempts=attempts, backoff_ms=backoff_ms, retention=retention)


def test_claim_moves_oldest_waiting_job_to_active():
    queue = _queue(_session_factory())
    first = queue.add("sync", {"workspaceId": "ws-1"}, job_id="job-1")
    queue.add("sync", {"workspaceId": "ws-2"}, job_id="job-2")

    claimed = queue.claim_next()

    assert claimed.job_id == first
    assert claimed.state == "active"
    assert claimed.processed_on is not None
    assert [job.job_id for job in queue.get_active()] == ["job-1"]
    assert [job.job_id for job in queue.get_waiting()] == ["job-2"]


def test_queues_are_isolated_by_name():
    factory = _session_factory()
    _queue(factory, name="slack-sync").add("sync", {"workspaceId": "ws-1"})
    assert _queue(factory, name="github-sync").claim_next() is None


def test_complete_stores_result_and_progress():
    queue = _queue(_session_factory())
    job_id = queue.add("sync", {"workspaceId": "ws-1"})
    queue.claim_next()
    queue.update_progress(job_id, {"phase": "syncing_issues"})
    queue.complete(job_id, {"itemsSynced": 3, "errors": []})

    job = queue.get_job(job_id)
    assert job.state == "completed"
    assert job.progress == {"phase": "syncing_issues"}
    assert job.result == {"itemsSynced": 3, "errors": []}
    assert job.finished_on is not None


def test_retryable_failure_is_delayed_until_attempts_run_out():
    queue = _queue(_session_factory(), attempts=2, backoff_ms=0)
    job_id = queue.add("sync", {"workspaceId": "ws-1"})

    queue.claim_next()
    assert queue.fail(job_id, "timeout") == "delayed"

    retried = queue.claim_next()
    assert retried.job_id == job_id
    assert retried.attempts_made == 1
    assert queue.fail(job_id, "timeout again") == "failed"

    failed = queue.get_failed()
    assert [job.job_id for job in failed] == [job_id]
    assert failed[0].failed_reason == "timeout again"


def test_delayed_job_is_not_claimable_before_backoff():
    queue = _queue(_session_factory(), attempts=3, backoff_ms=60_000)
    job_id = queue.add("sync", {"workspaceId": "ws-1"})
    queue.claim_next()

    assert queue.fail(job_id, "rate limited") == "delayed"
    assert queue.claim_next() is None
    assert [job.state for job in queue.get_waiting()] == ["delayed"]


def test_non_retryable_failure_skips_remaining_attempts():
    queue = _queue(_session_factory(), attempts=3)
    job_id = queue.add("sync", {"workspaceId": "ws-1"})
    queue.claim_next()

    assert queue.fail(job_id, "integration not found", retryable=False) == "failed"
    assert queue.get_job(job_id).attempts_made == 1


def test_completed_jobs_are_pruned_by_count():
    queue = _queue(_session_factory(), completed_count=2)
    for index in range(3):
        job_id = queue.add("sync", {"n": index}, job_id=f"job-{index}")
        queue.claim_next()
        queue.complete(job_id, {})

    remaining = [job.job_id for job in queue.get_completed(limit=10)]
    assert len(remaining) == 2
    assert "job-2" in remaining


def test_remove_waiting_only_touches_unstarted_matching_jobs():
    queue = _queue(_session_factory())
    queue.add("sync", {"workspaceId": "ws-1"}, job_id="active-1")
    queue.claim_next()
    queue.add("sync", {"workspaceId": "ws-1"}, job_id="waiting-1")
    queue.add("sync", {"workspaceId": "ws-2"}, job_id="waiting-2")

    removed = queue.remove_waiting(lambda job: job.data.get("workspaceId") == "ws-1")

    assert removed == 1
    assert [job.job_id for job in queue.get_waiting()] == ["waiting-2"]
    assert [job.job_id for job in queue.get_active()] == ["active-1"]


def _expire_heartbeat(factory, job_id, seconds):
    with factory() as db:
        row = db.get(QueueJobs, job_id)
        row.heartbeat_at = datetime.now(timezone.utc) - timedelta(seconds=seconds)
        db.commit()


def test_stalled_active_job_is_reclaimed_then_failed_when_attempts_run_out():
    factory = _session_factory()
    queue = _queue(factory, attempts=2)
    job_id = queue.add("sync", {"workspaceId": "ws-1"})
    queue.claim_next()
    _expire_heartbeat(factory, job_id, queue.stalled_after_seconds + 60)

    reclaimed = queue.claim_next()

    assert reclaimed.job_id == job_id
    assert reclaimed.attempts_made == 1
    assert reclaimed.failed_reason == "job stalled"

    _expire_heartbeat(factory, job_id, queue.stalled_after_seconds + 60)
    assert queue.recover_stalled() == 1

    job = queue.get_job(job_id)
    assert job.state == "failed"
    assert job.attempts_made == 2
    assert queue.get_active() == []


def test_active_job_with_recent_heartbeat_is_left_alone():
    factory = _session_factory()
    queue = _queue(factory)
    job_id = queue.add("sync", {"workspaceId": "ws-1"})
    queue.claim_next()
    queue.update_progress(job_id, {"phase": "syncing_issues"})

    assert queue.recover_stalled() == 0
    assert queue.get_job(job_id).state == "active"
    assert queue.claim_next() is None
