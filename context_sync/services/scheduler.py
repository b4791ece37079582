from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import sessionmaker

from context_sync.core.config import settings
from context_sync.core.logging import log_event
from context_sync.db.repositories import IntegrationRepository
from context_sync.db.session import SessionLocal, session_scope
from context_sync.services.sync_coordinator import SyncCoordinator, SyncOptions

LOGGER = logging.getLogger(__name__)


def next_hourly_run(now: datetime) -> datetime:
    return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)


def next_daily_run(now: datetime, hour: int) -> datetime:
    candidate = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class SyncScheduler:
    """Hourly incremental and daily full sync over every connected workspace."""

    def __init__(
        self,
        coordinator: SyncCoordinator,
        session_factory: sessionmaker = SessionLocal,
        daily_hour: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.coordinator = coordinator
        self._session_factory = session_factory
        self.daily_hour = settings.SCHEDULER_DAILY_FULL_SYNC_HOUR if daily_hour is None else daily_hour
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _workspaces(self) -> list[tuple[str, str]]:
        with session_scope(self._session_factory) as db:
            return IntegrationRepository(db).list_active_connections()

    def _run(self, sync_type: str) -> int:
        try:
            workspaces = self._workspaces()
        except Exception as exc:  # noqa: BLE001
            LOGGER.error("scheduler_workspace_lookup_failed", extra={"sync_type": sync_type, "error": str(exc)})
            return 0
        triggered = 0
        for workspace_id, user_id in workspaces:
            try:
                self.coordinator.trigger_sync(workspace_id, user_id, SyncOptions(sync_type=sync_type))
                triggered += 1
            except Exception as exc:  # noqa: BLE001
                LOGGER.error(
                    "scheduler_trigger_failed",
                    extra={"workspace_id": workspace_id, "sync_type": sync_type, "error": str(exc)},
                )
        log_event(
            "scheduler.run",
            plane="control",
            payload={"sync_type": sync_type, "workspaces": len(workspaces), "triggered": triggered},
        )
        return triggered

    def run_incremental_sync(self) -> int:
        return self._run("incremental")

    def run_full_sync(self) -> int:
        return self._run("full")

    def trigger_manual_sync(self, workspace_id: str, user_id: str, full: bool = False) -> dict[str, str]:
        LOGGER.info("scheduler_manual_sync", extra={"workspace_id": workspace_id, "full": full})
        return self.coordinator.trigger_sync(
            workspace_id, user_id, SyncOptions(sync_type="full" if full else "incremental")
        )

    async def run_forever(self, stop: asyncio.Event) -> None:
        now = self._clock()
        next_hourly = next_hourly_run(now)
        next_daily = next_daily_run(now, self.daily_hour)
        while not stop.is_set():
            due_at = min(next_hourly, next_daily)
            timeout = max(0.0, (due_at - self._clock()).total_seconds())
            try:
                await asyncio.wait_for(stop.wait(), timeout=timeout)
                break
            except asyncio.TimeoutError:
                pass
            now = self._clock()
            if now >= next_daily:
                await asyncio.to_thread(self.run_full_sync)
                next_daily = next_daily_run(now, self.daily_hour)
            if now >= next_hourly:
                await asyncio.to_thread(self.run_incremental_sync)
                next_hourly = next_hourly_run(now)
