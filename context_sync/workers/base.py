from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from context_sync.core.logging import log_event
from context_sync.core.metrics import sync_items_upserted_total
from context_sync.db.errors import DatabaseOperationError
from context_sync.db.repositories import IntegrationRepository
from context_sync.db.session import SessionLocal, session_scope
from context_sync.models.models import Provider
from context_sync.services.credentials import IntegrationCredentialStore
from context_sync.services.item_ingest import ItemIngestor
from context_sync.services.job_queue import QueueJob
from context_sync.services.transformers.base import ItemDraft

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[dict[str, Any]], None]
Sleep = Callable[[float], Awaitable[None]]


class SyncConfigurationError(Exception):
    retryable = False

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code


@dataclass(frozen=True)
class SyncJobData:
    workspace_id: str
    user_id: str | None
    sync_type: str = "incremental"
    since: str | None = None
    target_items: list[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "SyncJobData":
        return cls(
            workspace_id=str(payload["workspaceId"]),
            user_id=payload.get("userId"),
            sync_type=payload.get("syncType") or "incremental",
            since=payload.get("since"),
            target_items=[str(item) for item in payload.get("targetItems") or [] if item],
        )

    @property
    def effective_since(self) -> str | None:
        return self.since if self.sync_type == "incremental" else None


@dataclass
class SyncResult:
    item_ids: dict[str, None] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def touch(self, item_id: str) -> None:
        self.item_ids[item_id] = None

    @property
    def items_synced(self) -> int:
        return len(self.item_ids)

    def to_dict(self) -> dict[str, Any]:
        return {"itemsSynced": self.items_synced, "errors": list(self.errors)}


class ProviderSyncWorker:
    """Template for provider sync jobs.

    Subclasses implement ``sync_unit`` for one repo, channel or page. Failures
    inside a unit are collected into the result; storage errors and anything
    raised before the unit loop fail the whole job.
    """

    provider: Provider
    target_config_key = ""
    inter_unit_delay_seconds = 0.0

    def __init__(
        self,
        ingestor: ItemIngestor,
        credentials: IntegrationCredentialStore,
        client_factory: Callable[[str], Any],
        session_factory: sessionmaker = SessionLocal,
        sleep: Sleep = asyncio.sleep,
    ):
        self.ingestor = ingestor
        self.credentials = credentials
        self.client_factory = client_factory
        self._session_factory = session_factory
        self._sleep = sleep

    def resolve_targets(self, data: SyncJobData) -> list[str]:
        if data.target_items:
            return list(data.target_items)
        with session_scope(self._session_factory) as db:
            return IntegrationRepository(db).selected_targets(data.workspace_id, self.provider)

    async def prepare(self, client: Any, data: SyncJobData) -> Any:
        return None

    async def sync_unit(
        self,
        client: Any,
        context: Any,
        target: str,
        data: SyncJobData,
        result: SyncResult,
        report_progress: ProgressCallback,
    ) -> None:
        raise NotImplementedError

    def unit_label(self, target: str) -> str:
        return target

    async def process(self, job: QueueJob, report_progress: ProgressCallback) -> dict[str, Any]:
        data = SyncJobData.from_payload(job.data)
        token = self.credentials.get_access_token(data.workspace_id, self.provider)
        if not token:
            raise SyncConfigurationError(
                "C-CREDENTIAL-MISSING", f"{self.provider.value} integration not found or token invalid"
            )
        targets = self.resolve_targets(data)
        if not targets:
            raise SyncConfigurationError("C-NO-TARGETS", f"No {self.target_config_key} selected for sync")

        LOGGER.info(
            "provider_sync_started",
            extra={"provider": self.provider.value, "workspace_id": data.workspace_id, "sync_type": data.sync_type},
        )
        result = SyncResult()
        async with self.client_factory(token) as client:
            context = await self.prepare(client, data)
            for index, target in enumerate(targets):
                try:
                    await self.sync_unit(client, context, target, data, result, report_progress)
                except (DatabaseOperationError, SQLAlchemyError):
                    raise
                except Exception as exc:  # noqa: BLE001
                    message = f"{self.unit_label(target)}: {exc}"
                    result.errors.append(message)
                    log_event(
                        "sync.unit.failed",
                        level=logging.ERROR,
                        payload={"provider": self.provider.value, "target": target, "error": str(exc)},
                        workspace_id=data.workspace_id,
                    )
                if self.inter_unit_delay_seconds and index < len(targets) - 1:
                    await self._sleep(self.inter_unit_delay_seconds)

        if result.item_ids:
            self.ingestor.enqueue_embedding(data.workspace_id, result.item_ids.keys())
        sync_items_upserted_total.labels(provider=self.provider.value).inc(result.items_synced)
        LOGGER.info(
            "provider_sync_finished",
            extra={
                "provider": self.provider.value,
                "workspace_id": data.workspace_id,
                "items_synced": result.items_synced,
                "error_count": len(result.errors),
            },
        )
        return result.to_dict()

    def ingest(self, data: SyncJobData, result: SyncResult, transform: Callable[..., ItemDraft], *args: Any) -> None:
        try:
            draft = transform(*args)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            LOGGER.warning(
                "provider_record_transform_failed",
                extra={"provider": self.provider.value, "workspace_id": data.workspace_id, "error": str(exc)},
            )
            result.errors.append(f"transform {transform.__name__}: {exc}")
            return
        result.touch(self.ingestor.upsert(data.workspace_id, draft))
