from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from context_sync.clients.provider_base import ProviderAPIError
from context_sync.clients.slack_client import SlackClient
from context_sync.core.config import settings
from context_sync.db.repositories import IntegrationRepository
from context_sync.db.session import session_scope
from context_sync.models.models import Provider
from context_sync.services.transformers import slack as slack_transformer
from context_sync.services.transformers.base import parse_dt
from context_sync.workers.base import ProgressCallback, ProviderSyncWorker, SyncJobData, SyncResult

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlackSyncContext:
    channels: dict[str, dict[str, Any]]
    team_id: str | None


def to_slack_ts(since: str | None) -> str | None:
    if not since:
        return None
    parsed = parse_dt(since)
    if parsed is not None:
        return f"{parsed.timestamp():.6f}"
    try:
        return f"{float(since):.6f}"
    except ValueError:
        return None


def is_thread_parent(message: dict[str, Any]) -> bool:
    return message.get("thread_ts") == message.get("ts") and int(message.get("reply_count") or 0) > 0


class SlackSyncWorker(ProviderSyncWorker):
    provider = Provider.SLACK
    target_config_key = "channels"

    def __init__(self, *args, client_factory=SlackClient, **kwargs):
        super().__init__(*args, client_factory=client_factory, **kwargs)
        self.page_delay_seconds = settings.SLACK_RATE_LIMIT_DELAY_MS / 1000
        self.inter_unit_delay_seconds = self.page_delay_seconds
        self.max_rate_limited_attempts = max(1, settings.PROVIDER_MAX_ATTEMPTS)

    async def prepare(self, client: SlackClient, data: SyncJobData) -> SlackSyncContext:
        channels = await client.list_channels()
        with session_scope(self._session_factory) as db:
            team_id = IntegrationRepository(db).team_id(data.workspace_id)
        return SlackSyncContext(channels={str(channel["id"]): channel for channel in channels}, team_id=team_id)

    def unit_label(self, target: str) -> str:
        return f"#{target}"

    async def sync_unit(
        self,
        client: SlackClient,
        context: SlackSyncContext,
        target: str,
        data: SyncJobData,
        result: SyncResult,
        report_progress: ProgressCallback,
    ) -> None:
        channel = context.channels.get(target)
        if channel is None:
            raise LookupError(f"channel {target} not found or not accessible")
        oldest = to_slack_ts(data.effective_since)
        cursor: str | None = None
        processed = 0
        rate_limited = 0
        while True:
            page = await client.channel_history(channel["id"], oldest=oldest, cursor=cursor, limit=100)
            if page.retry_after is not None:
                rate_limited += 1
                await self._wait_for_rate_limit(channel["id"], page.retry_after, rate_limited)
                continue
            rate_limited = 0
            for message in page.messages:
                if not message.get("text") or message.get("type") != "message":
                    continue
                if is_thread_parent(message):
                    await self._sync_thread(client, context, channel, str(message["ts"]), data, result)
                elif not message.get("thread_ts"):
                    self.ingest(data, result, slack_transformer.transform_message, message, channel, context.team_id)
                processed += 1
            report_progress({"phase": "syncing_channel", "channel": channel.get("name"), "messagesProcessed": processed, "itemsSynced": result.items_synced})
            if not page.has_more or not page.next_cursor:
                return
            cursor = page.next_cursor
            await self._sleep(self.page_delay_seconds)

    async def _sync_thread(self, client, context, channel, thread_ts, data, result) -> None:
        replies: list[dict[str, Any]] = []
        cursor: str | None = None
        rate_limited = 0
        while True:
            page = await client.thread_replies(channel["id"], thread_ts, cursor=cursor)
            if page.retry_after is not None:
                rate_limited += 1
                await self._wait_for_rate_limit(channel["id"], page.retry_after, rate_limited)
                continue
            rate_limited = 0
            replies.extend(page.messages)
            if not page.has_more or not page.next_cursor:
                break
            cursor = page.next_cursor
            await self._sleep(self.page_delay_seconds)
        if not replies:
            return
        parent = next((reply for reply in replies if str(reply.get("ts")) == thread_ts), replies[0])
        self.ingest(data, result, slack_transformer.transform_thread, parent, replies, channel, context.team_id)

    async def _wait_for_rate_limit(self, channel_id: str, retry_after: float, rate_limited: int) -> None:
        if rate_limited >= self.max_rate_limited_attempts:
            raise ProviderAPIError(
                "slack", 429, f"rate limited on {channel_id} after {rate_limited} attempts", retryable=True
            )
        LOGGER.warning("slack_rate_limited", extra={"channel": channel_id, "retry_after_seconds": retry_after})
        await self._sleep(retry_after)
