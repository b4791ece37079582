from __future__ import annotations

import logging
from typing import Any

from context_sync.clients.notion_client import NotionClient
from context_sync.clients.provider_base import ProviderAPIError
from context_sync.core.config import settings
from context_sync.models.models import Provider
from context_sync.services.transformers import notion as notion_transformer
from context_sync.workers.base import ProgressCallback, ProviderSyncWorker, SyncJobData, SyncResult

LOGGER = logging.getLogger(__name__)


class NotionSyncWorker(ProviderSyncWorker):
    provider = Provider.NOTION
    target_config_key = "pages"

    def __init__(self, *args, client_factory=NotionClient, **kwargs):
        super().__init__(*args, client_factory=client_factory, **kwargs)
        self.page_delay_seconds = settings.NOTION_RATE_LIMIT_DELAY_MS / 1000
        self.inter_unit_delay_seconds = self.page_delay_seconds
        self.max_depth = settings.NOTION_MAX_BLOCK_DEPTH
        self.max_blocks = settings.NOTION_MAX_BLOCKS

    def unit_label(self, target: str) -> str:
        return f"Page {target}"

    async def sync_unit(
        self,
        client: NotionClient,
        context: Any,
        target: str,
        data: SyncJobData,
        result: SyncResult,
        report_progress: ProgressCallback,
    ) -> None:
        page = await client.get_page(target)
        blocks = await self.fetch_blocks(client, target)
        report_progress(
            {
                "phase": "syncing_page",
                "pageTitle": notion_transformer.page_title(page),
                "blockCount": len(blocks),
                "itemsSynced": result.items_synced,
            }
        )
        self.ingest(data, result, notion_transformer.transform_page, page, blocks)

    async def _list_children(self, client: NotionClient, block_id: str) -> list[dict[str, Any]]:
        blocks: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            page = await client.list_block_children(block_id, cursor=cursor)
            blocks.extend(page.blocks)
            if not page.has_more or not page.next_cursor:
                return blocks
            cursor = page.next_cursor
            await self._sleep(self.page_delay_seconds)

    async def fetch_blocks(self, client: NotionClient, page_id: str) -> list[dict[str, Any]]:
        """Flatten the page's block tree in document order.

        Walks an explicit stack, so nesting depth never grows the call stack.
        Blocks deeper than ``max_depth`` keep their own text but their children
        are not fetched; traversal stops once ``max_blocks`` blocks are collected.
        """
        collected: list[dict[str, Any]] = []
        stack = [(block, 1) for block in reversed(await self._list_children(client, page_id))]
        while stack:
            if len(collected) >= self.max_blocks:
                LOGGER.warning("notion_block_limit_reached", extra={"page_id": page_id, "max_blocks": self.max_blocks})
                break
            block, depth = stack.pop()
            collected.append(block)
            if not block.get("has_children"):
                continue
            if depth >= self.max_depth:
                LOGGER.warning("notion_block_depth_limit", extra={"page_id": page_id, "block_id": block.get("id")})
                continue
            try:
                children = await self._list_children(client, block["id"])
            except ProviderAPIError as exc:
                LOGGER.warning("notion_child_blocks_failed", extra={"block_id": block.get("id"), "error": str(exc)})
                continue
            await self._sleep(self.page_delay_seconds)
            stack.extend((child, depth + 1) for child in reversed(children))
        return collected
