from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import httpx

from context_sync.clients.provider_base import ProviderHTTPClient, Sleep
from context_sync.core.config import settings


@dataclass(frozen=True)
class NotionBlockPage:
    blocks: list[dict[str, Any]] = field(default_factory=list)
    has_more: bool = False
    next_cursor: str | None = None


class NotionClient(ProviderHTTPClient):
    provider = "notion"

    def __init__(
        self,
        access_token: str,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        max_attempts: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        super().__init__(
            base_url or settings.NOTION_API_URL,
            {"Authorization": f"Bearer {access_token}", "Notion-Version": settings.NOTION_VERSION},
            timeout_seconds=timeout_seconds or settings.PROVIDER_TIMEOUT_SECONDS,
            max_attempts=max_attempts or settings.PROVIDER_MAX_ATTEMPTS,
            transport=transport,
            sleep=sleep,
        )

    async def get_page(self, page_id: str) -> dict[str, Any]:
        response = await self._request("GET", f"/pages/{page_id}")
        return dict(response.json())

    async def list_block_children(self, block_id: str, cursor: str | None = None) -> NotionBlockPage:
        response = await self._request(
            "GET", f"/blocks/{block_id}/children", params={"page_size": 100, "start_cursor": cursor}
        )
        body = response.json()
        return NotionBlockPage(
            blocks=list(body.get("results") or []),
            has_more=bool(body.get("has_more")),
            next_cursor=body.get("next_cursor"),
        )
