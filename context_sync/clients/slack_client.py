from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import httpx

from context_sync.clients.provider_base import ProviderAPIError, ProviderHTTPClient, Sleep
from context_sync.core.config import settings


@dataclass(frozen=True)
class SlackPage:
    messages: list[dict[str, Any]] = field(default_factory=list)
    has_more: bool = False
    next_cursor: str | None = None
    retry_after: float | None = None


class SlackClient(ProviderHTTPClient):
    """Slack Web API client.

    A 429 comes back as ``SlackPage.retry_after`` so the caller can wait the
    exact duration Slack asked for and re-issue the same page request.
    """

    provider = "slack"

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
            base_url or settings.SLACK_API_URL,
            {"Authorization": f"Bearer {access_token}"},
            timeout_seconds=timeout_seconds or settings.PROVIDER_TIMEOUT_SECONDS,
            max_attempts=max_attempts or settings.PROVIDER_MAX_ATTEMPTS,
            transport=transport,
            sleep=sleep,
        )

    async def _call(self, method: str, params: dict[str, Any]) -> tuple[dict[str, Any], float | None]:
        response = await self._request("GET", f"/{method}", params=params, return_rate_limited=True)
        if response.status_code == 429:
            try:
                retry_after = float(response.headers.get("retry-after") or 1)
            except ValueError:
                retry_after = 1.0
            return {}, retry_after
        body = response.json()
        if not body.get("ok"):
            raise ProviderAPIError(self.provider, response.status_code, str(body.get("error") or "unknown_error"))
        return body, None

    def _page(self, body: dict[str, Any], key: str, retry_after: float | None) -> SlackPage:
        if retry_after is not None:
            return SlackPage(retry_after=retry_after)
        next_cursor = (body.get("response_metadata") or {}).get("next_cursor") or None
        return SlackPage(
            messages=list(body.get(key) or []),
            has_more=bool(body.get("has_more")) or bool(next_cursor),
            next_cursor=next_cursor,
        )

    async def list_channels(self) -> list[dict[str, Any]]:
        channels: list[dict[str, Any]] = []
        cursor: str | None = None
        rate_limited = 0
        while True:
            body, retry_after = await self._call(
                "conversations.list",
                {"types": "public_channel,private_channel", "exclude_archived": "true", "limit": 200, "cursor": cursor},
            )
            if retry_after is not None:
                rate_limited += 1
                if rate_limited >= self.max_attempts:
                    raise ProviderAPIError(self.provider, 429, "rate limited listing channels", retryable=True)
                await self._sleep(retry_after)
                continue
            rate_limited = 0
            channels.extend(body.get("channels") or [])
            cursor = (body.get("response_metadata") or {}).get("next_cursor") or None
            if not cursor:
                return channels

    async def channel_history(
        self, channel: str, oldest: str | None = None, cursor: str | None = None, limit: int = 100
    ) -> SlackPage:
        body, retry_after = await self._call(
            "conversations.history", {"channel": channel, "oldest": oldest, "cursor": cursor, "limit": limit}
        )
        return self._page(body, "messages", retry_after)

    async def thread_replies(self, channel: str, thread_ts: str, cursor: str | None = None) -> SlackPage:
        body, retry_after = await self._call(
            "conversations.replies", {"channel": channel, "ts": thread_ts, "cursor": cursor, "limit": 200}
        )
        return self._page(body, "messages", retry_after)
