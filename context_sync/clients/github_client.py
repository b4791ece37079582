from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass, field
from typing import Any

import httpx

from context_sync.clients.provider_base import ProviderAPIError, ProviderHTTPClient, Sleep
from context_sync.core.config import settings

DEFAULT_RATE_LIMIT_REMAINING = 1000


@dataclass(frozen=True)
class GitHubPage:
    items: list[dict[str, Any]] = field(default_factory=list)
    rate_limit_remaining: int = DEFAULT_RATE_LIMIT_REMAINING


def _rate_limit_remaining(response: httpx.Response) -> int:
    value = response.headers.get("x-ratelimit-remaining")
    try:
        return int(value) if value is not None else DEFAULT_RATE_LIMIT_REMAINING
    except ValueError:
        return DEFAULT_RATE_LIMIT_REMAINING


class GitHubClient(ProviderHTTPClient):
    provider = "github"

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
            base_url or settings.GITHUB_API_URL,
            {
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            timeout_seconds=timeout_seconds or settings.PROVIDER_TIMEOUT_SECONDS,
            max_attempts=max_attempts or settings.PROVIDER_MAX_ATTEMPTS,
            transport=transport,
            sleep=sleep,
        )

    async def _page(self, path: str, params: dict[str, Any]) -> GitHubPage:
        response = await self._request("GET", path, params=params)
        body = response.json()
        return GitHubPage(items=list(body or []), rate_limit_remaining=_rate_limit_remaining(response))

    async def list_issues(
        self, repo: str, page: int, per_page: int, since: str | None = None, state: str = "all"
    ) -> GitHubPage:
        return await self._page(
            f"/repos/{repo}/issues",
            {"page": page, "per_page": per_page, "state": state, "since": since, "sort": "updated", "direction": "desc"},
        )

    async def list_pulls(self, repo: str, page: int, per_page: int, state: str = "all") -> GitHubPage:
        return await self._page(
            f"/repos/{repo}/pulls",
            {"page": page, "per_page": per_page, "state": state, "sort": "updated", "direction": "desc"},
        )

    async def list_commits(self, repo: str, page: int, per_page: int, since: str | None = None) -> GitHubPage:
        return await self._page(f"/repos/{repo}/commits", {"page": page, "per_page": per_page, "since": since})

    async def get_readme(self, repo: str) -> dict[str, Any] | None:
        return await self._file_or_none(f"/repos/{repo}/readme")

    async def list_directory(self, repo: str, path: str) -> list[dict[str, Any]]:
        try:
            response = await self._request("GET", f"/repos/{repo}/contents/{path}")
        except ProviderAPIError as exc:
            if exc.status_code == 404:
                return []
            raise
        body = response.json()
        return list(body) if isinstance(body, list) else []

    async def get_file(self, repo: str, path: str) -> dict[str, Any] | None:
        return await self._file_or_none(f"/repos/{repo}/contents/{path}")

    async def _file_or_none(self, url_path: str) -> dict[str, Any] | None:
        try:
            response = await self._request("GET", url_path)
        except ProviderAPIError as exc:
            if exc.status_code == 404:
                return None
            raise
        body = dict(response.json())
        if body.get("encoding") == "base64" and body.get("content"):
            body["content"] = base64.b64decode(body["content"]).decode("utf-8", errors="replace")
        return body
