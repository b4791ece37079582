from __future__ import annotations

import logging
from typing import Any

from context_sync.clients.github_client import GitHubClient, GitHubPage
from context_sync.core.config import settings
from context_sync.models.models import Provider
from context_sync.services.transformers import github as github_transformer
from context_sync.services.transformers.base import parse_dt
from context_sync.workers.base import ProgressCallback, ProviderSyncWorker, SyncJobData, SyncResult

LOGGER = logging.getLogger(__name__)

RATE_LIMIT_PAUSE_SECONDS = 2.0
DOCS_DIRECTORY = "docs"


class GitHubSyncWorker(ProviderSyncWorker):
    provider = Provider.GITHUB
    target_config_key = "repositories"

    def __init__(self, *args, client_factory=GitHubClient, **kwargs):
        super().__init__(*args, client_factory=client_factory, **kwargs)
        self.per_page = settings.GITHUB_PER_PAGE
        self.commit_max_pages = settings.GITHUB_COMMIT_MAX_PAGES
        self.rate_limit_threshold = settings.GITHUB_RATE_LIMIT_THRESHOLD

    async def sync_unit(
        self,
        client: GitHubClient,
        context: Any,
        target: str,
        data: SyncJobData,
        result: SyncResult,
        report_progress: ProgressCallback,
    ) -> None:
        since = data.effective_since
        await self._sync_issues(client, target, since, data, result, report_progress)
        await self._sync_pulls(client, target, since, data, result, report_progress)
        await self._sync_commits(client, target, since, data, result, report_progress)
        await self._sync_docs(client, target, data, result, report_progress)

    async def _respect_rate_limit(self, page: GitHubPage, repo: str) -> None:
        if page.rate_limit_remaining < self.rate_limit_threshold:
            LOGGER.warning("github_rate_limit_low", extra={"repo": repo, "remaining": page.rate_limit_remaining})
            await self._sleep(RATE_LIMIT_PAUSE_SECONDS)

    async def _sync_issues(self, client, repo, since, data, result, report_progress) -> None:
        page_number = 1
        processed = 0
        while True:
            page = await client.list_issues(repo, page_number, self.per_page, since=since)
            for issue in page.items:
                # the issues endpoint also lists pull requests
                if issue.get("pull_request"):
                    continue
                self.ingest(data, result, github_transformer.transform_issue, issue, repo)
                processed += 1
            report_progress({"phase": "syncing_issues", "repo": repo, "count": processed, "itemsSynced": result.items_synced})
            await self._respect_rate_limit(page, repo)
            if len(page.items) < self.per_page:
                return
            page_number += 1

    async def _sync_pulls(self, client, repo, since, data, result, report_progress) -> None:
        since_dt = parse_dt(since)
        page_number = 1
        processed = 0
        while True:
            page = await client.list_pulls(repo, page_number, self.per_page)
            for pr in page.items:
                updated_at = parse_dt(pr.get("updated_at"))
                if since_dt is not None and updated_at is not None and updated_at < since_dt:
                    continue
                self.ingest(data, result, github_transformer.transform_pull_request, pr, repo)
                processed += 1
            report_progress({"phase": "syncing_prs", "repo": repo, "count": processed, "itemsSynced": result.items_synced})
            await self._respect_rate_limit(page, repo)
            if len(page.items) < self.per_page:
                return
            page_number += 1

    async def _sync_commits(self, client, repo, since, data, result, report_progress) -> None:
        processed = 0
        for page_number in range(1, self.commit_max_pages + 1):
            page = await client.list_commits(repo, page_number, self.per_page, since=since)
            for commit in page.items:
                self.ingest(data, result, github_transformer.transform_commit, commit, repo)
                processed += 1
            report_progress({"phase": "syncing_commits", "repo": repo, "count": processed, "itemsSynced": result.items_synced})
            await self._respect_rate_limit(page, repo)
            if len(page.items) < self.per_page:
                return

    async def _sync_docs(self, client, repo, data, result, report_progress) -> None:
        readme = await client.get_readme(repo)
        if readme:
            self.ingest(data, result, github_transformer.transform_document, readme, repo)
        for entry in await client.list_directory(repo, DOCS_DIRECTORY):
            if entry.get("type") != "file" or not str(entry.get("name") or "").lower().endswith(".md"):
                continue
            document = await client.get_file(repo, entry["path"])
            if document:
                self.ingest(data, result, github_transformer.transform_document, document, repo)
        report_progress({"phase": "syncing_docs", "repo": repo, "itemsSynced": result.items_synced})
