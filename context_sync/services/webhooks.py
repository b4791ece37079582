from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import sessionmaker

from context_sync.core.logging import log_event
from context_sync.db.repositories import IntegrationRepository
from context_sync.db.session import SessionLocal, session_scope
from context_sync.models.models import Provider, SourceType
from context_sync.services.item_ingest import ItemIngestor
from context_sync.services.transformers import github as github_transformer
from context_sync.services.transformers import slack as slack_transformer
from context_sync.services.transformers.base import ItemDraft

LOGGER = logging.getLogger(__name__)


def normalize_push_commit(commit: dict[str, Any]) -> dict[str, Any]:
    """Map a push-event commit onto the REST commit shape the transformer expects."""
    author = commit.get("author") or {}
    return {
        "sha": commit["id"],
        "html_url": commit.get("url"),
        "author": {"login": author.get("username")} if author.get("username") else None,
        "commit": {
            "message": commit.get("message") or "",
            "author": {"name": author.get("name"), "email": author.get("email"), "date": commit.get("timestamp")},
        },
    }


def _repo_matcher(repo_full_name: str):
    def matches(config: dict) -> bool:
        return config.get("repoFullName") == repo_full_name or repo_full_name in (config.get("selectedRepos") or [])

    return matches


class WebhookService:
    """Push-based ingestion; writes through the same primitives as polling sync."""

    def __init__(self, ingestor: ItemIngestor, session_factory: sessionmaker = SessionLocal):
        self.ingestor = ingestor
        self._session_factory = session_factory

    def _find_workspace(self, provider: Provider, matcher) -> str | None:
        with session_scope(self._session_factory) as db:
            return IntegrationRepository(db).find_workspace(provider, matcher)

    def _ingest(self, provider: Provider, workspace_id: str, drafts: list[ItemDraft]) -> int:
        item_ids = [self.ingestor.upsert(workspace_id, draft) for draft in drafts]
        self.ingestor.enqueue_embedding(workspace_id, item_ids)
        log_event(
            "webhook.ingested",
            payload={"provider": provider.value, "items": len(item_ids)},
            workspace_id=workspace_id,
        )
        return len(item_ids)

    def handle_github(self, event: str, payload: dict[str, Any]) -> int:
        repo_full_name = (payload.get("repository") or {}).get("full_name")
        if event not in ("issues", "pull_request", "push"):
            LOGGER.debug("github_webhook_ignored", extra={"github_event": event})
            return 0
        if not repo_full_name:
            LOGGER.warning("github_webhook_missing_repo", extra={"github_event": event})
            return 0
        workspace_id = self._find_workspace(Provider.GITHUB, _repo_matcher(repo_full_name))
        if workspace_id is None:
            LOGGER.debug("github_webhook_unknown_repo", extra={"repo": repo_full_name})
            return 0

        if event == "issues":
            drafts = [github_transformer.transform_issue(payload["issue"], repo_full_name)]
        elif event == "pull_request":
            drafts = [github_transformer.transform_pull_request(payload["pull_request"], repo_full_name)]
        else:
            drafts = [
                github_transformer.transform_commit(normalize_push_commit(commit), repo_full_name)
                for commit in payload.get("commits") or []
            ]
        if not drafts:
            return 0
        return self._ingest(Provider.GITHUB, workspace_id, drafts)

    def handle_slack(self, payload: dict[str, Any]) -> dict[str, Any]:
        if payload.get("type") == "url_verification":
            return {"challenge": payload.get("challenge")}
        event = payload.get("event") or {}
        team_id = payload.get("team_id")
        if event.get("type") != "message" or not event.get("text") or not event.get("ts"):
            return {"ok": True}
        if not team_id:
            LOGGER.warning("slack_webhook_missing_team")
            return {"ok": True}
        workspace_id = self._find_workspace(Provider.SLACK, lambda config: config.get("teamId") == team_id)
        if workspace_id is None:
            LOGGER.debug("slack_webhook_unknown_team", extra={"team_id": team_id})
            return {"ok": True}
        # events carry only the channel id
        channel = {"id": event["channel"], "name": event["channel"]}
        self._ingest(Provider.SLACK, workspace_id, [slack_transformer.transform_message(event, channel, team_id)])
        return {"ok": True}

    def handle_notion(self, payload: dict[str, Any]) -> int:
        if payload.get("type") != "page.updated":
            return 0
        data = payload.get("data") or {}
        page_id = data.get("id")
        notion_workspace_id = payload.get("workspace_id")
        if not page_id or not notion_workspace_id:
            LOGGER.warning("notion_webhook_incomplete", extra={"page_id": page_id})
            return 0
        workspace_id = self._find_workspace(
            Provider.NOTION, lambda config: config.get("workspaceId") == notion_workspace_id
        )
        if workspace_id is None:
            return 0
        title_parts = ((data.get("properties") or {}).get("title") or {}).get("title") or []
        title = (title_parts[0].get("plain_text") if title_parts else None) or "Untitled"
        draft = ItemDraft(
            external_id=f"notion:page:{page_id}",
            source_type=SourceType.NOTION_PAGE,
            title=title,
            content=title,
            source_url=data.get("url") or f"https://notion.so/{page_id.replace('-', '')}",
            metadata={"pageId": page_id, "lastEditedTime": data.get("last_edited_time"), "webhookUpdate": True},
            importance_score=0.5,
        )
        return self._ingest(Provider.NOTION, workspace_id, [draft])
