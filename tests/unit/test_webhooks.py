import pytest

sqlalchemy = pytest.importorskip("sqlalchemy")

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from context_sync.db.session import Base
from context_sync.models.models import ContextItems, QueueJobs, WorkspaceIntegrations
from context_sync.services.item_ingest import ItemIngestor
from context_sync.services.job_queue import EMBEDDING_QUEUE_NAME, JobQueue
from context_sync.services.webhooks import WebhookService, normalize_push_commit


def _session_factory():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(
        engine,
        tables=[ContextItems.__table__, QueueJobs.__table__, WorkspaceIntegrations.__table__],
    )
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with factory() as db:
        db.add_all(
            [
                WorkspaceIntegrations(
                    workspace_id="ws-gh",
                    provider="github",
                    access_token="token",
                    config={"selectedRepos": ["acme/api"]},
                ),
                WorkspaceIntegrations(
                    workspace_id="ws-slack",
                    provider="slack",
                    access_token="token",
                    config={"teamId": "T1"},
                ),
                WorkspaceIntegrations(
                    workspace_id="ws-notion",
                    provider="notion",
                    access_token="token",
                    config={"workspaceId": "nw1"},
                ),
            ]
        )
        db.commit()
    return factory


def _service():
    factory = _session_factory()
    queue = JobQueue(EMBEDDING_QUEUE_NAME, factory)
    return WebhookService(ItemIngestor(queue, factory), factory), factory, queue


def _items(factory):
    with factory() as db:
        return list(db.execute(select(ContextItems).order_by(ContextItems.external_id)).scalars())


def test_github_issue_event_upserts_and_enqueues():
    service, factory, queue = _service()
    payload = {
        "action": "opened",
        "repository": {"full_name": "acme/api"},
        "issue": {
            "number": 7,
            "title": "Crash on start",
            "body": "Stack trace attached",
            "state": "open",
            "labels": [{"name": "bug"}],
            "comments": 0,
            "user": {"login": "octo"},
            "created_at": "2024-05-01T10:00:00Z",
            "html_url": "https://github.com/acme/api/issues/7",
        },
    }

    assert service.handle_github("issues", payload) == 1
    assert service.handle_github("issues", payload) == 1

    items = _items(factory)
    assert [item.external_id for item in items] == ["github:issue:acme/api:7"]
    assert items[0].workspace_id == "ws-gh"
    waiting = queue.get_waiting()
    assert len(waiting) == 2
    assert waiting[0].data == {"itemIds": [str(items[0].id)], "workspaceId": "ws-gh"}


def test_github_push_event_ingests_every_commit_in_one_job():
    service, factory, queue = _service()
    payload = {
        "repository": {"full_name": "acme/api"},
        "commits": [
            {
                "id": "a" * 40,
                "message": "Fix login\n\nDetails here",
                "url": "https://github.com/acme/api/commit/aaa",
                "timestamp": "2024-05-01T10:00:00Z",
                "author": {"name": "Octo", "email": "octo@example.com", "username": "octo"},
            },
            {
                "id": "b" * 40,
                "message": "Bump version",
                "timestamp": "2024-05-01T11:00:00Z",
                "author": {"name": "Octo", "email": "octo@example.com"},
            },
        ],
    }

    assert service.handle_github("push", payload) == 2

    assert [item.external_id for item in _items(factory)] == [
        f"github:commit:acme/api:{'a' * 40}",
        f"github:commit:acme/api:{'b' * 40}",
    ]
    waiting = queue.get_waiting()
    assert len(waiting) == 1
    assert len(waiting[0].data["itemIds"]) == 2


def test_github_unknown_repo_or_event_is_ignored():
    service, factory, queue = _service()

    assert service.handle_github("issues", {"repository": {"full_name": "other/repo"}, "issue": {"number": 1}}) == 0
    assert service.handle_github("star", {"repository": {"full_name": "acme/api"}}) == 0
    assert service.handle_github("push", {"repository": {"full_name": "acme/api"}, "commits": []}) == 0
    assert _items(factory) == []
    assert queue.get_waiting() == []


def test_slack_url_verification_echoes_challenge():
    service, _factory, _queue = _service()

    assert service.handle_slack({"type": "url_verification", "challenge": "abc123"}) == {"challenge": "abc123"}


def test_slack_message_event_is_ingested_for_matching_team():
    service, factory, queue = _service()
    payload = {
        "type": "event_callback",
        "team_id": "T1",
        "event": {"type": "message", "channel": "C1", "user": "U1", "text": "deploy is done", "ts": "1700000000.000100"},
    }

    assert service.handle_slack(payload) == {"ok": True}

    items = _items(factory)
    assert [item.external_id for item in items] == ["slack:C1:1700000000.000100"]
    assert items[0].workspace_id == "ws-slack"
    assert len(queue.get_waiting()) == 1


def test_slack_events_without_text_or_known_team_are_acknowledged():
    service, factory, _queue = _service()

    assert service.handle_slack({"team_id": "T1", "event": {"type": "reaction_added"}}) == {"ok": True}
    assert service.handle_slack(
        {"team_id": "T9", "event": {"type": "message", "channel": "C1", "text": "hi", "ts": "1.0"}}
    ) == {"ok": True}
    assert _items(factory) == []


def test_notion_page_updated_creates_minimal_item():
    service, factory, queue = _service()
    payload = {
        "type": "page.updated",
        "workspace_id": "nw1",
        "data": {
            "id": "1234-abcd",
            "last_edited_time": "2024-05-01T10:00:00.000Z",
            "properties": {"title": {"title": [{"plain_text": "Roadmap"}]}},
        },
    }

    assert service.handle_notion(payload) == 1

    item = _items(factory)[0]
    assert item.external_id == "notion:page:1234-abcd"
    assert item.title == "Roadmap"
    assert item.importance_score == 0.5
    assert item.source_url == "https://notion.so/1234abcd"
    assert item.metadata_json["webhookUpdate"] is True
    assert len(queue.get_waiting()) == 1


def test_notion_other_events_are_ignored():
    service, factory, _queue = _service()

    assert service.handle_notion({"type": "page.deleted", "workspace_id": "nw1", "data": {"id": "x"}}) == 0
    assert service.handle_notion({"type": "page.updated", "workspace_id": "nw-unknown", "data": {"id": "x"}}) == 0
    assert _items(factory) == []


def test_normalize_push_commit_shape():
    commit = normalize_push_commit(
        {"id": "abc", "message": "m", "timestamp": "t", "author": {"name": "N", "email": "e"}}
    )

    assert commit["sha"] == "abc"
    assert commit["author"] is None
    assert commit["commit"]["author"] == {"name": "N", "email": "e", "date": "t"}
