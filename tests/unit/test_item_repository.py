from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

sqlalchemy = pytest.importorskip("sqlalchemy")

from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from context_sync.db.repositories import ContextItemRepository
from context_sync.db.session import Base
from context_sync.models.models import ContextItems, SourceType
from context_sync.services.transformers.base import ItemDraft


def _session_factory():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine, tables=[ContextItems.__table__])
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def _draft(external_id="github:issue:acme/api:1", title="Issue", content="body", score=0.5, **overrides):
    values = dict(
        external_id=external_id,
        source_type=SourceType.GITHUB_ISSUE,
        title=title,
        content=content,
        source_url="https://example.com",
        metadata={"repo": "acme/api"},
        importance_score=score,
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )
    values.update(overrides)
    return ItemDraft(**values)


def _count(db):
    return db.execute(select(func.count()).select_from(ContextItems)).scalar_one()


def test_upsert_is_idempotent_and_keeps_identity():
    factory = _session_factory()
    with factory() as db:
        repo = ContextItemRepository(db, "ws-1")
        first = repo.upsert(_draft())
        second = repo.upsert(_draft(title="Issue (edited)", content="new body", score=0.9))

        assert first.id == second.id
        assert _count(db) == 1
        stored = repo.get(first.id)
        assert stored.title == "Issue (edited)"
        assert stored.content == "new body"
        assert stored.importance_score == 0.9


def test_same_external_id_in_other_workspace_is_a_new_item():
    factory = _session_factory()
    with factory() as db:
        first = ContextItemRepository(db, "ws-1").upsert(_draft())
        second = ContextItemRepository(db, "ws-2").upsert(_draft())
        assert first.id != second.id
        assert _count(db) == 2


def test_concurrent_insert_is_replayed_as_update():
    factory = _session_factory()
    with factory() as other:
        winner = ContextItemRepository(other, "ws-1").upsert(_draft(title="from webhook"))

    db = factory()
    repo = ContextItemRepository(db, "ws-1")
    real_find = repo.find_by_identity
    real_commit = db.commit
    state = {"finds": 0, "commits": 0}

    def stale_find(source_type, external_id):
        state["finds"] += 1
        if state["finds"] == 1:
            return None
        return real_find(source_type, external_id)

    def racing_commit():
        state["commits"] += 1
        if state["commits"] == 1:
            raise IntegrityError("INSERT INTO context_items", {}, SimpleNamespace(sqlstate="23505"))
        real_commit()

    repo.find_by_identity = stale_find
    db.commit = racing_commit

    item = repo.upsert(_draft(title="from poll", content="polled body"))

    assert item.id == winner.id
    assert item.title == "from poll"
    assert _count(db) == 1
    db.close()


def test_list_items_filters_and_paginates():
    factory = _session_factory()
    with factory() as db:
        repo = ContextItemRepository(db, "ws-1")
        for index in range(5):
            repo.upsert(
                _draft(
                    external_id=f"github:issue:acme/api:{index}",
                    title=f"Deploy issue {index}" if index % 2 == 0 else f"Other {index}",
                    created_at=datetime(2024, 1, index + 1, tzinfo=timezone.utc),
                )
            )
        repo.upsert(_draft(external_id="slack:C1:1.0", source_type=SourceType.SLACK_MESSAGE, title="deploy chat"))

        items, total = repo.list_items(query="deploy", page=1, limit=2)
        assert total == 4
        assert len(items) == 2

        issues, issue_total = repo.list_items(source="github_issue", page=2, limit=4)
        assert issue_total == 5
        assert len(issues) == 1


def test_lexical_search_orders_by_importance_and_skips_deleted():
    factory = _session_factory()
    with factory() as db:
        repo = ContextItemRepository(db, "ws-1")
        low = repo.upsert(_draft(external_id="a", title="cache notes", score=0.2))
        high = repo.upsert(_draft(external_id="b", content="the cache layer", score=0.9))
        gone = repo.upsert(_draft(external_id="c", title="cache removed", score=1.0))
        gone.deleted_at = datetime.now(timezone.utc)
        db.commit()

        results = repo.lexical_search("CACHE", sources=None, limit=10)

        assert [item.id for item in results] == [high.id, low.id]
        assert repo.lexical_search("cache", sources=["slack_message"], limit=10) == []


def test_get_many_returns_only_live_items_by_string_id():
    factory = _session_factory()
    with factory() as db:
        repo = ContextItemRepository(db, "ws-1")
        item = repo.upsert(_draft())
        found = repo.get_many([str(item.id)])
        assert list(found) == [str(item.id)]
        assert ContextItemRepository(db, "ws-other").get_many([str(item.id)]) == {}
