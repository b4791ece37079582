import os
import uuid

import pytest


def _session_factory():
    sqlalchemy = pytest.importorskip("sqlalchemy")
    pytest.importorskip("pgvector")
    db_url = os.getenv("TEST_DATABASE_URL")
    if not db_url:
        pytest.skip("TEST_DATABASE_URL is not configured for Postgres integration test")

    from context_sync.db.session import Base
    from context_sync.models import models  # noqa: F401

    engine = sqlalchemy.create_engine(db_url)
    with engine.begin() as conn:
        conn.execute(sqlalchemy.text("CREATE EXTENSION IF NOT EXISTS vector"))
    Base.metadata.create_all(engine)
    return sqlalchemy.orm.sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def _axis(index):
    from context_sync.core.config import settings

    vector = [0.0] * settings.EMBEDDING_DIMENSIONS
    vector[index] = 1.0
    return vector


def _draft(external_id, title, source_type="github_issue"):
    from context_sync.models.models import SourceType
    from context_sync.services.transformers.base import ItemDraft

    return ItemDraft(
        external_id=external_id,
        source_type=SourceType(source_type),
        title=title,
        content=f"{title} content",
        source_url=None,
        metadata={},
        importance_score=0.5,
    )


def test_vector_search_orders_by_cosine_distance_and_scopes_workspace():
    factory = _session_factory()
    from context_sync.db.repositories import ContextItemRepository, VectorRepository

    workspace_id = f"ws-{uuid.uuid4().hex[:12]}"
    other_workspace = f"ws-{uuid.uuid4().hex[:12]}"
    with factory() as db:
        repo = ContextItemRepository(db, workspace_id)
        near = repo.upsert(_draft("github:issue:acme/api:1", "Near"))
        far = repo.upsert(_draft("github:issue:acme/api:2", "Far", source_type="slack_message"))
        foreign = ContextItemRepository(db, other_workspace).upsert(_draft("github:issue:acme/api:1", "Foreign"))
        vectors = VectorRepository(db)
        vectors.upsert_vector(near.id, _axis(0), "test-model")
        vectors.upsert_vector(far.id, _axis(1), "test-model")
        vectors.upsert_vector(foreign.id, _axis(0), "test-model")

        rows = repo.vector_search(_axis(0), sources=None, limit=10)
        filtered = repo.vector_search(_axis(0), sources=["slack_message"], limit=10)

    assert [row["id"] for row in rows] == [str(near.id), str(far.id)]
    assert rows[0]["distance"] == pytest.approx(0.0)
    assert rows[1]["distance"] == pytest.approx(1.0)
    assert [row["id"] for row in filtered] == [str(far.id)]


def test_soft_delete_removes_vector_row():
    factory = _session_factory()
    from context_sync.db.repositories import ContextItemRepository, VectorRepository

    workspace_id = f"ws-{uuid.uuid4().hex[:12]}"
    with factory() as db:
        repo = ContextItemRepository(db, workspace_id)
        item = repo.upsert(_draft("notion:page:abc", "Roadmap", source_type="notion_page"))
        VectorRepository(db).upsert_vector(item.id, _axis(2), "test-model")
        assert VectorRepository(db).embedded_item_ids([item.id]) == {str(item.id)}

        assert repo.soft_delete(item.id) is True

        assert VectorRepository(db).embedded_item_ids([item.id]) == set()
        assert repo.get(item.id) is None
        assert repo.vector_search(_axis(2), sources=None, limit=10) == []
