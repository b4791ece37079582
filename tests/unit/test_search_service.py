from types import SimpleNamespace

import pytest

from context_sync.core.config import settings
from context_sync.services.search import (
    SearchService,
    apology_answer,
    build_context,
    extract_snippet,
    lexical_rank_score,
)


def _item(item_id, title, content, source_type="github_issue"):
    return SimpleNamespace(
        id=item_id,
        title=title,
        content=content,
        source_type=source_type,
        source_url=f"https://example.test/{item_id}",
    )


class FakeRepository:
    def __init__(self, vector_rows=None, vector_error=None, lexical_items=()):
        self.vector_rows = vector_rows or []
        self.vector_error = vector_error
        self.lexical_items = list(lexical_items)
        self.vector_calls = []
        self.lexical_calls = []

    def vector_search(self, embedding, *, sources, limit):
        self.vector_calls.append((embedding, sources, limit))
        if self.vector_error is not None:
            raise self.vector_error
        return self.vector_rows

    def lexical_search(self, query, *, sources, limit):
        self.lexical_calls.append((query, sources, limit))
        return self.lexical_items[:limit]


class FakeEmbeddings:
    def embed_text(self, text):
        return [0.1, 0.2]


class FakeLLM:
    def __init__(self, answer="The answer.", error=None):
        self.answer = answer
        self.error = error
        self.calls = []

    def generate_answer(self, question, context):
        self.calls.append((question, context))
        if self.error is not None:
            raise self.error
        return self.answer


def _service(repository, llm=None):
    return SearchService(
        db=None,
        workspace_id="ws-1",
        embeddings_client=FakeEmbeddings(),
        llm_client=llm or FakeLLM(),
        repository=repository,
    )


def test_vector_results_use_cosine_similarity(monkeypatch):
    monkeypatch.setattr(settings, "PGVECTOR_ENABLED", True)
    repository = FakeRepository(
        vector_rows=[
            {
                "id": "i1",
                "title": "Login bug",
                "content": "Users cannot login after reset",
                "source_type": "github_issue",
                "source_url": "https://example.test/i1",
                "distance": 0.25,
            }
        ]
    )

    results = _service(repository).search("login", sources=["github_issue"], limit=5)

    assert results == [
        {
            "id": "i1",
            "title": "Login bug",
            "snippet": "Users cannot login after reset",
            "sourceType": "github_issue",
            "sourceUrl": "https://example.test/i1",
            "score": 0.75,
        }
    ]
    assert repository.vector_calls == [([0.1, 0.2], ["github_issue"], 5)]
    assert repository.lexical_calls == []


def test_vector_error_falls_back_to_lexical_ranking(monkeypatch):
    monkeypatch.setattr(settings, "PGVECTOR_ENABLED", True)
    repository = FakeRepository(
        vector_error=RuntimeError("extension missing"),
        lexical_items=[_item("a", "First", "deploy notes"), _item("b", "Second", "deploy plan")],
    )

    results = _service(repository).search("deploy")

    assert [result["id"] for result in results] == ["a", "b"]
    assert [result["score"] for result in results] == [1.0, 0.9]
    assert repository.lexical_calls[0][0] == "deploy"


def test_empty_vector_results_fall_back_to_lexical(monkeypatch):
    monkeypatch.setattr(settings, "PGVECTOR_ENABLED", True)
    repository = FakeRepository(lexical_items=[_item("a", "First", "deploy notes")])

    results = _service(repository).search("deploy")

    assert [result["id"] for result in results] == ["a"]
    assert len(repository.vector_calls) == 1


def test_disabled_vectors_skip_embedding(monkeypatch):
    monkeypatch.setattr(settings, "PGVECTOR_ENABLED", False)
    repository = FakeRepository(lexical_items=[_item("a", None, "deploy notes")])

    results = _service(repository).search("deploy", limit=500)

    assert repository.vector_calls == []
    assert results[0]["title"] == ""
    assert repository.lexical_calls[0][2] == settings.SEARCH_MAX_LIMIT


def test_ask_returns_answer_with_sources(monkeypatch):
    monkeypatch.setattr(settings, "PGVECTOR_ENABLED", False)
    repository = FakeRepository(lexical_items=[_item("a", "Runbook", "how to deploy the api")])
    llm = FakeLLM(answer="Use the runbook.")

    response = _service(repository, llm).ask("deploy")

    assert response["answer"] == "Use the runbook."
    assert response["sources"] == [
        {
            "id": "a",
            "title": "Runbook",
            "sourceType": "github_issue",
            "sourceUrl": "https://example.test/a",
            "relevantSnippet": "how to deploy the api",
        }
    ]
    question, context = llm.calls[0]
    assert question == "deploy"
    assert context == "[github_issue] Runbook (relevance: 100%):\nhow to deploy the api"


def test_ask_apologizes_when_llm_fails(monkeypatch):
    monkeypatch.setattr(settings, "PGVECTOR_ENABLED", False)
    repository = FakeRepository(lexical_items=[_item("a", "A", "deploy"), _item("b", "B", "deploy")])

    response = _service(repository, FakeLLM(error=RuntimeError("boom"))).ask("deploy", include_context=False)

    assert response["answer"] == apology_answer(2)
    assert "2 related documents" in response["answer"]
    assert response["sources"] is None


def test_extract_snippet_windows_around_match():
    content = "x" * 100 + "needle" + "y" * 300

    snippet = extract_snippet(content, "NEEDLE")

    assert snippet.startswith("...")
    assert snippet.endswith("...")
    assert "needle" in snippet
    assert len(snippet) == 3 + 50 + 6 + 150 + 3


def test_extract_snippet_without_match_truncates_prefix():
    assert extract_snippet("short text", "absent") == "short text"
    assert extract_snippet("a" * 250, "absent", length=200) == "a" * 200 + "..."
    assert extract_snippet(None, "absent") == ""


def test_lexical_rank_score_has_floor():
    assert lexical_rank_score(0) == 1.0
    assert lexical_rank_score(3) == pytest.approx(0.7)
    assert lexical_rank_score(20) == 0.1


def test_build_context_separates_documents():
    context = build_context(
        [
            {"sourceType": "slack_message", "title": "A", "score": 0.456, "snippet": "one"},
            {"sourceType": "notion_page", "title": "B", "score": 0.9, "snippet": "two"},
        ]
    )

    assert context == "[slack_message] A (relevance: 46%):\none\n\n---\n\n[notion_page] B (relevance: 90%):\ntwo"


def test_database_error_in_vector_query_rolls_back_before_lexical_fallback(monkeypatch):
    pytest.importorskip("sqlalchemy")
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker
    from sqlalchemy.pool import StaticPool

    from context_sync.db.repositories import ContextItemRepository
    from context_sync.db.session import Base
    from context_sync.models.models import ContextItems

    monkeypatch.setattr(settings, "PGVECTOR_ENABLED", True)
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    # item_vectors is absent and the query uses Postgres casts, so the vector path fails in the driver
    Base.metadata.create_all(engine, tables=[ContextItems.__table__])
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with factory() as db:
        db.add(ContextItems(workspace_id="ws-1", source_type="github_issue", external_id="e1", title="Deploy", content="deploy notes"))
        db.commit()

        rollbacks = []
        real_rollback = db.rollback

        def tracking_rollback():
            rollbacks.append(True)
            real_rollback()

        monkeypatch.setattr(db, "rollback", tracking_rollback)
        service = SearchService(
            db,
            "ws-1",
            embeddings_client=FakeEmbeddings(),
            llm_client=FakeLLM(),
            repository=ContextItemRepository(db, "ws-1"),
        )

        results = service.search("deploy")

    assert rollbacks == [True]
    assert [result["title"] for result in results] == ["Deploy"]
    assert results[0]["score"] == 1.0
