import uuid

import pytest

sqlalchemy = pytest.importorskip("sqlalchemy")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from context_sync.core.config import settings
from context_sync.db.repositories import ConversationRepository
from context_sync.db.session import Base
from context_sync.models.models import ConversationMessages, Conversations
from context_sync.services.conversations import (
    ConversationNotFoundError,
    ConversationService,
    conversation_title,
)


def _session():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine, tables=[Conversations.__table__, ConversationMessages.__table__])
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()


class FakeLLM:
    def __init__(self, answer="Here is what I found.", error=None):
        self.answer = answer
        self.error = error
        self.calls = []

    def generate_answer_with_history(self, question, context, history):
        self.calls.append({"question": question, "context": context, "history": list(history)})
        if self.error is not None:
            raise self.error
        return self.answer


class FakeSearchService:
    def __init__(self, results, llm):
        self.results = results
        self.llm_client = llm
        self.queries = []

    def search(self, query, sources=None, limit=None):
        self.queries.append((query, limit))
        return list(self.results)


def _result(item_id, score):
    return {
        "id": item_id,
        "title": f"Doc {item_id}",
        "snippet": f"snippet {item_id}",
        "sourceType": "notion_page",
        "sourceUrl": None,
        "score": score,
    }


def _service(results=(), llm=None):
    db = _session()
    llm = llm or FakeLLM()
    search = FakeSearchService(list(results), llm)
    return ConversationService(ConversationRepository(db, "ws-1"), search), search, llm


def test_send_message_keeps_only_relevant_sources_and_titles_conversation():
    service, search, llm = _service([_result("a", 0.8), _result("b", 0.4), _result("c", 0.39)])
    conversation = service.create("user-1")

    response = service.send_message(str(conversation.id), "user-1", "How do we deploy?")

    assert [source["id"] for source in response["sources"]] == ["a", "b"]
    assert response["sources"][0]["snippet"] == "snippet a"
    assert response["userMessage"].role == "user"
    assert response["assistantMessage"].content == "Here is what I found."
    assert response["assistantMessage"].sources == response["sources"]
    assert search.queries == [("How do we deploy?", settings.CONVERSATION_TOP_K)]
    assert "Doc c" not in llm.calls[0]["context"]
    assert service.get(str(conversation.id), "user-1").title == "How do we deploy?"


def test_history_excludes_current_question():
    service, _search, llm = _service([_result("a", 0.9)])
    conversation = service.create("user-1")

    service.send_message(str(conversation.id), "user-1", "first question")
    service.send_message(str(conversation.id), "user-1", "second question")

    assert llm.calls[0]["history"] == []
    assert llm.calls[1]["history"] == [
        {"role": "user", "content": "first question"},
        {"role": "assistant", "content": "Here is what I found."},
    ]
    assert [message.role for message in service.messages(str(conversation.id))] == [
        "user",
        "assistant",
        "user",
        "assistant",
    ]


def test_title_is_set_once_from_first_question():
    service, _search, _llm = _service()
    conversation = service.create("user-1")
    long_question = "q" * 80

    service.send_message(str(conversation.id), "user-1", long_question)
    service.send_message(str(conversation.id), "user-1", "later question")

    title = service.get(str(conversation.id), "user-1").title
    assert title == "q" * 47 + "..."


def test_llm_failure_stores_apology():
    service, _search, _llm = _service(
        [_result("a", 0.9), _result("b", 0.1)], llm=FakeLLM(error=RuntimeError("upstream down"))
    )
    conversation = service.create("user-1")

    response = service.send_message(str(conversation.id), "user-1", "anything?")

    assert "2 related documents" in response["assistantMessage"].content
    assert [source["id"] for source in response["sources"]] == ["a"]


def test_conversations_are_scoped_to_owner():
    service, _search, _llm = _service()
    conversation = service.create("user-1")

    with pytest.raises(ConversationNotFoundError):
        service.get(str(conversation.id), "user-2")
    with pytest.raises(ConversationNotFoundError):
        service.send_message(str(uuid.uuid4()), "user-1", "hello")


def test_rename_list_and_delete():
    service, _search, _llm = _service()
    first = service.create("user-1")
    service.create("user-1")
    service.create("user-2")

    renamed = service.rename(str(first.id), "user-1", "Release planning")
    conversations, total = service.list("user-1", page=1, limit=1)

    assert renamed.title == "Release planning"
    assert total == 2
    assert len(conversations) == 1

    service.delete(str(first.id), "user-1")
    _rows, total_after = service.list("user-1")
    assert total_after == 1
    with pytest.raises(ConversationNotFoundError):
        service.get(str(first.id), "user-1")


def test_conversation_title_truncation():
    assert conversation_title("  short  ") == "short"
    assert conversation_title("x" * 50) == "x" * 50
    assert conversation_title("x" * 51) == "x" * 47 + "..."
