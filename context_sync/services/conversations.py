from __future__ import annotations

import logging
from typing import Any

from context_sync.core.config import settings
from context_sync.db.repositories import ConversationRepository
from context_sync.models.models import Conversations
from context_sync.services.search import SearchService, apology_answer, build_context

LOGGER = logging.getLogger(__name__)

TITLE_MAX_CHARS = 50


class ConversationNotFoundError(LookupError):
    pass


def conversation_title(question: str) -> str:
    trimmed = question.strip()
    if len(trimmed) <= TITLE_MAX_CHARS:
        return trimmed
    return trimmed[: TITLE_MAX_CHARS - 3] + "..."


class ConversationService:
    def __init__(self, repository: ConversationRepository, search_service: SearchService):
        self.repository = repository
        self.search_service = search_service

    def create(self, user_id: str) -> Conversations:
        return self.repository.create_conversation(user_id)

    def list(self, user_id: str, page: int = 1, limit: int = 20) -> tuple[list[Conversations], int]:
        return self.repository.list_conversations(user_id, page=page, limit=limit)

    def get(self, conversation_id: str, user_id: str) -> Conversations:
        conversation = self.repository.get_conversation(conversation_id, user_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def messages(self, conversation_id: str) -> list[Any]:
        return self.repository.list_messages(conversation_id)

    def send_message(self, conversation_id: str, user_id: str, question: str) -> dict[str, Any]:
        conversation = self.get(conversation_id, user_id)
        history = [{"role": message.role, "content": message.content} for message in self.repository.list_messages(conversation.id)]
        user_message = self.repository.add_message(conversation.id, "user", question)

        results = self.search_service.search(question, limit=settings.CONVERSATION_TOP_K)
        relevant = [result for result in results if result["score"] >= settings.CONVERSATION_MIN_RELEVANCE]
        LOGGER.debug(
            "conversation_context_selected",
            extra={"conversation_id": str(conversation.id), "found": len(results), "relevant": len(relevant)},
        )
        try:
            answer = self.search_service.llm_client.generate_answer_with_history(question, build_context(relevant), history)
        except Exception as exc:  # noqa: BLE001
            LOGGER.error("conversation_llm_failed", extra={"conversation_id": str(conversation.id), "error": str(exc)})
            answer = apology_answer(len(results))

        sources = [
            {
                "id": result["id"],
                "title": result["title"],
                "sourceType": result["sourceType"],
                "sourceUrl": result["sourceUrl"],
                "snippet": result["snippet"],
            }
            for result in relevant
        ]
        assistant_message = self.repository.add_message(conversation.id, "assistant", answer, sources)
        self.repository.update_conversation(
            conversation, title=None if conversation.title else conversation_title(question)
        )
        return {"userMessage": user_message, "assistantMessage": assistant_message, "sources": sources}

    def rename(self, conversation_id: str, user_id: str, title: str | None) -> Conversations:
        conversation = self.get(conversation_id, user_id)
        return self.repository.update_conversation(conversation, title=title)

    def delete(self, conversation_id: str, user_id: str) -> None:
        self.repository.soft_delete(self.get(conversation_id, user_id))
