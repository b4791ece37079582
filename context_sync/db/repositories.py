from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from context_sync.db.errors import DatabaseOperationError, map_sqlstate
from context_sync.models.models import (
    ContextItems,
    ConversationMessages,
    Conversations,
    ItemVectors,
    Provider,
    WorkspaceIntegrations,
)

if TYPE_CHECKING:
    from context_sync.services.transformers.base import ItemDraft

LOGGER = logging.getLogger(__name__)


def _commit_or_raise(db: Any) -> None:
    try:
        db.commit()
    except DBAPIError as exc:
        db.rollback()
        sqlstate = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
        error_code, retryable = map_sqlstate(sqlstate)
        raise DatabaseOperationError(error_code=error_code, sqlstate=sqlstate, retryable=retryable) from exc


def _to_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


class ContextItemRepository:
    """Workspace-scoped access to the canonical item store."""

    def __init__(self, db: Session, workspace_id: str):
        self.db = db
        self.workspace_id = str(workspace_id)

    def find_by_identity(self, source_type: str, external_id: str) -> ContextItems | None:
        return self.db.execute(
            select(ContextItems)
            .where(ContextItems.workspace_id == self.workspace_id)
            .where(ContextItems.source_type == source_type)
            .where(ContextItems.external_id == external_id)
        ).scalar_one_or_none()

    def upsert(self, draft: "ItemDraft") -> ContextItems:
        """Insert or update the item keyed by (workspace, source type, external id).

        Identity and creation time of an existing row are never touched. When a
        concurrent writer inserts the same identity first, the unique constraint
        fires and the write is replayed once as an update.
        """
        source_type = str(draft.source_type.value if hasattr(draft.source_type, "value") else draft.source_type)
        existing = self.find_by_identity(source_type, draft.external_id)
        if existing is not None:
            return self._apply_update(existing, draft)

        item = ContextItems(
            workspace_id=self.workspace_id,
            source_type=source_type,
            external_id=draft.external_id,
            title=draft.title,
            content=draft.content,
            source_url=draft.source_url,
            metadata_json=dict(draft.metadata),
            importance_score=draft.importance_score,
        )
        if draft.created_at is not None:
            item.created_at = draft.created_at
        self.db.add(item)
        try:
            _commit_or_raise(self.db)
        except DatabaseOperationError as exc:
            if exc.error_code != "unique_violation":
                raise
            LOGGER.info(
                "item_upsert_conflict_replayed",
                extra={"workspace_id": self.workspace_id, "external_id": draft.external_id},
            )
            winner = self.find_by_identity(source_type, draft.external_id)
            if winner is None:
                raise
            return self._apply_update(winner, draft)
        return item

    def _apply_update(self, item: ContextItems, draft: "ItemDraft") -> ContextItems:
        item.title = draft.title
        item.content = draft.content
        item.source_url = draft.source_url
        item.metadata_json = dict(draft.metadata)
        item.importance_score = draft.importance_score
        item.updated_at = datetime.now(timezone.utc)
        self.db.add(item)
        _commit_or_raise(self.db)
        return item

    def get(self, item_id: str | uuid.UUID) -> ContextItems | None:
        return self.db.execute(
            select(ContextItems)
            .where(ContextItems.workspace_id == self.workspace_id)
            .where(ContextItems.id == _to_uuid(item_id))
            .where(ContextItems.deleted_at.is_(None))
        ).scalar_one_or_none()

    def get_many(self, item_ids: Iterable[str | uuid.UUID]) -> dict[str, ContextItems]:
        ids = [_to_uuid(item_id) for item_id in item_ids]
        if not ids:
            return {}
        rows = self.db.execute(
            select(ContextItems)
            .where(ContextItems.workspace_id == self.workspace_id)
            .where(ContextItems.id.in_(ids))
            .where(ContextItems.deleted_at.is_(None))
        ).scalars()
        return {str(row.id): row for row in rows}

    def list_items(
        self,
        *,
        source: str | None = None,
        query: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[ContextItems], int]:
        stmt = (
            select(ContextItems)
            .where(ContextItems.workspace_id == self.workspace_id)
            .where(ContextItems.deleted_at.is_(None))
        )
        if source:
            stmt = stmt.where(ContextItems.source_type == source)
        if query:
            pattern = f"%{query}%"
            stmt = stmt.where(or_(ContextItems.title.ilike(pattern), ContextItems.content.ilike(pattern)))
        total = int(self.db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one())
        rows = self.db.execute(
            stmt.order_by(ContextItems.created_at.desc()).offset((page - 1) * limit).limit(limit)
        ).scalars()
        return list(rows), total

    def soft_delete(self, item_id: str | uuid.UUID) -> bool:
        item = self.get(item_id)
        if item is None:
            return False
        item.deleted_at = datetime.now(timezone.utc)
        self.db.add(item)
        self.db.query(ItemVectors).filter(ItemVectors.item_id == item.id).delete(synchronize_session=False)
        _commit_or_raise(self.db)
        return True

    def lexical_search(self, query: str, *, sources: list[str] | None, limit: int) -> list[ContextItems]:
        pattern = f"%{query}%"
        stmt = (
            select(ContextItems)
            .where(ContextItems.workspace_id == self.workspace_id)
            .where(ContextItems.deleted_at.is_(None))
            .where(or_(ContextItems.title.ilike(pattern), ContextItems.content.ilike(pattern)))
        )
        if sources:
            stmt = stmt.where(ContextItems.source_type.in_(sources))
        stmt = stmt.order_by(ContextItems.importance_score.desc(), ContextItems.created_at.desc()).limit(limit)
        return list(self.db.execute(stmt).scalars())

    @staticmethod
    def _to_vector_literal(query_embedding: list[float]) -> str:
        return "[" + ",".join(f"{float(x):.8f}" for x in query_embedding) + "]"

    def vector_search(self, query_embedding: list[float], *, sources: list[str] | None, limit: int) -> list[dict]:
        source_filter = "AND ci.source_type = ANY(:sources)" if sources else ""
        rows = self.db.execute(
            text(
                f"""
                SELECT ci.id::text AS id,
                       ci.title AS title,
                       ci.content AS content,
                       ci.source_type AS source_type,
                       ci.source_url AS source_url,
                       ci.importance_score AS importance_score,
                       (iv.embedding <=> CAST(:qvec AS vector)) AS distance
                FROM context_items ci
                JOIN item_vectors iv ON iv.item_id = ci.id
                WHERE ci.workspace_id = :workspace_id
                  AND ci.deleted_at IS NULL
                  {source_filter}
                ORDER BY iv.embedding <=> CAST(:qvec AS vector)
                LIMIT :limit_n
                """
            ),
            {
                "workspace_id": self.workspace_id,
                "qvec": self._to_vector_literal(query_embedding),
                "sources": list(sources or []),
                "limit_n": limit,
            },
        ).mappings().all()
        return [
            {
                "id": row["id"],
                "title": row["title"] or "",
                "content": row["content"] or "",
                "source_type": row["source_type"],
                "source_url": row["source_url"],
                "distance": float(row["distance"] or 0.0),
            }
            for row in rows
        ]


class VectorRepository:
    def __init__(self, db: Session):
        self.db = db

    def upsert_vector(self, item_id: str | uuid.UUID, embedding: list[float], model: str) -> ItemVectors:
        key = _to_uuid(item_id)
        row = self.db.execute(select(ItemVectors).where(ItemVectors.item_id == key)).scalar_one_or_none()
        if row is None:
            row = ItemVectors(item_id=key, embedding=embedding, embedding_model=model)
        else:
            row.embedding = embedding
            row.embedding_model = model
            row.updated_at = datetime.now(timezone.utc)
        self.db.add(row)
        _commit_or_raise(self.db)
        return row

    def embedded_item_ids(self, item_ids: Iterable[str | uuid.UUID]) -> set[str]:
        ids = [_to_uuid(item_id) for item_id in item_ids]
        if not ids:
            return set()
        rows = self.db.execute(select(ItemVectors.item_id).where(ItemVectors.item_id.in_(ids))).scalars()
        return {str(row) for row in rows}


class IntegrationRepository:
    """Read side of the integration registry plus selection config updates."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, workspace_id: str, provider: Provider) -> WorkspaceIntegrations | None:
        return self.db.execute(
            select(WorkspaceIntegrations)
            .where(WorkspaceIntegrations.workspace_id == str(workspace_id))
            .where(WorkspaceIntegrations.provider == provider.value)
            .where(WorkspaceIntegrations.deleted_at.is_(None))
        ).scalar_one_or_none()

    def connected_providers(self, workspace_id: str) -> list[Provider]:
        rows = self.db.execute(
            select(WorkspaceIntegrations.provider)
            .where(WorkspaceIntegrations.workspace_id == str(workspace_id))
            .where(WorkspaceIntegrations.deleted_at.is_(None))
            .order_by(WorkspaceIntegrations.created_at.asc())
        ).scalars()
        providers: list[Provider] = []
        for value in rows:
            try:
                providers.append(Provider(value))
            except ValueError:
                LOGGER.warning("integration_unknown_provider", extra={"workspace_id": workspace_id, "provider": value})
        return providers

    def selected_targets(self, workspace_id: str, provider: Provider) -> list[str]:
        integration = self.get(workspace_id, provider)
        config = (integration.config or {}) if integration else {}
        key = {
            Provider.GITHUB: "selectedRepos",
            Provider.SLACK: "selectedChannels",
            Provider.NOTION: "selectedPages",
        }[provider]
        return [str(value) for value in config.get(key) or [] if value]

    def team_id(self, workspace_id: str) -> str | None:
        integration = self.get(workspace_id, Provider.SLACK)
        if integration is None or not integration.config:
            return None
        team_id = integration.config.get("teamId")
        return str(team_id) if team_id else None

    def list_active_connections(self) -> list[tuple[str, str]]:
        rows = self.db.execute(
            select(WorkspaceIntegrations.workspace_id, WorkspaceIntegrations.connected_by)
            .where(WorkspaceIntegrations.deleted_at.is_(None))
            .order_by(WorkspaceIntegrations.created_at.asc())
        ).all()
        seen: dict[str, str] = {}
        for workspace_id, connected_by in rows:
            if workspace_id not in seen and connected_by:
                seen[workspace_id] = connected_by
        return list(seen.items())

    def find_workspace(self, provider: Provider, matcher: Callable[[dict], bool]) -> str | None:
        rows = self.db.execute(
            select(WorkspaceIntegrations)
            .where(WorkspaceIntegrations.provider == provider.value)
            .where(WorkspaceIntegrations.deleted_at.is_(None))
            .order_by(WorkspaceIntegrations.created_at.asc())
        ).scalars()
        for integration in rows:
            if matcher(integration.config or {}):
                return integration.workspace_id
        return None

    def update_config(self, workspace_id: str, provider: Provider, changes: dict[str, Any]) -> WorkspaceIntegrations | None:
        integration = self.get(workspace_id, provider)
        if integration is None:
            return None
        config = dict(integration.config or {})
        config.update({key: value for key, value in changes.items() if value is not None})
        integration.config = config
        self.db.add(integration)
        _commit_or_raise(self.db)
        return integration


class ConversationRepository:
    def __init__(self, db: Session, workspace_id: str):
        self.db = db
        self.workspace_id = str(workspace_id)

    def create_conversation(self, user_id: str) -> Conversations:
        conversation = Conversations(workspace_id=self.workspace_id, user_id=str(user_id), title=None)
        self.db.add(conversation)
        _commit_or_raise(self.db)
        return conversation

    def get_conversation(self, conversation_id: str | uuid.UUID, user_id: str) -> Conversations | None:
        return self.db.execute(
            select(Conversations)
            .where(Conversations.workspace_id == self.workspace_id)
            .where(Conversations.user_id == str(user_id))
            .where(Conversations.id == _to_uuid(conversation_id))
            .where(Conversations.deleted_at.is_(None))
        ).scalar_one_or_none()

    def list_conversations(self, user_id: str, *, page: int, limit: int) -> tuple[list[Conversations], int]:
        stmt = (
            select(Conversations)
            .where(Conversations.workspace_id == self.workspace_id)
            .where(Conversations.user_id == str(user_id))
            .where(Conversations.deleted_at.is_(None))
        )
        total = int(self.db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one())
        rows = self.db.execute(
            stmt.order_by(Conversations.updated_at.desc()).offset((page - 1) * limit).limit(limit)
        ).scalars()
        return list(rows), total

    def list_messages(self, conversation_id: str | uuid.UUID) -> list[ConversationMessages]:
        rows = self.db.execute(
            select(ConversationMessages)
            .where(ConversationMessages.conversation_id == _to_uuid(conversation_id))
            .order_by(ConversationMessages.created_at.asc())
        ).scalars()
        return list(rows)

    def add_message(
        self,
        conversation_id: str | uuid.UUID,
        role: str,
        content: str,
        sources: list[dict] | None = None,
    ) -> ConversationMessages:
        message = ConversationMessages(
            conversation_id=_to_uuid(conversation_id),
            role=role,
            content=content,
            sources=sources,
        )
        self.db.add(message)
        _commit_or_raise(self.db)
        return message

    def update_conversation(self, conversation: Conversations, *, title: str | None = None) -> Conversations:
        if title is not None:
            conversation.title = title
        conversation.updated_at = datetime.now(timezone.utc)
        self.db.add(conversation)
        _commit_or_raise(self.db)
        return conversation

    def soft_delete(self, conversation: Conversations) -> None:
        conversation.deleted_at = datetime.now(timezone.utc)
        self.db.add(conversation)
        _commit_or_raise(self.db)
