import logging
import uuid
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.orm import Session

from context_sync.clients.embeddings_client import EmbeddingsClient
from context_sync.clients.llm_client import LLMClient
from context_sync.core.config import settings
from context_sync.core.logging import get_request_id
from context_sync.db.repositories import ContextItemRepository, ConversationRepository, IntegrationRepository, VectorRepository
from context_sync.db.session import get_db
from context_sync.models.models import ConversationMessages, Conversations, Provider
from context_sync.schemas.api import (
    AskRequest,
    AskResponse,
    CancelSyncResponse,
    ConversationDetail,
    ConversationListResponse,
    ConversationSummary,
    ErrorEnvelope,
    ErrorInfo,
    HealthResponse,
    IntegrationConfigRequest,
    IntegrationConfigResponse,
    ItemDetail,
    ItemListResponse,
    ItemSummary,
    MessageResponse,
    RenameConversationRequest,
    SearchRequest,
    SearchResponse,
    SendMessageRequest,
    SendMessageResponse,
    SyncRequest,
    SyncTriggerResponse,
    WebhookAccepted,
    WorkspaceSyncStatusResponse,
)
from context_sync.services.conversations import ConversationNotFoundError, ConversationService
from context_sync.services.item_ingest import ItemIngestor
from context_sync.services.job_queue import QueueSet, build_queues
from context_sync.services.search import SearchService
from context_sync.services.sync_coordinator import SyncCoordinator, SyncOptions
from context_sync.services.webhooks import WebhookService

router = APIRouter()
logger = logging.getLogger(__name__)

ITEM_SNIPPET_CHARS = 200


@lru_cache
def get_queues() -> QueueSet:
    return build_queues()


@lru_cache
def get_coordinator() -> SyncCoordinator:
    return SyncCoordinator(get_queues())


@lru_cache
def get_webhook_service() -> WebhookService:
    return WebhookService(ItemIngestor(get_queues().embedding))


@lru_cache
def get_embeddings_client() -> EmbeddingsClient:
    return EmbeddingsClient()


@lru_cache
def get_llm_client() -> LLMClient:
    return LLMClient()


def _error(code: str, message: str, retryable: bool, status_code: int, details: dict[str, Any] | None = None) -> HTTPException:
    envelope = ErrorEnvelope(
        error=ErrorInfo(
            code=code,
            message=message,
            details=details,
            request_id=get_request_id(),
            retryable=retryable,
            timestamp=datetime.now(timezone.utc),
        )
    )
    return HTTPException(status_code=status_code, detail=envelope.model_dump(mode="json"))


def _parse_provider(value: str) -> Provider:
    try:
        return Provider(value)
    except ValueError:
        raise _error("C-PROVIDER-UNKNOWN", f"Unknown provider: {value}", False, status.HTTP_400_BAD_REQUEST) from None


def _search_service(db: Session, workspace_id: str) -> SearchService:
    return SearchService(db, workspace_id, embeddings_client=get_embeddings_client(), llm_client=get_llm_client())


def _conversation_service(db: Session, workspace_id: str) -> ConversationService:
    return ConversationService(ConversationRepository(db, workspace_id), _search_service(db, workspace_id))


def _conversation_summary(conversation: Conversations) -> ConversationSummary:
    return ConversationSummary(
        id=str(conversation.id),
        title=conversation.title,
        createdAt=conversation.created_at,
        updatedAt=conversation.updated_at,
    )


def _message_response(message: ConversationMessages) -> MessageResponse:
    return MessageResponse(
        id=str(message.id),
        role=message.role,
        content=message.content,
        sources=message.sources,
        createdAt=message.created_at,
    )


@router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(version=settings.APP_VERSION)


@router.get("/metrics")
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.post("/v1/workspaces/{workspace_id}/items/sync", response_model=SyncTriggerResponse, status_code=202)
def trigger_sync(
    workspace_id: str,
    payload: SyncRequest | None = None,
    x_user_id: str = Header(...),
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> SyncTriggerResponse:
    payload = payload or SyncRequest()
    options = SyncOptions(
        providers=payload.providers,
        sync_type=payload.syncType,
        since=payload.since,
        target_items=payload.targetItems,
    )
    job_ids = coordinator.trigger_sync(workspace_id, x_user_id, options)
    if not job_ids:
        return SyncTriggerResponse(success=False, message="No connected integrations to sync", jobIds={})
    return SyncTriggerResponse(
        success=True,
        message=f"Sync started for {', '.join(sorted(job_ids))}",
        jobIds=job_ids,
    )


@router.get("/v1/workspaces/{workspace_id}/items/sync/status", response_model=WorkspaceSyncStatusResponse)
def get_sync_status(
    workspace_id: str,
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> WorkspaceSyncStatusResponse:
    return WorkspaceSyncStatusResponse(**coordinator.get_sync_status(workspace_id).to_dict())


@router.delete("/v1/workspaces/{workspace_id}/items/sync", response_model=CancelSyncResponse)
def cancel_sync(
    workspace_id: str,
    provider: str | None = None,
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> CancelSyncResponse:
    parsed = _parse_provider(provider) if provider else None
    return CancelSyncResponse(removed=coordinator.cancel_sync(workspace_id, parsed))


@router.get("/v1/workspaces/{workspace_id}/items", response_model=ItemListResponse)
def list_items(
    workspace_id: str,
    source: str | None = None,
    q: str | None = None,
    page: int = 1,
    limit: int = 20,
    db: Session = Depends(get_db),
) -> ItemListResponse:
    page = max(1, page)
    limit = max(1, min(limit, 100))
    items, total = ContextItemRepository(db, workspace_id).list_items(source=source, query=q, page=page, limit=limit)
    embedded = VectorRepository(db).embedded_item_ids(item.id for item in items)
    return ItemListResponse(
        items=[
            ItemSummary(
                id=str(item.id),
                title=item.title,
                snippet=(item.content or "")[:ITEM_SNIPPET_CHARS],
                sourceType=item.source_type,
                sourceUrl=item.source_url,
                importanceScore=item.importance_score,
                hasEmbedding=str(item.id) in embedded,
                createdAt=item.created_at,
                updatedAt=item.updated_at,
            )
            for item in items
        ],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/v1/workspaces/{workspace_id}/items/{item_id}", response_model=ItemDetail)
def get_item(workspace_id: str, item_id: uuid.UUID, db: Session = Depends(get_db)) -> ItemDetail:
    item = ContextItemRepository(db, workspace_id).get(item_id)
    if item is None:
        raise _error("ITEM_NOT_FOUND", "Item not found", False, status.HTTP_404_NOT_FOUND)
    embedded = VectorRepository(db).embedded_item_ids([item.id])
    return ItemDetail(
        id=str(item.id),
        title=item.title,
        content=item.content or "",
        sourceType=item.source_type,
        sourceUrl=item.source_url,
        metadata=item.metadata_json,
        importanceScore=item.importance_score,
        hasEmbedding=str(item.id) in embedded,
        createdAt=item.created_at,
        updatedAt=item.updated_at,
    )


@router.delete("/v1/workspaces/{workspace_id}/items/{item_id}", status_code=204)
def delete_item(workspace_id: str, item_id: uuid.UUID, db: Session = Depends(get_db)) -> Response:
    if not ContextItemRepository(db, workspace_id).soft_delete(item_id):
        raise _error("ITEM_NOT_FOUND", "Item not found", False, status.HTTP_404_NOT_FOUND)
    return Response(status_code=204)


@router.post("/v1/workspaces/{workspace_id}/search", response_model=SearchResponse)
def search(workspace_id: str, payload: SearchRequest, db: Session = Depends(get_db)) -> SearchResponse:
    sources = [source.value for source in payload.sources] if payload.sources else None
    results = _search_service(db, workspace_id).search(payload.query, sources=sources, limit=payload.limit)
    return SearchResponse(results=results)


@router.post("/v1/workspaces/{workspace_id}/ask", response_model=AskResponse)
def ask(workspace_id: str, payload: AskRequest, db: Session = Depends(get_db)) -> AskResponse:
    return AskResponse(**_search_service(db, workspace_id).ask(payload.question, include_context=payload.includeContext))


@router.post("/v1/workspaces/{workspace_id}/conversations", response_model=ConversationSummary, status_code=201)
def create_conversation(
    workspace_id: str,
    x_user_id: str = Header(...),
    db: Session = Depends(get_db),
) -> ConversationSummary:
    return _conversation_summary(_conversation_service(db, workspace_id).create(x_user_id))


@router.get("/v1/workspaces/{workspace_id}/conversations", response_model=ConversationListResponse)
def list_conversations(
    workspace_id: str,
    page: int = 1,
    limit: int = 20,
    x_user_id: str = Header(...),
    db: Session = Depends(get_db),
) -> ConversationListResponse:
    page = max(1, page)
    limit = max(1, min(limit, 100))
    conversations, total = _conversation_service(db, workspace_id).list(x_user_id, page=page, limit=limit)
    return ConversationListResponse(
        conversations=[_conversation_summary(conversation) for conversation in conversations],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/v1/workspaces/{workspace_id}/conversations/{conversation_id}", response_model=ConversationDetail)
def get_conversation(
    workspace_id: str,
    conversation_id: uuid.UUID,
    x_user_id: str = Header(...),
    db: Session = Depends(get_db),
) -> ConversationDetail:
    service = _conversation_service(db, workspace_id)
    try:
        conversation = service.get(str(conversation_id), x_user_id)
    except ConversationNotFoundError:
        raise _error("CONVERSATION_NOT_FOUND", "Conversation not found", False, status.HTTP_404_NOT_FOUND) from None
    summary = _conversation_summary(conversation)
    return ConversationDetail(
        **summary.model_dump(),
        messages=[_message_response(message) for message in service.messages(str(conversation.id))],
    )


@router.post(
    "/v1/workspaces/{workspace_id}/conversations/{conversation_id}/messages",
    response_model=SendMessageResponse,
)
def send_message(
    workspace_id: str,
    conversation_id: uuid.UUID,
    payload: SendMessageRequest,
    x_user_id: str = Header(...),
    db: Session = Depends(get_db),
) -> SendMessageResponse:
    try:
        result = _conversation_service(db, workspace_id).send_message(str(conversation_id), x_user_id, payload.question)
    except ConversationNotFoundError:
        raise _error("CONVERSATION_NOT_FOUND", "Conversation not found", False, status.HTTP_404_NOT_FOUND) from None
    return SendMessageResponse(
        userMessage=_message_response(result["userMessage"]),
        assistantMessage=_message_response(result["assistantMessage"]),
        sources=result["sources"],
    )


@router.patch("/v1/workspaces/{workspace_id}/conversations/{conversation_id}", response_model=ConversationSummary)
def rename_conversation(
    workspace_id: str,
    conversation_id: uuid.UUID,
    payload: RenameConversationRequest,
    x_user_id: str = Header(...),
    db: Session = Depends(get_db),
) -> ConversationSummary:
    try:
        conversation = _conversation_service(db, workspace_id).rename(str(conversation_id), x_user_id, payload.title)
    except ConversationNotFoundError:
        raise _error("CONVERSATION_NOT_FOUND", "Conversation not found", False, status.HTTP_404_NOT_FOUND) from None
    return _conversation_summary(conversation)


@router.delete("/v1/workspaces/{workspace_id}/conversations/{conversation_id}", status_code=204)
def delete_conversation(
    workspace_id: str,
    conversation_id: uuid.UUID,
    x_user_id: str = Header(...),
    db: Session = Depends(get_db),
) -> Response:
    try:
        _conversation_service(db, workspace_id).delete(str(conversation_id), x_user_id)
    except ConversationNotFoundError:
        raise _error("CONVERSATION_NOT_FOUND", "Conversation not found", False, status.HTTP_404_NOT_FOUND) from None
    return Response(status_code=204)


@router.patch("/v1/workspaces/{workspace_id}/integrations/{provider}", response_model=IntegrationConfigResponse)
def update_integration_config(
    workspace_id: str,
    provider: str,
    payload: IntegrationConfigRequest,
    db: Session = Depends(get_db),
) -> IntegrationConfigResponse:
    parsed = _parse_provider(provider)
    integration = IntegrationRepository(db).update_config(workspace_id, parsed, payload.model_dump(exclude_none=True))
    if integration is None:
        raise _error("INTEGRATION_NOT_FOUND", f"{parsed.value} integration not found", False, status.HTTP_404_NOT_FOUND)
    logger.info("integration_config_updated", extra={"workspace_id": workspace_id, "provider": parsed.value})
    return IntegrationConfigResponse(provider=parsed.value, config=integration.config or {})


@router.post("/v1/webhooks/github", response_model=WebhookAccepted)
def github_webhook(
    payload: dict[str, Any],
    x_github_event: str = Header(default=""),
    webhooks: WebhookService = Depends(get_webhook_service),
) -> WebhookAccepted:
    return WebhookAccepted(items=webhooks.handle_github(x_github_event, payload))


@router.post("/v1/webhooks/slack/events")
def slack_webhook(payload: dict[str, Any], webhooks: WebhookService = Depends(get_webhook_service)) -> dict[str, Any]:
    return webhooks.handle_slack(payload)


@router.post("/v1/webhooks/notion", response_model=WebhookAccepted)
def notion_webhook(payload: dict[str, Any], webhooks: WebhookService = Depends(get_webhook_service)) -> WebhookAccepted:
    return WebhookAccepted(items=webhooks.handle_notion(payload))
