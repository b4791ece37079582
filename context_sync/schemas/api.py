from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from context_sync.models.models import Provider, SourceType


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str = "context-sync-service"
    version: str


class ErrorInfo(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None
    request_id: str | None = None
    retryable: bool
    timestamp: datetime


class ErrorEnvelope(BaseModel):
    error: ErrorInfo


class SyncRequest(BaseModel):
    providers: list[Provider] | None = None
    syncType: str = Field(default="incremental", pattern="^(incremental|full)$")
    since: str | None = None
    targetItems: list[str] | None = None


class SyncTriggerResponse(BaseModel):
    success: bool
    message: str
    jobIds: dict[str, str]


class SyncJobStatus(BaseModel):
    provider: str
    status: str
    progress: dict[str, Any] | None = None
    error: str | None = None
    startedAt: str | None = None
    completedAt: str | None = None


class WorkspaceSyncStatusResponse(BaseModel):
    workspaceId: str
    isRunning: bool
    jobs: list[SyncJobStatus]


class CancelSyncResponse(BaseModel):
    removed: int


class ItemSummary(BaseModel):
    id: str
    title: str | None = None
    snippet: str
    sourceType: str
    sourceUrl: str | None = None
    importanceScore: float
    hasEmbedding: bool
    createdAt: datetime
    updatedAt: datetime


class ItemListResponse(BaseModel):
    items: list[ItemSummary]
    total: int
    page: int
    limit: int


class ItemDetail(BaseModel):
    id: str
    title: str | None = None
    content: str
    sourceType: str
    sourceUrl: str | None = None
    metadata: dict[str, Any] | None = None
    importanceScore: float
    hasEmbedding: bool
    createdAt: datetime
    updatedAt: datetime


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)
    sources: list[SourceType] | None = None
    limit: int = Field(default=10, ge=1, le=50)


class SearchResult(BaseModel):
    id: str
    title: str
    snippet: str
    sourceType: str
    sourceUrl: str | None = None
    score: float


class SearchResponse(BaseModel):
    results: list[SearchResult]


class AskRequest(BaseModel):
    question: str = Field(min_length=1)
    includeContext: bool = True


class AskSource(BaseModel):
    id: str
    title: str
    sourceType: str
    sourceUrl: str | None = None
    relevantSnippet: str


class AskResponse(BaseModel):
    answer: str
    sources: list[AskSource] | None = None


class ConversationSummary(BaseModel):
    id: str
    title: str | None = None
    createdAt: datetime
    updatedAt: datetime


class ConversationListResponse(BaseModel):
    conversations: list[ConversationSummary]
    total: int
    page: int
    limit: int


class MessageSource(BaseModel):
    id: str
    title: str
    sourceType: str
    sourceUrl: str | None = None
    snippet: str


class MessageResponse(BaseModel):
    id: str
    role: str
    content: str
    sources: list[MessageSource] | None = None
    createdAt: datetime


class ConversationDetail(ConversationSummary):
    messages: list[MessageResponse]


class SendMessageRequest(BaseModel):
    question: str = Field(min_length=1)


class SendMessageResponse(BaseModel):
    userMessage: MessageResponse
    assistantMessage: MessageResponse
    sources: list[MessageSource]


class RenameConversationRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)


class IntegrationConfigRequest(BaseModel):
    selectedRepos: list[str] | None = None
    selectedChannels: list[str] | None = None
    selectedPages: list[str] | None = None
    teamId: str | None = None
    repoFullName: str | None = None
    workspaceId: str | None = None


class IntegrationConfigResponse(BaseModel):
    provider: str
    config: dict[str, Any]


class WebhookAccepted(BaseModel):
    received: bool = True
    items: int = 0
