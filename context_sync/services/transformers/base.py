from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from context_sync.models.models import SourceType


@dataclass(frozen=True)
class ItemDraft:
    external_id: str
    source_type: SourceType
    title: str
    content: str
    source_url: str | None
    metadata: dict[str, Any] = field(default_factory=dict)
    importance_score: float = 0.0
    created_at: datetime | None = None


def parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


def clamp_score(score: float, lower: float = 0.0) -> float:
    return max(lower, min(score, 1.0))
