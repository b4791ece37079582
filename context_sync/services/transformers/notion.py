from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from context_sync.models.models import SourceType
from context_sync.services.transformers.base import ItemDraft, clamp_score, parse_dt

UNTITLED = "Untitled"


def _plain(rich_text: list[dict[str, Any]] | None) -> str:
    return "".join(str(part.get("plain_text") or "") for part in rich_text or [])


def page_title(page: dict[str, Any]) -> str:
    for prop in (page.get("properties") or {}).values():
        if prop.get("type") == "title" and prop.get("title") is not None:
            return _plain(prop.get("title")) or UNTITLED
    return UNTITLED


def block_to_text(block: dict[str, Any]) -> str | None:
    block_type = block.get("type")
    body = block.get(block_type) or {} if block_type else {}
    text = _plain(body.get("rich_text"))
    if block_type == "paragraph":
        return text
    if block_type == "heading_1":
        return f"# {text}"
    if block_type == "heading_2":
        return f"## {text}"
    if block_type == "heading_3":
        return f"### {text}"
    if block_type == "bulleted_list_item":
        return f"• {text}"
    if block_type == "numbered_list_item":
        return f"1. {text}"
    if block_type == "to_do":
        return f"{'☑' if body.get('checked') else '☐'} {text}"
    if block_type == "code":
        return f"```{body.get('language') or ''}\n{text}\n```"
    if block_type == "quote":
        return f"> {text}"
    if block_type == "callout":
        icon = (body.get("icon") or {}).get("emoji") or "💡"
        return f"{icon} {text}"
    return None


def blocks_to_text(blocks: list[dict[str, Any]]) -> str:
    return "\n\n".join(text for text in (block_to_text(block) for block in blocks) if text)


def extract_properties(properties: dict[str, Any]) -> dict[str, Any]:
    extracted: dict[str, Any] = {}
    for key, prop in (properties or {}).items():
        prop_type = prop.get("type")
        if prop_type == "title":
            extracted[key] = _plain(prop.get("title"))
        elif prop_type == "rich_text":
            extracted[key] = _plain(prop.get("rich_text"))
        elif prop_type == "number":
            extracted[key] = prop.get("number")
        elif prop_type == "select":
            extracted[key] = (prop.get("select") or {}).get("name")
        elif prop_type == "multi_select":
            extracted[key] = [option.get("name") for option in prop.get("multi_select") or []]
        elif prop_type in ("date", "checkbox", "url", "email"):
            extracted[key] = prop.get(prop_type)
    return extracted


def transform_page(page: dict[str, Any], blocks: list[dict[str, Any]], now: datetime | None = None) -> ItemDraft:
    parent = page.get("parent") or {}
    icon = page.get("icon") or {}
    return ItemDraft(
        external_id=f"notion:page:{page['id']}",
        source_type=SourceType.NOTION_PAGE,
        title=page_title(page),
        content=blocks_to_text(blocks),
        source_url=page.get("url"),
        metadata={
            "pageId": page["id"],
            "parentType": parent.get("type"),
            "parentId": parent.get("database_id") or parent.get("page_id") or "workspace",
            "icon": icon.get("emoji") or (icon.get("external") or {}).get("url"),
            "properties": extract_properties(page.get("properties") or {}),
            "createdAt": page.get("created_time"),
            "updatedAt": page.get("last_edited_time"),
            "blockCount": len(blocks),
        },
        importance_score=page_importance(page, blocks, now=now),
        created_at=parse_dt(page.get("created_time")),
    )


def page_importance(page: dict[str, Any], blocks: list[dict[str, Any]], now: datetime | None = None) -> float:
    score = 0.5
    if len(blocks) > 50:
        score += 0.2
    elif len(blocks) > 20:
        score += 0.15
    elif len(blocks) > 10:
        score += 0.1

    last_edited = parse_dt(page.get("last_edited_time"))
    if last_edited is not None:
        if last_edited.tzinfo is None:
            last_edited = last_edited.replace(tzinfo=timezone.utc)
        days = ((now or datetime.now(timezone.utc)) - last_edited).total_seconds() / 86400
        if days < 7:
            score += 0.15
        elif days < 30:
            score += 0.1
        elif days > 180:
            score -= 0.1

    if (page.get("parent") or {}).get("type") == "database_id":
        score += 0.1
    title = page_title(page)
    if title != UNTITLED and len(title) > 5:
        score += 0.05
    return clamp_score(score, lower=0.1)
