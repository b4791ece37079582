from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

from context_sync.models.models import SourceType
from context_sync.services.transformers.base import ItemDraft, clamp_score

_SLACK_MARKUP_RE = re.compile(r"<[^>]+>")


def _message_date(ts: str) -> datetime:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc)


def _preview(text: str, width: int) -> str:
    cleaned = _SLACK_MARKUP_RE.sub("", text.replace("\n", " ")).strip()
    return cleaned[:width]


def _channel_url(channel_id: str, team_id: str | None) -> str | None:
    if not team_id:
        return None
    return f"https://app.slack.com/client/{team_id}/{channel_id}"


def transform_message(message: dict[str, Any], channel: dict[str, Any], team_id: str | None = None) -> ItemDraft:
    text = message.get("text") or ""
    ts = str(message["ts"])
    date = _message_date(ts)
    parts = [text]
    for attachment in message.get("attachments") or []:
        extra = attachment.get("text") or attachment.get("fallback")
        if extra:
            parts.append(extra)
    thread_ts = message.get("thread_ts")
    return ItemDraft(
        external_id=f"slack:{channel['id']}:{ts}",
        source_type=SourceType.SLACK_MESSAGE,
        title=f"#{channel.get('name')} - {_preview(text, 50)}{'...' if len(text) > 50 else ''}",
        content="\n\n".join(parts),
        source_url=_channel_url(channel["id"], team_id),
        metadata={
            "channelId": channel["id"],
            "channelName": channel.get("name"),
            "ts": ts,
            "userId": message.get("user"),
            "threadTs": thread_ts,
            "isThreadReply": bool(thread_ts) and thread_ts != ts,
            "replyCount": int(message.get("reply_count") or 0),
            "reactions": [
                {"name": reaction.get("name"), "count": int(reaction.get("count") or 0)}
                for reaction in message.get("reactions") or []
            ],
            "hasFiles": bool(message.get("files")),
            "date": date.isoformat(),
        },
        importance_score=message_importance(message),
        created_at=date,
    )


def transform_thread(
    parent: dict[str, Any],
    replies: list[dict[str, Any]],
    channel: dict[str, Any],
    team_id: str | None = None,
) -> ItemDraft:
    """Collapse a thread into one item.

    ``replies`` is the full ``conversations.replies`` listing, which includes the
    parent message itself as its first element.
    """
    text = parent.get("text") or ""
    ts = str(parent["ts"])
    date = _message_date(ts)
    parts = [f"[Thread Start] {text}"]
    parts.extend(f"[Reply] {reply.get('text') or ''}" for reply in replies if str(reply.get("ts")) != ts)
    reply_count = len(replies) - 1
    return ItemDraft(
        external_id=f"slack:thread:{channel['id']}:{ts}",
        source_type=SourceType.SLACK_MESSAGE,
        title=f"#{channel.get('name')} - {_preview(text, 40)}{'...' if len(text) > 40 else ''} ({reply_count} replies)",
        content="\n\n".join(parts),
        source_url=_channel_url(channel["id"], team_id),
        metadata={
            "channelId": channel["id"],
            "channelName": channel.get("name"),
            "threadTs": ts,
            "userId": parent.get("user"),
            "replyCount": reply_count,
            "participants": _participants(replies),
            "date": date.isoformat(),
            "isThread": True,
        },
        importance_score=thread_importance(parent, replies),
        created_at=date,
    )


def _participants(replies: list[dict[str, Any]]) -> list[str]:
    seen: list[str] = []
    for reply in replies:
        user = reply.get("user")
        if user and user not in seen:
            seen.append(user)
    return seen


def message_importance(message: dict[str, Any]) -> float:
    score = 0.3
    reactions = sum(int(reaction.get("count") or 0) for reaction in message.get("reactions") or [])
    if reactions > 10:
        score += 0.3
    elif reactions > 5:
        score += 0.2
    elif reactions > 0:
        score += 0.1
    reply_count = int(message.get("reply_count") or 0)
    if reply_count > 10:
        score += 0.25
    elif reply_count > 5:
        score += 0.15
    elif reply_count > 0:
        score += 0.1
    if message.get("files"):
        score += 0.1
    if len(message.get("text") or "") > 500:
        score += 0.1
    return clamp_score(score)


def thread_importance(parent: dict[str, Any], replies: list[dict[str, Any]]) -> float:
    score = 0.5
    if len(replies) > 20:
        score += 0.3
    elif len(replies) > 10:
        score += 0.2
    elif len(replies) > 5:
        score += 0.1
    participants = len(_participants(replies))
    if participants > 5:
        score += 0.15
    elif participants > 3:
        score += 0.1
    score += message_importance(parent) * 0.2
    return clamp_score(score)
