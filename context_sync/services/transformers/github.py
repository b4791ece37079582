from __future__ import annotations

import re
from typing import Any

from context_sync.models.models import SourceType
from context_sync.services.transformers.base import ItemDraft, clamp_score, parse_dt

IMPORTANT_LABELS = ("bug", "critical", "urgent", "security", "breaking")
_H1_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)


def _label_names(record: dict[str, Any]) -> list[str]:
    return [str(label.get("name") or "") for label in record.get("labels") or [] if isinstance(label, dict)]


def _login(record: dict[str, Any] | None) -> str | None:
    return (record or {}).get("login")


def transform_issue(issue: dict[str, Any], repo_full_name: str) -> ItemDraft:
    labels = _label_names(issue)
    content = "\n\n".join(
        [
            issue.get("body") or "",
            f"State: {issue.get('state')}",
            f"Labels: {', '.join(labels) or 'none'}",
            f"Comments: {int(issue.get('comments') or 0)}",
        ]
    )
    return ItemDraft(
        external_id=f"github:issue:{repo_full_name}:{issue['number']}",
        source_type=SourceType.GITHUB_ISSUE,
        title=f"[{repo_full_name}] #{issue['number']}: {issue.get('title') or ''}",
        content=content,
        source_url=issue.get("html_url"),
        metadata={
            "repo": repo_full_name,
            "number": issue["number"],
            "state": issue.get("state"),
            "labels": labels,
            "author": _login(issue.get("user")),
            "comments": int(issue.get("comments") or 0),
            "createdAt": issue.get("created_at"),
            "updatedAt": issue.get("updated_at"),
            "closedAt": issue.get("closed_at"),
        },
        importance_score=issue_importance(issue),
        created_at=parse_dt(issue.get("created_at")),
    )


def transform_pull_request(pr: dict[str, Any], repo_full_name: str) -> ItemDraft:
    labels = _label_names(pr)
    head = (pr.get("head") or {}).get("ref")
    base = (pr.get("base") or {}).get("ref")
    merged = bool(pr.get("merged_at"))
    content = "\n\n".join(
        [
            pr.get("body") or "",
            f"State: {pr.get('state')}{' (merged)' if merged else ''}",
            f"Branch: {head} → {base}",
            f"Changes: +{int(pr.get('additions') or 0)} -{int(pr.get('deletions') or 0)} in {int(pr.get('changed_files') or 0)} files",
            f"Labels: {', '.join(labels) or 'none'}",
        ]
    )
    return ItemDraft(
        external_id=f"github:pr:{repo_full_name}:{pr['number']}",
        source_type=SourceType.GITHUB_PR,
        title=f"[{repo_full_name}] PR #{pr['number']}: {pr.get('title') or ''}",
        content=content,
        source_url=pr.get("html_url"),
        metadata={
            "repo": repo_full_name,
            "number": pr["number"],
            "state": pr.get("state"),
            "merged": merged,
            "labels": labels,
            "author": _login(pr.get("user")),
            "headBranch": head,
            "baseBranch": base,
            "additions": int(pr.get("additions") or 0),
            "deletions": int(pr.get("deletions") or 0),
            "changedFiles": int(pr.get("changed_files") or 0),
            "commits": int(pr.get("commits") or 0),
            "comments": int(pr.get("comments") or 0),
            "createdAt": pr.get("created_at"),
            "updatedAt": pr.get("updated_at"),
            "closedAt": pr.get("closed_at"),
            "mergedAt": pr.get("merged_at"),
        },
        importance_score=pull_request_importance(pr),
        created_at=parse_dt(pr.get("created_at")),
    )


def transform_commit(commit: dict[str, Any], repo_full_name: str) -> ItemDraft:
    details = commit.get("commit") or {}
    author = details.get("author") or {}
    message = details.get("message") or ""
    first_line, _, rest = message.partition("\n")
    body = rest.strip()
    sha = commit["sha"]
    return ItemDraft(
        external_id=f"github:commit:{repo_full_name}:{sha}",
        source_type=SourceType.GITHUB_COMMIT,
        title=f"[{repo_full_name}] {first_line}",
        content=body or first_line,
        source_url=commit.get("html_url"),
        metadata={
            "repo": repo_full_name,
            "sha": sha,
            "shortSha": sha[:7],
            "author": _login(commit.get("author")) or author.get("name"),
            "authorEmail": author.get("email"),
            "date": author.get("date"),
        },
        importance_score=commit_importance(commit),
        created_at=parse_dt(author.get("date")),
    )


def transform_document(file: dict[str, Any], repo_full_name: str) -> ItemDraft:
    content = file.get("content") or ""
    heading = _H1_RE.search(content)
    name = file.get("name") or ""
    title = heading.group(1) if heading else re.sub(r"\.md$", "", name, flags=re.IGNORECASE)
    return ItemDraft(
        external_id=f"github:doc:{repo_full_name}:{file['path']}",
        source_type=SourceType.GITHUB_DOC,
        title=f"[{repo_full_name}] {title}",
        content=content,
        source_url=file.get("html_url"),
        metadata={
            "repo": repo_full_name,
            "path": file["path"],
            "filename": name,
            "sha": file.get("sha"),
            "size": int(file.get("size") or 0),
        },
        importance_score=document_importance(file),
    )


def issue_importance(issue: dict[str, Any]) -> float:
    score = 0.5
    comments = int(issue.get("comments") or 0)
    if comments > 10:
        score += 0.2
    elif comments > 5:
        score += 0.1
    if any(marker in name.lower() for name in _label_names(issue) for marker in IMPORTANT_LABELS):
        score += 0.2
    if issue.get("state") == "open":
        score += 0.1
    return clamp_score(score)


def pull_request_importance(pr: dict[str, Any]) -> float:
    score = 0.6
    if pr.get("merged_at"):
        score += 0.15
    changed_files = int(pr.get("changed_files") or 0)
    if changed_files > 20:
        score += 0.15
    elif changed_files > 10:
        score += 0.1
    if int(pr.get("comments") or 0) > 5:
        score += 0.1
    return clamp_score(score)


def commit_importance(commit: dict[str, Any]) -> float:
    score = 0.4
    message = ((commit.get("commit") or {}).get("message") or "").lower()
    if message.startswith("fix:") or "bugfix" in message:
        score += 0.2
    if message.startswith("feat:") or "feature" in message:
        score += 0.15
    if "breaking" in message or "major" in message:
        score += 0.2
    if "security" in message:
        score += 0.25
    # merge commits carry no content of their own
    if message.startswith("merge"):
        score -= 0.2
    return clamp_score(score, lower=0.1)


def document_importance(file: dict[str, Any]) -> float:
    score = 0.6
    name = (file.get("name") or "").lower()
    path = (file.get("path") or "").lower()
    if name == "readme.md":
        score += 0.3
    if path.startswith("docs/"):
        score += 0.1
    if "api" in name or "api" in path:
        score += 0.1
    if name in ("contributing.md", "changelog.md"):
        score += 0.15
    size = int(file.get("size") or 0)
    if size > 10000:
        score += 0.1
    elif size > 5000:
        score += 0.05
    return clamp_score(score)
