from datetime import datetime, timedelta, timezone

from context_sync.models.models import SourceType
from context_sync.services.transformers import github, notion, slack


def _issue(**overrides):
    issue = {
        "number": 7,
        "title": "Login fails",
        "body": "Stack trace attached",
        "state": "closed",
        "labels": [],
        "comments": 0,
        "html_url": "https://github.com/acme/api/issues/7",
        "user": {"login": "octo"},
        "created_at": "2024-01-02T03:04:05Z",
        "updated_at": "2024-01-03T03:04:05Z",
        "closed_at": None,
    }
    issue.update(overrides)
    return issue


def test_issue_transform_builds_stable_identity_and_content():
    draft = github.transform_issue(_issue(labels=[{"name": "bug"}]), "acme/api")

    assert draft.external_id == "github:issue:acme/api:7"
    assert draft.source_type == SourceType.GITHUB_ISSUE
    assert draft.title == "[acme/api] #7: Login fails"
    assert "State: closed" in draft.content
    assert "Labels: bug" in draft.content
    assert draft.metadata["author"] == "octo"
    assert draft.created_at == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def test_issue_importance_rewards_activity_labels_and_open_state():
    quiet = github.issue_importance(_issue())
    busy = github.issue_importance(_issue(comments=12, state="open", labels=[{"name": "Security-Critical"}]))

    assert quiet == 0.5
    assert busy == 1.0


def test_issue_importance_is_monotonic_in_comments():
    scores = [github.issue_importance(_issue(comments=count)) for count in (0, 6, 11)]
    assert scores == sorted(scores)
    assert scores[0] < scores[-1]


def test_pull_request_transform_marks_merged():
    pr = {
        "number": 3,
        "title": "Add cache",
        "body": "",
        "state": "closed",
        "merged_at": "2024-02-01T00:00:00Z",
        "head": {"ref": "feature/cache"},
        "base": {"ref": "main"},
        "additions": 10,
        "deletions": 2,
        "changed_files": 25,
        "comments": 6,
        "labels": [],
    }

    draft = github.transform_pull_request(pr, "acme/api")

    assert draft.external_id == "github:pr:acme/api:3"
    assert "State: closed (merged)" in draft.content
    assert "Branch: feature/cache → main" in draft.content
    assert draft.metadata["merged"] is True
    assert draft.importance_score == 1.0


def test_commit_transform_splits_message():
    commit = {
        "sha": "abcdef1234567",
        "html_url": "https://github.com/acme/api/commit/abcdef1",
        "author": None,
        "commit": {
            "message": "fix: handle empty token\n\nGuard against missing header.",
            "author": {"name": "Dev", "email": "dev@example.com", "date": "2024-03-01T10:00:00Z"},
        },
    }

    draft = github.transform_commit(commit, "acme/api")

    assert draft.title == "[acme/api] fix: handle empty token"
    assert draft.content == "Guard against missing header."
    assert draft.metadata["shortSha"] == "abcdef1"
    assert draft.metadata["author"] == "Dev"
    assert abs(draft.importance_score - 0.6) < 1e-9


def test_merge_commit_score_has_a_floor():
    commit = {"sha": "1", "commit": {"message": "Merge branch 'main'"}}
    assert abs(github.commit_importance(commit) - 0.2) < 1e-9
    assert github.commit_importance({"sha": "2", "commit": {"message": "merge"}}) >= 0.1


def test_document_title_prefers_first_heading():
    readme = {"name": "README.md", "path": "README.md", "content": "intro\n# Payments API\nbody", "size": 100}
    plain = {"name": "setup.md", "path": "docs/setup.md", "content": "no heading", "size": 6000}

    assert github.transform_document(readme, "acme/api").title == "[acme/api] Payments API"
    assert github.transform_document(plain, "acme/api").title == "[acme/api] setup"
    assert github.document_importance(readme) == 0.9
    assert abs(github.document_importance(plain) - 0.75) < 1e-9


def test_slack_message_transform():
    message = {
        "ts": "1700000000.000100",
        "text": "Deploy finished <@U123>",
        "user": "U1",
        "reactions": [{"name": "tada", "count": 3}],
        "attachments": [{"fallback": "build #12"}],
    }

    draft = slack.transform_message(message, {"id": "C1", "name": "deploys"}, team_id="T1")

    assert draft.external_id == "slack:C1:1700000000.000100"
    assert draft.title == "#deploys - Deploy finished"
    assert draft.content == "Deploy finished <@U123>\n\nbuild #12"
    assert draft.source_url == "https://app.slack.com/client/T1/C1"
    assert abs(draft.importance_score - 0.4) < 1e-9


def test_slack_message_without_team_has_no_url():
    draft = slack.transform_message({"ts": "1.0", "text": "hi"}, {"id": "C1", "name": "x"})
    assert draft.source_url is None


def test_slack_thread_collapses_replies():
    parent = {"ts": "10.0", "thread_ts": "10.0", "text": "Outage?", "user": "U1", "reply_count": 2}
    replies = [parent, {"ts": "10.1", "text": "yes", "user": "U2"}, {"ts": "10.2", "text": "fixed", "user": "U1"}]

    draft = slack.transform_thread(parent, replies, {"id": "C9", "name": "ops"})

    assert draft.external_id == "slack:thread:C9:10.0"
    assert draft.title == "#ops - Outage? (2 replies)"
    assert draft.content == "[Thread Start] Outage?\n\n[Reply] yes\n\n[Reply] fixed"
    assert draft.metadata["participants"] == ["U1", "U2"]
    assert draft.metadata["replyCount"] == 2


def test_thread_importance_grows_with_replies():
    parent = {"ts": "1", "text": "q"}
    small = slack.thread_importance(parent, [parent] * 3)
    large = slack.thread_importance(parent, [parent] * 25)
    assert small < large


def test_notion_block_rendering():
    def block(block_type, text, **extra):
        return {"type": block_type, block_type: {"rich_text": [{"plain_text": text}], **extra}}

    blocks = [
        block("heading_1", "Plan"),
        block("paragraph", "Intro"),
        block("to_do", "Ship", checked=True),
        block("code", "print(1)", language="python"),
        {"type": "divider", "divider": {}},
    ]

    assert notion.blocks_to_text(blocks) == "# Plan\n\nIntro\n\n☑ Ship\n\n```python\nprint(1)\n```"


def test_notion_page_transform_and_recency_score():
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)
    page = {
        "id": "page-1",
        "url": "https://notion.so/page1",
        "parent": {"type": "database_id", "database_id": "db-1"},
        "properties": {
            "Name": {"type": "title", "title": [{"plain_text": "Roadmap 2024"}]},
            "Status": {"type": "select", "select": {"name": "Active"}},
        },
        "created_time": "2024-01-01T00:00:00Z",
        "last_edited_time": (now - timedelta(days=2)).isoformat(),
    }

    draft = notion.transform_page(page, [], now=now)

    assert draft.external_id == "notion:page:page-1"
    assert draft.title == "Roadmap 2024"
    assert draft.metadata["parentId"] == "db-1"
    assert draft.metadata["properties"] == {"Name": "Roadmap 2024", "Status": "Active"}
    assert abs(draft.importance_score - 0.8) < 1e-9


def test_notion_stale_untitled_page_scores_low():
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)
    page = {"id": "p", "properties": {}, "last_edited_time": "2023-01-01T00:00:00Z"}
    assert notion.page_title(page) == "Untitled"
    assert abs(notion.page_importance(page, [], now=now) - 0.4) < 1e-9
