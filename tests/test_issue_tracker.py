from __future__ import annotations

import asyncio
import base64
import json
from dataclasses import replace

import httpx
import pytest

from conftest import REPOSITORY
from support_concierge.issue_tracker import GitHubIssueTracker, IssueTrackerError
from support_concierge.settings import RuntimeSettings


def _tracker(handler, settings: RuntimeSettings | None = None) -> GitHubIssueTracker:
    return GitHubIssueTracker(
        settings=settings or RuntimeSettings(),
        token="ghs_test",
        transport=httpx.MockTransport(handler),
    )


def _comment(comment_id: int, author: str = "alice") -> dict:
    return {"id": comment_id, "user": {"login": author}, "body": f"comment {comment_id}"}


def test_get_comments_pages_until_short_page() -> None:
    seen_pages: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer ghs_test"
        page = request.url.params["page"]
        seen_pages.append(page)
        if page == "1":
            return httpx.Response(200, json=[_comment(index) for index in range(100)])
        return httpx.Response(200, json=[_comment(100), _comment(101, "github-actions[bot]")])

    async def scenario() -> list:
        async with _tracker(handler) as tracker:
            return await tracker.get_comments(REPOSITORY, 42)

    comments = asyncio.run(scenario())

    assert seen_pages == ["1", "2"]
    assert len(comments) == 102
    assert comments[-1].author == "github-actions[bot]"


def test_transient_read_errors_are_retried() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(502, text="bad gateway")
        return httpx.Response(200, json=[])

    async def scenario() -> list:
        async with _tracker(handler) as tracker:
            return await tracker.get_comments(REPOSITORY, 42)

    assert asyncio.run(scenario()) == []
    assert calls["count"] == 2


def test_client_errors_surface_as_tracker_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, json={"message": "Resource not accessible by integration"})

    async def scenario() -> None:
        async with _tracker(handler) as tracker:
            await tracker.get_comments(REPOSITORY, 42)

    with pytest.raises(IssueTrackerError, match="HTTP 403"):
        asyncio.run(scenario())


def test_post_comment_returns_new_id() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.url.path == "/repos/acme/widgets/issues/42/comments"
        bodies.append(json.loads(request.content))
        return httpx.Response(201, json={"id": 777})

    async def scenario() -> int | None:
        async with _tracker(handler) as tracker:
            return await tracker.post_comment(REPOSITORY, 42, "hello")

    assert asyncio.run(scenario()) == 777
    assert bodies == [{"body": "hello"}]


def test_dry_run_suppresses_writes() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError(f"unexpected request {request.method} {request.url}")

    async def scenario() -> int | None:
        async with _tracker(handler, replace(RuntimeSettings(), dry_run=True)) as tracker:
            await tracker.add_labels(REPOSITORY, 42, ["triaged"])
            return await tracker.post_comment(REPOSITORY, 42, "hello")

    assert asyncio.run(scenario()) is None


def test_write_failures_are_not_retried() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(500, text="boom")

    async def scenario() -> None:
        async with _tracker(handler) as tracker:
            await tracker.post_comment(REPOSITORY, 42, "hello")

    with pytest.raises(IssueTrackerError):
        asyncio.run(scenario())
    assert calls["count"] == 1


def test_labels_and_assignees_payloads() -> None:
    requests: list[tuple[str, dict]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={})

    async def scenario() -> None:
        async with _tracker(handler) as tracker:
            await tracker.add_labels(REPOSITORY, 42, ["triaged", "area/runtime"])
            await tracker.add_assignees(REPOSITORY, 42, [])
            await tracker.add_assignees(REPOSITORY, 42, ["maintainer"])

    asyncio.run(scenario())

    assert requests == [
        ("/repos/acme/widgets/issues/42/labels", {"labels": ["triaged", "area/runtime"]}),
        ("/repos/acme/widgets/issues/42/assignees", {"assignees": ["maintainer"]}),
    ]


def test_get_file_content_decodes_and_handles_missing() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/README.md"):
            encoded = base64.b64encode(b"# Widgets\nSet cache_dir first.").decode()
            return httpx.Response(200, json={"type": "file", "encoding": "base64", "content": encoded})
        return httpx.Response(404, json={"message": "Not Found"})

    async def scenario() -> tuple[str | None, str | None]:
        async with _tracker(handler) as tracker:
            return (
                await tracker.get_file_content(REPOSITORY, "README.md"),
                await tracker.get_file_content(REPOSITORY, "docs/missing.md"),
            )

    found, missing = asyncio.run(scenario())

    assert found == "# Widgets\nSet cache_dir first."
    assert missing is None


def test_search_issues_scopes_query_to_repository() -> None:
    queries: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        queries.append(request.url.params["q"])
        return httpx.Response(
            200,
            json={"items": [{"number": 7, "title": "cache_dir crash", "user": {"login": "dave"}, "state": "closed"}]},
        )

    async def scenario() -> list:
        async with _tracker(handler) as tracker:
            return await tracker.search_issues(REPOSITORY, "cache_dir KeyError")

    issues = asyncio.run(scenario())

    assert queries == ["repo:acme/widgets is:issue cache_dir KeyError"]
    assert issues[0].number == 7
    assert issues[0].state == "closed"
