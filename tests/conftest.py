from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import pytest

from support_concierge.agent_runtime import RoleAgentRuntime
from support_concierge.issue_tracker import IssueTrackerError
from support_concierge.llm import LlmRequest, LlmResponse
from support_concierge.models import (
    Comment,
    ConversationState,
    CritiqueResult,
    EngineerBrief,
    ExtractedField,
    Issue,
    IssueEvent,
    OffTopicAssessment,
    Repository,
    ResearchPlan,
    ResponseResult,
    TriageResult,
)
from support_concierge.settings import RuntimeSettings
from support_concierge.spec_pack import SpecPack, load_spec_pack
from support_concierge.state_codec import StateCodec
from support_concierge.workflow import SupportConciergeWorkflow

BOT = "github-actions[bot]"
NOW = datetime(2026, 1, 5, 12, 0, tzinfo=UTC)
REPOSITORY = Repository(owner="acme", name="widgets")


class FakeTracker:
    """In-memory issue thread. Posted comments are appended as bot comments."""

    def __init__(self, comments: list[Comment] | None = None) -> None:
        self.comments: list[Comment] = list(comments or [])
        self.posted: list[str] = []
        self.labels: list[str] = []
        self.assignees: list[str] = []
        self.files: dict[str, str] = {}
        self.search_results: list[Issue] = []
        self.get_comments_calls = 0
        self.before_get_comments: Callable[["FakeTracker"], None] | None = None
        self.fail_labels = False
        self.fail_posts = False
        self._next_id = 9_000

    async def get_comments(self, repository: Repository, issue_number: int) -> list[Comment]:
        self.get_comments_calls += 1
        if self.before_get_comments is not None:
            self.before_get_comments(self)
        return list(self.comments)

    async def post_comment(self, repository: Repository, issue_number: int, body: str) -> int | None:
        if self.fail_posts:
            raise IssueTrackerError("HTTP 502 from POST comments")
        self._next_id += 1
        self.comments.append(Comment(id=self._next_id, author=BOT, body=body))
        self.posted.append(body)
        return self._next_id

    async def add_labels(self, repository: Repository, issue_number: int, labels: list[str]) -> None:
        if self.fail_labels:
            raise IssueTrackerError("HTTP 500 from POST labels")
        self.labels.extend(labels)

    async def add_assignees(self, repository: Repository, issue_number: int, assignees: list[str]) -> None:
        self.assignees.extend(assignees)

    async def get_file_content(self, repository: Repository, path: str, ref: str | None = None) -> str | None:
        return self.files.get(path)

    async def search_issues(self, repository: Repository, query: str, limit: int = 5) -> list[Issue]:
        return self.search_results[:limit]


class ScriptedLanguageModel:
    """Returns queued payloads per role; the last payload for a role repeats once the queue drains.

    A queued exception is raised instead of returned.
    """

    def __init__(self, responses: dict[str, list[Any]] | None = None) -> None:
        self.responses = {role: list(items) for role, items in (responses or {}).items()}
        self.requests: list[LlmRequest] = []

    async def complete(self, request: LlmRequest) -> LlmResponse:
        self.requests.append(request)
        queue = self.responses.get(request.role)
        if not queue:
            raise RuntimeError(f"No scripted response for role '{request.role}'")
        payload = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(payload, Exception):
            raise payload
        return LlmResponse(payload=payload, prompt_tokens=11, completion_tokens=7, latency_ms=1.0)

    def calls(self, role: str) -> list[LlmRequest]:
        return [request for request in self.requests if request.role == role]


def triage_result(category: str = "runtime", **fields: str) -> TriageResult:
    return TriageResult(
        category=category,
        confidence=0.9,
        reasoning="Classified from the ticket text",
        extracted_fields=[ExtractedField(name=name, value=value) for name, value in fields.items()],
    )


def critique(score: int = 9) -> CritiqueResult:
    return CritiqueResult(score=score, reasoning=f"Scored {score}")


def research_plan() -> ResearchPlan:
    return ResearchPlan(hypothesis="A missing key in the loaded config", tool_calls=[])


def response_result(*, actionable: bool = False, questions: list[str] | None = None) -> ResponseResult:
    brief = None
    if actionable:
        brief = EngineerBrief(
            summary="Crash on startup when the cache directory is missing",
            symptoms=["KeyError: 'cache_dir' on launch"],
            likely_causes=["Default config lacks cache_dir"],
            next_steps=["Add a default for cache_dir"],
        )
    return ResponseResult(follow_up_questions=questions or [], is_actionable=actionable, brief=brief)


def on_topic() -> OffTopicAssessment:
    return OffTopicAssessment(off_topic=False, confidence=0.95, reason="Discusses the reported crash")


def off_topic(confidence: float = 0.9) -> OffTopicAssessment:
    return OffTopicAssessment(
        off_topic=True,
        confidence=confidence,
        reason="Asks about an unrelated feature",
        suggested_action="Open a separate feature request",
    )


def standard_responses(**overrides: list[Any]) -> dict[str, list[Any]]:
    responses: dict[str, list[Any]] = {
        "triage": [triage_result(error_message="KeyError: 'cache_dir'")],
        "critic": [critique(9)],
        "research": [research_plan()],
        "response": [response_result()],
        "off_topic": [on_topic()],
    }
    responses.update(overrides)
    return responses


def issue_payload(*, author: str = "alice", body: str = "The app crashes on start", number: int = 42) -> dict[str, Any]:
    return {
        "number": number,
        "title": "Crash on startup",
        "body": body,
        "user": {"login": author},
        "labels": [],
        "state": "open",
    }


def issue_opened_event(*, author: str = "alice", body: str = "The app crashes on start") -> IssueEvent:
    return IssueEvent.from_github(
        "issues",
        {
            "action": "opened",
            "issue": issue_payload(author=author, body=body),
            "repository": {"full_name": "acme/widgets", "name": "widgets", "owner": {"login": "acme"}},
        },
    )


def comment_event(author: str, body: str, *, comment_id: int = 5_000, issue_author: str = "alice") -> IssueEvent:
    return IssueEvent.from_github(
        "issue_comment",
        {
            "action": "created",
            "issue": issue_payload(author=issue_author),
            "comment": {"id": comment_id, "user": {"login": author}, "body": body},
            "repository": {"full_name": "acme/widgets", "name": "widgets", "owner": {"login": "acme"}},
        },
    )


def state_comment(state: ConversationState, *, comment_id: int = 100, text: str = "Earlier reply") -> Comment:
    return Comment(id=comment_id, author=BOT, body=StateCodec().encode(text, state))


def latest_state(tracker: FakeTracker) -> ConversationState | None:
    state, _ = StateCodec().find_latest_state(tracker.comments, BOT)
    return state


@pytest.fixture
def settings() -> RuntimeSettings:
    return RuntimeSettings()


@pytest.fixture
def spec_pack() -> SpecPack:
    return load_spec_pack()


@pytest.fixture
def runtime(settings: RuntimeSettings) -> RoleAgentRuntime:
    return RoleAgentRuntime(settings=settings)


@pytest.fixture
def make_workflow(
    settings: RuntimeSettings,
    spec_pack: SpecPack,
    runtime: RoleAgentRuntime,
) -> Callable[..., SupportConciergeWorkflow]:
    def _make(
        tracker: FakeTracker,
        llm: ScriptedLanguageModel,
        *,
        workflow_settings: RuntimeSettings | None = None,
    ) -> SupportConciergeWorkflow:
        return SupportConciergeWorkflow(
            settings=workflow_settings or settings,
            tracker=tracker,
            llm=llm,
            runtime=runtime,
            spec_pack=spec_pack,
            clock=lambda: NOW,
        )

    return _make
