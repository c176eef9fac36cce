from __future__ import annotations

import asyncio

from conftest import (
    REPOSITORY,
    FakeTracker,
    ScriptedLanguageModel,
    issue_opened_event,
    latest_state,
    standard_responses,
)
from support_concierge.models import Issue, ResearchPlan, ToolCallRequest
from support_concierge.tools import ToolRegistry, build_evidence_tools


def _registry(tracker: FakeTracker) -> ToolRegistry:
    return ToolRegistry(build_evidence_tools(tracker, REPOSITORY, current_issue=42))


def test_registry_lists_and_describes_tools() -> None:
    registry = _registry(FakeTracker())

    assert registry.names == ["read_repository_file", "search_similar_issues"]
    assert "Search this repository's issues" in registry.describe()


def test_search_excludes_the_current_issue() -> None:
    tracker = FakeTracker()
    tracker.search_results = [
        Issue(number=42, title="Crash on startup", state="open"),
        Issue(number=7, title="KeyError cache_dir", state="closed"),
    ]

    finding = asyncio.run(_registry(tracker).execute(ToolCallRequest(tool="search_similar_issues", argument="cache_dir")))

    assert finding.succeeded
    assert finding.source == "search_similar_issues(cache_dir)"
    assert "#7 [closed] KeyError cache_dir" in finding.summary
    assert "#42" not in finding.summary


def test_file_reads_are_truncated() -> None:
    tracker = FakeTracker()
    tracker.files["README.md"] = "x" * 2_000

    finding = asyncio.run(_registry(tracker).execute(ToolCallRequest(tool="read_repository_file", argument="README.md")))

    assert finding.succeeded
    assert finding.summary.endswith("[truncated]")


def test_tool_failures_become_failed_findings() -> None:
    registry = _registry(FakeTracker())

    missing = asyncio.run(registry.execute(ToolCallRequest(tool="read_repository_file", argument="docs/nope.md")))
    unknown = asyncio.run(registry.execute(ToolCallRequest(tool="run_shell", argument="ls")))

    assert not missing.succeeded
    assert "does not exist" in missing.error
    assert not unknown.succeeded
    assert unknown.error == "Unknown tool 'run_shell'"


def test_execute_all_respects_limit() -> None:
    calls = [ToolCallRequest(tool="search_similar_issues", argument=f"q{index}") for index in range(5)]

    findings = asyncio.run(_registry(FakeTracker()).execute_all(calls, limit=3))

    assert [item.source for item in findings] == [
        "search_similar_issues(q0)",
        "search_similar_issues(q1)",
        "search_similar_issues(q2)",
    ]


def test_research_findings_are_shared_on_the_ticket(make_workflow) -> None:
    tracker = FakeTracker()
    tracker.files["README.md"] = "Set cache_dir before the first start."
    plan = ResearchPlan(
        hypothesis="cache_dir is unset",
        tool_calls=[
            ToolCallRequest(tool="read_repository_file", argument="README.md"),
            ToolCallRequest(tool="read_repository_file", argument="docs/missing.md"),
        ],
    )
    llm = ScriptedLanguageModel(standard_responses(research=[plan]))

    ctx = asyncio.run(make_workflow(tracker, llm).run(issue_opened_event()))

    assert len(ctx.investigation.findings) == 2
    assert len(ctx.investigation.successful_findings) == 1
    findings = latest_state(tracker).shared_findings
    assert len(findings) == 1
    assert findings[0].discovered_by == "alice"
    assert findings[0].category == "runtime"
    assert findings[0].finding.startswith("read_repository_file(README.md): README.md:")
