from __future__ import annotations

import logging

from langchain_core.tools import BaseTool, tool

from .issue_tracker import IssueTrackerClient
from .models import EvidenceFinding, Repository, ToolCallRequest

logger = logging.getLogger(__name__)

_FILE_EXCERPT_CHARS = 1_500
_SEARCH_LIMIT = 5


def build_evidence_tools(
    tracker: IssueTrackerClient,
    repository: Repository,
    *,
    current_issue: int | None = None,
) -> list[BaseTool]:
    """Build the evidence-gathering tools bound to one repository.

    Args:
        tracker: Issue tracker used for lookups.
        repository: Repository the ticket belongs to.
        current_issue: Issue number excluded from similarity search results.

    Returns:
        LangChain tools, each taking a single string argument.
    """

    @tool
    async def search_similar_issues(query: str) -> str:
        """Search this repository's issues for reports similar to the query."""
        issues = await tracker.search_issues(repository, query, limit=_SEARCH_LIMIT + 1)
        matches = [issue for issue in issues if issue.number != current_issue][:_SEARCH_LIMIT]
        if not matches:
            return f"No similar issues found for '{query}'."
        lines = [f"#{issue.number} [{issue.state}] {issue.title}" for issue in matches]
        return "Similar issues:\n" + "\n".join(lines)

    @tool
    async def read_repository_file(path: str) -> str:
        """Read a file (README, docs, config sample) from the repository's default branch."""
        content = await tracker.get_file_content(repository, path)
        if content is None:
            raise FileNotFoundError(f"{path} does not exist in {repository.full_name}")
        excerpt = content[:_FILE_EXCERPT_CHARS]
        suffix = "\n[truncated]" if len(content) > _FILE_EXCERPT_CHARS else ""
        return f"{path}:\n{excerpt}{suffix}"

    return [search_similar_issues, read_repository_file]


class ToolRegistry:
    """Runs planned tool calls; failures become failed findings instead of errors."""

    def __init__(self, tools: list[BaseTool]) -> None:
        self._tools = {item.name: item for item in tools}

    @property
    def names(self) -> list[str]:
        return sorted(self._tools)

    def describe(self) -> str:
        return "\n".join(f"- {name}: {self._tools[name].description}" for name in self.names)

    async def execute(self, call: ToolCallRequest) -> EvidenceFinding:
        source = f"{call.tool}({call.argument})"
        selected = self._tools.get(call.tool)
        if selected is None:
            logger.warning("Research plan requested unknown tool %s", call.tool)
            return EvidenceFinding(source=source, summary="", succeeded=False, error=f"Unknown tool '{call.tool}'")
        arg_name = next(iter(selected.args), "input")
        try:
            output = await selected.ainvoke({arg_name: call.argument})
        except Exception as exc:
            logger.warning("Tool %s failed: %s", source, exc)
            return EvidenceFinding(source=source, summary="", succeeded=False, error=str(exc))
        return EvidenceFinding(source=source, summary=str(output))

    async def execute_all(self, calls: list[ToolCallRequest], *, limit: int = 3) -> list[EvidenceFinding]:
        return [await self.execute(call) for call in calls[:limit]]
