from __future__ import annotations

import base64
import logging
from typing import Any, Protocol

import httpx
from tenacity import before_sleep_log, retry, retry_if_exception, stop_after_attempt, wait_exponential

from .models import Comment, Issue, Repository
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

_PER_PAGE = 100
_MAX_PAGES = 50


class IssueTrackerError(RuntimeError):
    """The issue tracker rejected a request or could not be reached."""


class IssueTrackerClient(Protocol):
    async def get_comments(self, repository: Repository, issue_number: int) -> list[Comment]: ...

    async def post_comment(self, repository: Repository, issue_number: int, body: str) -> int | None: ...

    async def add_labels(self, repository: Repository, issue_number: int, labels: list[str]) -> None: ...

    async def add_assignees(self, repository: Repository, issue_number: int, assignees: list[str]) -> None: ...

    async def get_file_content(self, repository: Repository, path: str, ref: str | None = None) -> str | None: ...

    async def search_issues(self, repository: Repository, query: str, limit: int = 5) -> list[Issue]: ...


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code == 429
    return False


# Reads are idempotent and safe to repeat; writes are never retried so a slow
# success cannot turn into a duplicate comment.
read_retry = retry(
    retry=retry_if_exception(_is_transient),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


class GitHubIssueTracker:
    """Issue tracker client for the GitHub REST API.

    Writes are suppressed (logged, returning None) unless write mode is on and
    dry-run is off.

    Usage:
        tracker = GitHubIssueTracker(settings=settings, token=os.environ["GITHUB_TOKEN"])
        comments = await tracker.get_comments(repository, 42)
    """

    def __init__(
        self,
        *,
        settings: RuntimeSettings,
        token: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.base_url = settings.github_api_url.rstrip("/")
        self.timeout = float(settings.tracker_timeout_seconds)
        self._token = token
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        logger.info("Initialized %s with base_url=%s writes_enabled=%s", self.__class__.__name__, self.base_url, settings.writes_enabled)

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "support-concierge",
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "GitHubIssueTracker":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        response = await self._get_client().request(method, path, **kwargs)
        response.raise_for_status()
        return response

    @read_retry
    async def _get(self, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        return await self._request("GET", path, params=params)

    async def _read(self, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        try:
            return await self._get(path, params)
        except httpx.HTTPStatusError as exc:
            logger.error("HTTP %d from GET %s: %s", exc.response.status_code, path, exc.response.text[:500])
            raise IssueTrackerError(f"HTTP {exc.response.status_code} from GET {path}") from exc
        except httpx.TransportError as exc:
            logger.error("Failed to reach issue tracker for GET %s: %s", path, exc)
            raise IssueTrackerError(f"Failed to reach issue tracker for GET {path}: {exc}") from exc

    async def _write(self, method: str, path: str, payload: dict[str, Any]) -> httpx.Response | None:
        if not self.settings.writes_enabled:
            logger.info(
                "Write suppressed (dry_run=%s, write_mode=%s): %s %s",
                self.settings.dry_run,
                self.settings.write_mode,
                method,
                path,
            )
            return None
        try:
            return await self._request(method, path, json=payload)
        except httpx.HTTPStatusError as exc:
            logger.error("HTTP %d from %s %s: %s", exc.response.status_code, method, path, exc.response.text[:500])
            raise IssueTrackerError(f"HTTP {exc.response.status_code} from {method} {path}") from exc
        except httpx.TransportError as exc:
            logger.error("Failed to reach issue tracker for %s %s: %s", method, path, exc)
            raise IssueTrackerError(f"Failed to reach issue tracker for {method} {path}: {exc}") from exc

    async def get_comments(self, repository: Repository, issue_number: int) -> list[Comment]:
        """Return every comment on the issue, oldest first."""
        path = f"/repos/{repository.full_name}/issues/{issue_number}/comments"
        comments: list[Comment] = []
        for page in range(1, _MAX_PAGES + 1):
            response = await self._read(path, {"per_page": _PER_PAGE, "page": page})
            batch = response.json()
            comments.extend(Comment.from_github(item) for item in batch)
            if len(batch) < _PER_PAGE:
                break
        else:
            logger.warning("Stopped paging comments for %s#%d after %d pages", repository.full_name, issue_number, _MAX_PAGES)
        return comments

    async def post_comment(self, repository: Repository, issue_number: int, body: str) -> int | None:
        """Post a comment and return its id, or None when writes are suppressed."""
        path = f"/repos/{repository.full_name}/issues/{issue_number}/comments"
        response = await self._write("POST", path, {"body": body})
        if response is None:
            return None
        return int(response.json()["id"])

    async def add_labels(self, repository: Repository, issue_number: int, labels: list[str]) -> None:
        if not labels:
            return
        path = f"/repos/{repository.full_name}/issues/{issue_number}/labels"
        await self._write("POST", path, {"labels": labels})

    async def add_assignees(self, repository: Repository, issue_number: int, assignees: list[str]) -> None:
        if not assignees:
            return
        path = f"/repos/{repository.full_name}/issues/{issue_number}/assignees"
        await self._write("POST", path, {"assignees": assignees})

    async def get_file_content(self, repository: Repository, path: str, ref: str | None = None) -> str | None:
        """Return a UTF-8 file from the repository, or None if it does not exist."""
        params = {"ref": ref} if ref else None
        try:
            response = await self._get(f"/repos/{repository.full_name}/contents/{path.lstrip('/')}", params)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                return None
            logger.error("HTTP %d reading %s from %s", exc.response.status_code, path, repository.full_name)
            raise IssueTrackerError(f"HTTP {exc.response.status_code} reading {path}") from exc
        except httpx.TransportError as exc:
            logger.error("Failed to reach issue tracker reading %s: %s", path, exc)
            raise IssueTrackerError(f"Failed to reach issue tracker reading {path}: {exc}") from exc
        payload = response.json()
        if not isinstance(payload, dict) or payload.get("type") != "file":
            return None
        content = payload.get("content") or ""
        if payload.get("encoding") == "base64":
            return base64.b64decode(content).decode("utf-8", errors="replace")
        return str(content)

    async def search_issues(self, repository: Repository, query: str, limit: int = 5) -> list[Issue]:
        q = f"repo:{repository.full_name} is:issue {query}".strip()
        response = await self._read("/search/issues", {"q": q, "per_page": max(1, min(limit, _PER_PAGE))})
        items = response.json().get("items") or []
        return [Issue.from_github(item) for item in items[:limit]]
