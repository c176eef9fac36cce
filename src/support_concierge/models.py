from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Persisted conversation state
# ---------------------------------------------------------------------------


class UserConversation(BaseModel):
    """Per-participant progress on a single ticket."""

    model_config = ConfigDict(extra="ignore")

    username: str
    loop_count: int = Field(default=0, ge=0)
    is_exhausted: bool = False
    first_interaction: datetime = Field(default_factory=utc_now)
    last_interaction: datetime = Field(default_factory=utc_now)
    asked_fields: list[str] = Field(default_factory=list)
    is_finalized: bool = False
    finalized_at: datetime | None = None
    off_topic_strike_count: int = Field(default=0, ge=0)
    is_off_topic_blocked: bool = False
    off_topic_blocked_at: datetime | None = None

    def begin_turn(self, now: datetime) -> None:
        """Count one processed turn for this participant."""
        self.loop_count += 1
        self.last_interaction = now

    def record_asked_fields(self, fields: list[str]) -> None:
        seen = {value.lower() for value in self.asked_fields}
        for name in fields:
            value = name.strip()
            if not value or value.lower() in seen:
                continue
            seen.add(value.lower())
            self.asked_fields.append(value)

    def has_asked(self, field_name: str) -> bool:
        target = field_name.strip().lower()
        return any(value.lower() == target for value in self.asked_fields)

    def finalize(self, now: datetime) -> None:
        if self.is_finalized:
            return
        self.is_finalized = True
        self.finalized_at = now

    def record_off_topic_strike(self, now: datetime, *, block_after: int = 2) -> None:
        """Add a strike; reaching ``block_after`` strikes blocks the participant permanently."""
        self.off_topic_strike_count += 1
        self.last_interaction = now
        if self.off_topic_strike_count >= block_after and not self.is_off_topic_blocked:
            self.is_off_topic_blocked = True
            self.off_topic_blocked_at = now

    @property
    def is_blocked(self) -> bool:
        return self.is_off_topic_blocked


class SharedFinding(BaseModel):
    """Evidence visible to every participant on the ticket."""

    model_config = ConfigDict(extra="ignore")

    discovered_by: str
    discovered_at: datetime = Field(default_factory=utc_now)
    category: str = ""
    finding: str


class ConversationState(BaseModel):
    """Per-ticket session state carried inside bot comments.

    ``user_conversations`` keys are unique case-insensitively. Entries are only
    ever added, so the set of participants allowed to drive the workflow never
    shrinks.
    """

    model_config = ConfigDict(extra="ignore")

    category: str = ""
    user_conversations: dict[str, UserConversation] = Field(default_factory=dict)
    shared_findings: list[SharedFinding] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=utc_now)
    is_actionable: bool = False
    completeness_score: int = 0
    issue_author: str = ""
    brief_comment_id: int | None = None
    brief_iteration_count: int = 0

    @field_validator("user_conversations")
    @classmethod
    def _dedupe_usernames(cls, value: dict[str, UserConversation]) -> dict[str, UserConversation]:
        deduped: dict[str, UserConversation] = {}
        kept: dict[str, str] = {}
        for username, conversation in value.items():
            key = username.lower()
            if key in kept:
                logger.warning(
                    "Dropping conversation for %s (loop_count=%d); it duplicates %s",
                    username,
                    conversation.loop_count,
                    kept[key],
                )
                continue
            kept[key] = username
            deduped[username] = conversation
        return deduped

    @classmethod
    def create_initial(cls, *, category: str, issue_author: str, now: datetime) -> "ConversationState":
        """Fresh state for a ticket with no prior marker, seeded with the author's conversation."""
        state = cls(category=category, issue_author=issue_author, last_updated=now)
        if issue_author:
            state.ensure_conversation(issue_author, now)
        return state

    def find_conversation(self, username: str) -> UserConversation | None:
        key = username.lower()
        for existing, conversation in self.user_conversations.items():
            if existing.lower() == key:
                return conversation
        return None

    def ensure_conversation(self, username: str, now: datetime) -> UserConversation:
        conversation = self.find_conversation(username)
        if conversation is None:
            conversation = UserConversation(username=username, first_interaction=now, last_interaction=now)
            self.user_conversations[username] = conversation
        return conversation

    def allowed_users(self) -> set[str]:
        """Lower-cased participants permitted to drive the workflow."""
        allowed = {name.lower() for name in self.user_conversations}
        if self.issue_author:
            allowed.add(self.issue_author.lower())
        return allowed

    def add_findings(self, findings: list[SharedFinding]) -> int:
        """Append findings not already recorded. Returns how many were added."""
        known = {item.finding.strip().lower() for item in self.shared_findings}
        added = 0
        for finding in findings:
            key = finding.finding.strip().lower()
            if not key or key in known:
                continue
            known.add(key)
            self.shared_findings.append(finding)
            added += 1
        return added


# ---------------------------------------------------------------------------
# Tracker DTOs
# ---------------------------------------------------------------------------


class Repository(BaseModel):
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @classmethod
    def from_github(cls, payload: dict[str, Any]) -> "Repository":
        full_name = str(payload.get("full_name") or "")
        owner = payload.get("owner") or {}
        owner_login = owner.get("login") if isinstance(owner, dict) else None
        if not owner_login and "/" in full_name:
            owner_login = full_name.split("/", 1)[0]
        name = payload.get("name") or (full_name.split("/", 1)[1] if "/" in full_name else "")
        return cls(owner=str(owner_login or ""), name=str(name))


class Issue(BaseModel):
    number: int
    title: str = ""
    body: str = ""
    author: str = ""
    labels: list[str] = Field(default_factory=list)
    state: str = "open"
    html_url: str = ""

    @classmethod
    def from_github(cls, payload: dict[str, Any]) -> "Issue":
        user = payload.get("user") or {}
        labels = [
            str(item.get("name")) if isinstance(item, dict) else str(item)
            for item in payload.get("labels") or []
        ]
        return cls(
            number=int(payload["number"]),
            title=str(payload.get("title") or ""),
            body=str(payload.get("body") or ""),
            author=str(user.get("login") or ""),
            labels=labels,
            state=str(payload.get("state") or "open"),
            html_url=str(payload.get("html_url") or ""),
        )


class Comment(BaseModel):
    id: int
    author: str = ""
    body: str = ""
    created_at: datetime | None = None

    @classmethod
    def from_github(cls, payload: dict[str, Any]) -> "Comment":
        user = payload.get("user") or {}
        return cls(
            id=int(payload["id"]),
            author=str(user.get("login") or ""),
            body=str(payload.get("body") or ""),
            created_at=payload.get("created_at"),
        )


class IssueEvent(BaseModel):
    """Inbound webhook event: a new ticket or a new comment on one."""

    event_name: str
    action: str = ""
    repository: Repository
    issue: Issue
    comment: Comment | None = None

    @classmethod
    def from_github(cls, event_name: str, payload: dict[str, Any]) -> "IssueEvent":
        if "issue" not in payload or "repository" not in payload:
            raise ValueError("Event payload must contain 'issue' and 'repository'")
        comment_payload = payload.get("comment")
        return cls(
            event_name=event_name,
            action=str(payload.get("action") or ""),
            repository=Repository.from_github(payload["repository"]),
            issue=Issue.from_github(payload["issue"]),
            comment=Comment.from_github(comment_payload) if comment_payload else None,
        )

    @property
    def is_comment_event(self) -> bool:
        return self.comment is not None

    @property
    def author(self) -> str:
        """Comment author for comment events, ticket author for ticket events."""
        if self.comment is not None:
            return self.comment.author
        return self.issue.author

    @property
    def current_text(self) -> str:
        """Text authored in this event only."""
        if self.comment is not None:
            return self.comment.body
        return self.issue.body


# ---------------------------------------------------------------------------
# Phase artefacts (structured LLM output)
# ---------------------------------------------------------------------------


class CommandInfo(BaseModel):
    has_stop_command: bool = False
    has_diagnose_command: bool = False


class CritiqueIssue(BaseModel):
    category: str
    problem: str
    suggestion: str
    severity: int = Field(ge=1, le=5)


class CritiqueResult(BaseModel):
    score: int = Field(ge=1, le=10)
    reasoning: str
    issues: list[CritiqueIssue] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    is_passable: bool = False


class ExtractedField(BaseModel):
    name: str
    value: str


class TriageResult(BaseModel):
    category: str
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str
    extracted_fields: list[ExtractedField] = Field(default_factory=list)

    def fields_dict(self) -> dict[str, str]:
        fields: dict[str, str] = {}
        for item in self.extracted_fields:
            key = item.name.strip().lower()
            if key and key not in fields:
                fields[key] = item.value
        return fields


class ToolCallRequest(BaseModel):
    tool: str
    argument: str
    rationale: str = ""


class ResearchPlan(BaseModel):
    hypothesis: str
    tool_calls: list[ToolCallRequest] = Field(default_factory=list)


class EvidenceFinding(BaseModel):
    source: str
    summary: str
    succeeded: bool = True
    error: str = ""


class InvestigationResult(BaseModel):
    hypothesis: str
    findings: list[EvidenceFinding] = Field(default_factory=list)

    @property
    def successful_findings(self) -> list[EvidenceFinding]:
        return [item for item in self.findings if item.succeeded]


class EngineerBrief(BaseModel):
    summary: str
    symptoms: list[str] = Field(default_factory=list)
    likely_causes: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)


class ResponseResult(BaseModel):
    follow_up_questions: list[str] = Field(default_factory=list)
    is_actionable: bool = False
    brief: EngineerBrief | None = None
    reasoning: str = ""


class OffTopicAssessment(BaseModel):
    off_topic: bool
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str = ""
    suggested_action: str = ""


class AgentConfig(BaseModel):
    """Runtime config for one agent role."""

    model_config = ConfigDict(protected_namespaces=())

    stage: str
    role: str
    model_tier: str
    temperature: float = 0.0
    max_completion_tokens: int = Field(default=1_200, gt=0)
    instructions: str


# ---------------------------------------------------------------------------
# Per-event run context (never persisted)
# ---------------------------------------------------------------------------


class OrchestratorAction(str, Enum):
    ASK_FOLLOW_UP = "ask_follow_up"
    FINALIZE = "finalize"
    ESCALATE = "escalate"
    CONTINUE_LOOP = "continue_loop"


class ReplyKind(str, Enum):
    FOLLOW_UP = "follow_up"
    FINAL_BRIEF = "final_brief"
    ESCALATION = "escalation"
    STOP_ACK = "stop_ack"
    OFF_TOPIC = "off_topic"
    CONFLICT = "conflict"


@dataclass
class ScoringResult:
    category: str
    score: int
    threshold: int
    is_actionable: bool
    missing_fields: list[str] = field(default_factory=list)
    invalid_fields: list[str] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)


@dataclass
class OrchestratorDecision:
    action: OrchestratorAction
    reasoning: str
    fields_to_ask: list[str] = field(default_factory=list)
    questions: list[str] = field(default_factory=list)


@dataclass
class EscalationSummary:
    collected: str
    missing: str
    findings: str
    critique_notes: str


@dataclass
class RunContext:
    """Mutable context owned by exactly one in-flight event."""

    event: IssueEvent
    now: datetime = field(default_factory=utc_now)
    state: ConversationState | None = None
    state_comment_id: int | None = None
    is_new_state: bool = False
    participant: str = ""
    commands: CommandInfo = field(default_factory=CommandInfo)
    redacted_issue_body: str = ""
    redacted_comment: str = ""
    should_stop: bool = False
    silent_stop: bool = False
    stop_reason: str = ""
    should_escalate: bool = False
    is_disagreement: bool = False
    override_pass: bool = False
    off_topic: OffTopicAssessment | None = None
    turn_started: bool = False
    passes_this_event: int = 0
    triage: TriageResult | None = None
    investigation: InvestigationResult | None = None
    response: ResponseResult | None = None
    critiques: dict[str, CritiqueResult] = field(default_factory=dict)
    phase_failures: list[str] = field(default_factory=list)
    scoring: ScoringResult | None = None
    decision: OrchestratorDecision | None = None
    reply_kind: ReplyKind | None = None
    reply_text: str = ""
    posted_comment_id: int | None = None
    reply_posted: bool = False
    state_conflict: bool = False
    path: list[str] = field(default_factory=list)
    error: str = ""

    @property
    def conversation(self) -> UserConversation | None:
        if self.state is None or not self.participant:
            return None
        return self.state.find_conversation(self.participant)

    @property
    def phase_failed(self) -> bool:
        return bool(self.phase_failures)
