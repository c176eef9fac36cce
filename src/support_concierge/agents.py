from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import BaseModel

from .agent_runtime import RoleAgentRuntime
from .llm import LanguageModel, LlmRequest, invoke_structured
from .models import (
    CritiqueResult,
    InvestigationResult,
    OffTopicAssessment,
    ResearchPlan,
    ResponseResult,
    RunContext,
    TriageResult,
)
from .settings import RuntimeSettings
from .spec_pack import SpecPack
from .tools import ToolRegistry

logger = logging.getLogger(__name__)

_MAX_TOOL_CALLS = 3


def _critique_feedback(critique: CritiqueResult) -> str:
    lines = [f"A reviewer scored the previous attempt {critique.score}/10: {critique.reasoning}"]
    for issue in critique.issues:
        lines.append(f"- [{issue.category}, severity {issue.severity}] {issue.problem} -> {issue.suggestion}")
    for suggestion in critique.suggestions:
        lines.append(f"- {suggestion}")
    lines.append("Produce an improved answer that addresses this feedback.")
    return "\n".join(lines)


def _ticket_block(ctx: RunContext) -> str:
    """Ticket title, redacted body and the participant's current comment, never prior bot text."""
    parts = [
        f"Ticket #{ctx.event.issue.number}: {ctx.event.issue.title}",
        f"Reported by: {ctx.event.issue.author}",
        "Ticket body:",
        ctx.redacted_issue_body or "(empty)",
    ]
    if ctx.event.is_comment_event:
        parts.extend([f"Latest comment from {ctx.participant}:", ctx.redacted_comment or "(empty)"])
    return "\n".join(parts)


class RoleAgent:
    """Base for agents that answer through one configured role."""

    role: str = ""

    def __init__(self, *, runtime: RoleAgentRuntime, llm: LanguageModel, settings: RuntimeSettings) -> None:
        self.runtime = runtime
        self.llm = llm
        self.settings = settings

    async def _ask(self, schema: type[BaseModel], user_prompt: str) -> Any:
        request = LlmRequest(
            role=self.role,
            system_prompt=self.runtime.system_prompt(self.role),
            user_prompt=user_prompt,
            schema=schema,
        )
        return await invoke_structured(self.llm, request, timeout=self.settings.llm_timeout_seconds)


class TriageAgent(RoleAgent):
    role = "triage"

    def __init__(self, *, spec_pack: SpecPack, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.spec_pack = spec_pack

    def _prompt(self, ctx: RunContext) -> str:
        categories = "\n".join(f"- {item.name}: {item.description}" for item in self.spec_pack.categories)
        checklists = "\n".join(
            f"- {name}: {', '.join(field.name for field in checklist.required_fields)}"
            for name, checklist in self.spec_pack.checklists.items()
        )
        known = ""
        if ctx.state is not None and ctx.state.category:
            known = f"\nPreviously assigned category: {ctx.state.category}"
        return (
            f"Categories:\n{categories}\n\nChecklist fields per category:\n{checklists}{known}\n\n"
            f"{_ticket_block(ctx)}"
        )

    async def generate(self, ctx: RunContext) -> TriageResult:
        return await self._ask(TriageResult, self._prompt(ctx))

    async def refine(self, ctx: RunContext, candidate: TriageResult, critique: CritiqueResult) -> TriageResult:
        prompt = (
            f"{self._prompt(ctx)}\n\nPrevious attempt:\n{candidate.model_dump_json()}\n\n"
            f"{_critique_feedback(critique)}"
        )
        return await self._ask(TriageResult, prompt)


class ResearchAgent(RoleAgent):
    """Plans tool calls with the model, then executes them through the registry."""

    role = "research"

    def __init__(self, *, registry: ToolRegistry, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.registry = registry

    def _prompt(self, ctx: RunContext) -> str:
        triage = ctx.triage.model_dump_json() if ctx.triage is not None else "{}"
        known = ""
        if ctx.state is not None and ctx.state.shared_findings:
            known = "\nAlready known findings:\n" + "\n".join(f"- {item.finding}" for item in ctx.state.shared_findings[-5:])
        return (
            f"Available tools:\n{self.registry.describe()}\n\nTriage: {triage}{known}\n\n{_ticket_block(ctx)}"
        )

    async def _investigate(self, plan: ResearchPlan) -> InvestigationResult:
        findings = await self.registry.execute_all(plan.tool_calls, limit=_MAX_TOOL_CALLS)
        failed = sum(1 for item in findings if not item.succeeded)
        if failed:
            logger.info("%d of %d research tool calls failed; continuing with partial evidence", failed, len(findings))
        return InvestigationResult(hypothesis=plan.hypothesis, findings=findings)

    async def generate(self, ctx: RunContext) -> InvestigationResult:
        plan: ResearchPlan = await self._ask(ResearchPlan, self._prompt(ctx))
        return await self._investigate(plan)

    async def refine(
        self, ctx: RunContext, candidate: InvestigationResult, critique: CritiqueResult
    ) -> InvestigationResult:
        prompt = (
            f"{self._prompt(ctx)}\n\nPrevious investigation:\n{candidate.model_dump_json()}\n\n"
            f"{_critique_feedback(critique)}"
        )
        plan: ResearchPlan = await self._ask(ResearchPlan, prompt)
        return await self._investigate(plan)


class ResponseAgent(RoleAgent):
    role = "response"

    def _prompt(self, ctx: RunContext) -> str:
        scoring = ctx.scoring
        missing = ", ".join(scoring.missing_fields + scoring.invalid_fields) if scoring else ""
        asked = ", ".join(ctx.conversation.asked_fields) if ctx.conversation is not None else ""
        evidence = ""
        if ctx.investigation is not None:
            evidence = "\n".join(
                f"- {item.source}: {item.summary[:400]}" for item in ctx.investigation.successful_findings
            )
        payload = {
            "category": ctx.triage.category if ctx.triage else "",
            "extracted_fields": ctx.triage.fields_dict() if ctx.triage else {},
            "completeness_score": scoring.score if scoring else 0,
            "completeness_threshold": scoring.threshold if scoring else 0,
            "hypothesis": ctx.investigation.hypothesis if ctx.investigation else "",
        }
        return (
            f"Triage summary: {json.dumps(payload, sort_keys=True)}\n"
            f"Missing or invalid fields: {missing or 'none'}\n"
            f"Fields already asked of {ctx.participant}: {asked or 'none'}\n"
            f"Evidence:\n{evidence or '(none)'}\n\n{_ticket_block(ctx)}"
        )

    async def generate(self, ctx: RunContext) -> ResponseResult:
        return await self._ask(ResponseResult, self._prompt(ctx))

    async def refine(self, ctx: RunContext, candidate: ResponseResult, critique: CritiqueResult) -> ResponseResult:
        prompt = (
            f"{self._prompt(ctx)}\n\nPrevious draft:\n{candidate.model_dump_json()}\n\n{_critique_feedback(critique)}"
        )
        return await self._ask(ResponseResult, prompt)


class CriticAgent(RoleAgent):
    """Scores phase output; pass/fail is decided here against the phase threshold, not by the model."""

    role = "critic"

    async def critique(self, phase: str, candidate: BaseModel, ctx: RunContext) -> CritiqueResult:
        threshold = self.settings.threshold_for(phase)
        prompt = (
            f"Phase under review: {phase} (passing score {threshold}/10)\n"
            f"Candidate:\n{candidate.model_dump_json()}\n\n{_ticket_block(ctx)}"
        )
        result: CritiqueResult = await self._ask(CritiqueResult, prompt)
        result.is_passable = result.score >= threshold
        return result


class OffTopicAgent(RoleAgent):
    role = "off_topic"

    async def assess(self, ctx: RunContext, text: str) -> OffTopicAssessment:
        category = ctx.state.category if ctx.state is not None and ctx.state.category else "unknown"
        prompt = (
            f"Ticket #{ctx.event.issue.number}: {ctx.event.issue.title}\n"
            f"Ticket category: {category}\n"
            f"Ticket body:\n{ctx.redacted_issue_body or '(empty)'}\n\n"
            f"Comment from {ctx.participant}:\n{text}"
        )
        return await self._ask(OffTopicAssessment, prompt)
