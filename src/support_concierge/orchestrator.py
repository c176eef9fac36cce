from __future__ import annotations

import logging

from .models import (
    EscalationSummary,
    OrchestratorAction,
    OrchestratorDecision,
    RunContext,
)
from .scoring import CompletenessScorer
from .settings import RuntimeSettings
from .spec_pack import SpecPack

logger = logging.getLogger(__name__)

NO_DATA = "no data"
MAX_QUESTIONS = 3


class Orchestrator:
    """Chooses exactly one next step for the acting participant after the phases run.

    Priority: ask follow-up questions while information is missing and loops
    remain, else finalize when actionable, else escalate when loops are spent
    or escalation was forced, else loop back for another internal pass.
    """

    def __init__(self, *, settings: RuntimeSettings, spec_pack: SpecPack) -> None:
        self.settings = settings
        self.spec_pack = spec_pack

    def unasked_missing_fields(self, ctx: RunContext) -> list[str]:
        if ctx.scoring is None:
            return []
        checklist = self.spec_pack.checklist_for(ctx.scoring.category)
        askable = CompletenessScorer.askable_fields(ctx.scoring, checklist)
        conversation = ctx.conversation
        if conversation is None:
            return askable
        return [name for name in askable if not conversation.has_asked(name)]

    def decide(self, ctx: RunContext) -> OrchestratorDecision:
        conversation = ctx.conversation
        loop_count = conversation.loop_count if conversation is not None else 0
        max_user_loops = self.settings.max_user_loops

        if ctx.should_escalate:
            return OrchestratorDecision(OrchestratorAction.ESCALATE, "Loop cap reached before this event")
        if ctx.phase_failed:
            return OrchestratorDecision(
                OrchestratorAction.ESCALATE,
                f"Phase failure: {'; '.join(ctx.phase_failures)}",
            )

        missing = self.unasked_missing_fields(ctx)
        if missing and loop_count < max_user_loops:
            fields_to_ask = missing[:MAX_QUESTIONS]
            return OrchestratorDecision(
                OrchestratorAction.ASK_FOLLOW_UP,
                f"Missing {', '.join(missing)} at loop {loop_count} of {max_user_loops}",
                fields_to_ask=fields_to_ask,
                questions=self._questions(ctx, fields_to_ask),
            )

        scoring_actionable = ctx.scoring.is_actionable if ctx.scoring is not None else False
        response_actionable = ctx.response.is_actionable if ctx.response is not None else False
        if scoring_actionable or response_actionable:
            return OrchestratorDecision(OrchestratorAction.FINALIZE, "Ticket is actionable")

        if loop_count >= max_user_loops:
            return OrchestratorDecision(
                OrchestratorAction.ESCALATE,
                f"Loop {loop_count} reached the limit of {max_user_loops} without an actionable result",
            )
        if ctx.override_pass:
            return OrchestratorDecision(
                OrchestratorAction.ESCALATE,
                "Extra pass after disagreement did not produce an actionable result",
            )
        if ctx.passes_this_event < self.settings.max_passes_per_event:
            return OrchestratorDecision(OrchestratorAction.CONTINUE_LOOP, "Nothing left to ask; trying another pass")
        return OrchestratorDecision(
            OrchestratorAction.ESCALATE,
            f"No actionable result after {ctx.passes_this_event} internal passes",
        )

    def _questions(self, ctx: RunContext, fields_to_ask: list[str]) -> list[str]:
        generated = [item.strip() for item in (ctx.response.follow_up_questions if ctx.response else []) if item.strip()]
        if generated:
            return generated[:MAX_QUESTIONS]
        category = ctx.scoring.category if ctx.scoring is not None else ""
        checklist = self.spec_pack.checklist_for(category)
        by_name = {field.name.lower(): field for field in checklist.required_fields}
        questions = []
        for name in fields_to_ask:
            required = by_name.get(name.lower())
            if required is not None and required.question:
                questions.append(required.question)
            else:
                questions.append(f"Could you share the {name.replace('_', ' ')}?")
        return questions

    def apply(self, ctx: RunContext, decision: OrchestratorDecision) -> None:
        """Record the decision's effect on the persisted state."""
        ctx.decision = decision
        state = ctx.state
        if state is None:
            return
        state.last_updated = ctx.now
        if ctx.triage is not None:
            state.category = self.spec_pack.normalize_category(ctx.triage.category)
        if ctx.scoring is not None:
            state.completeness_score = ctx.scoring.score
            state.is_actionable = state.is_actionable or ctx.scoring.is_actionable

        conversation = state.ensure_conversation(ctx.participant, ctx.now) if ctx.participant else None
        if decision.action is OrchestratorAction.ASK_FOLLOW_UP and conversation is not None:
            conversation.record_asked_fields(decision.fields_to_ask)
        elif decision.action is OrchestratorAction.FINALIZE:
            state.is_actionable = True
            state.brief_iteration_count += 1
            # The id of the comment about to be posted is unknown here; the next
            # event backfills it from the comment the state is loaded from.
            state.brief_comment_id = None
            if conversation is not None:
                conversation.finalize(ctx.now)
        elif decision.action is OrchestratorAction.ESCALATE and conversation is not None:
            conversation.is_exhausted = True
        logger.info("Orchestrator decision for %s: %s (%s)", ctx.participant, decision.action.value, decision.reasoning)

    def build_escalation_summary(self, ctx: RunContext) -> EscalationSummary:
        """Summarize collected and missing information for a human; every part degrades to 'no data'."""
        fields = ctx.triage.fields_dict() if ctx.triage is not None else {}
        collected = "; ".join(f"{name}: {value}" for name, value in fields.items() if value.strip())

        missing_names: list[str] = []
        if ctx.scoring is not None:
            missing_names = ctx.scoring.missing_fields + ctx.scoring.invalid_fields
        missing = ", ".join(missing_names)

        findings_source = ctx.state.shared_findings[-5:] if ctx.state is not None else []
        findings = "; ".join(item.finding for item in findings_source)

        notes = [
            f"{phase}: {issue.problem}"
            for phase, critique in sorted(ctx.critiques.items())
            for issue in critique.issues
        ]
        return EscalationSummary(
            collected=collected or NO_DATA,
            missing=missing or NO_DATA,
            findings=findings or NO_DATA,
            critique_notes="; ".join(notes) or NO_DATA,
        )
