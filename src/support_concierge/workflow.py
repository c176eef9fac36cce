from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from .agent_runtime import RoleAgentRuntime
from .agents import CriticAgent, OffTopicAgent, ResearchAgent, ResponseAgent, TriageAgent
from .comments import CommentComposer
from .graph import Workflow, WorkflowBuilder
from .guardrails import GuardrailGate, strip_commands
from .issue_tracker import IssueTrackerClient
from .llm import LanguageModel, PhaseFailure
from .models import (
    ConversationState,
    IssueEvent,
    OrchestratorAction,
    OrchestratorDecision,
    ReplyKind,
    RunContext,
    SharedFinding,
    utc_now,
)
from .orchestrator import Orchestrator
from .quality_gate import QualityGateLoop
from .redaction import SecretRedactor
from .scoring import CompletenessScorer
from .settings import RuntimeSettings
from .spec_pack import SpecPack, load_spec_pack
from .state_codec import StateCodec
from .tools import ToolRegistry, build_evidence_tools

logger = logging.getLogger(__name__)

SUPPORTED_ACTIONS: dict[str, frozenset[str]] = {
    "issues": frozenset({"opened", "reopened"}),
    "issue_comment": frozenset({"created"}),
}
_ROUTED_REPLIES = frozenset({ReplyKind.FINAL_BRIEF, ReplyKind.ESCALATION, ReplyKind.CONFLICT})
_FINDING_CHARS = 300


class SupportConciergeWorkflow:
    """Wires guardrails, gated phases and the orchestrator into one per-event graph.

    ``parse_event -> load_state -> guardrails -> off_topic_check -> begin_turn ->
    triage -> research -> response -> orchestrate -> compose_reply -> persist_reply
    -> apply_routing``, with branches for stop acknowledgements, off-topic
    redirects, forced escalation, phase failures and a single loop-back edge from
    ``orchestrate`` to ``triage``.
    """

    def __init__(
        self,
        *,
        settings: RuntimeSettings,
        tracker: IssueTrackerClient,
        llm: LanguageModel,
        runtime: RoleAgentRuntime | None = None,
        spec_pack: SpecPack | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.tracker = tracker
        self.llm = llm
        self.runtime = runtime if runtime is not None else RoleAgentRuntime(settings=settings)
        self.runtime.require_roles()
        self.spec_pack = spec_pack if spec_pack is not None else load_spec_pack(settings.spec_pack_file())
        self.clock = clock

        self.codec = StateCodec(
            compression_threshold_bytes=settings.compression_threshold_bytes,
            max_asked_fields=settings.max_asked_fields,
        )
        self.gate = GuardrailGate(settings)
        self.orchestrator = Orchestrator(settings=settings, spec_pack=self.spec_pack)
        self.scorer = CompletenessScorer(self.spec_pack.validators)
        self.redactor = SecretRedactor(self.spec_pack.validators.secret_patterns)
        self.composer = CommentComposer(
            max_user_loops=settings.max_user_loops,
            escalation_mentions=self.spec_pack.routing.escalation_mentions,
        )

        agent_kwargs = {"runtime": self.runtime, "llm": llm, "settings": settings}
        self.critic = CriticAgent(**agent_kwargs)
        self.off_topic_agent = OffTopicAgent(**agent_kwargs)
        self.triage_gate = self._gate("triage", TriageAgent(spec_pack=self.spec_pack, **agent_kwargs))
        self.response_gate = self._gate("response", ResponseAgent(**agent_kwargs))
        self._research_gates: dict[tuple[str, int], QualityGateLoop] = {}
        self._agent_kwargs = agent_kwargs

        self.workflow = self._build_workflow()

    def _gate(self, phase: str, agent: TriageAgent | ResearchAgent | ResponseAgent) -> QualityGateLoop:
        return QualityGateLoop(
            phase=phase,
            agent=agent,
            critic=self.critic,
            threshold=self.settings.threshold_for(phase),
            max_refinements=self.settings.max_refinements,
        )

    def _research_gate(self, event: IssueEvent) -> QualityGateLoop:
        key = (event.repository.full_name, event.issue.number)
        if key not in self._research_gates:
            tools = build_evidence_tools(self.tracker, event.repository, current_issue=event.issue.number)
            agent = ResearchAgent(registry=ToolRegistry(tools), **self._agent_kwargs)
            self._research_gates[key] = self._gate("research", agent)
        return self._research_gates[key]

    def _build_workflow(self) -> Workflow[RunContext]:
        max_user_loops = self.settings.max_user_loops
        max_passes = self.settings.max_passes_per_event

        def loop_back(ctx: RunContext) -> bool:
            conversation = ctx.conversation
            return (
                ctx.decision is not None
                and ctx.decision.action is OrchestratorAction.CONTINUE_LOOP
                and ctx.passes_this_event < max_passes
                and conversation is not None
                and conversation.loop_count < max_user_loops
            )

        builder: WorkflowBuilder[RunContext] = WorkflowBuilder(start="parse_event")
        builder.add_node("parse_event", self.parse_event)
        builder.add_node("load_state", self.load_state)
        builder.add_node("guardrails", self.guardrails)
        builder.add_node("ack_stop", self.ack_stop)
        builder.add_node("off_topic_check", self.off_topic_check)
        builder.add_node("begin_turn", self.begin_turn)
        builder.add_node("triage", self.triage)
        builder.add_node("research", self.research)
        builder.add_node("response", self.response)
        builder.add_node("orchestrate", self.orchestrate)
        builder.add_node("compose_reply", self.compose_reply)
        builder.add_node("persist_reply", self.persist_reply)
        builder.add_node("apply_routing", self.apply_routing)

        builder.add_edge("parse_event", "load_state", when=lambda ctx: not ctx.should_stop)
        builder.add_edge("load_state", "guardrails")
        builder.add_edge("guardrails", "ack_stop", when=lambda ctx: ctx.should_stop and not ctx.silent_stop)
        builder.add_edge("guardrails", "orchestrate", when=lambda ctx: ctx.should_escalate, label="forced_escalation")
        builder.add_edge("guardrails", "off_topic_check", when=lambda ctx: not ctx.should_stop)
        builder.add_edge("ack_stop", "persist_reply")
        builder.add_edge("off_topic_check", "persist_reply", when=lambda ctx: ctx.reply_kind is ReplyKind.OFF_TOPIC)
        builder.add_edge("off_topic_check", "begin_turn")
        builder.add_edge("begin_turn", "triage")
        builder.add_edge("triage", "orchestrate", when=lambda ctx: ctx.phase_failed, label="phase_failure")
        builder.add_edge("triage", "research")
        builder.add_edge("research", "orchestrate", when=lambda ctx: ctx.phase_failed, label="phase_failure")
        builder.add_edge("research", "response")
        builder.add_edge("response", "orchestrate")
        builder.add_edge("orchestrate", "triage", when=loop_back, label="loop_back")
        builder.add_edge("orchestrate", "compose_reply")
        builder.add_edge("compose_reply", "persist_reply")
        builder.add_edge("persist_reply", "apply_routing", when=lambda ctx: ctx.reply_kind in _ROUTED_REPLIES)
        return builder.build(recursion_limit=self.settings.recursion_limit)

    # -- nodes ---------------------------------------------------------------

    async def parse_event(self, ctx: RunContext) -> None:
        event = ctx.event
        supported = SUPPORTED_ACTIONS.get(event.event_name)
        if supported is None or (event.action and event.action not in supported):
            ctx.should_stop = True
            ctx.silent_stop = True
            ctx.stop_reason = f"unsupported_event:{event.event_name}/{event.action}"
            logger.info("Ignoring %s event with action '%s'", event.event_name, event.action)
            return
        ctx.redacted_issue_body = self.redactor.redact_text(event.issue.body)
        if event.comment is not None:
            ctx.redacted_comment = self.redactor.redact_text(event.comment.body)
        logger.info(
            "Processing %s/%s on %s#%d by %s",
            event.event_name,
            event.action or "-",
            event.repository.full_name,
            event.issue.number,
            event.author,
        )

    async def load_state(self, ctx: RunContext) -> None:
        event = ctx.event
        comments = await self.tracker.get_comments(event.repository, event.issue.number)
        state, comment_id = self.codec.find_latest_state(comments, self.settings.bot_username)
        if state is None:
            ctx.state = ConversationState.create_initial(category="", issue_author=event.issue.author, now=ctx.now)
            ctx.is_new_state = True
            logger.info("No prior state on %s#%d; starting fresh", event.repository.full_name, event.issue.number)
            return
        if not state.issue_author:
            state.issue_author = event.issue.author
        if state.brief_iteration_count > 0 and state.brief_comment_id is None:
            state.brief_comment_id = comment_id
        ctx.state = state
        ctx.state_comment_id = comment_id
        logger.info(
            "Loaded state from comment %s: %d participant(s), category=%s",
            comment_id,
            len(state.user_conversations),
            state.category or "-",
        )

    async def guardrails(self, ctx: RunContext) -> None:
        decision = self.gate.evaluate(ctx.event, ctx.state)
        ctx.participant = decision.participant
        ctx.commands = decision.commands
        ctx.should_stop = decision.should_stop
        ctx.silent_stop = decision.silent
        ctx.stop_reason = decision.stop_reason
        ctx.should_escalate = decision.should_escalate
        ctx.is_disagreement = decision.is_disagreement
        ctx.override_pass = decision.is_disagreement

    async def ack_stop(self, ctx: RunContext) -> None:
        self.gate.apply_stop(ctx.state, ctx.participant, ctx.now)
        ctx.reply_kind = ReplyKind.STOP_ACK
        ctx.reply_text = self.composer.stop_acknowledgement(ctx.participant)

    async def off_topic_check(self, ctx: RunContext) -> None:
        if not ctx.event.is_comment_event or ctx.is_disagreement:
            return
        remaining = strip_commands(ctx.redacted_comment)
        if ctx.commands.has_diagnose_command and not remaining:
            return
        try:
            assessment = await self.off_topic_agent.assess(ctx, remaining or ctx.redacted_comment)
        except PhaseFailure as exc:
            logger.warning("Off-topic check failed; treating comment as on-topic: %s", exc)
            return
        ctx.off_topic = assessment
        if not assessment.off_topic or assessment.confidence < self.settings.off_topic_confidence:
            return
        conversation = ctx.state.ensure_conversation(ctx.participant, ctx.now)
        conversation.record_off_topic_strike(ctx.now, block_after=self.settings.off_topic_block_strikes)
        ctx.state.last_updated = ctx.now
        logger.info(
            "Off-topic comment from %s (confidence %.2f, strikes %d)",
            ctx.participant,
            assessment.confidence,
            conversation.off_topic_strike_count,
        )
        ctx.reply_kind = ReplyKind.OFF_TOPIC
        ctx.reply_text = self.composer.off_topic_redirect(
            ctx.participant,
            ctx.event.issue.title,
            assessment,
            blocked=conversation.is_off_topic_blocked,
        )

    async def begin_turn(self, ctx: RunContext) -> None:
        if ctx.turn_started:
            return
        conversation = ctx.state.ensure_conversation(ctx.participant, ctx.now)
        conversation.begin_turn(ctx.now)
        ctx.state.last_updated = ctx.now
        ctx.turn_started = True
        logger.info("Turn %d for %s", conversation.loop_count, ctx.participant)

    async def triage(self, ctx: RunContext) -> None:
        ctx.passes_this_event += 1
        try:
            outcome = await self.triage_gate.run(ctx)
        except PhaseFailure as exc:
            ctx.phase_failures.append(f"triage: {exc}")
            logger.error("Triage failed: %s", exc)
            return
        ctx.triage = outcome.result
        category = self.spec_pack.normalize_category(outcome.result.category)
        checklist = self.spec_pack.checklist_for(category)
        ctx.scoring = self.scorer.score(outcome.result.fields_dict(), checklist)
        logger.info(
            "Triage: category=%s completeness=%d/%d missing=%s",
            category,
            ctx.scoring.score,
            ctx.scoring.threshold,
            ctx.scoring.missing_fields,
        )

    async def research(self, ctx: RunContext) -> None:
        try:
            outcome = await self._research_gate(ctx.event).run(ctx)
        except PhaseFailure as exc:
            ctx.phase_failures.append(f"research: {exc}")
            logger.error("Research failed: %s", exc)
            return
        ctx.investigation = outcome.result
        category = ctx.scoring.category if ctx.scoring is not None else ""
        findings = [
            SharedFinding(
                discovered_by=ctx.participant,
                discovered_at=ctx.now,
                category=category,
                finding=f"{item.source}: {item.summary[:_FINDING_CHARS]}",
            )
            for item in outcome.result.successful_findings
        ]
        added = ctx.state.add_findings(findings)
        logger.info("Research recorded %d new shared finding(s)", added)

    async def response(self, ctx: RunContext) -> None:
        try:
            outcome = await self.response_gate.run(ctx)
        except PhaseFailure as exc:
            ctx.phase_failures.append(f"response: {exc}")
            logger.error("Response generation failed: %s", exc)
            return
        ctx.response = outcome.result

    async def orchestrate(self, ctx: RunContext) -> None:
        decision = self.orchestrator.decide(ctx)
        if decision.action is OrchestratorAction.CONTINUE_LOOP:
            ctx.decision = decision
            logger.info("Continuing with internal pass %d for %s", ctx.passes_this_event + 1, ctx.participant)
            return
        self.orchestrator.apply(ctx, decision)

    async def compose_reply(self, ctx: RunContext) -> None:
        decision = ctx.decision
        if decision is None or decision.action is OrchestratorAction.CONTINUE_LOOP:
            decision = OrchestratorDecision(OrchestratorAction.ESCALATE, "Internal pass limit reached")
            self.orchestrator.apply(ctx, decision)
        conversation = ctx.conversation
        if decision.action is OrchestratorAction.ASK_FOLLOW_UP:
            ctx.reply_kind = ReplyKind.FOLLOW_UP
            loop_count = conversation.loop_count if conversation is not None else 0
            ctx.reply_text = self.composer.follow_up(ctx.participant, decision.questions, loop_count)
        elif decision.action is OrchestratorAction.FINALIZE:
            ctx.reply_kind = ReplyKind.FINAL_BRIEF
            ctx.reply_text = self.composer.final_brief(
                ctx.participant,
                category=ctx.state.category,
                brief=ctx.response.brief if ctx.response is not None else None,
                scoring=ctx.scoring,
            )
        else:
            ctx.reply_kind = ReplyKind.ESCALATION
            summary = self.orchestrator.build_escalation_summary(ctx)
            ctx.reply_text = self.composer.escalation(ctx.participant, summary, decision.reasoning)

    async def persist_reply(self, ctx: RunContext) -> None:
        """Post the reply with the updated state, unless another event saved state first."""
        if not ctx.reply_text:
            return
        event = ctx.event
        comments = await self.tracker.get_comments(event.repository, event.issue.number)
        _, latest_id = self.codec.find_latest_state(comments, self.settings.bot_username)
        if latest_id != ctx.state_comment_id:
            ctx.state_conflict = True
            ctx.reply_kind = ReplyKind.CONFLICT
            ctx.reply_text = self.composer.conflict_notice()
            logger.warning(
                "State on %s#%d changed during this run (loaded %s, now %s); not persisting",
                event.repository.full_name,
                event.issue.number,
                ctx.state_comment_id,
                latest_id,
            )
            ctx.posted_comment_id = await self.tracker.post_comment(event.repository, event.issue.number, ctx.reply_text)
            ctx.reply_posted = True
            return

        state = self.codec.prune(ctx.state)
        state.last_updated = ctx.now
        body = self.codec.encode(ctx.reply_text, state)
        ctx.posted_comment_id = await self.tracker.post_comment(event.repository, event.issue.number, body)
        ctx.reply_posted = True
        logger.info(
            "Posted %s reply for %s (comment id %s)",
            ctx.reply_kind.value if ctx.reply_kind else "-",
            ctx.participant,
            ctx.posted_comment_id if ctx.posted_comment_id is not None else "suppressed",
        )

    async def apply_routing(self, ctx: RunContext) -> None:
        event = ctx.event
        if ctx.reply_kind is ReplyKind.FINAL_BRIEF:
            route = self.spec_pack.route_for(ctx.state.category)
            if route is None:
                return
            await self.tracker.add_labels(event.repository, event.issue.number, route.labels)
            await self.tracker.add_assignees(event.repository, event.issue.number, route.assignees)
            return
        await self.tracker.add_labels(event.repository, event.issue.number, self.spec_pack.routing.escalation_labels)

    # -- entry point ---------------------------------------------------------

    async def run(self, event: IssueEvent) -> RunContext:
        """Process one event end to end.

        Unexpected failures are logged and, if nothing was posted yet, reported on
        the issue as an escalation without a state block, so the next event
        resumes from the last good state.
        """
        ctx = RunContext(event=event, now=self.clock())
        try:
            ctx.path = await self.workflow.run(ctx, timeout=self.settings.event_timeout_seconds)
        except Exception as exc:
            ctx.error = f"{type(exc).__name__}: {exc}"
            logger.exception("Processing %s#%d failed", event.repository.full_name, event.issue.number)
            if not ctx.reply_posted and not ctx.silent_stop:
                await self._report_failure(ctx)
        return ctx

    async def _report_failure(self, ctx: RunContext) -> None:
        event = ctx.event
        summary = self.orchestrator.build_escalation_summary(ctx)
        body = self.composer.escalation(ctx.participant or event.author, summary, "Automated processing failed")
        try:
            ctx.posted_comment_id = await self.tracker.post_comment(event.repository, event.issue.number, body)
            ctx.reply_posted = True
            ctx.reply_kind = ReplyKind.ESCALATION
            await self.tracker.add_labels(
                event.repository, event.issue.number, self.spec_pack.routing.escalation_labels
            )
        except Exception:
            logger.exception("Could not report failure on %s#%d", event.repository.full_name, event.issue.number)
