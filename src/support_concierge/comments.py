from __future__ import annotations

from .models import EngineerBrief, EscalationSummary, OffTopicAssessment, ScoringResult

_INTERACTION_HELP = (
    "**How to interact with me:**\n"
    "- Reply to this comment with your answers\n"
    "- Comment `/diagnose` to have me look at your own report on this issue\n"
    "- Comment `/stop` if you do not want further questions"
)


def _bullets(items: list[str], empty: str = "_none recorded_") -> str:
    cleaned = [item.strip() for item in items if item and item.strip()]
    if not cleaned:
        return empty
    return "\n".join(f"- {item}" for item in cleaned)


class CommentComposer:
    """Builds the visible part of every bot reply. The state block is appended separately."""

    def __init__(self, *, max_user_loops: int, escalation_mentions: list[str] | None = None) -> None:
        self.max_user_loops = max_user_loops
        self.escalation_mentions = list(escalation_mentions or [])

    def follow_up(self, participant: str, questions: list[str], loop_count: int) -> str:
        numbered = "\n".join(f"{index}. {question}" for index, question in enumerate(questions, start=1))
        return (
            f"@{participant}\n\n"
            "Thanks for the report. I need a bit more information to move this forward:\n\n"
            f"{numbered}\n\n---\n\n{_INTERACTION_HELP}\n\n"
            f"_Loop {loop_count} of {self.max_user_loops}. "
            f"A maintainer takes over if the issue is still unclear after {self.max_user_loops} loops._"
        )

    def final_brief(
        self,
        participant: str,
        *,
        category: str,
        brief: EngineerBrief | None,
        scoring: ScoringResult | None,
    ) -> str:
        score_line = f"Completeness: {scoring.score}/100" if scoring is not None else "Completeness: not scored"
        if brief is None:
            body = "_No brief was generated; the collected details above are ready for a maintainer._"
        else:
            body = (
                f"**Summary:** {brief.summary}\n\n"
                f"**Symptoms**\n{_bullets(brief.symptoms)}\n\n"
                f"**Likely causes**\n{_bullets(brief.likely_causes)}\n\n"
                f"**Next steps**\n{_bullets(brief.next_steps)}"
            )
        return (
            f"@{participant}\n\n"
            "Thanks, I have everything I need. Here is the brief for the maintainers.\n\n"
            f"### Engineer brief ({category or 'uncategorized'})\n\n{body}\n\n"
            f"_{score_line}_\n\n"
            "If this does not match what you are seeing, reply and tell me what is different."
        )

    def escalation(self, participant: str, summary: EscalationSummary, reason: str) -> str:
        mentions = " ".join(f"@{name.lstrip('@')}" for name in self.escalation_mentions)
        heading = f"{mentions}\n\n" if mentions else ""
        return (
            f"{heading}@{participant}\n\n"
            "I could not resolve this automatically, so I'm handing it to a maintainer for review.\n\n"
            f"_Reason: {reason}_\n\n"
            "**Escalation summary**\n"
            f"- Collected: {summary.collected}\n"
            f"- Missing: {summary.missing}\n"
            f"- Findings: {summary.findings}\n"
            f"- Review notes: {summary.critique_notes}\n\n"
            "If you have more details, add them in a comment below."
        )

    @staticmethod
    def stop_acknowledgement(participant: str) -> str:
        return (
            f"@{participant}\n\n"
            "Understood. I won't ask you any more questions on this issue.\n\n"
            "Other participants can still ask for help by commenting `/diagnose`."
        )

    @staticmethod
    def off_topic_redirect(participant: str, issue_title: str, assessment: OffTopicAssessment, *, blocked: bool) -> str:
        lines = [
            f"@{participant}",
            "",
            f"This comment looks unrelated to this issue ({issue_title or 'this issue'}).",
        ]
        if assessment.reason.strip():
            lines.extend(["", f"**Why:** {assessment.reason.strip()}"])
        if assessment.suggested_action.strip():
            lines.extend(["", f"**Suggestion:** {assessment.suggested_action.strip()}"])
        lines.extend(["", "Please open a new issue for a different topic so this thread stays focused."])
        if blocked:
            lines.extend(["", "**Note:** this is the second unrelated comment, so I won't respond to you here again."])
        return "\n".join(lines)

    def conflict_notice(self) -> str:
        mentions = " ".join(f"@{name.lstrip('@')}" for name in self.escalation_mentions)
        prefix = f"{mentions}\n\n" if mentions else ""
        return (
            f"{prefix}Another update to this issue was processed while I was working on this one, "
            "so I did not save my progress to avoid overwriting it. A maintainer should take a look."
        )
