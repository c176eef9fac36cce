"""Per-participant policy gate evaluated before any reply is generated.

Rules run in a fixed order and the first one that fires decides the outcome:

1. the bot's own comments are ignored,
2. the acting participant is the comment author (or ticket author on creation),
3. commands are read from the current event's own prose only: quoted
   replies and code are skipped,
4. participants outside the allow-list are ignored,
5. participants blocked for off-topic chatter are ignored,
6. ``/stop`` finalizes the participant and is acknowledged,
7. finalized participants are ignored unless they push back on the answer,
   which grants exactly one more pass even past the loop cap,
8. participants past the loop cap are escalated,
9. everything else proceeds into the generative phases.

Policy outcomes are returned as flags on a ``GuardrailDecision``; nothing here raises.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime

from .models import CommandInfo, ConversationState, IssueEvent
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

# A command must stand on its own: "/stop" in a URL or path is not a command.
_COMMAND_PATTERN = re.compile(r"(?<![\w/.:~-])/(?P<command>stop|diagnose)\b", re.IGNORECASE)
# Quoted replies and code carry other people's text, including the bot's own help.
_QUOTED_LINE = re.compile(r"^[ \t]*>.*$", re.MULTILINE)
_FENCED_CODE = re.compile(r"^[ \t]*(?P<fence>`{3,}|~{3,}).*?(?:^[ \t]*(?P=fence)[ \t]*$|\Z)", re.MULTILINE | re.DOTALL)
_INLINE_CODE = re.compile(r"(?P<ticks>`+).+?(?P=ticks)", re.DOTALL)

DISAGREEMENT_PHRASES: tuple[str, ...] = (
    "doesn't apply",
    "dont apply",
    "does not apply",
    "do not apply",
    "already tried",
    "already did",
    "already done",
    "didn't work",
    "did not work",
    "doesn't work",
    "does not work",
    "still broken",
    "still failing",
    "still see",
    "still getting",
    "not working",
    "not relevant",
    "not applicable",
    "different error",
    "different issue",
    "different problem",
    "need clarification",
    "not sure how",
    "unclear how",
    "not my case",
    "not my situation",
    "doesn't match",
    "disagree",
)


def command_text(text: str | None) -> str:
    """Return the participant's own prose with quoted lines and code removed."""
    cleaned = _FENCED_CODE.sub("", text or "")
    cleaned = _QUOTED_LINE.sub("", cleaned)
    return _INLINE_CODE.sub("", cleaned)


def parse_commands(text: str | None) -> CommandInfo:
    """Detect ``/stop`` and ``/diagnose`` in a single piece of text."""
    commands = {match.group("command").lower() for match in _COMMAND_PATTERN.finditer(command_text(text))}
    return CommandInfo(has_stop_command="stop" in commands, has_diagnose_command="diagnose" in commands)


def strip_commands(text: str | None) -> str:
    return _COMMAND_PATTERN.sub("", text or "").strip()


def is_disagreement(text: str | None) -> bool:
    """Keyword heuristic for a participant pushing back on a final answer."""
    if not text:
        return False
    lowered = text.lower().replace("’", "'")
    return any(phrase in lowered for phrase in DISAGREEMENT_PHRASES)


@dataclass
class GuardrailDecision:
    participant: str
    commands: CommandInfo
    allowed_users: set[str] = field(default_factory=set)
    should_stop: bool = False
    silent: bool = False
    stop_reason: str = ""
    should_escalate: bool = False
    is_disagreement: bool = False

    @property
    def proceed(self) -> bool:
        """True when the generative phases should run for this event."""
        return not self.should_stop and not self.should_escalate

    @property
    def acknowledge_stop(self) -> bool:
        return self.should_stop and not self.silent


class GuardrailGate:
    def __init__(self, settings: RuntimeSettings) -> None:
        self.settings = settings

    def evaluate(self, event: IssueEvent, state: ConversationState | None) -> GuardrailDecision:
        # 1. self-comment suppression, against the configured identity only
        if event.comment is not None and event.comment.author.lower() == self.settings.bot_username.lower():
            return self._silent_stop(
                GuardrailDecision(participant=event.comment.author, commands=CommandInfo()),
                "self_comment",
            )

        # 2-3. acting participant and commands from this turn's own text
        participant = event.author
        commands = parse_commands(event.current_text)
        decision = GuardrailDecision(participant=participant, commands=commands)

        # 4. allow-list
        allowed = set(state.allowed_users()) if state is not None else set()
        if event.issue.author:
            allowed.add(event.issue.author.lower())
        if commands.has_diagnose_command:
            allowed.add(participant.lower())
        decision.allowed_users = allowed
        if event.is_comment_event and participant.lower() not in allowed:
            return self._silent_stop(decision, "not_allowed")

        conversation = state.find_conversation(participant) if state is not None else None

        # 5. off-topic block
        if conversation is not None and (
            conversation.off_topic_strike_count >= self.settings.off_topic_block_strikes
            or conversation.is_off_topic_blocked
        ):
            return self._silent_stop(decision, "off_topic_blocked")

        # 6. stop command
        if commands.has_stop_command:
            decision.should_stop = True
            decision.stop_reason = "stop_command"
            logger.info("Participant %s issued /stop", participant)
            return decision

        # 7. finalized participant
        if conversation is not None and conversation.is_finalized:
            if not is_disagreement(event.current_text):
                return self._silent_stop(decision, "already_finalized")
            decision.is_disagreement = True
            logger.info("Disagreement from finalized participant %s; allowing one more pass", participant)
            return decision

        # 8. loop cap
        if conversation is not None and conversation.loop_count >= self.settings.max_loops:
            decision.should_escalate = True
            logger.info(
                "Participant %s reached loop cap (%d >= %d); escalating",
                participant,
                conversation.loop_count,
                self.settings.max_loops,
            )
            return decision

        # 9. proceed
        return decision

    def apply_stop(self, state: ConversationState, participant: str, now: datetime) -> None:
        """Finalize only the stopping participant; other conversations are untouched."""
        conversation = state.ensure_conversation(participant, now)
        conversation.last_interaction = now
        conversation.finalize(now)
        state.last_updated = now

    @staticmethod
    def _silent_stop(decision: GuardrailDecision, reason: str) -> GuardrailDecision:
        decision.should_stop = True
        decision.silent = True
        decision.stop_reason = reason
        logger.info("Guardrail stop for %s: %s", decision.participant or "<unknown>", reason)
        return decision
