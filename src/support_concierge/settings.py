from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off", ""})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation.

    Built once at process start and passed explicitly into the guardrails,
    orchestrator, codec and tracker client. Core logic never reads the
    environment itself.
    """

    bot_username: str = "github-actions[bot]"
    max_user_loops: int = 3
    max_loops: int = 4
    max_refinements: int = 1
    max_passes_per_event: int = 2
    max_asked_fields: int = 20
    compression_threshold_bytes: int = 2_000
    off_topic_block_strikes: int = 2
    off_topic_confidence: float = 0.75
    triage_threshold: int = 6
    research_threshold: int = 5
    response_threshold: int = 7
    dry_run: bool = False
    write_mode: bool = True
    llm_timeout_seconds: int = 60
    tracker_timeout_seconds: int = 20
    event_timeout_seconds: int = 300
    recursion_limit: int = 50
    spec_pack_path: str = ""
    model_frontier: str = "gpt-4o"
    model_efficient: str = "gpt-4o-mini"
    model_economy: str = "gpt-4o-mini"
    github_api_url: str = "https://api.github.com"

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            bot_username=os.getenv("SUPPORTBOT_USERNAME", "github-actions[bot]"),
            max_user_loops=_get_env_int("SUPPORTBOT_MAX_USER_LOOPS", default=3, minimum=1, maximum=20),
            max_loops=_get_env_int("SUPPORTBOT_MAX_LOOPS", default=4, minimum=1, maximum=21),
            max_refinements=_get_env_int("SUPPORTBOT_MAX_REFINEMENTS", default=1, minimum=0, maximum=1),
            max_passes_per_event=_get_env_int("SUPPORTBOT_MAX_PASSES_PER_EVENT", default=2, minimum=1, maximum=5),
            max_asked_fields=_get_env_int("SUPPORTBOT_MAX_ASKED_FIELDS", default=20, minimum=1),
            compression_threshold_bytes=_get_env_int("SUPPORTBOT_COMPRESSION_THRESHOLD", default=2_000, minimum=64),
            off_topic_block_strikes=_get_env_int("SUPPORTBOT_OFF_TOPIC_STRIKES", default=2, minimum=1, maximum=10),
            off_topic_confidence=_get_env_float("SUPPORTBOT_OFF_TOPIC_CONFIDENCE", default=0.75),
            triage_threshold=_get_env_int("SUPPORTBOT_TRIAGE_THRESHOLD", default=6, minimum=1, maximum=10),
            research_threshold=_get_env_int("SUPPORTBOT_RESEARCH_THRESHOLD", default=5, minimum=1, maximum=10),
            response_threshold=_get_env_int("SUPPORTBOT_RESPONSE_THRESHOLD", default=7, minimum=1, maximum=10),
            dry_run=_get_env_bool("SUPPORTBOT_DRY_RUN", default=False),
            write_mode=_get_env_bool("SUPPORTBOT_WRITE_MODE", default=True),
            llm_timeout_seconds=_get_env_int("SUPPORTBOT_LLM_TIMEOUT", default=60, minimum=1),
            tracker_timeout_seconds=_get_env_int("SUPPORTBOT_TRACKER_TIMEOUT", default=20, minimum=1),
            event_timeout_seconds=_get_env_int("SUPPORTBOT_EVENT_TIMEOUT", default=300, minimum=1),
            recursion_limit=_get_env_int("SUPPORTBOT_RECURSION_LIMIT", default=50, minimum=10),
            spec_pack_path=os.getenv("SUPPORTBOT_SPEC_PACK", ""),
            model_frontier=os.getenv("SUPPORTBOT_MODEL_FRONTIER", "gpt-4o"),
            model_efficient=os.getenv("SUPPORTBOT_MODEL_EFFICIENT", "gpt-4o-mini"),
            model_economy=os.getenv("SUPPORTBOT_MODEL_ECONOMY", "gpt-4o-mini"),
            github_api_url=os.getenv("GITHUB_API_URL", "https://api.github.com"),
        ).normalized()

    @property
    def writes_enabled(self) -> bool:
        """True when tracker writes actually reach the remote side."""
        return self.write_mode and not self.dry_run

    def spec_pack_file(self) -> Path | None:
        return Path(self.spec_pack_path) if self.spec_pack_path.strip() else None

    def threshold_for(self, phase: str) -> int:
        """Return the critique pass threshold for a generative phase."""
        thresholds = {
            "triage": self.triage_threshold,
            "research": self.research_threshold,
            "response": self.response_threshold,
        }
        if phase not in thresholds:
            raise ValueError(f"Unknown phase '{phase}'. Valid phases: {', '.join(sorted(thresholds))}")
        return thresholds[phase]

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        bot_username = self.bot_username.strip()
        if not bot_username:
            raise ValueError("SUPPORTBOT_USERNAME must be non-empty")

        for env_key, value in (
            ("SUPPORTBOT_MODEL_FRONTIER", self.model_frontier),
            ("SUPPORTBOT_MODEL_EFFICIENT", self.model_efficient),
            ("SUPPORTBOT_MODEL_ECONOMY", self.model_economy),
        ):
            if not value.strip():
                raise ValueError(f"{env_key} must be non-empty")

        # -- Loop bounds --
        if self.max_loops < self.max_user_loops:
            raise ValueError(
                f"SUPPORTBOT_MAX_LOOPS ({self.max_loops}) must be >= "
                f"SUPPORTBOT_MAX_USER_LOOPS ({self.max_user_loops})"
            )
        if self.max_refinements not in (0, 1):
            raise ValueError(f"SUPPORTBOT_MAX_REFINEMENTS must be 0 or 1, got: {self.max_refinements}")

        # -- Timeouts --
        if self.llm_timeout_seconds >= self.event_timeout_seconds:
            raise ValueError("SUPPORTBOT_LLM_TIMEOUT must be shorter than SUPPORTBOT_EVENT_TIMEOUT")
        if self.tracker_timeout_seconds >= self.event_timeout_seconds:
            raise ValueError("SUPPORTBOT_TRACKER_TIMEOUT must be shorter than SUPPORTBOT_EVENT_TIMEOUT")

        if not 0.0 <= self.off_topic_confidence <= 1.0:
            raise ValueError(
                f"SUPPORTBOT_OFF_TOPIC_CONFIDENCE must be within [0, 1], got: {self.off_topic_confidence}"
            )

        return RuntimeSettings(
            bot_username=bot_username,
            max_user_loops=self.max_user_loops,
            max_loops=self.max_loops,
            max_refinements=self.max_refinements,
            max_passes_per_event=self.max_passes_per_event,
            max_asked_fields=self.max_asked_fields,
            compression_threshold_bytes=self.compression_threshold_bytes,
            off_topic_block_strikes=self.off_topic_block_strikes,
            off_topic_confidence=self.off_topic_confidence,
            triage_threshold=self.triage_threshold,
            research_threshold=self.research_threshold,
            response_threshold=self.response_threshold,
            dry_run=self.dry_run,
            write_mode=self.write_mode,
            llm_timeout_seconds=self.llm_timeout_seconds,
            tracker_timeout_seconds=self.tracker_timeout_seconds,
            event_timeout_seconds=self.event_timeout_seconds,
            recursion_limit=self.recursion_limit,
            spec_pack_path=self.spec_pack_path.strip(),
            model_frontier=self.model_frontier.strip(),
            model_efficient=self.model_efficient.strip(),
            model_economy=self.model_economy.strip(),
            github_api_url=self.github_api_url.rstrip("/"),
        )


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc


def _get_env_bool(name: str, default: bool) -> bool:
    """Parse a boolean flag such as ``SUPPORTBOT_DRY_RUN=true``.

    Raises:
        ValueError: If the value is not a recognised boolean literal.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean (true/false), got: {raw!r}")
