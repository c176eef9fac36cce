from __future__ import annotations

from dataclasses import dataclass

from .models import AgentConfig
from .settings import RuntimeSettings

VALID_TIERS: frozenset[str] = frozenset({"frontier", "efficient", "economy"})

DEFAULT_MODELS_BY_TIER: dict[str, str] = {
    "frontier": "gpt-4o",
    "efficient": "gpt-4o-mini",
    "economy": "gpt-4o-mini",
}


@dataclass(frozen=True)
class RuntimeModelSelection:
    """Maps model tier names to concrete model identifiers.

    Each agent config declares a ``model_tier``; the critic and response roles
    usually sit on the frontier tier while triage and off-topic checks run on a
    cheaper one.
    """

    by_tier: dict[str, str]

    def __post_init__(self) -> None:
        missing = VALID_TIERS - set(self.by_tier)
        if missing:
            raise ValueError(
                f"RuntimeModelSelection missing required tiers: {', '.join(sorted(missing))}. "
                f"All of {sorted(VALID_TIERS)} must be configured."
            )
        for tier, model_name in self.by_tier.items():
            if not model_name or not model_name.strip():
                raise ValueError(f"RuntimeModelSelection tier '{tier}' has empty model name")

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "RuntimeModelSelection":
        return cls(
            by_tier={
                "frontier": settings.model_frontier,
                "efficient": settings.model_efficient,
                "economy": settings.model_economy,
            }
        )

    def resolve(self, stage: str, role: str, model_tier: str) -> str:
        """Resolve a model tier to a concrete model name.

        Raises:
            ValueError: If model_tier is not a recognized tier.
        """
        if model_tier not in self.by_tier:
            available = ", ".join(sorted(self.by_tier))
            raise ValueError(f"Unknown model tier '{model_tier}' for {stage}/{role}. Valid tiers: {available}")
        return self.by_tier[model_tier]


def resolve_agent_models(
    configs: dict[str, AgentConfig],
    model_selection: RuntimeModelSelection,
) -> dict[str, str]:
    """Resolve all agent configs to concrete model names via the model selection mapping."""
    return {
        role: model_selection.resolve(cfg.stage, cfg.role, cfg.model_tier)
        for role, cfg in sorted(configs.items())
    }
