from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .model_selection import RuntimeModelSelection, resolve_agent_models
from .models import AgentConfig
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

PIPELINE_STAGE = "support_pipeline"
REQUIRED_ROLES: tuple[str, ...] = ("critic", "off_topic", "research", "response", "triage")


def get_agent_config_dir(stage: str) -> Path:
    """Return package-relative path to agent configs for a stage."""
    return Path(__file__).resolve().parent / "agent_configs" / stage


def load_agent_config(path: Path) -> AgentConfig:
    return AgentConfig.model_validate_json(path.read_text(encoding="utf-8"))


@dataclass(frozen=True)
class RoleBinding:
    """Binds an agent config to a resolved model name for a specific role."""

    config: AgentConfig
    model_name: str


def load_stage_role_bindings(*, stage: str, settings: RuntimeSettings) -> dict[str, RoleBinding]:
    """Load all agent config JSONs for a stage and resolve each to a RoleBinding.

    Args:
        stage: Config directory name under ``agent_configs``.
        settings: Runtime settings containing model tier-to-name mappings.

    Returns:
        Mapping of role name to RoleBinding.

    Raises:
        FileNotFoundError: If the agent config directory for the stage does not exist.
        ValueError: If configs are empty, have stage mismatches, or duplicate roles.
    """
    config_dir = get_agent_config_dir(stage)
    if not config_dir.is_dir():
        raise FileNotFoundError(f"Agent config directory missing for stage '{stage}': {config_dir}")

    configs: dict[str, AgentConfig] = {}
    for path in sorted(config_dir.glob("*.json")):
        cfg = load_agent_config(path)
        if cfg.stage != stage:
            raise ValueError(f"Agent config stage mismatch: expected '{stage}', got '{cfg.stage}' in {path}")
        if cfg.role in configs:
            raise ValueError(f"Duplicate role config for stage '{stage}': {cfg.role}")
        configs[cfg.role] = cfg

    if not configs:
        raise ValueError(f"No agent configs found for stage '{stage}' under {config_dir}")

    resolved_models = resolve_agent_models(configs, RuntimeModelSelection.from_settings(settings))
    return {role: RoleBinding(config=cfg, model_name=resolved_models[role]) for role, cfg in sorted(configs.items())}


class RoleAgentRuntime:
    """Role bindings for the support pipeline: model, temperature and instructions per role."""

    def __init__(self, *, settings: RuntimeSettings, stage: str = PIPELINE_STAGE) -> None:
        self.stage = stage
        self.settings = settings
        self.bindings = load_stage_role_bindings(stage=stage, settings=settings)

    def require_roles(self, required_roles: tuple[str, ...] = REQUIRED_ROLES) -> None:
        missing = sorted(role for role in required_roles if role not in self.bindings)
        if missing:
            raise ValueError(f"Stage '{self.stage}' missing required role configs: {', '.join(missing)}")

    def binding_for(self, role: str) -> RoleBinding:
        """Return the RoleBinding for the given role.

        Raises:
            ValueError: If the role is not configured for this stage.
        """
        if role not in self.bindings:
            available = ", ".join(sorted(self.bindings))
            raise ValueError(f"Unknown role '{role}' for stage '{self.stage}'. Available: {available}")
        return self.bindings[role]

    def system_prompt(self, role: str) -> str:
        return self.binding_for(role).config.instructions
