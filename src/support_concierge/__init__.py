from importlib.metadata import version

from .agent_runtime import RoleAgentRuntime
from .graph import Workflow, WorkflowBuilder, WorkflowRecursionError
from .guardrails import GuardrailDecision, GuardrailGate, is_disagreement, parse_commands
from .issue_tracker import GitHubIssueTracker, IssueTrackerClient, IssueTrackerError
from .llm import ChatOpenAILanguageModel, LanguageModel, LlmRequest, LlmResponse, PhaseFailure, UsageTracker
from .model_selection import DEFAULT_MODELS_BY_TIER, RuntimeModelSelection, resolve_agent_models
from .models import (
    AgentConfig,
    Comment,
    ConversationState,
    CritiqueResult,
    EngineerBrief,
    InvestigationResult,
    Issue,
    IssueEvent,
    OffTopicAssessment,
    OrchestratorAction,
    OrchestratorDecision,
    ReplyKind,
    Repository,
    ResponseResult,
    RunContext,
    SharedFinding,
    TriageResult,
    UserConversation,
)
from .orchestrator import Orchestrator
from .quality_gate import GateOutcome, QualityGateLoop
from .settings import RuntimeSettings
from .spec_pack import SpecPack, load_spec_pack
from .state_codec import StateCodec
from .workflow import SupportConciergeWorkflow


def get_version() -> str:
    try:
        return version("support-concierge")
    except Exception:
        return "0.0.0"


__all__ = [
    "AgentConfig",
    "ChatOpenAILanguageModel",
    "Comment",
    "ConversationState",
    "CritiqueResult",
    "EngineerBrief",
    "GateOutcome",
    "GitHubIssueTracker",
    "GuardrailDecision",
    "GuardrailGate",
    "InvestigationResult",
    "Issue",
    "IssueEvent",
    "IssueTrackerClient",
    "IssueTrackerError",
    "LanguageModel",
    "LlmRequest",
    "LlmResponse",
    "OffTopicAssessment",
    "Orchestrator",
    "OrchestratorAction",
    "OrchestratorDecision",
    "PhaseFailure",
    "QualityGateLoop",
    "ReplyKind",
    "Repository",
    "ResponseResult",
    "RoleAgentRuntime",
    "RunContext",
    "RuntimeModelSelection",
    "RuntimeSettings",
    "SharedFinding",
    "SpecPack",
    "StateCodec",
    "SupportConciergeWorkflow",
    "TriageResult",
    "UsageTracker",
    "UserConversation",
    "Workflow",
    "WorkflowBuilder",
    "WorkflowRecursionError",
    "DEFAULT_MODELS_BY_TIER",
    "get_version",
    "is_disagreement",
    "load_spec_pack",
    "parse_commands",
    "resolve_agent_models",
]
