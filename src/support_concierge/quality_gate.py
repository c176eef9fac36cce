from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Generic, Literal, Protocol, TypedDict, TypeVar

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command
from pydantic import BaseModel

from .llm import PhaseFailure
from .models import CritiqueResult, RunContext

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT", bound=BaseModel)


class PhaseAgent(Protocol):
    async def generate(self, ctx: RunContext) -> Any: ...

    async def refine(self, ctx: RunContext, candidate: Any, critique: CritiqueResult) -> Any: ...


class Critic(Protocol):
    async def critique(self, phase: str, candidate: BaseModel, ctx: RunContext) -> CritiqueResult: ...


class GateState(TypedDict, total=False):
    ctx: RunContext
    candidate: Any
    critique: CritiqueResult | None
    critique_failed: bool
    refined: bool
    refinements: int
    max_refinements: int


@dataclass
class GateOutcome(Generic[ResultT]):
    result: ResultT
    critique: CritiqueResult | None
    refined: bool
    critique_failed: bool


class QualityGateLoop:
    """Critique-gated subgraph for one generative phase: generate -> critique -> route -> refine/accept.

    A candidate scoring below the phase threshold gets at most one refinement,
    which is accepted without a second critique. A failing critic never blocks
    the phase; the uncritiqued candidate is used instead.
    """

    def __init__(
        self,
        *,
        phase: str,
        agent: PhaseAgent,
        critic: Critic,
        threshold: int,
        max_refinements: int = 1,
    ) -> None:
        if max_refinements not in (0, 1):
            raise ValueError(f"max_refinements must be 0 or 1, got: {max_refinements}")
        self.phase = phase
        self.agent = agent
        self.critic = critic
        self.threshold = threshold
        self.max_refinements = max_refinements
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(GateState)
        graph.add_node("generate", self._generate)
        graph.add_node("critique", self._critique)
        graph.add_node("route", self._route)
        graph.add_node("refine", self._refine)
        graph.add_node("accept", self._accept)

        graph.add_edge(START, "generate")
        graph.add_edge("generate", "critique")
        graph.add_edge("critique", "route")
        graph.add_edge("refine", "accept")
        graph.add_edge("accept", END)
        return graph

    async def _generate(self, state: GateState) -> dict[str, Any]:
        candidate = await self.agent.generate(state["ctx"])
        return {"candidate": candidate}

    async def _critique(self, state: GateState) -> dict[str, Any]:
        try:
            critique = await self.critic.critique(self.phase, state["candidate"], state["ctx"])
        except Exception as exc:
            logger.warning("Critique of %s failed; accepting uncritiqued result: %s", self.phase, exc)
            return {"critique": None, "critique_failed": True}
        logger.info("Critique of %s scored %d/10 (threshold %d)", self.phase, critique.score, self.threshold)
        return {"critique": critique, "critique_failed": False}

    async def _route(self, state: GateState) -> Command[Literal["refine", "accept"]]:
        critique = state.get("critique")
        refinements = int(state.get("refinements", 0))
        max_refinements = int(state.get("max_refinements", self.max_refinements))
        if critique is not None and critique.score < self.threshold and refinements < max_refinements:
            return Command(goto="refine")
        return Command(goto="accept")

    async def _refine(self, state: GateState) -> dict[str, Any]:
        refinements = int(state.get("refinements", 0)) + 1
        try:
            candidate = await self.agent.refine(state["ctx"], state["candidate"], state["critique"])
        except PhaseFailure as exc:
            logger.warning("Refinement of %s failed; keeping first candidate: %s", self.phase, exc)
            return {"refinements": refinements}
        return {"candidate": candidate, "refined": True, "refinements": refinements}

    async def _accept(self, state: GateState) -> dict[str, Any]:
        return {"refined": bool(state.get("refined", False))}

    async def run(self, ctx: RunContext) -> GateOutcome[Any]:
        """Run the phase once through the gate.

        Raises:
            PhaseFailure: If the initial generation fails.
        """
        result = await self.graph.ainvoke(
            {
                "ctx": ctx,
                "critique": None,
                "critique_failed": False,
                "refined": False,
                "refinements": 0,
                "max_refinements": self.max_refinements,
            }
        )
        critique = result.get("critique")
        if critique is not None:
            ctx.critiques[self.phase] = critique
        return GateOutcome(
            result=result["candidate"],
            critique=critique,
            refined=bool(result.get("refined")),
            critique_failed=bool(result.get("critique_failed")),
        )
