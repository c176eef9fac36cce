"""Minimal directed-graph executor for per-event workflows.

Nodes are async callables that mutate a single context object owned by the
run. Edges are evaluated in declaration order; the first unconditional edge
or edge whose predicate holds is followed. A node with no matching edge ends
the run.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

ContextT = TypeVar("ContextT")

Executor = Callable[[ContextT], Awaitable[None]]
Predicate = Callable[[ContextT], bool]


class WorkflowRecursionError(RuntimeError):
    """The run visited more nodes than the recursion limit allows."""


@dataclass(frozen=True)
class Edge(Generic[ContextT]):
    source: str
    target: str
    when: Predicate[ContextT] | None = None
    label: str = ""

    def matches(self, ctx: ContextT) -> bool:
        return self.when is None or bool(self.when(ctx))


class WorkflowBuilder(Generic[ContextT]):
    def __init__(self, start: str) -> None:
        self.start = start
        self._nodes: dict[str, Executor[ContextT]] = {}
        self._edges: list[Edge[ContextT]] = []

    def add_node(self, name: str, executor: Executor[ContextT]) -> "WorkflowBuilder[ContextT]":
        if name in self._nodes:
            raise ValueError(f"Duplicate workflow node: {name}")
        self._nodes[name] = executor
        return self

    def add_edge(
        self,
        source: str,
        target: str,
        *,
        when: Predicate[ContextT] | None = None,
        label: str = "",
    ) -> "WorkflowBuilder[ContextT]":
        self._edges.append(Edge(source=source, target=target, when=when, label=label))
        return self

    def build(self, *, recursion_limit: int = 50) -> "Workflow[ContextT]":
        """Validate the wiring and freeze it into a Workflow.

        Raises:
            ValueError: If the start node or an edge endpoint is not a registered node.
        """
        if self.start not in self._nodes:
            raise ValueError(f"Start node '{self.start}' is not registered")
        for edge in self._edges:
            for endpoint in (edge.source, edge.target):
                if endpoint not in self._nodes:
                    raise ValueError(f"Edge {edge.source} -> {edge.target} references unknown node '{endpoint}'")
        outgoing: dict[str, list[Edge[ContextT]]] = {name: [] for name in self._nodes}
        for edge in self._edges:
            outgoing[edge.source].append(edge)
        return Workflow(
            start=self.start,
            nodes=dict(self._nodes),
            outgoing=outgoing,
            recursion_limit=recursion_limit,
        )


class Workflow(Generic[ContextT]):
    def __init__(
        self,
        *,
        start: str,
        nodes: dict[str, Executor[ContextT]],
        outgoing: dict[str, list[Edge[ContextT]]],
        recursion_limit: int,
    ) -> None:
        self.start = start
        self.nodes = nodes
        self.outgoing = outgoing
        self.recursion_limit = recursion_limit

    def next_node(self, current: str, ctx: ContextT) -> str | None:
        for edge in self.outgoing[current]:
            if edge.matches(ctx):
                return edge.target
        return None

    async def run(self, ctx: ContextT, *, timeout: float | None = None) -> list[str]:
        """Execute from the start node until no edge matches.

        Args:
            ctx: Context mutated in place by every node.
            timeout: Overall budget in seconds; expiry cancels the node in flight.

        Returns:
            The visited node names, in order.

        Raises:
            WorkflowRecursionError: If more than ``recursion_limit`` nodes are visited.
            TimeoutError: If the budget expires.
        """
        async with asyncio.timeout(timeout):
            return await self._run(ctx)

    async def _run(self, ctx: ContextT) -> list[str]:
        path: list[str] = []
        current: str | None = self.start
        while current is not None:
            if len(path) >= self.recursion_limit:
                raise WorkflowRecursionError(
                    f"Workflow exceeded recursion limit of {self.recursion_limit} steps: {' -> '.join(path[-8:])}"
                )
            path.append(current)
            logger.debug("Entering workflow node %s", current)
            await self.nodes[current](ctx)
            current = self.next_node(current, ctx)
        return path
