from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import pytest

from support_concierge.graph import WorkflowBuilder, WorkflowRecursionError


@dataclass
class _Counter:
    value: int = 0
    seen: list[str] = field(default_factory=list)


def _node(name: str, step: int = 0):
    async def run(ctx: _Counter) -> None:
        ctx.value += step
        ctx.seen.append(name)

    return run


def test_first_matching_edge_is_followed() -> None:
    builder: WorkflowBuilder[_Counter] = WorkflowBuilder(start="a")
    builder.add_node("a", _node("a", 1)).add_node("b", _node("b")).add_node("c", _node("c"))
    builder.add_edge("a", "b", when=lambda ctx: ctx.value > 5)
    builder.add_edge("a", "c")
    workflow = builder.build()

    ctx = _Counter()
    path = asyncio.run(workflow.run(ctx))

    assert path == ["a", "c"]
    assert ctx.seen == ["a", "c"]


def test_loop_edges_run_until_predicate_fails() -> None:
    builder: WorkflowBuilder[_Counter] = WorkflowBuilder(start="inc")
    builder.add_node("inc", _node("inc", 1)).add_node("done", _node("done"))
    builder.add_edge("inc", "inc", when=lambda ctx: ctx.value < 3, label="again")
    builder.add_edge("inc", "done")

    path = asyncio.run(builder.build().run(_Counter()))

    assert path == ["inc", "inc", "inc", "done"]


def test_node_without_matching_edge_ends_run() -> None:
    builder: WorkflowBuilder[_Counter] = WorkflowBuilder(start="a")
    builder.add_node("a", _node("a")).add_node("b", _node("b"))
    builder.add_edge("a", "b", when=lambda ctx: False)

    assert asyncio.run(builder.build().run(_Counter())) == ["a"]


def test_recursion_limit_is_enforced() -> None:
    builder: WorkflowBuilder[_Counter] = WorkflowBuilder(start="spin")
    builder.add_node("spin", _node("spin", 1))
    builder.add_edge("spin", "spin")

    with pytest.raises(WorkflowRecursionError):
        asyncio.run(builder.build(recursion_limit=5).run(_Counter()))


def test_timeout_cancels_slow_node() -> None:
    async def slow(ctx: _Counter) -> None:
        await asyncio.sleep(5)

    builder: WorkflowBuilder[_Counter] = WorkflowBuilder(start="slow")
    builder.add_node("slow", slow)

    with pytest.raises(TimeoutError):
        asyncio.run(builder.build().run(_Counter(), timeout=0.05))


def test_build_validates_wiring() -> None:
    missing_start: WorkflowBuilder[_Counter] = WorkflowBuilder(start="nowhere")
    missing_start.add_node("a", _node("a"))
    with pytest.raises(ValueError, match="Start node"):
        missing_start.build()

    dangling: WorkflowBuilder[_Counter] = WorkflowBuilder(start="a")
    dangling.add_node("a", _node("a"))
    dangling.add_edge("a", "ghost")
    with pytest.raises(ValueError, match="ghost"):
        dangling.build()

    duplicate: WorkflowBuilder[_Counter] = WorkflowBuilder(start="a")
    duplicate.add_node("a", _node("a"))
    with pytest.raises(ValueError, match="Duplicate"):
        duplicate.add_node("a", _node("a"))
