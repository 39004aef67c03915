"""Tests for the top-level orchestra package surface."""

from __future__ import annotations

import asyncio

import orchestra


class EchoExecutor:
    async def run(self, agent_ref: str, instruction: str, *, model: str | None = None) -> str:
        return f"{agent_ref}: {instruction}"


def test_version_is_semver_string():
    parts = orchestra.__version__.split(".")
    assert orchestra.__version__ == "0.1.0"
    assert len(parts) == 3
    assert all(p.isdigit() for p in parts)


def test_exports_are_listed_in_all():
    for name in orchestra.__all__:
        assert hasattr(orchestra, name), name


def test_compile_and_run_from_top_level():
    registry = orchestra.AgentRegistry.with_agents(["scan", "fix"])
    graph = orchestra.compile_workflow('scan:"repo":r -> fix:"{r}"', registry)
    assert len(graph.nodes) == 2

    engine = orchestra.WorkflowEngine(orchestra.OrchestraConfig(), EchoExecutor(), registry)
    result = asyncio.run(engine.run(graph))

    assert isinstance(result, orchestra.WorkflowRunResult)
    assert result.vars == {"r": "orchestration:scan: repo"}
    result.raise_for_status()


def test_errors_share_a_base():
    assert issubclass(orchestra.ParseError, orchestra.WorkflowError)
    assert issubclass(orchestra.LexError, orchestra.WorkflowError)
    assert issubclass(orchestra.WorkflowValidationError, orchestra.WorkflowError)
