"""Collaborator interfaces the workflow engine depends on.

The engine does not know what an agent is. It needs an executor that turns
``(agent_ref, instruction)`` into text, and, for free-text conditions only,
a condition interpreter. Structured predicates (variables, branch success)
are evaluated by the engine itself.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol, runtime_checkable


@runtime_checkable
class ExecutorProtocol(Protocol):
    """Runs one agent invocation.

    Returns the agent's textual output and raises on failure. Timeouts, if
    any, belong to the executor; the engine may also impose one from config.
    """

    async def run(self, agent_ref: str, instruction: str, *, model: str | None = None) -> str: ...


@runtime_checkable
class ConditionInterpreter(Protocol):
    """Decides free-text conditions such as ``(if tests passed)``."""

    async def evaluate(
        self,
        condition: str,
        *,
        last_output: str,
        variables: Mapping[str, str],
    ) -> bool: ...


class KeywordConditionInterpreter:
    """Deterministic interpreter: true when the condition text occurs in the last output.

    Matching is case-insensitive and whitespace-normalised. Good enough for
    agents instructed to answer with a keyword; swap in a model-backed
    interpreter for anything fuzzier.
    """

    async def evaluate(
        self,
        condition: str,
        *,
        last_output: str,
        variables: Mapping[str, str],
    ) -> bool:
        needle = " ".join(condition.lower().split())
        haystack = " ".join(last_output.lower().split())
        return bool(needle) and needle in haystack
