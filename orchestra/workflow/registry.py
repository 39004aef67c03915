"""Agent registry and namespace resolution.

A registry value is passed explicitly into the graph builder and the
validator; there is no process-wide agent table.

Resolution rules for a name used in workflow syntax:
  - built-in agents pass through unchanged
  - names that already carry a ``namespace:`` prefix pass through unchanged
  - any other bare name, and every ``$temp`` agent, becomes
    ``<plugin namespace>:<name>``
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum

DEFAULT_PLUGIN_NAMESPACE = "orchestration"

BUILTIN_AGENTS: frozenset[str] = frozenset({
    "general-purpose",
    "Explore",
    "Plan",
    "code-reviewer",
    "expert-code-implementer",
    "implementation-architect",
    "code-optimizer",
    "react-native-component-reviewer",
    "jwt-keycloak-security-auditor",
    "statusline-setup",
})


class AgentSource(StrEnum):
    BUILTIN = "builtin"
    DEFINED = "defined"
    TEMP = "temp"


@dataclass(slots=True)
class AgentRegistry:
    """Known agents: the fixed built-in capability set plus defined plugin agents."""

    builtin: frozenset[str] = BUILTIN_AGENTS
    defined: set[str] = field(default_factory=set)
    namespace: str = DEFAULT_PLUGIN_NAMESPACE

    def resolve(self, name: str) -> str:
        """Return the canonical agent identifier for ``name`` (pure, no I/O)."""
        if name.startswith("$"):
            return f"{self.namespace}:{name[1:]}"
        if name in self.builtin or ":" in name:
            return name
        return f"{self.namespace}:{name}"

    def define(self, name: str) -> str:
        """Register a plugin agent and return its canonical identifier."""
        ref = self.resolve(name)
        self.defined.add(ref)
        return ref

    def find(self, ref: str, temp_refs: Iterable[str] = ()) -> AgentSource | None:
        """Report where a canonical agent identifier comes from, or None if unknown."""
        if ref in self.builtin:
            return AgentSource.BUILTIN
        if ref in self.defined:
            return AgentSource.DEFINED
        if ref in set(temp_refs):
            return AgentSource.TEMP
        return None

    def is_known(self, ref: str, temp_refs: Iterable[str] = ()) -> bool:
        return self.find(ref, temp_refs) is not None

    def is_base_capability(self, name: str) -> bool:
        """Whether ``name`` may serve as a temp agent's ``base``."""
        return name in self.builtin

    @classmethod
    def with_agents(
        cls,
        names: Iterable[str],
        *,
        builtin: Iterable[str] | None = None,
        namespace: str = DEFAULT_PLUGIN_NAMESPACE,
    ) -> AgentRegistry:
        """Build a registry with the given plugin agents defined."""
        registry = cls(
            builtin=frozenset(builtin) if builtin is not None else BUILTIN_AGENTS,
            namespace=namespace,
        )
        for name in names:
            registry.define(name)
        return registry
