"""Abstract syntax tree for workflow syntax.

The parser produces a :class:`Workflow` root holding the temp-agent
definitions followed by one expression built from the variants below.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from orchestra.dsl.tokens import Position


@dataclass(frozen=True, slots=True)
class AgentCall:
    """``agent:"instruction"[:var]`` or ``$temp:"instruction"[:var]``."""

    agent: str
    instruction_template: str
    output_var: str | None = None
    temp: bool = False
    pos: Position = field(default_factory=Position, compare=False)


@dataclass(frozen=True, slots=True)
class Sequence:
    left: ASTNode
    right: ASTNode


@dataclass(frozen=True, slots=True)
class Parallel:
    branches: tuple[ASTNode, ...]


@dataclass(frozen=True, slots=True)
class Conditional:
    """``source (if [!]predicate)[:bind_var] ~> target``.

    ``target`` is None for a bind-only condition whose result is consumed by
    a later condition on the same source.
    """

    source: ASTNode
    predicate: str
    target: ASTNode | None = None
    bind_var: str | None = None
    negate: bool = False
    pos: Position = field(default_factory=Position, compare=False)


@dataclass(frozen=True, slots=True)
class Checkpoint:
    label: str
    prompt: str | None = None
    pos: Position = field(default_factory=Position, compare=False)


@dataclass(frozen=True, slots=True)
class Subgraph:
    body: ASTNode
    closed: bool = True
    pos: Position = field(default_factory=Position, compare=False)


@dataclass(frozen=True, slots=True)
class TempAgentDef:
    """``$name := {base: "...", prompt: "...", model: "..."}``."""

    name: str
    base: str
    prompt: str
    model: str | None = None
    pos: Position = field(default_factory=Position, compare=False)


@dataclass(frozen=True, slots=True)
class Workflow:
    definitions: tuple[TempAgentDef, ...]
    body: ASTNode


ASTNode = AgentCall | Sequence | Parallel | Conditional | Checkpoint | Subgraph | TempAgentDef
