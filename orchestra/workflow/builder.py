"""Graph builder: lowers a parsed workflow AST into an executable Graph.

Each AST node lowers to a fragment described by its source nodes (entry
points) and sink nodes (exit points):

  - ``a -> b`` wires every sink of ``a`` to every source of ``b``
  - ``a || b`` keeps the branches independent; when followed by ``->`` every
    branch sink is wired to the next stage, which forms the join barrier
  - ``src (if p) ~> dst`` adds predicate-tagged edges from every sink of
    ``src`` to every source of ``dst``; a target that names an existing
    checkpoint becomes a back-edge (retry loop)

NodeIDs increase monotonically in program order, starting at 1.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from loguru import logger

from orchestra.dsl.ast import (
    AgentCall,
    ASTNode,
    Checkpoint,
    Conditional,
    Parallel,
    Sequence,
    Subgraph,
    TempAgentDef,
    Workflow,
)
from orchestra.dsl.errors import UndefinedTempAgentError
from orchestra.workflow.models import Binding, Graph, Node, NodeID, NodeKind, Predicate
from orchestra.workflow.registry import AgentRegistry

_BRACED_VAR_RE = re.compile(r"^\{([A-Za-z0-9_-]+)\}$")
_IDENT_RE = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(slots=True)
class _Fragment:
    sources: list[NodeID]
    sinks: list[NodeID]
    # Sources that are already-built checkpoints referenced again by label.
    reused: frozenset[NodeID] = frozenset()


class GraphBuilder:
    """Build graphs against an explicit agent registry."""

    def __init__(self, registry: AgentRegistry | None = None) -> None:
        self._registry = registry or AgentRegistry()
        self._graph = Graph()

    def build(self, workflow: Workflow) -> Graph:
        self._graph = Graph()
        for definition in workflow.definitions:
            self._graph.temp_agents[definition.name] = definition

        fragment = self._lower(workflow.body)
        self._graph.roots = sorted(set(fragment.sources))
        logger.debug(
            "Built workflow graph: {} nodes, {} edges, {} temp agents",
            len(self._graph.nodes),
            len(self._graph.edges),
            len(self._graph.temp_agents),
        )
        return self._graph

    def add_call(self, graph: Graph, call: AgentCall) -> Node:
        """Add one agent-call node to an existing graph, without wiring it."""
        self._graph = graph
        fragment = self._lower_agent_call(call)
        return graph.nodes[fragment.sources[0]]

    # -- lowering ----------------------------------------------------------

    def _lower(self, node: ASTNode) -> _Fragment:
        if isinstance(node, AgentCall):
            return self._lower_agent_call(node)
        if isinstance(node, Checkpoint):
            return self._lower_checkpoint(node)
        if isinstance(node, Sequence):
            left = self._lower(node.left)
            right = self._lower(node.right)
            self._connect(left.sinks, right.sources, Predicate.unconditional())
            return _Fragment(left.sources, right.sinks, left.reused)
        if isinstance(node, Parallel):
            sources: list[NodeID] = []
            sinks: list[NodeID] = []
            reused: set[NodeID] = set()
            for branch in node.branches:
                fragment = self._lower(branch)
                sources.extend(fragment.sources)
                sinks.extend(fragment.sinks)
                reused |= fragment.reused
            return _Fragment(sources, sinks, frozenset(reused))
        if isinstance(node, Subgraph):
            if not node.closed:
                self._graph.unclosed_subgraphs.append(node.pos)
            return self._lower(node.body)
        if isinstance(node, Conditional):
            return self._lower_conditional(node)
        if isinstance(node, TempAgentDef):
            raise TypeError("temp agent definitions must precede the workflow expression")
        raise TypeError(f"cannot lower AST node {type(node).__name__}")

    def _lower_agent_call(self, call: AgentCall) -> _Fragment:
        if call.temp:
            definition = self._graph.temp_agents.get(call.agent)
            if definition is None:
                raise UndefinedTempAgentError(call.pos, call.agent)
            instruction = (
                f"{definition.prompt}\n\n{call.instruction_template}"
                if call.instruction_template
                else definition.prompt
            )
            node = self._graph.add_node(
                NodeKind.AGENT_CALL,
                agent_ref=self._registry.resolve(f"${call.agent}"),
                instruction_template=instruction,
                output_var=call.output_var,
                model=definition.model,
                temp_agent=call.agent,
                pos=call.pos,
            )
        else:
            node = self._graph.add_node(
                NodeKind.AGENT_CALL,
                agent_ref=self._registry.resolve(call.agent),
                instruction_template=call.instruction_template,
                output_var=call.output_var,
                pos=call.pos,
            )
        if call.output_var:
            self._graph.declared_vars.add(call.output_var)
        return _Fragment([node.id], [node.id])

    def _lower_checkpoint(self, checkpoint: Checkpoint) -> _Fragment:
        existing = self._graph.labels.get(checkpoint.label)
        if existing is not None:
            return _Fragment([existing], [existing], frozenset({existing}))
        node = self._graph.add_node(
            NodeKind.CHECKPOINT,
            label=checkpoint.label,
            instruction_template=checkpoint.prompt or "",
            pos=checkpoint.pos,
        )
        return _Fragment([node.id], [node.id])

    def _lower_conditional(self, cond: Conditional) -> _Fragment:
        source = self._lower(cond.source)
        predicate = self._resolve_predicate(cond.predicate, cond.negate, source.sinks)

        if cond.bind_var:
            self._graph.bindings.append(Binding(cond.bind_var, predicate, tuple(source.sinks)))
            self._graph.declared_vars.add(cond.bind_var)
            predicate = Predicate.if_var(cond.bind_var)

        if cond.target is None:
            return _Fragment(source.sources, source.sinks, source.reused)

        target = self._lower(cond.target)
        self._connect(source.sinks, target.sources, predicate, loops_to=target.reused)
        return _Fragment(source.sources, target.sinks, source.reused)

    def _connect(
        self,
        sinks: list[NodeID],
        sources: list[NodeID],
        predicate: Predicate,
        *,
        loops_to: frozenset[NodeID] = frozenset(),
    ) -> None:
        for sink in sinks:
            for source in sources:
                self._graph.add_edge(sink, source, predicate, back_edge=source in loops_to)

    def _resolve_predicate(self, text: str, negate: bool, branch: list[NodeID]) -> Predicate:
        """Map condition text onto a structured predicate.

        ``all success`` / ``any success`` test the source's sinks, ``{name}`` or
        a declared variable name tests that variable; anything else is passed
        to the condition interpreter verbatim.
        """
        normalized = " ".join(text.lower().split())
        if normalized == "all success":
            return Predicate.if_all_success(tuple(branch), negate)
        if normalized == "any success":
            return Predicate.if_any_success(tuple(branch), negate)

        braced = _BRACED_VAR_RE.match(text.strip())
        if braced:
            return Predicate.if_var(braced.group(1), negate)
        if _IDENT_RE.match(text.strip()) and text.strip() in self._graph.declared_vars:
            return Predicate.if_var(text.strip(), negate)
        return Predicate.if_literal(text.strip(), negate)


def build_graph(workflow: Workflow, registry: AgentRegistry | None = None) -> Graph:
    """Lower a parsed workflow into a Graph."""
    return GraphBuilder(registry).build(workflow)
