"""Static validation of compiled workflow graphs.

Every check runs independently and all problems are returned together, so
a workflow author sees the full list in one pass. A graph with any
validation error must not be executed.
"""

from __future__ import annotations

import re

from orchestra.workflow.errors import ValidationError, ValidationErrorKind
from orchestra.workflow.models import Graph, NodeID, PredicateKind
from orchestra.workflow.registry import AgentRegistry

VAR_REF_RE = re.compile(r"\{([A-Za-z0-9_-]+)\}")


def extract_variable_references(template: str) -> list[str]:
    """Return the ``{name}`` references in a template, in order of appearance."""
    return VAR_REF_RE.findall(template)


def validate(graph: Graph, registry: AgentRegistry | None = None) -> list[ValidationError]:
    """Return every validation error in ``graph`` (empty = valid)."""
    registry = registry or AgentRegistry()
    errors: list[ValidationError] = []
    errors.extend(_check_unclosed_subgraphs(graph))
    errors.extend(_check_orphans(graph))
    errors.extend(_check_agents(graph, registry))
    cycles = _check_cycles(graph)
    errors.extend(cycles)
    errors.extend(_check_undefined_variables(graph))
    errors.extend(_check_duplicate_producers(graph))
    if not cycles:
        errors.extend(_check_variable_guarantees(graph))
    return errors


def temp_agent_refs(graph: Graph, registry: AgentRegistry) -> set[str]:
    return {registry.resolve(f"${name}") for name in graph.temp_agents}


def _check_unclosed_subgraphs(graph: Graph) -> list[ValidationError]:
    return [
        ValidationError(
            ValidationErrorKind.UNCLOSED_SUBGRAPH,
            "subgraph '[' has no matching ']'",
            pos=pos,
        )
        for pos in graph.unclosed_subgraphs
    ]


def _check_orphans(graph: Graph) -> list[ValidationError]:
    if len(graph.nodes) <= 1:
        return []
    errors: list[ValidationError] = []
    roots = set(graph.roots)
    has_incoming = {e.target for e in graph.edges if e.source in graph.nodes}
    for nid in sorted(graph.nodes):
        if nid in roots or nid in has_incoming:
            continue
        node = graph.nodes[nid]
        errors.append(
            ValidationError(
                ValidationErrorKind.ORPHANED_NODE,
                f"node {nid} ({node.display_name()}) has no incoming edge and is not a root",
                node_id=nid,
                pos=node.pos,
            )
        )
    for edge in graph.edges:
        for endpoint in (edge.source, edge.target):
            if endpoint not in graph.nodes:
                errors.append(
                    ValidationError(
                        ValidationErrorKind.ORPHANED_NODE,
                        f"edge {edge.source} -> {edge.target} references missing node {endpoint}",
                        node_id=endpoint,
                    )
                )
    return errors


def _check_agents(graph: Graph, registry: AgentRegistry) -> list[ValidationError]:
    errors: list[ValidationError] = []
    temp_refs = temp_agent_refs(graph, registry)

    for name in sorted(graph.temp_agents):
        definition = graph.temp_agents[name]
        if not registry.is_base_capability(definition.base):
            errors.append(
                ValidationError(
                    ValidationErrorKind.UNKNOWN_AGENT,
                    f"temp agent '${name}' uses unknown base agent '{definition.base}'",
                    name=definition.base,
                    pos=definition.pos,
                )
            )

    for nid in sorted(graph.nodes):
        node = graph.nodes[nid]
        if node.is_checkpoint:
            continue
        if node.temp_agent is not None and node.temp_agent not in graph.temp_agents:
            errors.append(
                ValidationError(
                    ValidationErrorKind.UNDEFINED_TEMP_AGENT,
                    f"temp agent '${node.temp_agent}' is never defined",
                    node_id=nid,
                    name=node.temp_agent,
                    pos=node.pos,
                )
            )
        elif not registry.is_known(node.agent_ref, temp_refs):
            errors.append(
                ValidationError(
                    ValidationErrorKind.UNKNOWN_AGENT,
                    f"unknown agent '{node.agent_ref}' at node {nid}",
                    node_id=nid,
                    name=node.agent_ref,
                    pos=node.pos,
                )
            )
    return errors


def _check_cycles(graph: Graph) -> list[ValidationError]:
    """Report cycles left after removing legal retry-loop back-edges."""
    adj = graph.forward_adjacency()
    white, grey, black = 0, 1, 2
    color = {nid: white for nid in graph.nodes}
    stack: list[NodeID] = []
    errors: list[ValidationError] = []
    reported: set[frozenset[NodeID]] = set()

    def visit(nid: NodeID) -> None:
        color[nid] = grey
        stack.append(nid)
        for nxt in sorted(adj.get(nid, [])):
            if nxt not in color:
                continue
            if color[nxt] == grey:
                path = tuple(stack[stack.index(nxt) :]) + (nxt,)
                key = frozenset(path)
                if key not in reported:
                    reported.add(key)
                    rendered = " -> ".join(str(p) for p in path)
                    errors.append(
                        ValidationError(
                            ValidationErrorKind.ILLEGAL_CYCLE,
                            f"cycle {rendered} is not a conditional loop back to an earlier checkpoint",
                            node_id=nxt,
                            path=path,
                            pos=graph.nodes[nxt].pos,
                        )
                    )
            elif color[nxt] == white:
                visit(nxt)
        stack.pop()
        color[nid] = black

    for nid in sorted(graph.nodes):
        if color[nid] == white:
            visit(nid)
    return errors


def _var_refs(graph: Graph) -> list[tuple[str, NodeID]]:
    """Every (variable, consuming node) pair: instruction templates and IfVar edges."""
    refs: list[tuple[str, NodeID]] = []
    for nid in sorted(graph.nodes):
        node = graph.nodes[nid]
        for name in extract_variable_references(node.instruction_template):
            refs.append((name, nid))
    return refs


def _predicate_var_refs(graph: Graph) -> list[tuple[str, NodeID]]:
    """Variables read by IfVar predicates, attributed to the node whose completion triggers them."""
    refs: list[tuple[str, NodeID]] = []
    for edge in graph.edges:
        if edge.predicate.kind == PredicateKind.IF_VAR:
            refs.append((edge.predicate.name, edge.source))
    for binding in graph.bindings:
        if binding.predicate.kind == PredicateKind.IF_VAR:
            for source in binding.sources:
                refs.append((binding.predicate.name, source))
    return refs


def _check_undefined_variables(graph: Graph) -> list[ValidationError]:
    errors: list[ValidationError] = []
    seen: set[tuple[str, NodeID]] = set()
    for name, nid in _var_refs(graph) + _predicate_var_refs(graph):
        if name in graph.declared_vars or (name, nid) in seen:
            continue
        seen.add((name, nid))
        errors.append(
            ValidationError(
                ValidationErrorKind.UNDEFINED_VARIABLE,
                f"variable '{name}' used at node {nid} is never produced",
                node_id=nid,
                name=name,
                pos=graph.nodes[nid].pos if nid in graph.nodes else None,
            )
        )
    return errors


def _check_duplicate_producers(graph: Graph) -> list[ValidationError]:
    """A variable is written once: one output var or one condition bind per name."""
    declared: list[tuple[str, NodeID]] = [
        (node.output_var, nid) for nid, node in sorted(graph.nodes.items()) if node.output_var
    ]
    declared += [(binding.var, binding.sources[-1]) for binding in graph.bindings]

    first: dict[str, NodeID] = {}
    errors: list[ValidationError] = []
    for name, nid in declared:
        if name not in first:
            first[name] = nid
            continue
        errors.append(
            ValidationError(
                ValidationErrorKind.DUPLICATE_VARIABLE,
                f"variable '{name}' is already produced by node {first[name]}; "
                f"node {nid} cannot produce it again",
                node_id=nid,
                name=name,
                pos=graph.nodes[nid].pos if nid in graph.nodes else None,
            )
        )
    return errors


def guaranteed_predecessors(graph: Graph) -> dict[NodeID, set[NodeID]]:
    """Nodes certain to have finished before each node starts.

    A node waits for all of its forward predecessors, so the guaranteed set
    is the union of every predecessor and its own guaranteed set. Back-edges
    are ignored: a loop re-entry always follows a first pass.
    """
    preds: dict[NodeID, set[NodeID]] = {nid: set() for nid in graph.nodes}
    for edge in graph.edges:
        if graph.is_back_edge(edge) or edge.target not in preds or edge.source not in graph.nodes:
            continue
        preds[edge.target].add(edge.source)

    guaranteed: dict[NodeID, set[NodeID]] = {}
    for layer in graph.get_execution_order():
        for nid in layer:
            result: set[NodeID] = set()
            for pred in preds[nid]:
                result.add(pred)
                result |= guaranteed.get(pred, set())
            guaranteed[nid] = result
    return guaranteed


def _producers(graph: Graph) -> dict[str, list[set[NodeID]]]:
    """For each variable, the alternative node sets whose completion produces it."""
    producers: dict[str, list[set[NodeID]]] = {}
    for nid, node in graph.nodes.items():
        if node.output_var:
            producers.setdefault(node.output_var, []).append({nid})
    for binding in graph.bindings:
        producers.setdefault(binding.var, []).append(set(binding.sources))
    return producers


def _check_variable_guarantees(graph: Graph) -> list[ValidationError]:
    guaranteed = guaranteed_predecessors(graph)
    producers = _producers(graph)
    errors: list[ValidationError] = []
    seen: set[tuple[str, NodeID]] = set()

    checks = [(name, nid, False) for name, nid in _var_refs(graph)]
    # A predicate runs after its trigger node completes, so the trigger itself counts.
    checks += [(name, nid, True) for name, nid in _predicate_var_refs(graph)]

    for name, nid, trigger_counts in checks:
        if name not in graph.declared_vars or (name, nid) in seen:
            continue
        before = set(guaranteed.get(nid, set()))
        if trigger_counts:
            before.add(nid)
        if any(option <= before for option in producers.get(name, [])):
            continue
        seen.add((name, nid))
        errors.append(
            ValidationError(
                ValidationErrorKind.VARIABLE_NOT_GUARANTEED,
                f"variable '{name}' is not guaranteed to be produced before node {nid} uses it",
                node_id=nid,
                name=name,
                pos=graph.nodes[nid].pos,
            )
        )
    return errors
