"""Workflow data models: the executable graph and run results.

A compiled workflow is a directed graph of agent-call and checkpoint nodes.
Edges carry predicates; a node runs once every incoming forward edge is
satisfied. The only permitted cycles are conditional back-edges to an
earlier checkpoint (labelled retry loops). Independent nodes run in
parallel, one wave at a time.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from orchestra.dsl.ast import TempAgentDef
from orchestra.dsl.tokens import Position
from orchestra.workflow.errors import NodeRuntimeError

NodeID = int


class NodeKind(StrEnum):
    AGENT_CALL = "agent_call"
    CHECKPOINT = "checkpoint"


class NodeStatus(StrEnum):
    """Lifecycle states for a graph node."""

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    FAILED = "failed"
    COMPLETED = "completed"
    ABORTED = "aborted"


class PredicateKind(StrEnum):
    UNCONDITIONAL = "unconditional"
    IF_VAR = "if_var"
    IF_ALL_SUCCESS = "if_all_success"
    IF_ANY_SUCCESS = "if_any_success"
    IF_LITERAL = "if_literal"


@dataclass(frozen=True, slots=True)
class Predicate:
    kind: PredicateKind = PredicateKind.UNCONDITIONAL
    negate: bool = False
    name: str = ""
    text: str = ""
    branch: tuple[NodeID, ...] = ()

    @classmethod
    def unconditional(cls) -> Predicate:
        return cls()

    @classmethod
    def if_var(cls, name: str, negate: bool = False) -> Predicate:
        return cls(PredicateKind.IF_VAR, negate, name=name)

    @classmethod
    def if_all_success(cls, branch: tuple[NodeID, ...], negate: bool = False) -> Predicate:
        return cls(PredicateKind.IF_ALL_SUCCESS, negate, branch=tuple(branch))

    @classmethod
    def if_any_success(cls, branch: tuple[NodeID, ...], negate: bool = False) -> Predicate:
        return cls(PredicateKind.IF_ANY_SUCCESS, negate, branch=tuple(branch))

    @classmethod
    def if_literal(cls, text: str, negate: bool = False) -> Predicate:
        return cls(PredicateKind.IF_LITERAL, negate, text=text)

    @property
    def conditional(self) -> bool:
        return self.kind != PredicateKind.UNCONDITIONAL

    @property
    def on_branch(self) -> bool:
        return self.kind in (PredicateKind.IF_ALL_SUCCESS, PredicateKind.IF_ANY_SUCCESS)

    def with_branch(self, branch: tuple[NodeID, ...]) -> Predicate:
        return Predicate(self.kind, self.negate, self.name, self.text, tuple(branch))

    def describe(self) -> str:
        bang = "!" if self.negate else ""
        if self.kind == PredicateKind.IF_VAR:
            return f"if {bang}{{{self.name}}}"
        if self.kind == PredicateKind.IF_ALL_SUCCESS:
            return f"if {bang}all success"
        if self.kind == PredicateKind.IF_ANY_SUCCESS:
            return f"if {bang}any success"
        if self.kind == PredicateKind.IF_LITERAL:
            return f"if {bang}{self.text}"
        return "always"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind.value, "negate": self.negate}
        if self.name:
            data["name"] = self.name
        if self.text:
            data["text"] = self.text
        if self.branch:
            data["branch"] = list(self.branch)
        return data


@dataclass(frozen=True, slots=True)
class Edge:
    source: NodeID
    target: NodeID
    predicate: Predicate = field(default_factory=Predicate)
    edge_id: int = 0
    back_edge: bool = False


@dataclass(frozen=True, slots=True)
class Binding:
    """Boolean result of a condition captured into a variable.

    Evaluated once every source node has finished; writes ``"true"`` or
    ``"false"`` into ``var``.
    """

    var: str
    predicate: Predicate
    sources: tuple[NodeID, ...]


@dataclass(slots=True)
class Node:
    """A graph node plus its per-run execution state.

    Status is mutated only by the scheduler (and the steering controller on
    its behalf).
    """

    id: NodeID
    kind: NodeKind
    agent_ref: str = ""
    instruction_template: str = ""
    output_var: str | None = None
    label: str | None = None
    model: str | None = None
    temp_agent: str | None = None
    pos: Position | None = None
    status: NodeStatus = NodeStatus.PENDING
    output: str = ""
    error: str = ""
    attempts: int = 0
    started_at: str | None = None
    completed_at: str | None = None
    duration_seconds: float = 0.0

    @property
    def is_checkpoint(self) -> bool:
        return self.kind == NodeKind.CHECKPOINT

    @property
    def terminal(self) -> bool:
        return self.status in (NodeStatus.COMPLETED, NodeStatus.FAILED, NodeStatus.SKIPPED)

    def display_name(self) -> str:
        if self.is_checkpoint:
            return f"@{self.label}"
        if self.temp_agent:
            return f"${self.temp_agent}"
        return self.agent_ref

    def mark_ready(self) -> None:
        self.status = NodeStatus.READY

    def mark_running(self) -> None:
        self.status = NodeStatus.RUNNING
        self.attempts += 1
        self.started_at = datetime.now(UTC).isoformat()

    def mark_completed(self, output: str = "") -> None:
        self.status = NodeStatus.COMPLETED
        self.output = output
        self.error = ""
        self._set_completed_time()

    def mark_failed(self, error: str) -> None:
        self.status = NodeStatus.FAILED
        self.error = error
        self._set_completed_time()

    def mark_skipped(self, reason: str) -> None:
        self.status = NodeStatus.SKIPPED
        self.error = reason
        self._set_completed_time()

    def reset(self) -> None:
        """Return to PENDING for re-execution; the previous output stays until overwritten."""
        self.status = NodeStatus.PENDING
        self.error = ""

    def _set_completed_time(self) -> None:
        self.completed_at = datetime.now(UTC).isoformat()
        if self.started_at:
            start = datetime.fromisoformat(self.started_at)
            end = datetime.fromisoformat(self.completed_at)
            self.duration_seconds = (end - start).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "kind": self.kind.value}
        if self.is_checkpoint:
            data["label"] = self.label
            data["prompt"] = self.instruction_template
        else:
            data["agent"] = self.agent_ref
            data["instruction"] = self.instruction_template
            if self.output_var:
                data["output_var"] = self.output_var
            if self.model:
                data["model"] = self.model
            if self.temp_agent:
                data["temp_agent"] = self.temp_agent
        return data


@dataclass(slots=True)
class Graph:
    """Executable workflow graph produced by the graph builder."""

    nodes: dict[NodeID, Node] = field(default_factory=dict)
    edges: list[Edge] = field(default_factory=list)
    temp_agents: dict[str, TempAgentDef] = field(default_factory=dict)
    declared_vars: set[str] = field(default_factory=set)
    bindings: list[Binding] = field(default_factory=list)
    roots: list[NodeID] = field(default_factory=list)
    labels: dict[str, NodeID] = field(default_factory=dict)
    unclosed_subgraphs: list[Position] = field(default_factory=list)
    _next_node_id: int = 1
    _next_edge_id: int = 1

    # -- construction ------------------------------------------------------

    def add_node(self, kind: NodeKind, **attrs: Any) -> Node:
        node = Node(id=self._next_node_id, kind=kind, **attrs)
        self._next_node_id += 1
        self.nodes[node.id] = node
        if node.label:
            self.labels.setdefault(node.label, node.id)
        return node

    def add_edge(
        self,
        source: NodeID,
        target: NodeID,
        predicate: Predicate | None = None,
        *,
        back_edge: bool = False,
    ) -> Edge:
        edge = Edge(
            source,
            target,
            predicate or Predicate.unconditional(),
            self._next_edge_id,
            back_edge,
        )
        self._next_edge_id += 1
        self.edges.append(edge)
        return edge

    def remove_edges(self, edges: list[Edge]) -> None:
        doomed = {e.edge_id for e in edges}
        self.edges = [e for e in self.edges if e.edge_id not in doomed]

    # -- queries -----------------------------------------------------------

    def is_back_edge(self, edge: Edge) -> bool:
        """A retry loop: a conditional edge marked as looping back to an earlier checkpoint."""
        target = self.nodes.get(edge.target)
        return (
            edge.back_edge
            and edge.predicate.conditional
            and target is not None
            and target.is_checkpoint
            and edge.target <= edge.source
        )

    def incoming(self, node_id: NodeID, *, forward_only: bool = True) -> list[Edge]:
        return [
            e
            for e in self.edges
            if e.target == node_id and not (forward_only and self.is_back_edge(e))
        ]

    def outgoing(self, node_id: NodeID, *, forward_only: bool = True) -> list[Edge]:
        return [
            e
            for e in self.edges
            if e.source == node_id and not (forward_only and self.is_back_edge(e))
        ]

    def back_edges(self) -> list[Edge]:
        return [e for e in self.edges if self.is_back_edge(e)]

    def forward_adjacency(self) -> dict[NodeID, list[NodeID]]:
        adj: dict[NodeID, list[NodeID]] = {nid: [] for nid in self.nodes}
        for edge in self.edges:
            if not self.is_back_edge(edge) and edge.source in adj and edge.target in adj:
                adj[edge.source].append(edge.target)
        return adj

    def descendants(self, node_id: NodeID) -> set[NodeID]:
        """Nodes reachable from ``node_id`` over forward edges (excluding itself)."""
        adj = self.forward_adjacency()
        seen: set[NodeID] = set()
        queue = deque(adj.get(node_id, []))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(adj.get(current, []))
        seen.discard(node_id)
        return seen

    def ancestors(self, node_id: NodeID) -> set[NodeID]:
        """Nodes that reach ``node_id`` over forward edges (excluding itself)."""
        reverse: dict[NodeID, list[NodeID]] = {nid: [] for nid in self.nodes}
        for edge in self.edges:
            if not self.is_back_edge(edge) and edge.target in reverse:
                reverse[edge.target].append(edge.source)
        seen: set[NodeID] = set()
        queue = deque(reverse.get(node_id, []))
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(reverse.get(current, []))
        seen.discard(node_id)
        return seen

    def get_execution_order(self) -> list[list[NodeID]]:
        """Return nodes grouped into parallel execution layers.

        Back-edges are ignored. Each layer holds nodes whose forward
        predecessors all sit in earlier layers, ordered by NodeID. Nodes on
        an illegal cycle never appear.
        """
        adj = self.forward_adjacency()
        in_degree = {nid: 0 for nid in self.nodes}
        for targets in adj.values():
            for target in targets:
                in_degree[target] += 1

        layers: list[list[NodeID]] = []
        queue = deque(n for n, d in in_degree.items() if d == 0)
        while queue:
            layer = sorted(queue)
            layers.append(layer)
            queue.clear()
            for node in layer:
                for neighbor in adj[node]:
                    in_degree[neighbor] -= 1
                    if in_degree[neighbor] == 0:
                        queue.append(neighbor)
        return layers

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [self.nodes[nid].to_dict() for nid in sorted(self.nodes)],
            "edges": [
                {
                    "from": e.source,
                    "to": e.target,
                    "predicate": e.predicate.to_dict(),
                    "back_edge": self.is_back_edge(e),
                }
                for e in self.edges
            ],
            "bindings": [
                {"var": b.var, "predicate": b.predicate.to_dict(), "sources": list(b.sources)}
                for b in self.bindings
            ],
            "roots": list(self.roots),
            "declared_vars": sorted(self.declared_vars),
            "temp_agents": sorted(self.temp_agents),
        }


@dataclass(frozen=True, slots=True)
class TraceEvent:
    """One entry of the execution trace, in the order the scheduler observed it."""

    seq: int
    event: str
    node_id: NodeID | None = None
    detail: str = ""
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "seq": self.seq,
            "event": self.event,
            "node_id": self.node_id,
            "detail": self.detail,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True, slots=True)
class NodeFailure:
    node_id: NodeID
    agent_ref: str
    error: str
    attempt: int


_RESULT_OUTPUT_LIMIT = 500


@dataclass(slots=True)
class WorkflowRunResult:
    """Complete result of a workflow run."""

    status: RunStatus = RunStatus.IDLE
    vars: dict[str, str] = field(default_factory=dict)
    completed: set[NodeID] = field(default_factory=set)
    failed: set[NodeID] = field(default_factory=set)
    skipped: set[NodeID] = field(default_factory=set)
    pruned: set[NodeID] = field(default_factory=set)
    failures: list[NodeFailure] = field(default_factory=list)
    trace: list[TraceEvent] = field(default_factory=list)
    graph: Graph | None = None
    started_at: str = ""
    completed_at: str = ""
    total_duration_seconds: float = 0.0

    @property
    def all_completed(self) -> bool:
        return self.status == RunStatus.COMPLETED and not self.failed

    @property
    def has_failures(self) -> bool:
        return bool(self.failures)

    def raise_for_status(self) -> None:
        """Raise NodeRuntimeError for the first unrecovered node failure."""
        if self.status != RunStatus.FAILED:
            return
        for failure in self.failures:
            if failure.node_id in self.failed:
                raise NodeRuntimeError(failure.node_id, failure.error)

    def summary(self) -> str:
        """Partial-completion statistics, shown for aborted and failed runs."""
        return (
            f"{self.status.value}: {len(self.completed)} completed, "
            f"{len(self.failed)} failed, {len(self.skipped)} skipped, "
            f"{len(self.vars)} variables captured"
        )

    def to_dict(self) -> dict[str, Any]:
        outputs: dict[str, Any] = {}
        if self.graph is not None:
            for nid in sorted(self.graph.nodes):
                node = self.graph.nodes[nid]
                outputs[str(nid)] = {
                    "name": node.display_name(),
                    "status": node.status.value,
                    "output": (
                        node.output[:_RESULT_OUTPUT_LIMIT] + "... [truncated]"
                        if len(node.output) > _RESULT_OUTPUT_LIMIT
                        else node.output
                    ),
                    "error": node.error,
                    "attempts": node.attempts,
                    "duration_seconds": node.duration_seconds,
                }
        return {
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "total_duration_seconds": self.total_duration_seconds,
            "vars": dict(self.vars),
            "completed": sorted(self.completed),
            "failed": sorted(self.failed),
            "skipped": sorted(self.skipped),
            "pruned": sorted(self.pruned),
            "failures": [
                {"node_id": f.node_id, "agent": f.agent_ref, "error": f.error, "attempt": f.attempt}
                for f in self.failures
            ],
            "nodes": outputs,
            "trace": [t.to_dict() for t in self.trace],
        }
