"""Per-run execution state owned by the scheduler."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum

from loguru import logger

from orchestra.workflow.models import (
    Graph,
    NodeFailure,
    NodeID,
    NodeStatus,
    RunStatus,
    TraceEvent,
)
from orchestra.workflow.variables import VariableStore

ALLOWED_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.IDLE: {RunStatus.RUNNING},
    RunStatus.RUNNING: {RunStatus.PAUSED, RunStatus.FAILED, RunStatus.COMPLETED, RunStatus.ABORTED},
    RunStatus.PAUSED: {RunStatus.RUNNING, RunStatus.ABORTED},
    RunStatus.FAILED: {RunStatus.RUNNING, RunStatus.ABORTED},
    RunStatus.COMPLETED: set(),
    RunStatus.ABORTED: set(),
}


class IllegalTransitionError(ValueError):
    pass


class SteeringMode(StrEnum):
    IDLE = "idle"
    CHECKPOINT = "checkpoint"
    FAILURE = "failure"


@dataclass(slots=True)
class SteeringState:
    mode: SteeringMode = SteeringMode.IDLE
    node_id: NodeID | None = None
    attempts: int = 0
    last_command: str | None = None


@dataclass(slots=True)
class ExecutionState:
    """Everything one run knows; discarded when the run terminates."""

    graph: Graph
    vars: VariableStore = field(default_factory=VariableStore)
    status: RunStatus = RunStatus.IDLE
    frontier: set[NodeID] = field(default_factory=set)
    # Dead-path eliminated nodes: SKIPPED, and never satisfy any edge.
    pruned: set[NodeID] = field(default_factory=set)
    # Nodes passed over by a forward jump: never dispatched, satisfy their edges.
    bypassed: set[NodeID] = field(default_factory=set)
    # Nodes dispatched on the next wave regardless of incoming edges.
    forced: set[NodeID] = field(default_factory=set)
    edge_results: dict[int, bool] = field(default_factory=dict)
    bindings_done: set[int] = field(default_factory=set)
    loop_counts: dict[int, int] = field(default_factory=dict)
    failures: list[NodeFailure] = field(default_factory=list)
    trace: list[TraceEvent] = field(default_factory=list)
    steering: SteeringState = field(default_factory=SteeringState)

    def _with_status(self, status: NodeStatus) -> set[NodeID]:
        return {nid for nid, node in self.graph.nodes.items() if node.status == status}

    @property
    def completed(self) -> set[NodeID]:
        return self._with_status(NodeStatus.COMPLETED)

    @property
    def failed(self) -> set[NodeID]:
        return self._with_status(NodeStatus.FAILED)

    @property
    def skipped(self) -> set[NodeID]:
        return self._with_status(NodeStatus.SKIPPED)

    def transition(self, new: RunStatus) -> None:
        if new == self.status:
            return
        if new not in ALLOWED_TRANSITIONS[self.status]:
            raise IllegalTransitionError(f"Illegal run transition: {self.status} -> {new}")
        logger.debug("Run status {} -> {}", self.status.value, new.value)
        self.status = new

    def record(self, event: str, node_id: NodeID | None = None, detail: str = "") -> None:
        self.trace.append(TraceEvent(len(self.trace) + 1, event, node_id, detail))

    def record_failure(self, node_id: NodeID, error: str) -> None:
        node = self.graph.nodes[node_id]
        self.failures.append(NodeFailure(node_id, node.agent_ref, error, node.attempts))

    def prune(self, node_id: NodeID, reason: str) -> None:
        node = self.graph.nodes[node_id]
        node.mark_skipped(reason)
        self.pruned.add(node_id)
        self.forced.discard(node_id)
        self.record("prune", node_id, reason)
        logger.warning("Node {} ({}) will not run: {}", node_id, node.display_name(), reason)

    def reset_nodes(self, node_ids: Iterable[NodeID]) -> None:
        """Return nodes to PENDING and forget everything derived from their last run."""
        ids = set(node_ids)
        for nid in ids:
            node = self.graph.nodes.get(nid)
            if node is None:
                continue
            node.reset()
            self.pruned.discard(nid)
            self.bypassed.discard(nid)

        for edge in self.graph.edges:
            if edge.source in ids or ids.intersection(edge.predicate.branch):
                self.edge_results.pop(edge.edge_id, None)
        for index, binding in enumerate(self.graph.bindings):
            if ids.intersection(binding.sources):
                self.bindings_done.discard(index)
