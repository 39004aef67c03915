"""Workflow engine: runs a compiled graph wave by wave.

A single scheduler coroutine owns the ExecutionState. Each iteration it
computes the frontier (pending nodes whose incoming forward edges are all
satisfied), pauses for the lowest-numbered checkpoint on the frontier if
there is one, and otherwise dispatches every frontier node concurrently and
waits for the whole wave before looking again. Outputs are captured into the
variable store by the scheduler, never by the node tasks.

Edges that can never be satisfied prune their targets (dead-path
elimination), so a false condition ends that branch without failing the run.
"""

from __future__ import annotations

import asyncio
from contextlib import nullcontext
from datetime import UTC, datetime
from enum import StrEnum

from loguru import logger

from orchestra.config.schema import OrchestraConfig
from orchestra.engines.types import ConditionInterpreter, ExecutorProtocol, KeywordConditionInterpreter
from orchestra.workflow.compiler import compile_workflow
from orchestra.workflow.errors import (
    UndefinedVariableError,
    VariableConflictError,
    WorkflowValidationError,
)
from orchestra.workflow.models import (
    Edge,
    Graph,
    Node,
    NodeID,
    NodeStatus,
    Predicate,
    PredicateKind,
    RunStatus,
    WorkflowRunResult,
)
from orchestra.workflow.registry import AgentRegistry
from orchestra.workflow.state import ExecutionState
from orchestra.workflow.steering import (
    SteeringController,
    SteeringHandler,
    SteeringOutcome,
    SteeringResult,
)
from orchestra.workflow.validator import validate
from orchestra.workflow.variables import VariableStore, is_truthy


class EdgeState(StrEnum):
    SATISFIED = "satisfied"
    DEAD = "dead"
    UNRESOLVED = "unresolved"


class WorkflowEngine:
    """Executes workflow graphs against an executor collaborator."""

    def __init__(
        self,
        config: OrchestraConfig,
        executor: ExecutorProtocol,
        registry: AgentRegistry | None = None,
        *,
        conditions: ConditionInterpreter | None = None,
        steering: SteeringHandler | None = None,
    ) -> None:
        self._config = config.engine
        self._executor = executor
        self._registry = registry or AgentRegistry(namespace=self._config.plugin_namespace)
        self._conditions = conditions or KeywordConditionInterpreter()
        self._steering = steering
        self._abort_event = asyncio.Event()
        self._controller: SteeringController | None = None

    @property
    def registry(self) -> AgentRegistry:
        return self._registry

    def compile(self, source: str) -> Graph:
        return compile_workflow(source, self._registry)

    def abort(self) -> None:
        """Stop the current run: in-flight nodes are cancelled and their results discarded."""
        logger.info("Abort requested")
        self._abort_event.set()

    async def run(self, workflow: Graph | str) -> WorkflowRunResult:
        """Run a graph (or workflow syntax) to a terminal status.

        Invalid workflows raise before anything executes. Node failures never
        raise; they are reported in the result.
        """
        graph = self.compile(workflow) if isinstance(workflow, str) else self._checked(workflow)
        for node in graph.nodes.values():
            node.reset()

        # Fresh per run: asyncio primitives bind to the loop that first awaits them.
        self._abort_event = asyncio.Event()
        if self._steering is not None:
            self._controller = SteeringController(
                self._steering, self._registry, self._config, self._abort_event
            )
        started = datetime.now(UTC)
        state = self._new_state(graph)
        state.transition(RunStatus.RUNNING)
        state.record("run_started", detail=f"{len(graph.nodes)} nodes")
        logger.info(
            "Starting workflow run: {} nodes, {} edges, {} layers",
            len(graph.nodes),
            len(graph.edges),
            len(graph.get_execution_order()),
        )

        state = await self._drive(state)
        return self._finish(state, started)

    def _checked(self, graph: Graph) -> Graph:
        errors = validate(graph, self._registry)
        if errors:
            logger.warning("Refusing to run invalid workflow ({} errors)", len(errors))
            raise WorkflowValidationError(errors)
        return graph

    def _new_state(self, graph: Graph, store: VariableStore | None = None) -> ExecutionState:
        return ExecutionState(
            graph=graph,
            vars=store if store is not None else VariableStore(self._config.max_variable_length),
        )

    # -- scheduler loop ----------------------------------------------------

    async def _drive(self, state: ExecutionState) -> ExecutionState:
        while True:
            if self._abort_event.is_set():
                self._quit(state, "abort requested")
                return state

            await self._resolve_bindings(state)
            frontier = await self._compute_frontier(state)
            if not frontier:
                return state
            state.frontier = frontier

            checkpoints = sorted(nid for nid in frontier if state.graph.nodes[nid].is_checkpoint)
            if checkpoints:
                result = await self._checkpoint(state, checkpoints[0])
                if result.outcome == SteeringOutcome.QUIT:
                    self._quit(state, f"quit at checkpoint node {checkpoints[0]}")
                    return state
                if result.outcome == SteeringOutcome.EDIT:
                    state = self._restart(state, result.graph)
                    continue
                await self._follow_back_edges(state, [checkpoints[0]])
                continue

            wave = sorted(frontier)
            if not await self._dispatch_wave(state, wave):
                self._quit(state, "aborted during wave")
                return state

            await self._resolve_bindings(state)
            await self._follow_back_edges(state, wave)

            if self._controller is None:
                continue
            for nid in wave:
                if state.graph.nodes[nid].status != NodeStatus.FAILED:
                    continue
                result = await self._controller.on_failure(state, nid)
                if result.outcome == SteeringOutcome.QUIT:
                    self._quit(state, f"quit after failure of node {nid}")
                    return state
                if result.outcome == SteeringOutcome.EDIT:
                    state = self._restart(state, result.graph)
                    break

    async def _checkpoint(self, state: ExecutionState, node_id: NodeID) -> SteeringResult:
        node = state.graph.nodes[node_id]
        state.forced.discard(node_id)
        node.mark_running()
        state.record("checkpoint_reached", node_id, node.label or "")
        if self._controller is None:
            node.mark_completed()
            state.record("checkpoint", node_id, "auto-continue")
            logger.info("Checkpoint @{} reached, continuing (no steering handler)", node.label)
            return SteeringResult(SteeringOutcome.RESUME)
        return await self._controller.at_checkpoint(state, node_id)

    def _restart(self, state: ExecutionState, graph: Graph | None) -> ExecutionState:
        """Continue on an edited graph, keeping values the new graph still declares."""
        if graph is None:
            raise ValueError("edit produced no graph")
        fresh = self._new_state(graph, state.vars.preserve(graph.declared_vars))
        fresh.failures = state.failures
        fresh.trace = state.trace
        fresh.transition(RunStatus.RUNNING)
        fresh.record("edit", detail=f"graph replaced ({len(graph.nodes)} nodes)")
        logger.info(
            "Workflow replaced by edit: {} nodes, {} variables kept",
            len(graph.nodes),
            len(fresh.vars),
        )
        return fresh

    def _quit(self, state: ExecutionState, reason: str) -> None:
        state.transition(RunStatus.ABORTED)
        state.record("aborted", detail=reason)
        logger.warning("Workflow run aborted: {}", reason)

    # -- frontier ----------------------------------------------------------

    async def _compute_frontier(self, state: ExecutionState) -> set[NodeID]:
        graph = state.graph
        while True:
            frontier: set[NodeID] = set()
            pruned_any = False
            for nid in sorted(graph.nodes):
                node = graph.nodes[nid]
                if node.status != NodeStatus.PENDING or nid in state.bypassed:
                    continue
                if nid in state.forced:
                    frontier.add(nid)
                    continue

                waiting = False
                dead: Edge | None = None
                for edge in graph.incoming(nid):
                    edge_state = await self._edge_state(state, edge)
                    if edge_state == EdgeState.DEAD:
                        dead = edge
                        break
                    if edge_state == EdgeState.UNRESOLVED:
                        waiting = True
                if dead is not None:
                    state.prune(
                        nid,
                        f"edge from node {dead.source} ({dead.predicate.describe()}) cannot be satisfied",
                    )
                    pruned_any = True
                elif not waiting:
                    frontier.add(nid)
            # Pruning can starve further nodes; settle before dispatching.
            if not pruned_any:
                return frontier

    async def _edge_state(self, state: ExecutionState, edge: Edge) -> EdgeState:
        graph = state.graph
        predicate = edge.predicate
        if edge.source in state.bypassed:
            return EdgeState.SATISFIED

        if predicate.on_branch:
            members = [m for m in predicate.branch if m in graph.nodes]
            if any(not graph.nodes[m].terminal and m not in state.bypassed for m in members):
                return EdgeState.UNRESOLVED
            if members and all(m in state.pruned for m in members):
                return EdgeState.DEAD
        else:
            source = graph.nodes[edge.source]
            if edge.source in state.pruned or source.status == NodeStatus.FAILED:
                return EdgeState.DEAD
            if not source.terminal:
                return EdgeState.UNRESOLVED
            if source.status == NodeStatus.SKIPPED:
                return EdgeState.DEAD if predicate.conditional else EdgeState.SATISFIED

        if not predicate.conditional:
            return EdgeState.SATISFIED
        if predicate.kind == PredicateKind.IF_VAR and predicate.name in self._pending_bindings(state):
            return EdgeState.UNRESOLVED

        result = state.edge_results.get(edge.edge_id)
        if result is None:
            result = await self._evaluate(state, predicate, graph.nodes[edge.source].output)
            state.edge_results[edge.edge_id] = result
            state.record("edge", edge.target, f"{edge.source} -> {edge.target} {predicate.describe()}: {result}")
        return EdgeState.SATISFIED if result else EdgeState.DEAD

    def _pending_bindings(self, state: ExecutionState) -> set[str]:
        return {
            binding.var
            for index, binding in enumerate(state.graph.bindings)
            if index not in state.bindings_done
        }

    async def _evaluate(self, state: ExecutionState, predicate: Predicate, last_output: str) -> bool:
        graph = state.graph
        kind = predicate.kind
        if kind == PredicateKind.IF_VAR:
            value = state.vars.get(predicate.name)
            if value is None:
                logger.warning("Condition variable '{}' is not set; treating it as false", predicate.name)
                result = False
            else:
                result = is_truthy(value)
        elif kind in (PredicateKind.IF_ALL_SUCCESS, PredicateKind.IF_ANY_SUCCESS):
            outcomes = [
                m in state.bypassed or graph.nodes[m].status == NodeStatus.COMPLETED
                for m in predicate.branch
                if m in graph.nodes
            ]
            result = all(outcomes) if kind == PredicateKind.IF_ALL_SUCCESS else any(outcomes)
        elif kind == PredicateKind.IF_LITERAL:
            result = await self._conditions.evaluate(
                predicate.text,
                last_output=last_output,
                variables=state.vars.snapshot(),
            )
        else:
            return True
        return not result if predicate.negate else bool(result)

    async def _resolve_bindings(self, state: ExecutionState) -> None:
        graph = state.graph
        for index, binding in enumerate(graph.bindings):
            if index in state.bindings_done:
                continue
            sources = [graph.nodes[s] for s in binding.sources if s in graph.nodes]
            if any(not n.terminal and n.id not in state.bypassed for n in sources):
                continue
            state.bindings_done.add(index)
            if all(n.id in state.pruned for n in sources):
                continue

            succeeded = [n for n in sources if n.status == NodeStatus.COMPLETED]
            if binding.predicate.on_branch or succeeded:
                last_output = succeeded[-1].output if succeeded else ""
                value = await self._evaluate(state, binding.predicate, last_output)
            else:
                value = False
            try:
                state.vars.bind(binding.var, "true" if value else "false", binding.sources[-1])
            except VariableConflictError as exc:
                self._fail(state, graph.nodes[binding.sources[-1]], str(exc))
                continue
            state.record("bind", binding.sources[-1], f"{binding.var} = {str(value).lower()}")
            logger.debug("Condition {} bound {} = {}", binding.predicate.describe(), binding.var, value)

    async def _follow_back_edges(self, state: ExecutionState, finished: list[NodeID]) -> None:
        graph = state.graph
        for edge in graph.back_edges():
            if edge.source not in finished:
                continue
            if await self._edge_state(state, edge) != EdgeState.SATISFIED:
                continue
            taken = state.loop_counts.get(edge.edge_id, 0)
            if taken >= self._config.max_loop_iterations:
                logger.warning(
                    "Loop back to node {} hit the limit of {} iterations; not taking it",
                    edge.target,
                    self._config.max_loop_iterations,
                )
                state.record("loop_limit", edge.target, f"from node {edge.source}")
                continue
            state.loop_counts[edge.edge_id] = taken + 1
            state.reset_nodes({edge.target} | graph.descendants(edge.target))
            state.record("loop", edge.target, f"iteration {taken + 1} from node {edge.source}")
            logger.info(
                "Looping back to @{} from node {} (iteration {})",
                graph.nodes[edge.target].label,
                edge.source,
                taken + 1,
            )

    # -- dispatch ----------------------------------------------------------

    async def _dispatch_wave(self, state: ExecutionState, wave: list[NodeID]) -> bool:
        """Run one wave to its barrier. Returns False if the run was aborted meanwhile."""
        graph = state.graph
        for nid in wave:
            state.forced.discard(nid)
            graph.nodes[nid].mark_ready()
        logger.debug("Dispatching wave: {}", ", ".join(graph.nodes[n].display_name() for n in wave))

        limit = self._config.max_concurrency
        semaphore = asyncio.Semaphore(limit) if limit else None
        tasks = {
            asyncio.create_task(self._invoke(state, graph.nodes[nid], semaphore)): nid for nid in wave
        }
        aborted = asyncio.create_task(self._abort_event.wait())
        pending = set(tasks)
        try:
            while pending:
                done, _ = await asyncio.wait(pending | {aborted}, return_when=asyncio.FIRST_COMPLETED)
                if aborted in done:
                    for task in pending:
                        task.cancel()
                    await asyncio.gather(*pending, return_exceptions=True)
                    for task in pending:
                        graph.nodes[tasks[task]].mark_skipped("cancelled: run aborted")
                    pending = set()
                    break
                pending -= done
        finally:
            aborted.cancel()

        for task, nid in tasks.items():
            if task.cancelled():
                continue
            output, error = task.result()
            self._apply(state, graph.nodes[nid], output, error)
        return not self._abort_event.is_set()

    async def _invoke(
        self,
        state: ExecutionState,
        node: Node,
        semaphore: asyncio.Semaphore | None,
    ) -> tuple[str, str | None]:
        """Run one node. Returns ``(output, error)``; agent exceptions become the error."""
        async with semaphore or nullcontext():
            node.mark_running()
            state.record("dispatch", node.id, node.agent_ref)
            try:
                instruction = state.vars.interpolate(node.instruction_template)
            except UndefinedVariableError as exc:
                return "", str(exc)

            model = node.model or (self._config.default_temp_agent_model if node.temp_agent else None)
            timeout = self._config.node_timeout_seconds
            logger.debug("Node {} -> {} (model={})", node.id, node.agent_ref, model)
            try:
                call = self._executor.run(node.agent_ref, instruction, model=model)
                output = await asyncio.wait_for(call, timeout=timeout) if timeout else await call
            except TimeoutError:
                return "", f"Timed out after {timeout}s"
            except Exception as exc:
                return "", str(exc) or type(exc).__name__
            return str(output), None

    def _apply(self, state: ExecutionState, node: Node, output: str, error: str | None) -> None:
        if error is None and node.output_var:
            try:
                state.vars.bind(node.output_var, output, node.id)
            except VariableConflictError as exc:
                error = str(exc)

        if error is None:
            node.mark_completed(output)
            state.record("completed", node.id, f"{len(output)} chars")
            logger.info(
                "Node {} ({}) completed in {:.1f}s",
                node.id,
                node.display_name(),
                node.duration_seconds,
            )
            return

        self._fail(state, node, error)

    def _fail(self, state: ExecutionState, node: Node, error: str) -> None:
        node.mark_failed(error)
        state.record_failure(node.id, error)
        state.record("failed", node.id, error)
        logger.error("Node {} ({}) failed: {}", node.id, node.display_name(), error)

    # -- result ------------------------------------------------------------

    def _finish(self, state: ExecutionState, started: datetime) -> WorkflowRunResult:
        graph = state.graph
        if state.status != RunStatus.ABORTED:
            for nid in sorted(graph.nodes):
                if graph.nodes[nid].status == NodeStatus.PENDING and nid not in state.bypassed:
                    state.prune(nid, "unreachable")
            state.transition(RunStatus.FAILED if state.failed else RunStatus.COMPLETED)

        finished = datetime.now(UTC)
        state.record("run_finished", detail=state.status.value)
        result = WorkflowRunResult(
            status=state.status,
            vars=state.vars.to_dict(),
            completed=state.completed,
            failed=state.failed,
            skipped=state.skipped,
            pruned=set(state.pruned),
            failures=list(state.failures),
            trace=list(state.trace),
            graph=graph,
            started_at=started.isoformat(),
            completed_at=finished.isoformat(),
            total_duration_seconds=(finished - started).total_seconds(),
        )
        logger.info("Workflow run finished: {}", result.summary())
        return result
