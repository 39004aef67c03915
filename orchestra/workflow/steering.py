"""Operator steering: what happens when a run pauses.

A run pauses at every checkpoint and, when a handler is configured, on
every node failure. The scheduler hands the pause to a SteeringController,
which asks the SteeringHandler for a command, applies it to the execution
state and tells the scheduler how to proceed.

The handoff is a plain awaited call: the scheduler does nothing else while
the operator decides. QueueSteeringHandler turns that call into a pair of
queues so another task (a UI, a test) can answer prompts as they arrive.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol, runtime_checkable

from loguru import logger

from orchestra.config.schema import EngineConfig
from orchestra.dsl.ast import AgentCall
from orchestra.dsl.errors import WorkflowError
from orchestra.dsl.lexer import tokenize
from orchestra.dsl.parser import parse
from orchestra.workflow.builder import GraphBuilder
from orchestra.workflow.compiler import compile_workflow
from orchestra.workflow.errors import SteeringError, UndefinedVariableError
from orchestra.workflow.models import Graph, NodeID, NodeStatus, RunStatus
from orchestra.workflow.registry import AgentRegistry
from orchestra.workflow.state import ExecutionState, SteeringMode, SteeringState
from orchestra.workflow.validator import temp_agent_refs


class SteeringAction(StrEnum):
    CONTINUE = "continue"
    JUMP = "jump"
    REPEAT = "repeat"
    EDIT = "edit"
    VIEW_OUTPUT = "view_output"
    QUIT = "quit"
    RETRY = "retry"
    SKIP = "skip"
    FORK = "fork"
    DEBUG = "debug"


CHECKPOINT_ACTIONS: tuple[SteeringAction, ...] = (
    SteeringAction.CONTINUE,
    SteeringAction.JUMP,
    SteeringAction.REPEAT,
    SteeringAction.EDIT,
    SteeringAction.VIEW_OUTPUT,
    SteeringAction.QUIT,
)

FAILURE_ACTIONS: tuple[SteeringAction, ...] = (
    SteeringAction.RETRY,
    SteeringAction.SKIP,
    SteeringAction.FORK,
    SteeringAction.DEBUG,
    SteeringAction.QUIT,
)


@dataclass(frozen=True, slots=True)
class SteeringCommand:
    """One operator decision. Build these with the classmethods."""

    action: SteeringAction
    node_id: NodeID | None = None
    syntax: str = ""
    branches: tuple[str, ...] = ()

    @classmethod
    def continue_(cls) -> SteeringCommand:
        return cls(SteeringAction.CONTINUE)

    @classmethod
    def jump(cls, node_id: NodeID) -> SteeringCommand:
        return cls(SteeringAction.JUMP, node_id=node_id)

    @classmethod
    def repeat(cls) -> SteeringCommand:
        return cls(SteeringAction.REPEAT)

    @classmethod
    def edit(cls, syntax: str) -> SteeringCommand:
        return cls(SteeringAction.EDIT, syntax=syntax)

    @classmethod
    def view_output(cls, node_id: NodeID) -> SteeringCommand:
        return cls(SteeringAction.VIEW_OUTPUT, node_id=node_id)

    @classmethod
    def quit(cls) -> SteeringCommand:
        return cls(SteeringAction.QUIT)

    @classmethod
    def retry(cls) -> SteeringCommand:
        return cls(SteeringAction.RETRY)

    @classmethod
    def skip(cls) -> SteeringCommand:
        return cls(SteeringAction.SKIP)

    @classmethod
    def fork(cls, *branches: str) -> SteeringCommand:
        return cls(SteeringAction.FORK, branches=tuple(branches))

    @classmethod
    def debug(cls, syntax: str) -> SteeringCommand:
        return cls(SteeringAction.DEBUG, syntax=syntax)

    def describe(self) -> str:
        if self.node_id is not None:
            return f"{self.action.value} {self.node_id}"
        if self.branches:
            return f"{self.action.value} [{' || '.join(self.branches)}]"
        if self.syntax:
            return f"{self.action.value} {self.syntax}"
        return self.action.value


class PauseKind(StrEnum):
    CHECKPOINT = "checkpoint"
    FAILURE = "failure"


@dataclass(frozen=True, slots=True)
class SteeringPrompt:
    """What the operator sees at a pause."""

    kind: PauseKind
    node_id: NodeID
    label: str = ""
    prompt: str = ""
    error: str = ""
    reachable_outputs: Mapping[NodeID, str] = field(default_factory=dict)
    variables: Mapping[str, str] = field(default_factory=dict)
    options: tuple[SteeringAction, ...] = ()
    # Feedback on the previous command at this pause (an error or requested output).
    notice: str = ""
    attempt: int = 1


@runtime_checkable
class SteeringHandler(Protocol):
    async def decide(self, prompt: SteeringPrompt) -> SteeringCommand: ...


class QueueSteeringHandler:
    """Steering handler backed by two asyncio queues.

    The engine puts every prompt on ``prompts`` and waits on ``commands``.
    Commands may be queued ahead of time with ``send``.
    """

    def __init__(self) -> None:
        self.prompts: asyncio.Queue[SteeringPrompt] = asyncio.Queue()
        self.commands: asyncio.Queue[SteeringCommand] = asyncio.Queue()

    async def decide(self, prompt: SteeringPrompt) -> SteeringCommand:
        await self.prompts.put(prompt)
        return await self.commands.get()

    def send(self, command: SteeringCommand) -> None:
        self.commands.put_nowait(command)

    async def next_prompt(self) -> SteeringPrompt:
        return await self.prompts.get()


class SteeringOutcome(StrEnum):
    RESUME = "resume"
    QUIT = "quit"
    EDIT = "edit"


@dataclass(frozen=True, slots=True)
class SteeringResult:
    outcome: SteeringOutcome
    # Replacement graph, set only for EDIT.
    graph: Graph | None = None


class SteeringController:
    """Applies operator commands to an ExecutionState on behalf of the scheduler."""

    def __init__(
        self,
        handler: SteeringHandler,
        registry: AgentRegistry,
        config: EngineConfig | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> None:
        self._handler = handler
        self._registry = registry
        self._config = config or EngineConfig()
        self._abort_event = abort_event

    # -- pause points ------------------------------------------------------

    async def at_checkpoint(self, state: ExecutionState, node_id: NodeID) -> SteeringResult:
        node = state.graph.nodes[node_id]
        state.transition(RunStatus.PAUSED)
        logger.info("Paused at checkpoint @{} (node {})", node.label, node_id)
        return await self._converse(state, node_id, SteeringMode.CHECKPOINT, CHECKPOINT_ACTIONS)

    async def on_failure(self, state: ExecutionState, node_id: NodeID) -> SteeringResult:
        node = state.graph.nodes[node_id]
        state.transition(RunStatus.FAILED)
        logger.info("Awaiting recovery for node {} ({}): {}", node_id, node.display_name(), node.error)
        return await self._converse(state, node_id, SteeringMode.FAILURE, FAILURE_ACTIONS)

    async def _converse(
        self,
        state: ExecutionState,
        node_id: NodeID,
        mode: SteeringMode,
        options: tuple[SteeringAction, ...],
    ) -> SteeringResult:
        state.steering = SteeringState(mode, node_id)
        notice = ""
        invalid = 0
        while True:
            state.steering.attempts += 1
            prompt = self._build_prompt(state, node_id, mode, options, notice)
            command = await self._ask(prompt)
            state.steering.last_command = command.describe()
            state.record("steer", node_id, command.describe())
            logger.debug("Steering command for node {}: {}", node_id, command.describe())

            try:
                if command.action not in options:
                    raise SteeringError(
                        f"'{command.action.value}' is not available here; "
                        f"choose one of: {', '.join(a.value for a in options)}"
                    )
                if command.action == SteeringAction.QUIT:
                    logger.info("Operator quit the run at node {}", node_id)
                    return SteeringResult(SteeringOutcome.QUIT)
                if command.action == SteeringAction.VIEW_OUTPUT:
                    notice = self._view_output(state, command.node_id)
                    continue
                result = self._apply(state, node_id, command)
            except SteeringError as exc:
                invalid += 1
                logger.warning("Rejected steering command '{}': {}", command.describe(), exc)
                if invalid >= self._config.max_steering_attempts:
                    logger.error(
                        "Giving up on node {} after {} invalid steering commands", node_id, invalid
                    )
                    state.record("steer_exhausted", node_id, str(exc))
                    return SteeringResult(SteeringOutcome.QUIT)
                notice = str(exc)
                continue

            state.transition(RunStatus.RUNNING)
            state.steering = SteeringState()
            return result

    async def _ask(self, prompt: SteeringPrompt) -> SteeringCommand:
        """Wait for the handler, treating an abort request as ``quit``."""
        if self._abort_event is None:
            return await self._handler.decide(prompt)
        if self._abort_event.is_set():
            return SteeringCommand.quit()

        decide = asyncio.ensure_future(self._handler.decide(prompt))
        aborted = asyncio.ensure_future(self._abort_event.wait())
        try:
            done, _ = await asyncio.wait({decide, aborted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            aborted.cancel()
        if decide in done:
            return decide.result()
        decide.cancel()
        return SteeringCommand.quit()

    def _build_prompt(
        self,
        state: ExecutionState,
        node_id: NodeID,
        mode: SteeringMode,
        options: tuple[SteeringAction, ...],
        notice: str,
    ) -> SteeringPrompt:
        graph = state.graph
        node = graph.nodes[node_id]
        reachable = {
            nid: graph.nodes[nid].output
            for nid in sorted(graph.ancestors(node_id))
            if graph.nodes[nid].status == NodeStatus.COMPLETED
        }
        if mode == SteeringMode.CHECKPOINT:
            try:
                text = state.vars.interpolate(node.instruction_template)
            except UndefinedVariableError:
                text = node.instruction_template
            return SteeringPrompt(
                kind=PauseKind.CHECKPOINT,
                node_id=node_id,
                label=node.label or "",
                prompt=text or f"Checkpoint @{node.label}: review and continue?",
                reachable_outputs=reachable,
                variables=state.vars.snapshot(),
                options=options,
                notice=notice,
                attempt=state.steering.attempts,
            )
        return SteeringPrompt(
            kind=PauseKind.FAILURE,
            node_id=node_id,
            prompt=f"Node {node_id} ({node.display_name()}) failed",
            error=node.error,
            reachable_outputs=reachable,
            variables=state.vars.snapshot(),
            options=options,
            notice=notice,
            attempt=state.steering.attempts,
        )

    # -- commands ----------------------------------------------------------

    def _apply(self, state: ExecutionState, node_id: NodeID, command: SteeringCommand) -> SteeringResult:
        action = command.action
        if action == SteeringAction.CONTINUE:
            self._complete_checkpoint(state, node_id)
        elif action == SteeringAction.JUMP:
            self._jump(state, node_id, command.node_id)
        elif action == SteeringAction.REPEAT:
            self._repeat(state, node_id)
        elif action == SteeringAction.EDIT:
            return SteeringResult(SteeringOutcome.EDIT, self._edit(command.syntax))
        elif action == SteeringAction.RETRY:
            self._retry(state, node_id)
        elif action == SteeringAction.SKIP:
            self._skip(state, node_id)
        elif action == SteeringAction.FORK:
            self._fork(state, node_id, command.branches)
        elif action == SteeringAction.DEBUG:
            self._debug(state, node_id, command.syntax)
        return SteeringResult(SteeringOutcome.RESUME)

    def _view_output(self, state: ExecutionState, target: NodeID | None) -> str:
        node = state.graph.nodes.get(target) if target is not None else None
        if node is None:
            raise SteeringError(f"No node {target} in this workflow")
        if node.status != NodeStatus.COMPLETED:
            return f"Node {target} ({node.display_name()}) has no output yet ({node.status.value})"
        return node.output

    def _complete_checkpoint(self, state: ExecutionState, node_id: NodeID) -> None:
        state.graph.nodes[node_id].mark_completed()
        state.record("checkpoint", node_id, "continue")

    def _jump(self, state: ExecutionState, node_id: NodeID, target: NodeID | None) -> None:
        graph = state.graph
        if target is None or target not in graph.nodes:
            raise SteeringError(f"Cannot jump to node {target}: no such node")
        if target == node_id:
            raise SteeringError("Cannot jump to the checkpoint itself; use continue")

        self._complete_checkpoint(state, node_id)
        if target in graph.descendants(node_id):
            between = (graph.descendants(node_id) & graph.ancestors(target)) - {target}
            passed = {nid for nid in between if not graph.nodes[nid].terminal}
            state.bypassed |= passed
            logger.info("Jumping forward to node {}, bypassing {}", target, sorted(passed))
        else:
            state.reset_nodes({target} | graph.descendants(target))
            logger.info("Jumping back to node {}", target)
        state.forced.add(target)

    def _repeat(self, state: ExecutionState, node_id: NodeID) -> None:
        graph = state.graph
        predecessors = {edge.source for edge in graph.incoming(node_id)}
        if not predecessors:
            raise SteeringError(f"@{graph.nodes[node_id].label} has no preceding step to repeat")
        reset = set(predecessors)
        for nid in predecessors:
            reset |= graph.descendants(nid)
        state.reset_nodes(reset)
        state.forced |= predecessors
        state.record("repeat", node_id, f"re-running {sorted(predecessors)}")

    def _edit(self, syntax: str) -> Graph:
        if not syntax.strip():
            raise SteeringError("edit needs replacement workflow syntax")
        try:
            return compile_workflow(syntax, self._registry)
        except WorkflowError as exc:
            raise SteeringError(f"Edited workflow rejected: {exc}") from exc

    def _retry(self, state: ExecutionState, node_id: NodeID) -> None:
        state.reset_nodes({node_id})
        state.forced.add(node_id)

    def _skip(self, state: ExecutionState, node_id: NodeID) -> None:
        state.graph.nodes[node_id].mark_skipped("skipped by operator")
        state.record("skip", node_id, "skipped by operator")

    def _parse_call(self, graph: Graph, syntax: str) -> AgentCall:
        """Parse a single agent call, checking its agent without touching the graph."""
        try:
            workflow = parse(tokenize(syntax), temp_agents=graph.temp_agents)
        except WorkflowError as exc:
            raise SteeringError(f"Invalid agent call {syntax!r}: {exc}") from exc
        call = workflow.body
        if workflow.definitions or not isinstance(call, AgentCall):
            raise SteeringError(f"Expected a single agent call, got {syntax!r}")

        ref = self._registry.resolve(f"${call.agent}" if call.temp else call.agent)
        if not self._registry.is_known(ref, temp_agent_refs(graph, self._registry)):
            raise SteeringError(f"Unknown agent '{ref}'")
        return call

    def _fork(self, state: ExecutionState, node_id: NodeID, branches: tuple[str, ...]) -> None:
        graph = state.graph
        if not branches:
            raise SteeringError("fork needs at least one alternative agent call")
        failed = graph.nodes[node_id]
        calls = [self._parse_call(graph, branch) for branch in branches]
        if len(calls) == 1 and calls[0].output_var is None and failed.output_var:
            calls[0] = dataclasses.replace(calls[0], output_var=failed.output_var)

        builder = GraphBuilder(self._registry)
        alternatives = [builder.add_call(graph, call).id for call in calls]

        incoming = graph.incoming(node_id, forward_only=False)
        outgoing = graph.outgoing(node_id, forward_only=False)
        for alt in alternatives:
            for edge in incoming:
                graph.add_edge(edge.source, alt, edge.predicate, back_edge=edge.back_edge)
            for edge in outgoing:
                graph.add_edge(alt, edge.target, edge.predicate, back_edge=edge.back_edge)
        graph.remove_edges(incoming + outgoing)

        def substitute(members: tuple[NodeID, ...]) -> tuple[NodeID, ...]:
            out: list[NodeID] = []
            for member in members:
                out.extend(alternatives if member == node_id else [member])
            return tuple(out)

        rewritten = []
        for edge in graph.edges:
            if node_id in edge.predicate.branch:
                edge = dataclasses.replace(
                    edge, predicate=edge.predicate.with_branch(substitute(edge.predicate.branch))
                )
                state.edge_results.pop(edge.edge_id, None)
            rewritten.append(edge)
        graph.edges = rewritten
        graph.bindings = [
            dataclasses.replace(
                binding,
                sources=substitute(binding.sources),
                predicate=binding.predicate.with_branch(substitute(binding.predicate.branch)),
            )
            if node_id in binding.sources
            else binding
            for binding in graph.bindings
        ]
        if node_id in graph.roots:
            graph.roots = sorted((set(graph.roots) - {node_id}) | set(alternatives))

        failed.mark_skipped("replaced by fork")
        state.forced.discard(node_id)
        state.forced |= set(alternatives)
        state.record("fork", node_id, f"replaced by {alternatives}")
        logger.info("Node {} replaced by alternatives {}", node_id, alternatives)

    def _debug(self, state: ExecutionState, node_id: NodeID, syntax: str) -> None:
        graph = state.graph
        call = self._parse_call(graph, syntax)
        inserted = GraphBuilder(self._registry).add_call(graph, call)
        graph.add_edge(inserted.id, node_id)
        state.reset_nodes({node_id})
        state.forced.discard(node_id)
        state.forced.add(inserted.id)
        state.record("debug", node_id, f"inserted node {inserted.id}")
        logger.info("Inserted node {} ({}) before node {}", inserted.id, inserted.display_name(), node_id)
