"""Tests for operator steering at checkpoints and on failures."""

from __future__ import annotations

import asyncio

import pytest

from orchestra.config.schema import EngineConfig, OrchestraConfig
from orchestra.workflow.engine import WorkflowEngine
from orchestra.workflow.models import NodeStatus, RunStatus
from orchestra.workflow.registry import AgentRegistry
from orchestra.workflow.steering import (
    CHECKPOINT_ACTIONS,
    FAILURE_ACTIONS,
    PauseKind,
    QueueSteeringHandler,
    SteeringAction,
    SteeringCommand,
    SteeringPrompt,
)

AGENTS = ["a", "b", "c", "d"]


class FakeExecutor:
    """Succeeds with ``done-<agent>``; agents in ``fail_times`` fail that many times first."""

    def __init__(self, fail_times: dict[str, int] | None = None):
        self._fail_times = dict(fail_times or {})
        self.called: list[str] = []

    async def run(self, agent_ref: str, instruction: str, *, model: str | None = None) -> str:
        name = agent_ref.split(":")[-1]
        self.called.append(name)
        if self._fail_times.get(name, 0) > 0:
            self._fail_times[name] -= 1
            raise RuntimeError(f"{name} exploded")
        return f"done-{name}"


class ScriptedHandler:
    """Answers prompts from a fixed list of commands, then quits."""

    def __init__(self, *commands: SteeringCommand):
        self._commands = list(commands)
        self.prompts: list[SteeringPrompt] = []

    async def decide(self, prompt: SteeringPrompt) -> SteeringCommand:
        self.prompts.append(prompt)
        if not self._commands:
            return SteeringCommand.quit()
        return self._commands.pop(0)


def _make_engine(executor, handler, **engine) -> WorkflowEngine:
    return WorkflowEngine(
        OrchestraConfig(engine=EngineConfig(**engine)),
        executor,
        AgentRegistry.with_agents(AGENTS),
        steering=handler,
    )


def _run(source: str, executor, handler, **engine):
    return asyncio.run(_make_engine(executor, handler, **engine).run(source))


def test_command_constructors():
    assert SteeringCommand.jump(3) == SteeringCommand(SteeringAction.JUMP, node_id=3)
    assert SteeringCommand.fork("a", "b").branches == ("a", "b")
    assert SteeringCommand.edit("a -> b").describe() == "edit a -> b"
    assert SteeringCommand.continue_().describe() == "continue"


# ===================================================================
# Checkpoints
# ===================================================================


class TestCheckpoint:
    def test_continue(self):
        executor = FakeExecutor()
        handler = ScriptedHandler(SteeringCommand.continue_())
        result = _run('a:"x" -> @review -> b', executor, handler)

        assert result.status == RunStatus.COMPLETED
        assert executor.called == ["a", "b"]
        prompt = handler.prompts[0]
        assert prompt.kind == PauseKind.CHECKPOINT
        assert prompt.label == "review"
        assert prompt.reachable_outputs == {1: "done-a"}
        assert prompt.options == CHECKPOINT_ACTIONS

    def test_prompt_is_interpolated(self):
        handler = ScriptedHandler(SteeringCommand.continue_())
        _run('a:"x":r -> @review: "Check {r}" -> b', FakeExecutor(), handler)
        assert handler.prompts[0].prompt == "Check done-a"
        assert handler.prompts[0].variables == {"r": "done-a"}

    def test_view_output_then_continue(self):
        handler = ScriptedHandler(SteeringCommand.view_output(1), SteeringCommand.continue_())
        result = _run('a:"x" -> @review -> b', FakeExecutor(), handler)
        assert result.status == RunStatus.COMPLETED
        assert len(handler.prompts) == 2
        assert handler.prompts[1].notice == "done-a"

    def test_quit_aborts_and_keeps_progress(self):
        executor = FakeExecutor()
        handler = ScriptedHandler(SteeringCommand.quit())
        result = _run('a:"x":r -> @review -> b', executor, handler)
        assert result.status == RunStatus.ABORTED
        assert executor.called == ["a"]
        assert result.vars == {"r": "done-a"}
        assert result.summary().startswith("aborted: 1 completed")

    def test_jump_forward_bypasses_intermediate_nodes(self):
        executor = FakeExecutor()
        handler = ScriptedHandler(SteeringCommand.jump(4))
        result = _run("@start -> a -> b -> c", executor, handler)

        assert result.status == RunStatus.COMPLETED
        assert executor.called == ["c"]
        assert result.completed == {1, 4}
        assert result.graph.nodes[2].status == NodeStatus.PENDING

    def test_jump_back_reruns_target(self):
        executor = FakeExecutor()
        handler = ScriptedHandler(SteeringCommand.jump(1), SteeringCommand.continue_())
        result = _run('a:"x" -> @review -> b', executor, handler)
        assert result.status == RunStatus.COMPLETED
        assert executor.called == ["a", "a", "b"]
        assert len(handler.prompts) == 2

    def test_jump_to_missing_node_reprompts(self):
        handler = ScriptedHandler(SteeringCommand.jump(99), SteeringCommand.continue_())
        result = _run('a:"x" -> @review -> b', FakeExecutor(), handler)
        assert result.status == RunStatus.COMPLETED
        assert "no such node" in handler.prompts[1].notice

    def test_repeat_reruns_predecessors(self):
        executor = FakeExecutor()
        handler = ScriptedHandler(SteeringCommand.repeat(), SteeringCommand.continue_())
        result = _run('[a:"x" || b:"y"] -> @review -> c', executor, handler)
        assert result.status == RunStatus.COMPLETED
        assert sorted(executor.called[:2]) == ["a", "b"]
        assert sorted(executor.called[2:4]) == ["a", "b"]
        assert executor.called[4:] == ["c"]

    def test_repeat_without_predecessor(self):
        handler = ScriptedHandler(SteeringCommand.repeat(), SteeringCommand.continue_())
        result = _run("@start -> a", FakeExecutor(), handler)
        assert result.status == RunStatus.COMPLETED
        assert "no preceding step" in handler.prompts[1].notice

    def test_edit_replaces_graph_and_keeps_declared_vars(self):
        executor = FakeExecutor()
        handler = ScriptedHandler(SteeringCommand.edit('a:"x":r -> c:"new {r}"'))
        result = _run('a:"x":r -> @review -> b:"old {r}"', executor, handler)

        assert result.status == RunStatus.COMPLETED
        assert executor.called == ["a", "a", "c"]
        assert result.vars == {"r": "done-a"}
        assert [n.agent_ref for n in result.graph.nodes.values()] == ["orchestration:a", "orchestration:c"]
        assert any(t.event == "edit" for t in result.trace)

    def test_invalid_edit_reprompts(self):
        handler = ScriptedHandler(SteeringCommand.edit("[a -> b"), SteeringCommand.continue_())
        result = _run('a:"x" -> @review -> b', FakeExecutor(), handler)
        assert result.status == RunStatus.COMPLETED
        assert "Edited workflow rejected" in handler.prompts[1].notice

    def test_failure_command_not_available_at_checkpoint(self):
        handler = ScriptedHandler(SteeringCommand.retry(), SteeringCommand.continue_())
        result = _run('a:"x" -> @review -> b', FakeExecutor(), handler)
        assert result.status == RunStatus.COMPLETED
        assert "'retry' is not available" in handler.prompts[1].notice

    def test_too_many_invalid_commands_aborts(self):
        handler = ScriptedHandler(SteeringCommand.retry(), SteeringCommand.retry())
        result = _run('a:"x" -> @review -> b', FakeExecutor(), handler, max_steering_attempts=2)
        assert result.status == RunStatus.ABORTED
        assert len(handler.prompts) == 2


# ===================================================================
# Failures
# ===================================================================


class TestFailure:
    def test_all_success_skip_scenario(self):
        """Skip is not success: the all-success edge stays false and c never runs."""
        executor = FakeExecutor({"a": 99})
        handler = ScriptedHandler(SteeringCommand.skip())
        result = _run("[a || b] (all success)~> c", executor, handler)

        prompt = handler.prompts[0]
        assert prompt.kind == PauseKind.FAILURE
        assert prompt.node_id == 1
        assert prompt.error == "a exploded"
        assert prompt.options == FAILURE_ACTIONS

        assert "c" not in executor.called
        assert result.status == RunStatus.COMPLETED
        assert result.graph.nodes[1].status == NodeStatus.SKIPPED
        assert result.completed == {2}
        assert len(result.failures) == 1

    def test_retry(self):
        executor = FakeExecutor({"a": 1})
        handler = ScriptedHandler(SteeringCommand.retry())
        result = _run('a:"x":r -> b:"use {r}"', executor, handler)
        assert result.status == RunStatus.COMPLETED
        assert executor.called == ["a", "a", "b"]
        assert result.graph.nodes[1].attempts == 2
        assert [f.attempt for f in result.failures] == [1]

    def test_quit_after_failure(self):
        handler = ScriptedHandler(SteeringCommand.quit())
        result = _run('a:"x" -> b', FakeExecutor({"a": 1}), handler)
        assert result.status == RunStatus.ABORTED
        assert result.failed == {1}
        assert result.failures[0].error == "a exploded"

    def test_skip_leaves_output_var_undefined(self):
        executor = FakeExecutor({"a": 1})
        handler = ScriptedHandler(SteeringCommand.skip(), SteeringCommand.skip())
        result = _run('a:"x":r -> b:"use {r}"', executor, handler)

        assert "r" not in result.vars
        assert executor.called == ["a"]
        assert [f.error for f in result.failures] == ["a exploded", "Variable not found: r"]
        assert result.status == RunStatus.COMPLETED

    def test_fork_replaces_failed_node(self):
        executor = FakeExecutor({"a": 1})
        handler = ScriptedHandler(SteeringCommand.fork('b:"alt 1"', 'c:"alt 2"'))
        result = _run('a:"x" -> d:"y"', executor, handler)

        assert result.status == RunStatus.COMPLETED
        assert executor.called[0] == "a"
        assert sorted(executor.called[1:3]) == ["b", "c"]
        assert executor.called[3] == "d"
        assert result.graph.nodes[1].status == NodeStatus.SKIPPED
        assert result.graph.nodes[1].error == "replaced by fork"
        assert sorted(e.source for e in result.graph.incoming(2)) == [3, 4]

    def test_single_fork_inherits_output_var(self):
        executor = FakeExecutor({"a": 1})
        handler = ScriptedHandler(SteeringCommand.fork('b:"alt"'))
        result = _run('a:"x":r -> d:"use {r}"', executor, handler)
        assert result.status == RunStatus.COMPLETED
        assert result.vars == {"r": "done-b"}

    def test_fork_taking_a_bound_name_fails_the_binding_node(self):
        executor = FakeExecutor({"a": 1})
        handler = ScriptedHandler(SteeringCommand.fork('d:"alt":ok'), SteeringCommand.skip())
        result = _run('a:"x" -> b:"w" (if passed):ok ~> (if ok)~> c:"z"', executor, handler)

        assert executor.called == ["a", "d", "b"]
        assert [f.error for f in result.failures] == [
            "a exploded",
            "Variable 'ok' was already produced by node 4; node 2 cannot rebind it",
        ]
        assert handler.prompts[1].kind == PauseKind.FAILURE
        assert handler.prompts[1].node_id == 2
        assert result.vars["ok"] == "done-d"
        assert 3 in result.pruned

    def test_fork_with_unknown_agent_reprompts(self):
        executor = FakeExecutor({"a": 1})
        handler = ScriptedHandler(SteeringCommand.fork('ghost:"x"'), SteeringCommand.skip())
        result = _run('a:"x" -> d:"y"', executor, handler)
        assert "Unknown agent 'orchestration:ghost'" in handler.prompts[1].notice
        assert len(result.graph.nodes) == 2
        assert executor.called == ["a", "d"]

    def test_fork_rejects_compound_syntax(self):
        handler = ScriptedHandler(SteeringCommand.fork("b -> c"), SteeringCommand.skip())
        _run('a:"x" -> d:"y"', FakeExecutor({"a": 1}), handler)
        assert "single agent call" in handler.prompts[1].notice

    def test_debug_inserts_node_before_retry(self):
        executor = FakeExecutor({"a": 1})
        handler = ScriptedHandler(SteeringCommand.debug('b:"investigate"'))
        result = _run('a:"x" -> d:"y"', executor, handler)
        assert result.status == RunStatus.COMPLETED
        assert executor.called == ["a", "b", "a", "d"]
        assert result.completed == {1, 2, 3}


# ===================================================================
# QueueSteeringHandler
# ===================================================================


class TestQueueSteeringHandler:
    @pytest.mark.asyncio
    async def test_round_trip(self):
        handler = QueueSteeringHandler()
        engine = _make_engine(FakeExecutor(), handler)
        task = asyncio.create_task(engine.run('a:"x":r -> @review: "Check {r}" -> b'))

        prompt = await handler.next_prompt()
        assert prompt.prompt == "Check done-a"
        handler.send(SteeringCommand.continue_())

        result = await task
        assert result.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_abort_while_paused(self):
        executor = FakeExecutor()
        handler = QueueSteeringHandler()
        engine = _make_engine(executor, handler)
        task = asyncio.create_task(engine.run('a:"x" -> @review -> b'))

        await handler.next_prompt()
        engine.abort()

        result = await task
        assert result.status == RunStatus.ABORTED
        assert executor.called == ["a"]

    @pytest.mark.asyncio
    async def test_failure_prompt_and_retry(self):
        executor = FakeExecutor({"a": 1})
        handler = QueueSteeringHandler()
        engine = _make_engine(executor, handler)
        task = asyncio.create_task(engine.run('a:"x" -> b'))

        prompt = await handler.next_prompt()
        assert prompt.kind == PauseKind.FAILURE
        assert prompt.error == "a exploded"
        handler.send(SteeringCommand.retry())

        result = await task
        assert result.status == RunStatus.COMPLETED
        assert executor.called == ["a", "a", "b"]
