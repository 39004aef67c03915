"""Tests for static workflow validation and the compile pipeline."""

from __future__ import annotations

import pytest

from orchestra.dsl import ParseError, Position, parse, tokenize
from orchestra.workflow.builder import build_graph
from orchestra.workflow.compiler import compile_workflow
from orchestra.workflow.errors import ValidationErrorKind, WorkflowValidationError
from orchestra.workflow.models import NodeKind, Predicate
from orchestra.workflow.registry import AgentRegistry
from orchestra.workflow.validator import extract_variable_references, guaranteed_predecessors, validate

REGISTRY = AgentRegistry.with_agents(["a", "b", "c", "f", "p", "q", "t", "x"])


def _graph(source: str):
    return build_graph(parse(tokenize(source)), REGISTRY)


def _kinds(source: str) -> list[ValidationErrorKind]:
    return [e.kind for e in validate(_graph(source), REGISTRY)]


def test_valid_pipeline_has_no_errors():
    assert _kinds('a:"scan":r -> b:"use {r}"') == []


def test_extract_variable_references():
    assert extract_variable_references("use {r} then {s-2} not {bad name}") == ["r", "s-2"]


# ===================================================================
# Agents
# ===================================================================


class TestAgents:
    def test_unknown_agent(self):
        errors = validate(_graph('a -> ghost:"boo"'), REGISTRY)
        assert [e.kind for e in errors] == [ValidationErrorKind.UNKNOWN_AGENT]
        assert errors[0].name == "orchestration:ghost"
        assert errors[0].node_id == 2

    def test_builtin_agent_is_known(self):
        assert _kinds('Explore:"look" -> general-purpose:"act"') == []

    def test_temp_agent_is_known(self):
        assert _kinds('$r := {base: "Explore", prompt: "find"} $r:"auth"') == []

    def test_temp_agent_with_unknown_base(self):
        assert _kinds('$r := {base: "wizard", prompt: "find"} $r') == [ValidationErrorKind.UNKNOWN_AGENT]

    def test_temp_agent_missing_from_graph(self):
        graph = _graph('$r := {base: "Explore", prompt: "find"} $r')
        graph.temp_agents.clear()
        kinds = [e.kind for e in validate(graph, REGISTRY)]
        assert kinds == [ValidationErrorKind.UNDEFINED_TEMP_AGENT]


# ===================================================================
# Structure
# ===================================================================


class TestStructure:
    def test_retry_loop_is_not_a_cycle(self):
        assert _kinds("@try -> f (if failed)~> @try") == []

    def test_back_edge_to_agent_is_illegal(self):
        graph = _graph('a:"x" -> b:"y"')
        graph.add_edge(2, 1, Predicate.if_literal("again"), back_edge=True)
        errors = validate(graph, REGISTRY)
        assert [e.kind for e in errors] == [ValidationErrorKind.ILLEGAL_CYCLE]
        assert errors[0].path == (1, 2, 1)

    def test_unconditional_loop_to_checkpoint_is_illegal(self):
        graph = _graph("@try -> f")
        graph.add_edge(2, 1, back_edge=True)
        assert [e.kind for e in validate(graph, REGISTRY)] == [ValidationErrorKind.ILLEGAL_CYCLE]

    def test_orphaned_node(self):
        graph = _graph('a:"x" -> b:"y"')
        graph.add_node(NodeKind.AGENT_CALL, agent_ref="orchestration:c")
        errors = validate(graph, REGISTRY)
        assert [e.kind for e in errors] == [ValidationErrorKind.ORPHANED_NODE]
        assert errors[0].node_id == 3

    def test_edge_to_missing_node(self):
        graph = _graph('a:"x" -> b:"y"')
        graph.add_edge(2, 99)
        kinds = [e.kind for e in validate(graph, REGISTRY)]
        assert ValidationErrorKind.ORPHANED_NODE in kinds

    def test_single_node_is_never_orphaned(self):
        graph = _graph("a")
        graph.roots = []
        assert validate(graph, REGISTRY) == []

    def test_unclosed_subgraph_reasserted(self):
        graph = _graph("a -> b")
        graph.unclosed_subgraphs.append(Position(1, 1, 0))
        assert [e.kind for e in validate(graph, REGISTRY)] == [ValidationErrorKind.UNCLOSED_SUBGRAPH]


# ===================================================================
# Variables
# ===================================================================


class TestVariables:
    def test_undefined_variable(self):
        errors = validate(_graph('a:"use {nope}"'), REGISTRY)
        assert [e.kind for e in errors] == [ValidationErrorKind.UNDEFINED_VARIABLE]
        assert errors[0].name == "nope"
        assert errors[0].node_id == 1

    def test_undefined_variable_inside_conditional_target(self):
        assert _kinds('a (if ready)~> b:"use {zzz}"') == [ValidationErrorKind.UNDEFINED_VARIABLE]

    def test_undefined_variable_in_predicate(self):
        assert _kinds("a (if {nope})~> b") == [ValidationErrorKind.UNDEFINED_VARIABLE]

    def test_use_before_produce_in_sequence(self):
        assert _kinds('b:"use {r}" -> a:"scan":r') == [ValidationErrorKind.VARIABLE_NOT_GUARANTEED]

    def test_use_in_sibling_branch(self):
        assert _kinds('[a:"scan":r || b:"use {r}"] -> c') == [ValidationErrorKind.VARIABLE_NOT_GUARANTEED]

    def test_use_before_produce_inside_conditional_target(self):
        kinds = _kinds('c (if ready)~> b:"use {r}" -> a:"scan":r')
        assert kinds == [ValidationErrorKind.VARIABLE_NOT_GUARANTEED]

    def test_join_guarantees_every_branch(self):
        assert _kinds('[a:"scan":r || b:"look":s] -> c:"{r} and {s}"') == []

    def test_producer_behind_condition_still_dominates_consumer(self):
        assert _kinds('t (if ready)~> p:"x":r -> c:"use {r}"') == []

    def test_bound_condition_is_guaranteed_for_its_edge(self):
        assert _kinds("t (if passed):ok ~> (if ok) ~> x") == []

    def test_parallel_nodes_sharing_output_var(self):
        errors = validate(_graph('[a:"x":r || b:"y":r]'), REGISTRY)
        assert [e.kind for e in errors] == [ValidationErrorKind.DUPLICATE_VARIABLE]
        assert errors[0].name == "r"
        assert errors[0].node_id == 2

    def test_condition_bind_reusing_output_var(self):
        errors = validate(_graph('a:"q":ok -> b:"w" (if passed):ok ~> (if ok)~> c:"z"'), REGISTRY)
        assert [e.kind for e in errors] == [ValidationErrorKind.DUPLICATE_VARIABLE]
        assert errors[0].node_id == 2
        assert "already produced by node 1" in errors[0].message

    def test_retry_loop_rebinding_is_one_producer(self):
        assert _kinds('@try -> f:"build":log (if failed)~> @try') == []

    def test_guaranteed_predecessors(self):
        graph = _graph('[a || b] -> c -> @try -> f (if failed)~> @try')
        guaranteed = guaranteed_predecessors(graph)
        assert guaranteed[3] == {1, 2}
        assert guaranteed[5] == {1, 2, 3, 4}


def test_all_errors_reported_together():
    kinds = _kinds('ghost:"use {nope}" -> b:"use {later}" -> c:"x":later')
    assert ValidationErrorKind.UNKNOWN_AGENT in kinds
    assert ValidationErrorKind.UNDEFINED_VARIABLE in kinds
    assert ValidationErrorKind.VARIABLE_NOT_GUARANTEED in kinds


# ===================================================================
# compile_workflow
# ===================================================================


class TestCompile:
    def test_compiles_valid_workflow(self):
        graph = compile_workflow('a:"scan":r -> b:"use {r}"', REGISTRY)
        assert len(graph.nodes) == 2

    def test_raises_with_every_error(self):
        with pytest.raises(WorkflowValidationError) as exc:
            compile_workflow('ghost:"use {nope}"', REGISTRY)
        kinds = {e.kind for e in exc.value.errors}
        assert kinds == {ValidationErrorKind.UNKNOWN_AGENT, ValidationErrorKind.UNDEFINED_VARIABLE}
        assert "UnknownAgent" in str(exc.value)

    def test_unclosed_bracket_is_parse_error(self):
        with pytest.raises(ParseError):
            compile_workflow("[a -> b", REGISTRY)
