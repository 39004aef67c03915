"""Tests for the recursive-descent workflow parser."""

from __future__ import annotations

import pytest

from orchestra.dsl import (
    AgentCall,
    Checkpoint,
    Conditional,
    Parallel,
    ParseError,
    Sequence,
    Subgraph,
    TempAgentDef,
    UndefinedTempAgentError,
    parse,
    tokenize,
)


def _parse(source: str):
    return parse(tokenize(source))


def _body(source: str):
    return _parse(source).body


# ===================================================================
# Atoms and precedence
# ===================================================================


def test_agent_call_with_output_var():
    call = _body('explore:"scan the repo":r')
    assert call == AgentCall("explore", "scan the repo", "r")


def test_bare_agent_name_has_empty_instruction():
    assert _body("a") == AgentCall("a", "")


def test_namespaced_agent():
    call = _body('plugin:reviewer:"check it"')
    assert call.agent == "plugin:reviewer"
    assert call.instruction_template == "check it"


def test_var_ref_as_instruction():
    call = _body("fix:{r}")
    assert call.instruction_template == "{r}"


def test_sequence_is_left_associative():
    body = _body("a -> b -> c")
    assert isinstance(body, Sequence)
    assert isinstance(body.left, Sequence)
    assert body.right == AgentCall("c", "")


def test_parallel_binds_tighter_than_sequence():
    body = _body("a || b -> c")
    assert isinstance(body, Sequence)
    assert body.left == Parallel((AgentCall("a", ""), AgentCall("b", "")))


def test_brackets_bind_tightest():
    body = _body("[a -> b] || c")
    assert isinstance(body, Parallel)
    assert isinstance(body.branches[0], Subgraph)
    assert isinstance(body.branches[0].body, Sequence)


def test_condition_is_loosest():
    body = _body("a -> b (if ok) ~> c -> d")
    assert isinstance(body, Conditional)
    assert isinstance(body.source, Sequence)
    assert isinstance(body.target, Sequence)
    assert body.predicate == "ok"


def test_negated_condition():
    body = _body("a (if !ok) ~> b")
    assert body.negate is True
    assert body.predicate == "ok"


def test_condition_bind_without_target():
    body = _body("t (if passed):ok ~> (if ok) ~> x")
    assert isinstance(body, Conditional)
    assert body.predicate == "ok"
    assert body.target == AgentCall("x", "")
    inner = body.source
    assert isinstance(inner, Conditional)
    assert inner.bind_var == "ok"
    assert inner.target is None
    assert inner.source == AgentCall("t", "")


def test_checkpoint_with_prompt():
    body = _body('a -> @review: "Look at {r}"')
    assert body.right == Checkpoint("review", "Look at {r}")


def test_parse_is_deterministic():
    source = '[a:"x":p || b:"y"] (all success)~> @gate -> c:"use {p}"'
    assert _parse(source) == _parse(source)


# ===================================================================
# Temp agents
# ===================================================================


class TestTempAgents:
    def test_definition_then_invocation(self):
        wf = _parse('$sec := {base: "general-purpose", prompt: "Audit", model: "opus"} $sec:"login"')
        assert wf.definitions == (TempAgentDef("sec", "general-purpose", "Audit", "opus"),)
        assert wf.body == AgentCall("sec", "login", temp=True)

    def test_trailing_comma_allowed(self):
        wf = _parse('$r := {base: Explore, prompt: "find",} $r')
        assert wf.definitions[0].base == "Explore"
        assert wf.definitions[0].model is None

    def test_invocation_before_definition(self):
        with pytest.raises(UndefinedTempAgentError) as exc:
            _parse('$ghost:"boo"')
        assert exc.value.name == "ghost"

    def test_missing_required_field(self):
        with pytest.raises(ParseError, match="field 'prompt'"):
            _parse('$r := {base: "Explore"} $r')

    def test_unknown_field(self):
        with pytest.raises(ParseError, match="one of base, prompt, model"):
            _parse('$r := {base: "Explore", colour: "red", prompt: "x"} $r')

    def test_duplicate_definition(self):
        with pytest.raises(ParseError, match="duplicate"):
            _parse('$r := {base: "Explore", prompt: "x"} $r := {base: "Plan", prompt: "y"} $r')

    def test_definition_inside_expression(self):
        with pytest.raises(ParseError, match="before the workflow expression"):
            _parse('$r := {base: "Explore", prompt: "x"} a -> $r := {base: "Plan", prompt: "y"}')

    def test_predeclared_temp_agents(self):
        definition = TempAgentDef("r", "Explore", "find")
        wf = parse(tokenize('$r:"again"'), temp_agents={"r": definition})
        assert wf.body == AgentCall("r", "again", temp=True)


# ===================================================================
# Errors
# ===================================================================


class TestParseErrors:
    def test_unclosed_bracket(self):
        with pytest.raises(ParseError) as exc:
            _parse("[a -> b")
        assert "']'" in exc.value.expected
        assert exc.value.found == "end of input"

    def test_stray_closing_bracket(self):
        with pytest.raises(ParseError, match="unmatched"):
            _parse("a -> b]")

    def test_condition_without_operand(self):
        with pytest.raises(ParseError, match="an operand before the condition"):
            _parse("(if ok) ~> b")

    def test_cond_operator_without_condition(self):
        with pytest.raises(ParseError, match=r"'\(if \.\.\.\)' before '~>'"):
            _parse("a ~> b")

    def test_condition_needs_target_or_bind(self):
        with pytest.raises(ParseError, match="a target after '~>'"):
            _parse("a (if ok) ~>")

    def test_invalid_bind_identifier(self):
        with pytest.raises(ParseError, match="a variable name"):
            _parse('a (if ok):"x" ~> b')

    def test_invalid_output_var(self):
        with pytest.raises(ParseError, match="an output variable name"):
            _parse('a:"x":"y"')

    def test_missing_instruction(self):
        with pytest.raises(ParseError, match="instruction string"):
            _parse("a: -> b")

    def test_empty_input(self):
        with pytest.raises(ParseError, match="a workflow expression"):
            _parse("")

    def test_error_reports_position(self):
        with pytest.raises(ParseError) as exc:
            _parse("a ->\n  -> b")
        assert exc.value.pos.line == 2
        assert "line 2" in str(exc.value)
