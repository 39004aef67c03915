"""Full front-end pipeline: syntax -> tokens -> AST -> graph -> validated graph."""

from __future__ import annotations

from loguru import logger

from orchestra.dsl.lexer import tokenize
from orchestra.dsl.parser import parse
from orchestra.workflow.builder import GraphBuilder
from orchestra.workflow.errors import WorkflowValidationError
from orchestra.workflow.models import Graph
from orchestra.workflow.registry import AgentRegistry
from orchestra.workflow.validator import validate


def compile_workflow(source: str, registry: AgentRegistry | None = None) -> Graph:
    """Compile workflow syntax into a graph that is safe to execute.

    Raises LexError or ParseError for malformed syntax and
    WorkflowValidationError (carrying every problem found) for a graph that
    must not run. Nothing is executed here.
    """
    registry = registry or AgentRegistry()
    workflow = parse(tokenize(source))
    graph = GraphBuilder(registry).build(workflow)
    errors = validate(graph, registry)
    if errors:
        logger.warning("Workflow failed validation with {} error(s)", len(errors))
        raise WorkflowValidationError(errors)
    return graph
