"""Workflow graphs: building, validating and executing compiled workflows."""

from orchestra.workflow.builder import GraphBuilder, build_graph
from orchestra.workflow.compiler import compile_workflow
from orchestra.workflow.engine import WorkflowEngine
from orchestra.workflow.errors import (
    NodeRuntimeError,
    SteeringError,
    UndefinedVariableError,
    ValidationError,
    ValidationErrorKind,
    VariableConflictError,
    WorkflowValidationError,
)
from orchestra.workflow.models import (
    Edge,
    Graph,
    Node,
    NodeKind,
    NodeStatus,
    Predicate,
    PredicateKind,
    RunStatus,
    WorkflowRunResult,
)
from orchestra.workflow.registry import BUILTIN_AGENTS, AgentRegistry
from orchestra.workflow.steering import (
    QueueSteeringHandler,
    SteeringAction,
    SteeringCommand,
    SteeringHandler,
    SteeringPrompt,
)
from orchestra.workflow.validator import validate
from orchestra.workflow.variables import VariableStore

__all__ = [
    "BUILTIN_AGENTS",
    "AgentRegistry",
    "Edge",
    "Graph",
    "GraphBuilder",
    "Node",
    "NodeKind",
    "NodeRuntimeError",
    "NodeStatus",
    "Predicate",
    "PredicateKind",
    "QueueSteeringHandler",
    "RunStatus",
    "SteeringAction",
    "SteeringCommand",
    "SteeringError",
    "SteeringHandler",
    "SteeringPrompt",
    "UndefinedVariableError",
    "ValidationError",
    "ValidationErrorKind",
    "VariableConflictError",
    "VariableStore",
    "WorkflowEngine",
    "WorkflowRunResult",
    "WorkflowValidationError",
    "build_graph",
    "compile_workflow",
    "validate",
]
