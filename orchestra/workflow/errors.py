"""Validation, runtime and steering errors for compiled workflows."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from orchestra.dsl.errors import WorkflowError
from orchestra.dsl.tokens import Position


class ValidationErrorKind(StrEnum):
    UNKNOWN_AGENT = "UnknownAgent"
    ORPHANED_NODE = "OrphanedNode"
    ILLEGAL_CYCLE = "IllegalCycle"
    UNDEFINED_VARIABLE = "UndefinedVariable"
    VARIABLE_NOT_GUARANTEED = "VariableNotGuaranteed"
    UNDEFINED_TEMP_AGENT = "UndefinedTempAgent"
    UNCLOSED_SUBGRAPH = "UnclosedSubgraph"
    DUPLICATE_VARIABLE = "DuplicateVariable"


@dataclass(frozen=True, slots=True)
class ValidationError:
    """One problem found by the static validator."""

    kind: ValidationErrorKind
    message: str
    node_id: int | None = None
    name: str | None = None
    path: tuple[int, ...] = ()
    pos: Position | None = None

    def __str__(self) -> str:
        where = f" ({self.pos})" if self.pos else ""
        return f"{self.kind.value}: {self.message}{where}"


class WorkflowValidationError(WorkflowError):
    """Raised when a graph fails validation; carries every problem found."""

    def __init__(self, errors: list[ValidationError]) -> None:
        self.errors = list(errors)
        lines = "\n".join(f"  - {e}" for e in self.errors)
        super().__init__(f"workflow validation failed:\n{lines}")


class NodeRuntimeError(WorkflowError):
    """An agent execution failure for one node."""

    def __init__(self, node_id: int, message: str) -> None:
        self.node_id = node_id
        super().__init__(message)


class UndefinedVariableError(WorkflowError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Variable not found: {name}")


class VariableConflictError(WorkflowError):
    def __init__(self, name: str, producer: int | None, other: int) -> None:
        self.name = name
        super().__init__(
            f"Variable '{name}' was already produced by node {producer}; "
            f"node {other} cannot rebind it"
        )


class SteeringError(WorkflowError):
    """A steering command that is invalid for the current state.

    Recoverable: the controller re-prompts without touching execution state.
    """
