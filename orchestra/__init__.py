"""orchestra: a workflow DSL and runtime for multi-agent task graphs."""

from orchestra.config import OrchestraConfig, load_config
from orchestra.dsl import LexError, ParseError, WorkflowError
from orchestra.workflow import (
    AgentRegistry,
    SteeringCommand,
    WorkflowEngine,
    WorkflowRunResult,
    WorkflowValidationError,
    compile_workflow,
)

__version__ = "0.1.0"

__all__ = [
    "AgentRegistry",
    "LexError",
    "OrchestraConfig",
    "ParseError",
    "SteeringCommand",
    "WorkflowEngine",
    "WorkflowError",
    "WorkflowRunResult",
    "WorkflowValidationError",
    "__version__",
    "compile_workflow",
    "load_config",
]
