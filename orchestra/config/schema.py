"""Configuration schema for the workflow engine."""

from __future__ import annotations

from pydantic import BaseModel, Field


class EngineConfig(BaseModel):
    """Scheduler and steering limits."""

    plugin_namespace: str = Field(
        default="orchestration",
        min_length=1,
        description="Namespace prefixed to bare agent names and temp agents",
    )
    node_timeout_seconds: int | None = Field(
        default=None,
        ge=1,
        description="Per-node executor timeout (None = leave timeouts to the executor)",
    )
    max_concurrency: int | None = Field(
        default=None,
        ge=1,
        description="Upper bound on nodes dispatched at once within a wave (None = unbounded)",
    )
    max_variable_length: int = Field(
        default=50_000,
        ge=1,
        description="Captured values longer than this are truncated",
    )
    max_loop_iterations: int = Field(
        default=10,
        ge=1,
        description="How many times a retry-loop back-edge may be taken per run",
    )
    max_steering_attempts: int = Field(
        default=10,
        ge=1,
        description="Invalid steering commands tolerated at one pause before the run aborts",
    )
    default_temp_agent_model: str = Field(
        default="sonnet",
        description="Model used for temp agents whose definition names none",
    )


class OrchestraConfig(BaseModel):
    """Root configuration object."""

    engine: EngineConfig = Field(default_factory=EngineConfig)
