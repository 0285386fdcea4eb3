"""SQLModel database models and tables.

Scheduling timestamps are Unix epoch floats so comparisons behave the same
on every backend (SQLite drops timezone information from DATETIME columns).
"""

import time
import uuid
from typing import Optional, Dict, Any, List
from sqlmodel import SQLModel, Field, Column, JSON, UniqueConstraint


def new_id() -> str:
    return str(uuid.uuid4())


class Workflow(SQLModel, table=True):
    """Workflow definitions (nodes and edges as stored by the editor)."""

    __tablename__ = "workflows"

    id: str = Field(primary_key=True, max_length=255)
    workspace_id: str = Field(index=True, max_length=255)
    name: str = Field(default="", max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    nodes: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    edges: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)


class CompiledPlanRecord(SQLModel, table=True):
    """Compiled plan cache, keyed by (workflow_id, version_hash, optimization_level).

    Rows are only removed by explicit invalidation.
    """

    __tablename__ = "compiled_plans"
    __table_args__ = (
        UniqueConstraint("workflow_id", "version_hash", "optimization_level",
                         name="uq_compiled_plan_key"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    workflow_id: str = Field(index=True, max_length=255)
    version_hash: str = Field(max_length=64)
    optimization_level: str = Field(default="basic", max_length=20)
    plan: Dict[str, Any] = Field(sa_column=Column(JSON))
    created_at: float = Field(default_factory=time.time)


class QueueItem(SQLModel, table=True):
    """Pending unit of work. Mutated only by the queue processor.

    Status lifecycle: pending -> processing -> completed
                                           -> failed -> (retry) processing
                                           -> dead_letter
    """

    __tablename__ = "queue_items"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    workflow_id: str = Field(index=True, max_length=255)
    workspace_id: str = Field(index=True, max_length=255)
    priority: int = Field(default=1, index=True)  # QueuePriority value
    status: str = Field(default="pending", index=True, max_length=20)
    scheduled_at: float = Field(default_factory=time.time, index=True)
    started_at: Optional[float] = Field(default=None)
    completed_at: Optional[float] = Field(default=None)
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    next_retry_at: Optional[float] = Field(default=None, index=True)
    execution_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    error_message: Optional[str] = Field(default=None, max_length=2000)
    created_at: float = Field(default_factory=time.time)


class CircuitBreakerRecord(SQLModel, table=True):
    """Persisted circuit breaker state per (workspace, integration)."""

    __tablename__ = "circuit_breakers"
    __table_args__ = (
        UniqueConstraint("workspace_id", "integration_type", name="uq_circuit_breaker_key"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    workspace_id: str = Field(index=True, max_length=255)
    integration_type: str = Field(max_length=100)
    status: str = Field(default="closed", max_length=20)
    failure_count: int = Field(default=0)
    failure_threshold: int = Field(default=5)
    half_open_success_count: int = Field(default=0)
    last_failure_at: Optional[float] = Field(default=None)
    reset_timeout: float = Field(default=60.0)  # seconds
    metrics: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    updated_at: float = Field(default_factory=time.time)


class RateLimitRecord(SQLModel, table=True):
    """Persisted fixed-window counter per (workspace, resource type)."""

    __tablename__ = "rate_limits"
    __table_args__ = (
        UniqueConstraint("workspace_id", "resource_type", name="uq_rate_limit_key"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    workspace_id: str = Field(index=True, max_length=255)
    resource_type: str = Field(max_length=100)
    window_start: float = Field(default_factory=time.time)
    window_seconds: float = Field(default=60.0)
    current_count: int = Field(default=0)
    max_requests: int = Field(default=60)
    updated_at: float = Field(default_factory=time.time)


class DeadLetterEntry(SQLModel, table=True):
    """Terminal home for queue items that exhausted their retry budget.

    Never deleted automatically.
    """

    __tablename__ = "dead_letter_entries"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    queue_item_id: str = Field(index=True, max_length=36)
    workflow_id: str = Field(index=True, max_length=255)
    workspace_id: str = Field(index=True, max_length=255)
    failure_count: int = Field(default=0)
    last_error: str = Field(default="", max_length=2000)
    execution_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    failed_at: float = Field(default_factory=time.time)
    investigated: bool = Field(default=False)
    resolution_notes: Optional[str] = Field(default=None, max_length=2000)
    resolved_at: Optional[float] = Field(default=None)
    resolved_by: Optional[str] = Field(default=None, max_length=255)


class HealingLog(SQLModel, table=True):
    """Append-only audit trail of self-healing attempts."""

    __tablename__ = "healing_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    workflow_id: str = Field(index=True, max_length=255)
    workspace_id: Optional[str] = Field(default=None, max_length=255)
    execution_id: Optional[str] = Field(default=None, max_length=255)
    failure_type: str = Field(max_length=50)
    original_error: str = Field(max_length=2000)
    healing_action: str = Field(max_length=255)
    healing_strategy: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    success: bool = Field(default=False)
    attempted_at: float = Field(default_factory=time.time)
    completed_at: Optional[float] = Field(default=None)
    recovery_time_ms: Optional[float] = Field(default=None)
    learned_pattern: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))


class LearnedOptimization(SQLModel, table=True):
    """Successful remediation recorded as a learned optimization."""

    __tablename__ = "learned_optimizations"

    id: Optional[int] = Field(default=None, primary_key=True)
    workflow_id: str = Field(index=True, max_length=255)
    workspace_id: Optional[str] = Field(default=None, max_length=255)
    optimization_type: str = Field(default="self_healing", max_length=50)
    optimization_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    performance_improvement_percent: float = Field(default=0.0)
    applied: bool = Field(default=True)
    learned_at: float = Field(default_factory=time.time)
    applied_at: Optional[float] = Field(default=None)


class WorkspaceExecutionLimit(SQLModel, table=True):
    """Per-workspace execution ceilings."""

    __tablename__ = "workspace_execution_limits"

    workspace_id: str = Field(primary_key=True, max_length=255)
    max_execution_time_seconds: int = Field(default=300)
    updated_at: float = Field(default_factory=time.time)
