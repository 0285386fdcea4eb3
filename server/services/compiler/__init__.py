"""Workflow compilation: graph validation, ordering, grouping and plan caching."""

from .graph import WorkflowGraph
from .compiler import (
    CompiledPlan,
    CompileResult,
    WorkflowCompiler,
    estimate_duration_ms,
    node_duration_ms,
)
from .plan_cache import PlanCache

__all__ = [
    "WorkflowGraph",
    "CompiledPlan",
    "CompileResult",
    "WorkflowCompiler",
    "PlanCache",
    "estimate_duration_ms",
    "node_duration_ms",
]
