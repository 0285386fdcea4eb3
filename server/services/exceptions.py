"""Workflow engine exception hierarchy."""

from typing import Any, Dict, List, Optional


class WorkflowEngineError(Exception):
    """Base exception for all workflow engine errors."""


class CompilationError(WorkflowEngineError):
    """Workflow could not be compiled into an execution plan.

    Compilation errors are returned to the caller synchronously and are
    never cached.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.details = details or {}
        super().__init__(message)


class InvalidGraphError(CompilationError):
    """Graph is malformed (duplicate ids, dangling references, bad config)."""


class CyclicGraphError(CompilationError):
    """Graph contains at least one dependency cycle."""

    def __init__(self, cycles: List[List[str]]):
        self.cycles = cycles
        self.cycle_path = cycles[0] if cycles else []
        super().__init__(
            "Workflow contains cycles",
            details={"cycles": cycles},
        )


class CircuitOpenError(WorkflowEngineError):
    """Circuit breaker is open, calls fail fast."""

    def __init__(self, integration: str, retry_after: float = 0.0):
        self.integration = integration
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker open for {integration}")


class RateLimitExceededError(WorkflowEngineError):
    """Rate limit window is exhausted for a workspace resource."""

    def __init__(self, workspace_id: str, resource_type: str, retry_after: float = 0.0):
        self.workspace_id = workspace_id
        self.resource_type = resource_type
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded for workspace {workspace_id} ({resource_type})"
        )


class NodeExecutionError(WorkflowEngineError):
    """A node (or the whole workflow run) failed in the node executor."""

    def __init__(self, message: str, node_id: Optional[str] = None,
                 cause: Optional[BaseException] = None):
        self.node_id = node_id
        self.cause = cause
        super().__init__(message)


class HealingApplicationError(WorkflowEngineError):
    """A remediation strategy could not be applied."""

    def __init__(self, strategy: str, message: str):
        self.strategy = strategy
        super().__init__(f"[{strategy}] {message}")
