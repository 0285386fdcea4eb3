"""Execution engine package.

Resilient queue execution with:
- Priority-ordered polling with atomic claims
- Per-workspace fixed-window rate limiting
- Per-integration circuit breakers with half-open probing
- Exponential backoff retries and a dead letter queue
- Stage-by-stage plan execution with result caching
"""

from .models import (
    QueueStatus,
    QueuePriority,
    CircuitState,
    RetryPolicy,
    ProcessResult,
    hash_inputs,
    result_cache_key,
)
from .circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitMetrics
from .rate_limiter import RateLimiter, RateLimiterRegistry
from .dlq import DeadLetterStore
from .queue import ExecutionQueue
from .executor import PlanRunner
from .processor import QueueProcessor

__all__ = [
    # Models
    "QueueStatus",
    "QueuePriority",
    "CircuitState",
    "RetryPolicy",
    "ProcessResult",
    "hash_inputs",
    "result_cache_key",
    # Gates
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitMetrics",
    "RateLimiter",
    "RateLimiterRegistry",
    # Queue
    "DeadLetterStore",
    "ExecutionQueue",
    "PlanRunner",
    "QueueProcessor",
]
