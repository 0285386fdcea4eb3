"""Execution queue state models.

All models are JSON-serializable for API responses and event payloads.
"""

import hashlib
import json
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Dict, Any, Optional

from core.config import Settings


class QueueStatus(str, Enum):
    """Queue item lifecycle.

    State transitions:
        PENDING -> PROCESSING -> COMPLETED
                              -> FAILED -> (retry) PROCESSING
                              -> DEAD_LETTER
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


class QueuePriority(IntEnum):
    """Dispatch priority, higher values are served first."""
    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3

    @classmethod
    def parse(cls, value: Any) -> "QueuePriority":
        """Accept enum members, ints or names ('high', 'CRITICAL')."""
        if isinstance(value, cls):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[str(value).upper()]
        except KeyError:
            raise ValueError(f"Unknown priority: {value}") from None


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class RetryPolicy:
    """Queue-level retry policy with exponential backoff.

    Delay formula: base_delay * (backoff_multiplier ^ retry_count), capped
    at max_delay when set. ``retry_count`` is the number of retries already
    scheduled for the item, so the first retry waits ``base_delay``.
    """
    base_delay: float = 60.0          # seconds
    backoff_multiplier: float = 2.0
    max_delay: Optional[float] = None  # seconds

    def calculate_delay(self, retry_count: int) -> float:
        delay = self.base_delay * (self.backoff_multiplier ** retry_count)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def should_dead_letter(self, retry_count: int, max_retries: int) -> bool:
        """True once the retry budget is spent."""
        return retry_count >= max_retries

    def to_dict(self) -> Dict[str, Any]:
        return {
            "base_delay": self.base_delay,
            "backoff_multiplier": self.backoff_multiplier,
            "max_delay": self.max_delay,
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            base_delay=settings.retry_base_delay,
            backoff_multiplier=settings.retry_backoff_multiplier,
            max_delay=settings.retry_max_delay,
        )


@dataclass
class ProcessResult:
    """Outcome of one queue item in a processing cycle."""
    queue_item_id: str
    workflow_id: str
    status: str                        # completed | failed | dead_letter | skipped
    duration_ms: Optional[float] = None
    error: Optional[str] = None
    retry_count: int = 0
    next_retry_at: Optional[float] = None
    dead_letter_id: Optional[str] = None
    reason: Optional[str] = None       # why a skipped item was not dispatched

    @property
    def dispatched(self) -> bool:
        return self.status != "skipped"

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "queueItemId": self.queue_item_id,
            "workflowId": self.workflow_id,
            "status": self.status,
            "durationMs": self.duration_ms,
            "error": self.error,
            "retryCount": self.retry_count,
            "nextRetryAt": self.next_retry_at,
            "deadLetterId": self.dead_letter_id,
            "reason": self.reason,
        }
        return {k: v for k, v in data.items() if v is not None}


def hash_inputs(inputs: Dict[str, Any]) -> str:
    """Deterministic hash of node content and inputs for result cache keys."""
    canonical = json.dumps(inputs, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()[:16]


def result_cache_key(workflow_id: str, node_id: str, inputs: Dict[str, Any]) -> str:
    """Format: result:{workflow_id}:{node_id}:{input_hash}"""
    return f"result:{workflow_id}:{node_id}:{hash_inputs(inputs)}"
