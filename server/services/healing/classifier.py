"""Failure classification and the strategy table."""

import copy
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Tuple


class FailureType(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    CONNECTION = "connection"
    SERVICE_UNAVAILABLE = "service_unavailable"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class HealingStrategy(str, Enum):
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    CIRCUIT_BREAKER = "circuit_breaker"
    FALLBACK_NODE = "fallback_node"
    INCREASE_TIMEOUT = "increase_timeout"


# Checked in order, first match wins. Patterns are lowercase substrings.
ERROR_PATTERNS: List[Tuple[FailureType, Tuple[str, ...]]] = [
    (FailureType.TIMEOUT, ("timeout", "etimedout")),
    (FailureType.RATE_LIMIT, ("rate limit", "429")),
    (FailureType.CONNECTION, ("connection", "econnrefused")),
    (FailureType.SERVICE_UNAVAILABLE, ("502", "503")),
    (FailureType.VALIDATION, ("validation", "invalid")),
]


@dataclass
class StrategySelection:
    strategy: HealingStrategy
    parameters: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.strategy.value, "parameters": self.parameters}


STRATEGY_TABLE: Dict[FailureType, StrategySelection] = {
    FailureType.TIMEOUT: StrategySelection(
        HealingStrategy.INCREASE_TIMEOUT, {"multiplier": 2, "maxRetries": 3}),
    FailureType.RATE_LIMIT: StrategySelection(
        HealingStrategy.RETRY_WITH_BACKOFF, {"initialDelay": 5000, "maxDelay": 60000}),
    FailureType.CONNECTION: StrategySelection(
        HealingStrategy.CIRCUIT_BREAKER, {"threshold": 5, "timeout": 60}),
    FailureType.SERVICE_UNAVAILABLE: StrategySelection(
        HealingStrategy.CIRCUIT_BREAKER, {"threshold": 5, "timeout": 60}),
    FailureType.VALIDATION: StrategySelection(
        HealingStrategy.FALLBACK_NODE, {"fallbackType": "default_values"}),
    FailureType.UNKNOWN: StrategySelection(
        HealingStrategy.RETRY_WITH_BACKOFF, {"initialDelay": 1000, "maxDelay": 10000}),
}


def classify_error(message: str) -> FailureType:
    """Match error text against the known categories (case-insensitive)."""
    text = (message or "").lower()
    for failure_type, patterns in ERROR_PATTERNS:
        if any(pattern in text for pattern in patterns):
            return failure_type
    return FailureType.UNKNOWN


def select_strategy(failure_type: FailureType) -> StrategySelection:
    selection = STRATEGY_TABLE[failure_type]
    return StrategySelection(selection.strategy, copy.deepcopy(selection.parameters))


def error_signature(message: str) -> str:
    """Normalize an error so recurring faults group together.

    First 100 characters, digit runs replaced by 'N', punctuation removed.
    """
    signature = re.sub(r"\d+", "N", (message or "")[:100])
    return re.sub(r"[^\w\s]", "", signature)
