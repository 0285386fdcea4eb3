"""Automated failure classification and remediation."""

from .classifier import (
    FailureType,
    HealingStrategy,
    StrategySelection,
    STRATEGY_TABLE,
    classify_error,
    select_strategy,
    error_signature,
)
from .healer import SelfHealer, HealingResult

__all__ = [
    "FailureType",
    "HealingStrategy",
    "StrategySelection",
    "STRATEGY_TABLE",
    "classify_error",
    "select_strategy",
    "error_signature",
    "SelfHealer",
    "HealingResult",
]
