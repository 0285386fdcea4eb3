"""Centralized constants for node types, cost baselines and healing tables.

This module provides a single source of truth for node type taxonomies and
the fixed lookup tables used by the compiler, the queue and the self-healer.
"""

from typing import Dict, FrozenSet

# =============================================================================
# NODE TYPES
# =============================================================================

TRIGGER_TYPES: FrozenSet[str] = frozenset([
    'trigger',
])

ACTION_TYPES: FrozenSet[str] = frozenset([
    'action',
    'connector',
])

TRANSFORM_TYPES: FrozenSet[str] = frozenset([
    'data',
    'ai',
])

CONTROL_TYPES: FrozenSet[str] = frozenset([
    'condition',
    'error_handler',
    'validator',
])

# All node types with an explicit config schema (see models/nodes.py).
# Unknown types are accepted with the base schema.
KNOWN_NODE_TYPES: FrozenSet[str] = (
    TRIGGER_TYPES |
    ACTION_TYPES |
    TRANSFORM_TYPES |
    CONTROL_TYPES
)

# Node types that get a fallback path when healing validation failures
FALLBACK_ELIGIBLE_TYPES: FrozenSet[str] = frozenset([
    'action',
    'ai',
])

# HTTP methods treated as read-only (side-effect free) for cacheability
READ_ONLY_METHODS: FrozenSet[str] = frozenset([
    'GET',
    'HEAD',
])

# =============================================================================
# COMPILER
# =============================================================================

OPTIMIZATION_LEVELS: FrozenSet[str] = frozenset([
    'basic',
    'aggressive',
])

# Baseline cost per node type in milliseconds, used for duration estimates
NODE_DURATION_BASELINES_MS: Dict[str, int] = {
    'trigger': 100,
    'condition': 50,
    'action': 500,
    'data': 200,
    'ai': 2000,
}
DEFAULT_NODE_DURATION_MS = 300

# Fraction of the sequential total added to the staged estimate as overhead
PARALLEL_OVERHEAD_FACTOR = 0.2

# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

# Consecutive half-open successes needed to close the circuit again
HALF_OPEN_SUCCESS_THRESHOLD = 3

# =============================================================================
# SELF-HEALING
# =============================================================================

# Estimated improvement (percent) recorded with a learned optimization
STRATEGY_IMPROVEMENT_PERCENT: Dict[str, int] = {
    'retry_with_backoff': 25,
    'circuit_breaker': 40,
    'fallback_node': 30,
    'increase_timeout': 20,
}
DEFAULT_IMPROVEMENT_PERCENT = 15

# Default node timeout (seconds) used when a node has none configured
DEFAULT_NODE_TIMEOUT_SECONDS = 30.0

# Ceiling applied by the timeout strategy, matches the workspace limit it sets
MAX_EXECUTION_TIME_SECONDS = 600
