"""Remediation strategies applied to raw workflow node dicts.

Every function mutates ``nodes`` in place and returns the ids it changed.
Reapplying a strategy to an already healed workflow changes nothing.
"""

from typing import Any, Dict, List, Optional

from constants import (
    DEFAULT_NODE_TIMEOUT_SECONDS,
    MAX_EXECUTION_TIME_SECONDS,
)

# Nodes that never receive retry, timeout or breaker settings
NON_EXECUTABLE_TYPES = frozenset(["trigger", "error_handler"])


def fallback_id(node_id: str) -> str:
    return f"{node_id}-fallback"


def resolve_targets(nodes: List[Dict[str, Any]], node_id: Optional[str] = None,
                    eligible_types=None) -> List[str]:
    """Ids to heal: the failing node when known, otherwise every eligible node."""
    def eligible(node: Dict[str, Any]) -> bool:
        if eligible_types is not None:
            return node.get("type") in eligible_types
        return node.get("type") not in NON_EXECUTABLE_TYPES

    candidates = [n for n in nodes if eligible(n)]
    if node_id:
        return [n["id"] for n in candidates if n.get("id") == node_id]
    return [n["id"] for n in candidates]


def _config(node: Dict[str, Any]) -> Dict[str, Any]:
    config = node.get("config")
    if not isinstance(config, dict):
        config = {}
        node["config"] = config
    return config


def apply_retry_policy(nodes: List[Dict[str, Any]], parameters: Dict[str, Any],
                       targets: List[str]) -> List[str]:
    retry = {
        "enabled": True,
        "maxRetries": parameters.get("maxRetries", 3),
        "backoffType": "exponential",
        "initialDelay": parameters["initialDelay"],
        "maxDelay": parameters["maxDelay"],
    }
    changed = []
    for node in nodes:
        if node.get("id") not in targets:
            continue
        config = _config(node)
        if config.get("retry") != retry:
            config["retry"] = dict(retry)
            changed.append(node["id"])
    return changed


def apply_timeout_increase(nodes: List[Dict[str, Any]], parameters: Dict[str, Any],
                           targets: List[str]) -> List[str]:
    """Raise node timeouts to default x multiplier, capped at the execution ceiling.

    Timeouts already at or above the raised value are left alone.
    """
    raised = min(DEFAULT_NODE_TIMEOUT_SECONDS * parameters.get("multiplier", 2),
                 MAX_EXECUTION_TIME_SECONDS)
    changed = []
    for node in nodes:
        if node.get("id") not in targets:
            continue
        config = _config(node)
        current = config.get("timeout") or DEFAULT_NODE_TIMEOUT_SECONDS
        new_timeout = min(max(current, raised), MAX_EXECUTION_TIME_SECONDS)
        if config.get("timeout") != new_timeout:
            config["timeout"] = new_timeout
            changed.append(node["id"])
    return changed


def apply_circuit_breaker_config(nodes: List[Dict[str, Any]], parameters: Dict[str, Any],
                                 targets: List[str]) -> List[str]:
    breaker = {"threshold": parameters["threshold"], "timeout": parameters["timeout"]}
    changed = []
    for node in nodes:
        if node.get("id") not in targets:
            continue
        config = _config(node)
        if config.get("circuitBreaker") != breaker:
            config.pop("circuit_breaker", None)
            config["circuitBreaker"] = dict(breaker)
            changed.append(node["id"])
    return changed


def apply_fallback_nodes(nodes: List[Dict[str, Any]], parameters: Dict[str, Any],
                         targets: List[str]) -> List[str]:
    """Append an error_handler node per target unless one already exists."""
    existing = {n.get("id") for n in nodes}
    added = []
    for node_id in targets:
        fid = fallback_id(node_id)
        if fid in existing:
            continue
        nodes.append({
            "id": fid,
            "type": "error_handler",
            "config": {
                "fallbackFor": node_id,
                "fallbackType": parameters.get("fallbackType", "default_values"),
                "dependencies": [node_id],
            },
        })
        existing.add(fid)
        added.append(fid)
    return added

