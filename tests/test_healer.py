"""Tests for failure classification, remediation strategies and healing records."""

import pytest

from conftest import make_node
from services.events import HEALING_COMPLETED, QUEUE_ITEM_RETRY_SCHEDULED
from services.execution import CircuitState
from services.healing import (
    FailureType,
    HealingStrategy,
    STRATEGY_TABLE,
    classify_error,
    error_signature,
    select_strategy,
)
from services.healing.strategies import apply_fallback_nodes, apply_timeout_increase


# =============================================================================
# CLASSIFICATION
# =============================================================================

@pytest.mark.parametrize("message, expected", [
    ("Node C timeout after 30s", FailureType.TIMEOUT),
    ("connect ETIMEDOUT 10.0.0.1:443", FailureType.TIMEOUT),
    ("Rate limit exceeded for workspace", FailureType.RATE_LIMIT),
    ("HTTP 429 Too Many Requests", FailureType.RATE_LIMIT),
    ("connect ECONNREFUSED 127.0.0.1:5432", FailureType.CONNECTION),
    ("Connection reset by peer", FailureType.CONNECTION),
    ("Node executor returned 503 for node B", FailureType.SERVICE_UNAVAILABLE),
    ("Bad gateway (502)", FailureType.SERVICE_UNAVAILABLE),
    ("Validation failed: email is required", FailureType.VALIDATION),
    ("Invalid payload", FailureType.VALIDATION),
    ("Something unexpected", FailureType.UNKNOWN),
    ("", FailureType.UNKNOWN),
])
def test_classify_error(message, expected):
    assert classify_error(message) == expected


def test_first_matching_category_wins():
    assert classify_error("Connection timeout") == FailureType.TIMEOUT


def test_strategy_table():
    strategies = {failure: selection.strategy for failure, selection in STRATEGY_TABLE.items()}
    assert strategies == {
        FailureType.TIMEOUT: HealingStrategy.INCREASE_TIMEOUT,
        FailureType.RATE_LIMIT: HealingStrategy.RETRY_WITH_BACKOFF,
        FailureType.CONNECTION: HealingStrategy.CIRCUIT_BREAKER,
        FailureType.SERVICE_UNAVAILABLE: HealingStrategy.CIRCUIT_BREAKER,
        FailureType.VALIDATION: HealingStrategy.FALLBACK_NODE,
        FailureType.UNKNOWN: HealingStrategy.RETRY_WITH_BACKOFF,
    }


def test_selected_parameters_are_copies():
    selection = select_strategy(FailureType.UNKNOWN)
    selection.parameters["initialDelay"] = 1
    assert STRATEGY_TABLE[FailureType.UNKNOWN].parameters["initialDelay"] == 1000


def test_error_signature_groups_recurring_faults():
    assert error_signature("Error 404 at line 12: timeout!") == "Error N at line N timeout"
    assert error_signature("Node 7 failed (attempt 3)") == error_signature("Node 12 failed (attempt 9)")
    assert len(error_signature("x" * 500)) == 100


# =============================================================================
# STRATEGIES
# =============================================================================

def test_timeout_increase_is_capped_and_idempotent():
    nodes = [make_node("a"), make_node("b", timeout=120), make_node("c", timeout=900)]

    changed = apply_timeout_increase(nodes, {"multiplier": 2}, ["a", "b", "c"])
    assert changed == ["a", "c"]
    assert [n["config"]["timeout"] for n in nodes] == [60.0, 120, 600]

    assert apply_timeout_increase(nodes, {"multiplier": 2}, ["a", "b", "c"]) == []


def test_fallback_nodes_are_not_duplicated():
    nodes = [make_node("a")]
    assert apply_fallback_nodes(nodes, {"fallbackType": "default_values"}, ["a"]) == ["a-fallback"]
    assert apply_fallback_nodes(nodes, {"fallbackType": "default_values"}, ["a"]) == []
    assert [n["id"] for n in nodes] == ["a", "a-fallback"]
    assert nodes[1]["config"] == {
        "fallbackFor": "a",
        "fallbackType": "default_values",
        "dependencies": ["a"],
    }


# =============================================================================
# SELF-HEALER
# =============================================================================

@pytest.fixture
async def workflow(database):
    return await database.save_workflow("wf-1", "ws-1", [
        make_node("start", "trigger"),
        make_node("fetch", "action", dependencies=["start"], method="GET"),
        make_node("summarize", "ai", dependencies=["fetch"]),
    ])


async def test_timeout_heals_failing_node(healer, database, workflow):
    result = await healer.heal("wf-1", "exec-1", "Node fetch timeout after 30s", node_id="fetch")

    assert result.success is True
    assert result.failure_type == FailureType.TIMEOUT
    assert result.changed_nodes == ["fetch"]

    stored = await database.get_workflow("wf-1")
    timeouts = {n["id"]: n["config"].get("timeout") for n in stored.nodes}
    assert timeouts == {"start": None, "fetch": 60.0, "summarize": None}

    limit = await database.get_workspace_limit("ws-1")
    assert limit.max_execution_time_seconds == 600


async def test_healing_is_idempotent(healer, database, workflow):
    await healer.heal("wf-1", "exec-1", "rate limit hit")
    first = (await database.get_workflow("wf-1")).nodes

    again = await healer.heal("wf-1", "exec-2", "rate limit hit")
    assert again.success is True
    assert again.changed_nodes == []
    assert (await database.get_workflow("wf-1")).nodes == first


async def test_retry_policy_targets_executable_nodes(healer, database, workflow):
    result = await healer.heal("wf-1", "exec-1", "HTTP 429 Too Many Requests")

    assert result.strategy.strategy == HealingStrategy.RETRY_WITH_BACKOFF
    assert result.changed_nodes == ["fetch", "summarize"]
    stored = {n["id"]: n for n in (await database.get_workflow("wf-1")).nodes}
    assert "retry" not in stored["start"]["config"]
    assert stored["fetch"]["config"]["retry"] == {
        "enabled": True,
        "maxRetries": 3,
        "backoffType": "exponential",
        "initialDelay": 5000,
        "maxDelay": 60000,
    }


async def test_circuit_breaker_strategy_configures_workspace_breaker(
        healer, circuit_breakers, database, settings, workflow):
    result = await healer.heal("wf-1", "exec-1", "connect ECONNREFUSED 10.0.0.5:443")

    assert result.strategy.strategy == HealingStrategy.CIRCUIT_BREAKER
    breaker = await circuit_breakers.get("ws-1", settings.circuit_integration_type)
    assert breaker.state == CircuitState.HALF_OPEN
    assert breaker.failure_threshold == 5
    assert breaker.reset_timeout == 60.0

    stored = {n["id"]: n for n in (await database.get_workflow("wf-1")).nodes}
    assert stored["summarize"]["config"]["circuitBreaker"] == {"threshold": 5, "timeout": 60}


async def test_fallback_strategy_adds_error_handlers(healer, database, workflow):
    result = await healer.heal("wf-1", "exec-1", "Validation failed: missing field")

    assert result.changed_nodes == ["fetch-fallback", "summarize-fallback"]
    ids = [n["id"] for n in (await database.get_workflow("wf-1")).nodes]
    assert ids == ["start", "fetch", "summarize", "fetch-fallback", "summarize-fallback"]


async def test_healed_workflow_still_compiles(healer, compiler, database, workflow):
    before = await compiler.compile("wf-1", workflow.nodes)
    for error in ("timeout", "429", "ECONNREFUSED", "validation error"):
        await healer.heal("wf-1", "exec-1", error)

    stored = await database.get_workflow("wf-1")
    after = await compiler.compile("wf-1", stored.nodes)

    assert after.cached is False
    assert after.plan.version_hash != before.plan.version_hash
    assert after.plan.execution_order[:3] == ["start", "fetch", "summarize"]


async def test_changes_invalidate_cached_plans(healer, compiler, database, workflow):
    await compiler.compile("wf-1", workflow.nodes)
    await healer.heal("wf-1", "exec-1", "timeout", node_id="fetch")

    # Unchanged definition would normally hit the cache
    assert (await compiler.compile("wf-1", workflow.nodes)).cached is False


async def test_healing_records(healer, database, workflow, clock):
    result = await healer.heal("wf-1", "exec-1", "Node fetch timeout after 30s", node_id="fetch")

    logs = await database.list_healing_logs("wf-1")
    assert len(logs) == 1
    log = logs[0]
    assert log.success is True
    assert log.execution_id == "exec-1"
    assert log.failure_type == "timeout"
    assert log.healing_strategy == {"type": "increase_timeout",
                                    "parameters": {"multiplier": 2, "maxRetries": 3}}
    assert log.attempted_at == clock.now
    assert log.recovery_time_ms == result.recovery_time_ms
    assert log.learned_pattern["error_signature"] == "Node fetch timeout after Ns"
    assert log.learned_pattern["solution"] == "increase_timeout"

    optimizations = await database.list_learned_optimizations("wf-1")
    assert len(optimizations) == 1
    assert optimizations[0].performance_improvement_percent == 20


async def test_failed_remediation_is_logged_not_raised(healer, database):
    result = await healer.heal("wf-missing", "exec-1", "Node x timeout after 30s")

    assert result.success is False
    assert result.healing_action == "increase_timeout failed"
    assert "Workflow not found" in result.healing_error
    assert result.original_error == "Node x timeout after 30s"

    logs = await database.list_healing_logs("wf-missing")
    assert [log.success for log in logs] == [False]
    assert await database.list_learned_optimizations("wf-missing") == []


async def test_unexpected_errors_are_wrapped(healer, database, workflow, monkeypatch):
    async def broken(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(database, "update_workflow_nodes", broken)
    result = await healer.heal("wf-1", "exec-1", "rate limit")

    assert result.success is False
    assert result.healing_error == "[retry_with_backoff] disk full"
    assert result.to_dict()["healingError"] == "[retry_with_backoff] disk full"


async def test_result_wire_format(healer, workflow):
    data = (await healer.heal("wf-1", "exec-1", "timeout", node_id="fetch")).to_dict()

    assert data["success"] is True
    assert data["strategy"]["type"] == "increase_timeout"
    assert data["failureType"] == "timeout"
    assert data["changedNodes"] == ["fetch"]
    assert "healingAction" in data and "recoveryTimeMs" in data
    assert "healingError" not in data


async def test_attached_healer_reacts_to_queue_failures(healer, event_bus, database, workflow):
    healer.attach(event_bus)
    await event_bus.publish(QUEUE_ITEM_RETRY_SCHEDULED, {
        "queue_item_id": "item-1",
        "workflow_id": "wf-1",
        "workspace_id": "ws-1",
        "execution_id": "exec-9",
        "error": "Node summarize timeout after 30s",
        "node_id": "summarize",
    })

    completed = event_bus.history(HEALING_COMPLETED)
    assert len(completed) == 1
    assert completed[0].data["execution_id"] == "exec-9"
    assert completed[0].data["changedNodes"] == ["summarize"]

    healer.detach()
    await event_bus.publish(QUEUE_ITEM_RETRY_SCHEDULED, {"workflow_id": "wf-1", "error": "timeout"})
    assert len(event_bus.history(HEALING_COMPLETED)) == 1
