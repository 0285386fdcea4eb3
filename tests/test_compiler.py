"""Tests for graph validation, ordering, grouping and plan caching."""

import pytest

from conftest import make_node
from services.compiler import CompiledPlan, WorkflowGraph, estimate_duration_ms
from services.events import PLAN_COMPILED
from services.exceptions import CompilationError, CyclicGraphError, InvalidGraphError


# =============================================================================
# PLAN SHAPE
# =============================================================================

async def test_example_graph_basic_plan(compiler, example_nodes):
    result = await compiler.compile("wf-1", example_nodes)
    plan = result.plan

    assert result.cached is False
    assert plan.execution_order == ["A", "D", "E", "B", "C"]
    assert plan.stages == [["A", "D", "E"], ["B"], ["C"]]
    assert plan.parallel_groups == [["A", "D", "E"]]
    assert plan.cacheable_nodes == []
    assert plan.optimizations_applied == ["parallel_execution", "dependency_ordering"]
    assert plan.node_count == 5


async def test_aggressive_level_marks_cacheable_nodes(compiler, example_nodes):
    result = await compiler.compile("wf-1", example_nodes, optimization_level="aggressive")

    # data and ai are pure transforms, E is a GET action
    assert result.plan.cacheable_nodes == ["B", "D", "E"]
    assert "result_caching" in result.plan.optimizations_applied


async def test_explicit_cacheable_override(compiler):
    nodes = [
        make_node("read", "action", method="POST", cacheable=True),
        make_node("transform", "data", cacheable=False),
    ]
    result = await compiler.compile("wf-1", nodes, optimization_level="aggressive")
    assert result.plan.cacheable_nodes == ["read"]


async def test_edges_and_dependencies_are_merged(compiler):
    nodes = [make_node("A", "trigger"), make_node("B"), make_node("C", dependencies=["A"])]
    edges = [{"from": "A", "to": "B"}, {"from": "B", "to": "C"}]

    result = await compiler.compile("wf-1", nodes, edges)
    assert result.plan.execution_order == ["A", "B", "C"]
    assert result.plan.parallel_groups == []


async def test_topological_order_respects_every_dependency(compiler):
    nodes = [
        make_node("report", "action", dependencies=["merge"]),
        make_node("fetch_a", "action", dependencies=["start"]),
        make_node("merge", "data", dependencies=["fetch_a", "fetch_b", "enrich"]),
        make_node("start", "trigger"),
        make_node("fetch_b", "action", dependencies=["start"]),
        make_node("enrich", "ai", dependencies=["fetch_a"]),
    ]
    plan = (await compiler.compile("wf-2", nodes)).plan
    position = {node_id: i for i, node_id in enumerate(plan.execution_order)}

    assert sorted(plan.execution_order) == sorted(n["id"] for n in nodes)
    for node in nodes:
        for dep in node["config"].get("dependencies", []):
            assert position[dep] < position[node["id"]]


async def test_parallel_groups_have_no_internal_dependencies(compiler):
    nodes = [
        make_node("start", "trigger"),
        make_node("a", dependencies=["start"]),
        make_node("b", dependencies=["start"]),
        make_node("c", dependencies=["a"]),
        make_node("d", dependencies=["b"]),
        make_node("e", dependencies=["start"]),
    ]
    plan = (await compiler.compile("wf-3", nodes)).plan
    graph = WorkflowGraph.from_definition(nodes)

    def ancestors(node_id):
        seen, stack = set(), list(graph.dependencies[node_id])
        while stack:
            current = stack.pop()
            if current not in seen:
                seen.add(current)
                stack.extend(graph.dependencies[current])
        return seen

    assert plan.parallel_groups == [["a", "b", "e"], ["c", "d"]]
    for group in plan.parallel_groups:
        for node_id in group:
            assert not ancestors(node_id) & set(group)


def test_duration_estimate_prefers_parallel_path():
    nodes = [make_node("x", "ai"), make_node("y", "ai")]
    graph = WorkflowGraph.from_definition(nodes)

    # sequential 4000, group maximum 2000 + 0.2 * 4000 overhead
    assert estimate_duration_ms(graph, [["x", "y"]]) == 2800
    assert estimate_duration_ms(graph, []) == 4000


async def test_duration_estimate_counts_parallel_groups_only(compiler, example_nodes):
    plan = (await compiler.compile("wf-1", example_nodes)).plan
    # sequential 3300, group [A, D, E] peaks at 2000, overhead 0.2 * 3300
    assert plan.estimated_duration_ms == 2660


def test_duration_estimate_never_exceeds_sequential():
    nodes = [
        make_node("a", "action"),
        make_node("b", "action"),
        make_node("c", "ai", dependencies=["a", "b"]),
    ]
    graph = WorkflowGraph.from_definition(nodes)

    # 500 + 0.2 * 3000 overhead
    assert estimate_duration_ms(graph, [["a", "b"]]) == 1100
    # 2000 + 0.2 * 2100 overhead exceeds the sequential 2100
    heavy = WorkflowGraph.from_definition([make_node("x", "ai"), make_node("y", "trigger")])
    assert estimate_duration_ms(heavy, [["x", "y"]]) == 2100


async def test_compile_result_wire_format(compiler, example_nodes):
    data = (await compiler.compile("wf-1", example_nodes)).to_dict()

    assert data["cached"] is False
    assert data["executionOrder"] == ["A", "D", "E", "B", "C"]
    assert data["parallelGroups"] == [["A", "D", "E"]]
    assert data["compiledPlan"]["workflowId"] == "wf-1"
    assert len(data["compiledPlan"]["versionHash"]) == 64
    assert data["metadata"] == {"nodes": 5, "parallelGroupCount": 1, "optimizationLevel": "basic"}


def test_compiled_plan_dict_round_trip():
    plan = CompiledPlan(
        workflow_id="wf", version_hash="abc", optimization_level="basic",
        execution_order=["a"], parallel_groups=[], stages=[["a"]], cacheable_nodes=[],
        estimated_duration_ms=300, optimizations_applied=["dependency_ordering"],
        node_count=1, compiled_at=1.0,
    )
    assert CompiledPlan.from_dict(plan.to_dict()) == plan


# =============================================================================
# CYCLES
# =============================================================================

async def test_cycle_blocks_compilation(compiler):
    nodes = [
        make_node("A", dependencies=["C"]),
        make_node("B", dependencies=["A"]),
        make_node("C", dependencies=["B"]),
    ]
    with pytest.raises(CyclicGraphError) as exc_info:
        await compiler.compile("wf-cycle", nodes)

    assert exc_info.value.cycles == [["A", "B", "C", "A"]]
    assert exc_info.value.cycle_path == ["A", "B", "C", "A"]


async def test_cycle_through_edges_is_detected(compiler):
    nodes = [make_node("start", "trigger"), make_node("x"), make_node("y")]
    edges = [{"from": "start", "to": "x"}, {"from": "x", "to": "y"}, {"from": "y", "to": "x"}]

    with pytest.raises(CyclicGraphError) as exc_info:
        await compiler.compile("wf-cycle", nodes, edges)
    assert ["x", "y", "x"] in exc_info.value.cycles


async def test_self_dependency_is_a_cycle(compiler):
    with pytest.raises(CyclicGraphError) as exc_info:
        await compiler.compile("wf-self", [make_node("A", dependencies=["A"])])
    assert exc_info.value.cycles == [["A", "A"]]


async def test_cyclic_compilation_is_never_cached(compiler, database):
    nodes = [make_node("A", dependencies=["B"]), make_node("B", dependencies=["A"])]
    with pytest.raises(CyclicGraphError):
        await compiler.compile("wf-cycle", nodes)

    version_hash = WorkflowGraph.from_definition(nodes).version_hash()
    assert await database.get_compiled_plan("wf-cycle", version_hash, "basic") is None


def test_every_reported_cycle_is_closed():
    nodes = [
        make_node("a", dependencies=["d"]),
        make_node("b", dependencies=["a"]),
        make_node("c", dependencies=["b"]),
        make_node("d", dependencies=["c"]),
        make_node("e", dependencies=["b"]),
        make_node("f", dependencies=["e"]),
        make_node("g", dependencies=["f"]),
    ]
    graph = WorkflowGraph.from_definition(nodes, [{"from": "g", "to": "e"}])
    cycles = graph.find_cycles()

    assert len(cycles) == 2
    for cycle in cycles:
        assert cycle[0] == cycle[-1]
        for source, target in zip(cycle, cycle[1:]):
            assert source in graph.dependencies[target]


# =============================================================================
# CACHING
# =============================================================================

async def test_second_compile_is_a_cache_hit(compiler, example_nodes):
    first = await compiler.compile("wf-1", example_nodes)
    second = await compiler.compile("wf-1", example_nodes)

    assert second.cached is True
    assert second.plan.version_hash == first.plan.version_hash
    assert second.plan.to_dict() == first.plan.to_dict()


async def test_node_order_does_not_change_the_hash(compiler, example_nodes):
    first = await compiler.compile("wf-1", example_nodes)
    second = await compiler.compile("wf-1", list(reversed(example_nodes)))

    assert second.cached is True
    assert second.plan.version_hash == first.plan.version_hash


async def test_config_change_produces_new_version(compiler, example_nodes):
    first = await compiler.compile("wf-1", example_nodes)
    example_nodes[2]["config"]["timeout"] = 90
    second = await compiler.compile("wf-1", example_nodes)

    assert second.cached is False
    assert second.plan.version_hash != first.plan.version_hash


async def test_cache_is_keyed_by_optimization_level(compiler, example_nodes):
    await compiler.compile("wf-1", example_nodes, optimization_level="basic")
    aggressive = await compiler.compile("wf-1", example_nodes, optimization_level="aggressive")
    assert aggressive.cached is False


async def test_invalidate_forces_recompilation(compiler, plan_cache, example_nodes):
    await compiler.compile("wf-1", example_nodes)
    await compiler.compile("wf-1", example_nodes, optimization_level="aggressive")

    assert await plan_cache.invalidate("wf-1") == 2
    assert (await compiler.compile("wf-1", example_nodes)).cached is False


async def test_plan_compiled_event_only_on_fresh_compile(compiler, event_bus, example_nodes):
    await compiler.compile("wf-1", example_nodes)
    await compiler.compile("wf-1", example_nodes)

    events = event_bus.history(PLAN_COMPILED)
    assert len(events) == 1
    assert events[0].data["workflow_id"] == "wf-1"


# =============================================================================
# VALIDATION
# =============================================================================

async def test_duplicate_node_ids_are_rejected(compiler):
    with pytest.raises(InvalidGraphError, match="Duplicate node id"):
        await compiler.compile("wf", [make_node("A"), make_node("A")])


async def test_unknown_dependency_is_rejected(compiler):
    with pytest.raises(InvalidGraphError, match="unknown node: ghost"):
        await compiler.compile("wf", [make_node("A", dependencies=["ghost"])])


async def test_edge_to_unknown_node_is_rejected(compiler):
    with pytest.raises(InvalidGraphError):
        await compiler.compile("wf", [make_node("A")], [{"from": "A", "to": "B"}])


async def test_config_schema_is_validated(compiler):
    with pytest.raises(InvalidGraphError) as exc_info:
        await compiler.compile("wf", [make_node("A", "action", timeout=-5)])
    assert exc_info.value.details["errors"]


async def test_unknown_optimization_level_is_rejected(compiler, example_nodes):
    with pytest.raises(CompilationError, match="Unknown optimization level"):
        await compiler.compile("wf", example_nodes, optimization_level="extreme")


async def test_unknown_node_types_use_base_schema(compiler):
    nodes = [make_node("hook", "webhook_listener", custom="value"), make_node("next", dependencies=["hook"])]
    plan = (await compiler.compile("wf", nodes)).plan
    assert plan.execution_order == ["hook", "next"]
