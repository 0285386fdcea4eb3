"""Workflow compiler: dependency graph -> versioned execution plan."""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from constants import (
    DEFAULT_NODE_DURATION_MS,
    NODE_DURATION_BASELINES_MS,
    OPTIMIZATION_LEVELS,
    PARALLEL_OVERHEAD_FACTOR,
)
from core.logging import get_logger, log_execution_time
from services.events import PLAN_COMPILED
from services.exceptions import CyclicGraphError, InvalidGraphError
from .graph import WorkflowGraph

if TYPE_CHECKING:
    from services.events import EventBus
    from .plan_cache import PlanCache

logger = get_logger(__name__)


@dataclass
class CompiledPlan:
    """Immutable execution plan for one version of a workflow.

    ``parallel_groups`` holds only layers with more than one node.
    ``stages`` holds every layer in order and drives the runner's barrier.
    """
    workflow_id: str
    version_hash: str
    optimization_level: str
    execution_order: List[str]
    parallel_groups: List[List[str]]
    stages: List[List[str]]
    cacheable_nodes: List[str]
    estimated_duration_ms: int
    optimizations_applied: List[str]
    node_count: int
    compiled_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict (wire format)."""
        return {
            "workflowId": self.workflow_id,
            "versionHash": self.version_hash,
            "optimizationLevel": self.optimization_level,
            "executionOrder": self.execution_order,
            "parallelGroups": self.parallel_groups,
            "stages": self.stages,
            "cacheableNodes": self.cacheable_nodes,
            "estimatedDurationMs": self.estimated_duration_ms,
            "optimizationsApplied": self.optimizations_applied,
            "nodeCount": self.node_count,
            "compiledAt": self.compiled_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompiledPlan":
        return cls(
            workflow_id=data["workflowId"],
            version_hash=data["versionHash"],
            optimization_level=data.get("optimizationLevel", "basic"),
            execution_order=list(data.get("executionOrder", [])),
            parallel_groups=[list(g) for g in data.get("parallelGroups", [])],
            stages=[list(s) for s in data.get("stages", [])],
            cacheable_nodes=list(data.get("cacheableNodes", [])),
            estimated_duration_ms=data.get("estimatedDurationMs", 0),
            optimizations_applied=list(data.get("optimizationsApplied", [])),
            node_count=data.get("nodeCount", 0),
            compiled_at=data.get("compiledAt", time.time()),
        )


@dataclass
class CompileResult:
    plan: CompiledPlan
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        plan = self.plan.to_dict()
        return {
            "cached": self.cached,
            "compiledPlan": plan,
            "executionOrder": plan["executionOrder"],
            "parallelGroups": plan["parallelGroups"],
            "estimatedDurationMs": plan["estimatedDurationMs"],
            "optimizationsApplied": plan["optimizationsApplied"],
            "metadata": {
                "nodes": self.plan.node_count,
                "parallelGroupCount": len(self.plan.parallel_groups),
                "optimizationLevel": self.plan.optimization_level,
            },
        }


def node_duration_ms(node_type: str) -> int:
    return NODE_DURATION_BASELINES_MS.get(node_type, DEFAULT_NODE_DURATION_MS)


def estimate_duration_ms(graph: WorkflowGraph, parallel_groups: List[List[str]]) -> int:
    """Heuristic plan duration.

    Sequential total vs. the summed group maxima plus an overhead of
    PARALLEL_OVERHEAD_FACTOR x sequential total, whichever is smaller.
    Only parallel groups count toward the staged figure; single-node
    stages are covered by the overhead term.
    """
    sequential = sum(node_duration_ms(node.type) for node in graph)
    if not parallel_groups:
        return sequential

    staged = sum(
        max(node_duration_ms(graph.node_map[node_id].type) for node_id in group)
        for group in parallel_groups
    )
    return int(min(sequential, staged + PARALLEL_OVERHEAD_FACTOR * sequential))


class WorkflowCompiler:
    """Compiles node graphs into execution plans, cached by content hash.

    Compilation itself is side-effect free apart from plan cache writes, so
    concurrent compiles of the same version are idempotent.
    """

    def __init__(self, plan_cache: "PlanCache", event_bus: Optional["EventBus"] = None):
        self.plan_cache = plan_cache
        self.event_bus = event_bus

    async def compile(self, workflow_id: str, nodes: List[Any],
                      edges: Optional[List[Any]] = None,
                      optimization_level: str = "basic") -> CompileResult:
        """Compile a workflow, returning the cached plan when the content is unchanged.

        Raises:
            InvalidGraphError: Malformed definition or unknown optimization level
            CyclicGraphError: The graph contains at least one cycle
        """
        if optimization_level not in OPTIMIZATION_LEVELS:
            raise InvalidGraphError(
                f"Unknown optimization level: {optimization_level}",
                details={"allowed": sorted(OPTIMIZATION_LEVELS)},
            )

        start = time.time()
        graph = WorkflowGraph.from_definition(nodes, edges)
        version_hash = graph.version_hash()

        cached_plan = await self.plan_cache.get(workflow_id, version_hash, optimization_level)
        if cached_plan:
            logger.debug("Compiled plan cache hit", workflow_id=workflow_id,
                         version_hash=version_hash[:12])
            return CompileResult(plan=cached_plan, cached=True)

        plan = self.build_plan(workflow_id, graph, optimization_level, version_hash)
        await self.plan_cache.put(plan)

        log_execution_time(logger, "compile_workflow", start, time.time(),
                           workflow_id=workflow_id, node_count=plan.node_count,
                           parallel_groups=len(plan.parallel_groups))

        if self.event_bus:
            await self.event_bus.publish(PLAN_COMPILED, {
                "workflow_id": workflow_id,
                "version_hash": version_hash,
                "optimization_level": optimization_level,
            })

        return CompileResult(plan=plan, cached=False)

    def build_plan(self, workflow_id: str, graph: WorkflowGraph,
                   optimization_level: str = "basic",
                   version_hash: Optional[str] = None) -> CompiledPlan:
        """Pure plan construction; raises CyclicGraphError on any cycle."""
        cycles = graph.find_cycles()
        if cycles:
            logger.warning("Workflow compilation blocked by cycles",
                           workflow_id=workflow_id, cycles=cycles)
            raise CyclicGraphError(cycles)

        execution_order = graph.topological_order()
        stages = graph.execution_stages()
        parallel_groups = [stage for stage in stages if len(stage) > 1]

        optimizations = ["parallel_execution", "dependency_ordering"]
        cacheable_nodes: List[str] = []
        if optimization_level == "aggressive":
            cacheable_nodes = [node.id for node in graph if node.is_cacheable]
            optimizations.append("result_caching")

        return CompiledPlan(
            workflow_id=workflow_id,
            version_hash=version_hash or graph.version_hash(),
            optimization_level=optimization_level,
            execution_order=execution_order,
            parallel_groups=parallel_groups,
            stages=stages,
            cacheable_nodes=cacheable_nodes,
            estimated_duration_ms=estimate_duration_ms(graph, parallel_groups),
            optimizations_applied=optimizations,
            node_count=len(graph),
        )
