"""Plan runner: the default queue executor.

Loads the workflow, compiles it through the plan cache and runs the plan
stage by stage:
- Nodes in a stage run concurrently (asyncio.gather)
- A stage starts only after every node of the previous stage finished
- Results of cacheable nodes are cached by content hash of (node, inputs)
- A failed node with an ``error_handler`` fallback takes the fallback's output
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, TYPE_CHECKING

from core.config import Settings
from core.logging import get_logger, log_execution_time
from models.database import QueueItem
from models.nodes import BaseNode
from services.compiler import CompiledPlan, WorkflowGraph
from services.exceptions import NodeExecutionError
from .models import result_cache_key

if TYPE_CHECKING:
    from core.cache import CacheService
    from core.database import Database
    from services.compiler import WorkflowCompiler

logger = get_logger(__name__)

NodeExecutorFn = Callable[[BaseNode, Dict[str, Any], Dict[str, Any]], Awaitable[Any]]


class PlanRunner:
    def __init__(self, database: "Database", compiler: "WorkflowCompiler",
                 node_executor: NodeExecutorFn, cache: "CacheService", settings: Settings,
                 optimization_level: str = "basic"):
        self.database = database
        self.compiler = compiler
        self.node_executor = node_executor
        self.cache = cache
        self.settings = settings
        self.optimization_level = optimization_level

    async def __call__(self, item: QueueItem) -> Dict[str, Any]:
        """Execute the workflow referenced by a queue item.

        Raises:
            NodeExecutionError: Missing workflow or the first failed node of a stage
            CompilationError: The stored workflow no longer compiles
        """
        workflow = await self.database.get_workflow(item.workflow_id)
        if workflow is None:
            raise NodeExecutionError(f"Workflow not found: {item.workflow_id}")

        execution_data = dict(item.execution_data or {})
        level = execution_data.get("optimization_level", self.optimization_level)
        compiled = await self.compiler.compile(item.workflow_id, workflow.nodes,
                                               workflow.edges, level)
        graph = WorkflowGraph.from_definition(workflow.nodes, workflow.edges)

        context = {
            "workflow_id": item.workflow_id,
            "workspace_id": item.workspace_id,
            "queue_item_id": item.id,
            "execution_id": execution_data.get("execution_id", item.id),
            "execution_data": execution_data,
        }
        return await self.run_plan(compiled.plan, graph, context)

    async def run_plan(self, plan: CompiledPlan, graph: WorkflowGraph,
                       context: Dict[str, Any]) -> Dict[str, Any]:
        start = time.time()
        outputs: Dict[str, Any] = {}
        cached_nodes: List[str] = []
        cacheable: Set[str] = set(plan.cacheable_nodes)

        fallbacks: Dict[str, BaseNode] = {}
        for node in graph:
            target = getattr(node.config, "fallback_for", None)
            if node.type == "error_handler" and target in graph.node_map:
                fallbacks[target] = node
        fallback_ids = {node.id for node in fallbacks.values()}

        for index, stage in enumerate(plan.stages):
            runnable = [node_id for node_id in stage if node_id not in fallback_ids]
            results = await asyncio.gather(
                *(self._run_node(graph.node_map[node_id], graph, outputs, context,
                                 node_id in cacheable)
                  for node_id in runnable),
                return_exceptions=True,
            )

            # Barrier: every node of the stage has finished
            failures: List[Tuple[str, BaseException]] = []
            for node_id, result in zip(runnable, results):
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    fallback = fallbacks.get(node_id)
                    if fallback is None:
                        failures.append((node_id, result))
                        continue
                    outputs[node_id] = await self._run_fallback(fallback, node_id, result,
                                                                outputs, context)
                else:
                    outputs[node_id], hit = result
                    if hit:
                        cached_nodes.append(node_id)

            if failures:
                node_id, error = failures[0]
                logger.warning("Plan stage failed", workflow_id=plan.workflow_id,
                               stage=index, failed_nodes=[n for n, _ in failures],
                               error=str(error)[:200])
                if isinstance(error, NodeExecutionError):
                    raise error
                raise NodeExecutionError(str(error), node_id=node_id, cause=error) from error

        log_execution_time(logger, "run_plan", start, time.time(),
                           workflow_id=plan.workflow_id, stages=len(plan.stages),
                           cached_nodes=len(cached_nodes))
        return {
            "workflow_id": plan.workflow_id,
            "execution_id": context.get("execution_id"),
            "version_hash": plan.version_hash,
            "outputs": outputs,
            "cached_nodes": cached_nodes,
            "duration_ms": round((time.time() - start) * 1000, 2),
        }

    async def _run_node(self, node: BaseNode, graph: WorkflowGraph, outputs: Dict[str, Any],
                        context: Dict[str, Any], cacheable: bool) -> Tuple[Any, bool]:
        """Returns (output, cache_hit)."""
        inputs = {dep: outputs.get(dep) for dep in graph.dependencies[node.id]}

        cache_key: Optional[str] = None
        if cacheable:
            cache_key = result_cache_key(context["workflow_id"], node.id,
                                         {"node": node.to_dict(), "inputs": inputs})
            cached = await self.cache.get(cache_key)
            if cached is not None:
                logger.debug("Node result cache hit", node_id=node.id)
                return cached.get("output"), True

        output = await self.node_executor(node, inputs, context)

        if cache_key:
            await self.cache.set(cache_key, {"output": output},
                                 ttl=self.settings.node_result_cache_ttl)
        return output, False

    async def _run_fallback(self, fallback: BaseNode, failed_node_id: str, error: Exception,
                            outputs: Dict[str, Any], context: Dict[str, Any]) -> Any:
        logger.info("Running fallback node", node_id=failed_node_id, fallback_id=fallback.id,
                    error=str(error)[:100])
        output = await self.node_executor(
            fallback, {failed_node_id: None}, {**context, "error": str(error)}
        )
        outputs[fallback.id] = output
        return output
