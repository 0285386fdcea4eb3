"""Persistent compiled-plan cache keyed by (workflow_id, version_hash, optimization_level).

Entries never expire; they are removed only by invalidate().
"""

from typing import Optional, TYPE_CHECKING

from core.logging import get_logger, log_cache_operation
from .compiler import CompiledPlan

if TYPE_CHECKING:
    from core.database import Database

logger = get_logger(__name__)


class PlanCache:
    def __init__(self, database: "Database"):
        self.database = database

    @staticmethod
    def cache_key(workflow_id: str, version_hash: str, optimization_level: str) -> str:
        return f"plan:{workflow_id}:{version_hash[:12]}:{optimization_level}"

    async def get(self, workflow_id: str, version_hash: str,
                  optimization_level: str) -> Optional[CompiledPlan]:
        data = await self.database.get_compiled_plan(workflow_id, version_hash, optimization_level)
        log_cache_operation(logger, "get",
                            self.cache_key(workflow_id, version_hash, optimization_level),
                            hit=data is not None)
        return CompiledPlan.from_dict(data) if data else None

    async def put(self, plan: CompiledPlan) -> None:
        # Same key implies same content, so a concurrent writer stores an identical plan
        await self.database.save_compiled_plan(
            plan.workflow_id, plan.version_hash, plan.optimization_level, plan.to_dict()
        )
        log_cache_operation(logger, "set",
                            self.cache_key(plan.workflow_id, plan.version_hash,
                                           plan.optimization_level))

    async def invalidate(self, workflow_id: str) -> int:
        """Drop every cached plan of a workflow. Returns the number removed."""
        removed = await self.database.delete_compiled_plans(workflow_id)
        logger.info("Compiled plans invalidated", workflow_id=workflow_id, removed=removed)
        return removed
