"""Async database service with SQLModel and SQLAlchemy 2.0."""

import time
from typing import Dict, Any, List, Optional, Type
from contextlib import asynccontextmanager

from sqlmodel import SQLModel, select
from sqlalchemy import update, delete, or_, and_
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.exc import IntegrityError

from core.config import Settings
from core.logging import get_logger
from models.database import (
    Workflow,
    CompiledPlanRecord,
    QueueItem,
    CircuitBreakerRecord,
    RateLimitRecord,
    DeadLetterEntry,
    HealingLog,
    LearnedOptimization,
    WorkspaceExecutionLimit,
)

logger = get_logger(__name__)


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            engine_kwargs: Dict[str, Any] = {
                "echo": self.settings.database_echo,
                "future": True,
            }
            # SQLite uses a single-connection pool that rejects sizing arguments
            if not self.settings.database_url.startswith("sqlite"):
                engine_kwargs["pool_size"] = self.settings.database_pool_size
                engine_kwargs["max_overflow"] = self.settings.database_max_overflow

            self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully")

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def _get_one(self, model: Type[SQLModel], **filters) -> Optional[Any]:
        async with self.get_session() as session:
            stmt = select(model)
            for column, value in filters.items():
                stmt = stmt.where(getattr(model, column) == value)
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def _add(self, obj: SQLModel) -> SQLModel:
        async with self.get_session() as session:
            session.add(obj)
            await session.commit()
            await session.refresh(obj)
            return obj

    async def _upsert(self, model: Type[SQLModel], keys: Dict[str, Any],
                      values: Dict[str, Any]) -> SQLModel:
        """Insert or update the row identified by `keys` (last writer wins)."""
        async with self.get_session() as session:
            stmt = select(model)
            for column, value in keys.items():
                stmt = stmt.where(getattr(model, column) == value)
            result = await session.execute(stmt)
            existing = result.scalar_one_or_none()

            if existing:
                for column, value in values.items():
                    setattr(existing, column, value)
            else:
                existing = model(**keys, **values)
                session.add(existing)

            try:
                await session.commit()
            except IntegrityError:
                # Concurrent insert of the same key; retry as update
                await session.rollback()
                result = await session.execute(stmt)
                existing = result.scalar_one()
                for column, value in values.items():
                    setattr(existing, column, value)
                await session.commit()

            await session.refresh(existing)
            return existing

    # ============================================================================
    # Workflows
    # ============================================================================

    async def save_workflow(self, workflow_id: str, workspace_id: str,
                            nodes: List[Dict[str, Any]], edges: List[Dict[str, Any]] = None,
                            name: str = "", description: Optional[str] = None) -> Workflow:
        """Save or update a workflow definition."""
        return await self._upsert(
            Workflow,
            {"id": workflow_id},
            {
                "workspace_id": workspace_id,
                "name": name,
                "description": description,
                "nodes": list(nodes),
                "edges": list(edges or []),
                "updated_at": time.time(),
            },
        )

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        """Get workflow by ID."""
        return await self._get_one(Workflow, id=workflow_id)

    async def update_workflow_nodes(self, workflow_id: str, nodes: List[Dict[str, Any]]) -> bool:
        """Replace the node list of a workflow."""
        async with self.get_session() as session:
            result = await session.execute(
                update(Workflow)
                .where(Workflow.id == workflow_id)
                .values(nodes=list(nodes), updated_at=time.time())
            )
            await session.commit()
            return result.rowcount == 1

    # ============================================================================
    # Compiled plan cache
    # ============================================================================

    async def get_compiled_plan(self, workflow_id: str, version_hash: str,
                                optimization_level: str) -> Optional[Dict[str, Any]]:
        record = await self._get_one(
            CompiledPlanRecord,
            workflow_id=workflow_id,
            version_hash=version_hash,
            optimization_level=optimization_level,
        )
        return record.plan if record else None

    async def save_compiled_plan(self, workflow_id: str, version_hash: str,
                                 optimization_level: str, plan: Dict[str, Any]) -> None:
        await self._upsert(
            CompiledPlanRecord,
            {
                "workflow_id": workflow_id,
                "version_hash": version_hash,
                "optimization_level": optimization_level,
            },
            {"plan": plan, "created_at": time.time()},
        )

    async def delete_compiled_plans(self, workflow_id: str) -> int:
        async with self.get_session() as session:
            result = await session.execute(
                delete(CompiledPlanRecord).where(CompiledPlanRecord.workflow_id == workflow_id)
            )
            await session.commit()
            return result.rowcount or 0

    # ============================================================================
    # Execution queue
    # ============================================================================

    async def add_queue_item(self, item: QueueItem) -> QueueItem:
        return await self._add(item)

    async def get_queue_item(self, item_id: str) -> Optional[QueueItem]:
        return await self._get_one(QueueItem, id=item_id)

    async def fetch_ready_queue_items(self, now: float, limit: int) -> List[QueueItem]:
        """Items due for dispatch, highest priority first, then oldest."""
        async with self.get_session() as session:
            stmt = (
                select(QueueItem)
                .where(or_(
                    and_(QueueItem.status == "pending", QueueItem.scheduled_at <= now),
                    and_(QueueItem.status == "failed", QueueItem.next_retry_at <= now),
                ))
                .order_by(QueueItem.priority.desc(), QueueItem.scheduled_at.asc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def claim_queue_item(self, item_id: str, expected_status: str, now: float) -> bool:
        """Atomically move an item to processing.

        The conditional UPDATE only matches while the item still has the
        status the poller saw, so exactly one claimant wins.
        """
        async with self.get_session() as session:
            result = await session.execute(
                update(QueueItem)
                .where(QueueItem.id == item_id, QueueItem.status == expected_status)
                .values(status="processing", started_at=now)
            )
            await session.commit()
            return result.rowcount == 1

    async def fetch_stale_queue_items(self, cutoff: float, limit: int) -> List[QueueItem]:
        """Items still marked processing that were claimed before ``cutoff``."""
        async with self.get_session() as session:
            stmt = (
                select(QueueItem)
                .where(QueueItem.status == "processing", QueueItem.started_at < cutoff)
                .order_by(QueueItem.started_at.asc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def release_queue_item(self, item_id: str, started_at: float) -> bool:
        """Take back an expired claim.

        Matches only the claim that was observed, so a sweep racing another
        sweep (or a late completion) releases the item at most once.
        """
        async with self.get_session() as session:
            result = await session.execute(
                update(QueueItem)
                .where(QueueItem.id == item_id, QueueItem.status == "processing",
                       QueueItem.started_at == started_at)
                .values(status="failed", started_at=None, next_retry_at=None)
            )
            await session.commit()
            return result.rowcount == 1

    async def update_queue_item(self, item_id: str, **values) -> bool:
        async with self.get_session() as session:
            result = await session.execute(
                update(QueueItem).where(QueueItem.id == item_id).values(**values)
            )
            await session.commit()
            return result.rowcount == 1

    async def list_queue_items(self, workspace_id: Optional[str] = None,
                               status: Optional[str] = None,
                               limit: int = 100) -> List[QueueItem]:
        async with self.get_session() as session:
            stmt = select(QueueItem)
            if workspace_id:
                stmt = stmt.where(QueueItem.workspace_id == workspace_id)
            if status:
                stmt = stmt.where(QueueItem.status == status)
            stmt = stmt.order_by(QueueItem.created_at.desc()).limit(limit)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ============================================================================
    # Circuit breakers and rate limits
    # ============================================================================

    async def get_circuit_breaker(self, workspace_id: str,
                                  integration_type: str) -> Optional[CircuitBreakerRecord]:
        return await self._get_one(
            CircuitBreakerRecord, workspace_id=workspace_id, integration_type=integration_type
        )

    async def save_circuit_breaker(self, workspace_id: str, integration_type: str,
                                   **state) -> CircuitBreakerRecord:
        state["updated_at"] = time.time()
        return await self._upsert(
            CircuitBreakerRecord,
            {"workspace_id": workspace_id, "integration_type": integration_type},
            state,
        )

    async def get_rate_limit(self, workspace_id: str, resource_type: str) -> Optional[RateLimitRecord]:
        return await self._get_one(
            RateLimitRecord, workspace_id=workspace_id, resource_type=resource_type
        )

    async def save_rate_limit(self, workspace_id: str, resource_type: str,
                              **state) -> RateLimitRecord:
        state["updated_at"] = time.time()
        return await self._upsert(
            RateLimitRecord,
            {"workspace_id": workspace_id, "resource_type": resource_type},
            state,
        )

    # ============================================================================
    # Dead letter queue
    # ============================================================================

    async def add_dead_letter_entry(self, entry: DeadLetterEntry) -> DeadLetterEntry:
        return await self._add(entry)

    async def get_dead_letter_entry(self, entry_id: str) -> Optional[DeadLetterEntry]:
        return await self._get_one(DeadLetterEntry, id=entry_id)

    async def list_dead_letter_entries(self, workspace_id: Optional[str] = None,
                                       workflow_id: Optional[str] = None,
                                       unresolved_only: bool = False,
                                       limit: int = 100) -> List[DeadLetterEntry]:
        async with self.get_session() as session:
            stmt = select(DeadLetterEntry)
            if workspace_id:
                stmt = stmt.where(DeadLetterEntry.workspace_id == workspace_id)
            if workflow_id:
                stmt = stmt.where(DeadLetterEntry.workflow_id == workflow_id)
            if unresolved_only:
                stmt = stmt.where(DeadLetterEntry.resolved_at.is_(None))
            stmt = stmt.order_by(DeadLetterEntry.failed_at.desc()).limit(limit)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def update_dead_letter_entry(self, entry_id: str, **values) -> bool:
        async with self.get_session() as session:
            result = await session.execute(
                update(DeadLetterEntry).where(DeadLetterEntry.id == entry_id).values(**values)
            )
            await session.commit()
            return result.rowcount == 1

    # ============================================================================
    # Self-healing records
    # ============================================================================

    async def add_healing_log(self, log: HealingLog) -> HealingLog:
        return await self._add(log)

    async def list_healing_logs(self, workflow_id: str, limit: int = 50) -> List[HealingLog]:
        async with self.get_session() as session:
            stmt = (
                select(HealingLog)
                .where(HealingLog.workflow_id == workflow_id)
                .order_by(HealingLog.attempted_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def add_learned_optimization(self, optimization: LearnedOptimization) -> LearnedOptimization:
        return await self._add(optimization)

    async def list_learned_optimizations(self, workflow_id: str) -> List[LearnedOptimization]:
        async with self.get_session() as session:
            stmt = (
                select(LearnedOptimization)
                .where(LearnedOptimization.workflow_id == workflow_id)
                .order_by(LearnedOptimization.learned_at.desc())
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_workspace_limit(self, workspace_id: str) -> Optional[WorkspaceExecutionLimit]:
        return await self._get_one(WorkspaceExecutionLimit, workspace_id=workspace_id)

    async def save_workspace_limit(self, workspace_id: str,
                                   max_execution_time_seconds: int) -> WorkspaceExecutionLimit:
        return await self._upsert(
            WorkspaceExecutionLimit,
            {"workspace_id": workspace_id},
            {"max_execution_time_seconds": max_execution_time_seconds, "updated_at": time.time()},
        )
