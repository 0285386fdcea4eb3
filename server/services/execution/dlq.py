"""Dead Letter Queue (DLQ) for queue items that exhausted their retries.

Entries are never deleted automatically. They are inspected, resolved with
notes, or replayed as a fresh queue item.

Usage:
    from services.execution.dlq import DeadLetterStore

    dlq = DeadLetterStore(database)
    entry = await dlq.add(item, error="Connection refused")
    await dlq.resolve(entry.id, notes="Credentials rotated", resolved_by="ops")
"""

import time
from typing import Callable, List, Optional, TYPE_CHECKING

from core.logging import get_logger
from models.database import DeadLetterEntry, QueueItem

if TYPE_CHECKING:
    from core.database import Database
    from .queue import ExecutionQueue

logger = get_logger(__name__)


class DeadLetterStore:
    def __init__(self, database: "Database", clock: Callable[[], float] = time.time):
        self.database = database
        self.clock = clock

    async def add(self, item: QueueItem, error: str,
                  failure_count: Optional[int] = None) -> DeadLetterEntry:
        """Store a dead-lettered queue item.

        Args:
            item: Queue item whose retry budget is spent
            error: Last error message
            failure_count: Total failed attempts (defaults to retries + the final attempt)
        """
        entry = DeadLetterEntry(
            queue_item_id=item.id,
            workflow_id=item.workflow_id,
            workspace_id=item.workspace_id,
            failure_count=failure_count if failure_count is not None else item.retry_count + 1,
            last_error=(error or "Unknown error")[:2000],
            execution_data=dict(item.execution_data or {}),
            failed_at=self.clock(),
        )
        entry = await self.database.add_dead_letter_entry(entry)
        logger.warning("Queue item moved to DLQ",
                       dead_letter_id=entry.id,
                       queue_item_id=item.id,
                       workflow_id=item.workflow_id,
                       failure_count=entry.failure_count,
                       error=entry.last_error[:100])
        return entry

    async def get(self, entry_id: str) -> Optional[DeadLetterEntry]:
        return await self.database.get_dead_letter_entry(entry_id)

    async def list_entries(self, workspace_id: Optional[str] = None,
                           workflow_id: Optional[str] = None,
                           unresolved_only: bool = False,
                           limit: int = 100) -> List[DeadLetterEntry]:
        return await self.database.list_dead_letter_entries(
            workspace_id=workspace_id,
            workflow_id=workflow_id,
            unresolved_only=unresolved_only,
            limit=limit,
        )

    async def mark_investigated(self, entry_id: str,
                                notes: Optional[str] = None) -> Optional[DeadLetterEntry]:
        values = {"investigated": True}
        if notes is not None:
            values["resolution_notes"] = notes
        if not await self.database.update_dead_letter_entry(entry_id, **values):
            return None
        return await self.get(entry_id)

    async def resolve(self, entry_id: str, notes: Optional[str] = None,
                      resolved_by: Optional[str] = None) -> Optional[DeadLetterEntry]:
        """Close an entry. Returns None when the entry does not exist."""
        updated = await self.database.update_dead_letter_entry(
            entry_id,
            investigated=True,
            resolution_notes=notes,
            resolved_at=self.clock(),
            resolved_by=resolved_by,
        )
        if not updated:
            return None
        logger.info("DLQ entry resolved", dead_letter_id=entry_id, resolved_by=resolved_by)
        return await self.get(entry_id)

    async def replay(self, entry_id: str, queue: "ExecutionQueue",
                     resolved_by: Optional[str] = None) -> Optional[QueueItem]:
        """Enqueue a fresh item with the entry's execution data.

        The dead-lettered queue item itself stays terminal; the entry is
        resolved with a note pointing at the new item.
        """
        entry = await self.get(entry_id)
        if not entry:
            return None

        item = await queue.enqueue(
            workflow_id=entry.workflow_id,
            workspace_id=entry.workspace_id,
            execution_data=dict(entry.execution_data or {}),
        )
        await self.resolve(entry_id, notes=f"Replayed as queue item {item.id}",
                           resolved_by=resolved_by or "replay")
        logger.info("DLQ entry replayed", dead_letter_id=entry_id, queue_item_id=item.id)
        return item
