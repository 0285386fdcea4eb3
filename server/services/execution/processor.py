"""Recurring queue polling on APScheduler.

The processor owns no dispatch logic; every tick sweeps expired claims
and runs one ExecutionQueue.process_batch() cycle. max_instances=1 keeps
ticks from overlapping inside a process; claims keep pollers in different
processes from running the same item.
"""

import time
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.logging import get_logger
from .queue import ExecutionQueue

logger = get_logger(__name__)

JOB_ID = "execution-queue-processor"


class QueueProcessor:
    def __init__(self, queue: ExecutionQueue, poll_interval: int = 30,
                 scheduler: Optional[AsyncIOScheduler] = None):
        self.queue = queue
        self.poll_interval = poll_interval
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self.last_run_at: Optional[float] = None
        self.last_result: Optional[Dict[str, Any]] = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self.scheduler.running and self.scheduler.get_job(JOB_ID) is not None

    async def start(self) -> None:
        """Start polling on the running event loop."""
        if self.running:
            logger.warning("Queue processor already running")
            return

        self.scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=self.poll_interval),
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()
        logger.info("Queue processor started", poll_interval=self.poll_interval)

    async def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Queue processor stopped", runs=self.runs)

    async def run_once(self) -> Dict[str, Any]:
        """One processing cycle. Errors are logged so the schedule keeps running."""
        self.last_run_at = time.time()
        self.runs += 1
        try:
            recovered = await self.queue.recover_stale()
            result = await self.queue.process_batch()
            result["recovered"] = len(recovered)
        except Exception as e:
            logger.error("Queue processing cycle failed", error=str(e))
            result = {"processed": 0, "results": [], "error": str(e)}
        self.last_result = result
        return result

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "poll_interval": self.poll_interval,
            "runs": self.runs,
            "last_run_at": self.last_run_at,
            "last_processed": (self.last_result or {}).get("processed"),
        }
