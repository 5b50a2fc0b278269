# ============================================================================
# File: ingestion/runner.py
# Description: Worker pool executing scheduler tasks with deadlines and heartbeats
# ============================================================================
"""
Worker pool - pulls runnable tasks from the TaskScheduler and executes them.

This module provides:
- N concurrent asyncio workers claiming tasks via poll()
- A heartbeat loop per running task (lease refresh + cancellation check)
- A per-task deadline; exceeding it is reported as the retryable error of
  the task's kind
- Periodic recovery of tasks whose worker stopped heartbeating
- Watermark reconciliation from the load ledger on start
"""

import asyncio
import logging
import socket
import uuid
from typing import List, Optional

from core.config import settings
from core.exceptions import (
    Cancelled,
    ETLException,
    InvalidTaskTransition,
    SourceUnavailable,
    StorageWriteError,
    WarehouseUnavailable,
)
from ingestion.handlers import TaskExecutor
from ingestion.scheduler import TaskOutcome, TaskScheduler
from ingestion.watermarks import WatermarkStore
from models.base import TaskKind
from models.task import Task

logger = logging.getLogger(__name__)

DEADLINE_ERRORS = {
    TaskKind.EXTRACT: SourceUnavailable,
    TaskKind.STAGE: StorageWriteError,
    TaskKind.LOAD: WarehouseUnavailable,
    TaskKind.TRANSFORM: WarehouseUnavailable,
}


class WorkerPool:
    """
    Production task workers.

    Responsibilities:
    - Claim → execute → complete, one task per worker at a time
    - Keep the task lease alive while the handler runs
    - Turn operator cancellation and deadlines into task outcomes
    """

    def __init__(
        self,
        scheduler: TaskScheduler,
        executor: TaskExecutor,
        watermark_store: Optional[WatermarkStore] = None,
        concurrency: int = settings.WORKER_CONCURRENCY,
        deadline: Optional[float] = settings.TASK_DEADLINE_SECONDS,
        poll_interval: float = settings.POLL_INTERVAL_SECONDS,
        heartbeat_interval: float = settings.HEARTBEAT_INTERVAL_SECONDS,
        name: Optional[str] = None
    ):
        self.scheduler = scheduler
        self.executor = executor
        self.watermark_store = watermark_store
        self.concurrency = concurrency
        self.deadline = deadline
        self.poll_interval = poll_interval
        self.heartbeat_interval = heartbeat_interval
        self.name = name or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"

        self._stopping = asyncio.Event()
        self._workers: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Reconcile watermarks, recover lost tasks and spawn the workers"""
        if self.watermark_store is not None:
            await self._reconcile_watermarks()
        await self.scheduler.recover_stale()

        self._stopping.clear()
        for index in range(self.concurrency):
            worker_id = f"{self.name}-{index}"
            self._workers.append(asyncio.create_task(self._worker_loop(worker_id), name=worker_id))
        self._workers.append(asyncio.create_task(self._recovery_loop(), name=f"{self.name}-recovery"))
        logger.info(f"Worker pool {self.name} started with {self.concurrency} worker(s)")

    async def stop(self):
        """
        Stop all workers.

        Tasks that were running stay 'running' and are recovered as lost by
        the next recover_stale() pass.
        """
        self._stopping.set()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info(f"Worker pool {self.name} stopped")

    async def _reconcile_watermarks(self):
        try:
            reconciled = await self.watermark_store.reconcile_all()
        except ETLException as e:
            logger.error(f"Watermark reconciliation failed: {e}")
            return
        logger.info(f"Reconciled watermarks for {len(reconciled)} source(s)")

    async def _worker_loop(self, worker_id: str):
        while not self._stopping.is_set():
            try:
                task = await self.run_once(worker_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Worker {worker_id} error: {e}", exc_info=True)
                task = None
            if task is None:
                await self._sleep(self.poll_interval)

    async def _recovery_loop(self):
        while not self._stopping.is_set():
            await self._sleep(self.heartbeat_interval)
            try:
                await self.scheduler.recover_stale()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Stale task recovery failed: {e}", exc_info=True)

    async def _sleep(self, seconds: float):
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run_once(self, worker_id: Optional[str] = None) -> Optional[Task]:
        """
        Claim and execute one task.

        Returns:
            The task that was executed, or None if nothing was runnable
        """
        worker_id = worker_id or f"{self.name}-0"
        task = await self.scheduler.poll(worker_id)
        if task is None:
            return None

        outcome = await self._execute(task)
        try:
            return await self.scheduler.complete(task.id, outcome)
        except InvalidTaskTransition as e:
            # The lease was lost (recovered as stale); the outcome is discarded
            logger.warning(f"Outcome of task {task.id} discarded: {e}")
            return task

    async def run_until_idle(self, max_tasks: Optional[int] = None) -> int:
        """Execute runnable tasks sequentially until none is left"""
        executed = 0
        while max_tasks is None or executed < max_tasks:
            if await self.run_once() is None:
                break
            executed += 1
        return executed

    async def _execute(self, task: Task) -> TaskOutcome:
        loop = asyncio.get_running_loop()
        started = loop.time()
        handler = asyncio.create_task(self.executor.execute(task))
        reason = None

        try:
            while not handler.done():
                wait_for = self.heartbeat_interval
                if self.deadline:
                    wait_for = min(wait_for, max(self.deadline - (loop.time() - started), 0))
                await asyncio.wait({handler}, timeout=wait_for)
                if handler.done():
                    break

                if self.deadline and loop.time() - started >= self.deadline:
                    reason = "deadline"
                elif await self.scheduler.heartbeat(task.id):
                    reason = "cancel"
                if reason:
                    handler.cancel()
                    await asyncio.gather(handler, return_exceptions=True)
                    break
        finally:
            if not handler.done():
                handler.cancel()

        if reason == "deadline":
            error_class = DEADLINE_ERRORS.get(task.kind, WarehouseUnavailable)
            logger.warning(f"Task {task.id} ({task.name}) exceeded its {self.deadline}s deadline")
            return TaskOutcome.failure(error_class(
                f"Task {task.name} exceeded deadline",
                context={"task_id": task.id, "deadline": self.deadline}
            ))
        if reason == "cancel":
            logger.warning(f"Task {task.id} ({task.name}) cancelled while running")
            return TaskOutcome.failure(Cancelled(
                f"Task {task.name} cancelled by operator",
                context={"task_id": task.id}
            ))
        return handler.result()
