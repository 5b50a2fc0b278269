"""
Task Scheduler: durable DAG of extract/stage/load/transform tasks.

State machine:

    pending ──claim──▶ running ──ok──▶ succeeded
       ▲                  │
       │                  ├─retryable, attempts < max──▶ retrying ──backoff──▶ running
       │                  ├─non-retryable / exhausted──▶ failed  (dependents → blocked)
       │                  └─Cancelled──────────────────▶ cancelled
       └── retrigger (new task, retry_of link) ◀── failed | cancelled

All state lives in SQL. Workers claim tasks with a compare-and-swap on the
task row, so any number of workers (or processes) can poll concurrently.
Every transition is appended to task_events.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from core.config import settings
from core.exceptions import (
    Cancelled,
    ETLException,
    InvalidTaskTransition,
    RateLimitError,
    RunNotFound,
    TaskNotFound,
    WorkerLost,
)
from models.base import (
    CLAIMABLE_STATES,
    TERMINAL_STATES,
    RunStatus,
    TaskKind,
    TaskState,
)
from models.run import PipelineRun
from models.task import Task, TaskDependency, TaskEvent
from schemas.source import RunRequest

logger = logging.getLogger(__name__)

IN_FLIGHT_STATES = (TaskState.PENDING, TaskState.RUNNING, TaskState.RETRYING)


@dataclass
class RunHandle:
    """Identifiers of a submitted run"""
    id: int
    run_id: str
    task_ids: Dict[str, int] = field(default_factory=dict)  # task name -> id


@dataclass
class TaskOutcome:
    """Result reported by a worker for one attempt"""
    succeeded: bool
    output: Optional[Dict[str, Any]] = None
    error: Optional[BaseException] = None
    checkpoint: Optional[Dict[str, Any]] = None

    @classmethod
    def success(cls, output: Optional[Dict[str, Any]] = None) -> "TaskOutcome":
        return cls(succeeded=True, output=output)

    @classmethod
    def failure(
        cls,
        error: BaseException,
        checkpoint: Optional[Dict[str, Any]] = None
    ) -> "TaskOutcome":
        return cls(succeeded=False, error=error, checkpoint=checkpoint)


def error_details(error: BaseException) -> Dict[str, Any]:
    if isinstance(error, ETLException):
        return error.to_dict()
    return {
        "error_type": type(error).__name__,
        "message": str(error),
        "retryable": True,
    }


def is_retryable(error: BaseException) -> bool:
    """Pipeline errors declare it; anything unexpected is assumed transient"""
    if isinstance(error, ETLException):
        return error.retryable
    return True


class TaskScheduler:
    """
    Submit runs, hand out runnable tasks and record their outcomes.

    A task is runnable when it is pending or retrying, its backoff has
    elapsed and its dependencies are satisfied: same-run dependencies must
    have succeeded, dependencies on an earlier run's task (serialization of
    loads per source) only need to have finished.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        max_attempts: int = settings.MAX_RETRIES,
        base_delay: float = settings.RETRY_BASE_DELAY_SECONDS,
        max_delay: float = settings.RETRY_MAX_DELAY_SECONDS,
        liveness_timeout: float = settings.WORKER_LIVENESS_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = datetime.utcnow,
        claim_batch: int = 20
    ):
        self.session_maker = session_maker
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.liveness_timeout = liveness_timeout
        self.clock = clock
        self.claim_batch = claim_batch

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self, request: RunRequest) -> RunHandle:
        """
        Persist a run and its task DAG.

        Per source: extract → stage → load. A source's extract also depends
        on any load for the same source still in flight from an earlier run.
        Transforms depend on the loads of their sources (all sources when
        none are listed).
        """
        now = self.clock()
        max_attempts = request.max_attempts or self.max_attempts

        async with self.session_maker() as session:
            async with session.begin():
                await self._lock_sources(session, [s.source_id for s in request.sources])
                run = PipelineRun(
                    trigger=request.trigger,
                    trigger_ref=request.trigger_ref,
                    logical_date=request.logical_date,
                    status=RunStatus.PENDING,
                    config_snapshot=request.model_dump(mode="json"),
                    created_at=now,
                )
                session.add(run)
                await session.flush()

                handle = RunHandle(id=run.id, run_id=run.run_id)
                loads: Dict[str, Task] = {}

                for source in request.sources:
                    params = {"source": source.model_dump(mode="json")}
                    in_flight_loads = await self._in_flight_loads(session, source.source_id)

                    extract = self._new_task(run, TaskKind.EXTRACT, source.source_id, params, max_attempts, now)
                    stage = self._new_task(run, TaskKind.STAGE, source.source_id, params, max_attempts, now)
                    load = self._new_task(run, TaskKind.LOAD, source.source_id, params, max_attempts, now)
                    session.add_all([extract, stage, load])
                    await session.flush()

                    for previous in in_flight_loads:
                        session.add(TaskDependency(task_id=extract.id, depends_on_id=previous.id))
                    session.add(TaskDependency(task_id=stage.id, depends_on_id=extract.id))
                    session.add(TaskDependency(task_id=load.id, depends_on_id=stage.id))

                    loads[source.source_id] = load
                    for task in (extract, stage, load):
                        handle.task_ids[task.name] = task.id

                for transform in request.transforms:
                    task = Task(
                        run_id=run.id,
                        kind=TaskKind.TRANSFORM,
                        source_id=None,
                        name=f"transform:{transform.name}",
                        state=TaskState.PENDING,
                        max_attempts=max_attempts,
                        params={"transform": transform.model_dump(mode="json")},
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(task)
                    await session.flush()
                    upstream = transform.depends_on_sources or list(loads)
                    for source_id in upstream:
                        session.add(TaskDependency(task_id=task.id, depends_on_id=loads[source_id].id))
                    handle.task_ids[task.name] = task.id

                await session.flush()
                tasks = (await session.execute(select(Task).where(Task.run_id == run.id))).scalars().all()
                for task in tasks:
                    self._record_event(session, task, None, TaskState.PENDING)

        logger.info(
            f"Submitted run {handle.run_id} ({request.trigger.value}) with {len(handle.task_ids)} tasks",
            extra={"run_id": handle.run_id, "trigger_ref": request.trigger_ref}
        )
        return handle

    def _new_task(self, run, kind, source_id, params, max_attempts, now) -> Task:
        return Task(
            run_id=run.id,
            kind=kind,
            source_id=source_id,
            name=f"{kind.value}:{source_id}",
            state=TaskState.PENDING,
            max_attempts=max_attempts,
            params=params,
            created_at=now,
            updated_at=now,
        )

    async def _lock_sources(self, session: AsyncSession, source_ids: List[str]):
        """
        Hold a per-source lock until the submit transaction ends, so two
        submits for one source cannot both miss each other's in-flight load.

        PostgreSQL: transaction-scoped advisory locks, taken in sorted order.
        SQLite: the run INSERT that follows takes the database write lock
        before any in-flight read.
        """
        if session.get_bind().dialect.name != "postgresql":
            return
        for source_id in sorted(set(source_ids)):
            await session.execute(
                select(func.pg_advisory_xact_lock(func.hashtext(f"pipeline-source:{source_id}")))
            )

    async def _in_flight_loads(self, session: AsyncSession, source_id: str) -> List[Task]:
        result = await session.execute(
            select(Task).where(
                Task.kind == TaskKind.LOAD,
                Task.source_id == source_id,
                Task.state.in_(IN_FLIGHT_STATES),
                Task.superseded_by.is_(None),
            )
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------

    async def poll(self, worker_id: str) -> Optional[Task]:
        """
        Claim the oldest runnable task for worker_id.

        Returns:
            The claimed task (now running), or None if nothing is runnable
        """
        now = self.clock()
        async with self.session_maker() as session:
            async for candidate in self._candidates(session, now):
                if not await self._dependencies_satisfied(session, candidate):
                    continue

                previous_state = candidate.state
                claimed = await session.execute(
                    update(Task)
                    .where(Task.id == candidate.id, Task.state.in_(CLAIMABLE_STATES))
                    .values(
                        state=TaskState.RUNNING,
                        worker_id=worker_id,
                        heartbeat_at=now,
                        started_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    continue  # Another worker won the CAS

                task = await self._get_task(session, candidate.id)
                self._record_event(session, task, previous_state, TaskState.RUNNING)
                await self._mark_run_started(session, task.run_id, now)
                await session.commit()

                logger.info(
                    f"Worker {worker_id} claimed task {task.id} ({task.name}, "
                    f"attempt {task.attempts + 1}/{task.max_attempts})",
                    extra={"task_id": task.id, "worker_id": worker_id}
                )
                return task

        return None

    async def _candidates(self, session: AsyncSession, now: datetime) -> AsyncIterator[Task]:
        """Claimable tasks in id order, read claim_batch at a time until exhausted"""
        after_id = 0
        while True:
            batch = (
                await session.execute(
                    select(Task)
                    .where(
                        Task.id > after_id,
                        Task.state.in_(CLAIMABLE_STATES),
                        Task.cancel_requested.is_(False),
                        or_(Task.next_attempt_at.is_(None), Task.next_attempt_at <= now),
                    )
                    .order_by(Task.id)
                    .limit(self.claim_batch)
                )
            ).scalars().all()
            if not batch:
                return
            for task in batch:
                yield task
            after_id = batch[-1].id

    async def _resolve(self, session: AsyncSession, task: Task) -> Task:
        """Follow the superseded_by chain to the task currently standing in"""
        while task.superseded_by is not None:
            task = await self._get_task(session, task.superseded_by)
        return task

    async def _dependencies_satisfied(self, session: AsyncSession, task: Task) -> bool:
        dependency_ids = (
            await session.execute(
                select(TaskDependency.depends_on_id).where(TaskDependency.task_id == task.id)
            )
        ).scalars().all()

        for dependency_id in dependency_ids:
            dependency = await self._resolve(session, await self._get_task(session, dependency_id))
            if dependency.run_id == task.run_id:
                if dependency.state != TaskState.SUCCEEDED:
                    return False
            elif dependency.state not in TERMINAL_STATES:
                return False
        return True

    async def _mark_run_started(self, session: AsyncSession, run_pk: int, now: datetime):
        run = await session.get(PipelineRun, run_pk)
        if run.status == RunStatus.PENDING:
            run.status = RunStatus.RUNNING
            run.started_at = run.started_at or now

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def complete(self, task_id: int, outcome: TaskOutcome) -> Task:
        """
        Record the outcome of a running task.

        Raises:
            TaskNotFound: Unknown task id
            InvalidTaskTransition: Task is not running (e.g. recovered as lost)
        """
        async with self.session_maker() as session:
            async with session.begin():
                task = await self._get_task(session, task_id, for_update=True)
                if task.state != TaskState.RUNNING:
                    raise InvalidTaskTransition(
                        f"Task {task_id} is {task.state.value}, not running",
                        context={"task_id": task_id, "state": task.state.value}
                    )

                if outcome.succeeded:
                    self._succeed(session, task, outcome)
                elif isinstance(outcome.error, Cancelled):
                    await self._cancel(session, task, outcome.error)
                else:
                    await self._fail(session, task, outcome.error, outcome.checkpoint)

                await self._refresh_run_status(session, task.run_id)
            return task

    def _succeed(self, session: AsyncSession, task: Task, outcome: TaskOutcome):
        now = self.clock()
        task.state = TaskState.SUCCEEDED
        task.attempts += 1
        task.output = outcome.output
        task.checkpoint = None
        task.completed_at = now
        task.updated_at = now
        task.worker_id = None
        task.next_attempt_at = None
        self._record_event(session, task, TaskState.RUNNING, TaskState.SUCCEEDED)
        logger.info(f"Task {task.id} ({task.name}) succeeded", extra={"task_id": task.id})

    async def _cancel(self, session: AsyncSession, task: Task, error: Optional[BaseException] = None):
        now = self.clock()
        previous = task.state
        task.state = TaskState.CANCELLED
        task.completed_at = now
        task.updated_at = now
        task.worker_id = None
        task.next_attempt_at = None
        self._record_event(
            session, task, previous, TaskState.CANCELLED,
            error=error_details(error) if error else None
        )
        logger.warning(f"Task {task.id} ({task.name}) cancelled", extra={"task_id": task.id})
        await self._close_dependents(session, task, TaskState.CANCELLED)

    async def _fail(
        self,
        session: AsyncSession,
        task: Task,
        error: BaseException,
        checkpoint: Optional[Dict[str, Any]] = None
    ):
        now = self.clock()
        task.attempts += 1
        details = error_details(error)
        details["attempt"] = task.attempts
        task.last_error = details
        task.worker_id = None
        task.updated_at = now
        if checkpoint is not None:
            task.checkpoint = checkpoint

        if is_retryable(error) and task.attempts < task.max_attempts:
            delay = self.backoff_delay(task.attempts)
            if isinstance(error, RateLimitError) and error.retry_after:
                delay = max(delay, float(error.retry_after))
            task.state = TaskState.RETRYING
            task.next_attempt_at = now + timedelta(seconds=delay)
            self._record_event(session, task, TaskState.RUNNING, TaskState.RETRYING, error=details)
            logger.warning(
                f"Task {task.id} ({task.name}) attempt {task.attempts}/{task.max_attempts} "
                f"failed, retrying in {delay:.1f}s: {details['message']}",
                extra={"task_id": task.id, "error_type": details["error_type"]}
            )
            return

        task.state = TaskState.FAILED
        task.completed_at = now
        task.next_attempt_at = None
        self._record_event(session, task, TaskState.RUNNING, TaskState.FAILED, error=details)
        logger.error(
            f"Task {task.id} ({task.name}) failed after {task.attempts} attempt(s): {details['message']}",
            extra={"task_id": task.id, "error_type": details["error_type"]}
        )
        await self._close_dependents(session, task, TaskState.BLOCKED)

    def backoff_delay(self, attempts: int) -> float:
        """base × 2^(attempts-1), capped at max_delay"""
        return min(self.base_delay * (2 ** (attempts - 1)), self.max_delay)

    async def _chain_ids(self, session: AsyncSession, task: Task) -> List[int]:
        """Ids of a task and every task it re-triggered (dependency edges point at the root)"""
        ids = [task.id]
        current = task
        while current.retry_of is not None:
            current = await self._get_task(session, current.retry_of)
            ids.append(current.id)
        return ids

    async def _dependents(self, session: AsyncSession, task: Task) -> List[Task]:
        """Same-run tasks that depend directly on task"""
        chain = await self._chain_ids(session, task)
        result = await session.execute(
            select(Task)
            .join(TaskDependency, TaskDependency.task_id == Task.id)
            .where(
                TaskDependency.depends_on_id.in_(chain),
                Task.run_id == task.run_id,
                Task.superseded_by.is_(None),
            )
        )
        return list(result.scalars().unique().all())

    async def _close_dependents(self, session: AsyncSession, task: Task, to_state: TaskState):
        """Transitively move waiting same-run dependents to blocked/cancelled"""
        await session.flush()
        frontier = [task]
        seen: Set[int] = {task.id}
        while frontier:
            current = frontier.pop()
            for dependent in await self._dependents(session, current):
                if dependent.id in seen:
                    continue
                seen.add(dependent.id)
                if dependent.state in CLAIMABLE_STATES:
                    previous = dependent.state
                    dependent.state = to_state
                    dependent.completed_at = self.clock()
                    dependent.updated_at = self.clock()
                    dependent.next_attempt_at = None
                    self._record_event(
                        session, dependent, previous, to_state,
                        error={"upstream_task_id": task.id, "upstream_state": task.state.value}
                    )
                    logger.warning(
                        f"Task {dependent.id} ({dependent.name}) {to_state.value}: "
                        f"upstream task {task.id} is {task.state.value}"
                    )
                frontier.append(dependent)

    # ------------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------------

    async def heartbeat(self, task_id: int) -> bool:
        """
        Refresh the lease of a running task.

        Returns:
            True if the worker should stop: cancellation was requested or
            the task is no longer running (lease lost)
        """
        now = self.clock()
        async with self.session_maker() as session:
            result = await session.execute(
                update(Task)
                .where(Task.id == task_id, Task.state == TaskState.RUNNING)
                .values(heartbeat_at=now)
                .execution_options(synchronize_session=False)
            )
            task = await self._get_task(session, task_id)
            await session.commit()
        if result.rowcount != 1:
            logger.warning(f"Task {task_id} lost its lease ({task.state.value})")
            return True
        return bool(task.cancel_requested)

    async def recover_stale(self) -> List[int]:
        """
        Fail running tasks whose heartbeat is older than the liveness timeout.

        A lost worker is a retryable failure, so the task goes through the
        normal retry policy.
        """
        cutoff = self.clock() - timedelta(seconds=self.liveness_timeout)
        recovered = []
        async with self.session_maker() as session:
            async with session.begin():
                stale = (
                    await session.execute(
                        select(Task)
                        .where(Task.state == TaskState.RUNNING, Task.heartbeat_at < cutoff)
                        .with_for_update(skip_locked=True)
                    )
                ).scalars().all()

                for task in stale:
                    error = WorkerLost(
                        f"Worker {task.worker_id} stopped heartbeating",
                        context={
                            "task_id": task.id,
                            "worker_id": task.worker_id,
                            "heartbeat_at": task.heartbeat_at.isoformat() if task.heartbeat_at else None,
                        }
                    )
                    await self._fail(session, task, error)
                    await self._refresh_run_status(session, task.run_id)
                    recovered.append(task.id)

        if recovered:
            logger.warning(f"Recovered {len(recovered)} stale task(s): {recovered}")
        return recovered

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def cancel_run(self, run_id: str) -> Dict[str, int]:
        """
        Cancel waiting tasks of a run and flag running ones.

        Running tasks finish as cancelled once their worker notices the flag.
        """
        counts = {"cancelled": 0, "flagged": 0}
        async with self.session_maker() as session:
            async with session.begin():
                run = await self._get_run(session, run_id)
                run.cancel_requested = True
                tasks = (
                    await session.execute(select(Task).where(Task.run_id == run.id).order_by(Task.id))
                ).scalars().all()
                # Cancelling a task also cancels its waiting dependents
                counts["cancelled"] = sum(1 for task in tasks if task.state in CLAIMABLE_STATES)
                for task in tasks:
                    if task.state in CLAIMABLE_STATES:
                        await self._cancel(session, task)
                    elif task.state == TaskState.RUNNING:
                        task.cancel_requested = True
                        counts["flagged"] += 1
                await self._refresh_run_status(session, run.id)

        logger.warning(f"Run {run_id} cancel requested: {counts}")
        return counts

    async def retrigger(self, task_id: int) -> Task:
        """
        Re-run a failed or cancelled task as a new task.

        The original keeps its history and is marked superseded; blocked or
        cancelled dependents in the same run become pending again.
        """
        now = self.clock()
        async with self.session_maker() as session:
            async with session.begin():
                old = await self._get_task(session, task_id, for_update=True)
                if old.state not in (TaskState.FAILED, TaskState.CANCELLED):
                    raise InvalidTaskTransition(
                        f"Only failed or cancelled tasks can be re-triggered; task {task_id} is {old.state.value}",
                        context={"task_id": task_id, "state": old.state.value}
                    )
                if old.superseded_by is not None:
                    raise InvalidTaskTransition(
                        f"Task {task_id} was already re-triggered as task {old.superseded_by}",
                        context={"task_id": task_id, "superseded_by": old.superseded_by}
                    )

                new = Task(
                    run_id=old.run_id,
                    kind=old.kind,
                    source_id=old.source_id,
                    name=old.name,
                    state=TaskState.PENDING,
                    max_attempts=old.max_attempts,
                    params=old.params,
                    retry_of=old.id,
                    created_at=now,
                    updated_at=now,
                )
                session.add(new)
                await session.flush()

                dependency_ids = (
                    await session.execute(
                        select(TaskDependency.depends_on_id).where(TaskDependency.task_id == old.id)
                    )
                ).scalars().all()
                for dependency_id in dependency_ids:
                    session.add(TaskDependency(task_id=new.id, depends_on_id=dependency_id))

                old.superseded_by = new.id
                old.updated_at = now
                self._record_event(session, new, None, TaskState.PENDING, error={"retry_of": old.id})
                await self._reopen_dependents(session, old)

                run = await session.get(PipelineRun, old.run_id)
                run.cancel_requested = False
                run.completed_at = None
                await self._refresh_run_status(session, run.id)

        logger.info(f"Task {task_id} re-triggered as task {new.id}", extra={"task_id": new.id})
        return new

    async def _reopen_dependents(self, session: AsyncSession, task: Task):
        await session.flush()
        frontier = [task]
        seen: Set[int] = {task.id}
        while frontier:
            current = frontier.pop()
            for dependent in await self._dependents(session, current):
                if dependent.id in seen:
                    continue
                seen.add(dependent.id)
                if dependent.state in (TaskState.BLOCKED, TaskState.CANCELLED):
                    previous = dependent.state
                    dependent.state = TaskState.PENDING
                    dependent.completed_at = None
                    dependent.cancel_requested = False
                    dependent.updated_at = self.clock()
                    self._record_event(session, dependent, previous, TaskState.PENDING)
                frontier.append(dependent)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def status(self, run_id: str) -> RunStatus:
        async with self.session_maker() as session:
            return (await self._get_run(session, run_id)).status

    async def get_run(self, run_id: str) -> PipelineRun:
        """Run with its tasks loaded"""
        async with self.session_maker() as session:
            result = await session.execute(
                select(PipelineRun)
                .options(selectinload(PipelineRun.tasks))
                .where(PipelineRun.run_id == run_id)
            )
            run = result.scalar_one_or_none()
            if run is None:
                raise RunNotFound(f"Run {run_id} not found", context={"run_id": run_id})
            return run

    async def list_runs(self, limit: int = 50, status: Optional[RunStatus] = None) -> List[PipelineRun]:
        async with self.session_maker() as session:
            query = select(PipelineRun).order_by(PipelineRun.id.desc()).limit(limit)
            if status is not None:
                query = query.where(PipelineRun.status == status)
            return list((await session.execute(query)).scalars().all())

    async def task_status(self, task_id: int) -> Task:
        async with self.session_maker() as session:
            return await self._get_task(session, task_id)

    async def task_events(self, task_id: int) -> List[TaskEvent]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(TaskEvent).where(TaskEvent.task_id == task_id).order_by(TaskEvent.id)
            )
            return list(result.scalars().all())

    async def task_dependencies(self, task_id: int) -> List[int]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(TaskDependency.depends_on_id)
                .where(TaskDependency.task_id == task_id)
                .order_by(TaskDependency.depends_on_id)
            )
            return list(result.scalars().all())

    async def upstream_output(self, task_id: int, kind: TaskKind) -> Optional[Dict[str, Any]]:
        """Output of the same-run dependency of the given kind (after re-triggers)"""
        async with self.session_maker() as session:
            task = await self._get_task(session, task_id)
            dependency_ids = (
                await session.execute(
                    select(TaskDependency.depends_on_id).where(TaskDependency.task_id == task_id)
                )
            ).scalars().all()
            for dependency_id in dependency_ids:
                dependency = await self._resolve(session, await self._get_task(session, dependency_id))
                if dependency.run_id == task.run_id and dependency.kind == kind:
                    return dependency.output
        return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get_task(self, session: AsyncSession, task_id: int, for_update: bool = False) -> Task:
        query = select(Task).where(Task.id == task_id).execution_options(populate_existing=True)
        if for_update:
            query = query.with_for_update()
        task = (await session.execute(query)).scalar_one_or_none()
        if task is None:
            raise TaskNotFound(f"Task {task_id} not found", context={"task_id": task_id})
        return task

    async def _get_run(self, session: AsyncSession, run_id: str) -> PipelineRun:
        result = await session.execute(select(PipelineRun).where(PipelineRun.run_id == run_id))
        run = result.scalar_one_or_none()
        if run is None:
            raise RunNotFound(f"Run {run_id} not found", context={"run_id": run_id})
        return run

    def _record_event(
        self,
        session: AsyncSession,
        task: Task,
        from_state: Optional[TaskState],
        to_state: TaskState,
        error: Optional[Dict[str, Any]] = None
    ):
        session.add(TaskEvent(
            task_id=task.id,
            run_id=task.run_id,
            from_state=from_state,
            to_state=to_state,
            attempt=task.attempts,
            error=error,
            created_at=self.clock(),
        ))

    async def _refresh_run_status(self, session: AsyncSession, run_pk: int):
        """Derive the run status from its current (non-superseded) tasks"""
        await session.flush()
        run = await session.get(PipelineRun, run_pk)
        states = set(
            (
                await session.execute(
                    select(Task.state).where(Task.run_id == run_pk, Task.superseded_by.is_(None))
                )
            ).scalars().all()
        )

        if states & set(IN_FLIGHT_STATES):
            if states - {TaskState.PENDING} or run.started_at is not None:
                status = RunStatus.RUNNING
            else:
                status = RunStatus.PENDING
        elif states == {TaskState.SUCCEEDED}:
            status = RunStatus.SUCCEEDED
        elif run.cancel_requested:
            status = RunStatus.CANCELLED
        elif TaskState.SUCCEEDED in states:
            status = RunStatus.PARTIAL
        else:
            status = RunStatus.FAILED

        if status != run.status:
            logger.info(f"Run {run.run_id} {run.status.value} -> {status.value}")
            run.status = status
        if status in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.PARTIAL, RunStatus.CANCELLED):
            run.completed_at = run.completed_at or self.clock()
        else:
            run.completed_at = None
