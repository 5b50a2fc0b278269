"""
Run and task endpoints: status, manual trigger, cancel, re-trigger
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from typing import Optional
import logging

from api.dependencies import get_pipeline_definition, get_scheduler
from core.exceptions import InvalidTaskTransition, RunNotFound, TaskNotFound
from ingestion.scheduler import TaskScheduler
from models.base import RunStatus, TriggerType
from schemas.api import (
    CancelRunResponse,
    RunDetailResponse,
    RunListResponse,
    RunSummary,
    SubmitRunRequest,
    SubmitRunResponse,
    TaskEventResponse,
    TaskResponse,
)
from schemas.source import PipelineDefinition

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Runs"])


@router.get("/runs", response_model=RunListResponse)
async def list_runs(
    limit: int = Query(50, ge=1, le=500, description="Maximum runs to return"),
    status: Optional[RunStatus] = Query(None, description="Filter by run status"),
    scheduler: TaskScheduler = Depends(get_scheduler)
):
    runs = await scheduler.list_runs(limit=limit, status=status)
    return RunListResponse(
        runs=[RunSummary.model_validate(run) for run in runs],
        count=len(runs)
    )


@router.post("/runs", response_model=SubmitRunResponse, status_code=202)
async def submit_run(
    request: Request,
    body: Optional[SubmitRunRequest] = None,
    scheduler: TaskScheduler = Depends(get_scheduler),
    definition: PipelineDefinition = Depends(get_pipeline_definition)
):
    """Manual trigger over all sources or the listed ones"""
    request_id = getattr(request.state, "request_id", None)
    body = body or SubmitRunRequest()
    if body.source_ids:
        known = {s.source_id for s in definition.sources}
        unknown = sorted(set(body.source_ids) - known)
        if unknown:
            raise HTTPException(status_code=422, detail=f"Unknown sources: {unknown}")

    try:
        run_request = definition.to_run_request(
            TriggerType.MANUAL,
            trigger_ref=body.trigger_ref or f"api:{request_id}",
            source_ids=body.source_ids,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    handle = await scheduler.submit(run_request)
    logger.info(f"[{request_id}] POST /runs submitted run {handle.run_id}")
    return SubmitRunResponse(run_id=handle.run_id, task_ids=handle.task_ids)


@router.get("/runs/{run_id}", response_model=RunDetailResponse)
async def get_run(run_id: str, scheduler: TaskScheduler = Depends(get_scheduler)):
    try:
        run = await scheduler.get_run(run_id)
    except RunNotFound:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")

    detail = RunDetailResponse.model_validate(run)
    for task in detail.tasks:
        task.depends_on = await scheduler.task_dependencies(task.id)
    return detail


@router.post("/runs/{run_id}/cancel", response_model=CancelRunResponse)
async def cancel_run(run_id: str, scheduler: TaskScheduler = Depends(get_scheduler)):
    try:
        counts = await scheduler.cancel_run(run_id)
    except RunNotFound:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return CancelRunResponse(run_id=run_id, **counts)


@router.get("/tasks/{task_id}", response_model=TaskResponse)
async def get_task(task_id: int, scheduler: TaskScheduler = Depends(get_scheduler)):
    try:
        task = await scheduler.task_status(task_id)
    except TaskNotFound:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")

    response = TaskResponse.model_validate(task)
    response.depends_on = await scheduler.task_dependencies(task_id)
    response.events = [
        TaskEventResponse.model_validate(event)
        for event in await scheduler.task_events(task_id)
    ]
    return response


@router.post("/tasks/{task_id}/retrigger", response_model=TaskResponse, status_code=202)
async def retrigger_task(task_id: int, scheduler: TaskScheduler = Depends(get_scheduler)):
    """Re-run a failed or cancelled task as a new task"""
    try:
        task = await scheduler.retrigger(task_id)
    except TaskNotFound:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    except InvalidTaskTransition as e:
        raise HTTPException(status_code=409, detail=e.message)

    response = TaskResponse.model_validate(task)
    response.depends_on = await scheduler.task_dependencies(task.id)
    return response

