"""
Job launch, status, stop and skip-log endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from typing import Dict
from api.dependencies import get_controller, get_job_factories, verify_api_key
from batch.job import JobController
from batch.jobs import JobFactory
from batch.parameters import JobParameters
from core.exceptions import (
    DuplicateExecutionError,
    ExecutionNotFoundError,
    InvalidJobParametersError,
)
from schemas.api import JobExecutionResponse, JobLaunchRequest, SkipListResponse, StopResponse
import time
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs", tags=["Jobs"], dependencies=[Depends(verify_api_key)])


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")


def _latency_ms(start_time: float) -> int:
    return int((time.time() - start_time) * 1000)


@router.post(
    "/{job_name}/executions",
    response_model=JobExecutionResponse,
    status_code=status.HTTP_202_ACCEPTED
)
async def launch_job(
    job_name: str,
    launch: JobLaunchRequest,
    request: Request,
    response: Response,
    wait: bool = Query(False, description="Run to completion before responding"),
    controller: JobController = Depends(get_controller),
    job_factories: Dict[str, JobFactory] = Depends(get_job_factories)
):
    """
    Launch (or restart) a job execution.

    - 202: accepted, running in the background
    - 200: finished (with ``wait=true``)
    - 404: unknown job
    - 409: identical parameters already completed, or running
    - 422: invalid parameters
    """
    start_time = time.time()
    request_id = _request_id(request)

    factory = job_factories.get(job_name)
    if factory is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown job '{job_name}'")

    try:
        parameters = JobParameters({
            **launch.parameters,
            **JobParameters.parse(launch.expressions)
        })
    except InvalidJobParametersError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.to_dict())

    logger.info(f"[{request_id}] POST /jobs/{job_name}/executions - parameters={dict(parameters)}")

    job = factory(parameters, request.app.state.settings)

    try:
        if wait:
            execution = await controller.run_job(job, parameters)
            response.status_code = status.HTTP_200_OK
        else:
            execution = await controller.start_job(job, parameters)
    except DuplicateExecutionError as e:
        logger.info(f"[{request_id}] Rejected launch of '{job_name}': {e.message}")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.to_dict())

    return JobExecutionResponse(
        request_id=request_id,
        api_latency_ms=_latency_ms(start_time),
        data=execution
    )


@router.get("/executions/{job_execution_id}", response_model=JobExecutionResponse)
async def get_execution(
    job_execution_id: int,
    request: Request,
    controller: JobController = Depends(get_controller)
):
    """Persisted state of a job execution and its steps"""
    start_time = time.time()

    try:
        execution = await controller.get_execution(job_execution_id)
    except ExecutionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.to_dict())

    return JobExecutionResponse(
        request_id=_request_id(request),
        api_latency_ms=_latency_ms(start_time),
        data=execution
    )


@router.post(
    "/executions/{job_execution_id}/stop",
    response_model=StopResponse,
    status_code=status.HTTP_202_ACCEPTED
)
async def stop_execution(
    job_execution_id: int,
    controller: JobController = Depends(get_controller)
):
    """Ask a running execution to stop at its next chunk boundary"""
    try:
        execution = await controller.get_execution(job_execution_id)
    except ExecutionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.to_dict())

    if not controller.stop(job_execution_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Execution {job_execution_id} is not running ({execution.status.value})"
        )

    return StopResponse(
        job_execution_id=job_execution_id,
        stopping=True,
        message="Stop requested; the execution stops after its current chunk"
    )


@router.get("/executions/{job_execution_id}/steps/{step_name}/skips", response_model=SkipListResponse)
async def list_skips(
    job_execution_id: int,
    step_name: str,
    request: Request,
    controller: JobController = Depends(get_controller)
):
    """Skipped records of one step, ordered by source offset"""
    start_time = time.time()

    try:
        execution = await controller.get_execution(job_execution_id)
    except ExecutionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.to_dict())

    if execution.step(step_name) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Execution {job_execution_id} has no step '{step_name}'"
        )

    skips = await controller.tracker.list_skips(job_execution_id, step_name)

    return SkipListResponse(
        request_id=_request_id(request),
        api_latency_ms=_latency_ms(start_time),
        data=skips,
        job_execution_id=job_execution_id,
        step_name=step_name,
        total=len(skips)
    )
