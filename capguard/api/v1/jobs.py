"""GET /v1/jobs and POST /v1/jobs/{name}/run - job status and manual triggers"""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException

from capguard.api.dependencies import get_orchestrator, get_request_id
from capguard.api.v1.schemas import JobListResponse, JobRunRequest, JobRunResponse, JobStatusSchema
from capguard.domain.exceptions import UnknownJobError
from capguard.services.scheduler import JobOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/jobs", response_model=JobListResponse)
def list_jobs(orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    """Registered jobs with their last run, next run and last error"""
    return JobListResponse(
        jobs=[
            JobStatusSchema(
                name=status.name,
                schedule=status.schedule,
                running=status.running,
                last_run=status.last_run,
                next_run=status.next_run,
                error=status.error,
                last_report=status.last_report,
            )
            for status in orchestrator.list_jobs()
        ]
    )


@router.post("/jobs/{name}/run", response_model=JobRunResponse)
async def run_job(
    name: str,
    body: Optional[JobRunRequest] = Body(None),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
    request_id: str = Depends(get_request_id),
):
    """
    Run a job immediately and wait for it to finish.

    Returns:
        400 for an unknown job, 409 if it is already running, 500 if it failed
    """
    timeout = body.timeout_seconds if body else None
    logger.info("Manual job trigger", extra={"job": name, "request_id": request_id, "timeout": timeout})

    try:
        result = await orchestrator.run_job(name, timeout=timeout)
    except UnknownJobError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if result.skipped:
        raise HTTPException(status_code=409, detail=result.error)
    if not result.success:
        raise HTTPException(status_code=500, detail=result.error)

    return JobRunResponse(job=name, success=True, report=result.report)
