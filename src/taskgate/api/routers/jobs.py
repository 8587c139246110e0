"""Job submission, inspection and operator actions."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from taskgate.api.dependencies import get_app_context
from taskgate.api.schemas import (
    JobDetailsResponse,
    JobListResponse,
    JobResponse,
    JobSubmitRequest,
    JobSubmitResponse,
)
from taskgate.app import AppContext
from taskgate.jobs.services import SubmitJob

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("", response_model=JobSubmitResponse, status_code=status.HTTP_201_CREATED)
def submit_job(
    payload: JobSubmitRequest,
    context: AppContext = Depends(get_app_context),
) -> JobSubmitResponse:
    """Create a PENDING job for the worker to claim."""

    job = context.jobs.submit(
        SubmitJob(
            job_type=payload.job_type,
            task_description=payload.task_description,
            input_data=payload.input_data,
            priority=payload.priority,
            max_attempts=payload.max_attempts,
            user_id=payload.user_id,
        ),
    )
    return JobSubmitResponse(job_id=job.job_id, status=job.status.value)


@router.get("", response_model=JobListResponse)
def list_jobs(
    job_status: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    context: AppContext = Depends(get_app_context),
) -> JobListResponse:
    jobs = context.jobs.list_jobs(status=job_status, limit=limit)
    return JobListResponse(jobs=[JobResponse.from_view(job) for job in jobs], count=len(jobs))


@router.get("/{job_id}", response_model=JobDetailsResponse)
def get_job(job_id: str, context: AppContext = Depends(get_app_context)) -> JobDetailsResponse:
    """Job with its checkpoints, the latest log page and the event trail."""

    details = context.jobs.get_details(job_id)
    if details is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job not found: {job_id}",
        )
    return JobDetailsResponse.from_details(details)


@router.post("/{job_id}/retry", response_model=JobResponse)
def retry_job(job_id: str, context: AppContext = Depends(get_app_context)) -> JobResponse:
    return JobResponse.from_view(context.jobs.retry(job_id))


@router.post("/{job_id}/cancel", response_model=JobResponse)
def cancel_job(job_id: str, context: AppContext = Depends(get_app_context)) -> JobResponse:
    return JobResponse.from_view(context.jobs.cancel(job_id))
