"""
REST endpoints for background job management.

Provides:
- Job submission on a lane
- Job status polling
- Job listing and filtering
- Queue statistics
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from feedback_hub.api.dependencies import get_job_store, get_producer, get_worker_pool
from feedback_hub.auth.middleware import get_admin_token
from feedback_hub.jobs.models import JobStatus, Lane
from feedback_hub.jobs.producer import JobProducer
from feedback_hub.jobs.worker import WorkerPool
from infrastructure.repositories.job_store import JobStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/jobs", tags=["jobs"], dependencies=[Depends(get_admin_token)])


# Request/Response Models


class EnqueueJobRequest(BaseModel):
    """Request to enqueue a job on a lane."""

    payload: Dict[str, Any]
    options: Optional[Dict[str, Any]] = Field(
        None, description="attempts, backoff (ms or {type, delay}), delay_ms"
    )


class EnqueueJobResponse(BaseModel):
    job_id: str
    lane: str
    status: str


class JobResponse(BaseModel):
    """Job status response."""

    job_id: str
    lane: str
    status: str
    payload: Dict[str, Any]
    attempts_made: int
    max_attempts: int
    backoff: Dict[str, Any]
    created_at: Optional[str]
    run_at: Optional[str]
    started_at: Optional[str]
    completed_at: Optional[str]
    error: Optional[str]
    result: Optional[Dict[str, Any]]
    progress: Dict[str, Any]
    stalled_count: int


class JobStatsResponse(BaseModel):
    counts: Dict[str, Dict[str, int]]
    worker: Dict[str, Any]


# Endpoints


@router.get("/stats", response_model=JobStatsResponse)
async def get_job_stats(
    store: JobStore = Depends(get_job_store),
    pool: WorkerPool = Depends(get_worker_pool),
):
    """Job counts per lane per status, plus this process's worker statistics."""
    return JobStatsResponse(counts=await store.counts(), worker=pool.get_statistics())


@router.get("", response_model=List[JobResponse])
async def list_jobs(
    lane: Optional[str] = Query(None, description="Filter by lane"),
    status_filter: Optional[JobStatus] = Query(None, alias="status", description="Filter by status"),
    limit: int = Query(100, ge=1, le=1000),
    store: JobStore = Depends(get_job_store),
):
    """List jobs, newest first."""
    lane_filter = Lane.parse(lane) if lane else None
    jobs = await store.list_jobs(lane=lane_filter, status=status_filter, limit=limit)
    return [JobResponse(**job.to_public_dict()) for job in jobs]


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, store: JobStore = Depends(get_job_store)):
    """
    Get job status and details.

    Poll this endpoint to track an enqueued job.
    """
    job = await store.get(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found",
        )
    return JobResponse(**job.to_public_dict())


@router.post("/{lane}", response_model=EnqueueJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_job(
    lane: str,
    request: EnqueueJobRequest,
    producer: JobProducer = Depends(get_producer),
):
    """
    Enqueue a job on a lane.

    Returns immediately with a job ID; the job runs in the background.
    Unknown lanes return 404, invalid payloads 422, store outages 503.
    """
    handle = await producer.enqueue(lane, request.payload, request.options)
    return EnqueueJobResponse(
        job_id=handle.job_id, lane=handle.lane.value, status=JobStatus.PENDING.value
    )
