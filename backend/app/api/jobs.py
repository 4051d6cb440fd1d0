from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.dependencies import get_job_queue_service, get_job_worker
from app.schemas.common import ApiResponse
from app.schemas.jobs import (
    JobCreatedResponse,
    JobCreateRequest,
    JobListResponse,
    JobResponse,
    JobStatisticsResponse,
)
from app.services.jobs import JobQueueService, JobWorker


router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.post("", response_model=ApiResponse[JobCreatedResponse], status_code=status.HTTP_201_CREATED)
def post_job(
    payload: JobCreateRequest,
    db: Session = Depends(get_db),
    job_queue: JobQueueService = Depends(get_job_queue_service),
) -> ApiResponse[JobCreatedResponse]:
    job = job_queue.create_job(
        db,
        job_type=payload.job_type,
        building_id=payload.building_id,
        equipment_id=payload.equipment_id,
        parameters=payload.parameters,
    )
    return ApiResponse(message="Job queued", data=JobCreatedResponse(job_id=job.id))


@router.get("", response_model=ApiResponse[JobListResponse])
def get_jobs(
    limit: int | None = Query(default=None, ge=1, le=500),
    db: Session = Depends(get_db),
    job_queue: JobQueueService = Depends(get_job_queue_service),
    worker: JobWorker | None = Depends(get_job_worker),
) -> ApiResponse[JobListResponse]:
    jobs = job_queue.list_recent(db, limit=limit)
    worker_status = worker.get_status() if worker is not None else {"running": False, "enabled": False}
    return ApiResponse(
        message="Jobs retrieved",
        data=JobListResponse(
            jobs=[JobResponse.model_validate(job) for job in jobs],
            worker=worker_status,
        ),
    )


@router.get("/stats", response_model=ApiResponse[JobStatisticsResponse])
def get_job_stats(
    hours: int = Query(default=24, ge=1, le=24 * 90),
    db: Session = Depends(get_db),
    job_queue: JobQueueService = Depends(get_job_queue_service),
) -> ApiResponse[JobStatisticsResponse]:
    statistics = job_queue.get_statistics(db, hours=hours)
    return ApiResponse(
        message="Job statistics retrieved",
        data=JobStatisticsResponse.model_validate(statistics),
    )


@router.get("/{job_id}", response_model=ApiResponse[JobResponse])
def get_job(
    job_id: int,
    db: Session = Depends(get_db),
    job_queue: JobQueueService = Depends(get_job_queue_service),
) -> ApiResponse[JobResponse]:
    job = job_queue.get_job(db, job_id)
    return ApiResponse(message="Job retrieved", data=JobResponse.model_validate(job))
