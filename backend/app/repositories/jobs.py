from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.core.errors import InvalidStateError, NotFoundError
from app.db.models import BackgroundJob

# pending -> running -> {completed | failed}; nothing leaves a terminal state
ALLOWED_JOB_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running"}),
    "running": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}


@dataclass(frozen=True)
class JobStatistics:
    total_jobs: int
    pending_jobs: int
    running_jobs: int
    completed_jobs: int
    failed_jobs: int
    avg_processing_time_seconds: float | None


def create_job(
    db: Session,
    *,
    job_type: str,
    building_id: int | None,
    equipment_id: int | None,
    parameters_json: dict[str, Any],
    now: datetime,
) -> BackgroundJob:
    job = BackgroundJob(
        job_type=job_type,
        status="pending",
        building_id=building_id,
        equipment_id=equipment_id,
        parameters_json=dict(parameters_json),
        progress_percentage=0.0,
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    return job


def get_job_by_id(db: Session, job_id: int) -> BackgroundJob | None:
    return db.get(BackgroundJob, job_id)


def list_recent_jobs(db: Session, *, limit: int = 20) -> list[BackgroundJob]:
    return list(
        db.scalars(
            select(BackgroundJob)
            .order_by(BackgroundJob.created_at.desc(), BackgroundJob.id.desc())
            .limit(limit)
        )
    )


def list_pending_job_ids(db: Session, *, limit: int) -> list[int]:
    return list(
        db.scalars(
            select(BackgroundJob.id)
            .where(BackgroundJob.status == "pending")
            .order_by(BackgroundJob.created_at.asc(), BackgroundJob.id.asc())
            .limit(limit)
        )
    )


def transition_job(
    db: Session,
    *,
    job_id: int,
    from_status: str,
    to_status: str,
    now: datetime,
    values: dict[str, Any] | None = None,
) -> BackgroundJob:
    """Move a job between statuses with a conditional UPDATE on the expected
    current status. Raises InvalidStateError for transitions outside the
    lifecycle or when another writer got there first."""
    if to_status not in ALLOWED_JOB_TRANSITIONS.get(from_status, frozenset()):
        raise InvalidStateError(f"Job transition {from_status} -> {to_status} is not permitted")

    payload: dict[str, Any] = dict(values or {})
    payload["status"] = to_status
    payload["updated_at"] = now
    if to_status == "running":
        payload.setdefault("started_at", now)
        payload.setdefault("progress_percentage", 0.0)
    if to_status in ("completed", "failed"):
        payload.setdefault("completed_at", now)

    result = db.execute(
        update(BackgroundJob)
        .where(BackgroundJob.id == job_id, BackgroundJob.status == from_status)
        .values(**payload)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        job = db.get(BackgroundJob, job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        db.refresh(job)
        raise InvalidStateError(
            f"Job {job_id} is {job.status}, expected {from_status} for transition to {to_status}"
        )

    job = db.get(BackgroundJob, job_id)
    db.refresh(job)
    return job


def claim_job(db: Session, *, job_id: int, now: datetime) -> BackgroundJob | None:
    try:
        return transition_job(db, job_id=job_id, from_status="pending", to_status="running", now=now)
    except InvalidStateError:
        return None


def update_job_progress(db: Session, *, job_id: int, progress: float, now: datetime) -> bool:
    bounded = max(0.0, min(100.0, float(progress)))
    result = db.execute(
        update(BackgroundJob)
        .where(BackgroundJob.id == job_id, BackgroundJob.status == "running")
        .values(progress_percentage=bounded, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def get_job_statistics(db: Session, *, since: datetime) -> JobStatistics:
    counts = {
        str(status): int(count)
        for status, count in db.execute(
            select(BackgroundJob.status, func.count(BackgroundJob.id))
            .where(BackgroundJob.created_at >= since)
            .group_by(BackgroundJob.status)
        )
    }
    finished = db.execute(
        select(BackgroundJob.started_at, BackgroundJob.completed_at).where(
            BackgroundJob.created_at >= since,
            BackgroundJob.started_at.is_not(None),
            BackgroundJob.completed_at.is_not(None),
        )
    ).all()
    durations = [
        (completed_at - started_at).total_seconds()
        for started_at, completed_at in finished
        if completed_at >= started_at
    ]
    return JobStatistics(
        total_jobs=sum(counts.values()),
        pending_jobs=counts.get("pending", 0),
        running_jobs=counts.get("running", 0),
        completed_jobs=counts.get("completed", 0),
        failed_jobs=counts.get("failed", 0),
        avg_processing_time_seconds=(
            round(sum(durations) / len(durations), 3) if durations else None
        ),
    )
