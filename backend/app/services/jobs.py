from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timedelta
from threading import Event, Lock, Thread
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session, sessionmaker

from app.core.clock import Clock, to_iso, utcnow
from app.core.config import Settings
from app.core.errors import HandlerFailure, InvalidStateError, NotFoundError, ValidationError
from app.db.models import JOB_TYPES, BackgroundJob
from app.repositories.jobs import (
    JobStatistics,
    claim_job,
    create_job,
    get_job_by_id,
    get_job_statistics,
    list_pending_job_ids,
    list_recent_jobs,
    transition_job,
)
from app.schemas.jobs import JOB_PARAMETER_MODELS
from app.services.alerts import AlertService
from app.services.job_handlers import HANDLERS, JobContext, JobHandler
from app.services.notifier import GLOBAL_CHANNEL, RealtimeNotifier, building_channel

_HANDLER_START_POLL_SECONDS = 0.5


class JobQueueService:
    def __init__(self, *, settings: Settings, clock: Clock = utcnow):
        self._settings = settings
        self._clock = clock
        self._logger = logging.getLogger("app.jobs")

    def create_job(
        self,
        db: Session,
        *,
        job_type: str,
        building_id: int | None = None,
        equipment_id: int | None = None,
        parameters: dict[str, Any] | None = None,
    ) -> BackgroundJob:
        if job_type not in JOB_TYPES:
            raise ValidationError(
                f"Unknown job_type '{job_type}'",
                detail={"allowed_job_types": list(JOB_TYPES)},
            )
        validated = validate_job_parameters(
            job_type,
            parameters or {},
            building_id=building_id,
            equipment_id=equipment_id,
        )
        job = create_job(
            db,
            job_type=job_type,
            building_id=building_id,
            equipment_id=equipment_id,
            parameters_json=validated,
            now=self._clock(),
        )
        self._logger.info(
            "job queued job_id=%s job_type=%s building_id=%s",
            job.id,
            job.job_type,
            job.building_id,
        )
        return job

    def get_job(self, db: Session, job_id: int) -> BackgroundJob:
        job = get_job_by_id(db, job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    def list_recent(self, db: Session, *, limit: int | None = None) -> list[BackgroundJob]:
        return list_recent_jobs(db, limit=limit or self._settings.job_recent_limit)

    def get_statistics(self, db: Session, *, hours: int = 24) -> JobStatistics:
        return get_job_statistics(db, since=self._clock() - timedelta(hours=hours))


def validate_job_parameters(
    job_type: str,
    parameters: dict[str, Any],
    *,
    building_id: int | None = None,
    equipment_id: int | None = None,
) -> dict[str, Any]:
    model = JOB_PARAMETER_MODELS[job_type]
    payload = dict(parameters)
    # job-level scope fills parameters the caller left out
    if building_id is not None and "building_id" in model.model_fields:
        payload.setdefault("building_id", building_id)
    if equipment_id is not None and "equipment_id" in model.model_fields:
        payload.setdefault("equipment_id", equipment_id)
    try:
        validated = model.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Invalid parameters for job_type '{job_type}'",
            detail=exc.errors(include_url=False, include_context=False),
        ) from exc
    return validated.model_dump(mode="json")


class JobWorker:
    """Single logical worker: polls for pending jobs, claims them atomically
    and runs each registered handler under a timeout."""

    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        alert_service: AlertService,
        notifier: RealtimeNotifier | None = None,
        handlers: dict[str, JobHandler] | None = None,
        clock: Clock = utcnow,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._alert_service = alert_service
        self._notifier = notifier
        self._handlers = dict(HANDLERS if handlers is None else handlers)
        self._clock = clock
        self._logger = logging.getLogger("app.job_worker")
        self._stop_event = Event()
        self._thread: Thread | None = None
        self._executor = ThreadPoolExecutor(
            max_workers=max(2, settings.job_batch_size),
            thread_name_prefix="job-handler",
        )
        self._lock = Lock()
        self._poll_lock = Lock()
        self._running = False
        self._in_flight: set[int] = set()
        self._last_poll_ts: datetime | None = None
        self._last_error: str | None = None
        self._completed_count = 0
        self._failed_count = 0

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
        self._stop_event.clear()
        self._thread = Thread(target=self._loop, name="job-worker", daemon=True)
        self._thread.start()
        self._logger.info(
            "started job worker poll_seconds=%s batch_size=%s timeout_seconds=%s",
            self._settings.job_poll_seconds,
            self._settings.job_batch_size,
            self._settings.job_handler_timeout_seconds,
        )

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
        self._executor.shutdown(wait=False, cancel_futures=True)
        with self._lock:
            self._running = False

    def run_once(self) -> list[int]:
        """Claim and run up to one batch of pending jobs; returns the ids run."""
        with self._poll_lock:
            with self._session_factory() as db:
                pending_ids = list_pending_job_ids(db, limit=self._settings.job_batch_size)
            with self._lock:
                self._last_poll_ts = self._clock()

            processed: list[int] = []
            for job_id in pending_ids:
                with self._session_factory() as db:
                    job = claim_job(db, job_id=job_id, now=self._clock())
                if job is None:
                    # claimed elsewhere between the listing and the update
                    continue
                self._execute(job)
                processed.append(job.id)
            return processed

    def get_status(self) -> dict[str, object]:
        with self._lock:
            return {
                "running": self._running and not self._stop_event.is_set(),
                "in_flight": sorted(self._in_flight),
                "last_poll_ts": to_iso(self._last_poll_ts),
                "last_error": self._last_error,
                "poll_seconds": self._settings.job_poll_seconds,
                "batch_size": self._settings.job_batch_size,
                "timeout_seconds": self._settings.job_handler_timeout_seconds,
                "completed_count": self._completed_count,
                "failed_count": self._failed_count,
                "registered_job_types": sorted(self._handlers),
            }

    def _execute(self, job: BackgroundJob) -> None:
        with self._lock:
            self._in_flight.add(job.id)
        self._logger.info("job started job_id=%s job_type=%s", job.id, job.job_type)
        try:
            try:
                result = self._run_handler(job)
            except Exception as exc:
                self._finish_failed(job, exc)
            else:
                self._finish_completed(job, result)
        finally:
            with self._lock:
                self._in_flight.discard(job.id)

    def _run_handler(self, job: BackgroundJob) -> dict[str, Any]:
        handler = self._handlers.get(job.job_type)
        if handler is None:
            raise HandlerFailure(f"No handler registered for job_type '{job.job_type}'")

        model = JOB_PARAMETER_MODELS[job.job_type]
        context = JobContext(
            job_id=job.id,
            job_type=job.job_type,
            building_id=job.building_id,
            equipment_id=job.equipment_id,
            parameters=model.model_validate(job.parameters_json or {}),
            session_factory=self._session_factory,
            alert_service=self._alert_service,
            clock=self._clock,
        )
        started = Event()

        def _invoke() -> dict[str, Any] | None:
            started.set()
            return handler(context)

        future = self._executor.submit(_invoke)
        # the timeout covers the handler itself, not the wait for a free thread
        waiting_logged = False
        while not started.wait(_HANDLER_START_POLL_SECONDS):
            if future.done():
                break
            if self._stop_event.is_set():
                context.stop_event.set()
                future.cancel()
                raise HandlerFailure("Job worker stopped before the handler started")
            if not waiting_logged:
                self._logger.warning(
                    "job waiting for a free handler thread job_id=%s job_type=%s",
                    job.id,
                    job.job_type,
                )
                waiting_logged = True

        timeout = self._settings.job_handler_timeout_seconds
        try:
            result = future.result(timeout=timeout)
        except FutureTimeoutError as exc:
            # the handler thread cannot be killed; it stops at its next checkpoint
            context.stop_event.set()
            future.cancel()
            raise HandlerFailure(f"Job handler timed out after {timeout}s") from exc
        return dict(result or {})

    def _finish_completed(self, job: BackgroundJob, result: dict[str, Any]) -> None:
        with self._session_factory() as db:
            finished = transition_job(
                db,
                job_id=job.id,
                from_status="running",
                to_status="completed",
                now=self._clock(),
                values={"progress_percentage": 100.0, "result_data": result},
            )
        with self._lock:
            self._completed_count += 1
            self._last_error = None
        self._logger.info("job completed job_id=%s job_type=%s", job.id, job.job_type)
        self._publish("jobCompleted", finished)

    def _finish_failed(self, job: BackgroundJob, exc: Exception) -> None:
        message = truncate_error(_describe(exc), self._settings.job_error_message_max_length)
        self._logger.error("job failed job_id=%s job_type=%s error=%s", job.id, job.job_type, message)
        try:
            with self._session_factory() as db:
                finished = transition_job(
                    db,
                    job_id=job.id,
                    from_status="running",
                    to_status="failed",
                    now=self._clock(),
                    values={"error_message": message},
                )
        except InvalidStateError:
            self._logger.exception("job failure could not be recorded job_id=%s", job.id)
            return
        with self._lock:
            self._failed_count += 1
            self._last_error = message
        self._publish("jobFailed", finished)

    def _publish(self, event: str, job: BackgroundJob) -> None:
        if self._notifier is None:
            return
        payload = {
            "job_id": job.id,
            "job_type": job.job_type,
            "status": job.status,
            "building_id": job.building_id,
            "error_message": job.error_message,
            "completed_at": to_iso(job.completed_at),
        }
        channel = GLOBAL_CHANNEL if job.building_id is None else building_channel(job.building_id)
        self._notifier.publish(channel, event, payload)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as exc:
                self._logger.exception("job worker loop iteration failed")
                with self._lock:
                    self._last_error = str(exc)

            self._stop_event.wait(float(self._settings.job_poll_seconds))


def truncate_error(message: str, max_length: int) -> str:
    if len(message) <= max_length:
        return message
    return message[: max_length - 3] + "..."


def _describe(exc: Exception) -> str:
    text = str(exc).strip()
    if isinstance(exc, HandlerFailure):
        return text
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__
