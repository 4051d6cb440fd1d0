import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Request
from sqlalchemy.orm import Session

from app.api.alerts import router as alerts_router
from app.api.jobs import router as jobs_router
from app.api.monitoring import collect_status
from app.api.monitoring import router as monitoring_router
from app.api.readings import router as readings_router
from app.api.realtime import router as realtime_router
from app.api.thresholds import router as thresholds_router
from app.core.config import Settings, get_settings
from app.core.exception_handlers import register_exception_handlers
from app.core.logging import configure_logging
from app.db.session import SessionLocal, check_db_connection, get_db
from app.services.alerts import AlertService
from app.services.escalation import EscalationSweeper
from app.services.jobs import JobQueueService, JobWorker
from app.services.monitoring import MonitoringTrigger
from app.services.mqtt_ingest import MqttIngestService
from app.services.notifier import RealtimeNotifier
from app.services.readings import ReadingIngestService
from app.services.throttle import build_throttle_cache

logger = logging.getLogger("app.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    settings = get_settings()
    notifier = RealtimeNotifier(queue_size=settings.realtime_queue_size)
    throttle = build_throttle_cache(settings)
    alert_service = AlertService(settings=settings, notifier=notifier)
    job_queue_service = JobQueueService(settings=settings)
    escalation_sweeper = EscalationSweeper(
        settings=settings,
        session_factory=SessionLocal,
        alert_service=alert_service,
    )
    monitoring_trigger = MonitoringTrigger(
        settings=settings,
        session_factory=SessionLocal,
        alert_service=alert_service,
        job_queue=job_queue_service,
        throttle=throttle,
        notifier=notifier,
    )
    reading_ingest_service = ReadingIngestService(monitoring=monitoring_trigger)
    job_worker = (
        JobWorker(
            settings=settings,
            session_factory=SessionLocal,
            alert_service=alert_service,
            notifier=notifier,
        )
        if settings.job_worker_enabled
        else None
    )
    mqtt_service = (
        MqttIngestService(
            settings=settings,
            session_factory=SessionLocal,
            ingest_service=reading_ingest_service,
        )
        if settings.mqtt_enabled
        else None
    )

    app.state.settings = settings
    app.state.notifier = notifier
    app.state.throttle = throttle
    app.state.alert_service = alert_service
    app.state.job_queue_service = job_queue_service
    app.state.escalation_sweeper = escalation_sweeper
    app.state.monitoring_trigger = monitoring_trigger
    app.state.reading_ingest_service = reading_ingest_service
    app.state.job_worker = job_worker
    app.state.mqtt_service = mqtt_service

    if job_worker is not None:
        job_worker.start()
    if settings.escalation_sweep_enabled:
        escalation_sweeper.start()
    if mqtt_service is not None:
        mqtt_service.start()
    logger.info(
        "building monitor started environment=%s throttle_backend=%s",
        settings.environment,
        throttle.backend,
    )
    try:
        yield
    finally:
        if mqtt_service is not None:
            mqtt_service.stop()
        escalation_sweeper.stop()
        if job_worker is not None:
            job_worker.stop()
        monitoring_trigger.shutdown(wait=False)


app = FastAPI(title="Building Monitor Backend", lifespan=lifespan)
register_exception_handlers(app)
app.include_router(readings_router)
app.include_router(alerts_router)
app.include_router(thresholds_router)
app.include_router(jobs_router)
app.include_router(monitoring_router)
app.include_router(realtime_router)


@app.get("/health")
def health():
    return {"status": "ok", "service": "backend"}


@app.get("/status")
def status(request: Request, db: Session = Depends(get_db)):
    db_ok, db_error = check_db_connection(db)
    settings: Settings | None = getattr(request.app.state, "settings", None)
    trigger: MonitoringTrigger | None = getattr(request.app.state, "monitoring_trigger", None)

    db_status: dict[str, object] = {"ok": db_ok}
    if db_error and not (settings and settings.is_production):
        db_status["error"] = db_error

    services = collect_status(request.app.state, trigger).model_dump()
    return {
        "status": "ok" if db_ok else "degraded",
        "environment": settings.environment if settings else None,
        "server_time": datetime.now(timezone.utc).isoformat(),
        "database": db_status,
        **services,
    }
