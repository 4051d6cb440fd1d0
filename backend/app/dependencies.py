from typing import TYPE_CHECKING

from fastapi import Header, HTTPException, Request

from app.core.config import Settings

if TYPE_CHECKING:
    from app.services.alerts import AlertService
    from app.services.escalation import EscalationSweeper
    from app.services.jobs import JobQueueService, JobWorker
    from app.services.monitoring import MonitoringTrigger
    from app.services.mqtt_ingest import MqttIngestService
    from app.services.notifier import RealtimeNotifier
    from app.services.readings import ReadingIngestService


def get_settings_from_app(request: Request) -> Settings:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        raise HTTPException(status_code=503, detail="Application settings are not initialized")
    return settings


def get_alert_service(request: Request) -> "AlertService":
    service = getattr(request.app.state, "alert_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Alert service is not initialized")
    return service


def get_escalation_sweeper(request: Request) -> "EscalationSweeper":
    service = getattr(request.app.state, "escalation_sweeper", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Escalation sweeper is not initialized")
    return service


def get_job_queue_service(request: Request) -> "JobQueueService":
    service = getattr(request.app.state, "job_queue_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Job queue is not initialized")
    return service


def get_job_worker(request: Request) -> "JobWorker | None":
    # absent when the worker is disabled by configuration
    return getattr(request.app.state, "job_worker", None)


def get_monitoring_trigger(request: Request) -> "MonitoringTrigger":
    service = getattr(request.app.state, "monitoring_trigger", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Monitoring trigger is not initialized")
    return service


def get_reading_ingest_service(request: Request) -> "ReadingIngestService":
    service = getattr(request.app.state, "reading_ingest_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Reading ingestion is not initialized")
    return service


def get_notifier(request: Request) -> "RealtimeNotifier":
    notifier = getattr(request.app.state, "notifier", None)
    if notifier is None:
        raise HTTPException(status_code=503, detail="Realtime notifier is not initialized")
    return notifier


def get_mqtt_service(request: Request) -> "MqttIngestService | None":
    return getattr(request.app.state, "mqtt_service", None)


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    user_id = (x_user_id or "").strip()
    if user_id == "":
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return user_id[:64]
