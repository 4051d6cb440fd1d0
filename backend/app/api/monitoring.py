from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.dependencies import get_monitoring_trigger
from app.repositories.monitoring_logs import list_monitoring_logs
from app.schemas.common import ApiResponse
from app.schemas.monitoring import MonitoringLogResponse, MonitoringStatusResponse
from app.services.monitoring import MonitoringTrigger


router = APIRouter(prefix="/api/monitoring", tags=["monitoring"])


@router.get("/logs", response_model=ApiResponse[list[MonitoringLogResponse]])
def get_monitoring_logs(
    building_id: int | None = Query(default=None, gt=0),
    monitoring_type: str | None = Query(default=None, max_length=32),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=500),
    db: Session = Depends(get_db),
) -> ApiResponse[list[MonitoringLogResponse]]:
    rows = list_monitoring_logs(
        db,
        building_id=building_id,
        monitoring_type=monitoring_type,
        start=start_date,
        end=end_date,
        limit=limit,
    )
    return ApiResponse(
        message="Monitoring logs retrieved",
        data=[MonitoringLogResponse.model_validate(row) for row in rows],
    )


@router.get("/status", response_model=ApiResponse[MonitoringStatusResponse])
def get_monitoring_status(
    request: Request,
    trigger: MonitoringTrigger = Depends(get_monitoring_trigger),
) -> ApiResponse[MonitoringStatusResponse]:
    return ApiResponse(message="Monitoring status retrieved", data=collect_status(request.app.state, trigger))


def collect_status(state, trigger: MonitoringTrigger | None) -> MonitoringStatusResponse:
    sweeper = getattr(state, "escalation_sweeper", None)
    worker = getattr(state, "job_worker", None)
    notifier = getattr(state, "notifier", None)
    mqtt_service = getattr(state, "mqtt_service", None)
    return MonitoringStatusResponse(
        monitoring=trigger.get_status_snapshot() if trigger is not None else {"available": False},
        escalation=sweeper.get_status_snapshot() if sweeper is not None else {"running": False},
        job_worker=worker.get_status() if worker is not None else {"running": False, "enabled": False},
        realtime=notifier.get_status_snapshot() if notifier is not None else {"available": False},
        mqtt=mqtt_service.get_status_snapshot() if mqtt_service is not None else {"enabled": False},
    )
