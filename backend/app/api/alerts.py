from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Body, Depends, Query, status
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.dependencies import get_alert_service, get_current_user_id, get_escalation_sweeper
from app.repositories.alerts import AlertFilters
from app.schemas.alerts import (
    AlertCreateRequest,
    AlertListResponse,
    AlertResolveRequest,
    AlertResponse,
    AlertSeverity,
    AlertStatisticsResponse,
    AlertStatus,
    AlertType,
    AlertUpdateRequest,
    EscalationRunResponse,
)
from app.schemas.common import ApiResponse, Pagination
from app.services.alerts import AlertService
from app.services.escalation import EscalationSweeper


router = APIRouter(prefix="/api/alerts", tags=["alerts"])


@router.post("", response_model=ApiResponse[AlertResponse], status_code=status.HTTP_201_CREATED)
def post_alert(
    payload: AlertCreateRequest,
    db: Session = Depends(get_db),
    alert_service: AlertService = Depends(get_alert_service),
) -> ApiResponse[AlertResponse]:
    alert = alert_service.create_alert(
        db,
        type=payload.type,
        severity=payload.severity,
        title=payload.title,
        message=payload.message,
        building_id=payload.building_id,
        equipment_id=payload.equipment_id,
        audit_id=payload.audit_id,
        detected_value=payload.detected_value,
        threshold_value=payload.threshold_value,
        metadata=payload.metadata,
        dedupe=False,
    )
    return ApiResponse(message="Alert created", data=AlertResponse.model_validate(alert))


@router.get("", response_model=ApiResponse[AlertListResponse])
def get_alerts(
    building_id: int | None = Query(default=None, gt=0),
    equipment_id: int | None = Query(default=None, gt=0),
    type: AlertType | None = Query(default=None),
    severity: AlertSeverity | None = Query(default=None),
    alert_status: AlertStatus | None = Query(default=None, alias="status"),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    alert_service: AlertService = Depends(get_alert_service),
) -> ApiResponse[AlertListResponse]:
    alerts, pagination = alert_service.list_alerts(
        db,
        filters=AlertFilters(
            building_id=building_id,
            equipment_id=equipment_id,
            type=type,
            severity=severity,
            status=alert_status,
            start_date=start_date,
            end_date=end_date,
        ),
        page=page,
        limit=limit,
    )
    return ApiResponse(
        message="Alerts retrieved",
        data=AlertListResponse(
            alerts=[AlertResponse.model_validate(alert) for alert in alerts],
            pagination=Pagination(**pagination),
        ),
    )


@router.get("/statistics", response_model=ApiResponse[AlertStatisticsResponse])
def get_alert_statistics(
    days: int | None = Query(default=None, ge=1, le=3650),
    db: Session = Depends(get_db),
    alert_service: AlertService = Depends(get_alert_service),
) -> ApiResponse[AlertStatisticsResponse]:
    statistics = alert_service.get_statistics(db, days=days)
    return ApiResponse(
        message="Alert statistics retrieved",
        data=AlertStatisticsResponse.model_validate(statistics),
    )


@router.post("/escalations/process", response_model=ApiResponse[EscalationRunResponse])
def post_process_escalations(
    sweeper: EscalationSweeper = Depends(get_escalation_sweeper),
) -> ApiResponse[EscalationRunResponse]:
    result = sweeper.run()
    return ApiResponse(
        message=f"Escalation processing completed: {result['escalated']} escalated",
        data=EscalationRunResponse.model_validate(result),
    )


@router.get("/{alert_id}", response_model=ApiResponse[AlertResponse])
def get_alert(
    alert_id: int,
    db: Session = Depends(get_db),
    alert_service: AlertService = Depends(get_alert_service),
) -> ApiResponse[AlertResponse]:
    alert = alert_service.get_alert(db, alert_id)
    return ApiResponse(message="Alert retrieved", data=AlertResponse.model_validate(alert))


@router.patch("/{alert_id}", response_model=ApiResponse[AlertResponse])
def patch_alert(
    alert_id: int,
    payload: AlertUpdateRequest,
    db: Session = Depends(get_db),
    alert_service: AlertService = Depends(get_alert_service),
) -> ApiResponse[AlertResponse]:
    alert = alert_service.update_alert(db, alert_id, fields=payload.model_dump(exclude_unset=True))
    return ApiResponse(message="Alert updated", data=AlertResponse.model_validate(alert))


@router.post("/{alert_id}/acknowledge", response_model=ApiResponse[AlertResponse])
def post_acknowledge_alert(
    alert_id: int,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    alert_service: AlertService = Depends(get_alert_service),
) -> ApiResponse[AlertResponse]:
    alert = alert_service.acknowledge(db, alert_id, user_id=user_id)
    return ApiResponse(message="Alert acknowledged", data=AlertResponse.model_validate(alert))


@router.post("/{alert_id}/resolve", response_model=ApiResponse[AlertResponse])
def post_resolve_alert(
    alert_id: int,
    payload: AlertResolveRequest | None = Body(default=None),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    alert_service: AlertService = Depends(get_alert_service),
) -> ApiResponse[AlertResponse]:
    alert = alert_service.resolve(
        db,
        alert_id,
        user_id=user_id,
        resolution_notes=payload.resolution_notes if payload else None,
    )
    return ApiResponse(message="Alert resolved", data=AlertResponse.model_validate(alert))
