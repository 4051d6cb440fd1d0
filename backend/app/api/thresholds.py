from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.db.session import get_db
from app.repositories.thresholds import (
    create_threshold,
    find_enabled_duplicate,
    get_threshold_by_id,
    list_thresholds,
    update_threshold,
)
from app.schemas.common import ApiResponse
from app.schemas.thresholds import (
    ParameterType,
    ThresholdCreateRequest,
    ThresholdResponse,
    ThresholdUpdateRequest,
)


router = APIRouter(prefix="/api/thresholds", tags=["thresholds"])


@router.get("", response_model=ApiResponse[list[ThresholdResponse]])
def get_thresholds(
    building_id: int | None = Query(default=None, gt=0),
    equipment_id: int | None = Query(default=None, gt=0),
    parameter_type: ParameterType | None = Query(default=None),
    enabled: bool | None = Query(default=None),
    db: Session = Depends(get_db),
) -> ApiResponse[list[ThresholdResponse]]:
    thresholds = list_thresholds(
        db,
        building_id=building_id,
        equipment_id=equipment_id,
        parameter_type=parameter_type,
        enabled=enabled,
    )
    return ApiResponse(
        message="Thresholds retrieved",
        data=[ThresholdResponse.model_validate(threshold) for threshold in thresholds],
    )


@router.post("", response_model=ApiResponse[ThresholdResponse], status_code=status.HTTP_201_CREATED)
def post_threshold(
    payload: ThresholdCreateRequest,
    db: Session = Depends(get_db),
) -> ApiResponse[ThresholdResponse]:
    if payload.enabled:
        _ensure_no_enabled_duplicate(
            db,
            parameter_name=payload.parameter_name,
            parameter_type=payload.parameter_type,
            building_id=payload.building_id,
            equipment_id=payload.equipment_id,
        )
    threshold = create_threshold(
        db,
        building_id=payload.building_id,
        equipment_id=payload.equipment_id,
        parameter_name=payload.parameter_name,
        parameter_type=payload.parameter_type,
        min_value=payload.min_value,
        max_value=payload.max_value,
        threshold_type=payload.threshold_type,
        severity=payload.severity,
        enabled=payload.enabled,
        escalation_minutes=payload.escalation_minutes,
        notification_emails=payload.notification_emails,
        metadata_json=payload.metadata,
        now=utcnow(),
    )
    return ApiResponse(message="Threshold created", data=ThresholdResponse.model_validate(threshold))


@router.patch("/{threshold_id}", response_model=ApiResponse[ThresholdResponse])
def patch_threshold(
    threshold_id: int,
    payload: ThresholdUpdateRequest,
    db: Session = Depends(get_db),
) -> ApiResponse[ThresholdResponse]:
    threshold = get_threshold_by_id(db, threshold_id)
    if threshold is None:
        raise NotFoundError(f"Threshold {threshold_id} not found")

    updates = payload.model_dump(exclude_unset=True)
    min_value = updates.get("min_value", threshold.min_value)
    max_value = updates.get("max_value", threshold.max_value)
    if min_value is None and max_value is None:
        raise ValidationError("At least one of min_value or max_value must remain set")
    if min_value is not None and max_value is not None and min_value > max_value:
        raise ValidationError("min_value must not exceed max_value")

    if updates.get("enabled", threshold.enabled):
        _ensure_no_enabled_duplicate(
            db,
            parameter_name=threshold.parameter_name,
            parameter_type=threshold.parameter_type,
            building_id=threshold.building_id,
            equipment_id=threshold.equipment_id,
            exclude_id=threshold.id,
        )
    threshold = update_threshold(db, threshold, updates=updates, now=utcnow())
    return ApiResponse(message="Threshold updated", data=ThresholdResponse.model_validate(threshold))


def _ensure_no_enabled_duplicate(
    db: Session,
    *,
    parameter_name: str,
    parameter_type: str,
    building_id: int | None,
    equipment_id: int | None,
    exclude_id: int | None = None,
) -> None:
    duplicate = find_enabled_duplicate(
        db,
        parameter_name=parameter_name,
        parameter_type=parameter_type,
        building_id=building_id,
        equipment_id=equipment_id,
        exclude_id=exclude_id,
    )
    if duplicate is not None:
        raise ConflictError(
            f"An enabled threshold for {parameter_type}.{parameter_name} already exists for this scope",
            detail={"threshold_id": duplicate.id},
        )
