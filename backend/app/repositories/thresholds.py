from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.db.models import AlertThreshold


def list_thresholds(
    db: Session,
    *,
    building_id: int | None = None,
    equipment_id: int | None = None,
    parameter_type: str | None = None,
    enabled: bool | None = None,
) -> list[AlertThreshold]:
    statement = select(AlertThreshold)
    if building_id is not None:
        statement = statement.where(AlertThreshold.building_id == building_id)
    if equipment_id is not None:
        statement = statement.where(AlertThreshold.equipment_id == equipment_id)
    if parameter_type is not None:
        statement = statement.where(AlertThreshold.parameter_type == parameter_type)
    if enabled is not None:
        statement = statement.where(AlertThreshold.enabled.is_(enabled))
    statement = statement.order_by(AlertThreshold.parameter_type.asc(), AlertThreshold.id.asc())
    return list(db.scalars(statement))


def list_applicable_thresholds(
    db: Session,
    *,
    parameter_type: str,
    building_id: int,
    equipment_id: int | None,
) -> list[AlertThreshold]:
    statement = select(AlertThreshold).where(
        AlertThreshold.parameter_type == parameter_type,
        AlertThreshold.enabled.is_(True),
        or_(AlertThreshold.building_id.is_(None), AlertThreshold.building_id == building_id),
    )
    if equipment_id is None:
        statement = statement.where(AlertThreshold.equipment_id.is_(None))
    else:
        statement = statement.where(
            or_(AlertThreshold.equipment_id.is_(None), AlertThreshold.equipment_id == equipment_id)
        )
    return list(db.scalars(statement.order_by(AlertThreshold.id.asc())))


def get_threshold_by_id(db: Session, threshold_id: int) -> AlertThreshold | None:
    return db.get(AlertThreshold, threshold_id)


def find_enabled_duplicate(
    db: Session,
    *,
    parameter_name: str,
    parameter_type: str,
    building_id: int | None,
    equipment_id: int | None,
    exclude_id: int | None = None,
) -> AlertThreshold | None:
    statement = select(AlertThreshold).where(
        AlertThreshold.parameter_name == parameter_name,
        AlertThreshold.parameter_type == parameter_type,
        AlertThreshold.enabled.is_(True),
        _nullable_equals(AlertThreshold.building_id, building_id),
        _nullable_equals(AlertThreshold.equipment_id, equipment_id),
    )
    if exclude_id is not None:
        statement = statement.where(AlertThreshold.id != exclude_id)
    return db.scalars(statement).first()


def create_threshold(
    db: Session,
    *,
    building_id: int | None,
    equipment_id: int | None,
    parameter_name: str,
    parameter_type: str,
    min_value: float | None,
    max_value: float | None,
    threshold_type: str,
    severity: str,
    enabled: bool,
    escalation_minutes: int | None,
    notification_emails: list[str],
    metadata_json: dict[str, Any],
    now: datetime,
) -> AlertThreshold:
    threshold = AlertThreshold(
        building_id=building_id,
        equipment_id=equipment_id,
        parameter_name=parameter_name,
        parameter_type=parameter_type,
        min_value=min_value,
        max_value=max_value,
        threshold_type=threshold_type,
        severity=severity,
        enabled=enabled,
        escalation_minutes=escalation_minutes,
        notification_emails=list(notification_emails),
        metadata_json=dict(metadata_json),
        created_at=now,
        updated_at=now,
    )
    db.add(threshold)
    db.commit()
    db.refresh(threshold)
    return threshold


def update_threshold(
    db: Session,
    threshold: AlertThreshold,
    *,
    updates: dict[str, Any],
    now: datetime,
) -> AlertThreshold:
    for key, value in updates.items():
        if key == "metadata":
            threshold.metadata_json = dict(value or {})
        elif key == "notification_emails":
            threshold.notification_emails = list(value or [])
        else:
            setattr(threshold, key, value)
    threshold.updated_at = now
    db.add(threshold)
    db.commit()
    db.refresh(threshold)
    return threshold


def _nullable_equals(column, value):
    if value is None:
        return column.is_(None)
    return column == value
