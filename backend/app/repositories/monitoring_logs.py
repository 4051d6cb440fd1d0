from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.db.models import SystemMonitoringLog


def create_monitoring_log(
    db: Session,
    *,
    monitoring_type: str,
    check_result: str,
    now: datetime,
    building_id: int | None = None,
    equipment_id: int | None = None,
    reading_id: int | None = None,
    details_json: dict[str, Any] | None = None,
    alerts_generated: int = 0,
    processing_time_ms: int = 0,
) -> SystemMonitoringLog:
    row = SystemMonitoringLog(
        monitoring_type=monitoring_type,
        building_id=building_id,
        equipment_id=equipment_id,
        reading_id=reading_id,
        check_result=check_result,
        details_json=dict(details_json or {}),
        alerts_generated=alerts_generated,
        processing_time_ms=processing_time_ms,
        created_at=now,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def list_monitoring_logs(
    db: Session,
    *,
    building_id: int | None = None,
    monitoring_type: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 20,
) -> list[SystemMonitoringLog]:
    statement = select(SystemMonitoringLog)
    if building_id is not None:
        statement = statement.where(SystemMonitoringLog.building_id == building_id)
    if monitoring_type is not None:
        statement = statement.where(SystemMonitoringLog.monitoring_type == monitoring_type)
    if start is not None:
        statement = statement.where(SystemMonitoringLog.created_at >= start)
    if end is not None:
        statement = statement.where(SystemMonitoringLog.created_at <= end)
    statement = statement.order_by(SystemMonitoringLog.created_at.desc(), SystemMonitoringLog.id.desc())
    return list(db.scalars(statement.limit(limit)))


def list_checked_reading_ids(db: Session, reading_ids: list[int]) -> set[int]:
    """Readings that already went through a monitoring pass that did not fail."""
    if not reading_ids:
        return set()
    statement = select(SystemMonitoringLog.reading_id).where(
        SystemMonitoringLog.reading_id.in_(reading_ids),
        SystemMonitoringLog.check_result != "failed",
    )
    return {reading_id for reading_id in db.scalars(statement) if reading_id is not None}
