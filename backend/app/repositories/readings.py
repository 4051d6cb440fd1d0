from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.db.models import Reading


def create_reading(
    db: Session,
    *,
    kind: str,
    building_id: int,
    equipment_id: int | None,
    recorded_at: datetime,
    values_json: dict[str, Any],
    source: str,
    now: datetime,
) -> Reading:
    reading = Reading(
        kind=kind,
        building_id=building_id,
        equipment_id=equipment_id,
        recorded_at=recorded_at,
        values_json=dict(values_json),
        source=source,
        created_at=now,
    )
    db.add(reading)
    db.commit()
    db.refresh(reading)
    return reading


def count_readings_since(
    db: Session,
    *,
    building_id: int,
    kind: str,
    since: datetime,
) -> int:
    return int(
        db.scalar(
            select(func.count(Reading.id)).where(
                Reading.building_id == building_id,
                Reading.kind == kind,
                Reading.recorded_at >= since,
            )
        )
        or 0
    )


def list_readings(
    db: Session,
    *,
    kind: str,
    building_id: int | None = None,
    equipment_id: int | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int | None = None,
) -> list[Reading]:
    statement = select(Reading).where(Reading.kind == kind)
    if building_id is not None:
        statement = statement.where(Reading.building_id == building_id)
    if equipment_id is not None:
        statement = statement.where(Reading.equipment_id == equipment_id)
    if start is not None:
        statement = statement.where(Reading.recorded_at >= start)
    if end is not None:
        statement = statement.where(Reading.recorded_at <= end)
    statement = statement.order_by(Reading.recorded_at.asc(), Reading.id.asc())
    if limit is not None:
        statement = statement.limit(limit)
    return list(db.scalars(statement))
