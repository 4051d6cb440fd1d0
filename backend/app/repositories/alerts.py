from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.orm import Session

from app.db.models import Alert

ESCALATION_CEILINGS = {"critical": 3, "high": 2}

_SEVERITY_RANK = case(
    (Alert.severity == "critical", 0),
    (Alert.severity == "high", 1),
    (Alert.severity == "medium", 2),
    else_=3,
)


@dataclass(frozen=True)
class AlertFilters:
    building_id: int | None = None
    equipment_id: int | None = None
    type: str | None = None
    severity: str | None = None
    status: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None


@dataclass(frozen=True)
class AlertStatistics:
    total: int
    by_status: dict[str, int]
    by_severity: dict[str, int]
    escalated_total: int
    escalation_rate: float


def create_alert(
    db: Session,
    *,
    type: str,
    severity: str,
    title: str,
    message: str,
    building_id: int | None,
    equipment_id: int | None,
    audit_id: int | None,
    reading_id: int | None,
    threshold_id: int | None,
    detected_value: float | None,
    threshold_value: float | None,
    metadata_json: dict[str, Any],
    now: datetime,
) -> Alert:
    alert = Alert(
        type=type,
        severity=severity,
        status="active",
        title=title,
        message=message,
        building_id=building_id,
        equipment_id=equipment_id,
        audit_id=audit_id,
        reading_id=reading_id,
        threshold_id=threshold_id,
        detected_value=detected_value,
        threshold_value=threshold_value,
        escalation_level=0,
        notification_sent=False,
        metadata_json=dict(metadata_json),
        version=1,
        created_at=now,
        updated_at=now,
    )
    db.add(alert)
    db.commit()
    db.refresh(alert)
    return alert


def get_alert_by_id(db: Session, alert_id: int) -> Alert | None:
    return db.get(Alert, alert_id)


def find_recent_duplicate(
    db: Session,
    *,
    type: str,
    severity: str,
    title: str,
    building_id: int | None,
    equipment_id: int | None,
    since: datetime,
) -> Alert | None:
    statement = select(Alert).where(
        Alert.type == type,
        Alert.severity == severity,
        Alert.title == title,
        Alert.status == "active",
        Alert.created_at >= since,
        Alert.building_id.is_(None) if building_id is None else Alert.building_id == building_id,
        Alert.equipment_id.is_(None) if equipment_id is None else Alert.equipment_id == equipment_id,
    )
    return db.scalars(statement.order_by(Alert.created_at.desc(), Alert.id.desc())).first()


def reading_alert_exists(db: Session, *, reading_id: int, type: str, title: str) -> bool:
    statement = select(Alert.id).where(
        Alert.reading_id == reading_id,
        Alert.type == type,
        Alert.title == title,
    )
    return db.scalars(statement.limit(1)).first() is not None


def list_alerts(
    db: Session,
    *,
    filters: AlertFilters,
    limit: int,
    offset: int,
) -> tuple[list[Alert], int]:
    conditions = _filter_conditions(filters)
    total = db.scalar(select(func.count(Alert.id)).where(*conditions)) or 0
    statement = (
        select(Alert)
        .where(*conditions)
        .order_by(_SEVERITY_RANK.asc(), Alert.created_at.desc(), Alert.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(db.scalars(statement)), int(total)


def compare_and_set(
    db: Session,
    *,
    alert_id: int,
    expected_version: int,
    expected_statuses: tuple[str, ...],
    values: dict[str, Any],
) -> bool:
    """Apply ``values`` only if the row still has the version and status that
    the caller validated; bumps ``version`` on success."""
    result = db.execute(
        update(Alert)
        .where(
            Alert.id == alert_id,
            Alert.version == expected_version,
            Alert.status.in_(expected_statuses),
        )
        .values(**values, version=Alert.version + 1)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def list_escalation_candidates(
    db: Session,
    *,
    cutoff: datetime,
    limit: int,
) -> list[Alert]:
    below_ceiling = or_(
        and_(Alert.severity == "critical", Alert.escalation_level < ESCALATION_CEILINGS["critical"]),
        and_(Alert.severity == "high", Alert.escalation_level < ESCALATION_CEILINGS["high"]),
    )
    overdue = or_(
        and_(Alert.escalation_level == 0, Alert.created_at <= cutoff),
        and_(Alert.escalation_level > 0, Alert.escalated_at <= cutoff),
    )
    statement = (
        select(Alert)
        .where(
            Alert.status.in_(("active", "escalated")),
            Alert.acknowledged_at.is_(None),
            below_ceiling,
            overdue,
        )
        .order_by(_SEVERITY_RANK.asc(), Alert.created_at.asc(), Alert.id.asc())
        .limit(limit)
    )
    return list(db.scalars(statement))


def get_alert_statistics(db: Session, *, since: datetime | None = None) -> AlertStatistics:
    conditions = [] if since is None else [Alert.created_at >= since]
    by_status = {
        str(status): int(count)
        for status, count in db.execute(
            select(Alert.status, func.count(Alert.id)).where(*conditions).group_by(Alert.status)
        )
    }
    by_severity = {
        str(severity): int(count)
        for severity, count in db.execute(
            select(Alert.severity, func.count(Alert.id)).where(*conditions).group_by(Alert.severity)
        )
    }
    escalated_total = (
        db.scalar(select(func.count(Alert.id)).where(*conditions, Alert.escalation_level > 0)) or 0
    )
    total = sum(by_status.values())
    rate = (escalated_total / total * 100.0) if total > 0 else 0.0
    return AlertStatistics(
        total=total,
        by_status=by_status,
        by_severity=by_severity,
        escalated_total=int(escalated_total),
        escalation_rate=round(rate, 2),
    )


def _filter_conditions(filters: AlertFilters) -> list[Any]:
    conditions: list[Any] = []
    if filters.building_id is not None:
        conditions.append(Alert.building_id == filters.building_id)
    if filters.equipment_id is not None:
        conditions.append(Alert.equipment_id == filters.equipment_id)
    if filters.type is not None:
        conditions.append(Alert.type == filters.type)
    if filters.severity is not None:
        conditions.append(Alert.severity == filters.severity)
    if filters.status is not None:
        conditions.append(Alert.status == filters.status)
    if filters.start_date is not None:
        conditions.append(Alert.created_at >= filters.start_date)
    if filters.end_date is not None:
        conditions.append(Alert.created_at <= filters.end_date)
    return conditions
