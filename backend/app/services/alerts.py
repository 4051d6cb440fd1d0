from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from app.core.clock import Clock, to_iso, to_utc, utcnow
from app.core.config import Settings
from app.core.errors import InvalidStateError, NotFoundError, ValidationError
from app.db.models import ALERT_STATUSES, Alert
from app.repositories.alerts import (
    ESCALATION_CEILINGS,
    AlertFilters,
    AlertStatistics,
    compare_and_set,
    create_alert,
    find_recent_duplicate,
    get_alert_by_id,
    get_alert_statistics,
    list_alerts,
)
from app.services.notifier import GLOBAL_CHANNEL, RealtimeNotifier, building_channel
from app.services.threshold_evaluator import AlertCandidate

UPDATABLE_FIELDS = frozenset({"title", "message", "metadata", "notification_sent", "audit_id"})
_ACKNOWLEDGEABLE = ("active", "escalated")
_ESCALATABLE = ("active", "escalated")
_DEDUPE_ATTEMPTS = 3


class AlertService:
    """Alert lifecycle: creation with duplicate suppression and the
    acknowledge/resolve/escalate state machine. Every mutation is a
    compare-and-swap on (status, version)."""

    def __init__(
        self,
        *,
        settings: Settings,
        notifier: RealtimeNotifier | None = None,
        clock: Clock = utcnow,
    ):
        self._settings = settings
        self._notifier = notifier
        self._clock = clock
        self._logger = logging.getLogger("app.alerts")

    def create_alert(
        self,
        db: Session,
        *,
        type: str,
        severity: str,
        title: str,
        message: str,
        building_id: int | None = None,
        equipment_id: int | None = None,
        audit_id: int | None = None,
        reading_id: int | None = None,
        threshold_id: int | None = None,
        detected_value: float | None = None,
        threshold_value: float | None = None,
        metadata: dict[str, Any] | None = None,
        dedupe: bool = True,
    ) -> Alert:
        """Store a new active alert. With ``dedupe`` an active alert of the same
        type, severity, title and scope inside the dedupe window absorbs the
        occurrence instead."""
        now = self._clock()
        window = self._settings.alert_dedupe_window_minutes
        if dedupe and window > 0:
            for _attempt in range(_DEDUPE_ATTEMPTS):
                duplicate = find_recent_duplicate(
                    db,
                    type=type,
                    severity=severity,
                    title=title,
                    building_id=building_id,
                    equipment_id=equipment_id,
                    since=now - timedelta(minutes=window),
                )
                if duplicate is None:
                    break
                refreshed = self._record_occurrence(db, duplicate, detected_value=detected_value, now=now)
                if refreshed is not None:
                    return refreshed

        alert = create_alert(
            db,
            type=type,
            severity=severity,
            title=title,
            message=message,
            building_id=building_id,
            equipment_id=equipment_id,
            audit_id=audit_id,
            reading_id=reading_id,
            threshold_id=threshold_id,
            detected_value=detected_value,
            threshold_value=threshold_value,
            metadata_json=dict(metadata or {}),
            now=now,
        )
        self._logger.info(
            "alert created alert_id=%s type=%s severity=%s building_id=%s",
            alert.id,
            alert.type,
            alert.severity,
            alert.building_id,
        )
        self._publish(alert, "newAlert")
        return alert

    def create_from_candidate(
        self,
        db: Session,
        candidate: AlertCandidate,
        *,
        building_id: int | None,
        equipment_id: int | None = None,
        reading_id: int | None = None,
    ) -> Alert:
        return self.create_alert(
            db,
            type=candidate.type,
            severity=candidate.severity,
            title=candidate.title,
            message=candidate.message,
            building_id=building_id,
            equipment_id=equipment_id,
            reading_id=reading_id,
            threshold_id=candidate.threshold_id,
            detected_value=candidate.detected_value,
            threshold_value=candidate.threshold_value,
            metadata=candidate.metadata,
        )

    def get_alert(self, db: Session, alert_id: int) -> Alert:
        alert = get_alert_by_id(db, alert_id)
        if alert is None:
            raise NotFoundError(f"Alert {alert_id} not found")
        return alert

    def list_alerts(
        self,
        db: Session,
        *,
        filters: AlertFilters,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Alert], dict[str, int]]:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        alerts, total = list_alerts(db, filters=filters, limit=limit, offset=(page - 1) * limit)
        return alerts, {
            "page": page,
            "limit": limit,
            "total_items": total,
            "total_pages": math.ceil(total / limit) if total else 0,
        }

    def get_statistics(self, db: Session, *, days: int | None = None) -> AlertStatistics:
        since = None if days is None else self._clock() - timedelta(days=days)
        return get_alert_statistics(db, since=since)

    def acknowledge(self, db: Session, alert_id: int, *, user_id: str) -> Alert:
        alert = self.get_alert(db, alert_id)
        if alert.status not in _ACKNOWLEDGEABLE or alert.acknowledged_at is not None:
            raise InvalidStateError(f"Alert {alert_id} cannot be acknowledged from status {alert.status}")

        now = self._clock()
        previous_status = alert.status
        self._swap(
            db,
            alert,
            expected_statuses=_ACKNOWLEDGEABLE,
            values={
                "status": "acknowledged",
                "acknowledged_by": user_id,
                "acknowledged_at": now,
                "updated_at": now,
            },
        )
        self._logger.info("alert acknowledged alert_id=%s user_id=%s", alert_id, user_id)
        self._publish_status_change(alert, previous_status=previous_status, actor=user_id)
        return alert

    def resolve(
        self,
        db: Session,
        alert_id: int,
        *,
        user_id: str,
        resolution_notes: str | None = None,
    ) -> Alert:
        alert = self.get_alert(db, alert_id)
        if alert.status == "resolved":
            raise InvalidStateError(f"Alert {alert_id} is already resolved")

        now = self._clock()
        previous_status = alert.status
        metadata = dict(alert.metadata_json or {})
        if resolution_notes is not None:
            metadata["resolution_notes"] = resolution_notes
        open_statuses = tuple(status for status in ALERT_STATUSES if status != "resolved")
        self._swap(
            db,
            alert,
            expected_statuses=open_statuses,
            values={
                "status": "resolved",
                "resolved_by": user_id,
                "resolved_at": now,
                "metadata_json": metadata,
                "updated_at": now,
            },
        )
        self._logger.info("alert resolved alert_id=%s user_id=%s", alert_id, user_id)
        self._publish_status_change(alert, previous_status=previous_status, actor=user_id)
        return alert

    def escalate(self, db: Session, alert_id: int) -> Alert:
        alert = self.get_alert(db, alert_id)
        now = self._clock()
        reason = self.escalation_blocker(alert, now=now)
        if reason is not None:
            raise InvalidStateError(f"Alert {alert_id} cannot be escalated: {reason}")

        previous_status = alert.status
        next_level = alert.escalation_level + 1
        metadata = dict(alert.metadata_json or {})
        history = list(metadata.get("escalation_history") or [])
        history.append({"level": next_level, "escalated_at": to_iso(now)})
        metadata["escalation_history"] = history
        self._swap(
            db,
            alert,
            expected_statuses=_ESCALATABLE,
            values={
                "status": "escalated",
                "escalation_level": next_level,
                "escalated_at": now,
                "metadata_json": metadata,
                "updated_at": now,
            },
        )
        self._logger.info(
            "alert escalated alert_id=%s severity=%s level=%s",
            alert_id,
            alert.severity,
            alert.escalation_level,
        )
        self._publish_status_change(alert, previous_status=previous_status, actor=None)
        return alert

    def escalation_blocker(self, alert: Alert, *, now: datetime) -> str | None:
        """Return why ``alert`` may not escalate at ``now``, or None if it may."""
        ceiling = ESCALATION_CEILINGS.get(alert.severity)
        if ceiling is None:
            return f"severity {alert.severity} does not escalate"
        if alert.status not in _ESCALATABLE:
            return f"status is {alert.status}"
        if alert.acknowledged_at is not None:
            return "already acknowledged"
        if alert.escalation_level >= ceiling:
            return f"level {alert.escalation_level} reached ceiling {ceiling}"

        cutoff = now - timedelta(minutes=self._settings.escalation_grace_minutes)
        reference = alert.created_at if alert.escalation_level == 0 else alert.escalated_at
        if reference is None or to_utc(reference) > cutoff:
            return "grace period not elapsed"
        return None

    def update_alert(self, db: Session, alert_id: int, *, fields: dict[str, Any]) -> Alert:
        rejected = sorted(set(fields) - UPDATABLE_FIELDS)
        if rejected:
            raise ValidationError(
                "Only title, message, metadata, notification_sent and audit_id may be updated",
                detail={"rejected_fields": rejected},
            )
        alert = self.get_alert(db, alert_id)
        if not fields:
            return alert

        values: dict[str, Any] = {"updated_at": self._clock()}
        for key, value in fields.items():
            if key == "metadata":
                merged = dict(alert.metadata_json or {})
                merged.update(value or {})
                values["metadata_json"] = merged
            else:
                values[key] = value
        self._swap(db, alert, expected_statuses=ALERT_STATUSES, values=values)
        self._logger.info("alert updated alert_id=%s fields=%s", alert_id, ",".join(sorted(fields)))
        return alert

    def _record_occurrence(
        self,
        db: Session,
        alert: Alert,
        *,
        detected_value: float | None,
        now: datetime,
    ) -> Alert | None:
        metadata = dict(alert.metadata_json or {})
        metadata["occurrences"] = int(metadata.get("occurrences", 1)) + 1
        metadata["last_detected_at"] = to_iso(now)
        if detected_value is not None:
            metadata["last_detected_value"] = detected_value
        swapped = compare_and_set(
            db,
            alert_id=alert.id,
            expected_version=alert.version,
            expected_statuses=("active",),
            values={"metadata_json": metadata, "updated_at": now},
        )
        db.refresh(alert)
        if not swapped:
            return None
        self._logger.debug(
            "duplicate alert suppressed alert_id=%s occurrences=%s",
            alert.id,
            metadata["occurrences"],
        )
        return alert

    def _swap(
        self,
        db: Session,
        alert: Alert,
        *,
        expected_statuses: tuple[str, ...],
        values: dict[str, Any],
    ) -> None:
        swapped = compare_and_set(
            db,
            alert_id=alert.id,
            expected_version=alert.version,
            expected_statuses=expected_statuses,
            values=values,
        )
        db.refresh(alert)
        if not swapped:
            raise InvalidStateError(f"Alert {alert.id} was modified concurrently (status {alert.status})")

    def _publish_status_change(self, alert: Alert, *, previous_status: str, actor: str | None) -> None:
        payload = alert_event_payload(alert)
        payload["previous_status"] = previous_status
        payload["actor"] = actor
        self._emit(alert, "alertStatusChanged", payload)

    def _publish(self, alert: Alert, event: str) -> None:
        self._emit(alert, event, alert_event_payload(alert))

    def _emit(self, alert: Alert, event: str, payload: dict[str, Any]) -> None:
        if self._notifier is None:
            return
        channel = GLOBAL_CHANNEL if alert.building_id is None else building_channel(alert.building_id)
        self._notifier.publish(channel, event, payload)


def alert_event_payload(alert: Alert) -> dict[str, Any]:
    return {
        "alert_id": alert.id,
        "type": alert.type,
        "severity": alert.severity,
        "status": alert.status,
        "title": alert.title,
        "building_id": alert.building_id,
        "equipment_id": alert.equipment_id,
        "escalation_level": alert.escalation_level,
        "detected_value": alert.detected_value,
        "threshold_value": alert.threshold_value,
    }
