from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from threading import Lock
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from app.core.clock import Clock, to_iso, utcnow
from app.core.config import Settings
from app.repositories.monitoring_logs import create_monitoring_log
from app.repositories.readings import count_readings_since
from app.repositories.thresholds import list_applicable_thresholds
from app.schemas.readings import EnergyReading, EquipmentReading, PowerQualityReading
from app.services.alerts import AlertService
from app.services.jobs import JobQueueService
from app.services.notifier import GLOBAL_CHANNEL, RealtimeNotifier, building_channel
from app.services.threshold_evaluator import evaluate_reading
from app.services.throttle import ANOMALY_CHECK, EFFICIENCY_CHECK, ThrottleCache

AnyReading = EnergyReading | PowerQualityReading | EquipmentReading

_KIND_EVENTS = {
    "energy": "energyUpdate",
    "power_quality": "powerQualityUpdate",
}


class MonitoringTrigger:
    """Runs per-reading monitoring off the request path: alert evaluation,
    analysis scheduling, realtime publishing and the monitoring log.

    A failing step is logged and the remaining steps still run.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        alert_service: AlertService,
        job_queue: JobQueueService,
        throttle: ThrottleCache,
        notifier: RealtimeNotifier | None = None,
        clock: Clock = utcnow,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._alert_service = alert_service
        self._job_queue = job_queue
        self._throttle = throttle
        self._notifier = notifier
        self._clock = clock
        self._logger = logging.getLogger("app.monitoring")
        self._executor = ThreadPoolExecutor(
            max_workers=settings.monitoring_max_workers,
            thread_name_prefix="monitoring",
        )
        self._lock = Lock()
        self._submitted = 0
        self._completed = 0
        self._failed = 0
        self._last_processed_ts: datetime | None = None
        self._last_error: str | None = None

    def submit(self, reading: AnyReading) -> Future:
        future = self._executor.submit(self.process, reading)
        with self._lock:
            self._submitted += 1
        future.add_done_callback(self._on_done)
        return future

    def shutdown(self, *, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=not wait)

    def process(self, reading: AnyReading) -> dict[str, Any]:
        started = time.monotonic()
        failed_steps: list[str] = []
        alerts: list[dict[str, Any]] = []
        jobs: list[int] = []

        with self._session_factory() as db:
            try:
                alerts = self._evaluate_alerts(db, reading)
            except Exception:
                db.rollback()
                failed_steps.append("alerts")
                self._logger.exception(
                    "alert evaluation failed kind=%s building_id=%s",
                    reading.kind,
                    reading.building_id,
                )

            try:
                jobs = self._schedule_jobs(db, reading)
            except Exception:
                db.rollback()
                failed_steps.append("scheduling")
                self._logger.exception(
                    "job scheduling failed kind=%s building_id=%s",
                    reading.kind,
                    reading.building_id,
                )

            try:
                self._publish(reading, alerts)
            except Exception:
                failed_steps.append("publish")
                self._logger.exception("monitoring publish failed building_id=%s", reading.building_id)

            processing_time_ms = int((time.monotonic() - started) * 1000)
            if failed_steps:
                check_result = "failed"
            elif alerts:
                check_result = "warning"
            else:
                check_result = "passed"
            try:
                create_monitoring_log(
                    db,
                    monitoring_type=f"{reading.kind}_monitoring",
                    check_result=check_result,
                    building_id=reading.building_id,
                    equipment_id=reading.equipment_id,
                    reading_id=reading.reading_id,
                    details_json={
                        "alert_ids": [item["alert_id"] for item in alerts],
                        "job_ids": jobs,
                        "failed_steps": failed_steps,
                    },
                    alerts_generated=len(alerts),
                    processing_time_ms=processing_time_ms,
                    now=self._clock(),
                )
            except Exception:
                db.rollback()
                failed_steps.append("log")
                self._logger.exception("monitoring log write failed building_id=%s", reading.building_id)

        return {
            "check_result": check_result,
            "alerts": alerts,
            "jobs": jobs,
            "failed_steps": failed_steps,
            "processing_time_ms": processing_time_ms,
        }

    def get_status_snapshot(self) -> dict[str, object]:
        with self._lock:
            return {
                "submitted": self._submitted,
                "completed": self._completed,
                "failed": self._failed,
                "in_progress": self._submitted - self._completed - self._failed,
                "last_processed_ts": to_iso(self._last_processed_ts),
                "last_error": self._last_error,
                "throttle_backend": getattr(self._throttle, "backend", "unknown"),
                "max_workers": self._settings.monitoring_max_workers,
            }

    def _evaluate_alerts(self, db: Session, reading: AnyReading) -> list[dict[str, Any]]:
        if isinstance(reading, EquipmentReading) and reading.status != "faulty":
            return []
        thresholds = list_applicable_thresholds(
            db,
            parameter_type=reading.kind,
            building_id=reading.building_id,
            equipment_id=reading.equipment_id,
        )
        created: list[dict[str, Any]] = []
        for candidate in evaluate_reading(reading, thresholds):
            alert = self._alert_service.create_from_candidate(
                db,
                candidate,
                building_id=reading.building_id,
                equipment_id=reading.equipment_id,
                reading_id=reading.reading_id,
            )
            created.append(
                {
                    "alert_id": alert.id,
                    "type": alert.type,
                    "severity": alert.severity,
                    "title": alert.title,
                }
            )
        return created

    def _schedule_jobs(self, db: Session, reading: AnyReading) -> list[int]:
        if isinstance(reading, EnergyReading):
            job_ids: list[int] = []
            anomaly_job = self._schedule_analysis(
                db,
                reading,
                check_kind=ANOMALY_CHECK,
                min_readings=self._settings.anomaly_min_readings,
                count_window=timedelta(hours=1),
                ttl_seconds=self._settings.anomaly_check_ttl_seconds,
                analysis_window=timedelta(days=7),
                analysis_types=["energy", "anomaly"],
            )
            if anomaly_job is not None:
                job_ids.append(anomaly_job)
            efficiency_job = self._schedule_analysis(
                db,
                reading,
                check_kind=EFFICIENCY_CHECK,
                min_readings=self._settings.efficiency_min_readings,
                count_window=timedelta(hours=24),
                ttl_seconds=self._settings.efficiency_check_ttl_seconds,
                analysis_window=timedelta(days=30),
                analysis_types=["efficiency"],
            )
            if efficiency_job is not None:
                job_ids.append(efficiency_job)
            return job_ids

        if isinstance(reading, EquipmentReading) and reading.status in ("maintenance", "faulty"):
            job = self._job_queue.create_job(
                db,
                job_type="maintenance_prediction",
                building_id=reading.building_id,
                equipment_id=reading.equipment_id,
                parameters={},
            )
            return [job.id]
        return []

    def _schedule_analysis(
        self,
        db: Session,
        reading: EnergyReading,
        *,
        check_kind: str,
        min_readings: int,
        count_window: timedelta,
        ttl_seconds: int,
        analysis_window: timedelta,
        analysis_types: list[str],
    ) -> int | None:
        building_id = reading.building_id
        if self._throttle.is_throttled(check_kind, building_id):
            return None
        now = self._clock()
        recent = count_readings_since(db, building_id=building_id, kind="energy", since=now - count_window)
        if recent < min_readings:
            return None
        if not self._throttle.acquire(check_kind, building_id, ttl_seconds):
            # another task scheduled this check first
            return None
        job = self._job_queue.create_job(
            db,
            job_type="analytics_processing",
            building_id=building_id,
            parameters={
                "building_id": building_id,
                "start_date": (now - analysis_window).isoformat(),
                "end_date": now.isoformat(),
                "analysis_types": analysis_types,
            },
        )
        self._logger.info(
            "analysis scheduled check=%s building_id=%s job_id=%s readings=%s",
            check_kind,
            building_id,
            job.id,
            recent,
        )
        return job.id

    def _publish(self, reading: AnyReading, alerts: list[dict[str, Any]]) -> None:
        if self._notifier is None:
            return
        channel = building_channel(reading.building_id)
        summary = {
            "kind": reading.kind,
            "building_id": reading.building_id,
            "equipment_id": reading.equipment_id,
            "reading_id": reading.reading_id,
            "recorded_at": to_iso(reading.recorded_at),
            "alerts": alerts,
        }
        self._notifier.publish(channel, "monitoringUpdate", summary)

        kind_event = _KIND_EVENTS.get(reading.kind)
        if kind_event is not None:
            self._notifier.publish(
                channel,
                kind_event,
                {**summary, "values": reading.measurement_values()},
            )
        elif isinstance(reading, EquipmentReading) and reading.status == "faulty":
            self._notifier.publish(
                channel,
                "maintenanceAlert",
                {**summary, "status": reading.status, "name": reading.name},
            )

        if alerts:
            self._notifier.publish(
                GLOBAL_CHANNEL,
                "systemMonitoringUpdate",
                {
                    "building_id": reading.building_id,
                    "kind": reading.kind,
                    "alerts_generated": len(alerts),
                    "severities": sorted({item["severity"] for item in alerts}),
                },
            )

    def _on_done(self, future: Future) -> None:
        exc = future.exception() if not future.cancelled() else None
        with self._lock:
            if future.cancelled():
                self._failed += 1
                return
            if exc is not None:
                self._failed += 1
                self._last_error = str(exc)
            else:
                self._completed += 1
                self._last_processed_ts = self._clock()
        if exc is not None:
            self._logger.error("monitoring task failed", exc_info=exc)
