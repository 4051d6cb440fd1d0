from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from threading import Event, Lock, Thread
from typing import Any

from sqlalchemy.orm import sessionmaker

from app.core.clock import Clock, to_iso, utcnow
from app.core.config import Settings
from app.core.errors import InvalidStateError
from app.repositories.alerts import list_escalation_candidates
from app.repositories.monitoring_logs import create_monitoring_log
from app.services.alerts import AlertService


class EscalationSweeper:
    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        alert_service: AlertService,
        clock: Clock = utcnow,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._alert_service = alert_service
        self._clock = clock
        self._logger = logging.getLogger("app.escalation")
        self._stop_event = Event()
        self._thread: Thread | None = None
        self._lock = Lock()
        self._run_lock = Lock()
        self._running = False
        self._last_run_ts: datetime | None = None
        self._last_result: dict[str, Any] | None = None
        self._last_error: str | None = None

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
        self._stop_event.clear()
        self._thread = Thread(target=self._loop, name="escalation-sweeper", daemon=True)
        self._thread.start()
        self._logger.info(
            "started escalation sweeper interval_seconds=%s grace_minutes=%s",
            self._settings.escalation_sweep_seconds,
            self._settings.escalation_grace_minutes,
        )

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
        with self._lock:
            self._running = False

    def run(self) -> dict[str, Any]:
        """Escalate every overdue alert once. Each alert is handled on its own;
        a failure is recorded and the sweep moves on."""
        with self._run_lock:
            return self._sweep()

    def get_status_snapshot(self) -> dict[str, object]:
        with self._lock:
            return {
                "running": self._running and not self._stop_event.is_set(),
                "interval_seconds": self._settings.escalation_sweep_seconds,
                "grace_minutes": self._settings.escalation_grace_minutes,
                "last_run_ts": to_iso(self._last_run_ts),
                "last_result": dict(self._last_result) if self._last_result else None,
                "last_error": self._last_error,
            }

    def _sweep(self) -> dict[str, Any]:
        started = time.monotonic()
        now = self._clock()
        cutoff = now - timedelta(minutes=self._settings.escalation_grace_minutes)
        escalated = 0
        skipped = 0
        errors: list[str] = []

        with self._session_factory() as db:
            candidates = list_escalation_candidates(
                db,
                cutoff=cutoff,
                limit=self._settings.escalation_batch_size,
            )
            for candidate in candidates:
                alert_id = candidate.id
                try:
                    alert = self._alert_service.escalate(db, alert_id)
                except InvalidStateError as exc:
                    # changed since the candidate query; not a failure
                    skipped += 1
                    self._logger.info("escalation skipped alert_id=%s reason=%s", alert_id, exc)
                    continue
                except Exception as exc:
                    db.rollback()
                    errors.append(f"alert {alert_id}: {exc}")
                    self._logger.exception("escalation failed alert_id=%s", alert_id)
                    continue

                escalated += 1
                try:
                    create_monitoring_log(
                        db,
                        monitoring_type="alert_escalation",
                        check_result="escalated",
                        building_id=alert.building_id,
                        equipment_id=alert.equipment_id,
                        details_json={
                            "alert_id": alert.id,
                            "severity": alert.severity,
                            "escalation_level": alert.escalation_level,
                        },
                        now=now,
                    )
                except Exception:
                    db.rollback()
                    self._logger.exception("escalation log write failed alert_id=%s", alert_id)

            result = {
                "processed": len(candidates),
                "escalated": escalated,
                "skipped": skipped,
                "failed": len(errors),
                "errors": errors,
                "processing_time_ms": int((time.monotonic() - started) * 1000),
                "timestamp": now,
            }
            try:
                create_monitoring_log(
                    db,
                    monitoring_type="escalation_processing",
                    check_result="completed" if not errors else "warning",
                    details_json={
                        "processed": result["processed"],
                        "escalated": escalated,
                        "skipped": skipped,
                        "failed": len(errors),
                    },
                    alerts_generated=escalated,
                    processing_time_ms=result["processing_time_ms"],
                    now=now,
                )
            except Exception:
                db.rollback()
                self._logger.exception("escalation run log write failed")

        if candidates:
            self._logger.info(
                "escalation sweep processed=%s escalated=%s skipped=%s failed=%s",
                result["processed"],
                escalated,
                skipped,
                len(errors),
            )
        with self._lock:
            self._last_run_ts = now
            self._last_result = {key: value for key, value in result.items() if key != "timestamp"}
        return result

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run()
                with self._lock:
                    self._last_error = None
            except Exception as exc:
                self._logger.exception("escalation sweep iteration failed")
                with self._lock:
                    self._last_error = str(exc)

            self._stop_event.wait(float(self._settings.escalation_sweep_seconds))
