from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest import TestCase
from unittest.mock import MagicMock

from sqlalchemy import select

from app.core.config import Settings
from app.db.base import Base
from app.db.models import Alert, BackgroundJob, SystemMonitoringLog
from app.db.session import build_engine, build_session_factory
from app.schemas.readings import EnergyReading, EquipmentReading, PowerQualityReading
from app.services.alerts import AlertService
from app.services.escalation import EscalationSweeper
from app.services.jobs import JobQueueService
from app.services.monitoring import MonitoringTrigger
from app.services.readings import ReadingIngestService
from app.services.throttle import InMemoryThrottleCache

T0 = datetime(2026, 5, 4, 9, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class _RecordingNotifier:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict]] = []

    def publish(self, channel: str, event: str, payload: dict | None = None) -> int:
        self.events.append((channel, event, dict(payload or {})))
        return 0

    def names(self, channel: str | None = None) -> list[str]:
        return [event for event_channel, event, _ in self.events if channel in (None, event_channel)]


class MonitoringTriggerTests(TestCase):
    def setUp(self) -> None:
        engine = build_engine("sqlite://")
        Base.metadata.create_all(engine)
        self.session_factory = build_session_factory(engine)
        self.clock = _Clock(T0)
        self.settings = Settings(database_url="sqlite://", monitoring_max_workers=1)
        self.notifier = _RecordingNotifier()
        self.alert_service = AlertService(settings=self.settings, notifier=self.notifier, clock=self.clock)
        self.throttle = InMemoryThrottleCache(clock=self.clock)
        self.trigger = MonitoringTrigger(
            settings=self.settings,
            session_factory=self.session_factory,
            alert_service=self.alert_service,
            job_queue=JobQueueService(settings=self.settings, clock=self.clock),
            throttle=self.throttle,
            notifier=self.notifier,
            clock=self.clock,
        )
        self.addCleanup(self.trigger.shutdown, wait=True)
        # monitoring runs inline so each reading is fully processed before the next
        self.ingest = ReadingIngestService(monitoring=None, clock=self.clock)

    def _process(self, reading) -> dict:
        with self.session_factory() as db:
            result = self.ingest.ingest(db, reading)
        return self.trigger.process(result.reading)

    def _energy(self, consumption: float = 42.0, **values) -> EnergyReading:
        return EnergyReading(building_id=5, recorded_at=self.clock(), consumption_kwh=consumption, **values)

    def _jobs(self) -> list[BackgroundJob]:
        with self.session_factory() as db:
            return list(db.scalars(select(BackgroundJob).order_by(BackgroundJob.id)))

    def test_anomaly_analysis_scheduled_once_per_throttle_window(self) -> None:
        for _ in range(12):
            self._process(self._energy())
            self.clock.advance(minutes=1)

        jobs = self._jobs()
        self.assertEqual(len(jobs), 1)
        self.assertEqual(jobs[0].job_type, "analytics_processing")
        self.assertEqual(jobs[0].building_id, 5)
        self.assertEqual(jobs[0].parameters_json["analysis_types"], ["energy", "anomaly"])

        result = self._process(self._energy())

        self.assertEqual(result["jobs"], [])
        self.assertEqual(len(self._jobs()), 1)

    def test_analysis_waits_for_minimum_readings(self) -> None:
        for _ in range(9):
            self._process(self._energy())

        self.assertEqual(self._jobs(), [])
        self.assertFalse(self.throttle.is_throttled("anomaly_check", 5))

    def test_throttle_expiry_allows_next_analysis(self) -> None:
        for _ in range(10):
            self._process(self._energy())
        self.assertEqual(len(self._jobs()), 1)

        self.clock.advance(minutes=61)
        for _ in range(10):
            self._process(self._energy())

        self.assertEqual(len(self._jobs()), 2)

    def test_low_power_factor_creates_alert_and_publishes(self) -> None:
        result = self._process(self._energy(power_factor=0.78))

        self.assertEqual(result["check_result"], "warning")
        self.assertEqual(len(result["alerts"]), 1)
        self.assertEqual(result["alerts"][0]["severity"], "critical")
        self.assertIn("newAlert", self.notifier.names("building:5"))
        self.assertIn("monitoringUpdate", self.notifier.names("building:5"))
        self.assertIn("energyUpdate", self.notifier.names("building:5"))
        self.assertIn("systemMonitoringUpdate", self.notifier.names("global"))

        with self.session_factory() as db:
            alert = db.scalars(select(Alert)).one()
            log = db.scalars(select(SystemMonitoringLog)).one()
        self.assertIsNotNone(alert.reading_id)
        self.assertEqual(log.monitoring_type, "energy_monitoring")
        self.assertEqual(log.check_result, "warning")
        self.assertEqual(log.alerts_generated, 1)
        self.assertEqual(log.details_json["alert_ids"], [alert.id])

    def test_critical_power_factor_after_medium_raises_escalatable_alert(self) -> None:
        self._process(self._energy(power_factor=0.83))
        self.clock.advance(minutes=1)
        result = self._process(self._energy(power_factor=0.78))

        self.assertEqual(result["alerts"][0]["severity"], "critical")
        with self.session_factory() as db:
            alerts = list(db.scalars(select(Alert).order_by(Alert.id)))
        self.assertEqual([alert.severity for alert in alerts], ["medium", "critical"])

        self.clock.advance(minutes=6)
        sweeper = EscalationSweeper(
            settings=self.settings,
            session_factory=self.session_factory,
            alert_service=self.alert_service,
            clock=self.clock,
        )
        summary = sweeper.run()

        self.assertEqual(summary["escalated"], 1)
        with self.session_factory() as db:
            critical = db.get(Alert, alerts[1].id)
        self.assertEqual(critical.status, "escalated")
        self.assertEqual(critical.escalation_level, 1)

    def test_clean_power_quality_reading_passes(self) -> None:
        reading = PowerQualityReading(
            building_id=5,
            recorded_at=self.clock(),
            voltage_l1=231.0,
            thd_voltage=2.5,
            frequency=50.0,
        )

        result = self._process(reading)

        self.assertEqual(result["check_result"], "passed")
        self.assertEqual(result["alerts"], [])
        self.assertEqual(self.notifier.names(), ["monitoringUpdate", "powerQualityUpdate"])

    def test_faulty_equipment_alerts_and_schedules_maintenance(self) -> None:
        reading = EquipmentReading(
            building_id=5,
            equipment_id=17,
            recorded_at=self.clock(),
            status="faulty",
            name="Chiller 2",
        )

        result = self._process(reading)

        self.assertEqual(result["check_result"], "warning")
        self.assertEqual(result["alerts"][0]["type"], "equipment_failure")
        jobs = self._jobs()
        self.assertEqual([job.job_type for job in jobs], ["maintenance_prediction"])
        self.assertEqual(jobs[0].equipment_id, 17)
        self.assertIn("maintenanceAlert", self.notifier.names("building:5"))

    def test_equipment_in_maintenance_schedules_without_alert(self) -> None:
        reading = EquipmentReading(building_id=5, equipment_id=18, recorded_at=self.clock(), status="maintenance")

        result = self._process(reading)

        self.assertEqual(result["alerts"], [])
        self.assertEqual(len(result["jobs"]), 1)
        self.assertNotIn("maintenanceAlert", self.notifier.names())

    def test_failing_step_does_not_stop_remaining_steps(self) -> None:
        broken = MagicMock()
        broken.is_throttled.side_effect = RuntimeError("cache down")
        self.trigger._throttle = broken

        with self.assertLogs("app.monitoring", level="ERROR"):
            result = self._process(self._energy(power_factor=0.82))

        self.assertEqual(result["failed_steps"], ["scheduling"])
        self.assertEqual(result["check_result"], "failed")
        self.assertEqual(len(result["alerts"]), 1)
        self.assertIn("monitoringUpdate", self.notifier.names())
        with self.session_factory() as db:
            log = db.scalars(select(SystemMonitoringLog)).one()
        self.assertEqual(log.check_result, "failed")
        self.assertEqual(log.details_json["failed_steps"], ["scheduling"])

    def test_submit_runs_in_background(self) -> None:
        with self.session_factory() as db:
            stored = self.ingest.ingest(db, self._energy()).reading

        outcome = self.trigger.submit(stored).result(timeout=10)

        self.assertEqual(outcome["check_result"], "passed")
        snapshot = self.trigger.get_status_snapshot()
        self.assertEqual(snapshot["submitted"], 1)
        self.assertEqual(snapshot["throttle_backend"], "memory")


class ReadingIngestServiceTests(TestCase):
    def test_ingest_stores_row_and_hands_off(self) -> None:
        engine = build_engine("sqlite://")
        Base.metadata.create_all(engine)
        session_factory = build_session_factory(engine)
        monitoring = MagicMock()
        service = ReadingIngestService(monitoring=monitoring, clock=_Clock(T0))

        with session_factory() as db:
            result = service.ingest(db, EnergyReading(building_id=2, consumption_kwh=12.5), source="mqtt")

        self.assertTrue(result.monitoring_submitted)
        self.assertEqual(result.row.source, "mqtt")
        self.assertEqual(result.row.values_json, {"consumption_kwh": 12.5})
        self.assertEqual(result.reading.reading_id, result.row.id)
        monitoring.submit.assert_called_once_with(result.reading)

    def test_shut_down_monitoring_is_logged(self) -> None:
        engine = build_engine("sqlite://")
        Base.metadata.create_all(engine)
        session_factory = build_session_factory(engine)
        monitoring = MagicMock()
        monitoring.submit.side_effect = RuntimeError("cannot schedule new futures after shutdown")
        service = ReadingIngestService(monitoring=monitoring, clock=_Clock(T0))

        with session_factory() as db, self.assertLogs("app.readings", level="ERROR"):
            result = service.ingest(db, EnergyReading(building_id=2, consumption_kwh=1.0))

        self.assertFalse(result.monitoring_submitted)
        self.assertIsNotNone(result.row.id)
