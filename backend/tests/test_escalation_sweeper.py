from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest import TestCase

from sqlalchemy import select

from app.core.config import Settings
from app.db.base import Base
from app.db.models import SystemMonitoringLog
from app.db.session import build_engine, build_session_factory
from app.repositories.alerts import list_escalation_candidates
from app.services.alerts import AlertService
from app.services.escalation import EscalationSweeper

T0 = datetime(2026, 5, 11, 22, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class EscalationSweeperTests(TestCase):
    def setUp(self) -> None:
        engine = build_engine("sqlite://")
        Base.metadata.create_all(engine)
        self.session_factory = build_session_factory(engine)
        self.clock = _Clock(T0)
        settings = Settings(database_url="sqlite://", escalation_grace_minutes=5, escalation_batch_size=50)
        self.alert_service = AlertService(settings=settings, clock=self.clock)
        self.sweeper = EscalationSweeper(
            settings=settings,
            session_factory=self.session_factory,
            alert_service=self.alert_service,
            clock=self.clock,
        )

    def _create(self, *, severity: str, title: str, building_id: int = 2):
        with self.session_factory() as db:
            return self.alert_service.create_alert(
                db,
                type="equipment_failure",
                severity=severity,
                title=title,
                message="Compressor tripped",
                building_id=building_id,
            )

    def _level(self, alert_id: int) -> int:
        with self.session_factory() as db:
            return self.alert_service.get_alert(db, alert_id).escalation_level

    def test_re_escalation_waits_one_grace_interval(self) -> None:
        alert = self._create(severity="critical", title="Chiller fault")
        self.clock.advance(minutes=6)

        first = self.sweeper.run()
        self.assertEqual(first["escalated"], 1)
        self.assertEqual(self._level(alert.id), 1)

        second = self.sweeper.run()
        self.assertEqual(second["escalated"], 0)
        self.assertEqual(self._level(alert.id), 1)

        self.clock.advance(minutes=5)
        third = self.sweeper.run()
        self.assertEqual(third["escalated"], 1)
        self.assertEqual(self._level(alert.id), 2)

    def test_high_severity_stops_at_level_two(self) -> None:
        alert = self._create(severity="high", title="Pump fault")

        for _ in range(5):
            self.clock.advance(minutes=5)
            self.sweeper.run()

        self.assertEqual(self._level(alert.id), 2)

    def test_young_low_and_acknowledged_alerts_are_ignored(self) -> None:
        self._create(severity="low", title="low")
        acknowledged = self._create(severity="critical", title="acked")
        with self.session_factory() as db:
            self.alert_service.acknowledge(db, acknowledged.id, user_id="4")
        self.clock.advance(minutes=2)
        self._create(severity="critical", title="fresh")
        self.clock.advance(minutes=4)

        result = self.sweeper.run()

        self.assertEqual(result["processed"], 0)
        self.assertEqual(result["escalated"], 0)

    def test_critical_alerts_are_processed_before_high(self) -> None:
        high = self._create(severity="high", title="older high")
        self.clock.advance(minutes=1)
        critical = self._create(severity="critical", title="newer critical")
        self.clock.advance(minutes=6)

        with self.session_factory() as db:
            candidates = list_escalation_candidates(db, cutoff=self.clock() - timedelta(minutes=5), limit=10)

        self.assertEqual([item.id for item in candidates], [critical.id, high.id])

    def test_run_writes_monitoring_logs(self) -> None:
        self._create(severity="critical", title="Boiler fault")
        self.clock.advance(minutes=5)

        result = self.sweeper.run()

        self.assertEqual(result["failed"], 0)
        self.assertEqual(result["errors"], [])
        with self.session_factory() as db:
            types = sorted(db.scalars(select(SystemMonitoringLog.monitoring_type)))
        self.assertEqual(types, ["alert_escalation", "escalation_processing"])
