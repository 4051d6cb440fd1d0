from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest import TestCase

from app.core.clock import to_utc
from app.core.config import Settings
from app.core.errors import InvalidStateError, NotFoundError, ValidationError
from app.db.base import Base
from app.db.session import build_engine, build_session_factory
from app.repositories.alerts import AlertFilters, compare_and_set
from app.services.alerts import AlertService

T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


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


class AlertStateMachineTests(TestCase):
    def setUp(self) -> None:
        engine = build_engine("sqlite://")
        Base.metadata.create_all(engine)
        self.db = build_session_factory(engine)()
        self.clock = _Clock(T0)
        self.notifier = _RecordingNotifier()
        self.service = AlertService(
            settings=Settings(database_url="sqlite://", alert_dedupe_window_minutes=60),
            notifier=self.notifier,
            clock=self.clock,
        )

    def tearDown(self) -> None:
        self.db.close()

    def _create(self, severity: str = "critical", **overrides):
        fields = {
            "type": "power_quality",
            "severity": severity,
            "title": "High Voltage THD",
            "message": "THD above limit",
            "building_id": 5,
            "detected_value": 9.5,
            "threshold_value": 8.0,
        }
        fields.update(overrides)
        return self.service.create_alert(self.db, **fields)

    def test_create_starts_active_at_level_zero(self) -> None:
        alert = self._create()

        self.assertEqual(alert.status, "active")
        self.assertEqual(alert.escalation_level, 0)
        self.assertEqual(alert.version, 1)
        self.assertEqual(self.notifier.events[-1][:2], ("building:5", "newAlert"))

    def test_duplicate_within_window_is_folded_into_existing_alert(self) -> None:
        first = self._create()
        self.clock.advance(minutes=10)
        second = self._create(detected_value=11.0)

        self.assertEqual(first.id, second.id)
        self.assertEqual(second.metadata_json["occurrences"], 2)
        self.assertEqual(second.metadata_json["last_detected_value"], 11.0)

        self.clock.advance(minutes=61)
        third = self._create()
        self.assertNotEqual(third.id, first.id)

    def test_higher_severity_is_not_folded_into_lower_alert(self) -> None:
        medium = self._create(severity="medium")
        self.clock.advance(minutes=1)
        critical = self._create(severity="critical", detected_value=13.0)

        self.assertNotEqual(medium.id, critical.id)
        self.assertEqual(critical.severity, "critical")
        self.assertEqual(critical.detected_value, 13.0)
        self.assertNotIn("occurrences", medium.metadata_json)

        self.clock.advance(minutes=6)
        self.assertEqual(self.service.escalate(self.db, critical.id).escalation_level, 1)

    def test_manual_creation_skips_duplicate_suppression(self) -> None:
        first = self._create()
        second = self._create(dedupe=False, message="Raised by operator")

        self.assertNotEqual(first.id, second.id)
        self.assertEqual(second.message, "Raised by operator")

    def test_acknowledge_sets_actor_and_timestamp_once(self) -> None:
        alert = self._create()
        self.clock.advance(minutes=1)

        acknowledged = self.service.acknowledge(self.db, alert.id, user_id="17")

        self.assertEqual(acknowledged.status, "acknowledged")
        self.assertEqual(acknowledged.acknowledged_by, "17")
        self.assertEqual(to_utc(acknowledged.acknowledged_at), T0 + timedelta(minutes=1))
        self.assertEqual(acknowledged.version, 2)
        with self.assertRaises(InvalidStateError):
            self.service.acknowledge(self.db, alert.id, user_id="17")
        channel, event, payload = self.notifier.events[-1]
        self.assertEqual(event, "alertStatusChanged")
        self.assertEqual(payload["previous_status"], "active")

    def test_acknowledge_missing_alert_raises_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            self.service.acknowledge(self.db, 999, user_id="1")

    def test_escalated_alert_can_be_acknowledged(self) -> None:
        alert = self._create()
        self.clock.advance(minutes=6)
        self.service.escalate(self.db, alert.id)

        acknowledged = self.service.acknowledge(self.db, alert.id, user_id="3")

        self.assertEqual(acknowledged.status, "acknowledged")
        self.assertEqual(acknowledged.escalation_level, 1)

    def test_resolve_merges_notes_and_blocks_second_resolve(self) -> None:
        alert = self._create(metadata={"source": "meter-4"})

        resolved = self.service.resolve(self.db, alert.id, user_id="9", resolution_notes="Filter replaced")

        self.assertEqual(resolved.status, "resolved")
        self.assertEqual(resolved.resolved_by, "9")
        self.assertEqual(resolved.metadata_json, {"source": "meter-4", "resolution_notes": "Filter replaced"})
        with self.assertRaises(InvalidStateError):
            self.service.resolve(self.db, alert.id, user_id="9")
        with self.assertRaises(InvalidStateError):
            self.service.acknowledge(self.db, alert.id, user_id="9")

    def test_escalate_requires_grace_period(self) -> None:
        alert = self._create()
        self.clock.advance(minutes=4)

        with self.assertRaises(InvalidStateError):
            self.service.escalate(self.db, alert.id)

        self.clock.advance(minutes=1)
        escalated = self.service.escalate(self.db, alert.id)
        self.assertEqual(escalated.status, "escalated")
        self.assertEqual(escalated.escalation_level, 1)
        self.assertEqual(to_utc(escalated.escalated_at), T0 + timedelta(minutes=5))

    def test_escalation_ceilings_by_severity(self) -> None:
        critical = self._create(severity="critical", title="critical one")
        high = self._create(severity="high", title="high one")
        medium = self._create(severity="medium", title="medium one")

        for _ in range(4):
            self.clock.advance(minutes=5)
            for alert_id in (critical.id, high.id):
                try:
                    self.service.escalate(self.db, alert_id)
                except InvalidStateError:
                    pass

        self.assertEqual(self.service.get_alert(self.db, critical.id).escalation_level, 3)
        self.assertEqual(self.service.get_alert(self.db, high.id).escalation_level, 2)
        with self.assertRaises(InvalidStateError):
            self.service.escalate(self.db, medium.id)

    def test_stale_version_loses_compare_and_set(self) -> None:
        alert = self._create()
        stale_version = alert.version
        self.service.acknowledge(self.db, alert.id, user_id="1")

        swapped = compare_and_set(
            self.db,
            alert_id=alert.id,
            expected_version=stale_version,
            expected_statuses=("active", "acknowledged"),
            values={"title": "overwritten"},
        )

        self.assertFalse(swapped)
        self.assertEqual(self.service.get_alert(self.db, alert.id).title, "High Voltage THD")

    def test_update_rejects_fields_outside_allow_list(self) -> None:
        alert = self._create()

        with self.assertRaises(ValidationError):
            self.service.update_alert(self.db, alert.id, fields={"status": "resolved"})

        updated = self.service.update_alert(
            self.db,
            alert.id,
            fields={"notification_sent": True, "metadata": {"ticket": "OPS-12"}},
        )
        self.assertTrue(updated.notification_sent)
        self.assertEqual(updated.metadata_json["ticket"], "OPS-12")
        self.assertEqual(updated.status, "active")

    def test_list_orders_by_severity_then_newest(self) -> None:
        self._create(severity="medium", title="a")
        self.clock.advance(minutes=1)
        self._create(severity="critical", title="b")
        self.clock.advance(minutes=1)
        self._create(severity="medium", title="c")

        alerts, pagination = self.service.list_alerts(self.db, filters=AlertFilters(building_id=5), limit=2)

        self.assertEqual([alert.title for alert in alerts], ["b", "c"])
        self.assertEqual(pagination["total_items"], 3)
        self.assertEqual(pagination["total_pages"], 2)

    def test_statistics_count_escalations(self) -> None:
        first = self._create(title="x")
        self._create(title="y", severity="low")
        self.clock.advance(minutes=5)
        self.service.escalate(self.db, first.id)

        stats = self.service.get_statistics(self.db)

        self.assertEqual(stats.total, 2)
        self.assertEqual(stats.by_status, {"escalated": 1, "active": 1})
        self.assertEqual(stats.escalated_total, 1)
        self.assertEqual(stats.escalation_rate, 50.0)
