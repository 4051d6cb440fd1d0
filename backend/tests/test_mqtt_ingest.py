from __future__ import annotations

import json
from unittest import TestCase
from unittest.mock import MagicMock

from app.core.config import Settings
from app.services.mqtt_ingest import MqttIngestService, parse_reading_topic


class ParseReadingTopicTests(TestCase):
    def test_valid_topic(self) -> None:
        self.assertEqual(parse_reading_topic("buildings/12/readings/energy"), (12, "energy"))
        self.assertEqual(parse_reading_topic("/buildings/3/readings/power_quality/"), (3, "power_quality"))

    def test_rejects_malformed_topics(self) -> None:
        for topic in (
            "buildings/12/energy",
            "sites/12/readings/energy",
            "buildings/abc/readings/energy",
            "buildings/0/readings/energy",
            "buildings/12/readings/water",
        ):
            with self.subTest(topic=topic):
                with self.assertRaises(ValueError):
                    parse_reading_topic(topic)


class _FakeSession:
    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        return None


class MqttHandleMessageTests(TestCase):
    def setUp(self) -> None:
        self.ingest_service = MagicMock()
        self.ingest_service.ingest.return_value.row.id = 99
        self.service = MqttIngestService(
            settings=Settings(database_url="sqlite://", mqtt_client_id="test-monitor"),
            session_factory=_FakeSession,
            ingest_service=self.ingest_service,
        )

    def test_valid_payload_is_ingested_with_topic_scope(self) -> None:
        payload = json.dumps({"consumption_kwh": 18.4, "power_factor": 0.93, "building_id": 999}).encode()

        reading_id = self.service.handle_message("buildings/7/readings/energy", payload)

        self.assertEqual(reading_id, 99)
        args, kwargs = self.ingest_service.ingest.call_args
        reading = args[1]
        self.assertEqual(reading.kind, "energy")
        self.assertEqual(reading.building_id, 7)
        self.assertEqual(reading.consumption_kwh, 18.4)
        self.assertEqual(kwargs, {"source": "mqtt"})

    def test_rejected_messages_are_counted(self) -> None:
        cases = [
            ("buildings/7/readings/energy", b"not json"),
            ("buildings/7/readings/energy", b"[1, 2]"),
            ("buildings/7/readings/energy", json.dumps({"consumption_kwh": -1}).encode()),
            ("buildings/7/readings/steam", json.dumps({"consumption_kwh": 1}).encode()),
        ]
        with self.assertLogs("app.mqtt_ingest", level="WARNING"):
            for topic, payload in cases:
                self.assertIsNone(self.service.handle_message(topic, payload))

        self.ingest_service.ingest.assert_not_called()
        snapshot = self.service.get_status_snapshot()
        self.assertEqual(snapshot["messages_received"], 4)
        self.assertEqual(snapshot["messages_rejected"], 4)
        self.assertFalse(snapshot["connected"])
        self.assertIsNotNone(snapshot["last_error"])

    def test_equipment_payload_requires_status(self) -> None:
        with self.assertLogs("app.mqtt_ingest", level="WARNING"):
            result = self.service.handle_message(
                "buildings/7/readings/equipment",
                json.dumps({"equipment_id": 4}).encode(),
            )

        self.assertIsNone(result)
        self.assertIsNone(
            self.service.handle_message(
                "buildings/7/readings/equipment",
                json.dumps({"equipment_id": 4, "status": "mystery"}).encode(),
            )
        )
