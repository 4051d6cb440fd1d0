from __future__ import annotations

import json
import logging
from datetime import datetime
from threading import Lock
from typing import Any

import paho.mqtt.client as mqtt
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import sessionmaker

from app.core.clock import Clock, to_iso, utcnow
from app.core.config import Settings
from app.db.models import READING_KINDS
from app.schemas.readings import parse_reading
from app.services.readings import ReadingIngestService


class MqttIngestService:
    """Subscribes to ``buildings/{building_id}/readings/{kind}`` and feeds
    each JSON payload through the same ingestion path as the HTTP endpoint."""

    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        ingest_service: ReadingIngestService,
        clock: Clock = utcnow,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._ingest_service = ingest_service
        self._clock = clock
        self._logger = logging.getLogger("app.mqtt_ingest")
        self._lock = Lock()

        self._connected = False
        self._started = False
        self._messages_received = 0
        self._messages_rejected = 0
        self._last_message_ts: datetime | None = None
        self._last_error: str | None = None

        self._client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=settings.mqtt_client_id,
            clean_session=True,
        )
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message
        self._client.reconnect_delay_set(min_delay=1, max_delay=30)

    def start(self) -> None:
        if self._started:
            return
        self._logger.info(
            "starting mqtt ingest broker=%s:%s topic=%s",
            self._settings.mqtt_broker_host,
            self._settings.mqtt_broker_port,
            self._settings.mqtt_topic,
        )
        self._client.connect_async(
            host=self._settings.mqtt_broker_host,
            port=self._settings.mqtt_broker_port,
            keepalive=60,
        )
        self._client.loop_start()
        self._started = True

    def stop(self) -> None:
        if not self._started:
            return
        self._logger.info("stopping mqtt ingest")
        self._client.loop_stop()
        try:
            self._client.disconnect()
        except Exception:
            self._logger.exception("mqtt disconnect failed")
        self._started = False

    def get_status_snapshot(self) -> dict[str, object]:
        with self._lock:
            return {
                "enabled": self._settings.mqtt_enabled,
                "connected": self._connected,
                "broker_host": self._settings.mqtt_broker_host,
                "broker_port": self._settings.mqtt_broker_port,
                "topic": self._settings.mqtt_topic,
                "messages_received": self._messages_received,
                "messages_rejected": self._messages_rejected,
                "last_message_ts": to_iso(self._last_message_ts),
                "last_error": self._last_error,
            }

    def handle_message(self, topic: str, payload: bytes) -> int | None:
        """Store one reading from an MQTT message; returns the reading id, or
        None when the topic or payload is rejected."""
        with self._lock:
            self._messages_received += 1
            self._last_message_ts = self._clock()

        try:
            building_id, kind = parse_reading_topic(topic)
            body = json.loads(payload.decode("utf-8"))
            if not isinstance(body, dict):
                raise ValueError("payload must be a JSON object")
            body.update(building_id=building_id, kind=kind)
            reading = parse_reading(body)
        except (ValueError, PydanticValidationError) as exc:
            self._reject(topic, str(exc))
            return None

        with self._session_factory() as db:
            result = self._ingest_service.ingest(db, reading, source="mqtt")
        return result.row.id

    def _reject(self, topic: str, reason: str) -> None:
        with self._lock:
            self._messages_rejected += 1
            self._last_error = reason
        self._logger.warning("mqtt reading rejected topic=%s reason=%s", topic, reason)

    def _on_connect(
        self,
        client: mqtt.Client,
        _userdata: object,
        _flags: Any,
        reason_code: Any,
        _properties: Any = None,
    ) -> None:
        if reason_code.is_failure:
            self._logger.error("mqtt connect failed rc=%s", reason_code)
            return

        with self._lock:
            self._connected = True
        result, _mid = client.subscribe(self._settings.mqtt_topic, qos=self._settings.mqtt_qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            self._logger.error("mqtt subscribe failed topic=%s rc=%s", self._settings.mqtt_topic, result)
        else:
            self._logger.info("mqtt subscribed topic=%s", self._settings.mqtt_topic)

    def _on_disconnect(
        self,
        _client: mqtt.Client,
        _userdata: object,
        _flags: Any,
        reason_code: Any,
        _properties: Any = None,
    ) -> None:
        with self._lock:
            self._connected = False
        self._logger.warning("mqtt disconnected rc=%s", reason_code)

    def _on_message(self, _client: mqtt.Client, _userdata: object, message: mqtt.MQTTMessage) -> None:
        try:
            self.handle_message(message.topic, message.payload)
        except Exception as exc:
            with self._lock:
                self._last_error = str(exc)
            self._logger.exception("mqtt ingest failed topic=%s", message.topic)


def parse_reading_topic(topic: str) -> tuple[int, str]:
    parts = topic.strip("/").split("/")
    if len(parts) != 4 or parts[0] != "buildings" or parts[2] != "readings":
        raise ValueError(f"unexpected topic '{topic}'")
    try:
        building_id = int(parts[1])
    except ValueError as exc:
        raise ValueError(f"invalid building id in topic '{topic}'") from exc
    if building_id <= 0:
        raise ValueError(f"invalid building id in topic '{topic}'")
    kind = parts[3]
    if kind not in READING_KINDS:
        raise ValueError(f"unknown reading kind '{kind}'")
    return building_id, kind
