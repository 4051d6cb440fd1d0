from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from app.core.clock import Clock, utcnow
from app.db.models import Reading
from app.repositories.readings import create_reading
from app.schemas.readings import EnergyReading, EquipmentReading, PowerQualityReading
from app.services.monitoring import MonitoringTrigger


@dataclass(frozen=True)
class IngestResult:
    row: Reading
    reading: EnergyReading | PowerQualityReading | EquipmentReading
    monitoring_submitted: bool


class ReadingIngestService:
    def __init__(self, *, monitoring: MonitoringTrigger | None, clock: Clock = utcnow):
        self._monitoring = monitoring
        self._clock = clock
        self._logger = logging.getLogger("app.readings")

    def ingest(
        self,
        db: Session,
        reading: EnergyReading | PowerQualityReading | EquipmentReading,
        *,
        source: str = "http",
    ) -> IngestResult:
        row = create_reading(
            db,
            kind=reading.kind,
            building_id=reading.building_id,
            equipment_id=reading.equipment_id,
            recorded_at=reading.recorded_at,
            values_json=reading.measurement_values(),
            source=source,
            now=self._clock(),
        )
        stored = reading.model_copy(update={"reading_id": row.id})

        submitted = False
        if self._monitoring is not None:
            try:
                self._monitoring.submit(stored)
                submitted = True
            except RuntimeError:
                # executor already shut down
                self._logger.exception("monitoring submit failed reading_id=%s", row.id)
        self._logger.debug(
            "reading stored reading_id=%s kind=%s building_id=%s source=%s",
            row.id,
            row.kind,
            row.building_id,
            source,
        )
        return IngestResult(row=row, reading=stored, monitoring_submitted=submitted)
