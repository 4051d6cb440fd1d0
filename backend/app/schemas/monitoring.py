from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class MonitoringLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int
    monitoring_type: str
    building_id: int | None
    equipment_id: int | None
    reading_id: int | None = None
    check_result: str
    details: dict[str, Any] = Field(validation_alias="details_json")
    alerts_generated: int
    processing_time_ms: int
    created_at: datetime


class MonitoringStatusResponse(BaseModel):
    monitoring: dict[str, Any]
    escalation: dict[str, Any]
    job_worker: dict[str, Any]
    realtime: dict[str, Any]
    mqtt: dict[str, Any]
