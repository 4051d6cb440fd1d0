from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.schemas.common import Pagination

AlertType = Literal[
    "energy_anomaly",
    "power_quality",
    "equipment_failure",
    "compliance_violation",
    "maintenance_due",
    "efficiency_degradation",
    "threshold_exceeded",
]
AlertSeverity = Literal["low", "medium", "high", "critical"]
AlertStatus = Literal["active", "acknowledged", "resolved", "escalated"]


class AlertCreateRequest(BaseModel):
    type: AlertType
    severity: AlertSeverity
    title: str = Field(min_length=1, max_length=255)
    message: str = Field(min_length=1, max_length=5000)
    building_id: int | None = Field(default=None, gt=0)
    equipment_id: int | None = Field(default=None, gt=0)
    audit_id: int | None = Field(default=None, gt=0)
    detected_value: float | None = None
    threshold_value: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("title", "message", mode="before")
    @classmethod
    def _trim_text(cls, value: str) -> str:
        trimmed = str(value).strip()
        if trimmed == "":
            raise ValueError("value must not be empty")
        return trimmed


class AlertUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1, max_length=255)
    message: str | None = Field(default=None, min_length=1, max_length=5000)
    metadata: dict[str, Any] | None = None
    notification_sent: bool | None = None
    audit_id: int | None = Field(default=None, gt=0)


class AlertResolveRequest(BaseModel):
    resolution_notes: str | None = Field(default=None, max_length=5000)


class AlertResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int
    type: AlertType
    severity: AlertSeverity
    status: AlertStatus
    title: str
    message: str
    building_id: int | None
    equipment_id: int | None
    audit_id: int | None
    reading_id: int | None
    threshold_id: int | None
    detected_value: float | None
    threshold_value: float | None
    escalation_level: int
    acknowledged_by: str | None
    acknowledged_at: datetime | None
    resolved_by: str | None
    resolved_at: datetime | None
    escalated_at: datetime | None
    notification_sent: bool
    metadata: dict[str, Any] = Field(validation_alias="metadata_json")
    created_at: datetime
    updated_at: datetime


class AlertListResponse(BaseModel):
    alerts: list[AlertResponse]
    pagination: Pagination


class EscalationRunResponse(BaseModel):
    processed: int
    escalated: int
    skipped: int = 0
    failed: int
    errors: list[str]
    processing_time_ms: int
    timestamp: datetime


class AlertStatisticsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total: int
    by_status: dict[str, int]
    by_severity: dict[str, int]
    escalated_total: int
    escalation_rate: float
