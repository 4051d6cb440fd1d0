from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.schemas.alerts import AlertSeverity

ParameterType = Literal["energy", "power_quality", "equipment"]
ThresholdType = Literal["absolute", "percentage", "deviation"]


class ThresholdCreateRequest(BaseModel):
    building_id: int | None = Field(default=None, gt=0)
    equipment_id: int | None = Field(default=None, gt=0)
    parameter_name: str = Field(min_length=1, max_length=64)
    parameter_type: ParameterType
    min_value: float | None = None
    max_value: float | None = None
    threshold_type: ThresholdType = "absolute"
    severity: AlertSeverity
    enabled: bool = True
    escalation_minutes: int | None = Field(default=None, ge=1, le=10080)
    notification_emails: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("parameter_name", mode="before")
    @classmethod
    def _trim_parameter_name(cls, value: str) -> str:
        trimmed = str(value).strip()
        if trimmed == "":
            raise ValueError("parameter_name must not be empty")
        return trimmed

    @model_validator(mode="after")
    def _check_bounds(self) -> "ThresholdCreateRequest":
        if self.min_value is None and self.max_value is None:
            raise ValueError("At least one of min_value or max_value must be provided")
        if (
            self.min_value is not None
            and self.max_value is not None
            and self.min_value > self.max_value
        ):
            raise ValueError("min_value must not exceed max_value")
        if self.threshold_type == "percentage" and "baseline" not in self.metadata:
            raise ValueError("percentage thresholds require metadata.baseline")
        if self.threshold_type == "deviation":
            if "nominal" not in self.metadata:
                raise ValueError("deviation thresholds require metadata.nominal")
            if self.max_value is None:
                raise ValueError("deviation thresholds require max_value")
        return self


class ThresholdUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min_value: float | None = None
    max_value: float | None = None
    severity: AlertSeverity | None = None
    enabled: bool | None = None
    escalation_minutes: int | None = Field(default=None, ge=1, le=10080)
    notification_emails: list[str] | None = None
    metadata: dict[str, Any] | None = None


class ThresholdResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int
    building_id: int | None
    equipment_id: int | None
    parameter_name: str
    parameter_type: ParameterType
    min_value: float | None
    max_value: float | None
    threshold_type: ThresholdType
    severity: AlertSeverity
    enabled: bool
    escalation_minutes: int | None
    notification_emails: list[str]
    metadata: dict[str, Any] = Field(validation_alias="metadata_json")
    created_at: datetime
    updated_at: datetime
