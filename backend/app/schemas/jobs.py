from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

JobType = Literal[
    "analytics_processing",
    "maintenance_prediction",
    "compliance_check",
    "anomaly_detection",
    "efficiency_analysis",
    "alert_monitoring",
    "forecast_generation",
]
JobStatus = Literal["pending", "running", "completed", "failed"]
AnalysisType = Literal["energy", "anomaly", "efficiency"]
MonitoringType = Literal["energy", "power_quality", "equipment"]


class _JobParameters(BaseModel):
    model_config = ConfigDict(extra="forbid")


class _WindowParameters(_JobParameters):
    building_id: int = Field(gt=0)
    start_date: datetime
    end_date: datetime

    @field_validator("start_date", "end_date")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @model_validator(mode="after")
    def _check_window(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not precede start_date")
        return self


class AnalyticsProcessingParameters(_WindowParameters):
    equipment_id: int | None = Field(default=None, gt=0)
    analysis_types: list[AnalysisType] = Field(
        default_factory=lambda: ["energy", "anomaly", "efficiency"],
        min_length=1,
    )


class AnomalyDetectionParameters(_WindowParameters):
    z_threshold: float = Field(default=3.0, gt=0, le=10)


class EfficiencyAnalysisParameters(_WindowParameters):
    pass


class AlertMonitoringParameters(_JobParameters):
    building_id: int = Field(gt=0)
    monitoring_types: list[MonitoringType] = Field(
        default_factory=lambda: ["energy", "power_quality", "equipment"],
        min_length=1,
    )
    window_minutes: int = Field(default=60, ge=1, le=10080)


class ComplianceCheckParameters(_JobParameters):
    audit_id: int = Field(gt=0)
    building_id: int | None = Field(default=None, gt=0)
    check_types: list[str] = Field(default_factory=lambda: ["comprehensive"])
    standards: list[str] = Field(default_factory=list)
    lookback_days: int = Field(default=30, ge=1, le=3650)


class MaintenancePredictionParameters(_JobParameters):
    building_id: int | None = Field(default=None, gt=0)
    equipment_id: int | None = Field(default=None, gt=0)
    lookback_days: int = Field(default=30, ge=1, le=3650)


class ForecastGenerationParameters(_JobParameters):
    building_id: int = Field(gt=0)
    forecast_days: int = Field(default=30, ge=1, le=365)
    forecast_types: list[Literal["consumption", "demand"]] = Field(
        default_factory=lambda: ["consumption"],
        min_length=1,
    )
    history_days: int = Field(default=30, ge=1, le=3650)


JOB_PARAMETER_MODELS: dict[str, type[_JobParameters]] = {
    "analytics_processing": AnalyticsProcessingParameters,
    "maintenance_prediction": MaintenancePredictionParameters,
    "compliance_check": ComplianceCheckParameters,
    "anomaly_detection": AnomalyDetectionParameters,
    "efficiency_analysis": EfficiencyAnalysisParameters,
    "alert_monitoring": AlertMonitoringParameters,
    "forecast_generation": ForecastGenerationParameters,
}


class JobCreateRequest(BaseModel):
    job_type: str = Field(min_length=1, max_length=32)
    building_id: int | None = Field(default=None, gt=0)
    equipment_id: int | None = Field(default=None, gt=0)
    parameters: dict[str, Any] = Field(default_factory=dict)


class JobCreatedResponse(BaseModel):
    job_id: int


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int
    job_type: JobType
    status: JobStatus
    building_id: int | None
    equipment_id: int | None
    parameters: dict[str, Any] = Field(validation_alias="parameters_json")
    progress_percentage: float
    result_data: dict[str, Any] | None
    error_message: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime


class JobListResponse(BaseModel):
    jobs: list[JobResponse]
    worker: dict[str, Any]


class JobStatisticsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_jobs: int
    pending_jobs: int
    running_jobs: int
    completed_jobs: int
    failed_jobs: int
    avg_processing_time_seconds: float | None
