from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, IdType, JsonDocument

ALERT_TYPES = (
    "energy_anomaly",
    "power_quality",
    "equipment_failure",
    "compliance_violation",
    "maintenance_due",
    "efficiency_degradation",
    "threshold_exceeded",
)
ALERT_SEVERITIES = ("low", "medium", "high", "critical")
ALERT_STATUSES = ("active", "acknowledged", "resolved", "escalated")
PARAMETER_TYPES = ("energy", "power_quality", "equipment")
THRESHOLD_TYPES = ("absolute", "percentage", "deviation")
JOB_TYPES = (
    "analytics_processing",
    "maintenance_prediction",
    "compliance_check",
    "anomaly_detection",
    "efficiency_analysis",
    "alert_monitoring",
    "forecast_generation",
)
JOB_STATUSES = ("pending", "running", "completed", "failed")
READING_KINDS = ("energy", "power_quality", "equipment")


def _in_clause(column: str, values: tuple[str, ...]) -> str:
    quoted = ",".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


class Reading(Base):
    __tablename__ = "readings"
    __table_args__ = (
        CheckConstraint(_in_clause("kind", READING_KINDS), name="ck_readings_kind"),
        Index("ix_readings_building_kind_recorded", "building_id", "kind", "recorded_at"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    building_id: Mapped[int] = mapped_column(Integer, nullable=False)
    equipment_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    values_json: Mapped[dict] = mapped_column(JsonDocument, nullable=False, default=dict)
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="http", server_default="http")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class AlertThreshold(Base):
    __tablename__ = "alert_thresholds"
    __table_args__ = (
        CheckConstraint(_in_clause("parameter_type", PARAMETER_TYPES), name="ck_alert_thresholds_parameter_type"),
        CheckConstraint(_in_clause("threshold_type", THRESHOLD_TYPES), name="ck_alert_thresholds_threshold_type"),
        CheckConstraint(_in_clause("severity", ALERT_SEVERITIES), name="ck_alert_thresholds_severity"),
        CheckConstraint(
            "min_value IS NOT NULL OR max_value IS NOT NULL",
            name="ck_alert_thresholds_bounds",
        ),
        Index("ix_alert_thresholds_scope", "parameter_type", "building_id", "equipment_id"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    building_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    equipment_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    parameter_name: Mapped[str] = mapped_column(String(64), nullable=False)
    parameter_type: Mapped[str] = mapped_column(String(32), nullable=False)
    min_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    threshold_type: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="absolute",
        server_default="absolute",
    )
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    escalation_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notification_emails: Mapped[list] = mapped_column(JsonDocument, nullable=False, default=list)
    metadata_json: Mapped[dict] = mapped_column(JsonDocument, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class Alert(Base):
    __tablename__ = "alerts"
    __table_args__ = (
        CheckConstraint(_in_clause("type", ALERT_TYPES), name="ck_alerts_type"),
        CheckConstraint(_in_clause("severity", ALERT_SEVERITIES), name="ck_alerts_severity"),
        CheckConstraint(_in_clause("status", ALERT_STATUSES), name="ck_alerts_status"),
        CheckConstraint("escalation_level >= 0 AND escalation_level <= 3", name="ck_alerts_escalation_level"),
        Index("ix_alerts_status_severity_created", "status", "severity", "created_at"),
        Index("ix_alerts_building_created", "building_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", server_default="active")
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    building_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    equipment_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    audit_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reading_id: Mapped[int | None] = mapped_column(IdType, nullable=True)
    threshold_id: Mapped[int | None] = mapped_column(IdType, nullable=True)
    detected_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    threshold_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    escalation_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    acknowledged_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    escalated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notification_sent: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )
    metadata_json: Mapped[dict] = mapped_column(JsonDocument, nullable=False, default=dict)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class BackgroundJob(Base):
    __tablename__ = "background_jobs"
    __table_args__ = (
        CheckConstraint(_in_clause("job_type", JOB_TYPES), name="ck_background_jobs_type"),
        CheckConstraint(_in_clause("status", JOB_STATUSES), name="ck_background_jobs_status"),
        CheckConstraint(
            "progress_percentage >= 0 AND progress_percentage <= 100",
            name="ck_background_jobs_progress",
        ),
        Index("ix_background_jobs_status_created", "status", "created_at"),
        Index("ix_background_jobs_building", "building_id"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    job_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", server_default="pending")
    building_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    equipment_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    parameters_json: Mapped[dict] = mapped_column(JsonDocument, nullable=False, default=dict)
    progress_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    result_data: Mapped[dict | None] = mapped_column(JsonDocument, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class SystemMonitoringLog(Base):
    __tablename__ = "system_monitoring_logs"
    __table_args__ = (
        Index("ix_system_monitoring_logs_created", "created_at"),
        Index("ix_system_monitoring_logs_building_type", "building_id", "monitoring_type"),
        Index("ix_system_monitoring_logs_reading", "reading_id"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    monitoring_type: Mapped[str] = mapped_column(String(32), nullable=False)
    building_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    equipment_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reading_id: Mapped[int | None] = mapped_column(IdType, nullable=True)
    check_result: Mapped[str] = mapped_column(String(16), nullable=False)
    details_json: Mapped[dict] = mapped_column(JsonDocument, nullable=False, default=dict)
    alerts_generated: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    processing_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
