"""building monitor core tables

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 09:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "20261018_0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "readings",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("building_id", sa.Integer(), nullable=False),
        sa.Column("equipment_id", sa.Integer(), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("values_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("source", sa.String(length=16), server_default="http", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("kind IN ('energy','power_quality','equipment')", name="ck_readings_kind"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_readings_building_kind_recorded",
        "readings",
        ["building_id", "kind", "recorded_at"],
    )

    op.create_table(
        "alert_thresholds",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("building_id", sa.Integer(), nullable=True),
        sa.Column("equipment_id", sa.Integer(), nullable=True),
        sa.Column("parameter_name", sa.String(length=64), nullable=False),
        sa.Column("parameter_type", sa.String(length=32), nullable=False),
        sa.Column("min_value", sa.Float(), nullable=True),
        sa.Column("max_value", sa.Float(), nullable=True),
        sa.Column("threshold_type", sa.String(length=16), server_default="absolute", nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False),
        sa.Column("enabled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("escalation_minutes", sa.Integer(), nullable=True),
        sa.Column(
            "notification_emails",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
        ),
        sa.Column(
            "metadata_json",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "parameter_type IN ('energy','power_quality','equipment')",
            name="ck_alert_thresholds_parameter_type",
        ),
        sa.CheckConstraint(
            "threshold_type IN ('absolute','percentage','deviation')",
            name="ck_alert_thresholds_threshold_type",
        ),
        sa.CheckConstraint(
            "severity IN ('low','medium','high','critical')",
            name="ck_alert_thresholds_severity",
        ),
        sa.CheckConstraint(
            "min_value IS NOT NULL OR max_value IS NOT NULL",
            name="ck_alert_thresholds_bounds",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_alert_thresholds_scope",
        "alert_thresholds",
        ["parameter_type", "building_id", "equipment_id"],
    )

    op.create_table(
        "alerts",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), server_default="active", nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("building_id", sa.Integer(), nullable=True),
        sa.Column("equipment_id", sa.Integer(), nullable=True),
        sa.Column("audit_id", sa.Integer(), nullable=True),
        sa.Column("reading_id", sa.BigInteger(), nullable=True),
        sa.Column("threshold_id", sa.BigInteger(), nullable=True),
        sa.Column("detected_value", sa.Float(), nullable=True),
        sa.Column("threshold_value", sa.Float(), nullable=True),
        sa.Column("escalation_level", sa.Integer(), server_default="0", nullable=False),
        sa.Column("acknowledged_by", sa.String(length=64), nullable=True),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(length=64), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escalated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notification_sent", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column(
            "metadata_json",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column("version", sa.Integer(), server_default="1", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "type IN ('energy_anomaly','power_quality','equipment_failure','compliance_violation',"
            "'maintenance_due','efficiency_degradation','threshold_exceeded')",
            name="ck_alerts_type",
        ),
        sa.CheckConstraint("severity IN ('low','medium','high','critical')", name="ck_alerts_severity"),
        sa.CheckConstraint(
            "status IN ('active','acknowledged','resolved','escalated')",
            name="ck_alerts_status",
        ),
        sa.CheckConstraint(
            "escalation_level >= 0 AND escalation_level <= 3",
            name="ck_alerts_escalation_level",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_alerts_status_severity_created", "alerts", ["status", "severity", "created_at"])
    op.create_index("ix_alerts_building_created", "alerts", ["building_id", "created_at"])

    op.create_table(
        "background_jobs",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("job_type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), server_default="pending", nullable=False),
        sa.Column("building_id", sa.Integer(), nullable=True),
        sa.Column("equipment_id", sa.Integer(), nullable=True),
        sa.Column(
            "parameters_json",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column("progress_percentage", sa.Float(), server_default="0", nullable=False),
        sa.Column("result_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "job_type IN ('analytics_processing','maintenance_prediction','compliance_check',"
            "'anomaly_detection','efficiency_analysis','alert_monitoring','forecast_generation')",
            name="ck_background_jobs_type",
        ),
        sa.CheckConstraint(
            "status IN ('pending','running','completed','failed')",
            name="ck_background_jobs_status",
        ),
        sa.CheckConstraint(
            "progress_percentage >= 0 AND progress_percentage <= 100",
            name="ck_background_jobs_progress",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_background_jobs_status_created", "background_jobs", ["status", "created_at"])
    op.create_index("ix_background_jobs_building", "background_jobs", ["building_id"])

    op.create_table(
        "system_monitoring_logs",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("monitoring_type", sa.String(length=32), nullable=False),
        sa.Column("building_id", sa.Integer(), nullable=True),
        sa.Column("equipment_id", sa.Integer(), nullable=True),
        sa.Column("reading_id", sa.BigInteger(), nullable=True),
        sa.Column("check_result", sa.String(length=16), nullable=False),
        sa.Column(
            "details_json",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column("alerts_generated", sa.Integer(), server_default="0", nullable=False),
        sa.Column("processing_time_ms", sa.Integer(), server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_system_monitoring_logs_created", "system_monitoring_logs", ["created_at"])
    op.create_index(
        "ix_system_monitoring_logs_building_type",
        "system_monitoring_logs",
        ["building_id", "monitoring_type"],
    )
    op.create_index("ix_system_monitoring_logs_reading", "system_monitoring_logs", ["reading_id"])


def downgrade() -> None:
    op.drop_index("ix_system_monitoring_logs_reading", table_name="system_monitoring_logs")
    op.drop_index("ix_system_monitoring_logs_building_type", table_name="system_monitoring_logs")
    op.drop_index("ix_system_monitoring_logs_created", table_name="system_monitoring_logs")
    op.drop_table("system_monitoring_logs")
    op.drop_index("ix_background_jobs_building", table_name="background_jobs")
    op.drop_index("ix_background_jobs_status_created", table_name="background_jobs")
    op.drop_table("background_jobs")
    op.drop_index("ix_alerts_building_created", table_name="alerts")
    op.drop_index("ix_alerts_status_severity_created", table_name="alerts")
    op.drop_table("alerts")
    op.drop_index("ix_alert_thresholds_scope", table_name="alert_thresholds")
    op.drop_table("alert_thresholds")
    op.drop_index("ix_readings_building_kind_recorded", table_name="readings")
    op.drop_table("readings")
