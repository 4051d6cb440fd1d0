"""Background job handlers.

Each handler receives a ``JobContext`` and returns a JSON-serialisable dict
that becomes the job's ``result_data``. The analyses are intentionally plain
summaries over stored readings: totals, z-score scans and averages.
"""

from __future__ import annotations

import logging
import statistics
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from threading import Event
from typing import Any

from pydantic import BaseModel
from sqlalchemy.orm import Session, sessionmaker

from app.core.clock import Clock, to_iso, to_utc, utcnow
from app.core.errors import HandlerFailure
from app.db.models import Reading
from app.repositories.alerts import reading_alert_exists
from app.repositories.jobs import update_job_progress
from app.repositories.monitoring_logs import create_monitoring_log, list_checked_reading_ids
from app.repositories.readings import list_readings
from app.repositories.thresholds import list_applicable_thresholds
from app.schemas.jobs import (
    AlertMonitoringParameters,
    AnalyticsProcessingParameters,
    AnomalyDetectionParameters,
    ComplianceCheckParameters,
    EfficiencyAnalysisParameters,
    ForecastGenerationParameters,
    MaintenancePredictionParameters,
)
from app.schemas.readings import reading_from_row
from app.services.alerts import AlertService
from app.services.threshold_evaluator import evaluate_reading

logger = logging.getLogger("app.job_handlers")

ANOMALY_Z_THRESHOLD = 3.0
ANOMALY_REPORT_LIMIT = 50
POWER_FACTOR_GOOD = 0.9
COMPLIANT_RATE = 95.0
PARTIAL_RATE = 80.0


@dataclass
class JobContext:
    job_id: int
    job_type: str
    building_id: int | None
    equipment_id: int | None
    parameters: BaseModel
    session_factory: sessionmaker
    alert_service: AlertService
    clock: Clock = utcnow
    stop_event: Event = field(default_factory=Event)

    def report_progress(self, percent: float) -> None:
        with self.session_factory() as db:
            update_job_progress(db, job_id=self.job_id, progress=percent, now=self.clock())

    def ensure_active(self) -> None:
        if self.stop_event.is_set():
            raise HandlerFailure(f"Job {self.job_id} was abandoned by the worker")


JobHandler = Callable[[JobContext], dict[str, Any]]


def analytics_processing(context: JobContext) -> dict[str, Any]:
    params: AnalyticsProcessingParameters = context.parameters  # type: ignore[assignment]
    rows = _energy_rows(context, params.building_id, params.equipment_id, params.start_date, params.end_date)
    context.report_progress(20)

    result = _window_header(params, rows)
    step = 70 / len(params.analysis_types)
    for index, analysis_type in enumerate(params.analysis_types, start=1):
        context.ensure_active()
        if analysis_type == "energy":
            result["energy"] = _energy_summary(rows)
        elif analysis_type == "anomaly":
            result["anomaly"] = _anomaly_scan(rows, z_threshold=ANOMALY_Z_THRESHOLD)
        elif analysis_type == "efficiency":
            result["efficiency"] = _efficiency_summary(rows)
        context.report_progress(20 + step * index)
    return result


def anomaly_detection(context: JobContext) -> dict[str, Any]:
    params: AnomalyDetectionParameters = context.parameters  # type: ignore[assignment]
    rows = _energy_rows(context, params.building_id, context.equipment_id, params.start_date, params.end_date)
    context.report_progress(40)
    return {
        **_window_header(params, rows),
        "anomaly": _anomaly_scan(rows, z_threshold=params.z_threshold),
    }


def efficiency_analysis(context: JobContext) -> dict[str, Any]:
    params: EfficiencyAnalysisParameters = context.parameters  # type: ignore[assignment]
    rows = _energy_rows(context, params.building_id, context.equipment_id, params.start_date, params.end_date)
    context.report_progress(40)
    return {
        **_window_header(params, rows),
        "efficiency": _efficiency_summary(rows),
    }


def maintenance_prediction(context: JobContext) -> dict[str, Any]:
    params: MaintenancePredictionParameters = context.parameters  # type: ignore[assignment]
    building_id = params.building_id or context.building_id
    equipment_id = params.equipment_id or context.equipment_id
    if building_id is None and equipment_id is None:
        raise HandlerFailure("maintenance_prediction needs a building_id or equipment_id")

    since = context.clock() - timedelta(days=params.lookback_days)
    with context.session_factory() as db:
        rows = list_readings(
            db,
            kind="equipment",
            building_id=building_id,
            equipment_id=equipment_id,
            start=since,
        )
    context.report_progress(40)

    by_equipment: dict[int, list[Reading]] = defaultdict(list)
    for row in rows:
        if row.equipment_id is not None:
            by_equipment[row.equipment_id].append(row)

    predictions = [
        _equipment_risk(equipment_key, equipment_rows)
        for equipment_key, equipment_rows in sorted(by_equipment.items())
    ]
    context.report_progress(70)
    context.ensure_active()

    alerts_created: list[int] = []
    with context.session_factory() as db:
        for prediction in predictions:
            if prediction["risk_level"] not in ("high", "critical"):
                continue
            alert = _raise_maintenance_alert(db, context, prediction)
            alerts_created.append(alert.id)

    return {
        "building_id": building_id,
        "lookback_days": params.lookback_days,
        "equipment_analyzed": len(predictions),
        "predictions": predictions,
        "alerts_created": alerts_created,
    }


def compliance_check(context: JobContext) -> dict[str, Any]:
    params: ComplianceCheckParameters = context.parameters  # type: ignore[assignment]
    building_id = params.building_id or context.building_id
    if building_id is None:
        raise HandlerFailure("compliance_check needs a building_id")

    since = context.clock() - timedelta(days=params.lookback_days)
    with context.session_factory() as db:
        rows = list_readings(db, kind="power_quality", building_id=building_id, start=since)
    context.report_progress(40)

    violations: dict[str, int] = defaultdict(int)
    compliant = 0
    for row in rows:
        failed = [candidate.metadata["parameter"] for candidate in evaluate_reading(reading_from_row(row))]
        for name in failed:
            violations[name] += 1
        if not failed:
            compliant += 1

    total = len(rows)
    rate = round(compliant / total * 100.0, 2) if total else None
    if rate is None:
        status = "insufficient_data"
    elif rate >= COMPLIANT_RATE:
        status = "compliant"
    elif rate >= PARTIAL_RATE:
        status = "partially_compliant"
    else:
        status = "non_compliant"
    context.report_progress(80)

    alert_id = None
    if status == "non_compliant":
        with context.session_factory() as db:
            alert = context.alert_service.create_alert(
                db,
                type="compliance_violation",
                severity="high",
                title="Power Quality Compliance Below Target",
                message=(
                    f"Only {rate:.1f}% of power quality readings in the last "
                    f"{params.lookback_days} days were within limits"
                ),
                building_id=building_id,
                audit_id=params.audit_id,
                detected_value=rate,
                threshold_value=PARTIAL_RATE,
                metadata={"job_id": context.job_id, "violations": dict(violations)},
            )
            alert_id = alert.id

    return {
        "audit_id": params.audit_id,
        "building_id": building_id,
        "check_types": params.check_types,
        "standards": params.standards,
        "readings_checked": total,
        "compliant_readings": compliant,
        "compliance_rate": rate,
        "status": status,
        "violations": dict(violations),
        "alert_id": alert_id,
    }


def alert_monitoring(context: JobContext) -> dict[str, Any]:
    """Re-evaluate recent readings that no monitoring pass has checked yet.

    Readings with a passed or warning monitoring log are skipped, and a
    candidate is dropped when its reading already raised an alert of the same
    type and title, whatever that alert's status is now.
    """
    params: AlertMonitoringParameters = context.parameters  # type: ignore[assignment]
    since = context.clock() - timedelta(minutes=params.window_minutes)
    evaluated: dict[str, int] = {}
    skipped = 0
    alert_ids: list[int] = []

    step = 90 / len(params.monitoring_types)
    with context.session_factory() as db:
        for index, kind in enumerate(params.monitoring_types, start=1):
            context.ensure_active()
            rows = list_readings(db, kind=kind, building_id=params.building_id, start=since)
            checked = list_checked_reading_ids(db, [row.id for row in rows])
            evaluated[kind] = 0
            for row in rows:
                if row.id in checked:
                    skipped += 1
                    continue
                evaluated[kind] += 1
                for alert_id in _monitor_reading(db, context, row):
                    if alert_id not in alert_ids:
                        alert_ids.append(alert_id)
            context.report_progress(step * index)

    return {
        "building_id": params.building_id,
        "window_minutes": params.window_minutes,
        "readings_evaluated": evaluated,
        "readings_skipped": skipped,
        "alerts": alert_ids,
        "alerts_count": len(alert_ids),
    }


def forecast_generation(context: JobContext) -> dict[str, Any]:
    params: ForecastGenerationParameters = context.parameters  # type: ignore[assignment]
    now = context.clock()
    rows = _energy_rows(context, params.building_id, None, now - timedelta(days=params.history_days), now)
    context.report_progress(40)

    daily_consumption: dict[date, float] = defaultdict(float)
    daily_peak_demand: dict[date, float] = {}
    for row in rows:
        day = to_utc(row.recorded_at).date()
        values = row.values_json or {}
        daily_consumption[day] += float(values.get("consumption_kwh") or 0.0)
        demand = values.get("demand_kw")
        if demand is not None:
            daily_peak_demand[day] = max(daily_peak_demand.get(day, 0.0), float(demand))

    result: dict[str, Any] = {
        "building_id": params.building_id,
        "history_days": params.history_days,
        "forecast_days": params.forecast_days,
        "days_observed": len(daily_consumption),
        "method": "mean_daily",
    }
    first_day = now.date() + timedelta(days=1)
    if "consumption" in params.forecast_types:
        mean_daily = statistics.fmean(daily_consumption.values()) if daily_consumption else None
        result["consumption"] = {
            "mean_daily_kwh": _round(mean_daily),
            "projected_total_kwh": _round(mean_daily * params.forecast_days) if mean_daily is not None else None,
            "series": _projection(first_day, params.forecast_days, mean_daily),
        }
    if "demand" in params.forecast_types:
        mean_peak = statistics.fmean(daily_peak_demand.values()) if daily_peak_demand else None
        result["demand"] = {
            "mean_daily_peak_kw": _round(mean_peak),
            "series": _projection(first_day, params.forecast_days, mean_peak),
        }
    return result


HANDLERS: dict[str, JobHandler] = {
    "analytics_processing": analytics_processing,
    "maintenance_prediction": maintenance_prediction,
    "compliance_check": compliance_check,
    "anomaly_detection": anomaly_detection,
    "efficiency_analysis": efficiency_analysis,
    "alert_monitoring": alert_monitoring,
    "forecast_generation": forecast_generation,
}


def _energy_summary(rows: list[Reading]) -> dict[str, Any]:
    consumption = _series(rows, "consumption_kwh")
    demand = _series(rows, "demand_kw")
    power_factor = _series(rows, "power_factor")
    return {
        "readings": len(rows),
        "total_consumption_kwh": _round(sum(consumption)) if consumption else 0.0,
        "average_consumption_kwh": _round(statistics.fmean(consumption)) if consumption else None,
        "peak_consumption_kwh": _round(max(consumption)) if consumption else None,
        "peak_demand_kw": _round(max(demand)) if demand else None,
        "average_power_factor": _round(statistics.fmean(power_factor)) if power_factor else None,
    }


def _anomaly_scan(rows: list[Reading], *, z_threshold: float) -> dict[str, Any]:
    points = [
        (row, float(row.values_json["consumption_kwh"]))
        for row in rows
        if (row.values_json or {}).get("consumption_kwh") is not None
    ]
    if len(points) < 2:
        return {"method": "z_score", "z_threshold": z_threshold, "anomalies": [], "anomaly_count": 0}

    values = [value for _row, value in points]
    mean = statistics.fmean(values)
    deviation = statistics.pstdev(values)
    anomalies: list[dict[str, Any]] = []
    if deviation > 0:
        for row, value in points:
            z_score = (value - mean) / deviation
            if abs(z_score) > z_threshold:
                anomalies.append(
                    {
                        "reading_id": row.id,
                        "recorded_at": to_iso(row.recorded_at),
                        "consumption_kwh": value,
                        "z_score": round(z_score, 3),
                    }
                )
    return {
        "method": "z_score",
        "z_threshold": z_threshold,
        "mean_kwh": _round(mean),
        "stddev_kwh": _round(deviation),
        "anomaly_count": len(anomalies),
        "anomalies": anomalies[:ANOMALY_REPORT_LIMIT],
    }


def _efficiency_summary(rows: list[Reading]) -> dict[str, Any]:
    power_factor = _series(rows, "power_factor")
    demand = _series(rows, "demand_kw")
    average_pf = statistics.fmean(power_factor) if power_factor else None
    peak_demand = max(demand) if demand else None
    load_factor = (
        statistics.fmean(demand) / peak_demand if demand and peak_demand and peak_demand > 0 else None
    )

    recommendations: list[str] = []
    if average_pf is not None and average_pf < POWER_FACTOR_GOOD:
        recommendations.append("Install power factor correction to raise the average above 0.90")
    if load_factor is not None and load_factor < 0.5:
        recommendations.append("Shift loads to flatten demand peaks")

    return {
        "average_power_factor": _round(average_pf),
        "load_factor": _round(load_factor),
        "efficiency_score": _round(average_pf * 100.0) if average_pf is not None else None,
        "recommendations": recommendations,
    }


def _equipment_risk(equipment_id: int, rows: list[Reading]) -> dict[str, Any]:
    statuses = [str((row.values_json or {}).get("status")) for row in rows]
    total = len(statuses)
    faulty = statuses.count("faulty")
    maintenance = statuses.count("maintenance")
    latest = statuses[-1] if statuses else None

    risk = 0.6 * faulty / total + 0.25 * maintenance / total
    if latest == "faulty":
        risk += 0.3
    elif latest == "maintenance":
        risk += 0.15
    risk = min(risk, 1.0)

    if risk > 0.8:
        level = "critical"
    elif risk > 0.6:
        level = "high"
    elif risk > 0.3:
        level = "medium"
    else:
        level = "low"
    return {
        "equipment_id": equipment_id,
        "building_id": rows[-1].building_id,
        "name": (rows[-1].values_json or {}).get("name"),
        "observations": total,
        "faulty_count": faulty,
        "maintenance_count": maintenance,
        "latest_status": latest,
        "risk_score": round(risk, 3),
        "risk_level": level,
    }


def _raise_maintenance_alert(db: Session, context: JobContext, prediction: dict[str, Any]):
    label = prediction["name"] or f"Equipment {prediction['equipment_id']}"
    critical = prediction["risk_level"] == "critical"
    return context.alert_service.create_alert(
        db,
        type="equipment_failure" if critical else "maintenance_due",
        severity="critical" if critical else "high",
        title="Predicted Equipment Failure" if critical else "Predictive Maintenance Due",
        message=(
            f"{label} has a {prediction['risk_level']} failure risk "
            f"(score {prediction['risk_score']:.2f})"
        ),
        building_id=prediction["building_id"],
        equipment_id=prediction["equipment_id"],
        detected_value=prediction["risk_score"],
        threshold_value=0.8 if critical else 0.6,
        metadata={"job_id": context.job_id, "risk_level": prediction["risk_level"]},
    )


def _monitor_reading(db: Session, context: JobContext, row: Reading) -> list[int]:
    thresholds = list_applicable_thresholds(
        db,
        parameter_type=row.kind,
        building_id=row.building_id,
        equipment_id=row.equipment_id,
    )
    alert_ids: list[int] = []
    for candidate in evaluate_reading(reading_from_row(row), thresholds):
        if reading_alert_exists(db, reading_id=row.id, type=candidate.type, title=candidate.title):
            continue
        alert = context.alert_service.create_from_candidate(
            db,
            candidate,
            building_id=row.building_id,
            equipment_id=row.equipment_id,
            reading_id=row.id,
        )
        alert_ids.append(alert.id)
    create_monitoring_log(
        db,
        monitoring_type="alert_monitoring",
        check_result="warning" if alert_ids else "passed",
        building_id=row.building_id,
        equipment_id=row.equipment_id,
        reading_id=row.id,
        details_json={"job_id": context.job_id, "alert_ids": alert_ids},
        alerts_generated=len(alert_ids),
        now=context.clock(),
    )
    return alert_ids


def _series(rows: list[Reading], key: str) -> list[float]:
    values: list[float] = []
    for row in rows:
        value = (row.values_json or {}).get(key)
        if value is not None:
            values.append(float(value))
    return values


def _projection(first_day: date, days: int, value: float | None) -> list[dict[str, Any]]:
    if value is None:
        return []
    return [
        {"date": (first_day + timedelta(days=offset)).isoformat(), "value": _round(value)}
        for offset in range(days)
    ]


def _energy_rows(
    context: JobContext,
    building_id: int | None,
    equipment_id: int | None,
    start: datetime,
    end: datetime,
) -> list[Reading]:
    with context.session_factory() as db:
        return list_readings(
            db,
            kind="energy",
            building_id=building_id,
            equipment_id=equipment_id,
            start=start,
            end=end,
        )


def _window_header(params: Any, rows: list[Reading]) -> dict[str, Any]:
    return {
        "building_id": params.building_id,
        "period": {"start_date": to_iso(params.start_date), "end_date": to_iso(params.end_date)},
        "readings_analyzed": len(rows),
    }


def _round(value: float | None, digits: int = 3) -> float | None:
    return None if value is None else round(value, digits)
