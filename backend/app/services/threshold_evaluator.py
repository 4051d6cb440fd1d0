from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol

from app.schemas.readings import EnergyReading, EquipmentReading, PowerQualityReading

POWER_FACTOR_TARGET = 0.85
POWER_FACTOR_CRITICAL = 0.80
CONSUMPTION_SPIKE_KWH = 1000.0
THD_VOLTAGE_LIMIT = 8.0
THD_VOLTAGE_CRITICAL = 12.0
THD_CURRENT_LIMIT = 15.0
THD_CURRENT_HIGH = 20.0
NOMINAL_VOLTAGE = 230.0
VOLTAGE_MIN = 207.0
VOLTAGE_MAX = 253.0
VOLTAGE_CRITICAL_DEVIATION = 0.15
FREQUENCY_MIN = 49.5
FREQUENCY_MAX = 50.5
VOLTAGE_UNBALANCE_LIMIT = 3.0
VOLTAGE_UNBALANCE_HIGH = 5.0


class ThresholdLike(Protocol):
    id: int
    parameter_name: str
    min_value: float | None
    max_value: float | None
    threshold_type: str
    severity: str
    metadata_json: dict


@dataclass(frozen=True)
class AlertCandidate:
    type: str
    severity: str
    title: str
    message: str
    detected_value: float | None = None
    threshold_value: float | None = None
    threshold_id: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def evaluate_reading(
    reading: EnergyReading | PowerQualityReading | EquipmentReading,
    thresholds: Iterable[ThresholdLike] = (),
) -> list[AlertCandidate]:
    """Evaluate one reading against the built-in rules for its kind, then
    against configured thresholds in id order. Pure; never touches storage."""
    if isinstance(reading, EnergyReading):
        candidates = _energy_rules(reading)
    elif isinstance(reading, PowerQualityReading):
        candidates = _power_quality_rules(reading)
    elif isinstance(reading, EquipmentReading):
        candidates = _equipment_rules(reading)
    else:
        candidates = []

    values = reading.measurement_values()
    for threshold in sorted(thresholds, key=lambda item: item.id):
        candidate = _evaluate_threshold(threshold, values)
        if candidate is not None:
            candidates.append(candidate)
    return candidates


def _energy_rules(reading: EnergyReading) -> list[AlertCandidate]:
    candidates: list[AlertCandidate] = []
    if reading.power_factor is not None and reading.power_factor < POWER_FACTOR_TARGET:
        severity = "critical" if reading.power_factor < POWER_FACTOR_CRITICAL else "medium"
        candidates.append(
            AlertCandidate(
                type="threshold_exceeded",
                severity=severity,
                title="Low Power Factor",
                message=(
                    f"Power factor {reading.power_factor:.2f} is below the "
                    f"recommended minimum of {POWER_FACTOR_TARGET}"
                ),
                detected_value=reading.power_factor,
                threshold_value=POWER_FACTOR_TARGET,
                metadata={"parameter": "power_factor", "rule": "builtin"},
            )
        )
    if reading.consumption_kwh > CONSUMPTION_SPIKE_KWH:
        candidates.append(
            AlertCandidate(
                type="energy_anomaly",
                severity="medium",
                title="High Energy Consumption",
                message=(
                    f"Consumption of {reading.consumption_kwh:.1f} kWh exceeds "
                    f"{CONSUMPTION_SPIKE_KWH:.0f} kWh"
                ),
                detected_value=reading.consumption_kwh,
                threshold_value=CONSUMPTION_SPIKE_KWH,
                metadata={"parameter": "consumption_kwh", "rule": "builtin"},
            )
        )
    return candidates


def _power_quality_rules(reading: PowerQualityReading) -> list[AlertCandidate]:
    candidates: list[AlertCandidate] = []
    if reading.thd_voltage is not None and reading.thd_voltage > THD_VOLTAGE_LIMIT:
        candidates.append(
            AlertCandidate(
                type="power_quality",
                severity="critical" if reading.thd_voltage > THD_VOLTAGE_CRITICAL else "high",
                title="High Voltage THD",
                message=(
                    f"Voltage THD {reading.thd_voltage:.2f}% exceeds the "
                    f"{THD_VOLTAGE_LIMIT:.0f}% limit"
                ),
                detected_value=reading.thd_voltage,
                threshold_value=THD_VOLTAGE_LIMIT,
                metadata={"parameter": "thd_voltage", "rule": "builtin"},
            )
        )

    for phase, voltage in (
        ("l1", reading.voltage_l1),
        ("l2", reading.voltage_l2),
        ("l3", reading.voltage_l3),
    ):
        if voltage is None or VOLTAGE_MIN <= voltage <= VOLTAGE_MAX:
            continue
        deviation = abs(voltage - NOMINAL_VOLTAGE) / NOMINAL_VOLTAGE
        bound = VOLTAGE_MIN if voltage < VOLTAGE_MIN else VOLTAGE_MAX
        candidates.append(
            AlertCandidate(
                type="power_quality",
                severity="critical" if deviation > VOLTAGE_CRITICAL_DEVIATION else "high",
                title=f"Voltage Out of Range ({phase.upper()})",
                message=(
                    f"Phase {phase.upper()} voltage {voltage:.1f} V is outside "
                    f"{VOLTAGE_MIN:.0f}-{VOLTAGE_MAX:.0f} V ({deviation * 100:.1f}% from nominal)"
                ),
                detected_value=voltage,
                threshold_value=bound,
                metadata={
                    "parameter": f"voltage_{phase}",
                    "rule": "builtin",
                    "deviation_percent": round(deviation * 100, 2),
                },
            )
        )

    if reading.thd_current is not None and reading.thd_current > THD_CURRENT_LIMIT:
        candidates.append(
            AlertCandidate(
                type="power_quality",
                severity="high" if reading.thd_current > THD_CURRENT_HIGH else "medium",
                title="High Current THD",
                message=(
                    f"Current THD {reading.thd_current:.2f}% exceeds the "
                    f"{THD_CURRENT_LIMIT:.0f}% limit"
                ),
                detected_value=reading.thd_current,
                threshold_value=THD_CURRENT_LIMIT,
                metadata={"parameter": "thd_current", "rule": "builtin"},
            )
        )

    if reading.frequency is not None and not (FREQUENCY_MIN <= reading.frequency <= FREQUENCY_MAX):
        bound = FREQUENCY_MIN if reading.frequency < FREQUENCY_MIN else FREQUENCY_MAX
        candidates.append(
            AlertCandidate(
                type="power_quality",
                severity="high",
                title="Frequency Deviation",
                message=(
                    f"Frequency {reading.frequency:.2f} Hz is outside "
                    f"{FREQUENCY_MIN}-{FREQUENCY_MAX} Hz"
                ),
                detected_value=reading.frequency,
                threshold_value=bound,
                metadata={"parameter": "frequency", "rule": "builtin"},
            )
        )

    if reading.voltage_unbalance is not None and reading.voltage_unbalance > VOLTAGE_UNBALANCE_LIMIT:
        candidates.append(
            AlertCandidate(
                type="power_quality",
                severity="high" if reading.voltage_unbalance > VOLTAGE_UNBALANCE_HIGH else "medium",
                title="Voltage Unbalance",
                message=(
                    f"Voltage unbalance {reading.voltage_unbalance:.2f}% exceeds "
                    f"{VOLTAGE_UNBALANCE_LIMIT:.0f}%"
                ),
                detected_value=reading.voltage_unbalance,
                threshold_value=VOLTAGE_UNBALANCE_LIMIT,
                metadata={"parameter": "voltage_unbalance", "rule": "builtin"},
            )
        )
    return candidates


def _equipment_rules(reading: EquipmentReading) -> list[AlertCandidate]:
    if reading.status != "faulty":
        return []
    label = reading.name or f"Equipment {reading.equipment_id}"
    return [
        AlertCandidate(
            type="equipment_failure",
            severity="critical",
            title="Equipment Fault Detected",
            message=f"{label} reported a faulty status",
            metadata={"status": reading.status, "rule": "builtin"},
        )
    ]


def _evaluate_threshold(threshold: ThresholdLike, values: dict[str, Any]) -> AlertCandidate | None:
    raw = values.get(threshold.parameter_name)
    if not isinstance(raw, (int, float)) or isinstance(raw, bool):
        return None
    value = float(raw)
    metadata = dict(threshold.metadata_json or {})

    if threshold.threshold_type == "absolute":
        observed = value
        violated = _outside(observed, threshold.min_value, threshold.max_value)
    elif threshold.threshold_type == "percentage":
        baseline = _number(metadata.get("baseline"))
        if baseline is None or baseline == 0:
            return None
        observed = value / baseline * 100.0
        violated = _outside(observed, threshold.min_value, threshold.max_value)
    elif threshold.threshold_type == "deviation":
        nominal = _number(metadata.get("nominal"))
        if nominal is None or nominal == 0 or threshold.max_value is None:
            return None
        observed = abs(value - nominal) / abs(nominal) * 100.0
        violated = threshold.max_value if observed > threshold.max_value else None
    else:
        return None

    if violated is None:
        return None

    return AlertCandidate(
        type="threshold_exceeded",
        severity=threshold.severity,
        title=f"{threshold.parameter_name} threshold exceeded",
        message=(
            f"{threshold.parameter_name} value {value:g} violates the configured "
            f"{threshold.threshold_type} threshold"
        ),
        detected_value=value,
        threshold_value=violated,
        threshold_id=threshold.id,
        metadata={
            "parameter": threshold.parameter_name,
            "rule": "threshold",
            "threshold_type": threshold.threshold_type,
            "observed": round(observed, 4),
        },
    )


def _outside(observed: float, min_value: float | None, max_value: float | None) -> float | None:
    """Return the violated bound, or None when ``observed`` is within range."""
    if min_value is not None and observed < min_value:
        return min_value
    if max_value is not None and observed > max_value:
        return max_value
    return None


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None
