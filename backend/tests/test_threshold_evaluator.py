from __future__ import annotations

from types import SimpleNamespace
from unittest import TestCase

from app.schemas.readings import EnergyReading, EquipmentReading, PowerQualityReading
from app.services.threshold_evaluator import evaluate_reading


def _threshold(
    threshold_id: int,
    *,
    parameter_name: str,
    threshold_type: str = "absolute",
    min_value: float | None = None,
    max_value: float | None = None,
    severity: str = "high",
    metadata: dict | None = None,
) -> SimpleNamespace:
    return SimpleNamespace(
        id=threshold_id,
        parameter_name=parameter_name,
        threshold_type=threshold_type,
        min_value=min_value,
        max_value=max_value,
        severity=severity,
        metadata_json=metadata or {},
    )


class EnergyRuleTests(TestCase):
    def test_low_power_factor_yields_single_critical_candidate(self) -> None:
        reading = EnergyReading(building_id=1, consumption_kwh=50, power_factor=0.78)

        candidates = evaluate_reading(reading, [])

        self.assertEqual(len(candidates), 1)
        candidate = candidates[0]
        self.assertEqual(candidate.type, "threshold_exceeded")
        self.assertEqual(candidate.severity, "critical")
        self.assertEqual(candidate.detected_value, 0.78)
        self.assertEqual(candidate.threshold_value, 0.85)

    def test_power_factor_between_bounds_is_medium(self) -> None:
        reading = EnergyReading(building_id=1, consumption_kwh=50, power_factor=0.82)

        candidates = evaluate_reading(reading)

        self.assertEqual([item.severity for item in candidates], ["medium"])

    def test_boundary_values_do_not_alert(self) -> None:
        reading = EnergyReading(building_id=1, consumption_kwh=1000, power_factor=0.85)

        self.assertEqual(evaluate_reading(reading), [])

    def test_consumption_spike_is_energy_anomaly(self) -> None:
        reading = EnergyReading(building_id=1, consumption_kwh=1000.5)

        candidates = evaluate_reading(reading)

        self.assertEqual(len(candidates), 1)
        self.assertEqual(candidates[0].type, "energy_anomaly")
        self.assertEqual(candidates[0].severity, "medium")
        self.assertEqual(candidates[0].threshold_value, 1000.0)


class PowerQualityRuleTests(TestCase):
    def test_thd_voltage_severity_bands(self) -> None:
        high = evaluate_reading(PowerQualityReading(building_id=1, thd_voltage=9.0))
        critical = evaluate_reading(PowerQualityReading(building_id=1, thd_voltage=12.5))

        self.assertEqual([(item.type, item.severity) for item in high], [("power_quality", "high")])
        self.assertEqual([item.severity for item in critical], ["critical"])
        self.assertEqual(critical[0].threshold_value, 8.0)

    def test_each_phase_voltage_is_checked(self) -> None:
        reading = PowerQualityReading(building_id=1, voltage_l1=230, voltage_l2=200, voltage_l3=270)

        candidates = evaluate_reading(reading)

        self.assertEqual(len(candidates), 2)
        low, high = candidates
        self.assertEqual(low.severity, "high")
        self.assertEqual(low.threshold_value, 207.0)
        # 270 V deviates 17.4% from nominal
        self.assertEqual(high.severity, "critical")
        self.assertEqual(high.threshold_value, 253.0)

    def test_missing_fields_skip_rules(self) -> None:
        self.assertEqual(evaluate_reading(PowerQualityReading(building_id=1)), [])

    def test_frequency_unbalance_and_current_thd(self) -> None:
        reading = PowerQualityReading(
            building_id=1,
            frequency=49.2,
            voltage_unbalance=5.5,
            thd_current=16.0,
        )

        candidates = evaluate_reading(reading)

        by_title = {item.title: item for item in candidates}
        self.assertEqual(by_title["Frequency Deviation"].severity, "high")
        self.assertEqual(by_title["Frequency Deviation"].threshold_value, 49.5)
        self.assertEqual(by_title["Voltage Unbalance"].severity, "high")
        self.assertEqual(by_title["High Current THD"].severity, "medium")


class EquipmentRuleTests(TestCase):
    def test_faulty_equipment_is_critical_failure(self) -> None:
        reading = EquipmentReading(building_id=1, equipment_id=7, status="faulty", name="Chiller 2")

        candidates = evaluate_reading(reading)

        self.assertEqual(len(candidates), 1)
        self.assertEqual(candidates[0].type, "equipment_failure")
        self.assertEqual(candidates[0].severity, "critical")
        self.assertIn("Chiller 2", candidates[0].message)

    def test_active_equipment_yields_nothing(self) -> None:
        reading = EquipmentReading(building_id=1, equipment_id=7, status="active")

        self.assertEqual(evaluate_reading(reading), [])


class ConfiguredThresholdTests(TestCase):
    def test_absolute_threshold_reports_violated_bound(self) -> None:
        reading = EnergyReading(building_id=1, consumption_kwh=120, demand_kw=90)
        thresholds = [_threshold(4, parameter_name="demand_kw", max_value=80, severity="low")]

        candidates = evaluate_reading(reading, thresholds)

        self.assertEqual(len(candidates), 1)
        self.assertEqual(candidates[0].threshold_id, 4)
        self.assertEqual(candidates[0].severity, "low")
        self.assertEqual(candidates[0].detected_value, 90.0)
        self.assertEqual(candidates[0].threshold_value, 80)

    def test_percentage_threshold_uses_baseline(self) -> None:
        reading = EnergyReading(building_id=1, consumption_kwh=130)
        within = _threshold(1, parameter_name="consumption_kwh", threshold_type="percentage",
                            max_value=140, metadata={"baseline": 100})
        above = _threshold(2, parameter_name="consumption_kwh", threshold_type="percentage",
                           max_value=120, metadata={"baseline": 100})

        candidates = evaluate_reading(reading, [above, within])

        self.assertEqual([item.threshold_id for item in candidates], [2])

    def test_deviation_threshold_uses_nominal(self) -> None:
        reading = PowerQualityReading(building_id=1, frequency=50.4)
        tight = _threshold(1, parameter_name="frequency", threshold_type="deviation",
                           max_value=0.5, metadata={"nominal": 50})
        loose = _threshold(2, parameter_name="frequency", threshold_type="deviation",
                           max_value=1.0, metadata={"nominal": 50})

        candidates = evaluate_reading(reading, [tight, loose])

        self.assertEqual([item.threshold_id for item in candidates], [1])
        self.assertEqual(candidates[0].threshold_value, 0.5)

    def test_missing_parameter_or_baseline_is_skipped(self) -> None:
        reading = EnergyReading(building_id=1, consumption_kwh=10)
        thresholds = [
            _threshold(1, parameter_name="power_factor", min_value=0.9),
            _threshold(2, parameter_name="consumption_kwh", threshold_type="percentage", max_value=1),
        ]

        self.assertEqual(evaluate_reading(reading, thresholds), [])

    def test_builtin_rules_precede_thresholds_in_id_order(self) -> None:
        reading = EnergyReading(building_id=1, consumption_kwh=1200, power_factor=0.5)
        thresholds = [
            _threshold(9, parameter_name="consumption_kwh", max_value=500),
            _threshold(3, parameter_name="power_factor", min_value=0.95),
        ]

        candidates = evaluate_reading(reading, thresholds)

        self.assertEqual(
            [(item.type, item.threshold_id) for item in candidates],
            [
                ("threshold_exceeded", None),
                ("energy_anomaly", None),
                ("threshold_exceeded", 3),
                ("threshold_exceeded", 9),
            ],
        )
