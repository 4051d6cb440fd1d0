from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

EquipmentStatus = Literal["active", "inactive", "maintenance", "faulty"]


class _ReadingBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    building_id: int = Field(gt=0)
    equipment_id: int | None = Field(default=None, gt=0)
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reading_id: int | None = None

    @field_validator("recorded_at")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def measurement_values(self) -> dict[str, Any]:
        return self.model_dump(
            exclude={"kind", "building_id", "equipment_id", "recorded_at", "reading_id"},
            exclude_none=True,
        )


class EnergyReading(_ReadingBase):
    kind: Literal["energy"] = "energy"
    consumption_kwh: float = Field(ge=0)
    demand_kw: float | None = Field(default=None, ge=0)
    power_factor: float | None = Field(default=None, ge=0, le=1)


class PowerQualityReading(_ReadingBase):
    kind: Literal["power_quality"] = "power_quality"
    voltage_l1: float | None = Field(default=None, ge=0)
    voltage_l2: float | None = Field(default=None, ge=0)
    voltage_l3: float | None = Field(default=None, ge=0)
    thd_voltage: float | None = Field(default=None, ge=0)
    thd_current: float | None = Field(default=None, ge=0)
    frequency: float | None = Field(default=None, ge=0)
    voltage_unbalance: float | None = Field(default=None, ge=0)
    current_unbalance: float | None = Field(default=None, ge=0)


class EquipmentReading(_ReadingBase):
    kind: Literal["equipment"] = "equipment"
    status: EquipmentStatus
    name: str | None = Field(default=None, max_length=255)


Reading = Annotated[
    Union[EnergyReading, PowerQualityReading, EquipmentReading],
    Field(discriminator="kind"),
]

reading_adapter: TypeAdapter[Reading] = TypeAdapter(Reading)


def parse_reading(payload: dict[str, Any]) -> EnergyReading | PowerQualityReading | EquipmentReading:
    return reading_adapter.validate_python(payload)


def reading_from_row(row: Any) -> EnergyReading | PowerQualityReading | EquipmentReading:
    payload = dict(row.values_json or {})
    payload.update(
        kind=row.kind,
        building_id=row.building_id,
        equipment_id=row.equipment_id,
        recorded_at=row.recorded_at,
        reading_id=row.id,
    )
    return parse_reading(payload)


class ReadingAcceptedResponse(BaseModel):
    reading_id: int
    kind: str
    building_id: int
    equipment_id: int | None
    recorded_at: datetime
    monitoring_submitted: bool
