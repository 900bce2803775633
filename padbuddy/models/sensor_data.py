"""Sensor reading models and the ingestion-boundary normalizer"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..utils.timestamps import is_absolute, parse_number, to_epoch_ms

# Field names devices have used for each value, first match wins
VALUE_ALIASES = {
    "nitrogen": ("nitrogen", "n", "N"),
    "phosphorus": ("phosphorus", "p", "P"),
    "potassium": ("potassium", "k", "K"),
    "temperature": ("temperature", "temp"),
    "humidity": ("humidity",),
    "moisture": ("moisture", "soilMoisture"),
}
TIMESTAMP_FIELDS = ("timestamp", "lastUpdate")


class SensorValues(BaseModel):
    nitrogen: Optional[float] = None
    phosphorus: Optional[float] = None
    potassium: Optional[float] = None
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    moisture: Optional[float] = None

    def is_empty(self) -> bool:
        return all(v is None for v in self.model_dump().values())


class SensorReading(BaseModel):
    device_id: str = Field(alias="deviceId")
    values: SensorValues
    source_timestamp: Optional[float] = Field(default=None, alias="sourceTimestamp")
    received_at: int = Field(alias="receivedAt")  # epoch ms

    class Config:
        populate_by_name = True

    @classmethod
    def from_payload(cls, device_id: str, payload: Dict[str, Any], received_at: int) -> "SensorReading":
        """Build a reading from a raw device push"""
        values = {}
        for name, aliases in VALUE_ALIASES.items():
            for alias in aliases:
                number = parse_number(payload.get(alias))
                if number is not None:
                    values[name] = number
                    break

        source_timestamp = None
        for field_name in TIMESTAMP_FIELDS:
            number = parse_number(payload.get(field_name))
            if number is not None:
                source_timestamp = number
                break

        return cls(
            device_id=device_id,
            values=SensorValues(**values),
            source_timestamp=source_timestamp,
            received_at=received_at,
        )

    @property
    def has_absolute_timestamp(self) -> bool:
        return self.source_timestamp is not None and is_absolute(self.source_timestamp)

    @property
    def source_epoch_ms(self) -> Optional[int]:
        if self.source_timestamp is None:
            return None
        return to_epoch_ms(self.source_timestamp)


@dataclass(frozen=True)
class Decision:
    """Outcome of Accept(reading)"""
    accepted: bool
    reason: Optional[str] = None
    age_ms: Optional[int] = None

    @classmethod
    def accept(cls) -> "Decision":
        return cls(accepted=True)

    @classmethod
    def reject(cls, reason: str, age_ms: Optional[int] = None) -> "Decision":
        return cls(accepted=False, reason=reason, age_ms=age_ms)
