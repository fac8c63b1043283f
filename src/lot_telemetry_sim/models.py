"""Lot records, completion summaries and time-series readings."""

import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class LotStatus(Enum):
    """Lot lifecycle states."""

    PROCESSING = "processing"
    COMPLETED = "completed"


class LotError(Exception):
    """Base class for lot store errors."""


class LotNotFoundError(LotError):
    """Raised when a lookup fails to locate the requested lot."""


class LotExistsError(LotError):
    """Raised when the lot number is already registered."""


class LotNumberRequiredError(LotError, ValueError):
    """Raised when a lot number is missing or blank."""


class LotNotProcessingError(LotError):
    """Raised when a completion request changed no row.

    Either the lot does not exist or another path completed it first.
    Callers racing on completion treat this as already done.
    """


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return an aware UTC datetime; naive values are assumed to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_time(value: datetime) -> str:
    return to_utc(value).isoformat().replace("+00:00", "Z")


def _parse_time(raw: str) -> datetime:
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    return to_utc(datetime.fromisoformat(raw))


def compute_operation_hours(started_at: datetime, completed_at: datetime) -> float:
    """Hours between start and completion, rounded to one decimal place."""
    hours = (to_utc(completed_at) - to_utc(started_at)).total_seconds() / 3600
    if hours <= 0:
        return 0.0
    return math.floor(hours * 10 + 0.5) / 10


def decode_averages(payload: Optional[str]) -> Dict[str, float]:
    """Decode a stored per-sensor averages object.

    Numeric strings are accepted, including a comma as decimal separator.
    Blank keys and values that are not numbers are skipped.
    """
    if not payload:
        return {}
    data = json.loads(payload)
    if not isinstance(data, dict):
        raise ValueError("averages must be a JSON object")

    averages: Dict[str, float] = {}
    for key, value in data.items():
        name = str(key).strip()
        if not name or isinstance(value, bool):
            continue
        if isinstance(value, str):
            value = value.strip().replace(",", ".")
        try:
            averages[name] = float(value)
        except (TypeError, ValueError):
            continue
    return averages


@dataclass
class SensorReading:
    """A single sample returned by a time-series query."""

    time: datetime
    machine_name: str
    sensor_name: str
    status: str
    value: float

    def is_down(self, threshold: float) -> bool:
        """Status reads "down" and the value sits at or below the threshold."""
        return self.status.lower() == "down" and self.value <= threshold


@dataclass
class SensorSnapshot:
    """Latest readings of one sensor at the time its lot completed."""

    sensor_name: str
    latest_status: str
    latest_value: float
    average_down: float
    observed_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sensorName": self.sensor_name,
            "latestStatus": self.latest_status,
            "latestValue": self.latest_value,
            "averageDown": self.average_down,
            "observedCount": self.observed_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SensorSnapshot":
        return cls(
            sensor_name=str(data.get("sensorName", "")),
            latest_status=str(data.get("latestStatus", "")),
            latest_value=float(data.get("latestValue", 0.0)),
            average_down=float(data.get("averageDown", 0.0)),
            observed_count=int(data.get("observedCount", 0)),
        )


@dataclass
class LotSummary:
    """Aggregated sensor context stored when a lot completes."""

    completed_at: datetime
    machine_name: str
    sensors: List[SensorSnapshot] = field(default_factory=list)
    good_product: int = 0
    defect_product: int = 0
    conclusion: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the persisted JSON payload (zero counts are omitted)."""
        data: Dict[str, Any] = {
            "completedAt": format_time(self.completed_at),
            "machineName": self.machine_name,
            "sensors": [s.to_dict() for s in self.sensors],
        }
        if self.good_product:
            data["goodProduct"] = self.good_product
        if self.defect_product:
            data["defectProduct"] = self.defect_product
        if self.conclusion:
            data["conclusion"] = self.conclusion
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LotSummary":
        return cls(
            completed_at=_parse_time(data["completedAt"]),
            machine_name=str(data.get("machineName", "")),
            sensors=[SensorSnapshot.from_dict(s) for s in data.get("sensors") or []],
            good_product=int(data.get("goodProduct", 0)),
            defect_product=int(data.get("defectProduct", 0)),
            conclusion=str(data.get("conclusion", "")),
        )

    @classmethod
    def from_json(cls, payload: str) -> "LotSummary":
        """Decode a persisted payload.

        Raises ValueError when the payload is not a valid summary.
        """
        try:
            data = json.loads(payload)
            return cls.from_dict(data)
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError(f"malformed lot summary: {e}") from e


@dataclass
class ProductData:
    """Product-centric view of a lot with its derived analytics."""

    lot_number: str
    status: LotStatus
    machine_name: str
    averages: Dict[str, float]
    operation_hour: float
    good_product: int
    defect_product: int
    conclusion: str
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lot": self.lot_number,
            "status": self.status.value,
            "machineName": self.machine_name,
            "averages": self.averages,
            "operationHour": self.operation_hour,
            "goodProduct": self.good_product,
            "defectProduct": self.defect_product,
            "conclusion": self.conclusion,
            "updatedAt": format_time(self.updated_at),
        }


@dataclass
class Lot:
    """Persisted state of a manufacturing lot."""

    id: int
    lot_number: str
    machine_name: str
    status: LotStatus = LotStatus.PROCESSING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    summary_json: Optional[str] = None
    good_product: Optional[int] = None
    defect_product: Optional[int] = None
    conclusion: Optional[str] = None
    averages_json: Optional[str] = None
    operation_hour: Optional[float] = None

    @property
    def is_processing(self) -> bool:
        return self.status == LotStatus.PROCESSING

    def summary(self) -> Optional[LotSummary]:
        """Decode the stored summary, None when the lot has none yet."""
        if not self.summary_json:
            return None
        return LotSummary.from_json(self.summary_json)

    def averages(self) -> Dict[str, float]:
        return decode_averages(self.averages_json)

    def operation_hours(self, now: Optional[datetime] = None) -> float:
        """Stored operation hours, else the time from start to completion.

        Lots still processing are measured up to ``now``.
        """
        if self.operation_hour is not None:
            return self.operation_hour
        if self.started_at is None:
            return 0.0
        end = self.completed_at or now or datetime.now(timezone.utc)
        return compute_operation_hours(self.started_at, end)

    def product_data(self, now: Optional[datetime] = None) -> ProductData:
        """Build the product view, filling gaps from the completion summary.

        Raises ValueError when the stored summary or averages are malformed.
        """
        now = now or datetime.now(timezone.utc)
        summary = self.summary()

        averages = self.averages()
        if not averages and summary is not None:
            for sensor in summary.sensors:
                name = sensor.sensor_name.strip()
                if name:
                    averages[name.lower()] = sensor.latest_value

        good = self.good_product
        if good is None:
            good = summary.good_product if summary else 0
        defect = self.defect_product
        if defect is None:
            defect = summary.defect_product if summary else 0
        conclusion = (self.conclusion or "").strip()
        if not conclusion and summary is not None:
            conclusion = summary.conclusion

        updated_at = self.updated_at
        if updated_at is None:
            updated_at = self.completed_at or (summary.completed_at if summary else now)

        return ProductData(
            lot_number=self.lot_number,
            status=self.status,
            machine_name=self.machine_name,
            averages=averages,
            operation_hour=self.operation_hours(now),
            good_product=good,
            defect_product=defect,
            conclusion=conclusion,
            updated_at=updated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a display payload for the CLI and MQTT events."""
        return {
            "id": self.id,
            "lotNumber": self.lot_number,
            "machineName": self.machine_name,
            "status": self.status.value,
            "startedAt": format_time(self.started_at) if self.started_at else None,
            "completedAt": format_time(self.completed_at) if self.completed_at else None,
            "updatedAt": format_time(self.updated_at) if self.updated_at else None,
            "goodProduct": self.good_product,
            "defectProduct": self.defect_product,
            "conclusion": self.conclusion,
            "averages": self.averages() if self.averages_json else None,
            "operationHour": self.operation_hour,
        }
