"""Time-series storage for simulated sensor points.

Two stores share one interface: InfluxDB for real deployments and an
in-memory buffer for dry runs and tests.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

from influxdb_client import InfluxDBClient, Point
from influxdb_client.client.write_api import SYNCHRONOUS

from .config import InfluxConfig
from .models import SensorReading, format_time, to_utc

logger = logging.getLogger(__name__)

MACHINE_TAG = "machine_name"
SENSOR_TAG = "sensor_name"
STATUS_TAG = "status"
VALUE_FIELD = "value"
DEFAULT_LOOKBACK = 3600.0


class TimeSeriesStore:
    """Interface for sensor point storage."""

    def write(
        self,
        measurement: str,
        tags: Mapping[str, str],
        fields: Mapping[str, float],
        timestamp: datetime,
    ) -> None:
        raise NotImplementedError

    def query_recent(
        self,
        measurement: str,
        filters: Optional[Mapping[str, str]] = None,
        lookback: float = DEFAULT_LOOKBACK,
        limit: int = 0,
    ) -> List[SensorReading]:
        """Return readings newest first."""
        raise NotImplementedError

    def query_recent_by_machine(
        self, measurement: str, machine_name: str, lookback: float, limit: int
    ) -> List[SensorReading]:
        if not machine_name.strip():
            raise ValueError("machine name is required")
        return self.query_recent(measurement, {MACHINE_TAG: machine_name}, lookback, limit)

    def query_recent_by_sensor(
        self,
        measurement: str,
        machine_name: str,
        sensor_name: str,
        lookback: float,
        limit: int,
    ) -> List[SensorReading]:
        if not machine_name.strip():
            raise ValueError("machine name is required")
        if not sensor_name.strip():
            raise ValueError("sensor name is required")
        filters = {MACHINE_TAG: machine_name, SENSOR_TAG: sensor_name}
        return self.query_recent(measurement, filters, lookback, limit)

    def mean_by_sensor(
        self,
        measurement: str,
        machine_name: str,
        start: datetime,
        stop: datetime,
    ) -> Dict[str, float]:
        """Mean value per sensor of one machine over [start, stop)."""
        raise NotImplementedError

    def close(self) -> None:
        pass


@dataclass
class _StoredPoint:
    measurement: str
    tags: Dict[str, str]
    fields: Dict[str, float]
    timestamp: datetime


class InMemoryTimeSeriesStore(TimeSeriesStore):
    """Thread-safe in-process store, bounded to the most recent points."""

    def __init__(self, max_points: int = 100_000, clock=None):
        self._points: List[_StoredPoint] = []
        self._lock = threading.Lock()
        self._max_points = max_points
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def __len__(self) -> int:
        with self._lock:
            return len(self._points)

    def write(self, measurement, tags, fields, timestamp) -> None:
        if not measurement:
            raise ValueError("measurement is required")
        point = _StoredPoint(measurement, dict(tags), dict(fields), to_utc(timestamp))
        with self._lock:
            self._points.append(point)
            overflow = len(self._points) - self._max_points
            if overflow > 0:
                del self._points[:overflow]

    def query_recent(self, measurement, filters=None, lookback=DEFAULT_LOOKBACK, limit=0):
        if not measurement:
            raise ValueError("measurement is required")
        if lookback <= 0:
            lookback = DEFAULT_LOOKBACK
        since = self._clock() - timedelta(seconds=lookback)
        filters = dict(filters or {})

        with self._lock:
            matches = [
                p for p in self._points
                if p.measurement == measurement
                and VALUE_FIELD in p.fields
                and p.timestamp >= since
                and all(p.tags.get(k) == v for k, v in filters.items())
            ]

        matches.sort(key=lambda p: p.timestamp, reverse=True)
        if limit > 0:
            matches = matches[:limit]
        return [
            SensorReading(
                time=p.timestamp,
                machine_name=p.tags.get(MACHINE_TAG, ""),
                sensor_name=p.tags.get(SENSOR_TAG, ""),
                status=p.tags.get(STATUS_TAG, ""),
                value=float(p.fields[VALUE_FIELD]),
            )
            for p in matches
        ]

    def mean_by_sensor(self, measurement, machine_name, start, stop):
        if not measurement:
            raise ValueError("measurement is required")
        if not machine_name.strip():
            raise ValueError("machine name is required")
        start, stop = to_utc(start), to_utc(stop)

        by_sensor: Dict[str, List[float]] = {}
        with self._lock:
            for p in self._points:
                if (
                    p.measurement == measurement
                    and VALUE_FIELD in p.fields
                    and p.tags.get(MACHINE_TAG) == machine_name
                    and start <= p.timestamp < stop
                ):
                    by_sensor.setdefault(p.tags.get(SENSOR_TAG, ""), []).append(
                        float(p.fields[VALUE_FIELD])
                    )
        return {name: sum(values) / len(values) for name, values in by_sensor.items() if name}


def to_flux_duration(seconds: float) -> str:
    """Render a lookback window as a Flux duration literal."""
    if seconds <= 0:
        return "0s"
    whole = int(seconds)
    if whole == 0:
        return f"{int(seconds * 1000)}ms"
    if whole % 3600 == 0:
        return f"{whole // 3600}h"
    if whole % 60 == 0:
        return f"{whole // 60}m"
    return f"{whole}s"


def flux_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def build_recent_query(
    bucket: str,
    measurement: str,
    filters: Optional[Mapping[str, str]],
    lookback: float,
    limit: int,
) -> str:
    """Build a Flux query returning the newest value points first."""
    lines = [
        f"from(bucket: {flux_string(bucket)})",
        f"|> range(start: -{to_flux_duration(lookback)})",
        f'|> filter(fn: (r) => r["_measurement"] == {flux_string(measurement)})',
        f'|> filter(fn: (r) => r["_field"] == "{VALUE_FIELD}")',
    ]
    for key in sorted(filters or {}):
        lines.append(f"|> filter(fn: (r) => r[{flux_string(key)}] == {flux_string(filters[key])})")
    # Merge per-series tables so the ordering and limit are global
    lines.append("|> group()")
    lines.append('|> sort(columns: ["_time"], desc: true)')
    if limit > 0:
        lines.append(f"|> limit(n: {limit})")
    return "\n".join(lines)


def build_mean_query(
    bucket: str,
    measurement: str,
    machine_name: str,
    start: datetime,
    stop: datetime,
) -> str:
    """Build a Flux query averaging each sensor of a machine over a time range."""
    return "\n".join(
        [
            f"from(bucket: {flux_string(bucket)})",
            f"|> range(start: time(v: {flux_string(format_time(start))}), "
            f"stop: time(v: {flux_string(format_time(stop))}))",
            f'|> filter(fn: (r) => r["_measurement"] == {flux_string(measurement)})',
            f'|> filter(fn: (r) => r["_field"] == "{VALUE_FIELD}")',
            f"|> filter(fn: (r) => r[{flux_string(MACHINE_TAG)}] == {flux_string(machine_name)})",
            f'|> group(columns: ["{SENSOR_TAG}"])',
            "|> mean()",
            f'|> keep(columns: ["{SENSOR_TAG}", "_value"])',
        ]
    )


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


class InfluxTimeSeriesStore(TimeSeriesStore):
    """InfluxDB 2.x backed store."""

    def __init__(self, config: InfluxConfig, client: Optional[InfluxDBClient] = None):
        if not (config.url and config.token and config.org and config.bucket):
            raise ValueError(
                "missing InfluxDB configuration, ensure url, token, org and bucket are set"
            )
        self.config = config
        self._client = client or InfluxDBClient(
            url=config.url,
            token=config.token,
            org=config.org,
            timeout=int(config.timeout * 1000),
        )
        self._write_api = self._client.write_api(write_options=SYNCHRONOUS)
        self._query_api = self._client.query_api()
        logger.info(f"InfluxDB store ready: url={config.url} org={config.org} bucket={config.bucket}")

    def ping(self) -> bool:
        return bool(self._client.ping())

    def write(self, measurement, tags, fields, timestamp) -> None:
        point = Point(measurement)
        for key, value in tags.items():
            point = point.tag(key, value)
        for key, value in fields.items():
            point = point.field(key, float(value))
        point = point.time(to_utc(timestamp))
        self._write_api.write(bucket=self.config.bucket, org=self.config.org, record=point)

    def query_recent(self, measurement, filters=None, lookback=DEFAULT_LOOKBACK, limit=0):
        if not measurement:
            raise ValueError("measurement is required")
        if lookback <= 0:
            lookback = DEFAULT_LOOKBACK

        flux = build_recent_query(self.config.bucket, measurement, filters, lookback, limit)
        tables = self._query_api.query(flux, org=self.config.org)

        readings = []
        for table in tables:
            for record in table.records:
                value = _as_float(record.get_value())
                if value is None:
                    continue
                readings.append(
                    SensorReading(
                        time=to_utc(record.get_time()),
                        machine_name=str(record.values.get(MACHINE_TAG) or ""),
                        sensor_name=str(record.values.get(SENSOR_TAG) or ""),
                        status=str(record.values.get(STATUS_TAG) or ""),
                        value=value,
                    )
                )
        readings.sort(key=lambda r: r.time, reverse=True)
        return readings

    def mean_by_sensor(self, measurement, machine_name, start, stop):
        if not measurement:
            raise ValueError("measurement is required")
        if not machine_name.strip():
            raise ValueError("machine name is required")

        flux = build_mean_query(self.config.bucket, measurement, machine_name, start, stop)
        tables = self._query_api.query(flux, org=self.config.org)

        averages = {}
        for table in tables:
            for record in table.records:
                name = str(record.values.get(SENSOR_TAG) or "")
                value = _as_float(record.get_value())
                if name and value is not None:
                    averages[name] = value
        return averages

    def close(self) -> None:
        self._client.close()
