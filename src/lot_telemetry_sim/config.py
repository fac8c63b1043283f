"""Configuration management for the simulator.

Settings come from defaults, an optional YAML file and environment variables,
in that order. Invalid values never abort start-up: they are logged and the
documented default is kept.
"""

import logging
import math
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml

from .sensors import DEFAULT_SENSOR_SPECS, DwellRange, Sensor

logger = logging.getLogger(__name__)

STRATEGIES = ("cycle", "threshold", "both")

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|us|µs|ns|h|m|s)")
_UNIT_SECONDS = {
    "h": 3600.0,
    "m": 60.0,
    "s": 1.0,
    "ms": 1e-3,
    "us": 1e-6,
    "µs": 1e-6,
    "ns": 1e-9,
}


def parse_duration(raw: Any) -> float:
    """Parse a duration into seconds.

    Accepts numbers (seconds) and Go-style strings such as ``250ms``,
    ``1s`` or ``1m30s``. Raises ValueError on anything else.
    """
    if isinstance(raw, bool):
        raise ValueError(f"invalid duration {raw!r}")
    if isinstance(raw, (int, float)):
        return _finite(float(raw), raw)
    text = str(raw).strip()
    if not text:
        raise ValueError("empty duration")
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        return _finite(seconds, raw)

    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ValueError(f"invalid duration {raw!r}")
    return _finite(total, raw)


def _finite(seconds: float, raw: Any) -> float:
    if not math.isfinite(seconds):
        raise ValueError(f"duration {raw!r} is not finite")
    return seconds


def format_duration(seconds: float) -> str:
    """Render seconds as a duration string that parse_duration reads back."""
    if seconds >= 1 and float(seconds).is_integer():
        return f"{int(seconds)}s"
    return f"{int(round(seconds * 1000))}ms"


def _positive(value: float) -> bool:
    return math.isfinite(value) and value > 0


def _non_negative(value: float) -> bool:
    return math.isfinite(value) and value >= 0


def _coerce(
    name: str,
    raw: Any,
    default: Any,
    parser: Callable[[Any], Any],
    valid: Callable[[Any], bool] = lambda _: True,
) -> Any:
    """Parse a setting, falling back to the default with a warning."""
    if raw is None or (isinstance(raw, str) and raw.strip() == ""):
        return default
    try:
        value = parser(raw)
    except (TypeError, ValueError) as e:
        logger.warning(f"invalid {name} value {raw!r}: {e}, using default {default}")
        return default
    if not valid(value):
        logger.warning(f"out of range {name} value {raw!r}, using default {default}")
        return default
    return value


def _parse_int(raw: Any) -> int:
    if isinstance(raw, bool):
        raise ValueError("boolean is not a count")
    if isinstance(raw, float) and not raw.is_integer():
        raise ValueError("count must be a whole number")
    return int(raw)


def _parse_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"invalid boolean {raw!r}")


def _parse_strategy(raw: Any) -> str:
    value = str(raw).strip().lower()
    if value not in STRATEGIES:
        raise ValueError(f"strategy must be one of {', '.join(STRATEGIES)}")
    return value


def _parse_name(raw: Any) -> str:
    value = str(raw).strip()
    if not value:
        raise ValueError("name is empty")
    return value


@dataclass
class SimulationConfig:
    """Sensor simulator parameters."""

    tick_interval: float = 1.0  # seconds
    iterations_per_machine: int = 2
    measurement: str = "sensor_data"
    random_seed: Optional[int] = None


@dataclass
class CoordinatorConfig:
    """Simulation lifecycle coordinator parameters."""

    poll_interval: float = 5.0


@dataclass
class CompletionConfig:
    """Threshold completion detector parameters."""

    poll_interval: float = 1.0
    lookback: float = 30.0
    samples_required: int = 3
    zero_threshold: float = 5.0
    measurement: str = "sensor_data"
    strategy: str = "both"  # cycle, threshold or both


@dataclass
class InfluxConfig:
    """InfluxDB connection details."""

    url: str = "http://localhost:8086"
    token: str = ""
    org: str = "minerva"
    bucket: str = "sensors"
    timeout: float = 5.0


@dataclass
class DatabaseConfig:
    """Metadata database connection."""

    url: str = "sqlite:///lots.db"
    echo: bool = False


@dataclass
class MQTTConfig:
    """MQTT broker configuration for lot and simulator events."""

    enabled: bool = False
    broker: str = "localhost"
    port: int = 1883
    username: str = ""
    password: str = ""
    client_id: str = "lot-telemetry-sim"
    qos: int = 1
    topic_prefix: str = "lot-telemetry"


@dataclass
class SensorConfig:
    """Sensor definition."""

    machine: str
    sensor: str
    baseline: float
    drift: float
    initial_spread: float = 0.0
    startup_range: Optional[DwellRange] = None
    run_range: Optional[DwellRange] = None
    shutdown_range: Optional[DwellRange] = None
    down_range: Optional[DwellRange] = None

    def build(self, rng=None) -> Sensor:
        sensor = Sensor.create(
            self.machine,
            self.sensor,
            self.baseline,
            self.drift,
            self.initial_spread,
            rng=rng,
        )
        if self.startup_range:
            sensor.startup_range = self.startup_range
        if self.run_range:
            sensor.run_range = self.run_range
        if self.shutdown_range:
            sensor.shutdown_range = self.shutdown_range
        if self.down_range:
            sensor.down_range = self.down_range
        return sensor


def default_sensor_configs() -> List[SensorConfig]:
    return [
        SensorConfig(machine, sensor, baseline, drift, spread)
        for machine, sensor, baseline, drift, spread in DEFAULT_SENSOR_SPECS
    ]


@dataclass
class Config:
    """Main configuration container."""

    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)
    completion: CompletionConfig = field(default_factory=CompletionConfig)
    influx: InfluxConfig = field(default_factory=InfluxConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    mqtt: MQTTConfig = field(default_factory=MQTTConfig)
    sensors: List[SensorConfig] = field(default_factory=default_sensor_configs)
    log_level: str = "INFO"

    @property
    def cycle_completion_enabled(self) -> bool:
        return self.completion.strategy in ("cycle", "both")

    @property
    def threshold_completion_enabled(self) -> bool:
        return self.completion.strategy in ("threshold", "both")

    def build_sensors(self, rng=None) -> List[Sensor]:
        return [s.build(rng=rng) for s in self.sensors]

    @classmethod
    def default(cls) -> "Config":
        return cls()

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """Load YAML (when present) and apply environment overrides."""
        config = cls.from_yaml(config_path) if config_path else cls.default()
        config.apply_env()
        return config

    @classmethod
    def from_yaml(cls, config_path: Path) -> "Config":
        """Load configuration from YAML file."""
        if not config_path.exists():
            logger.warning(f"config file {config_path} not found, using defaults")
            return cls.default()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls._from_dict(data)

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        config = cls.default()
        config.apply_env()
        return config

    def apply_env(self, environ: Optional[Dict[str, str]] = None) -> None:
        """Override settings from environment variables."""
        env = os.environ if environ is None else environ

        sim = self.simulation
        sim.tick_interval = _coerce(
            "SIMULATION_INTERVAL", env.get("SIMULATION_INTERVAL"),
            sim.tick_interval, parse_duration, _positive,
        )
        sim.iterations_per_machine = _coerce(
            "SIMULATION_MACHINE_ITERATIONS", env.get("SIMULATION_MACHINE_ITERATIONS"),
            sim.iterations_per_machine, _parse_int, _positive,
        )
        sim.measurement = _coerce(
            "SIMULATION_MEASUREMENT", env.get("SIMULATION_MEASUREMENT"),
            sim.measurement, _parse_name,
        )
        sim.random_seed = _coerce(
            "SIMULATION_SEED", env.get("SIMULATION_SEED"), sim.random_seed, _parse_int,
        )

        self.coordinator.poll_interval = _coerce(
            "COORDINATOR_POLL_INTERVAL", env.get("COORDINATOR_POLL_INTERVAL"),
            self.coordinator.poll_interval, parse_duration, _positive,
        )

        comp = self.completion
        comp.poll_interval = _coerce(
            "COMPLETION_INTERVAL", env.get("COMPLETION_INTERVAL"),
            comp.poll_interval, parse_duration, _positive,
        )
        comp.lookback = _coerce(
            "COMPLETION_LOOKBACK", env.get("COMPLETION_LOOKBACK"),
            comp.lookback, parse_duration, _positive,
        )
        comp.samples_required = _coerce(
            "COMPLETION_SAMPLES", env.get("COMPLETION_SAMPLES"),
            comp.samples_required, _parse_int, _positive,
        )
        comp.zero_threshold = _coerce(
            "COMPLETION_ZERO_THRESHOLD", env.get("COMPLETION_ZERO_THRESHOLD"),
            comp.zero_threshold, float, _non_negative,
        )
        comp.measurement = _coerce(
            "COMPLETION_MEASUREMENT", env.get("COMPLETION_MEASUREMENT"),
            comp.measurement, _parse_name,
        )
        comp.strategy = _coerce(
            "COMPLETION_STRATEGY", env.get("COMPLETION_STRATEGY"),
            comp.strategy, _parse_strategy,
        )

        # InfluxDB
        self.influx.url = env.get("INFLUX_URL", self.influx.url)
        self.influx.token = env.get("INFLUX_TOKEN", self.influx.token)
        self.influx.org = env.get("INFLUX_ORG", self.influx.org)
        self.influx.bucket = env.get("INFLUX_BUCKET", self.influx.bucket)
        self.influx.timeout = _coerce(
            "INFLUX_TIMEOUT", env.get("INFLUX_TIMEOUT"),
            self.influx.timeout, parse_duration, _positive,
        )

        self.database.url = env.get("DATABASE_URL", self.database.url)

        # MQTT
        self.mqtt.enabled = _coerce(
            "MQTT_ENABLED", env.get("MQTT_ENABLED"), self.mqtt.enabled, _parse_bool,
        )
        self.mqtt.broker = env.get("MQTT_BROKER", self.mqtt.broker)
        self.mqtt.port = _coerce(
            "MQTT_PORT", env.get("MQTT_PORT"), self.mqtt.port, _parse_int, _positive,
        )
        self.mqtt.username = env.get("MQTT_USERNAME", self.mqtt.username)
        self.mqtt.password = env.get("MQTT_PASSWORD", self.mqtt.password)

        self.log_level = env.get("LOG_LEVEL", self.log_level).upper()

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create config from dictionary."""
        config = cls.default()

        if "simulation" in data:
            sim_data = data["simulation"] or {}
            sim = config.simulation
            config.simulation = SimulationConfig(
                tick_interval=_coerce(
                    "simulation.tick_interval", sim_data.get("tick_interval"),
                    sim.tick_interval, parse_duration, _positive,
                ),
                iterations_per_machine=_coerce(
                    "simulation.iterations_per_machine",
                    sim_data.get("iterations_per_machine"),
                    sim.iterations_per_machine, _parse_int, _positive,
                ),
                measurement=_coerce(
                    "simulation.measurement", sim_data.get("measurement"),
                    sim.measurement, _parse_name,
                ),
                random_seed=_coerce(
                    "simulation.random_seed", sim_data.get("random_seed"),
                    None, _parse_int,
                ),
            )

        if "coordinator" in data:
            coord_data = data["coordinator"] or {}
            config.coordinator = CoordinatorConfig(
                poll_interval=_coerce(
                    "coordinator.poll_interval", coord_data.get("poll_interval"),
                    config.coordinator.poll_interval, parse_duration, _positive,
                ),
            )

        if "completion" in data:
            comp_data = data["completion"] or {}
            comp = config.completion
            config.completion = CompletionConfig(
                poll_interval=_coerce(
                    "completion.poll_interval", comp_data.get("poll_interval"),
                    comp.poll_interval, parse_duration, _positive,
                ),
                lookback=_coerce(
                    "completion.lookback", comp_data.get("lookback"),
                    comp.lookback, parse_duration, _positive,
                ),
                samples_required=_coerce(
                    "completion.samples_required", comp_data.get("samples_required"),
                    comp.samples_required, _parse_int, _positive,
                ),
                zero_threshold=_coerce(
                    "completion.zero_threshold", comp_data.get("zero_threshold"),
                    comp.zero_threshold, float, _non_negative,
                ),
                measurement=_coerce(
                    "completion.measurement", comp_data.get("measurement"),
                    comp.measurement, _parse_name,
                ),
                strategy=_coerce(
                    "completion.strategy", comp_data.get("strategy"),
                    comp.strategy, _parse_strategy,
                ),
            )

        if "influx" in data:
            influx_data = data["influx"] or {}
            influx = config.influx
            config.influx = InfluxConfig(
                url=influx_data.get("url", influx.url),
                token=influx_data.get("token", influx.token),
                org=influx_data.get("org", influx.org),
                bucket=influx_data.get("bucket", influx.bucket),
                timeout=_coerce(
                    "influx.timeout", influx_data.get("timeout"),
                    influx.timeout, parse_duration, _positive,
                ),
            )

        if "database" in data:
            db_data = data["database"] or {}
            config.database = DatabaseConfig(
                url=db_data.get("url", config.database.url),
                echo=_coerce("database.echo", db_data.get("echo"), False, _parse_bool),
            )

        if "mqtt" in data:
            mqtt_data = data["mqtt"] or {}
            mqtt = config.mqtt
            config.mqtt = MQTTConfig(
                enabled=_coerce("mqtt.enabled", mqtt_data.get("enabled"), mqtt.enabled, _parse_bool),
                broker=mqtt_data.get("broker", mqtt.broker),
                port=_coerce("mqtt.port", mqtt_data.get("port"), mqtt.port, _parse_int, _positive),
                username=mqtt_data.get("username", mqtt.username),
                password=mqtt_data.get("password", mqtt.password),
                client_id=mqtt_data.get("client_id", mqtt.client_id),
                qos=_coerce("mqtt.qos", mqtt_data.get("qos"), mqtt.qos, _parse_int, lambda q: q in (0, 1, 2)),
                topic_prefix=mqtt_data.get("topic_prefix", mqtt.topic_prefix),
            )

        if data.get("sensors"):
            sensors = [s for s in (_sensor_from_dict(item) for item in data["sensors"]) if s]
            if sensors:
                config.sensors = sensors
            else:
                logger.warning("no valid sensors configured, using default sensor set")

        if "log_level" in data:
            config.log_level = str(data["log_level"]).upper()

        return config

    def to_yaml(self, path: Path) -> None:
        """Save configuration to YAML file."""
        data = {
            "simulation": {
                "tick_interval": format_duration(self.simulation.tick_interval),
                "iterations_per_machine": self.simulation.iterations_per_machine,
                "measurement": self.simulation.measurement,
                "random_seed": self.simulation.random_seed,
            },
            "coordinator": {
                "poll_interval": format_duration(self.coordinator.poll_interval),
            },
            "completion": {
                "poll_interval": format_duration(self.completion.poll_interval),
                "lookback": format_duration(self.completion.lookback),
                "samples_required": self.completion.samples_required,
                "zero_threshold": self.completion.zero_threshold,
                "measurement": self.completion.measurement,
                "strategy": self.completion.strategy,
            },
            "influx": {
                "url": self.influx.url,
                "token": self.influx.token,
                "org": self.influx.org,
                "bucket": self.influx.bucket,
                "timeout": format_duration(self.influx.timeout),
            },
            "database": {
                "url": self.database.url,
                "echo": self.database.echo,
            },
            "mqtt": {
                "enabled": self.mqtt.enabled,
                "broker": self.mqtt.broker,
                "port": self.mqtt.port,
                "username": self.mqtt.username,
                "password": self.mqtt.password,
                "client_id": self.mqtt.client_id,
                "qos": self.mqtt.qos,
                "topic_prefix": self.mqtt.topic_prefix,
            },
            "sensors": [_sensor_to_dict(s) for s in self.sensors],
            "log_level": self.log_level,
        }

        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def _sensor_to_dict(sensor: SensorConfig) -> Dict[str, Any]:
    item = {
        "machine": sensor.machine,
        "sensor": sensor.sensor,
        "baseline": sensor.baseline,
        "drift": sensor.drift,
        "initial_spread": sensor.initial_spread,
    }
    for name in ("startup_range", "run_range", "shutdown_range", "down_range"):
        dwell = getattr(sensor, name)
        if dwell is not None:
            item[name] = [dwell.min, dwell.max]
    return item


def _range_from_value(name: str, raw: Any) -> Optional[DwellRange]:
    if raw is None:
        return None
    try:
        low, high = raw
        return DwellRange(int(low), int(high))
    except (TypeError, ValueError):
        logger.warning(f"invalid {name} value {raw!r}, using default range")
        return None


def _sensor_from_dict(item: Any) -> Optional[SensorConfig]:
    if not isinstance(item, dict):
        logger.warning(f"ignoring sensor entry {item!r}: expected a mapping")
        return None
    try:
        machine = _parse_name(item["machine"])
        sensor = _parse_name(item["sensor"])
        baseline = float(item["baseline"])
        drift = float(item.get("drift", 0.0))
        spread = float(item.get("initial_spread", 0.0))
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"ignoring sensor entry {item!r}: {e}")
        return None
    if baseline < 0:
        logger.warning(f"ignoring sensor {machine}/{sensor}: negative baseline")
        return None
    return SensorConfig(
        machine=machine,
        sensor=sensor,
        baseline=baseline,
        drift=drift,
        initial_spread=spread,
        startup_range=_range_from_value("startup_range", item.get("startup_range")),
        run_range=_range_from_value("run_range", item.get("run_range")),
        shutdown_range=_range_from_value("shutdown_range", item.get("shutdown_range")),
        down_range=_range_from_value("down_range", item.get("down_range")),
    )
