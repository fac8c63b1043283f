"""Sensor simulator with a machine rotation scheduler.

Sensors are grouped by machine in first-seen order. Each tick advances only
the sensors of the current machine; after ``iterations_per_machine`` ticks the
scheduler moves on to the next machine. Wrapping back to the first machine
completes a cycle, which is reported to the registered cycle listeners.
"""

import dataclasses
import logging
import math
import random
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from .sensors import Sensor, SensorState
from .timeseries import MACHINE_TAG, SENSOR_TAG, STATUS_TAG, VALUE_FIELD, TimeSeriesStore

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 1.0
DEFAULT_ITERATIONS_PER_MACHINE = 2
DEFAULT_MEASUREMENT = "sensor_data"


class CycleListener(Protocol):
    """Observer notified when the simulator has visited every machine once."""

    def on_cycle_complete(self, completed_at: datetime, last_machine: str) -> None:
        ...


@dataclasses.dataclass
class Reading:
    """A point produced by one tick, written after the lock is released."""

    machine_name: str
    sensor_name: str
    status: str
    value: float


class Simulator:
    """Generates time-series data for the configured sensors."""

    def __init__(
        self,
        writer: Optional[TimeSeriesStore],
        sensors: Sequence[Sensor],
        interval: float = DEFAULT_INTERVAL,
        iterations_per_machine: int = DEFAULT_ITERATIONS_PER_MACHINE,
        measurement: str = DEFAULT_MEASUREMENT,
        rng: Optional[random.Random] = None,
        cycle_listeners: Optional[Sequence[CycleListener]] = None,
        on_enabled_change: Optional[Callable[[bool], None]] = None,
    ):
        self._writer = writer
        self._sensors: List[Sensor] = list(sensors)
        self._interval = interval if math.isfinite(interval) and interval > 0 else DEFAULT_INTERVAL
        self._iterations_per_machine = (
            iterations_per_machine if iterations_per_machine > 0 else DEFAULT_ITERATIONS_PER_MACHINE
        )
        self._measurement = measurement or DEFAULT_MEASUREMENT
        self._rng = rng or random.Random()
        self._cycle_listeners: List[CycleListener] = [l for l in (cycle_listeners or []) if l]
        self.on_enabled_change = on_enabled_change

        self._lock = threading.Lock()
        self._enabled = False
        self._machine_sensors: Dict[str, List[Sensor]] = {}
        self._machine_order: List[str] = []
        self._machine_index = 0
        self._machine_iteration = 0
        self._cycles_completed = 0
        self._last_cycle: Optional[Tuple[datetime, str]] = None
        self._thread: Optional[threading.Thread] = None

        self._initialize_sensors()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def iterations_per_machine(self) -> int:
        return self._iterations_per_machine

    @property
    def measurement(self) -> str:
        return self._measurement

    @property
    def enabled(self) -> bool:
        with self._lock:
            return self._enabled

    @property
    def machine_order(self) -> List[str]:
        with self._lock:
            return list(self._machine_order)

    @property
    def machine_index(self) -> int:
        with self._lock:
            return self._machine_index

    @property
    def current_machine(self) -> Optional[str]:
        with self._lock:
            if not self._machine_order:
                return None
            return self._machine_order[self._machine_index]

    @property
    def cycles_completed(self) -> int:
        with self._lock:
            return self._cycles_completed

    @property
    def last_cycle(self) -> Optional[Tuple[datetime, str]]:
        """Timestamp and vacated machine of the most recent cycle."""
        with self._lock:
            return self._last_cycle

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, stop_event: threading.Event) -> threading.Thread:
        """Run the tick loop in a daemon thread until stop_event is set."""
        self._thread = threading.Thread(
            target=self._tick_loop, args=(stop_event,), name="sensor-simulator", daemon=True
        )
        self._thread.start()
        logger.info(
            f"sensor simulator running; interval={self._interval}s sensors={len(self._sensors)}"
        )
        return self._thread

    def _tick_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self._interval):
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Error in tick loop: {e}")
        logger.info("sensor simulator stopped")

    def enable(self) -> None:
        """Activate the simulator, restarting every sensor and the rotation."""
        with self._lock:
            if self._enabled:
                return
            self._initialize_sensors()
            self._enabled = True
            machines = len(self._machine_order)
        logger.info(
            f"sensor simulator enabled; machines={machines} "
            f"iterationsPerMachine={self._iterations_per_machine}"
        )
        self._notify_enabled_change(True)

    def disable(self) -> None:
        """Pause all sensor generation."""
        with self._lock:
            if not self._enabled:
                return
            self._enabled = False
            self._machine_index = 0
            self._machine_iteration = 0
        logger.info("sensor simulator disabled")
        self._notify_enabled_change(False)

    def register_cycle_listener(self, listener: CycleListener) -> None:
        if listener is None:
            return
        with self._lock:
            self._cycle_listeners.append(listener)

    def snapshot(self) -> List[Sensor]:
        """Copies of all sensors; callers never see live objects."""
        with self._lock:
            return [dataclasses.replace(s) for s in self._sensors]

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    def tick(self, ts: Optional[datetime] = None) -> List[Reading]:
        """Advance the current machine's sensors by one step.

        Returns the readings emitted during this tick.
        """
        ts = ts or datetime.now(timezone.utc)

        with self._lock:
            if not self._enabled or not self._machine_order:
                return []

            current_machine = self._machine_order[self._machine_index]
            readings = []
            for sensor in self._machine_sensors[current_machine]:
                value = sensor.advance(self._rng)
                readings.append(
                    Reading(sensor.machine_name, sensor.sensor_name, sensor.status, value)
                )

            cycle_complete = False
            self._machine_iteration += 1
            if self._machine_iteration >= self._iterations_per_machine:
                self._machine_iteration = 0
                self._machine_index = (self._machine_index + 1) % len(self._machine_order)
                if self._machine_index == 0:
                    cycle_complete = True
                    self._cycles_completed += 1
                    self._last_cycle = (ts, current_machine)

        self._write_readings(readings, ts)

        if cycle_complete:
            self._notify_cycle_complete(ts, current_machine)
        return readings

    def _write_readings(self, readings: List[Reading], ts: datetime) -> None:
        if self._writer is None:
            return
        for reading in readings:
            try:
                self._writer.write(
                    self._measurement,
                    {
                        MACHINE_TAG: reading.machine_name,
                        SENSOR_TAG: reading.sensor_name,
                        STATUS_TAG: reading.status,
                    },
                    {VALUE_FIELD: reading.value},
                    ts,
                )
            except Exception as e:
                logger.warning(f"write sensor data failed: {e}")
                continue
            logger.debug(
                f"sensor simulated: machine={reading.machine_name} sensor={reading.sensor_name} "
                f"status={reading.status} value={reading.value:.2f}"
            )

    def _notify_cycle_complete(self, ts: datetime, last_machine: str) -> None:
        with self._lock:
            listeners = list(self._cycle_listeners)
        logger.info(f"machine cycle complete; lastMachine={last_machine}")
        for listener in listeners:
            try:
                listener.on_cycle_complete(ts, last_machine)
            except Exception:
                logger.exception(f"cycle listener {listener!r} failed")

    def _notify_enabled_change(self, enabled: bool) -> None:
        if not self.on_enabled_change:
            return
        try:
            self.on_enabled_change(enabled)
        except Exception:
            logger.exception("enabled-change callback failed")

    def _initialize_sensors(self) -> None:
        """Regroup sensors by machine and restart them all in STARTUP."""
        self._machine_sensors = {}
        self._machine_order = []
        self._machine_index = 0
        self._machine_iteration = 0

        for sensor in self._sensors:
            sensor.enter_state(SensorState.STARTUP, self._rng)
            if sensor.machine_name not in self._machine_sensors:
                self._machine_order.append(sensor.machine_name)
                self._machine_sensors[sensor.machine_name] = []
            self._machine_sensors[sensor.machine_name].append(sensor)
