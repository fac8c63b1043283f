"""Simulated plant sensors and their operational state machine.

Each sensor cycles STARTUP -> RUNNING -> SHUTTING_DOWN -> DOWN -> STARTUP,
dwelling in every state for a random number of ticks. Values ramp up towards
the sensor baseline while starting, random-walk around it while running and
decay towards the down target while shutting down and down.
"""

import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

# Value evolution coefficients
REBIND_COEFFICIENT = 0.1
DOWN_COEFFICIENT = 0.25
DOWN_NOISE_SCALE = 0.1
DEFAULT_DOWN_RATIO = 0.0
MIN_DOWN_FRACTION = 0.02
STARTUP_INITIAL_RATIO = 0.2
STARTUP_RAMP_COEFFICIENT = 0.4
STARTUP_NOISE_SCALE = 0.05
SHUTDOWN_COEFFICIENT = 0.35
SHUTDOWN_NOISE_SCALE = 0.05
RUNNING_BOOST_THRESHOLD = 0.8
RUNNING_BOOST_COEFFICIENT = 0.3


class SensorState(Enum):
    """Operational states, in cycle order."""

    STARTUP = "starting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    DOWN = "down"

    @property
    def next(self) -> "SensorState":
        return _NEXT_STATE[self]


_NEXT_STATE = {
    SensorState.STARTUP: SensorState.RUNNING,
    SensorState.RUNNING: SensorState.SHUTTING_DOWN,
    SensorState.SHUTTING_DOWN: SensorState.DOWN,
    SensorState.DOWN: SensorState.STARTUP,
}


@dataclass(frozen=True)
class DwellRange:
    """Inclusive range of ticks spent in a state."""

    min: int
    max: int

    def draw(self, rng: random.Random) -> int:
        low = max(self.min, 1)
        high = max(self.max, low)
        return rng.randint(low, high)


DEFAULT_STARTUP_RANGE = DwellRange(3, 6)
DEFAULT_RUN_RANGE = DwellRange(6, 24)
DEFAULT_SHUTDOWN_RANGE = DwellRange(3, 6)
DEFAULT_DOWN_RANGE = DwellRange(6, 14)


def _noise(rng: random.Random, scale: float) -> float:
    return (rng.random() - 0.5) * scale


@dataclass
class Sensor:
    """A simulated sensor attached to a machine."""

    machine_name: str
    sensor_name: str
    baseline: float
    drift: float
    current_value: float = 0.0
    state: SensorState = SensorState.STARTUP
    ticks_remaining: int = 0
    startup_range: DwellRange = DEFAULT_STARTUP_RANGE
    run_range: DwellRange = DEFAULT_RUN_RANGE
    shutdown_range: DwellRange = DEFAULT_SHUTDOWN_RANGE
    down_range: DwellRange = DEFAULT_DOWN_RANGE
    down_target: float = 0.0

    @classmethod
    def create(
        cls,
        machine_name: str,
        sensor_name: str,
        baseline: float,
        drift: float,
        initial_spread: float = 0.0,
        rng: Optional[random.Random] = None,
    ) -> "Sensor":
        """Build a sensor with a randomized starting value near its startup level."""
        rng = rng or random.Random()
        initial = baseline * STARTUP_INITIAL_RATIO + _noise(rng, initial_spread)
        initial = max(initial, 0.0)
        if baseline > 0:
            initial = min(initial, baseline)
        return cls(
            machine_name=machine_name,
            sensor_name=sensor_name,
            baseline=baseline,
            drift=drift,
            current_value=initial,
            down_target=max(baseline * DEFAULT_DOWN_RATIO, 0.0),
        )

    @property
    def status(self) -> str:
        return self.state.value

    @property
    def key(self) -> Tuple[str, str]:
        return (self.machine_name, self.sensor_name)

    def dwell_range(self, state: SensorState) -> DwellRange:
        return {
            SensorState.STARTUP: self.startup_range,
            SensorState.RUNNING: self.run_range,
            SensorState.SHUTTING_DOWN: self.shutdown_range,
            SensorState.DOWN: self.down_range,
        }[state]

    def enter_state(self, state: SensorState, rng: random.Random) -> None:
        """Switch state, draw a fresh dwell count and nudge the value."""
        self.state = state
        self.ticks_remaining = self.dwell_range(state).draw(rng)

        if state == SensorState.STARTUP:
            if self.baseline > 0:
                value = self.baseline * STARTUP_INITIAL_RATIO
                value += _noise(rng, self.drift * STARTUP_NOISE_SCALE)
                self.current_value = min(max(value, 0.0), self.baseline)
        elif state == SensorState.RUNNING:
            if self.baseline > 0 and self.current_value < self.baseline * RUNNING_BOOST_THRESHOLD:
                self.current_value += (self.baseline - self.current_value) * RUNNING_BOOST_COEFFICIENT
        elif state == SensorState.DOWN:
            self.current_value = min(self.current_value, self.down_target)

    def advance(self, rng: random.Random) -> float:
        """Run one tick of the state machine and return the new value."""
        if self.ticks_remaining <= 0:
            self.enter_state(self.state.next, rng)

        self.ticks_remaining -= 1

        if self.state == SensorState.STARTUP:
            if self.baseline > 0:
                self.current_value += (self.baseline - self.current_value) * STARTUP_RAMP_COEFFICIENT
            self.current_value += _noise(rng, self.drift * STARTUP_NOISE_SCALE)
        elif self.state == SensorState.RUNNING:
            self.current_value += _noise(rng, self.drift)
            self.current_value += (self.baseline - self.current_value) * REBIND_COEFFICIENT
        elif self.state == SensorState.SHUTTING_DOWN:
            self.current_value += (self.down_target - self.current_value) * SHUTDOWN_COEFFICIENT
            self.current_value += _noise(rng, self.drift * SHUTDOWN_NOISE_SCALE)
        elif self.state == SensorState.DOWN:
            self.current_value += (self.down_target - self.current_value) * DOWN_COEFFICIENT
            self.current_value += _noise(rng, self.drift * DOWN_NOISE_SCALE)
            self.current_value = max(self.current_value, self.down_target)
            if (
                self.down_target == 0
                and self.baseline > 0
                and self.current_value < self.baseline * MIN_DOWN_FRACTION
            ):
                self.current_value = 0.0

        # Floor clamp
        self.current_value = max(self.current_value, 0.0)
        return self.current_value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "machineName": self.machine_name,
            "sensorName": self.sensor_name,
            "currentValue": round(self.current_value, 4),
            "status": self.status,
        }


# (machine, sensor, baseline, drift, initial_spread)
DEFAULT_SENSOR_SPECS: List[Tuple[str, str, float, float, float]] = [
    # Furnaces
    ("Furnace-01", "Temperature", 1200.0, 10.0, 20.0),
    ("Furnace-01", "Pressure", 100.0, 2.0, 5.0),
    ("Furnace-02", "Temperature", 1200.0, 10.0, 20.0),
    ("Furnace-02", "Pressure", 100.0, 2.0, 5.0),
    # Rod feeder
    ("Rod-Feeder-01", "Temperature", 200.0, 3.0, 8.0),
    ("Rod-Feeder-01", "Speed", 50.0, 1.0, 3.0),
    # Ultrasonic testing
    ("UT-01", "Temperature", 25.0, 1.0, 2.0),
    ("UT-01", "Accuracy", 98.0, 0.5, 1.0),
    # Casting
    ("Casting-Machine-01", "Temperature", 800.0, 5.0, 10.0),
    ("Casting-Machine-01", "Pressure", 150.0, 2.0, 5.0),
    ("Casting-Machine-01", "Speed", 30.0, 1.0, 3.0),
    # Cooling towers
    ("CT-01", "Temperature", 80.0, 2.0, 5.0),
    ("CT-01", "FlowRate", 200.0, 5.0, 10.0),
    ("CT-02", "Temperature", 80.0, 2.0, 5.0),
    ("CT-02", "FlowRate", 200.0, 5.0, 10.0),
    ("CT-03", "Temperature", 80.0, 2.0, 5.0),
    ("CT-03", "FlowRate", 200.0, 5.0, 10.0),
    ("CT-04", "Temperature", 80.0, 2.0, 5.0),
    ("CT-04", "FlowRate", 200.0, 5.0, 10.0),
    # Homogenizing
    ("Homogenizing-01", "Temperature", 500.0, 5.0, 10.0),
    ("Homogenizing-01", "Pressure", 120.0, 2.0, 5.0),
    # Charging machine
    ("Charging-Machine-01", "Temperature", 300.0, 3.0, 8.0),
    ("Charging-Machine-01", "LoadCapacity", 500.0, 10.0, 20.0),
    # Swarf handling
    ("Swarf-01", "Temperature", 150.0, 2.0, 5.0),
    ("Swarf-01", "Volume", 100.0, 5.0, 10.0),
    # Sawing
    ("Sawing-01", "Temperature", 100.0, 2.0, 5.0),
    ("Sawing-01", "BladeSpeed", 200.0, 5.0, 10.0),
    ("Sawing-01", "Pressure", 80.0, 2.0, 5.0),
    # Weighing
    ("Weightning-01", "Weight", 1000.0, 10.0, 20.0),
    ("Weightning-01", "Accuracy", 99.5, 0.1, 0.5),
]


def create_default_sensors(rng: Optional[random.Random] = None) -> List[Sensor]:
    """Create the baseline sensor set of the plant."""
    rng = rng or random.Random()
    return [
        Sensor.create(machine, sensor, baseline, drift, spread, rng=rng)
        for machine, sensor, baseline, drift, spread in DEFAULT_SENSOR_SPECS
    ]
