"""Tests for the sensor state machine."""

import random

import pytest

from lot_telemetry_sim.sensors import (
    DEFAULT_SENSOR_SPECS,
    DwellRange,
    Sensor,
    SensorState,
    create_default_sensors,
)


def one_tick_sensor(**kwargs):
    params = dict(
        machine_name="Furnace-01",
        sensor_name="Temperature",
        baseline=100.0,
        drift=2.0,
        startup_range=DwellRange(1, 1),
        run_range=DwellRange(1, 1),
        shutdown_range=DwellRange(1, 1),
        down_range=DwellRange(1, 1),
    )
    params.update(kwargs)
    return Sensor(**params)


class TestSensorState:
    """Tests for state ordering."""

    def test_cycle_order(self):
        assert SensorState.STARTUP.next == SensorState.RUNNING
        assert SensorState.RUNNING.next == SensorState.SHUTTING_DOWN
        assert SensorState.SHUTTING_DOWN.next == SensorState.DOWN
        assert SensorState.DOWN.next == SensorState.STARTUP

    def test_status_text(self):
        assert [s.value for s in SensorState] == ["starting", "running", "shutting_down", "down"]


class TestDwellRange:
    """Tests for dwell count draws."""

    def test_draw_within_range(self):
        rng = random.Random(1)
        dwell = DwellRange(3, 6)
        draws = {dwell.draw(rng) for _ in range(200)}
        assert draws <= {3, 4, 5, 6}
        assert len(draws) > 1

    def test_min_clamped_to_one(self):
        rng = random.Random(1)
        assert DwellRange(0, 0).draw(rng) == 1
        assert DwellRange(-5, -2).draw(rng) == 1

    def test_max_clamped_to_min(self):
        rng = random.Random(1)
        assert DwellRange(4, 2).draw(rng) == 4


class TestSensor:
    """Tests for Sensor value evolution."""

    @pytest.fixture
    def rng(self):
        return random.Random(42)

    def test_create_starts_near_startup_level(self, rng):
        sensor = Sensor.create("CT-01", "FlowRate", 200.0, 5.0, initial_spread=10.0, rng=rng)

        assert sensor.state == SensorState.STARTUP
        assert 0 <= sensor.current_value <= 200.0
        assert sensor.current_value == pytest.approx(40.0, abs=5.0)
        assert sensor.down_target == 0.0

    def test_enter_state_draws_dwell(self, rng):
        sensor = Sensor.create("CT-01", "FlowRate", 200.0, 5.0, rng=rng)
        sensor.enter_state(SensorState.RUNNING, rng)

        assert sensor.state == SensorState.RUNNING
        assert 6 <= sensor.ticks_remaining <= 24

    def test_ticks_remaining_decreases_within_state(self, rng):
        sensor = Sensor.create("CT-01", "FlowRate", 200.0, 5.0, rng=rng)
        sensor.enter_state(SensorState.RUNNING, rng)
        remaining = sensor.ticks_remaining

        sensor.advance(rng)

        assert sensor.state == SensorState.RUNNING
        assert sensor.ticks_remaining == remaining - 1

    def test_transitions_when_dwell_exhausted(self, rng):
        sensor = one_tick_sensor()
        sensor.enter_state(SensorState.STARTUP, rng)

        sensor.advance(rng)
        assert sensor.state == SensorState.STARTUP
        sensor.advance(rng)
        assert sensor.state == SensorState.RUNNING
        sensor.advance(rng)
        assert sensor.state == SensorState.SHUTTING_DOWN
        sensor.advance(rng)
        assert sensor.state == SensorState.DOWN
        sensor.advance(rng)
        assert sensor.state == SensorState.STARTUP

    def test_entering_down_caps_value_at_target(self, rng):
        sensor = one_tick_sensor(current_value=80.0)
        sensor.enter_state(SensorState.DOWN, rng)
        assert sensor.current_value == 0.0

    def test_down_snaps_small_values_to_zero(self, rng):
        sensor = one_tick_sensor(current_value=1.0, state=SensorState.DOWN, ticks_remaining=5)
        sensor.advance(rng)
        assert sensor.current_value == 0.0

    def test_entering_running_boosts_low_value(self, rng):
        sensor = one_tick_sensor(current_value=20.0)
        sensor.enter_state(SensorState.RUNNING, rng)
        assert sensor.current_value == pytest.approx(44.0)

    def test_running_stays_near_baseline(self, rng):
        sensor = one_tick_sensor(
            current_value=100.0,
            state=SensorState.RUNNING,
            ticks_remaining=1000,
            drift=1.0,
        )
        for _ in range(200):
            sensor.advance(rng)
        assert sensor.current_value == pytest.approx(100.0, abs=5.0)

    def test_value_never_negative(self):
        rng = random.Random(7)
        sensor = Sensor.create("UT-01", "Temperature", 0.5, 50.0, rng=rng)
        for _ in range(500):
            value = sensor.advance(rng)
            assert value >= 0
            assert sensor.state in SensorState

    def test_to_dict(self, rng):
        sensor = one_tick_sensor(current_value=12.345678)
        data = sensor.to_dict()

        assert data["machineName"] == "Furnace-01"
        assert data["sensorName"] == "Temperature"
        assert data["status"] == "starting"
        assert data["currentValue"] == pytest.approx(12.3457)


class TestDefaultSensors:
    """Tests for the default plant catalogue."""

    def test_catalogue_size(self):
        sensors = create_default_sensors(random.Random(0))

        assert len(sensors) == len(DEFAULT_SENSOR_SPECS) == 30
        assert len({s.machine_name for s in sensors}) == 14

    def test_sensor_keys_unique(self):
        sensors = create_default_sensors(random.Random(0))
        keys = [s.key for s in sensors]
        assert len(keys) == len(set(keys))
