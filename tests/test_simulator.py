"""Tests for the Simulator rotation scheduler."""

import random
import threading
import time
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from lot_telemetry_sim.sensors import Sensor, SensorState
from lot_telemetry_sim.simulator import Simulator
from lot_telemetry_sim.timeseries import InMemoryTimeSeriesStore


def make_sensors(rng):
    return [
        Sensor.create("Press-A", "Temperature", 100.0, 2.0, rng=rng),
        Sensor.create("Press-A", "Pressure", 50.0, 1.0, rng=rng),
        Sensor.create("Press-B", "Temperature", 120.0, 2.0, rng=rng),
        Sensor.create("Press-C", "Speed", 30.0, 1.0, rng=rng),
    ]


class RecordingListener:
    def __init__(self):
        self.events = []

    def on_cycle_complete(self, completed_at, last_machine):
        self.events.append((completed_at, last_machine))


class TestSimulator:
    """Tests for Simulator class."""

    @pytest.fixture
    def rng(self):
        return random.Random(1234)

    @pytest.fixture
    def store(self):
        return InMemoryTimeSeriesStore()

    @pytest.fixture
    def listener(self):
        return RecordingListener()

    @pytest.fixture
    def simulator(self, store, rng, listener):
        return Simulator(
            store,
            make_sensors(rng),
            interval=0.01,
            iterations_per_machine=2,
            rng=rng,
            cycle_listeners=[listener],
        )

    def test_machine_order_is_first_seen(self, simulator):
        assert simulator.machine_order == ["Press-A", "Press-B", "Press-C"]
        assert simulator.current_machine == "Press-A"

    def test_disabled_tick_is_noop(self, simulator, store):
        assert simulator.enabled is False
        assert simulator.tick() == []
        assert len(store) == 0
        assert simulator.machine_index == 0

    def test_tick_emits_current_machine_only(self, simulator, store):
        simulator.enable()
        readings = simulator.tick()

        assert {r.machine_name for r in readings} == {"Press-A"}
        assert len(readings) == 2
        assert len(store) == 2

    def test_points_carry_status_tag(self, simulator, store):
        simulator.enable()
        simulator.tick()

        points = store.query_recent("sensor_data", {"machine_name": "Press-A"})
        assert len(points) == 2
        assert {p.status for p in points} <= {s.value for s in SensorState}
        assert {p.sensor_name for p in points} == {"Temperature", "Pressure"}

    def test_rotation_completes_cycle(self, simulator, listener):
        simulator.enable()
        ts = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

        for _ in range(5):
            simulator.tick(ts)
        assert listener.events == []
        assert simulator.current_machine == "Press-C"

        simulator.tick(ts)

        assert simulator.machine_index == 0
        assert listener.events == [(ts, "Press-C")]
        assert simulator.cycles_completed == 1
        assert simulator.last_cycle == (ts, "Press-C")

    def test_rotation_is_deterministic_with_seed(self):
        def run():
            rng = random.Random(99)
            store = InMemoryTimeSeriesStore()
            sim = Simulator(store, make_sensors(rng), rng=rng)
            sim.enable()
            return [round(r.value, 6) for _ in range(12) for r in sim.tick()]

        assert run() == run()

    def test_disable_resets_rotation(self, simulator):
        simulator.enable()
        for _ in range(3):
            simulator.tick()
        assert simulator.machine_index == 1

        simulator.disable()
        assert simulator.machine_index == 0

    def test_enable_reinitializes_sensors(self, simulator):
        simulator.enable()
        for _ in range(30):
            simulator.tick()
        simulator.disable()
        simulator.enable()

        assert simulator.machine_index == 0
        assert all(s.state == SensorState.STARTUP for s in simulator.snapshot())

    def test_enable_is_idempotent(self, simulator):
        callback = MagicMock()
        simulator.on_enabled_change = callback

        simulator.enable()
        simulator.enable()
        simulator.disable()
        simulator.disable()

        assert [c.args for c in callback.call_args_list] == [(True,), (False,)]

    def test_snapshot_returns_copies(self, simulator):
        snapshot = simulator.snapshot()
        snapshot[0].current_value = -100.0

        assert simulator.snapshot()[0].current_value >= 0

    def test_failing_listener_does_not_block_others(self, simulator, listener):
        broken = MagicMock()
        broken.on_cycle_complete.side_effect = RuntimeError("boom")
        late = RecordingListener()
        simulator.register_cycle_listener(broken)
        simulator.register_cycle_listener(late)

        simulator.enable()
        for _ in range(6):
            simulator.tick()

        broken.on_cycle_complete.assert_called_once()
        assert len(listener.events) == 1
        assert len(late.events) == 1

    def test_write_failures_are_skipped(self, rng):
        writer = MagicMock()
        writer.write.side_effect = ConnectionError("influx down")
        sim = Simulator(writer, make_sensors(rng), rng=rng)
        sim.enable()

        readings = sim.tick()

        assert len(readings) == 2
        assert writer.write.call_count == 2

    def test_values_stay_non_negative(self, simulator):
        simulator.enable()
        for _ in range(300):
            for reading in simulator.tick():
                assert reading.value >= 0

    def test_invalid_settings_fall_back(self, rng):
        sim = Simulator(None, make_sensors(rng), interval=0, iterations_per_machine=0, measurement="")
        assert sim.interval == 1.0
        assert sim.iterations_per_machine == 2
        assert sim.measurement == "sensor_data"

    @pytest.mark.parametrize("interval", [float("inf"), float("nan"), -1.0])
    def test_non_finite_interval_falls_back(self, rng, interval):
        sim = Simulator(None, make_sensors(rng), interval=interval)
        assert sim.interval == 1.0

    def test_start_runs_until_stopped(self, simulator, store):
        simulator.enable()
        stop = threading.Event()
        thread = simulator.start(stop)

        for _ in range(100):
            if len(store) > 0:
                break
            time.sleep(0.01)
        stop.set()
        thread.join(timeout=1)

        assert not thread.is_alive()
        assert len(store) > 0
