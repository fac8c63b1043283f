"""Tests for the simulation coordinator."""

import logging
import random
import threading
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from lot_telemetry_sim.config import DatabaseConfig
from lot_telemetry_sim.coordinator import Coordinator
from lot_telemetry_sim.metadata_store import MetadataStore
from lot_telemetry_sim.models import LotNotProcessingError, LotStatus
from lot_telemetry_sim.sensors import Sensor
from lot_telemetry_sim.simulator import Simulator
from lot_telemetry_sim.timeseries import InMemoryTimeSeriesStore


class TestCoordinatorGating:
    """Tests for enabling and disabling the simulator."""

    @pytest.fixture
    def simulator(self):
        return MagicMock()

    @pytest.fixture
    def store(self):
        return MagicMock()

    @pytest.fixture
    def coordinator(self, simulator, store):
        return Coordinator(simulator, store, poll_interval=0.01)

    def test_enables_when_lots_active(self, coordinator, simulator, store):
        store.has_active_lots.return_value = True
        coordinator.sync_simulation()

        simulator.enable.assert_called_once()
        simulator.disable.assert_not_called()

    def test_disables_when_no_lots(self, coordinator, simulator, store):
        store.has_active_lots.return_value = False
        coordinator.sync_simulation()

        simulator.disable.assert_called_once()
        simulator.enable.assert_not_called()

    def test_store_error_leaves_simulator_alone(self, coordinator, simulator, store):
        store.has_active_lots.side_effect = ConnectionError("db down")
        coordinator.sync_simulation()

        simulator.enable.assert_not_called()
        simulator.disable.assert_not_called()

    def test_start_runs_initial_sync(self, coordinator, simulator, store):
        store.has_active_lots.return_value = True
        stop = threading.Event()
        stop.set()

        thread = coordinator.start(stop)
        thread.join(timeout=1)

        simulator.enable.assert_called()

    def test_inactive_without_store(self, simulator):
        coordinator = Coordinator(simulator, None)
        assert coordinator.start(threading.Event()) is None

    def test_invalid_interval_falls_back(self, simulator, store):
        assert Coordinator(simulator, store, poll_interval=0).poll_interval == 5.0

    def test_infinite_interval_falls_back(self, simulator, store):
        assert Coordinator(simulator, store, poll_interval=float("inf")).poll_interval == 5.0


class TestCycleCompletion:
    """Tests for completing lots on machine cycles."""

    @pytest.fixture
    def store(self):
        store = MetadataStore.from_config(DatabaseConfig(url="sqlite://"))
        store.ensure_schema()
        yield store
        store.close()

    @pytest.fixture
    def simulator(self):
        rng = random.Random(5)
        sensors = [
            Sensor.create("Press-A", "Temperature", 100.0, 2.0, rng=rng),
            Sensor.create("Press-B", "Temperature", 100.0, 2.0, rng=rng),
            Sensor.create("Press-C", "Temperature", 100.0, 2.0, rng=rng),
        ]
        return Simulator(InMemoryTimeSeriesStore(), sensors, iterations_per_machine=2, rng=rng)

    @pytest.fixture
    def coordinator(self, simulator, store):
        coordinator = Coordinator(simulator, store)
        simulator.register_cycle_listener(coordinator)
        return coordinator

    def test_cycle_completes_all_processing_lots(self, coordinator, simulator, store):
        store.create_lot("LOT-1", "Press-A")
        store.create_lot("LOT-2", "Press-B")
        coordinator.sync_simulation()
        assert simulator.enabled

        ts = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        for _ in range(6):
            simulator.tick(ts)

        lots = store.list_lots()
        assert all(lot.status == LotStatus.COMPLETED for lot in lots)
        assert all(lot.completed_at == ts for lot in lots)
        summary = store.get_lot_by_number("LOT-2").summary()
        assert summary.machine_name == "Press-B"
        assert summary.sensors == []
        assert simulator.enabled is False

    def test_simulator_stays_enabled_for_new_lots(self, coordinator, simulator, store):
        store.create_lot("LOT-1", "Press-A")
        coordinator.sync_simulation()
        for _ in range(5):
            simulator.tick()

        real_list = store.list_active_lots

        # LOT-2 arrives while the cycle is being processed
        def list_then_add():
            lots = real_list()
            store.create_lot("LOT-2", "Press-B")
            return lots

        store.list_active_lots = list_then_add
        simulator.tick()

        assert store.get_lot_by_number("LOT-1").status == LotStatus.COMPLETED
        assert store.get_lot_by_number("LOT-2").status == LotStatus.PROCESSING
        assert simulator.enabled is True

    def test_already_completed_lot_is_skipped(self, caplog):
        store = MagicMock()
        first = MagicMock(id=1, lot_number="LOT-1", machine_name="Press-A")
        second = MagicMock(id=2, lot_number="LOT-2", machine_name="Press-B")
        store.list_active_lots.return_value = [first, second]
        store.mark_lot_completed.side_effect = [LotNotProcessingError("done"), None]
        store.has_active_lots.return_value = False
        simulator = MagicMock()
        callback = MagicMock()
        coordinator = Coordinator(simulator, store, on_lot_completed=callback)

        coordinator.on_cycle_complete(datetime.now(timezone.utc), "Press-C")

        assert store.mark_lot_completed.call_count == 2
        callback.assert_called_once()
        assert callback.call_args.args[0] is second
        simulator.disable.assert_called_once()
        assert not [r for r in caplog.records if r.levelno >= logging.WARNING]

    def test_per_lot_errors_do_not_stop_loop(self):
        store = MagicMock()
        lots = [MagicMock(id=i, lot_number=f"LOT-{i}", machine_name="Press-A") for i in (1, 2)]
        store.list_active_lots.return_value = lots
        store.mark_lot_completed.side_effect = [RuntimeError("db down"), None]
        store.has_active_lots.return_value = True
        coordinator = Coordinator(MagicMock(), store)

        coordinator.on_cycle_complete(datetime.now(timezone.utc), "Press-C")

        assert store.mark_lot_completed.call_count == 2

    def test_missing_timestamp_falls_back_to_now(self):
        store = MagicMock()
        store.list_active_lots.return_value = [MagicMock(id=1, lot_number="LOT-1", machine_name="M")]
        store.has_active_lots.return_value = False
        coordinator = Coordinator(MagicMock(), store)

        before = datetime.now(timezone.utc)
        coordinator.on_cycle_complete(None, "M")

        summary = store.mark_lot_completed.call_args.args[1]
        assert summary.completed_at >= before
        assert summary.completed_at.tzinfo is not None
