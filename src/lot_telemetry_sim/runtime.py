"""Service wiring: stores, simulator, coordinator and completion detector."""

import logging
import random
import signal
import threading
from typing import List, Optional

from .completion import CompletionDetector
from .config import Config
from .coordinator import Coordinator
from .metadata_store import MetadataStore
from .models import Lot, LotSummary
from .mqtt_client import MQTTClient
from .simulator import Simulator
from .timeseries import InfluxTimeSeriesStore, InMemoryTimeSeriesStore, TimeSeriesStore

logger = logging.getLogger(__name__)

JOIN_TIMEOUT = 5.0


def build_timeseries(config: Config, dry_run: bool = False) -> Optional[TimeSeriesStore]:
    """InfluxDB store, or an in-memory one for dry runs."""
    if dry_run:
        logger.info("Dry run mode - sensor points kept in memory")
        return InMemoryTimeSeriesStore()
    try:
        return InfluxTimeSeriesStore(config.influx)
    except Exception as e:
        logger.error(f"time-series store unavailable: {e}")
        return None


class Service:
    """All long-running components sharing one stop event."""

    def __init__(
        self,
        config: Config,
        timeseries: Optional[TimeSeriesStore],
        store: MetadataStore,
        publisher: Optional[MQTTClient] = None,
    ):
        self.config = config
        self.timeseries = timeseries
        self.store = store
        self.publisher = publisher
        self.stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

        rng = random.Random(config.simulation.random_seed)
        self.simulator: Optional[Simulator] = None
        if timeseries is not None:
            self.simulator = Simulator(
                timeseries,
                config.build_sensors(rng),
                interval=config.simulation.tick_interval,
                iterations_per_machine=config.simulation.iterations_per_machine,
                measurement=config.simulation.measurement,
                rng=rng,
            )

        self.coordinator = Coordinator(
            self.simulator,
            store,
            poll_interval=config.coordinator.poll_interval,
            on_lot_completed=self._lot_completed,
        )

        self.detector: Optional[CompletionDetector] = None
        if config.threshold_completion_enabled:
            completion = config.completion
            self.detector = CompletionDetector(
                timeseries,
                store,
                interval=completion.poll_interval,
                lookback=completion.lookback,
                samples_required=completion.samples_required,
                zero_threshold=completion.zero_threshold,
                measurement=completion.measurement,
                on_lot_completed=self._lot_completed,
            )

        if self.simulator is not None:
            if config.cycle_completion_enabled:
                self.simulator.register_cycle_listener(self.coordinator)
            if publisher is not None:
                self.simulator.register_cycle_listener(publisher)
                self.simulator.on_enabled_change = self._simulator_toggled

    def _lot_completed(self, lot: Lot, summary: LotSummary) -> None:
        if self.publisher is not None:
            self.publisher.publish_lot_completed(lot, summary)

    def _simulator_toggled(self, enabled: bool) -> None:
        machine = self.simulator.current_machine if self.simulator else None
        self.publisher.publish_simulator_status(enabled, machine)

    def start(self) -> None:
        logger.info(f"completion strategy: {self.config.completion.strategy}")
        if self.simulator is not None:
            self._threads.append(self.simulator.start(self.stop_event))
        else:
            logger.info("sensor simulator inactive; no time-series store")

        thread = self.coordinator.start(self.stop_event)
        if thread:
            self._threads.append(thread)

        if self.detector is not None:
            thread = self.detector.start(self.stop_event)
            if thread:
                self._threads.append(thread)

    def stop(self) -> None:
        self.stop_event.set()
        for thread in self._threads:
            thread.join(timeout=JOIN_TIMEOUT)
        self._threads = []

        if self.publisher is not None:
            self.publisher.disconnect()
        if self.timeseries is not None:
            self.timeseries.close()
        self.store.close()
        logger.info("service stopped")

    def wait(self) -> None:
        while not self.stop_event.wait(1.0):
            pass


def build_service(config: Config, dry_run: bool = False) -> Service:
    timeseries = build_timeseries(config, dry_run)

    store = MetadataStore.from_config(config.database)
    store.ensure_schema()

    publisher = None
    if config.mqtt.enabled or dry_run:
        publisher = MQTTClient(config.mqtt)
        if not publisher.connect(dry_run=dry_run):
            logger.warning("MQTT broker unreachable - events will not be published")
            publisher = None

    return Service(config, timeseries, store, publisher)


def run_service(config: Config, dry_run: bool = False) -> None:
    """Run until SIGINT or SIGTERM."""
    service = build_service(config, dry_run)

    def signal_handler(sig, frame):
        logger.info("Shutting down...")
        service.stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    service.start()
    try:
        service.wait()
    finally:
        service.stop()
