"""Threshold-based lot completion.

Polls the time-series store independently of the simulator and completes a
lot once every sensor on its machine has reported a full window of down
samples at or below the zero threshold.
"""

import logging
import math
import threading
from typing import Callable, Dict, List, Optional, Sequence

from .metadata_store import MetadataStore
from .models import Lot, LotNotProcessingError, LotSummary, SensorReading, SensorSnapshot
from .timeseries import TimeSeriesStore

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 1.0
DEFAULT_LOOKBACK = 30.0
DEFAULT_SAMPLES_REQUIRED = 3
DEFAULT_ZERO_THRESHOLD = 5.0
DEFAULT_MEASUREMENT = "sensor_data"
QUERY_LIMIT_FACTOR = 8


def average_value(readings: Sequence[SensorReading]) -> float:
    if not readings:
        return 0.0
    return sum(r.value for r in readings) / len(readings)


class CompletionDetector:
    """Marks lots completed when their machine's sensors have gone idle."""

    def __init__(
        self,
        timeseries: Optional[TimeSeriesStore],
        store: Optional[MetadataStore],
        interval: float = DEFAULT_INTERVAL,
        lookback: float = DEFAULT_LOOKBACK,
        samples_required: int = DEFAULT_SAMPLES_REQUIRED,
        zero_threshold: float = DEFAULT_ZERO_THRESHOLD,
        measurement: str = DEFAULT_MEASUREMENT,
        on_lot_completed: Optional[Callable[[Lot, LotSummary], None]] = None,
    ):
        self.timeseries = timeseries
        self.store = store
        self.interval = interval if math.isfinite(interval) and interval > 0 else DEFAULT_INTERVAL
        self.lookback = lookback if math.isfinite(lookback) and lookback > 0 else DEFAULT_LOOKBACK
        self.samples_required = samples_required if samples_required > 0 else DEFAULT_SAMPLES_REQUIRED
        self.zero_threshold = (
            zero_threshold
            if math.isfinite(zero_threshold) and zero_threshold >= 0
            else DEFAULT_ZERO_THRESHOLD
        )
        self.measurement = measurement or DEFAULT_MEASUREMENT
        self.on_lot_completed = on_lot_completed
        self._thread: Optional[threading.Thread] = None

    @property
    def query_limit(self) -> int:
        return self.samples_required * QUERY_LIMIT_FACTOR

    def start(self, stop_event: threading.Event) -> Optional[threading.Thread]:
        if self.timeseries is None or self.store is None:
            logger.info("lot completion monitor inactive; missing time-series or metadata store")
            return None

        self._thread = threading.Thread(
            target=self._poll_loop, args=(stop_event,), name="lot-completion", daemon=True
        )
        self._thread.start()
        logger.info(
            f"lot completion monitor running; interval={self.interval}s "
            f"samples={self.samples_required} threshold={self.zero_threshold}"
        )
        return self._thread

    def _poll_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval):
            try:
                self.check_lots()
            except Exception as e:
                logger.error(f"Error in completion loop: {e}")
        logger.info("lot completion monitor stopped")

    def check_lots(self) -> List[str]:
        """Evaluate every processing lot once.

        Returns the lot numbers completed by this pass.
        """
        try:
            lots = self.store.list_active_lots()
        except Exception as e:
            logger.warning(f"list active lots failed: {e}")
            return []

        completed = []
        for lot in lots:
            try:
                summary = self.evaluate_lot(lot)
            except Exception as e:
                logger.warning(f"query sensor data failed: lot={lot.lot_number} error={e}")
                continue
            if summary is None:
                continue

            try:
                self.store.mark_lot_completed(lot.id, summary)
            except LotNotProcessingError:
                continue
            except Exception as e:
                logger.error(f"mark lot completed failed: lot={lot.lot_number} error={e}")
                continue

            logger.info(
                f"lot marked completed: lot={lot.lot_number} machine={lot.machine_name} "
                f"sensors={len(summary.sensors)}"
            )
            completed.append(lot.lot_number)
            if self.on_lot_completed:
                try:
                    self.on_lot_completed(lot, summary)
                except Exception:
                    logger.exception("lot completion callback failed")
        return completed

    def evaluate_lot(self, lot: Lot) -> Optional[LotSummary]:
        """Build a summary when the lot's machine is idle, None otherwise."""
        readings = self.timeseries.query_recent_by_machine(
            self.measurement, lot.machine_name, self.lookback, self.query_limit
        )
        if not readings:
            return None

        windows: Dict[str, List[SensorReading]] = {}
        for reading in readings:
            window = windows.setdefault(reading.sensor_name, [])
            if len(window) < self.samples_required:
                window.append(reading)

        for window in windows.values():
            if len(window) < self.samples_required:
                return None
            if not all(r.is_down(self.zero_threshold) for r in window):
                return None

        sensors = [
            SensorSnapshot(
                sensor_name=name,
                latest_status=window[0].status,
                latest_value=window[0].value,
                average_down=average_value(window),
                observed_count=len(window),
            )
            for name, window in sorted(windows.items())
        ]
        return LotSummary(
            completed_at=readings[0].time,
            machine_name=lot.machine_name,
            sensors=sensors,
        )
