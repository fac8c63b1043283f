"""Keeps the simulator in step with lot processing state."""

import logging
import math
import threading
from datetime import datetime, timezone
from typing import Callable, Optional

from .metadata_store import MetadataStore
from .models import Lot, LotNotProcessingError, LotSummary, to_utc
from .simulator import Simulator

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0


class Coordinator:
    """Enables the simulator while lots are processing.

    Also listens for machine cycles and completes every processing lot when
    a full rotation finishes.
    """

    def __init__(
        self,
        simulator: Optional[Simulator],
        store: Optional[MetadataStore],
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        on_lot_completed: Optional[Callable[[Lot, LotSummary], None]] = None,
    ):
        self.simulator = simulator
        self.store = store
        self.poll_interval = (
            poll_interval if math.isfinite(poll_interval) and poll_interval > 0 else DEFAULT_POLL_INTERVAL
        )
        self.on_lot_completed = on_lot_completed
        self._thread: Optional[threading.Thread] = None

    def start(self, stop_event: threading.Event) -> Optional[threading.Thread]:
        if self.simulator is None or self.store is None:
            logger.info("simulation coordinator inactive; missing simulator or metadata store")
            return None

        self.sync_simulation()
        self._thread = threading.Thread(
            target=self._poll_loop, args=(stop_event,), name="simulation-coordinator", daemon=True
        )
        self._thread.start()
        logger.info(f"simulation coordinator running; interval={self.poll_interval}s")
        return self._thread

    def _poll_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.poll_interval):
            self.sync_simulation()
        logger.info("simulation coordinator stopped")

    def sync_simulation(self) -> None:
        """Enable the simulator when any lot is processing, disable it otherwise."""
        try:
            active = self.store.has_active_lots()
        except Exception as e:
            logger.warning(f"check active lots failed: {e}")
            return

        if active:
            self.simulator.enable()
        else:
            self.simulator.disable()

    def on_cycle_complete(self, completed_at: datetime, last_machine: str) -> None:
        """Complete all processing lots after a full machine rotation."""
        if self.store is None:
            return

        try:
            lots = self.store.list_active_lots()
        except Exception as e:
            logger.warning(f"list active lots failed: {e}")
            return

        completed_at = to_utc(completed_at) or datetime.now(timezone.utc)
        for lot in lots:
            summary = LotSummary(completed_at=completed_at, machine_name=lot.machine_name)
            try:
                self.store.mark_lot_completed(lot.id, summary)
            except LotNotProcessingError:
                continue
            except Exception as e:
                logger.error(f"mark lot completed failed: lot={lot.lot_number} error={e}")
                continue

            logger.info(
                f"lot marked completed after machine cycle: lot={lot.lot_number} "
                f"machine={lot.machine_name} lastMachine={last_machine}"
            )
            if self.on_lot_completed:
                try:
                    self.on_lot_completed(lot, summary)
                except Exception:
                    logger.exception("lot completion callback failed")

        if self.simulator is None:
            return
        try:
            if not self.store.has_active_lots():
                self.simulator.disable()
        except Exception as e:
            logger.warning(f"check active lots failed: {e}")
