"""Post-completion lot analytics.

Completed lots carry per-sensor averages over their processing window and
their operation hours. Neither is written at completion time: a backfill
pass fills them in for every completed lot that still lacks them.
"""

import logging
from typing import List

from .metadata_store import MetadataStore
from .models import Lot, compute_operation_hours, to_utc
from .timeseries import TimeSeriesStore

logger = logging.getLogger(__name__)

DEFAULT_MEASUREMENT = "sensor_data"


def backfill_lot(
    store: MetadataStore,
    timeseries: TimeSeriesStore,
    lot: Lot,
    measurement: str = DEFAULT_MEASUREMENT,
) -> bool:
    """Compute and store analytics for one completed lot.

    Returns False when the lot has no usable time range.
    """
    if lot.started_at is None or lot.completed_at is None:
        logger.debug(f"lot {lot.lot_number} has no completion time, skipping backfill")
        return False
    start, end = to_utc(lot.started_at), to_utc(lot.completed_at)
    if end < start:
        logger.warning(f"lot {lot.lot_number} completed before it started, skipping backfill")
        return False

    averages = timeseries.mean_by_sensor(measurement, lot.machine_name, start, end)
    hours = compute_operation_hours(start, end)
    store.update_lot_computed_fields(lot.id, operation_hour=hours, averages=averages)
    logger.info(
        f"lot analytics stored: lot={lot.lot_number} hours={hours} sensors={len(averages)}"
    )
    return True


def backfill_lots(
    store: MetadataStore,
    timeseries: TimeSeriesStore,
    measurement: str = DEFAULT_MEASUREMENT,
) -> List[str]:
    """Fill in analytics for every completed lot still missing them.

    Per-lot failures are logged and the pass continues. Returns the lot
    numbers that were updated.
    """
    updated = []
    for lot in store.list_completed_lots_missing_data():
        try:
            if backfill_lot(store, timeseries, lot, measurement):
                updated.append(lot.lot_number)
        except Exception as e:
            logger.warning(f"backfill failed for lot {lot.lot_number}: {e}")
    return updated
