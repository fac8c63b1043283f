"""Lot metadata persistence.

Lots live in a single ``lots`` table. Completion is one conditional UPDATE
guarded by the current status, so concurrent completion paths produce at
most one effective transition per lot.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    insert,
    inspect,
    or_,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from .config import DatabaseConfig
from .models import (
    Lot,
    LotExistsError,
    LotNotFoundError,
    LotNotProcessingError,
    LotNumberRequiredError,
    LotStatus,
    LotSummary,
    to_utc,
)

logger = logging.getLogger(__name__)

FALLBACK_MACHINE_NAME = "auto-machine"

metadata = MetaData()

lots_table = Table(
    "lots",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("lot_number", String(255), nullable=False, unique=True),
    Column("machine_name", String(255), nullable=False, index=True),
    Column("status", String(32), nullable=False, default=LotStatus.PROCESSING.value, index=True),
    Column("started_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("completed_at", DateTime(timezone=True), nullable=True),
    Column("summary_json", Text, nullable=True),
    Column("good_product", Integer, nullable=True),
    Column("defect_product", Integer, nullable=True),
    Column("conclusion", Text, nullable=True),
    Column("averages_json", Text, nullable=True),
    Column("operation_hour", Float, nullable=True),
)

# Columns added after the first release; older tables are upgraded in place
_ADDED_COLUMNS = (
    ("averages_json", "TEXT"),
    ("operation_hour", "FLOAT"),
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_machine_name(lot_number: str, machine_name: Optional[str]) -> str:
    """Fall back to the lot number, then a placeholder, when no machine is given."""
    trimmed = (machine_name or "").strip()
    if trimmed:
        return trimmed
    fallback = (lot_number or "").strip()
    if fallback:
        return fallback
    return FALLBACK_MACHINE_NAME


def create_engine_from_config(config: DatabaseConfig) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads."""
    url = config.url
    if url.startswith("sqlite") and (url in ("sqlite://", "sqlite:///:memory:")):
        return create_engine(
            url,
            echo=config.echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        return create_engine(url, echo=config.echo, connect_args={"check_same_thread": False})
    return create_engine(url, echo=config.echo, pool_pre_ping=True)


def _row_to_lot(row: Any) -> Lot:
    return Lot(
        id=row.id,
        lot_number=row.lot_number,
        machine_name=row.machine_name,
        status=LotStatus(row.status),
        started_at=to_utc(row.started_at),
        completed_at=to_utc(row.completed_at),
        updated_at=to_utc(row.updated_at),
        summary_json=row.summary_json,
        good_product=row.good_product,
        defect_product=row.defect_product,
        conclusion=row.conclusion,
        averages_json=row.averages_json,
        operation_hour=row.operation_hour,
    )


class MetadataStore:
    """Repository for lot records."""

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> "MetadataStore":
        return cls(create_engine_from_config(config))

    def ensure_schema(self) -> None:
        """Create the required tables and add columns missing from older ones."""
        metadata.create_all(self.engine)
        existing = {c["name"] for c in inspect(self.engine).get_columns(lots_table.name)}
        missing = [(name, ddl) for name, ddl in _ADDED_COLUMNS if name not in existing]
        if not missing:
            return
        with self.engine.begin() as conn:
            for name, ddl in missing:
                conn.execute(text(f"ALTER TABLE {lots_table.name} ADD COLUMN {name} {ddl}"))
                logger.info(f"lots table upgraded: added column {name}")

    def ping(self) -> None:
        with self.engine.connect() as conn:
            conn.execute(select(1))

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Lot lifecycle
    # ------------------------------------------------------------------

    def create_lot(self, lot_number: str, machine_name: Optional[str] = None) -> Lot:
        """Insert a new lot in processing state."""
        number = (lot_number or "").strip()
        if not number:
            raise LotNumberRequiredError("lot number is required")
        machine = normalize_machine_name(number, machine_name)
        now = _now()

        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    insert(lots_table).values(
                        lot_number=number,
                        machine_name=machine,
                        status=LotStatus.PROCESSING.value,
                        started_at=now,
                        updated_at=now,
                    )
                )
                lot_id = result.inserted_primary_key[0]
        except IntegrityError as e:
            raise LotExistsError(f"lot {number} already exists") from e

        logger.info(f"lot created: lot={number} machine={machine}")
        return self.get_lot(lot_id)

    def get_lot(self, lot_id: int) -> Lot:
        with self.engine.connect() as conn:
            row = conn.execute(select(lots_table).where(lots_table.c.id == lot_id)).first()
        if row is None:
            raise LotNotFoundError(f"lot id={lot_id} not found")
        return _row_to_lot(row)

    def get_lot_by_number(self, lot_number: str) -> Lot:
        number = (lot_number or "").strip()
        with self.engine.connect() as conn:
            row = conn.execute(
                select(lots_table).where(lots_table.c.lot_number == number)
            ).first()
        if row is None:
            raise LotNotFoundError(f"lot {number} not found")
        return _row_to_lot(row)

    def list_lots(self) -> List[Lot]:
        """All lots, most recently started first."""
        query = select(lots_table).order_by(lots_table.c.started_at.desc(), lots_table.c.id.desc())
        with self.engine.connect() as conn:
            return [_row_to_lot(row) for row in conn.execute(query)]

    def list_active_lots(self) -> List[Lot]:
        """Lots still processing, oldest first."""
        query = (
            select(lots_table)
            .where(lots_table.c.status == LotStatus.PROCESSING.value)
            .order_by(lots_table.c.started_at, lots_table.c.id)
        )
        with self.engine.connect() as conn:
            return [_row_to_lot(row) for row in conn.execute(query)]

    def has_active_lots(self) -> bool:
        query = (
            select(lots_table.c.id)
            .where(lots_table.c.status == LotStatus.PROCESSING.value)
            .limit(1)
        )
        with self.engine.connect() as conn:
            return conn.execute(query).first() is not None

    def mark_lot_completed(self, lot_id: int, summary: LotSummary) -> None:
        """Transition a processing lot to completed and attach the summary.

        Raises LotNotProcessingError when no row changed, meaning the lot is
        missing or was already completed.
        """
        completed_at = to_utc(summary.completed_at)
        stmt = (
            update(lots_table)
            .where(lots_table.c.id == lot_id)
            .where(lots_table.c.status == LotStatus.PROCESSING.value)
            .values(
                status=LotStatus.COMPLETED.value,
                completed_at=completed_at,
                updated_at=_now(),
                summary_json=summary.to_json(),
            )
        )
        with self.engine.begin() as conn:
            result = conn.execute(stmt)
        if result.rowcount == 0:
            raise LotNotProcessingError(f"lot id={lot_id} is not processing")

    def update_lot_outcome(
        self,
        lot_number: str,
        good_product: Optional[int] = None,
        defect_product: Optional[int] = None,
        conclusion: Optional[str] = None,
    ) -> Lot:
        """Record production counts and a conclusion for a lot."""
        lot = self.get_lot_by_number(lot_number)
        values = {"updated_at": _now()}
        if good_product is not None:
            values["good_product"] = good_product
        if defect_product is not None:
            values["defect_product"] = defect_product
        if conclusion is not None:
            values["conclusion"] = conclusion

        with self.engine.begin() as conn:
            conn.execute(update(lots_table).where(lots_table.c.id == lot.id).values(**values))
        return self.get_lot(lot.id)

    def list_completed_lots_missing_data(self) -> List[Lot]:
        """Completed lots whose averages or operation hours are not stored yet."""
        query = (
            select(lots_table)
            .where(lots_table.c.status == LotStatus.COMPLETED.value)
            .where(
                or_(
                    lots_table.c.averages_json.is_(None),
                    lots_table.c.operation_hour.is_(None),
                )
            )
            .order_by(lots_table.c.completed_at, lots_table.c.id)
        )
        with self.engine.connect() as conn:
            return [_row_to_lot(row) for row in conn.execute(query)]

    def update_lot_computed_fields(
        self,
        lot_id: int,
        operation_hour: Optional[float] = None,
        averages: Optional[Dict[str, float]] = None,
    ) -> None:
        """Store derived analytics; a None argument leaves its column unchanged."""
        values: Dict[str, Any] = {"updated_at": _now()}
        if operation_hour is not None:
            values["operation_hour"] = operation_hour
        if averages is not None:
            values["averages_json"] = json.dumps(averages, sort_keys=True)

        with self.engine.begin() as conn:
            result = conn.execute(
                update(lots_table).where(lots_table.c.id == lot_id).values(**values)
            )
        if result.rowcount == 0:
            raise LotNotFoundError(f"lot id={lot_id} not found")

    def delete_lot_by_number(self, lot_number: str) -> None:
        number = (lot_number or "").strip()
        if not number:
            raise LotNumberRequiredError("lot number is required")
        with self.engine.begin() as conn:
            result = conn.execute(delete(lots_table).where(lots_table.c.lot_number == number))
        if result.rowcount == 0:
            raise LotNotFoundError(f"lot {number} not found")
        logger.info(f"lot deleted: lot={number}")
