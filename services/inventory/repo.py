"""SQLAlchemy repository for per-variant inventory records.

This module provides database persistence for the inventory ledger using
SQLAlchemy. Each product variant owns exactly one ``inventory`` row holding
its on-hand and reserved quantities.

Rows carry a ``version`` column registered as the mapper's
``version_id_col``: every flush of a modified record is emitted as
``UPDATE ... WHERE variant_id = :id AND version = :expected`` and raises
``StaleDataError`` when another writer got there first. The ledger builds its
compare-and-swap retry loop on top of that signal.

The connection string is read from the ``INVENTORY_DATABASE_URL`` env var,
defaulting to the ``inventory-db`` Postgres container.
"""

import os
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import Boolean, CheckConstraint, DateTime, Integer, String, create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column

DB_HOST = os.getenv("DB_HOST", "inventory-db")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "inventory")
DB_USER = os.getenv("DB_USER", "inventory_user")
DB_PASSWORD = os.getenv("DB_PASSWORD", "inventory-pass")

DATABASE_URL = os.getenv(
    "INVENTORY_DATABASE_URL",
    f"postgresql+psycopg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)
engine = create_engine(DATABASE_URL, pool_pre_ping=True)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class InventoryRecord(Base):
    """Stock held for a single product variant.

    Attributes:
        variant_id: Product variant identifier (primary key).
        quantity_on_hand: Units available to sell.
        reserved_quantity: Units held for in-flight orders.
        reorder_threshold: On-hand level under which a reorder is flagged.
        is_reorder_needed: ``quantity_on_hand < reorder_threshold``, refreshed
            on every mutation.
        version: Optimistic concurrency token, bumped on every update.
        updated_at: Timestamp of the last mutation.
    """

    __tablename__ = "inventory"

    variant_id = mapped_column(Integer, primary_key=True, autoincrement=False)
    quantity_on_hand = mapped_column(Integer, nullable=False, default=0)
    reserved_quantity = mapped_column(Integer, nullable=False, default=0)
    reorder_threshold = mapped_column(Integer, nullable=False, default=0)
    is_reorder_needed = mapped_column(Boolean, nullable=False, default=False)
    version = mapped_column(Integer, nullable=False)
    updated_at = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        CheckConstraint("quantity_on_hand >= 0", name="ck_inventory_on_hand_non_negative"),
        CheckConstraint("reserved_quantity >= 0", name="ck_inventory_reserved_non_negative"),
    )
    __mapper_args__ = {"version_id_col": version}

    def refresh_reorder_flag(self) -> None:
        self.is_reorder_needed = self.quantity_on_hand < self.reorder_threshold

    def snapshot(self) -> dict:
        return {
            "variant_id": self.variant_id,
            "quantity_on_hand": self.quantity_on_hand,
            "reserved_quantity": self.reserved_quantity,
            "reorder_threshold": self.reorder_threshold,
            "is_reorder_needed": self.is_reorder_needed,
            "version": self.version,
        }


class LedgerOperation(Base):
    """A keyed write that has been applied to the ledger.

    Writes sent with an ``Idempotency-Key`` are recorded in the same
    transaction as the stock change, so a resent request finds its key and
    is answered without being applied twice.

    Attributes:
        key: Client-supplied idempotency key.
        variant_id: Variant the write touched.
        operation: RESERVE, RELEASE, COMMIT, ADJUST, or VOID for a key that
            was closed before its write ever landed.
        reservation_key: For COMMIT and RELEASE, the key of the reservation
            they settle.
    """

    __tablename__ = "ledger_operations"

    key = mapped_column(String(200), primary_key=True)
    variant_id = mapped_column(Integer, nullable=False)
    operation = mapped_column(String(16), nullable=False)
    reservation_key = mapped_column(String(200), nullable=True, index=True)
    created_at = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


def init_db(bind: Engine | None = None) -> None:
    """Create the inventory tables when they do not exist yet."""
    Base.metadata.create_all(bind or engine)


class InventoryRepo:
    """Session factory and lookups for inventory records.

    The repository does not decide anything about stock; it hands out
    sessions and loads rows so the ledger can run its read/compute/write
    cycle inside a single session per attempt.
    """

    def __init__(self, bind: Engine | None = None):
        self.engine = bind or engine

    @contextmanager
    def session(self):
        """Yield a session bound to the configured engine.

        Yields:
            Session: Active SQLAlchemy session, closed on context exit.
        """
        with Session(self.engine, expire_on_commit=False) as s:
            yield s

    def load(self, s: Session, variant_id: int) -> InventoryRecord | None:
        """Load the record for ``variant_id`` inside the given session.

        Args:
            s: Session the caller will flush the modified record through.
            variant_id: Product variant identifier.

        Returns:
            InventoryRecord | None: The tracked row, or None when absent.
        """
        return s.execute(
            select(InventoryRecord).where(InventoryRecord.variant_id == variant_id)
        ).scalars().first()

    def get(self, variant_id: int) -> InventoryRecord | None:
        """Read a detached copy of the record for ``variant_id``."""
        with self.session() as s:
            return self.load(s, variant_id)

    def add(self, record: InventoryRecord) -> InventoryRecord:
        """Insert a brand new record and return it."""
        with self.session() as s:
            s.add(record)
            s.commit()
            return record

    def operation(self, s: Session, key: str) -> LedgerOperation | None:
        """Find the keyed write recorded under ``key``, if any."""
        return s.get(LedgerOperation, key)

    def is_settled(self, s: Session, reservation_key: str) -> bool:
        """Whether a commit has already been recorded for the reservation."""
        return s.execute(
            select(LedgerOperation.key).where(
                LedgerOperation.reservation_key == reservation_key,
                LedgerOperation.operation == "COMMIT",
            )
        ).first() is not None
