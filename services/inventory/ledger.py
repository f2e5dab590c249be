"""Inventory ledger: reserve, release, commit and adjust variant stock.

Every mutation runs the same optimistic cycle against ``InventoryRecord``:

1. open a session and load the record together with its ``version``;
2. apply the mutation in memory (business checks happen here, on fresh
   data, so a retry re-validates stock);
3. commit, which SQLAlchemy turns into a version-conditioned UPDATE.

A stale version means another writer won the race. The attempt is discarded
and the cycle starts again from a fresh read, up to ``MAX_ATTEMPTS`` times
with a fixed ``RETRY_BACKOFF_SECS`` pause in between. When every attempt
loses, the caller gets ``OutOfStock`` rather than a silently lost update.
"""

import logging
import os
import time
from enum import Enum
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .repo import InventoryRecord, InventoryRepo, LedgerOperation

logger = logging.getLogger("inventory.ledger")

MAX_ATTEMPTS = int(os.getenv("INVENTORY_RETRY_ATTEMPTS", "3"))
RETRY_BACKOFF_SECS = float(os.getenv("INVENTORY_RETRY_BACKOFF_SECS", "0.1"))

CONFLICT_MESSAGE = "The inventory has been updated by another process. Please try again."


class Operator(str, Enum):
    """How ``update_quantity`` combines the given quantity with on-hand stock."""

    ADD = "ADD"
    SUBTRACT = "SUBTRACT"
    SET = "SET"


# ---- Errors ----
class InventoryError(Exception):
    """Base class for ledger failures; ``code``/``status_code`` drive the API."""

    code = "INVENTORY_ERROR"
    status_code = 400


class InventoryNotFound(InventoryError):
    code = "NOT_FOUND"
    status_code = 404


class OutOfStock(InventoryError):
    code = "OUT_OF_STOCK"
    status_code = 409


class InventoryConflict(InventoryError):
    code = "INVENTORY_EXISTS"
    status_code = 409


class InvalidQuantity(InventoryError):
    code = "INVALID_QUANTITY"
    status_code = 422


class ConcurrencyConflict(InventoryError):
    """A version mismatch on write. Retried inside the ledger, never surfaced."""

    code = "CONCURRENCY_CONFLICT"
    status_code = 409


Mutation = Callable[[InventoryRecord], None]
Guard = Callable[[Session], bool]


def _require_positive(quantity: int) -> None:
    if quantity <= 0:
        raise InvalidQuantity("Quantity must be a positive integer.")


class InventoryLedger:
    """Stock operations keyed by product variant id."""

    def __init__(
        self,
        repo: InventoryRepo | None = None,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_secs: float = RETRY_BACKOFF_SECS,
    ):
        self.repo = repo or InventoryRepo()
        self.max_attempts = max(1, max_attempts)
        self.backoff_secs = backoff_secs

    # ---- Reads ----
    def get(self, variant_id: int) -> InventoryRecord:
        record = self.repo.get(variant_id)
        if record is None:
            raise InventoryNotFound(f"Inventory record not found for variant {variant_id}.")
        return record

    def is_in_stock(self, variant_id: int, quantity: int) -> bool:
        record = self.repo.get(variant_id)
        return record is not None and record.quantity_on_hand >= quantity

    def get_quantity_on_hand(self, variant_id: int) -> int:
        record = self.repo.get(variant_id)
        return record.quantity_on_hand if record else 0

    def get_reserved_quantity(self, variant_id: int) -> int:
        record = self.repo.get(variant_id)
        return record.reserved_quantity if record else 0

    # ---- Writes ----
    def create_inventory_for_variant(
        self, variant_id: int, initial_quantity: int, reorder_threshold: int = 0
    ) -> InventoryRecord:
        """Create the single inventory record of a freshly created variant.

        Raises:
            InvalidQuantity: When a quantity or threshold is negative.
            InventoryConflict: When the variant already has a record.
        """
        if initial_quantity < 0 or reorder_threshold < 0:
            raise InvalidQuantity("Quantities must not be negative.")
        record = InventoryRecord(
            variant_id=variant_id,
            quantity_on_hand=initial_quantity,
            reserved_quantity=0,
            reorder_threshold=reorder_threshold,
        )
        record.refresh_reorder_flag()
        try:
            return self.repo.add(record)
        except IntegrityError as exc:
            raise InventoryConflict(f"Inventory already exists for variant {variant_id}.") from exc

    def reserve_stock(self, variant_id: int, quantity: int, key: str | None = None) -> InventoryRecord:
        """Hold ``quantity`` units for an order that is being placed.

        Moves the quantity from on-hand to reserved. Stock is re-checked on
        every attempt, so two racing reservations can never both succeed
        against stock that only covers one of them.

        Raises:
            OutOfStock: No record, not enough on hand, or retries exhausted.
        """
        _require_positive(quantity)

        def hold(record: InventoryRecord) -> None:
            if record.quantity_on_hand < quantity:
                raise OutOfStock("Insufficient stock available.")
            record.reserved_quantity += quantity
            record.quantity_on_hand = max(0, record.quantity_on_hand - quantity)

        return self._mutate(
            variant_id, hold, missing=OutOfStock("Insufficient stock available."), key=key, operation="RESERVE"
        )

    def release_stock(
        self,
        variant_id: int,
        quantity: int,
        key: str | None = None,
        reservation_key: str | None = None,
    ) -> InventoryRecord | None:
        """Give a reservation back to on-hand stock.

        Releasing stock of a variant without a record is a no-op. With a
        ``reservation_key`` the release only applies while that reservation
        is outstanding: when it never landed, the key is voided so a late
        copy of the reservation is ignored; when it was committed, the
        release does nothing.

        Returns:
            InventoryRecord | None: The record, or None when nothing was
            released.
        """
        _require_positive(quantity)
        skipped = [False]

        def outstanding(s: Session) -> bool:
            skipped[0] = not self._reservation_outstanding(s, variant_id, reservation_key)
            return not skipped[0]

        def release(record: InventoryRecord) -> None:
            record.quantity_on_hand += quantity
            record.reserved_quantity = max(0, record.reserved_quantity - quantity)

        record = self._mutate(
            variant_id,
            release,
            missing=None,
            key=key,
            operation="RELEASE",
            reservation_key=reservation_key,
            guard=outstanding if reservation_key else None,
        )
        return None if skipped[0] else record

    def commit_reservation(
        self,
        variant_id: int,
        quantity: int,
        key: str | None = None,
        reservation_key: str | None = None,
    ) -> InventoryRecord:
        """Turn a reservation into a finalized sale.

        On-hand stock was already decremented when the units were reserved,
        so only the reserved counter goes down here.
        """
        _require_positive(quantity)

        def commit(record: InventoryRecord) -> None:
            record.reserved_quantity = max(0, record.reserved_quantity - quantity)

        return self._mutate(
            variant_id,
            commit,
            missing=InventoryNotFound(f"Inventory record not found for variant {variant_id}."),
            key=key,
            operation="COMMIT",
            reservation_key=reservation_key,
        )

    def update_quantity(
        self,
        variant_id: int,
        quantity: int,
        operator: Operator | str = Operator.SET,
        key: str | None = None,
        requires: str | None = None,
    ) -> InventoryRecord:
        """Adjust on-hand stock directly (admin edits, returned goods).

        With ``requires`` the adjustment only applies when the write recorded
        under that key has landed; otherwise that key is voided and stock is
        left alone.

        Raises:
            InventoryNotFound: When the variant has no record.
            OutOfStock: When a subtraction would drop on-hand below zero.
        """
        if quantity < 0:
            raise InvalidQuantity("Quantity must not be negative.")
        operator = Operator(operator)

        def adjust(record: InventoryRecord) -> None:
            if operator is Operator.ADD:
                record.quantity_on_hand += quantity
            elif operator is Operator.SUBTRACT:
                if record.quantity_on_hand < quantity:
                    raise OutOfStock(
                        f"Cannot subtract {quantity} units, only {record.quantity_on_hand} on hand."
                    )
                record.quantity_on_hand -= quantity
            else:
                record.quantity_on_hand = quantity

        def landed(s: Session) -> bool:
            return self._landed_or_void(s, variant_id, requires)

        return self._mutate(
            variant_id,
            adjust,
            missing=InventoryNotFound(f"Inventory record not found for variant {variant_id}."),
            key=key,
            operation="ADJUST",
            guard=landed if requires else None,
        )

    # ---- Keyed writes ----
    def _landed_or_void(self, s: Session, variant_id: int, key: str) -> bool:
        op = self.repo.operation(s, key)
        if op is None:
            s.add(LedgerOperation(key=key, variant_id=variant_id, operation="VOID"))
            return False
        return op.operation != "VOID"

    def _reservation_outstanding(self, s: Session, variant_id: int, reservation_key: str) -> bool:
        if not self._landed_or_void(s, variant_id, reservation_key):
            return False
        return not self.repo.is_settled(s, reservation_key)

    # ---- Optimistic concurrency ----
    def _mutate(
        self,
        variant_id: int,
        mutation: Mutation,
        missing: InventoryError | None,
        key: str | None = None,
        operation: str = "",
        reservation_key: str | None = None,
        guard: Guard | None = None,
    ):
        """Run ``mutation`` under the version-checked retry loop.

        Args:
            variant_id: Product variant identifier.
            mutation: In-place change applied to the freshly loaded record.
            missing: Error raised when no record exists, or None to make the
                call a no-op in that case.
            key: Idempotency key. A key already on record makes the call a
                replay that returns the current record without mutating.
            operation: Name recorded with ``key``.
            reservation_key: Reservation recorded with ``key``.
            guard: Check run in the attempt's session; when it returns False
                the mutation is skipped but the key is still recorded.

        Returns:
            InventoryRecord | None: The record as committed, or None when the
            record is missing and ``missing`` is None.

        Raises:
            OutOfStock: When every attempt lost the race to another writer.
        """
        last_conflict = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self._attempt(variant_id, mutation, missing, key, operation, reservation_key, guard)
            except ConcurrencyConflict as exc:
                last_conflict = exc
                logger.warning(
                    "inventory version conflict",
                    extra={"variant_id": variant_id, "attempt": attempt, "max_attempts": self.max_attempts},
                )
                if attempt < self.max_attempts:
                    time.sleep(self.backoff_secs)
        raise OutOfStock(CONFLICT_MESSAGE) from last_conflict

    def _attempt(self, variant_id, mutation, missing, key, operation, reservation_key, guard):
        with self.repo.session() as s:
            if key and self.repo.operation(s, key) is not None:
                logger.info("ledger write replayed", extra={"variant_id": variant_id, "key": key})
                return self.repo.load(s, variant_id)
            record = self.repo.load(s, variant_id)
            if record is None:
                if missing is None:
                    return None
                raise missing
            if guard is None or guard(s):
                mutation(record)
                record.refresh_reorder_flag()
            if key:
                s.add(
                    LedgerOperation(
                        key=key, variant_id=variant_id, operation=operation, reservation_key=reservation_key
                    )
                )
            try:
                s.commit()
            except StaleDataError as exc:
                s.rollback()
                raise ConcurrencyConflict(str(exc)) from exc
            except IntegrityError as exc:
                # another request recorded the same key first; the next attempt replays it
                s.rollback()
                raise ConcurrencyConflict(str(exc)) from exc
            return record
