# Overview: Stock ledger; the only writer of StockRecord counters and StockMovement rows.

# backend/shopledger/services/inventory_service.py

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from ..models import Product, StockRecord, StockMovement
from ..models.inventory import MOVEMENT_SALE, MOVEMENT_ADJUSTMENT, MOVEMENT_DELIVERY
from shopledger.time_utils import utcnow
from .concurrency import lock_for_update, run_in_transaction
from .errors import InsufficientStock, InvalidAmount, ProductInactive, ProductNotFound
"""
Stock Ledger Invariants (authoritative)

Counters:
- stock_quantity      physical on-hand
- available_quantity  sellable now
- reserved_quantity   committed to open orders
- stock_quantity == available_quantity + reserved_quantity, all >= 0, after
  every operation (also enforced by CHECK constraints on stock_records).

Operations (all take the open session; none of them commit):
- reserve(qty):   available -= qty, reserved += qty          movement sale       -qty
- release(qty):   reserved -= qty, available += qty          movement adjustment +qty
- consume(qty):   reserved -= qty, stock -= qty              movement sale       -qty
                  (from_reservation=False: available -= qty, stock -= qty, used by checkout)
- adjust_manual:  stock and available move by new - stock    movement adjustment delta
- receive(qty):   stock += qty, available += qty             movement delivery   +qty
- return_to_stock(qty): stock += qty, available += qty        movement adjustment +qty

Locking:
- The StockRecord row is read with SELECT ... FOR UPDATE before any change,
  so reserve/consume from orders and checkout serialize on available_quantity.
- version_id on StockRecord turns a lost update into StaleDataError.

Deduplication is the caller's job: calling an operation twice for the same
logical event applies it twice.
"""

logger = logging.getLogger(__name__)


def _require_positive_quantity(quantity, *, field: str = "quantity") -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidAmount(
            f"{field} must be a positive integer",
            details={"field": field, "value": quantity},
        )
    return quantity


def _get_product(session, product_id: int, *, require_active: bool = False) -> Product:
    product = session.get(Product, product_id)
    if product is None:
        raise ProductNotFound(product_id)
    if require_active and not product.is_active:
        raise ProductInactive(product_id, product.name)
    return product


def _find_stock_record(session, product_id: int) -> StockRecord | None:
    return session.query(StockRecord).filter_by(product_id=product_id).first()


def ensure_stock_record(session, product_id: int) -> StockRecord:
    """
    Return the product's StockRecord, creating a zeroed one on first use.

    Safe to call repeatedly (idempotent). When a concurrent transaction
    provisions the same product first, the insert is rolled back to a
    savepoint and the committed row is returned.
    """
    record = _find_stock_record(session, product_id)
    if record is not None:
        return record

    product = _get_product(session, product_id)
    record = StockRecord(
        shop_id=product.shop_id,
        product_id=product.id,
        stock_quantity=0,
        available_quantity=0,
        reserved_quantity=0,
    )
    try:
        with session.begin_nested():
            session.add(record)
    except IntegrityError as exc:
        if "product_id" not in str(exc.orig):
            raise
        logger.warning("Stock record for product %s provisioned concurrently; reusing it", product_id)
        record = session.query(StockRecord).filter_by(product_id=product_id).populate_existing().one()
    return record


def _lock_stock_record(session, product_id: int) -> StockRecord:
    record = lock_for_update(
        session.query(StockRecord).filter_by(product_id=product_id)
    ).populate_existing().first()
    if record is None:
        ensure_stock_record(session, product_id)
        record = lock_for_update(
            session.query(StockRecord).filter_by(product_id=product_id)
        ).populate_existing().one()
    return record


def _append_movement(
    session,
    record: StockRecord,
    *,
    kind: str,
    quantity_delta: int,
    actor_id: int | None,
    reference_type: str | None,
    reference_id: int | None,
    note: str | None,
) -> StockMovement:
    movement = StockMovement(
        shop_id=record.shop_id,
        product_id=record.product_id,
        kind=kind,
        quantity_delta=quantity_delta,
        stock_after=record.stock_quantity,
        available_after=record.available_quantity,
        reserved_after=record.reserved_quantity,
        reference_type=reference_type,
        reference_id=reference_id,
        note=note,
        actor_id=actor_id,
        occurred_at=utcnow(),
    )
    session.add(movement)
    # Counter update and movement row go out in the same flush
    session.flush()
    logger.debug(
        "stock %s product=%s delta=%s stock=%s available=%s reserved=%s",
        kind,
        record.product_id,
        quantity_delta,
        record.stock_quantity,
        record.available_quantity,
        record.reserved_quantity,
    )
    return movement


# =============================================================================
# LEDGER OPERATIONS
# =============================================================================

def reserve(
    session,
    product_id: int,
    quantity: int,
    *,
    actor_id: int | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    note: str | None = None,
) -> StockRecord:
    """Move quantity from available to reserved (commitment to an open order)."""
    _require_positive_quantity(quantity)
    product = _get_product(session, product_id)
    record = _lock_stock_record(session, product_id)

    if record.available_quantity < quantity:
        raise InsufficientStock(product_id, quantity, record.available_quantity, product.name)

    record.available_quantity -= quantity
    record.reserved_quantity += quantity

    _append_movement(
        session,
        record,
        kind=MOVEMENT_SALE,
        quantity_delta=-quantity,
        actor_id=actor_id,
        reference_type=reference_type,
        reference_id=reference_id,
        note=note,
    )
    return record


def release(
    session,
    product_id: int,
    quantity: int,
    *,
    actor_id: int | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    note: str | None = None,
) -> StockRecord:
    """Return reserved units to the sellable pool. stock_quantity is unchanged."""
    _require_positive_quantity(quantity)
    _get_product(session, product_id)
    record = _lock_stock_record(session, product_id)

    if record.reserved_quantity < quantity:
        raise InvalidAmount(
            f"Cannot release {quantity} units of product {product_id}: only {record.reserved_quantity} reserved",
            details={
                "product_id": product_id,
                "requested_quantity": quantity,
                "reserved_quantity": record.reserved_quantity,
            },
        )

    record.reserved_quantity -= quantity
    record.available_quantity += quantity

    _append_movement(
        session,
        record,
        kind=MOVEMENT_ADJUSTMENT,
        quantity_delta=quantity,
        actor_id=actor_id,
        reference_type=reference_type,
        reference_id=reference_id,
        note=note,
    )
    return record


def consume(
    session,
    product_id: int,
    quantity: int,
    *,
    from_reservation: bool = True,
    actor_id: int | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    note: str | None = None,
) -> StockRecord:
    """
    Finalize a sale: physical stock leaves the shop.

    from_reservation=True (orders): units were already taken out of
    available_quantity when reserved, so reserved and stock drop together.

    from_reservation=False (checkout): the sale skips the reservation stage,
    so available and stock drop together. available_quantity is the shared
    serialization point with order reservations.
    """
    _require_positive_quantity(quantity)
    product = _get_product(session, product_id)
    record = _lock_stock_record(session, product_id)

    if from_reservation:
        if record.reserved_quantity < quantity:
            raise InvalidAmount(
                f"Cannot consume {quantity} units of product {product_id}: only {record.reserved_quantity} reserved",
                details={
                    "product_id": product_id,
                    "requested_quantity": quantity,
                    "reserved_quantity": record.reserved_quantity,
                },
            )
        record.reserved_quantity -= quantity
    else:
        if record.available_quantity < quantity:
            raise InsufficientStock(product_id, quantity, record.available_quantity, product.name)
        record.available_quantity -= quantity

    record.stock_quantity -= quantity

    _append_movement(
        session,
        record,
        kind=MOVEMENT_SALE,
        quantity_delta=-quantity,
        actor_id=actor_id,
        reference_type=reference_type,
        reference_id=reference_id,
        note=note,
    )
    return record


def adjust_manual(
    session,
    product_id: int,
    new_stock_quantity: int,
    reason: str | None = None,
    *,
    actor_id: int | None = None,
) -> StockRecord:
    """
    Administrative correction to a counted stock level.

    delta = new_stock_quantity - stock_quantity is applied to stock and
    available equally. Reserved units cannot be adjusted away: the new level
    must still cover reserved_quantity.
    """
    if isinstance(new_stock_quantity, bool) or not isinstance(new_stock_quantity, int) or new_stock_quantity < 0:
        raise InvalidAmount(
            "stock_quantity must be a non-negative integer",
            details={"field": "stock_quantity", "value": new_stock_quantity},
        )

    product = _get_product(session, product_id)
    record = _lock_stock_record(session, product_id)

    delta = new_stock_quantity - record.stock_quantity
    if record.available_quantity + delta < 0:
        raise InsufficientStock(product_id, -delta, record.available_quantity, product.name)

    record.stock_quantity += delta
    record.available_quantity += delta

    if delta != 0:
        _append_movement(
            session,
            record,
            kind=MOVEMENT_ADJUSTMENT,
            quantity_delta=delta,
            actor_id=actor_id,
            reference_type=None,
            reference_id=None,
            note=reason or "Manual inventory adjustment",
        )
    return record


def receive(
    session,
    product_id: int,
    quantity: int,
    *,
    actor_id: int | None = None,
    note: str | None = None,
) -> StockRecord:
    """Goods delivered into the shop: stock and available both grow."""
    _require_positive_quantity(quantity)
    _get_product(session, product_id)
    record = _lock_stock_record(session, product_id)

    record.stock_quantity += quantity
    record.available_quantity += quantity

    _append_movement(
        session,
        record,
        kind=MOVEMENT_DELIVERY,
        quantity_delta=quantity,
        actor_id=actor_id,
        reference_type=None,
        reference_id=None,
        note=note or "Stock delivery received",
    )
    return record


def return_to_stock(
    session,
    product_id: int,
    quantity: int,
    *,
    actor_id: int | None = None,
    reference_type: str | None = None,
    reference_id: int | None = None,
    note: str | None = None,
) -> StockRecord:
    """
    Put previously consumed units back on the shelf (cancelled shipment).

    Same counter effect as receive() but logged as an adjustment tied to the
    referencing document.
    """
    _require_positive_quantity(quantity)
    _get_product(session, product_id)
    record = _lock_stock_record(session, product_id)

    record.stock_quantity += quantity
    record.available_quantity += quantity

    _append_movement(
        session,
        record,
        kind=MOVEMENT_ADJUSTMENT,
        quantity_delta=quantity,
        actor_id=actor_id,
        reference_type=reference_type,
        reference_id=reference_id,
        note=note,
    )
    return record


# =============================================================================
# TRANSACTIONAL ENTRY POINTS (administrative)
# =============================================================================

def adjust_stock(session, *, product_id: int, stock_quantity: int, reason: str | None, actor_id: int | None) -> StockRecord:
    def _op():
        return adjust_manual(session, product_id, stock_quantity, reason, actor_id=actor_id)

    record = run_in_transaction(session, _op)
    logger.info("Stock adjusted product=%s stock=%s actor=%s", product_id, record.stock_quantity, actor_id)
    return record


def receive_stock(session, *, product_id: int, quantity: int, note: str | None, actor_id: int | None) -> StockRecord:
    def _op():
        return receive(session, product_id, quantity, actor_id=actor_id, note=note)

    record = run_in_transaction(session, _op)
    logger.info("Stock received product=%s quantity=%s actor=%s", product_id, quantity, actor_id)
    return record


def update_stock_settings(
    session,
    *,
    product_id: int,
    reorder_level: int | None = None,
    reorder_quantity: int | None = None,
    location: str | None = None,
) -> StockRecord:
    """Reorder metadata only; counters are untouched."""
    def _op():
        _get_product(session, product_id)
        record = _lock_stock_record(session, product_id)
        if reorder_level is not None:
            record.reorder_level = reorder_level
        if reorder_quantity is not None:
            record.reorder_quantity = reorder_quantity
        if location is not None:
            record.location = location
        session.flush()
        return record

    return run_in_transaction(session, _op)


# =============================================================================
# QUERIES
# =============================================================================

def get_stock_record(session, product_id: int) -> StockRecord:
    _get_product(session, product_id)
    record = session.query(StockRecord).filter_by(product_id=product_id).first()
    if record is None:
        # Unprovisioned products read as zero stock
        return StockRecord(
            product_id=product_id,
            stock_quantity=0,
            available_quantity=0,
            reserved_quantity=0,
        )
    return record


def list_movements(session, product_id: int, *, limit: int = 200) -> list[StockMovement]:
    _get_product(session, product_id)
    return (
        session.query(StockMovement)
        .filter_by(product_id=product_id)
        .order_by(StockMovement.id.desc())
        .limit(limit)
        .all()
    )


def list_low_stock(session, shop_id: int) -> list[StockRecord]:
    return (
        session.query(StockRecord)
        .filter(
            StockRecord.shop_id == shop_id,
            StockRecord.reorder_level.isnot(None),
            StockRecord.available_quantity <= StockRecord.reorder_level,
        )
        .order_by(StockRecord.product_id)
        .all()
    )
