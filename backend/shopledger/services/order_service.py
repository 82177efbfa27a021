# Overview: Order workflow; status state machine and line edits driving the stock ledger.

"""
Order Workflow Service

================================================================================
PURPOSE: Move an order through its lifecycle while keeping stock reservations
         in step with it
================================================================================

STATE MACHINE:
    pending -> processing -> shipped -> delivered
    pending / processing / shipped -> cancelled

    delivered, cancelled: terminal

STOCK EFFECTS (via services.inventory_service, same transaction):
    (create) -> pending             reserve every line
    pending -> processing           none
    processing -> shipped           consume every line from the reservation
    pending/processing -> cancelled release every line
    shipped -> cancelled            return every line to stock (already consumed)
    shipped -> delivered            none; delivery_date set, pending payment -> paid

RULES:
1. Every transition appends exactly one OrderStatusEvent (creation included).
2. Lines can only change while the order is pending; each edit reserves or
   releases the quantity delta and recomputes total_amount_cents.
3. Only pending orders can be deleted; every line is released first.
4. An illegal transition raises InvalidStatusTransition before any write.
================================================================================
"""

from __future__ import annotations

import logging
import secrets

from ..models import Customer, Order, OrderLine, OrderStatusEvent, Product
from ..models.orders import (
    ORDER_PENDING,
    ORDER_PROCESSING,
    ORDER_SHIPPED,
    ORDER_DELIVERED,
    ORDER_CANCELLED,
    ORDER_PAYMENT_PENDING,
    ORDER_PAYMENT_PAID,
)
from shopledger.time_utils import utcnow, timestamp_stamp
from . import inventory_service
from .concurrency import lock_for_update, run_in_transaction
from .errors import (
    CustomerNotFound,
    DuplicateOrderLine,
    InvalidAmount,
    InvalidStatusTransition,
    OrderLineNotFound,
    OrderNotEditable,
    OrderNotFound,
    ProductInactive,
    ProductNotFound,
)
from .payment_service import VALID_PAYMENT_METHODS, validate_payment_method

logger = logging.getLogger(__name__)

REFERENCE_TYPE = "order"

VALID_STATUSES = {ORDER_PENDING, ORDER_PROCESSING, ORDER_SHIPPED, ORDER_DELIVERED, ORDER_CANCELLED}
TERMINAL_STATUSES = {ORDER_DELIVERED, ORDER_CANCELLED}

VALID_ORDER_TRANSITIONS = {
    ORDER_PENDING: {ORDER_PROCESSING, ORDER_CANCELLED},
    ORDER_PROCESSING: {ORDER_SHIPPED, ORDER_CANCELLED},
    ORDER_SHIPPED: {ORDER_DELIVERED, ORDER_CANCELLED},
    ORDER_DELIVERED: set(),
    ORDER_CANCELLED: set(),
}

ORDER_NUMBER_ATTEMPTS = 5


def can_transition(from_status: str, to_status: str) -> bool:
    """
    Check a status change against VALID_ORDER_TRANSITIONS.

    Same-state "transitions" are not allowed: they would log a status event
    without a change.
    """
    return to_status in VALID_ORDER_TRANSITIONS.get(from_status, set())


def generate_order_number() -> str:
    """ORD-<yyyymmddHHMMSS>-<3 random digits>."""
    return f"ORD-{timestamp_stamp()}-{secrets.randbelow(1000):03d}"


# =============================================================================
# INTERNAL HELPERS
# =============================================================================

def _lock_order(session, order_id: int, shop_id: int | None = None) -> Order:
    order = lock_for_update(session.query(Order).filter_by(id=order_id)).populate_existing().first()
    if order is None or (shop_id is not None and order.shop_id != shop_id):
        raise OrderNotFound(order_id)
    return order


def _require_pending(order: Order, action: str) -> None:
    if order.status != ORDER_PENDING:
        raise OrderNotEditable(order.id, order.status, action)


def _require_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidAmount(
            "quantity must be a positive integer",
            details={"field": "quantity", "value": quantity},
        )
    return quantity


def _load_sellable_product(session, product_id: int, shop_id: int) -> Product:
    product = session.get(Product, product_id)
    if product is None or product.shop_id != shop_id:
        raise ProductNotFound(product_id)
    if not product.is_active:
        raise ProductInactive(product_id, product.name)
    return product


def _append_status_event(session, order: Order, from_status: str | None, note: str | None, actor_id: int | None) -> OrderStatusEvent:
    event = OrderStatusEvent(
        order_id=order.id,
        from_status=from_status,
        status=order.status,
        note=note,
        actor_id=actor_id,
        occurred_at=utcnow(),
    )
    session.add(event)
    return event


def _recompute_total(order: Order) -> None:
    order.total_amount_cents = sum(line.total_price_cents for line in order.lines)


def _unique_order_number(session) -> str:
    for _ in range(ORDER_NUMBER_ATTEMPTS):
        number = generate_order_number()
        exists = session.query(Order.id).filter_by(order_number=number).first()
        if exists is None:
            return number
        logger.warning("Order number collision on %s, regenerating", number)
    # Unique constraint on order_number still guards the insert
    return generate_order_number()


# =============================================================================
# CREATE
# =============================================================================

def create_order(
    session,
    *,
    shop_id: int,
    lines: list[dict],
    customer_id: int | None = None,
    payment_method: str | None = None,
    shipping_address: str | None = None,
    shipping_method: str | None = None,
    notes: str | None = None,
    actor_id: int | None = None,
) -> Order:
    """
    Create a pending order and reserve stock for every line.

    lines: [{"product_id": int, "quantity": int}, ...]. unit_price is taken
    from the product's current selling price.
    """
    if not lines:
        raise InvalidAmount("Order must contain at least one line", details={"field": "lines"})
    method = validate_payment_method(payment_method or VALID_PAYMENT_METHODS[0])

    def _op():
        if customer_id is not None:
            customer = session.get(Customer, customer_id)
            if customer is None or customer.shop_id != shop_id:
                raise CustomerNotFound(customer_id)

        order = Order(
            shop_id=shop_id,
            order_number=_unique_order_number(session),
            customer_id=customer_id,
            status=ORDER_PENDING,
            payment_status=ORDER_PAYMENT_PENDING,
            payment_method=method,
            total_amount_cents=0,
            shipping_address=shipping_address,
            shipping_method=shipping_method,
            notes=notes,
            ordered_at=utcnow(),
            created_by_actor_id=actor_id,
        )
        session.add(order)
        session.flush()

        seen = set()
        for item in lines:
            product_id = item.get("product_id")
            quantity = _require_quantity(item.get("quantity"))
            if product_id in seen:
                raise DuplicateOrderLine(order.id, product_id)
            seen.add(product_id)

            product = _load_sellable_product(session, product_id, shop_id)
            inventory_service.reserve(
                session,
                product.id,
                quantity,
                actor_id=actor_id,
                reference_type=REFERENCE_TYPE,
                reference_id=order.id,
                note=f"Reserved for order {order.order_number}",
            )
            order.lines.append(OrderLine(
                product_id=product.id,
                quantity=quantity,
                unit_price_cents=product.selling_price_cents,
                total_price_cents=product.selling_price_cents * quantity,
            ))

        _recompute_total(order)
        _append_status_event(session, order, None, "Order created", actor_id)
        session.flush()
        return order

    order = run_in_transaction(session, _op)
    logger.info(
        "Order created id=%s number=%s lines=%s total_cents=%s actor=%s",
        order.id,
        order.order_number,
        len(order.lines),
        order.total_amount_cents,
        actor_id,
    )
    return order


# =============================================================================
# STATUS TRANSITIONS
# =============================================================================

def transition_order(
    session,
    *,
    order_id: int,
    status: str,
    note: str | None = None,
    tracking_number: str | None = None,
    actor_id: int | None = None,
    shop_id: int | None = None,
) -> Order:
    def _op():
        order = _lock_order(session, order_id, shop_id)
        from_status = order.status

        if status not in VALID_STATUSES or not can_transition(from_status, status):
            raise InvalidStatusTransition("order", order.id, from_status, status)

        if status == ORDER_CANCELLED:
            for line in order.lines:
                if from_status == ORDER_SHIPPED:
                    inventory_service.return_to_stock(
                        session,
                        line.product_id,
                        line.quantity,
                        actor_id=actor_id,
                        reference_type=REFERENCE_TYPE,
                        reference_id=order.id,
                        note=f"Order {order.order_number} cancelled after shipping",
                    )
                else:
                    inventory_service.release(
                        session,
                        line.product_id,
                        line.quantity,
                        actor_id=actor_id,
                        reference_type=REFERENCE_TYPE,
                        reference_id=order.id,
                        note=f"Order {order.order_number} cancelled",
                    )
        elif status == ORDER_SHIPPED:
            for line in order.lines:
                inventory_service.consume(
                    session,
                    line.product_id,
                    line.quantity,
                    from_reservation=True,
                    actor_id=actor_id,
                    reference_type=REFERENCE_TYPE,
                    reference_id=order.id,
                    note=f"Order {order.order_number} shipped",
                )
            if tracking_number:
                order.tracking_number = tracking_number
        elif status == ORDER_DELIVERED:
            order.delivery_date = utcnow()
            # Cash on delivery
            if order.payment_status == ORDER_PAYMENT_PENDING:
                order.payment_status = ORDER_PAYMENT_PAID

        order.status = status
        _append_status_event(session, order, from_status, note or f"Status changed to {status}", actor_id)
        session.flush()
        return order

    order = run_in_transaction(session, _op)
    logger.info("Order id=%s -> %s actor=%s", order.id, status, actor_id)
    return order


def update_order_details(
    session,
    *,
    order_id: int,
    fields: dict,
    actor_id: int | None = None,
    shop_id: int | None = None,
) -> Order:
    """Shipping address/method, tracking number and notes. No ledger effect."""
    editable = ("shipping_address", "shipping_method", "tracking_number", "notes")

    def _op():
        order = _lock_order(session, order_id, shop_id)
        if order.status in TERMINAL_STATUSES:
            raise OrderNotEditable(order.id, order.status, "update")
        for key in editable:
            if key in fields:
                setattr(order, key, fields[key])
        session.flush()
        return order

    order = run_in_transaction(session, _op)
    logger.info("Order id=%s details updated actor=%s", order.id, actor_id)
    return order


# =============================================================================
# LINE EDITS (pending only)
# =============================================================================

def add_line(
    session,
    *,
    order_id: int,
    product_id: int,
    quantity: int,
    actor_id: int | None = None,
    shop_id: int | None = None,
) -> Order:
    _require_quantity(quantity)

    def _op():
        order = _lock_order(session, order_id, shop_id)
        _require_pending(order, "add items to")

        if any(line.product_id == product_id for line in order.lines):
            raise DuplicateOrderLine(order.id, product_id)

        product = _load_sellable_product(session, product_id, order.shop_id)
        inventory_service.reserve(
            session,
            product.id,
            quantity,
            actor_id=actor_id,
            reference_type=REFERENCE_TYPE,
            reference_id=order.id,
            note=f"Added to order {order.order_number}",
        )
        order.lines.append(OrderLine(
            product_id=product.id,
            quantity=quantity,
            unit_price_cents=product.selling_price_cents,
            total_price_cents=product.selling_price_cents * quantity,
        ))
        session.flush()
        _recompute_total(order)
        session.flush()
        return order

    order = run_in_transaction(session, _op)
    logger.info("Order id=%s line added product=%s quantity=%s", order.id, product_id, quantity)
    return order


def _find_line(order: Order, line_id: int) -> OrderLine:
    for line in order.lines:
        if line.id == line_id:
            return line
    raise OrderLineNotFound(line_id)


def update_line(
    session,
    *,
    order_id: int,
    line_id: int,
    quantity: int,
    actor_id: int | None = None,
    shop_id: int | None = None,
) -> Order:
    """
    Change a line's quantity; the delta is reserved or released.

    Quantity 0 is rejected: removing a line goes through remove_line.
    """
    _require_quantity(quantity)

    def _op():
        order = _lock_order(session, order_id, shop_id)
        _require_pending(order, "update items in")
        line = _find_line(order, line_id)

        delta = quantity - line.quantity
        if delta > 0:
            inventory_service.reserve(
                session,
                line.product_id,
                delta,
                actor_id=actor_id,
                reference_type=REFERENCE_TYPE,
                reference_id=order.id,
                note=f"Quantity increased on order {order.order_number}",
            )
        elif delta < 0:
            inventory_service.release(
                session,
                line.product_id,
                -delta,
                actor_id=actor_id,
                reference_type=REFERENCE_TYPE,
                reference_id=order.id,
                note=f"Quantity decreased on order {order.order_number}",
            )

        line.quantity = quantity
        line.total_price_cents = line.unit_price_cents * quantity
        _recompute_total(order)
        session.flush()
        return order

    order = run_in_transaction(session, _op)
    logger.info("Order id=%s line=%s quantity=%s", order.id, line_id, quantity)
    return order


def remove_line(
    session,
    *,
    order_id: int,
    line_id: int,
    actor_id: int | None = None,
    shop_id: int | None = None,
) -> Order:
    def _op():
        order = _lock_order(session, order_id, shop_id)
        _require_pending(order, "remove items from")
        line = _find_line(order, line_id)

        inventory_service.release(
            session,
            line.product_id,
            line.quantity,
            actor_id=actor_id,
            reference_type=REFERENCE_TYPE,
            reference_id=order.id,
            note=f"Removed from order {order.order_number}",
        )
        order.lines.remove(line)
        _recompute_total(order)
        session.flush()
        return order

    order = run_in_transaction(session, _op)
    logger.info("Order id=%s line=%s removed", order.id, line_id)
    return order


# =============================================================================
# DELETE
# =============================================================================

def delete_order(session, *, order_id: int, actor_id: int | None = None, shop_id: int | None = None) -> None:
    """
    Delete a pending order after releasing every line.

    Lines and status events go with the order; stock movements stay as the
    audit trail (their reference_id is not a foreign key).
    """
    def _op():
        order = _lock_order(session, order_id, shop_id)
        _require_pending(order, "delete")

        for line in order.lines:
            inventory_service.release(
                session,
                line.product_id,
                line.quantity,
                actor_id=actor_id,
                reference_type=REFERENCE_TYPE,
                reference_id=order.id,
                note=f"Order {order.order_number} deleted",
            )
        session.delete(order)
        session.flush()

    run_in_transaction(session, _op)
    logger.info("Order id=%s deleted actor=%s", order_id, actor_id)


# =============================================================================
# QUERIES
# =============================================================================

def get_order(session, order_id: int, shop_id: int | None = None) -> Order:
    order = session.get(Order, order_id)
    if order is None or (shop_id is not None and order.shop_id != shop_id):
        raise OrderNotFound(order_id)
    return order


def list_orders(session, shop_id: int, *, status: str | None = None, customer_id: int | None = None, limit: int = 100) -> list[Order]:
    query = session.query(Order).filter_by(shop_id=shop_id)
    if status:
        query = query.filter_by(status=status)
    if customer_id:
        query = query.filter_by(customer_id=customer_id)
    return query.order_by(Order.ordered_at.desc(), Order.id.desc()).limit(limit).all()


def list_status_events(session, order_id: int, shop_id: int | None = None) -> list[OrderStatusEvent]:
    order = get_order(session, order_id, shop_id)
    return list(order.status_events)
