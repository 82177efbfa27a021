"""
Order workflow tests: state machine, reservation lifecycle and line edits.
"""

import pytest

from conftest import make_product, OTHER_SHOP_ID, SHOP_ID
from shopledger.models import Order, OrderLine, OrderStatusEvent, StockMovement, StockRecord
from shopledger.services import order_service
from shopledger.services.errors import (
    CustomerNotFound,
    DuplicateOrderLine,
    InsufficientStock,
    InvalidAmount,
    InvalidStatusTransition,
    OrderLineNotFound,
    OrderNotEditable,
    OrderNotFound,
    ProductInactive,
    ProductNotFound,
)
from shopledger.services.ledger_service import verify_ledgers


def _counters(session, product_id):
    record = session.query(StockRecord).filter_by(product_id=product_id).populate_existing().one()
    return record.stock_quantity, record.available_quantity, record.reserved_quantity


def _order_movements(session, order_id):
    return (
        session.query(StockMovement)
        .filter_by(reference_type="order", reference_id=order_id)
        .order_by(StockMovement.id)
        .all()
    )


def _create(session, product, quantity, **kwargs):
    return order_service.create_order(
        session,
        shop_id=SHOP_ID,
        lines=[{"product_id": product.id, "quantity": quantity}],
        actor_id=7,
        **kwargs,
    )


def _move(session, order, *statuses, **kwargs):
    for status in statuses:
        order = order_service.transition_order(session, order_id=order.id, status=status, actor_id=7, **kwargs)
    return order


class TestCreateOrder:
    def test_create_reserves_stock_and_logs_creation(self, db_session, stocked_product, customer):
        order = _create(db_session, stocked_product, 3, customer_id=customer.id, shipping_address="1 Main St")

        assert order.status == "pending"
        assert order.payment_status == "pending"
        assert order.order_number.startswith("ORD-")
        assert order.total_amount_cents == 30000
        assert [(l.product_id, l.quantity, l.unit_price_cents) for l in order.lines] == [(stocked_product.id, 3, 10000)]
        assert _counters(db_session, stocked_product.id) == (10, 7, 3)

        events = order_service.list_status_events(db_session, order.id)
        assert [(e.from_status, e.status) for e in events] == [(None, "pending")]
        assert events[0].note == "Order created"

    def test_insufficient_stock_rolls_back_every_line(self, db_session, stocked_product, untaxed_product):
        with pytest.raises(InsufficientStock):
            order_service.create_order(
                db_session,
                shop_id=SHOP_ID,
                lines=[
                    {"product_id": untaxed_product.id, "quantity": 2},
                    {"product_id": stocked_product.id, "quantity": 11},
                ],
            )

        assert db_session.query(Order).count() == 0
        assert _counters(db_session, untaxed_product.id) == (10, 10, 0)
        assert db_session.query(StockMovement).filter_by(reference_type="order").count() == 0

    def test_duplicate_product_lines_rejected(self, db_session, stocked_product):
        with pytest.raises(DuplicateOrderLine):
            order_service.create_order(
                db_session,
                shop_id=SHOP_ID,
                lines=[
                    {"product_id": stocked_product.id, "quantity": 1},
                    {"product_id": stocked_product.id, "quantity": 1},
                ],
            )
        assert _counters(db_session, stocked_product.id) == (10, 10, 0)

    def test_empty_order_rejected(self, db_session):
        with pytest.raises(InvalidAmount):
            order_service.create_order(db_session, shop_id=SHOP_ID, lines=[])

    def test_inactive_and_foreign_products_rejected(self, db_session):
        inactive = make_product(db_session, sku="OLD-1", is_active=False, stock=5)
        foreign = make_product(db_session, sku="FOREIGN-1", shop_id=OTHER_SHOP_ID, stock=5)

        with pytest.raises(ProductInactive):
            _create(db_session, inactive, 1)
        with pytest.raises(ProductNotFound):
            _create(db_session, foreign, 1)

    def test_customer_must_belong_to_shop(self, db_session, stocked_product):
        with pytest.raises(CustomerNotFound):
            _create(db_session, stocked_product, 1, customer_id=424242)


class TestTransitions:
    def test_reserve_then_cancel_restores_available(self, db_session):
        product = make_product(db_session, sku="FIVE", stock=5)
        order = _create(db_session, product, 5)
        assert _counters(db_session, product.id) == (5, 0, 5)

        order = _move(db_session, order, "cancelled")

        assert order.status == "cancelled"
        assert _counters(db_session, product.id) == (5, 5, 0)
        movements = _order_movements(db_session, order.id)
        assert [(m.kind, m.quantity_delta) for m in movements] == [("sale", -5), ("adjustment", 5)]
        assert all(m.stock_after == 5 for m in movements)

    def test_full_lifecycle_consumes_on_ship(self, db_session, stocked_product):
        order = _create(db_session, stocked_product, 4)
        order = _move(db_session, order, "processing")
        assert _counters(db_session, stocked_product.id) == (10, 6, 4)

        order = order_service.transition_order(
            db_session, order_id=order.id, status="shipped", tracking_number="TRK-1", actor_id=7,
        )
        assert order.tracking_number == "TRK-1"
        assert _counters(db_session, stocked_product.id) == (6, 6, 0)

        order = _move(db_session, order, "delivered")
        assert order.delivery_date is not None
        assert order.payment_status == "paid"
        assert _counters(db_session, stocked_product.id) == (6, 6, 0)

        events = order_service.list_status_events(db_session, order.id)
        assert [e.status for e in events] == ["pending", "processing", "shipped", "delivered"]
        assert verify_ledgers(db_session) == []

    def test_cancel_after_shipping_returns_stock(self, db_session, stocked_product):
        order = _create(db_session, stocked_product, 4)
        order = _move(db_session, order, "processing", "shipped", "cancelled")

        assert _counters(db_session, stocked_product.id) == (10, 10, 0)
        assert verify_ledgers(db_session) == []

    @pytest.mark.parametrize("path,target", [
        ([], "shipped"),
        ([], "delivered"),
        ([], "pending"),
        (["processing"], "pending"),
        (["processing"], "processing"),
        (["processing", "shipped", "delivered"], "cancelled"),
        (["cancelled"], "processing"),
        ([], "bogus"),
    ])
    def test_illegal_transitions_have_no_side_effects(self, db_session, stocked_product, path, target):
        order = _move(db_session, _create(db_session, stocked_product, 2), *path)
        before_counters = _counters(db_session, stocked_product.id)
        before_events = db_session.query(OrderStatusEvent).count()
        status = order.status

        with pytest.raises(InvalidStatusTransition):
            _move(db_session, order, target)

        assert db_session.get(Order, order.id).status == status
        assert _counters(db_session, stocked_product.id) == before_counters
        assert db_session.query(OrderStatusEvent).count() == before_events

    def test_unknown_order(self, db_session):
        with pytest.raises(OrderNotFound):
            order_service.transition_order(db_session, order_id=999, status="processing")

    def test_other_shop_cannot_touch_order(self, db_session, stocked_product):
        order = _create(db_session, stocked_product, 1)
        with pytest.raises(OrderNotFound):
            order_service.transition_order(db_session, order_id=order.id, status="processing", shop_id=OTHER_SHOP_ID)


class TestLineEdits:
    def test_add_update_remove_lines(self, db_session, stocked_product, untaxed_product):
        order = _create(db_session, stocked_product, 2)

        order = order_service.add_line(db_session, order_id=order.id, product_id=untaxed_product.id, quantity=3)
        assert order.total_amount_cents == 50000
        assert _counters(db_session, untaxed_product.id) == (10, 7, 3)

        line = next(l for l in order.lines if l.product_id == untaxed_product.id)
        order = order_service.update_line(db_session, order_id=order.id, line_id=line.id, quantity=5)
        assert _counters(db_session, untaxed_product.id) == (10, 5, 5)
        assert order.total_amount_cents == 70000

        order = order_service.update_line(db_session, order_id=order.id, line_id=line.id, quantity=1)
        assert _counters(db_session, untaxed_product.id) == (10, 9, 1)

        order = order_service.remove_line(db_session, order_id=order.id, line_id=line.id)
        assert _counters(db_session, untaxed_product.id) == (10, 10, 0)
        assert order.total_amount_cents == 20000
        assert [l.product_id for l in order.lines] == [stocked_product.id]
        assert verify_ledgers(db_session) == []

    def test_add_existing_product_rejected(self, db_session, stocked_product):
        order = _create(db_session, stocked_product, 2)
        with pytest.raises(DuplicateOrderLine):
            order_service.add_line(db_session, order_id=order.id, product_id=stocked_product.id, quantity=1)

    def test_update_to_zero_rejected(self, db_session, stocked_product):
        order = _create(db_session, stocked_product, 2)
        with pytest.raises(InvalidAmount):
            order_service.update_line(db_session, order_id=order.id, line_id=order.lines[0].id, quantity=0)

    def test_update_beyond_available_fails(self, db_session, stocked_product):
        order = _create(db_session, stocked_product, 2)
        with pytest.raises(InsufficientStock):
            order_service.update_line(db_session, order_id=order.id, line_id=order.lines[0].id, quantity=11)
        assert _counters(db_session, stocked_product.id) == (10, 8, 2)

    def test_unknown_line(self, db_session, stocked_product):
        order = _create(db_session, stocked_product, 2)
        with pytest.raises(OrderLineNotFound):
            order_service.remove_line(db_session, order_id=order.id, line_id=9999)

    def test_lines_frozen_after_pending(self, db_session, stocked_product, untaxed_product):
        order = _move(db_session, _create(db_session, stocked_product, 2), "processing")
        with pytest.raises(OrderNotEditable):
            order_service.add_line(db_session, order_id=order.id, product_id=untaxed_product.id, quantity=1)
        with pytest.raises(OrderNotEditable):
            order_service.remove_line(db_session, order_id=order.id, line_id=order.lines[0].id)


class TestDetailsAndDelete:
    def test_details_editable_until_terminal(self, db_session, stocked_product):
        order = _move(db_session, _create(db_session, stocked_product, 1), "processing")
        order = order_service.update_order_details(
            db_session, order_id=order.id, fields={"shipping_method": "Courier", "notes": "Leave at door"},
        )
        assert order.shipping_method == "Courier"
        assert order.notes == "Leave at door"

        order = _move(db_session, order, "cancelled")
        with pytest.raises(OrderNotEditable):
            order_service.update_order_details(db_session, order_id=order.id, fields={"notes": "late"})

    def test_delete_pending_order_releases_and_keeps_movements(self, db_session, stocked_product):
        order = _create(db_session, stocked_product, 3)
        order_id = order.id

        order_service.delete_order(db_session, order_id=order_id, actor_id=7)

        assert db_session.get(Order, order_id) is None
        assert db_session.query(OrderLine).count() == 0
        assert db_session.query(OrderStatusEvent).count() == 0
        assert _counters(db_session, stocked_product.id) == (10, 10, 0)
        assert [m.quantity_delta for m in _order_movements(db_session, order_id)] == [-3, 3]

    def test_delete_requires_pending(self, db_session, stocked_product):
        order = _move(db_session, _create(db_session, stocked_product, 1), "processing")
        with pytest.raises(OrderNotEditable):
            order_service.delete_order(db_session, order_id=order.id)
