"""
Checkout tests: pricing, atomicity, stock consumption, payment and loyalty.
"""

import pytest

from conftest import make_product, OTHER_SHOP_ID, SHOP_ID
from shopledger.models import Customer, PaymentRecord, Sale, SaleLine, StockMovement, StockRecord
from shopledger.services import order_service, sales_service
from shopledger.services.errors import (
    CustomerNotFound,
    DuplicateInvoiceNumber,
    InsufficientLoyaltyPoints,
    InsufficientStock,
    InvalidAmount,
    ProductInactive,
    ProductNotFound,
)
from shopledger.services.ledger_service import verify_ledgers
from shopledger.services.pricing import price_line, round_half_up


def _counters(session, product_id):
    record = session.query(StockRecord).filter_by(product_id=product_id).populate_existing().one()
    return record.stock_quantity, record.available_quantity, record.reserved_quantity


def _checkout(session, product, quantity, **kwargs):
    kwargs.setdefault("payment_method", "cash")
    return sales_service.checkout(
        session,
        shop_id=SHOP_ID,
        lines=[{"product_id": product.id, "quantity": quantity}],
        actor_id=3,
        **kwargs,
    )


class TestPricing:
    def test_round_half_up(self):
        assert round_half_up(5, 10) == 1
        assert round_half_up(4, 10) == 0
        assert round_half_up(15, 10) == 2
        assert round_half_up(-5, 10) == -1

    def test_price_line_with_discount_and_tax(self):
        price = price_line(unit_price_cents=999, quantity=3, discount_bps=1000, tax_rate_bps=825)

        assert price.subtotal_cents == 2997
        assert price.discount_amount_cents == 300
        assert price.tax_amount_cents == 223
        assert price.total_cents == 2997 - 300 + 223

    def test_untaxable_product_has_zero_tax(self):
        price = price_line(unit_price_cents=1000, quantity=2, tax_rate_bps=1000, is_taxable=False)
        assert price.tax_amount_cents == 0
        assert price.tax_rate_bps == 0
        assert price.total_cents == 2000


class TestCheckout:
    def test_checkout_totals_stock_payment_and_points(self, db_session, stocked_product, customer):
        sale = _checkout(db_session, stocked_product, 3, customer_id=customer.id)

        assert sale.subtotal_cents == 30000
        assert sale.tax_amount_cents == 3000
        assert sale.discount_amount_cents == 0
        assert sale.total_amount_cents == 33000
        assert sale.payment_status == "paid"
        assert sale.invoice_number.startswith("INV-")
        assert sale.loyalty_points_earned == 33

        assert _counters(db_session, stocked_product.id) == (7, 7, 0)
        movement = db_session.query(StockMovement).filter_by(reference_type="sale", reference_id=sale.id).one()
        assert (movement.kind, movement.quantity_delta) == ("sale", -3)

        payment = db_session.query(PaymentRecord).filter_by(sale_id=sale.id).one()
        assert payment.amount_cents == 33000
        assert len(payment.reference_number) == 8

        assert db_session.get(Customer, customer.id).loyalty_points == 33
        assert verify_ledgers(db_session) == []

    def test_line_and_sale_discounts_reduce_total(self, db_session, untaxed_product):
        sale = sales_service.checkout(
            db_session,
            shop_id=SHOP_ID,
            lines=[{"product_id": untaxed_product.id, "quantity": 2, "discount_bps": 2500}],
            payment_method="card",
            discount_amount_cents=1000,
        )

        assert sale.subtotal_cents == 20000
        assert sale.discount_amount_cents == 5000 + 1000
        assert sale.total_amount_cents == 14000
        line = db_session.query(SaleLine).filter_by(sale_id=sale.id).one()
        assert line.discount_amount_cents == 5000
        assert line.total_cents == 15000

    def test_taxed_line_discount_total_matches_line_totals(self, db_session, stocked_product, customer):
        # 3 x 100.00 at 10% tax, 10% off the line, 7.00 off the sale
        sale = sales_service.checkout(
            db_session,
            shop_id=SHOP_ID,
            lines=[{"product_id": stocked_product.id, "quantity": 3, "discount_bps": 1000}],
            payment_method="cash",
            customer_id=customer.id,
            discount_amount_cents=700,
        )

        line = db_session.query(SaleLine).filter_by(sale_id=sale.id).one()
        assert (line.subtotal_cents, line.discount_amount_cents, line.tax_amount_cents) == (30000, 3000, 2700)
        assert line.total_cents == 29700

        assert sale.subtotal_cents == 30000
        assert sale.discount_amount_cents == 3000 + 700
        assert sale.tax_amount_cents == 2700
        assert sale.total_amount_cents == sale.subtotal_cents - sale.discount_amount_cents + sale.tax_amount_cents == 29000
        assert sale.total_amount_cents == line.total_cents - 700
        assert sale.loyalty_points_earned == 29

    def test_anonymous_sale_earns_no_points(self, db_session, stocked_product):
        sale = _checkout(db_session, stocked_product, 1)
        assert sale.customer_id is None
        assert sale.loyalty_points_earned == 0

    def test_partial_and_zero_payment(self, db_session, untaxed_product):
        partial = _checkout(db_session, untaxed_product, 1, amount_paid_cents=4000)
        assert partial.payment_status == "partial"
        assert db_session.query(PaymentRecord).filter_by(sale_id=partial.id).one().amount_cents == 4000

        unpaid = _checkout(db_session, untaxed_product, 1, amount_paid_cents=0)
        assert unpaid.payment_status == "unpaid"
        assert db_session.query(PaymentRecord).filter_by(sale_id=unpaid.id).count() == 0

    def test_free_sale_is_paid(self, db_session, untaxed_product):
        sale = sales_service.checkout(
            db_session,
            shop_id=SHOP_ID,
            lines=[{"product_id": untaxed_product.id, "quantity": 1, "discount_bps": 10000}],
            payment_method="cash",
        )
        assert sale.total_amount_cents == 0
        assert sale.payment_status == "paid"

    def test_spending_points(self, db_session, stocked_product, customer):
        _checkout(db_session, stocked_product, 3, customer_id=customer.id)

        sale = _checkout(db_session, stocked_product, 1, customer_id=customer.id, loyalty_points_used=20)

        assert sale.loyalty_points_used == 20
        assert sale.loyalty_points_earned == 11
        assert db_session.get(Customer, customer.id).loyalty_points == 33 - 20 + 11
        assert verify_ledgers(db_session) == []

    def test_spending_more_points_than_held(self, db_session, stocked_product, customer):
        with pytest.raises(InsufficientLoyaltyPoints) as exc:
            _checkout(db_session, stocked_product, 1, customer_id=customer.id, loyalty_points_used=5)

        assert exc.value.details["balance"] == 0
        assert db_session.query(Sale).count() == 0
        assert _counters(db_session, stocked_product.id) == (10, 10, 0)

    def test_points_without_customer_rejected(self, db_session, stocked_product):
        with pytest.raises(InvalidAmount):
            _checkout(db_session, stocked_product, 1, loyalty_points_used=5)

    def test_discount_larger_than_sale_rejected(self, db_session, untaxed_product):
        with pytest.raises(InvalidAmount):
            _checkout(db_session, untaxed_product, 1, discount_amount_cents=10001)
        assert db_session.query(Sale).count() == 0

    def test_invalid_payment_method(self, db_session, stocked_product):
        with pytest.raises(InvalidAmount):
            _checkout(db_session, stocked_product, 1, payment_method="barter")

    def test_unknown_inactive_and_foreign_products(self, db_session):
        inactive = make_product(db_session, sku="OLD-2", is_active=False, stock=3)
        foreign = make_product(db_session, sku="FOREIGN-2", shop_id=OTHER_SHOP_ID, stock=3)

        with pytest.raises(ProductInactive):
            _checkout(db_session, inactive, 1)
        with pytest.raises(ProductNotFound):
            _checkout(db_session, foreign, 1)
        with pytest.raises(ProductNotFound):
            sales_service.checkout(db_session, shop_id=SHOP_ID, lines=[{"product_id": 9999, "quantity": 1}], payment_method="cash")

    def test_unknown_customer(self, db_session, stocked_product):
        with pytest.raises(CustomerNotFound):
            _checkout(db_session, stocked_product, 1, customer_id=9999)


class TestAtomicity:
    def test_multi_line_shortage_writes_nothing(self, db_session, stocked_product, untaxed_product, customer):
        with pytest.raises(InsufficientStock) as exc:
            sales_service.checkout(
                db_session,
                shop_id=SHOP_ID,
                lines=[
                    {"product_id": untaxed_product.id, "quantity": 2},
                    {"product_id": stocked_product.id, "quantity": 11},
                ],
                payment_method="cash",
                customer_id=customer.id,
            )

        assert exc.value.details["product_id"] == stocked_product.id
        assert db_session.query(Sale).count() == 0
        assert db_session.query(SaleLine).count() == 0
        assert db_session.query(PaymentRecord).count() == 0
        assert _counters(db_session, untaxed_product.id) == (10, 10, 0)
        assert db_session.get(Customer, customer.id).loyalty_points == 0

    def test_repeated_product_lines_are_summed_for_availability(self, db_session):
        product = make_product(db_session, sku="THREE", stock=3)
        with pytest.raises(InsufficientStock):
            sales_service.checkout(
                db_session,
                shop_id=SHOP_ID,
                lines=[{"product_id": product.id, "quantity": 2}, {"product_id": product.id, "quantity": 2}],
                payment_method="cash",
            )
        assert _counters(db_session, product.id) == (3, 3, 0)

    def test_last_unit_sold_once(self, db_session):
        product = make_product(db_session, sku="LAST", stock=1)

        _checkout(db_session, product, 1)
        with pytest.raises(InsufficientStock):
            _checkout(db_session, product, 1)

        assert _counters(db_session, product.id) == (0, 0, 0)
        assert db_session.query(Sale).count() == 1

    def test_checkout_cannot_sell_units_reserved_by_orders(self, db_session):
        product = make_product(db_session, sku="SHARED", stock=2)
        order_service.create_order(db_session, shop_id=SHOP_ID, lines=[{"product_id": product.id, "quantity": 2}])

        with pytest.raises(InsufficientStock):
            _checkout(db_session, product, 1)
        assert _counters(db_session, product.id) == (2, 0, 2)


class TestInvoiceNumbers:
    def test_collision_is_retried_with_fresh_number(self, db_session, stocked_product, monkeypatch):
        first = _checkout(db_session, stocked_product, 1)
        numbers = iter([first.invoice_number, "INV-20261017-0001"])
        monkeypatch.setattr(sales_service, "generate_invoice_number", lambda: next(numbers))

        second = _checkout(db_session, stocked_product, 1)

        assert second.invoice_number == "INV-20261017-0001"
        assert _counters(db_session, stocked_product.id) == (8, 8, 0)

    def test_collision_surfaces_after_all_attempts(self, app, db_session, stocked_product, monkeypatch):
        taken = _checkout(db_session, stocked_product, 1).invoice_number
        monkeypatch.setattr(sales_service, "generate_invoice_number", lambda: taken)
        monkeypatch.setitem(app.config, "INVOICE_NUMBER_ATTEMPTS", 3)

        with pytest.raises(DuplicateInvoiceNumber):
            _checkout(db_session, stocked_product, 1)

        assert db_session.query(Sale).count() == 1
        assert _counters(db_session, stocked_product.id) == (9, 9, 0)
