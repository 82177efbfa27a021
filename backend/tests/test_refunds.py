"""
Refund workflow tests: limits, eligibility and proportional loyalty reversal.
"""

import pytest

from conftest import SHOP_ID
from shopledger.models import Customer, LoyaltyTransaction, RefundRecord
from shopledger.services import loyalty_service, refund_service, sales_service
from shopledger.services.concurrency import run_in_transaction
from shopledger.services.errors import (
    IneligibleForRefund,
    InsufficientPoints,
    InvalidAmount,
    RefundExceedsLimit,
    SaleNotFound,
)
from shopledger.services.ledger_service import verify_ledgers


@pytest.fixture
def paid_sale(db_session, stocked_product, customer):
    """3 x 100.00 at 10% tax: total 330.00, 33 points earned."""
    return sales_service.checkout(
        db_session,
        shop_id=SHOP_ID,
        lines=[{"product_id": stocked_product.id, "quantity": 3}],
        payment_method="cash",
        customer_id=customer.id,
    )


def _points(session, customer_id):
    return session.query(Customer).filter_by(id=customer_id).populate_existing().one().loyalty_points


def test_points_to_reverse():
    assert refund_service.points_to_reverse(33, 11000, 33000) == 11
    assert refund_service.points_to_reverse(33, 33000, 33000) == 33
    assert refund_service.points_to_reverse(10, 500, 1000) == 5
    assert refund_service.points_to_reverse(1, 500, 1000) == 1
    # capped by what earlier refunds already reversed
    assert refund_service.points_to_reverse(33, 33000, 33000, already_reversed=30) == 3
    assert refund_service.points_to_reverse(0, 1000, 1000) == 0


def test_partial_refund_reverses_proportional_points(db_session, paid_sale, customer):
    assert _points(db_session, customer.id) == 33

    record = refund_service.refund(db_session, sale_id=paid_sale.id, amount_cents=11000, reason="Damaged", actor_id=4)

    assert record.points_reversed == 11
    assert record.method == "cash"
    assert record.sale.payment_status == "paid"
    assert _points(db_session, customer.id) == 22

    debit = (
        db_session.query(LoyaltyTransaction)
        .filter_by(customer_id=customer.id, type="debit")
        .one()
    )
    assert debit.points == -11
    assert debit.sale_id == paid_sale.id
    assert verify_ledgers(db_session) == []


def test_refunding_the_rest_marks_sale_refunded(db_session, paid_sale, customer):
    refund_service.refund(db_session, sale_id=paid_sale.id, amount_cents=11000)
    last = refund_service.refund(db_session, sale_id=paid_sale.id, amount_cents=22000, method="card")

    assert last.sale.payment_status == "refunded"
    assert last.method == "card"
    assert last.points_reversed == 22
    assert _points(db_session, customer.id) == 0

    with pytest.raises(IneligibleForRefund):
        refund_service.refund(db_session, sale_id=paid_sale.id, amount_cents=1)
    assert verify_ledgers(db_session) == []


def test_repeated_partial_refunds_never_over_reverse(db_session, paid_sale, customer):
    # Each 15.00 refund rounds 1.5 points up to 2; the cap keeps the total at 33
    for _ in range(22):
        refund_service.refund(db_session, sale_id=paid_sale.id, amount_cents=1500)

    reversed_total = sum(r.points_reversed for r in refund_service.list_refunds(db_session, paid_sale.id))
    assert reversed_total == 33
    assert _points(db_session, customer.id) == 0


def test_refund_above_remaining_amount_rejected(db_session, paid_sale):
    refund_service.refund(db_session, sale_id=paid_sale.id, amount_cents=30000)

    with pytest.raises(RefundExceedsLimit) as exc:
        refund_service.refund(db_session, sale_id=paid_sale.id, amount_cents=3001)
    assert exc.value.details["refundable_cents"] == 3000
    assert db_session.query(RefundRecord).count() == 1


@pytest.mark.parametrize("amount", [0, -5])
def test_non_positive_refund_rejected(db_session, paid_sale, amount):
    with pytest.raises(InvalidAmount):
        refund_service.refund(db_session, sale_id=paid_sale.id, amount_cents=amount)


def test_only_paid_sales_are_refundable(db_session, untaxed_product):
    sale = sales_service.checkout(
        db_session,
        shop_id=SHOP_ID,
        lines=[{"product_id": untaxed_product.id, "quantity": 1}],
        payment_method="cash",
        amount_paid_cents=5000,
    )
    with pytest.raises(IneligibleForRefund) as exc:
        refund_service.refund(db_session, sale_id=sale.id, amount_cents=1000)
    assert exc.value.details["payment_status"] == "partial"


def test_unknown_sale(db_session):
    with pytest.raises(SaleNotFound):
        refund_service.refund(db_session, sale_id=404, amount_cents=100)


def test_spent_points_block_the_refund(db_session, paid_sale, customer):
    run_in_transaction(db_session, lambda: loyalty_service.debit(db_session, customer.id, 30, description="Spent"))

    with pytest.raises(InsufficientPoints):
        refund_service.refund(db_session, sale_id=paid_sale.id, amount_cents=33000)

    assert db_session.query(RefundRecord).count() == 0
    assert refund_service.list_refunds(db_session, paid_sale.id) == []
    assert _points(db_session, customer.id) == 3
