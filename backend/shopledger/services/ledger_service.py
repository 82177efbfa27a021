# Overview: Read-only consistency check across the stock, loyalty and money ledgers.

from __future__ import annotations

from sqlalchemy import func

from ..models import Customer, LoyaltyTransaction, PaymentRecord, RefundRecord, Sale, StockMovement, StockRecord
from ..models.sales import RECORD_COMPLETED
"""
Ledger Invariants (checked by verify_ledgers)

- stock:    stock_quantity == available_quantity + reserved_quantity, all >= 0,
            and the newest StockMovement snapshot matches the record.
- loyalty:  customer.loyalty_points == sum(LoyaltyTransaction.points).
- money:    sum(completed payments) <= total and sum(completed refunds) <= total.

No writes. Each violation is a dict {"ledger", "entity_id", "message", ...}.
"""


def _stock_violations(session) -> list[dict]:
    violations = []
    for record in session.query(StockRecord).order_by(StockRecord.product_id):
        counters = (record.stock_quantity, record.available_quantity, record.reserved_quantity)
        if min(counters) < 0 or record.stock_quantity != record.available_quantity + record.reserved_quantity:
            violations.append({
                "ledger": "stock",
                "entity_id": record.product_id,
                "message": "stock_quantity != available_quantity + reserved_quantity or negative counter",
                "stock_quantity": record.stock_quantity,
                "available_quantity": record.available_quantity,
                "reserved_quantity": record.reserved_quantity,
            })
            continue

        last = (
            session.query(StockMovement)
            .filter_by(product_id=record.product_id)
            .order_by(StockMovement.id.desc())
            .first()
        )
        if last is not None and (last.stock_after, last.available_after, last.reserved_after) != counters:
            violations.append({
                "ledger": "stock",
                "entity_id": record.product_id,
                "message": "latest movement snapshot does not match stock record",
                "movement_id": last.id,
            })
    return violations


def _loyalty_violations(session) -> list[dict]:
    sums = dict(
        session.query(LoyaltyTransaction.customer_id, func.coalesce(func.sum(LoyaltyTransaction.points), 0))
        .group_by(LoyaltyTransaction.customer_id)
        .all()
    )
    violations = []
    for customer in session.query(Customer).order_by(Customer.id):
        folded = int(sums.get(customer.id, 0))
        if customer.loyalty_points != folded or customer.loyalty_points < 0:
            violations.append({
                "ledger": "loyalty",
                "entity_id": customer.id,
                "message": "loyalty_points does not equal the sum of loyalty transactions",
                "loyalty_points": customer.loyalty_points,
                "transactions_sum": folded,
            })
    return violations


def _money_violations(session) -> list[dict]:
    paid = dict(
        session.query(PaymentRecord.sale_id, func.sum(PaymentRecord.amount_cents))
        .filter(PaymentRecord.status == RECORD_COMPLETED)
        .group_by(PaymentRecord.sale_id)
        .all()
    )
    refunded = dict(
        session.query(RefundRecord.sale_id, func.sum(RefundRecord.amount_cents))
        .filter(RefundRecord.status == RECORD_COMPLETED)
        .group_by(RefundRecord.sale_id)
        .all()
    )

    violations = []
    for sale in session.query(Sale).order_by(Sale.id):
        total_paid = int(paid.get(sale.id, 0) or 0)
        total_refunded = int(refunded.get(sale.id, 0) or 0)
        if total_paid > sale.total_amount_cents:
            violations.append({
                "ledger": "money",
                "entity_id": sale.id,
                "message": "payments exceed sale total",
                "total_amount_cents": sale.total_amount_cents,
                "total_paid_cents": total_paid,
            })
        if total_refunded > sale.total_amount_cents:
            violations.append({
                "ledger": "money",
                "entity_id": sale.id,
                "message": "refunds exceed sale total",
                "total_amount_cents": sale.total_amount_cents,
                "total_refunded_cents": total_refunded,
            })
    return violations


def verify_ledgers(session) -> list[dict]:
    """Run every ledger check; an empty list means the store is consistent."""
    return _stock_violations(session) + _loyalty_violations(session) + _money_violations(session)
