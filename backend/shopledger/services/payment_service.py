# Overview: Money ledger; payment records against a sale and the derived settlement status.

"""
Payment Processing Service

DESIGN PRINCIPLES:
- Payments are separate from sales (many-to-one relationship)
- Split payments: One sale can have multiple payments
- Partial payments: Payment can be less than total due
- Immutable ledger: payment_records rows are only ever added
- Sale row is locked while totals are read and the status is rewritten,
  so two concurrent payments cannot both fit into the same balance

PAYMENT STATUS (sale.payment_status):
- unpaid    -> paid | partial | cancelled
- partial   -> paid | unpaid | cancelled
- paid      -> refunded | partial
- refunded, cancelled: terminal
"""

from __future__ import annotations

import logging
import secrets

from sqlalchemy import func

from ..models import Sale, PaymentRecord, RefundRecord
from ..models.sales import (
    PAYMENT_STATUS_UNPAID,
    PAYMENT_STATUS_PARTIAL,
    PAYMENT_STATUS_PAID,
    PAYMENT_STATUS_REFUNDED,
    PAYMENT_STATUS_CANCELLED,
    RECORD_COMPLETED,
)
from shopledger.time_utils import utcnow
from .concurrency import lock_for_update, run_in_transaction
from .errors import (
    InvalidAmount,
    InvalidStatusTransition,
    PaymentExceedsBalance,
    SaleNotFound,
)

logger = logging.getLogger(__name__)


# =============================================================================
# PAYMENT METHODS (CONSTANTS)
# =============================================================================

METHOD_CASH = "cash"
METHOD_CARD = "card"
METHOD_MOBILE = "mobile"
METHOD_CREDIT = "credit"
METHOD_MIXED = "mixed"

VALID_PAYMENT_METHODS = [
    METHOD_CASH,
    METHOD_CARD,
    METHOD_MOBILE,
    METHOD_CREDIT,
    METHOD_MIXED,
]

VALID_PAYMENT_TRANSITIONS = {
    PAYMENT_STATUS_UNPAID: {PAYMENT_STATUS_PAID, PAYMENT_STATUS_PARTIAL, PAYMENT_STATUS_CANCELLED},
    PAYMENT_STATUS_PARTIAL: {PAYMENT_STATUS_PAID, PAYMENT_STATUS_UNPAID, PAYMENT_STATUS_CANCELLED},
    PAYMENT_STATUS_PAID: {PAYMENT_STATUS_REFUNDED, PAYMENT_STATUS_PARTIAL},
    PAYMENT_STATUS_REFUNDED: set(),
    PAYMENT_STATUS_CANCELLED: set(),
}


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in VALID_PAYMENT_TRANSITIONS.get(from_status, set())


def validate_payment_method(method: str) -> str:
    if method not in VALID_PAYMENT_METHODS:
        raise InvalidAmount(
            f"Invalid payment method: {method}. Must be one of {VALID_PAYMENT_METHODS}",
            details={"field": "payment_method", "value": method},
        )
    return method


def generate_reference_number() -> str:
    """8 upper-case hex characters."""
    return secrets.token_hex(4).upper()


# =============================================================================
# TOTALS
# =============================================================================

def lock_sale(session, sale_id: int) -> Sale:
    sale = lock_for_update(session.query(Sale).filter_by(id=sale_id)).populate_existing().first()
    if sale is None:
        raise SaleNotFound(sale_id)
    return sale


def paid_total(session, sale_id: int) -> int:
    total = (
        session.query(func.coalesce(func.sum(PaymentRecord.amount_cents), 0))
        .filter(PaymentRecord.sale_id == sale_id, PaymentRecord.status == RECORD_COMPLETED)
        .scalar()
    )
    return int(total or 0)


def refunded_total(session, sale_id: int) -> int:
    total = (
        session.query(func.coalesce(func.sum(RefundRecord.amount_cents), 0))
        .filter(RefundRecord.sale_id == sale_id, RefundRecord.status == RECORD_COMPLETED)
        .scalar()
    )
    return int(total or 0)


# =============================================================================
# LEDGER OPERATION
# =============================================================================

def apply_payment(
    session,
    sale: Sale,
    amount_cents: int,
    method: str,
    *,
    reference_number: str | None = None,
    actor_id: int | None = None,
) -> PaymentRecord:
    """
    Insert a completed payment and recompute the sale's payment status.

    The sale must already be locked by the caller. Flushes, never commits.
    """
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise InvalidAmount(
            "Payment amount must be positive",
            details={"sale_id": sale.id, "amount_cents": amount_cents},
        )
    validate_payment_method(method)

    if sale.payment_status in (PAYMENT_STATUS_REFUNDED, PAYMENT_STATUS_CANCELLED):
        raise InvalidStatusTransition("payment", sale.id, sale.payment_status, PAYMENT_STATUS_PAID)

    already_paid = paid_total(session, sale.id)
    balance = sale.total_amount_cents - already_paid
    if amount_cents > balance:
        raise PaymentExceedsBalance(sale.id, amount_cents, balance)

    payment = PaymentRecord(
        sale_id=sale.id,
        amount_cents=amount_cents,
        method=method,
        status=RECORD_COMPLETED,
        reference_number=reference_number or generate_reference_number(),
        actor_id=actor_id,
        paid_at=utcnow(),
    )
    session.add(payment)

    if already_paid + amount_cents >= sale.total_amount_cents:
        sale.payment_status = PAYMENT_STATUS_PAID
    else:
        sale.payment_status = PAYMENT_STATUS_PARTIAL

    session.flush()
    return payment


# =============================================================================
# TRANSACTIONAL ENTRY POINTS
# =============================================================================

def record_payment(
    session,
    *,
    sale_id: int,
    amount_cents: int,
    method: str,
    reference_number: str | None = None,
    actor_id: int | None = None,
) -> PaymentRecord:
    def _op():
        sale = lock_sale(session, sale_id)
        return apply_payment(
            session,
            sale,
            amount_cents,
            method,
            reference_number=reference_number,
            actor_id=actor_id,
        )

    payment = run_in_transaction(session, _op)
    logger.info(
        "Payment recorded sale=%s amount_cents=%s method=%s status=%s",
        sale_id,
        amount_cents,
        method,
        payment.sale.payment_status,
    )
    return payment


def set_payment_status(session, *, sale_id: int, status: str, actor_id: int | None = None) -> Sale:
    """Explicit status change, validated against VALID_PAYMENT_TRANSITIONS."""
    def _op():
        sale = lock_sale(session, sale_id)
        if status not in VALID_PAYMENT_TRANSITIONS:
            raise InvalidStatusTransition("payment", sale.id, sale.payment_status, status)
        if not can_transition(sale.payment_status, status):
            raise InvalidStatusTransition("payment", sale.id, sale.payment_status, status)
        sale.payment_status = status
        session.flush()
        return sale

    sale = run_in_transaction(session, _op)
    logger.info("Payment status set sale=%s status=%s actor=%s", sale_id, status, actor_id)
    return sale


# =============================================================================
# REPORTING
# =============================================================================

def get_payment_summary(session, sale_id: int) -> dict:
    sale = session.get(Sale, sale_id)
    if sale is None:
        raise SaleNotFound(sale_id)

    total_paid = paid_total(session, sale.id)
    total_refunded = refunded_total(session, sale.id)
    payments = (
        session.query(PaymentRecord)
        .filter_by(sale_id=sale.id)
        .order_by(PaymentRecord.id)
        .all()
    )

    return {
        "sale_id": sale.id,
        "invoice_number": sale.invoice_number,
        "total_amount_cents": sale.total_amount_cents,
        "total_paid_cents": total_paid,
        "total_refunded_cents": total_refunded,
        "balance_cents": sale.total_amount_cents - total_paid,
        "payment_status": sale.payment_status,
        "payment_count": len(payments),
        "payments": [p.to_dict() for p in payments],
    }
