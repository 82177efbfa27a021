"""
Refund Processing Service

WHY: Money going back to a customer has to stay within what the sale took
in, and the loyalty points that sale earned have to shrink with it.

DESIGN PRINCIPLES:
- Only a fully paid sale can be refunded
- Refund records are immutable; the sum of completed refunds never
  exceeds the sale total (sale row locked while the sum is read)
- The refund that brings the total refunded up to the sale total flips
  payment_status to refunded
- Loyalty reversal is proportional to the refunded share of the sale total:
      round(points_earned * amount / total)
  capped at the points earned minus what earlier refunds already reversed,
  so repeated partial refunds never claw back more than was earned
"""

from __future__ import annotations

import logging

from sqlalchemy import func

from ..models import RefundRecord
from ..models.sales import PAYMENT_STATUS_PAID, PAYMENT_STATUS_REFUNDED, RECORD_COMPLETED
from shopledger.time_utils import utcnow
from . import loyalty_service, payment_service
from .concurrency import run_in_transaction
from .errors import IneligibleForRefund, InvalidAmount, RefundExceedsLimit
from .pricing import round_half_up

logger = logging.getLogger(__name__)


def points_to_reverse(points_earned: int, amount_cents: int, total_cents: int, already_reversed: int = 0) -> int:
    if points_earned <= 0 or total_cents <= 0:
        return 0
    proportional = round_half_up(points_earned * amount_cents, total_cents)
    return max(0, min(proportional, points_earned - already_reversed))


def _points_already_reversed(session, sale_id: int) -> int:
    total = (
        session.query(func.coalesce(func.sum(RefundRecord.points_reversed), 0))
        .filter(RefundRecord.sale_id == sale_id, RefundRecord.status == RECORD_COMPLETED)
        .scalar()
    )
    return int(total or 0)


def refund(
    session,
    *,
    sale_id: int,
    amount_cents: int,
    reason: str | None = None,
    method: str | None = None,
    actor_id: int | None = None,
) -> RefundRecord:
    """
    Refund part or all of a paid sale.

    Raises:
        SaleNotFound, IneligibleForRefund, InvalidAmount, RefundExceedsLimit,
        InsufficientPoints (customer already spent the points to reverse)
    """
    def _op():
        sale = payment_service.lock_sale(session, sale_id)

        if sale.payment_status != PAYMENT_STATUS_PAID:
            raise IneligibleForRefund(sale.id, sale.payment_status)

        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
            raise InvalidAmount(
                "Refund amount must be greater than zero",
                details={"sale_id": sale.id, "amount_cents": amount_cents},
            )

        already_refunded = payment_service.refunded_total(session, sale.id)
        refundable = sale.total_amount_cents - already_refunded
        if amount_cents > refundable:
            raise RefundExceedsLimit(sale.id, amount_cents, refundable)

        refund_method = method or sale.payment_method
        payment_service.validate_payment_method(refund_method)

        reversed_points = 0
        if sale.customer_id is not None and sale.loyalty_points_earned > 0:
            reversed_points = points_to_reverse(
                sale.loyalty_points_earned,
                amount_cents,
                sale.total_amount_cents,
                _points_already_reversed(session, sale.id),
            )

        record = RefundRecord(
            sale_id=sale.id,
            amount_cents=amount_cents,
            reason=reason,
            method=refund_method,
            status=RECORD_COMPLETED,
            points_reversed=reversed_points,
            actor_id=actor_id,
            refunded_at=utcnow(),
        )
        session.add(record)

        if already_refunded + amount_cents >= sale.total_amount_cents:
            sale.payment_status = PAYMENT_STATUS_REFUNDED

        if reversed_points > 0:
            loyalty_service.debit(
                session,
                sale.customer_id,
                reversed_points,
                description=f"Points reversed due to refund on invoice {sale.invoice_number}",
                sale_id=sale.id,
                actor_id=actor_id,
            )

        session.flush()
        return record

    record = run_in_transaction(session, _op)
    logger.info(
        "Refund recorded sale=%s amount_cents=%s points_reversed=%s status=%s actor=%s",
        sale_id,
        amount_cents,
        record.points_reversed,
        record.sale.payment_status,
        actor_id,
    )
    return record


def list_refunds(session, sale_id: int) -> list[RefundRecord]:
    return (
        session.query(RefundRecord)
        .filter_by(sale_id=sale_id)
        .order_by(RefundRecord.id)
        .all()
    )
