"""
Sales Service - single-shot checkout

WHY: A checkout is one atomic unit of work: the Sale and its lines, the
stock consumption, the payment and the loyalty adjustments either all
commit together or none of them do.

ORDER OF WORK (inside one transaction):
1. Lock the customer (if any) and check the loyalty points to spend.
2. Load every product, price every line.
3. Pick an invoice number, insert the Sale and its lines.
4. Consume stock straight from available_quantity for every line.
5. Record the payment (amount_paid, defaults to the total).
6. Debit loyalty_points_used, then credit loyalty_points_earned.

Invoice numbers are random (INV-<yyyymmdd>-<4 digits>). A collision raises
DuplicateInvoiceNumber and the whole checkout is retried with a fresh
number, up to INVOICE_NUMBER_ATTEMPTS.
"""

from __future__ import annotations

import logging
import secrets

from flask import current_app, has_app_context
from sqlalchemy.exc import IntegrityError

from ..models import Customer, Product, Sale, SaleLine
from ..models.sales import PAYMENT_STATUS_PAID, PAYMENT_STATUS_UNPAID
from shopledger.time_utils import utcnow, date_stamp
from . import inventory_service, loyalty_service, payment_service
from .concurrency import lock_for_update, run_in_transaction
from .errors import (
    CustomerNotFound,
    DuplicateInvoiceNumber,
    InsufficientLoyaltyPoints,
    InsufficientStock,
    InvalidAmount,
    ProductInactive,
    ProductNotFound,
    SaleNotFound,
)
from .pricing import price_line, BPS_DENOMINATOR

logger = logging.getLogger(__name__)

REFERENCE_TYPE = "sale"
DEFAULT_INVOICE_ATTEMPTS = 5


def generate_invoice_number() -> str:
    return f"INV-{date_stamp()}-{secrets.randbelow(10000):04d}"


def _non_negative_int(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidAmount(
            f"{field} must be a non-negative integer",
            details={"field": field, "value": value},
        )
    return value


def _validate_available(session, products: dict[int, Product], requested: dict[int, int]) -> None:
    """Fail before any write when a product cannot cover its summed quantity."""
    for product_id, quantity in requested.items():
        record = inventory_service.get_stock_record(session, product_id)
        if record.available_quantity < quantity:
            raise InsufficientStock(
                product_id,
                quantity,
                record.available_quantity,
                products[product_id].name,
            )


def _load_products(session, shop_id: int, lines: list[dict]) -> tuple[dict[int, Product], dict[int, int]]:
    products: dict[int, Product] = {}
    requested: dict[int, int] = {}
    for item in lines:
        product_id = item.get("product_id")
        quantity = item.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidAmount(
                "quantity must be a positive integer",
                details={"field": "quantity", "product_id": product_id, "value": quantity},
            )
        discount_bps = _non_negative_int(item.get("discount_bps", 0), "discount_bps")
        if discount_bps > BPS_DENOMINATOR:
            raise InvalidAmount(
                "discount_bps cannot exceed 10000",
                details={"field": "discount_bps", "product_id": product_id, "value": discount_bps},
            )

        product = products.get(product_id) or session.get(Product, product_id)
        if product is None or product.shop_id != shop_id:
            raise ProductNotFound(product_id)
        if not product.is_active:
            raise ProductInactive(product_id, product.name)

        products[product_id] = product
        requested[product_id] = requested.get(product_id, 0) + quantity
    return products, requested


def _invoice_attempts() -> int:
    if has_app_context():
        return current_app.config.get("INVOICE_NUMBER_ATTEMPTS", DEFAULT_INVOICE_ATTEMPTS)
    return DEFAULT_INVOICE_ATTEMPTS


def _insert_sale(session, sale: Sale) -> None:
    taken = session.query(Sale.id).filter_by(invoice_number=sale.invoice_number).first()
    if taken is not None:
        raise DuplicateInvoiceNumber(
            f"Invoice number {sale.invoice_number} already exists",
            details={"invoice_number": sale.invoice_number},
        )
    session.add(sale)
    try:
        session.flush()
    except IntegrityError as exc:
        if "invoice_number" not in str(exc.orig):
            raise
        raise DuplicateInvoiceNumber(
            f"Invoice number {sale.invoice_number} already exists",
            details={"invoice_number": sale.invoice_number},
        ) from exc


def checkout(
    session,
    *,
    shop_id: int,
    lines: list[dict],
    payment_method: str,
    customer_id: int | None = None,
    discount_amount_cents: int = 0,
    loyalty_points_used: int = 0,
    amount_paid_cents: int | None = None,
    payment_reference: str | None = None,
    notes: str | None = None,
    actor_id: int | None = None,
) -> Sale:
    """
    Create a completed sale.

    lines: [{"product_id": int, "quantity": int, "discount_bps": int?}, ...]

    discount_amount_cents is a sale-level discount on top of per-line
    discounts; Sale.discount_amount_cents stores both, so
    total = subtotal - Sale.discount_amount_cents + tax, which is the sum of
    the line totals less the sale-level discount.
    """
    if not lines:
        raise InvalidAmount("Sale must contain at least one line", details={"field": "lines"})
    payment_service.validate_payment_method(payment_method)
    _non_negative_int(discount_amount_cents, "discount_amount_cents")
    _non_negative_int(loyalty_points_used, "loyalty_points_used")
    if amount_paid_cents is not None:
        _non_negative_int(amount_paid_cents, "amount_paid_cents")
    if loyalty_points_used and customer_id is None:
        raise InvalidAmount(
            "loyalty_points_used requires a customer",
            details={"field": "loyalty_points_used", "value": loyalty_points_used},
        )

    def _op():
        customer = None
        if customer_id is not None:
            customer = lock_for_update(
                session.query(Customer).filter_by(id=customer_id)
            ).populate_existing().first()
            if customer is None or customer.shop_id != shop_id:
                raise CustomerNotFound(customer_id)
            if loyalty_points_used > (customer.loyalty_points or 0):
                raise InsufficientLoyaltyPoints(customer.id, loyalty_points_used, customer.loyalty_points or 0)

        products, requested = _load_products(session, shop_id, lines)
        _validate_available(session, products, requested)

        priced = []
        for item in lines:
            product = products[item["product_id"]]
            priced.append((product, price_line(
                unit_price_cents=product.selling_price_cents,
                quantity=item["quantity"],
                discount_bps=item.get("discount_bps", 0),
                tax_rate_bps=product.tax_rate_bps,
                is_taxable=product.is_taxable,
            )))

        subtotal = sum(p.subtotal_cents for _, p in priced)
        line_discounts = sum(p.discount_amount_cents for _, p in priced)
        tax_amount = sum(p.tax_amount_cents for _, p in priced)
        discount_total = discount_amount_cents + line_discounts
        total = subtotal - discount_total + tax_amount
        if total < 0:
            raise InvalidAmount(
                "Discount exceeds sale amount",
                details={"discount_amount_cents": discount_amount_cents, "subtotal_cents": subtotal},
            )

        points_earned = loyalty_service.points_for_amount(total) if customer is not None else 0

        sale = Sale(
            shop_id=shop_id,
            invoice_number=generate_invoice_number(),
            customer_id=customer.id if customer is not None else None,
            actor_id=actor_id,
            subtotal_cents=subtotal,
            discount_amount_cents=discount_total,
            tax_amount_cents=tax_amount,
            total_amount_cents=total,
            payment_method=payment_method,
            payment_status=PAYMENT_STATUS_UNPAID,
            loyalty_points_earned=points_earned,
            loyalty_points_used=loyalty_points_used,
            notes=notes,
            sold_at=utcnow(),
        )
        _insert_sale(session, sale)

        for product, price in priced:
            session.add(SaleLine(
                sale_id=sale.id,
                product_id=product.id,
                quantity=price.quantity,
                unit_price_cents=price.unit_price_cents,
                discount_bps=price.discount_bps,
                discount_amount_cents=price.discount_amount_cents,
                tax_rate_bps=price.tax_rate_bps,
                tax_amount_cents=price.tax_amount_cents,
                subtotal_cents=price.subtotal_cents,
                total_cents=price.total_cents,
            ))
            inventory_service.consume(
                session,
                product.id,
                price.quantity,
                from_reservation=False,
                actor_id=actor_id,
                reference_type=REFERENCE_TYPE,
                reference_id=sale.id,
                note=f"Sale {sale.invoice_number}",
            )

        amount_paid = total if amount_paid_cents is None else amount_paid_cents
        if amount_paid > 0:
            payment_service.apply_payment(
                session,
                sale,
                amount_paid,
                payment_method,
                reference_number=payment_reference,
                actor_id=actor_id,
            )
        elif total == 0:
            sale.payment_status = PAYMENT_STATUS_PAID

        if customer is not None:
            if loyalty_points_used > 0:
                loyalty_service.debit(
                    session,
                    customer.id,
                    loyalty_points_used,
                    description=f"Points used for sale {sale.invoice_number}",
                    sale_id=sale.id,
                    actor_id=actor_id,
                )
            if points_earned > 0:
                loyalty_service.credit(
                    session,
                    customer.id,
                    points_earned,
                    description=f"Points earned from sale {sale.invoice_number}",
                    sale_id=sale.id,
                    actor_id=actor_id,
                )

        session.flush()
        return sale

    attempts = _invoice_attempts()
    for attempt in range(attempts):
        try:
            sale = run_in_transaction(session, _op)
            break
        except DuplicateInvoiceNumber as exc:
            if attempt >= attempts - 1:
                raise
            logger.warning(
                "Invoice number collision (%s), retrying checkout %s/%s",
                exc.details.get("invoice_number"),
                attempt + 2,
                attempts,
            )

    logger.info(
        "Checkout sale=%s invoice=%s total_cents=%s status=%s customer=%s points=+%s/-%s actor=%s",
        sale.id,
        sale.invoice_number,
        sale.total_amount_cents,
        sale.payment_status,
        sale.customer_id,
        sale.loyalty_points_earned,
        sale.loyalty_points_used,
        actor_id,
    )
    return sale


# =============================================================================
# QUERIES
# =============================================================================

def get_sale(session, sale_id: int, shop_id: int | None = None) -> Sale:
    sale = session.get(Sale, sale_id)
    if sale is None or (shop_id is not None and sale.shop_id != shop_id):
        raise SaleNotFound(sale_id)
    return sale


def list_sales(session, shop_id: int, *, customer_id: int | None = None, payment_status: str | None = None, limit: int = 100) -> list[Sale]:
    query = session.query(Sale).filter_by(shop_id=shop_id)
    if customer_id:
        query = query.filter_by(customer_id=customer_id)
    if payment_status:
        query = query.filter_by(payment_status=payment_status)
    return query.order_by(Sale.sold_at.desc(), Sale.id.desc()).limit(limit).all()
