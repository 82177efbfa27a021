# Overview: Integer-cent pricing arithmetic shared by checkout and refunds.

from __future__ import annotations

from dataclasses import dataclass

BPS_DENOMINATOR = 10_000


def round_half_up(numerator: int, denominator: int) -> int:
    """Integer division rounded half away from zero (0.5 -> 1)."""
    if denominator <= 0:
        raise ValueError("denominator must be positive")
    if numerator < 0:
        return -round_half_up(-numerator, denominator)
    return (2 * numerator + denominator) // (2 * denominator)


def apply_bps(amount_cents: int, bps: int) -> int:
    """amount * bps / 10000, rounded half-up. 1000 bps = 10%."""
    return round_half_up(amount_cents * bps, BPS_DENOMINATOR)


@dataclass(frozen=True)
class LinePrice:
    quantity: int
    unit_price_cents: int
    discount_bps: int
    discount_amount_cents: int
    tax_rate_bps: int
    tax_amount_cents: int
    subtotal_cents: int
    total_cents: int


def price_line(*, unit_price_cents: int, quantity: int, discount_bps: int = 0, tax_rate_bps: int = 0, is_taxable: bool = True) -> LinePrice:
    """
    subtotal = unit_price * quantity
    discount = subtotal * discount_bps
    tax      = (subtotal - discount) * tax_rate_bps   (0 when not taxable)
    total    = subtotal - discount + tax
    """
    subtotal = unit_price_cents * quantity
    discount = apply_bps(subtotal, discount_bps)
    taxable = subtotal - discount
    rate = tax_rate_bps if is_taxable else 0
    tax = apply_bps(taxable, rate)
    return LinePrice(
        quantity=quantity,
        unit_price_cents=unit_price_cents,
        discount_bps=discount_bps,
        discount_amount_cents=discount,
        tax_rate_bps=rate,
        tax_amount_cents=tax,
        subtotal_cents=subtotal,
        total_cents=taxable + tax,
    )
