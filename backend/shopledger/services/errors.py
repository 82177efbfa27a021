# Overview: Typed business failures raised by the ledgers and workflows.

"""
Error taxonomy for the fulfillment and ledger core.

Every error is an expected, recoverable-at-the-boundary failure. Routes map
them to an HTTP status via status_code and return code + details so the
client can build a precise message without re-querying state.

Raising any of these inside run_in_transaction rolls the whole operation
back.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for business failures in the ledger core."""

    status_code = 400
    code = "LEDGER_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, "details": self.details}


# =============================================================================
# NOT FOUND (404)
# =============================================================================

class NotFound(LedgerError):
    status_code = 404
    code = "NOT_FOUND"
    entity = "entity"

    def __init__(self, entity_id, message: str | None = None):
        super().__init__(
            message or f"{self.entity.capitalize()} {entity_id} not found",
            details={"entity": self.entity, "id": entity_id},
        )


class ProductNotFound(NotFound):
    code = "PRODUCT_NOT_FOUND"
    entity = "product"


class OrderNotFound(NotFound):
    code = "ORDER_NOT_FOUND"
    entity = "order"


class OrderLineNotFound(NotFound):
    code = "ORDER_LINE_NOT_FOUND"
    entity = "order line"


class SaleNotFound(NotFound):
    code = "SALE_NOT_FOUND"
    entity = "sale"


class CustomerNotFound(NotFound):
    code = "CUSTOMER_NOT_FOUND"
    entity = "customer"


class RewardNotFound(NotFound):
    code = "REWARD_NOT_FOUND"
    entity = "reward"


class RedemptionNotFound(NotFound):
    code = "REDEMPTION_NOT_FOUND"
    entity = "redemption"


# =============================================================================
# BUSINESS RULE VIOLATIONS (400)
# =============================================================================

class ProductInactive(LedgerError):
    code = "PRODUCT_INACTIVE"

    def __init__(self, product_id: int, name: str | None = None):
        label = name or f"#{product_id}"
        super().__init__(
            f"Product {label} is inactive",
            details={"product_id": product_id, "product_name": name},
        )


class InsufficientStock(LedgerError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: int, requested: int, available: int, name: str | None = None):
        label = name or f"#{product_id}"
        super().__init__(
            f"Insufficient stock for product {label}: requested {requested}, available {available}",
            details={
                "product_id": product_id,
                "product_name": name,
                "requested_quantity": requested,
                "available_quantity": available,
            },
        )


class InsufficientLoyaltyPoints(LedgerError):
    """Checkout asked to spend more points than the customer holds."""
    code = "INSUFFICIENT_LOYALTY_POINTS"

    def __init__(self, customer_id: int, requested: int, balance: int):
        super().__init__(
            f"Customer {customer_id} has {balance} loyalty points, {requested} requested",
            details={"customer_id": customer_id, "requested_points": requested, "balance": balance},
        )


class InsufficientPoints(LedgerError):
    """A loyalty debit would drive the balance negative."""
    code = "INSUFFICIENT_POINTS"

    def __init__(self, customer_id: int, requested: int, balance: int):
        super().__init__(
            f"Debit of {requested} points exceeds balance of {balance} for customer {customer_id}",
            details={"customer_id": customer_id, "requested_points": requested, "balance": balance},
        )


class InsufficientTier(LedgerError):
    code = "INSUFFICIENT_TIER"

    def __init__(self, customer_id: int, tier: str, required_tier: str):
        super().__init__(
            f"This reward requires at least {required_tier} tier",
            details={"customer_id": customer_id, "tier": tier, "required_tier": required_tier},
        )


class InvalidStatusTransition(LedgerError):
    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, entity: str, entity_id, from_status: str, to_status: str):
        super().__init__(
            f"Invalid {entity} status transition from {from_status} to {to_status}",
            details={
                "entity": entity,
                "id": entity_id,
                "from_status": from_status,
                "to_status": to_status,
            },
        )


class InvalidAmount(LedgerError):
    code = "INVALID_AMOUNT"


class PaymentExceedsBalance(LedgerError):
    code = "PAYMENT_EXCEEDS_BALANCE"

    def __init__(self, sale_id: int, amount_cents: int, balance_cents: int):
        super().__init__(
            f"Payment of {amount_cents} exceeds remaining balance of {balance_cents}",
            details={"sale_id": sale_id, "amount_cents": amount_cents, "balance_cents": balance_cents},
        )


class RefundExceedsLimit(LedgerError):
    code = "REFUND_EXCEEDS_LIMIT"

    def __init__(self, sale_id: int, amount_cents: int, refundable_cents: int):
        super().__init__(
            f"Refund of {amount_cents} exceeds maximum allowed refund of {refundable_cents}",
            details={"sale_id": sale_id, "amount_cents": amount_cents, "refundable_cents": refundable_cents},
        )


class IneligibleForRefund(LedgerError):
    code = "INELIGIBLE_FOR_REFUND"

    def __init__(self, sale_id: int, payment_status: str):
        super().__init__(
            f"Cannot refund a sale with payment status: {payment_status}",
            details={"sale_id": sale_id, "payment_status": payment_status},
        )


class OrderNotEditable(LedgerError):
    code = "ORDER_ALREADY_PROCESSED"

    def __init__(self, order_id: int, status: str, action: str = "modify"):
        super().__init__(
            f"Cannot {action} order in status {status}",
            details={"order_id": order_id, "status": status},
        )


class DuplicateOrderLine(LedgerError):
    code = "ITEM_ALREADY_EXISTS"

    def __init__(self, order_id: int, product_id: int):
        super().__init__(
            "Item already exists in order. Update the line to change its quantity.",
            details={"order_id": order_id, "product_id": product_id},
        )


class RewardUnavailable(LedgerError):
    code = "REWARD_UNAVAILABLE"


# =============================================================================
# TRANSIENT (409)
# =============================================================================

class DuplicateInvoiceNumber(LedgerError):
    """Every generated invoice number collided; the caller may retry."""
    status_code = 409
    code = "DUPLICATE_INVOICE_NUMBER"


class ConcurrencyConflict(LedgerError):
    """Lock timeout or serialization failure that survived the retry."""
    status_code = 409
    code = "CONCURRENCY_CONFLICT"
