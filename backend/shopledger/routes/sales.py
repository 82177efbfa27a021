# Overview: Flask API routes for checkout, payments and refunds; parses input and returns JSON responses.

# backend/shopledger/routes/sales.py
"""Sales API routes with role enforcement"""

from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import db
from ..services import sales_service, payment_service, refund_service
from ..services.errors import LedgerError
from ..validation import (
    ValidationError,
    require_json_object,
    get_int,
    get_amount_cents,
    get_str,
    parse_lines,
)
from ..decorators import require_actor, require_role


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


# =============================================================================
# CHECKOUT
# =============================================================================

@sales_bp.post("/")
@require_actor
def checkout_route():
    """
    Single-shot checkout.

    Request body:
    {
        "lines": [{"product_id": 1, "quantity": 3, "discount_bps": 0}],
        "payment_method": "cash",
        "customer_id": 7,  (optional)
        "discount_amount_cents": 0,  (optional)
        "loyalty_points_used": 0,  (optional)
        "amount_paid_cents": 33000,  (optional, defaults to the total)
        "payment_reference": "AUTH-12345",  (optional)
        "notes": "..."  (optional)
    }

    Returns:
        201: Sale with lines and payments
        400: Invalid input or business rule violation
        404: Product or customer not found
        409: Concurrency conflict / invoice number exhausted
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        sale = sales_service.checkout(
            db.session,
            shop_id=g.shop_id,
            lines=parse_lines(data, allow_discount=True),
            payment_method=get_str(data, "payment_method", required=True),
            customer_id=get_int(data, "customer_id", minimum=1),
            discount_amount_cents=get_amount_cents(data, "discount_amount_cents", default=0),
            loyalty_points_used=get_int(data, "loyalty_points_used", default=0, minimum=0),
            amount_paid_cents=get_amount_cents(data, "amount_paid_cents"),
            payment_reference=get_str(data, "payment_reference", max_length=128),
            notes=get_str(data, "notes"),
            actor_id=g.actor_id,
        )
        return jsonify({"sale": sale.to_dict(include_lines=True)}), 201
    except (LedgerError, ValidationError) as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to complete checkout")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/")
@require_actor
def list_sales_route():
    try:
        sales = sales_service.list_sales(
            db.session,
            g.shop_id,
            customer_id=get_int(request.args, "customer_id", minimum=1),
            payment_status=request.args.get("payment_status"),
            limit=min(get_int(request.args, "limit", default=100, minimum=1), 500),
        )
        return jsonify({"sales": [s.to_dict() for s in sales]}), 200
    except ValidationError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list sales")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/<int:sale_id>")
@require_actor
def get_sale_route(sale_id: int):
    try:
        sale = sales_service.get_sale(db.session, sale_id, g.shop_id)
        return jsonify({"sale": sale.to_dict(include_lines=True)}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load sale")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# PAYMENTS
# =============================================================================

@sales_bp.post("/<int:sale_id>/payments")
@require_actor
def add_payment_route(sale_id: int):
    """
    Request body:
    {
        "amount_cents": 5000,
        "method": "card",  (optional, defaults to the sale's payment method)
        "reference_number": "AUTH-12345"  (optional)
    }
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        sale = sales_service.get_sale(db.session, sale_id, g.shop_id)
        payment = payment_service.record_payment(
            db.session,
            sale_id=sale.id,
            amount_cents=get_amount_cents(data, "amount_cents", required=True),
            method=get_str(data, "method") or sale.payment_method,
            reference_number=get_str(data, "reference_number", max_length=128),
            actor_id=g.actor_id,
        )
        return jsonify({
            "payment": payment.to_dict(),
            "summary": payment_service.get_payment_summary(db.session, sale.id),
        }), 201
    except (LedgerError, ValidationError) as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to record payment")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/<int:sale_id>/payments")
@require_actor
def payment_summary_route(sale_id: int):
    try:
        sale = sales_service.get_sale(db.session, sale_id, g.shop_id)
        return jsonify(payment_service.get_payment_summary(db.session, sale.id)), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load payment summary")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.patch("/<int:sale_id>/payment-status")
@require_actor
@require_role("manager")
def set_payment_status_route(sale_id: int):
    try:
        data = require_json_object(request.get_json(silent=True))
        sale = sales_service.get_sale(db.session, sale_id, g.shop_id)
        sale = payment_service.set_payment_status(
            db.session,
            sale_id=sale.id,
            status=get_str(data, "status", required=True),
            actor_id=g.actor_id,
        )
        return jsonify({"sale": sale.to_dict()}), 200
    except (LedgerError, ValidationError) as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to set payment status")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# REFUNDS
# =============================================================================

@sales_bp.post("/<int:sale_id>/refunds")
@require_actor
@require_role("manager")
def refund_route(sale_id: int):
    """
    Request body:
    {
        "amount_cents": 11000,
        "reason": "Damaged item",  (optional)
        "method": "cash"  (optional, defaults to the sale's payment method)
    }
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        sale = sales_service.get_sale(db.session, sale_id, g.shop_id)
        record = refund_service.refund(
            db.session,
            sale_id=sale.id,
            amount_cents=get_amount_cents(data, "amount_cents", required=True),
            reason=get_str(data, "reason", max_length=255),
            method=get_str(data, "method"),
            actor_id=g.actor_id,
        )
        return jsonify({"refund": record.to_dict(), "sale": record.sale.to_dict()}), 201
    except (LedgerError, ValidationError) as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to record refund")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/<int:sale_id>/refunds")
@require_actor
def list_refunds_route(sale_id: int):
    try:
        sale = sales_service.get_sale(db.session, sale_id, g.shop_id)
        refunds = refund_service.list_refunds(db.session, sale.id)
        return jsonify({"refunds": [r.to_dict() for r in refunds]}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list refunds")
        return jsonify({"error": "Internal server error"}), 500
