# Overview: Flask API routes for the order workflow; parses input and returns JSON responses.

# backend/shopledger/routes/orders.py
"""
Order Workflow API Routes

DESIGN:
- Create orders (stock reserved immediately)
- Status transitions drive reservation release / consumption
- Line edits and deletion only while pending
- Cancelling and deleting are manager / admin actions
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import db
from ..models import Order
from ..services import order_service
from ..services.errors import LedgerError
from ..validation import (
    ValidationError,
    ModelValidationPolicy,
    validate_payload,
    require_json_object,
    get_int,
    get_str,
    parse_lines,
)
from ..decorators import require_actor, require_role


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")

ORDER_DETAILS_POLICY = ModelValidationPolicy(
    writable_fields={"shipping_address", "shipping_method", "tracking_number", "notes"},
)


# =============================================================================
# ORDERS
# =============================================================================

@orders_bp.post("/")
@require_actor
def create_order_route():
    """
    Create a pending order and reserve its stock.

    Request body:
    {
        "lines": [{"product_id": 1, "quantity": 2}],
        "customer_id": 7,  (optional)
        "payment_method": "cash",  (optional)
        "shipping_address": "...", "shipping_method": "...", "notes": "..."  (optional)
    }
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        order = order_service.create_order(
            db.session,
            shop_id=g.shop_id,
            lines=parse_lines(data),
            customer_id=get_int(data, "customer_id", minimum=1),
            payment_method=get_str(data, "payment_method"),
            shipping_address=get_str(data, "shipping_address"),
            shipping_method=get_str(data, "shipping_method", max_length=64),
            notes=get_str(data, "notes"),
            actor_id=g.actor_id,
        )
        return jsonify({"order": order.to_dict()}), 201
    except (LedgerError, ValidationError) as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/")
@require_actor
def list_orders_route():
    try:
        orders = order_service.list_orders(
            db.session,
            g.shop_id,
            status=request.args.get("status"),
            customer_id=get_int(request.args, "customer_id", minimum=1),
            limit=min(get_int(request.args, "limit", default=100, minimum=1), 500),
        )
        return jsonify({"orders": [o.to_dict(include_lines=False) for o in orders]}), 200
    except ValidationError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
@require_actor
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(db.session, order_id, g.shop_id)
        data = order.to_dict()
        data["status_history"] = [e.to_dict() for e in order.status_events]
        return jsonify({"order": data}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.patch("/<int:order_id>/status")
@require_actor
def update_order_status_route(order_id: int):
    """
    Request body:
    {
        "status": "processing" | "shipped" | "delivered" | "cancelled",
        "note": "...",  (optional)
        "tracking_number": "..."  (optional, used when shipping)
    }

    Cancelling requires the manager or admin role.
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        status = get_str(data, "status", required=True)
        if status == "cancelled" and g.actor_role not in ("manager", "admin"):
            return jsonify({
                "error": "Permission denied",
                "code": "PERMISSION_DENIED",
                "details": {"required_roles": ["admin", "manager"], "role": g.actor_role},
            }), 403

        order = order_service.transition_order(
            db.session,
            order_id=order_id,
            status=status,
            note=get_str(data, "note", max_length=255),
            tracking_number=get_str(data, "tracking_number", max_length=128),
            actor_id=g.actor_id,
            shop_id=g.shop_id,
        )
        return jsonify({"order": order.to_dict()}), 200
    except (LedgerError, ValidationError) as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.patch("/<int:order_id>")
@require_actor
def update_order_route(order_id: int):
    """Shipping details and notes; allowed until the order is delivered or cancelled."""
    try:
        patch = validate_payload(
            model=Order,
            payload=request.get_json(silent=True),
            policy=ORDER_DETAILS_POLICY,
            partial=True,
        )
        order = order_service.update_order_details(
            db.session,
            order_id=order_id,
            fields=patch,
            actor_id=g.actor_id,
            shop_id=g.shop_id,
        )
        return jsonify({"order": order.to_dict()}), 200
    except (LedgerError, ValidationError) as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.delete("/<int:order_id>")
@require_actor
@require_role("manager")
def delete_order_route(order_id: int):
    try:
        order_service.delete_order(db.session, order_id=order_id, actor_id=g.actor_id, shop_id=g.shop_id)
        return jsonify({"deleted": True, "order_id": order_id}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to delete order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# ORDER LINES (pending orders only)
# =============================================================================

@orders_bp.post("/<int:order_id>/lines")
@require_actor
def add_order_line_route(order_id: int):
    try:
        data = require_json_object(request.get_json(silent=True))
        order = order_service.add_line(
            db.session,
            order_id=order_id,
            product_id=get_int(data, "product_id", required=True, minimum=1),
            quantity=get_int(data, "quantity", required=True, minimum=1),
            actor_id=g.actor_id,
            shop_id=g.shop_id,
        )
        return jsonify({"order": order.to_dict()}), 201
    except (LedgerError, ValidationError) as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to add order line")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.patch("/<int:order_id>/lines/<int:line_id>")
@require_actor
def update_order_line_route(order_id: int, line_id: int):
    try:
        data = require_json_object(request.get_json(silent=True))
        order = order_service.update_line(
            db.session,
            order_id=order_id,
            line_id=line_id,
            quantity=get_int(data, "quantity", required=True, minimum=1),
            actor_id=g.actor_id,
            shop_id=g.shop_id,
        )
        return jsonify({"order": order.to_dict()}), 200
    except (LedgerError, ValidationError) as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update order line")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.delete("/<int:order_id>/lines/<int:line_id>")
@require_actor
def remove_order_line_route(order_id: int, line_id: int):
    try:
        order = order_service.remove_line(
            db.session,
            order_id=order_id,
            line_id=line_id,
            actor_id=g.actor_id,
            shop_id=g.shop_id,
        )
        return jsonify({"order": order.to_dict()}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to remove order line")
        return jsonify({"error": "Internal server error"}), 500
