# Overview: Flask API routes for the stock ledger; parses input and returns JSON responses.

# backend/shopledger/routes/inventory.py
"""
Stock Ledger API Routes

DESIGN:
- Read a product's stock record and movement history
- Manual adjustments and deliveries (manager / admin only)
- Low-stock listing for the current shop

Every mutation goes through services.inventory_service; routes never touch
stock counters directly.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import db
from ..models import Product, StockRecord
from ..services import inventory_service
from ..services.errors import LedgerError, ProductNotFound
from ..validation import (
    ValidationError,
    ModelValidationPolicy,
    validate_payload,
    require_json_object,
    get_int,
    get_str,
)
from ..decorators import require_actor, require_role


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")

STOCK_SETTINGS_POLICY = ModelValidationPolicy(
    writable_fields={"reorder_level", "reorder_quantity", "location"},
)


def _product_in_shop(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None or product.shop_id != g.shop_id:
        raise ProductNotFound(product_id)
    return product


@inventory_bp.get("/<int:product_id>")
@require_actor
def get_stock_route(product_id: int):
    try:
        product = _product_in_shop(product_id)
        record = inventory_service.get_stock_record(db.session, product.id)
        data = record.to_dict()
        data["product"] = product.to_dict()
        return jsonify({"stock": data}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load stock record")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/<int:product_id>/movements")
@require_actor
def list_movements_route(product_id: int):
    try:
        product = _product_in_shop(product_id)
        limit = get_int(request.args, "limit", default=200, minimum=1)
        movements = inventory_service.list_movements(db.session, product.id, limit=min(limit, 1000))
        return jsonify({"movements": [m.to_dict() for m in movements]}), 200
    except (LedgerError, ValidationError) as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list stock movements")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/<int:product_id>/adjust")
@require_actor
@require_role("manager")
def adjust_stock_route(product_id: int):
    """
    Manual stock correction.

    Request body:
    {
        "stock_quantity": 42,
        "reason": "Cycle count"  (optional)
    }
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        product = _product_in_shop(product_id)
        stock_quantity = get_int(data, "stock_quantity", required=True, minimum=0)
        reason = get_str(data, "reason", max_length=255)

        record = inventory_service.adjust_stock(
            db.session,
            product_id=product.id,
            stock_quantity=stock_quantity,
            reason=reason,
            actor_id=g.actor_id,
        )
        return jsonify({"stock": record.to_dict()}), 200
    except (LedgerError, ValidationError) as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/<int:product_id>/receive")
@require_actor
@require_role("manager")
def receive_stock_route(product_id: int):
    """
    Delivery into the shop.

    Request body:
    {
        "quantity": 10,
        "note": "PO-1234"  (optional)
    }
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        product = _product_in_shop(product_id)
        quantity = get_int(data, "quantity", required=True, minimum=1)
        note = get_str(data, "note", max_length=255)

        record = inventory_service.receive_stock(
            db.session,
            product_id=product.id,
            quantity=quantity,
            note=note,
            actor_id=g.actor_id,
        )
        return jsonify({"stock": record.to_dict()}), 201
    except (LedgerError, ValidationError) as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to receive stock")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.patch("/<int:product_id>/settings")
@require_actor
@require_role("manager")
def update_stock_settings_route(product_id: int):
    """Reorder level / quantity and shelf location."""
    try:
        product = _product_in_shop(product_id)
        patch = validate_payload(
            model=StockRecord,
            payload=request.get_json(silent=True),
            policy=STOCK_SETTINGS_POLICY,
            partial=True,
        )
        for key in ("reorder_level", "reorder_quantity"):
            if patch.get(key) is not None and patch[key] < 0:
                raise ValidationError(f"{key} must be >= 0", details={"field": key})

        record = inventory_service.update_stock_settings(db.session, product_id=product.id, **patch)
        return jsonify({"stock": record.to_dict()}), 200
    except (LedgerError, ValidationError) as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update stock settings")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/low-stock")
@require_actor
def low_stock_route():
    try:
        records = inventory_service.list_low_stock(db.session, g.shop_id)
        return jsonify({"items": [r.to_dict() for r in records]}), 200
    except Exception:
        current_app.logger.exception("Failed to list low stock")
        return jsonify({"error": "Internal server error"}), 500
