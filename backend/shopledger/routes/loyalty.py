# Overview: Flask API routes for the loyalty ledger, tiers, rewards and redemptions.

# backend/shopledger/routes/loyalty.py

from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import db
from ..models import LoyaltyReward, LoyaltyRedemption
from ..services import loyalty_service
from ..services.errors import CustomerNotFound, LedgerError, RedemptionNotFound
from ..validation import (
    ValidationError,
    ModelValidationPolicy,
    validate_payload,
    require_json_object,
    get_int,
    get_str,
)
from ..decorators import require_actor, require_role


loyalty_bp = Blueprint("loyalty", __name__, url_prefix="/api/loyalty")

REWARD_POLICY = ModelValidationPolicy(
    writable_fields={
        "name",
        "description",
        "points_required",
        "reward_type",
        "discount_cents",
        "discount_bps",
        "product_id",
        "min_tier",
        "is_active",
        "starts_at",
        "ends_at",
    },
    required_on_create={"name", "points_required"},
)

REWARD_TYPES = {"discount", "free_product", "gift", "service"}


def _customer_in_shop(customer_id: int):
    customer = loyalty_service.get_customer(db.session, customer_id)
    if customer.shop_id != g.shop_id:
        raise CustomerNotFound(customer_id)
    return customer


@loyalty_bp.get("/tiers")
@require_actor
def list_tiers_route():
    return jsonify({"tiers": loyalty_service.list_tiers()}), 200


@loyalty_bp.get("/customers/<int:customer_id>")
@require_actor
def customer_summary_route(customer_id: int):
    try:
        customer = _customer_in_shop(customer_id)
        return jsonify({"summary": loyalty_service.get_summary(db.session, customer.id)}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load loyalty summary")
        return jsonify({"error": "Internal server error"}), 500


@loyalty_bp.get("/customers/<int:customer_id>/transactions")
@require_actor
def customer_transactions_route(customer_id: int):
    try:
        customer = _customer_in_shop(customer_id)
        limit = min(get_int(request.args, "limit", default=100, minimum=1), 500)
        txns = loyalty_service.list_transactions(db.session, customer.id, limit=limit)
        return jsonify({"transactions": [t.to_dict() for t in txns]}), 200
    except (LedgerError, ValidationError) as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list loyalty transactions")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# REWARDS
# =============================================================================

@loyalty_bp.get("/rewards")
@require_actor
def list_rewards_route():
    try:
        active_only = request.args.get("include_inactive", "").lower() not in ("1", "true", "yes")
        rewards = loyalty_service.list_rewards(db.session, g.shop_id, active_only=active_only)
        return jsonify({"rewards": [r.to_dict() for r in rewards]}), 200
    except Exception:
        current_app.logger.exception("Failed to list rewards")
        return jsonify({"error": "Internal server error"}), 500


@loyalty_bp.post("/rewards")
@require_actor
@require_role("manager")
def create_reward_route():
    try:
        fields = validate_payload(
            model=LoyaltyReward,
            payload=request.get_json(silent=True),
            policy=REWARD_POLICY,
            partial=False,
        )
        if fields.get("reward_type", "discount") not in REWARD_TYPES:
            raise ValidationError(
                f"reward_type must be one of {sorted(REWARD_TYPES)}",
                details={"field": "reward_type"},
            )
        reward = loyalty_service.create_reward(db.session, shop_id=g.shop_id, **fields)
        return jsonify({"reward": reward.to_dict()}), 201
    except (LedgerError, ValidationError) as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create reward")
        return jsonify({"error": "Internal server error"}), 500


@loyalty_bp.patch("/rewards/<int:reward_id>")
@require_actor
@require_role("manager")
def update_reward_route(reward_id: int):
    """Partial update; {"is_active": false} retires the reward."""
    try:
        fields = validate_payload(
            model=LoyaltyReward,
            payload=request.get_json(silent=True),
            policy=REWARD_POLICY,
            partial=True,
        )
        if "reward_type" in fields and fields["reward_type"] not in REWARD_TYPES:
            raise ValidationError(
                f"reward_type must be one of {sorted(REWARD_TYPES)}",
                details={"field": "reward_type"},
            )
        reward = loyalty_service.update_reward(db.session, reward_id=reward_id, shop_id=g.shop_id, **fields)
        return jsonify({"reward": reward.to_dict()}), 200
    except (LedgerError, ValidationError) as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update reward")
        return jsonify({"error": "Internal server error"}), 500


@loyalty_bp.delete("/rewards/<int:reward_id>")
@require_actor
@require_role("manager")
def delete_reward_route(reward_id: int):
    """Rewards that were already redeemed are deactivated instead of deleted."""
    try:
        reward = loyalty_service.delete_reward(db.session, reward_id=reward_id, shop_id=g.shop_id)
        if reward is None:
            return jsonify({"deleted": True, "reward_id": reward_id}), 200
        return jsonify({"deleted": False, "reward": reward.to_dict()}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to delete reward")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# REDEMPTIONS
# =============================================================================

@loyalty_bp.post("/customers/<int:customer_id>/redemptions")
@require_actor
def redeem_route(customer_id: int):
    """
    Request body:
    {
        "reward_id": 3,
        "notes": "..."  (optional)
    }
    """
    try:
        data = require_json_object(request.get_json(silent=True))
        customer = _customer_in_shop(customer_id)
        redemption = loyalty_service.redeem(
            db.session,
            customer_id=customer.id,
            reward_id=get_int(data, "reward_id", required=True, minimum=1),
            notes=get_str(data, "notes"),
            actor_id=g.actor_id,
        )
        return jsonify({
            "redemption": redemption.to_dict(),
            "summary": loyalty_service.get_summary(db.session, customer.id),
        }), 201
    except (LedgerError, ValidationError) as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to redeem reward")
        return jsonify({"error": "Internal server error"}), 500


@loyalty_bp.get("/customers/<int:customer_id>/redemptions")
@require_actor
def list_redemptions_route(customer_id: int):
    try:
        customer = _customer_in_shop(customer_id)
        redemptions = loyalty_service.list_redemptions(db.session, customer.id)
        return jsonify({"redemptions": [r.to_dict() for r in redemptions]}), 200
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list redemptions")
        return jsonify({"error": "Internal server error"}), 500


@loyalty_bp.patch("/redemptions/<int:redemption_id>")
@require_actor
@require_role("manager")
def update_redemption_route(redemption_id: int):
    try:
        data = require_json_object(request.get_json(silent=True))
        redemption = db.session.get(LoyaltyRedemption, redemption_id)
        if redemption is None or redemption.customer.shop_id != g.shop_id:
            raise RedemptionNotFound(redemption_id)

        redemption = loyalty_service.set_redemption_status(
            db.session,
            redemption_id=redemption.id,
            status=get_str(data, "status", required=True),
            actor_id=g.actor_id,
        )
        return jsonify({"redemption": redemption.to_dict()}), 200
    except (LedgerError, ValidationError) as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update redemption")
        return jsonify({"error": "Internal server error"}), 500
