# Overview: Loyalty ledger (point credits/debits), tier derivation, rewards and redemptions.

# backend/shopledger/services/loyalty_service.py

from __future__ import annotations

import logging

from flask import current_app, has_app_context
from sqlalchemy import case, func

from ..models import Customer, LoyaltyTransaction, LoyaltyReward, LoyaltyRedemption
from ..models.customers import (
    LOYALTY_TIERS,
    TIER_RANK,
    LOYALTY_CREDIT,
    LOYALTY_DEBIT,
    REDEMPTION_PENDING,
    REDEMPTION_COMPLETED,
    REDEMPTION_CANCELLED,
    tier_for_points,
)
from shopledger.time_utils import utcnow
from .concurrency import lock_for_update, run_in_transaction
from .errors import (
    CustomerNotFound,
    InsufficientPoints,
    InsufficientTier,
    InvalidAmount,
    InvalidStatusTransition,
    RedemptionNotFound,
    RewardNotFound,
    RewardUnavailable,
)

logger = logging.getLogger(__name__)


DEFAULT_CENTS_PER_POINT = 1000

TIER_BENEFITS = {
    "bronze": ["Earn 1 point per 10 spent", "Birthday reward"],
    "silver": ["Earn 1 point per 10 spent", "Birthday reward", "Member-only promotions"],
    "gold": ["Earn 1 point per 10 spent", "Birthday reward", "Member-only promotions", "Free delivery"],
    "platinum": [
        "Earn 1 point per 10 spent",
        "Birthday reward",
        "Member-only promotions",
        "Free delivery",
        "Priority support",
    ],
}

VALID_REDEMPTION_TRANSITIONS = {
    REDEMPTION_PENDING: {REDEMPTION_COMPLETED, REDEMPTION_CANCELLED},
    REDEMPTION_COMPLETED: set(),
    REDEMPTION_CANCELLED: set(),
}


def points_for_amount(total_cents: int) -> int:
    """Points earned for a purchase total: floor(total / cents_per_point), never negative."""
    cents_per_point = DEFAULT_CENTS_PER_POINT
    if has_app_context():
        cents_per_point = current_app.config.get("LOYALTY_CENTS_PER_POINT", DEFAULT_CENTS_PER_POINT)
    if total_cents <= 0:
        return 0
    return total_cents // cents_per_point


def _lock_customer(session, customer_id: int) -> Customer:
    customer = lock_for_update(
        session.query(Customer).filter_by(id=customer_id)
    ).populate_existing().first()
    if customer is None:
        raise CustomerNotFound(customer_id)
    return customer


def _require_positive_points(points) -> int:
    if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
        raise InvalidAmount(
            "points must be a positive integer",
            details={"field": "points", "value": points},
        )
    return points


# =============================================================================
# LEDGER OPERATIONS (flush only; the caller owns the transaction)
# =============================================================================

def credit(
    session,
    customer_id: int,
    points: int,
    *,
    description: str | None = None,
    sale_id: int | None = None,
    redemption_id: int | None = None,
    actor_id: int | None = None,
) -> LoyaltyTransaction:
    """Add points to the balance and append the matching credit row."""
    _require_positive_points(points)
    customer = _lock_customer(session, customer_id)

    customer.loyalty_points = (customer.loyalty_points or 0) + points
    txn = LoyaltyTransaction(
        customer_id=customer.id,
        points=points,
        type=LOYALTY_CREDIT,
        sale_id=sale_id,
        redemption_id=redemption_id,
        description=description,
        actor_id=actor_id,
        occurred_at=utcnow(),
    )
    session.add(txn)
    session.flush()
    return txn


def debit(
    session,
    customer_id: int,
    points: int,
    *,
    description: str | None = None,
    sale_id: int | None = None,
    redemption_id: int | None = None,
    actor_id: int | None = None,
) -> LoyaltyTransaction:
    """
    Remove points from the balance and append the matching debit row.

    Raises InsufficientPoints when the balance would go negative.
    """
    _require_positive_points(points)
    customer = _lock_customer(session, customer_id)

    balance = customer.loyalty_points or 0
    if points > balance:
        raise InsufficientPoints(customer.id, points, balance)

    customer.loyalty_points = balance - points
    txn = LoyaltyTransaction(
        customer_id=customer.id,
        points=-points,
        type=LOYALTY_DEBIT,
        sale_id=sale_id,
        redemption_id=redemption_id,
        description=description,
        actor_id=actor_id,
        occurred_at=utcnow(),
    )
    session.add(txn)
    session.flush()
    return txn


# =============================================================================
# QUERIES
# =============================================================================

def get_customer(session, customer_id: int) -> Customer:
    customer = session.get(Customer, customer_id)
    if customer is None:
        raise CustomerNotFound(customer_id)
    return customer


def next_tier(points: int) -> tuple[str | None, int]:
    """Return (next tier name, points still needed), or (None, 0) at the top tier."""
    for name, minimum in LOYALTY_TIERS:
        if points < minimum:
            return name, minimum - points
    return None, 0


def list_tiers() -> list[dict]:
    tiers = []
    for index, (name, minimum) in enumerate(LOYALTY_TIERS):
        upper = LOYALTY_TIERS[index + 1][1] - 1 if index + 1 < len(LOYALTY_TIERS) else None
        tiers.append({
            "name": name,
            "min_points": minimum,
            "max_points": upper,
            "benefits": TIER_BENEFITS.get(name, []),
        })
    return tiers


def get_summary(session, customer_id: int) -> dict:
    customer = get_customer(session, customer_id)
    points = customer.loyalty_points or 0

    earned, spent = (
        session.query(
            func.coalesce(func.sum(case((LoyaltyTransaction.type == LOYALTY_CREDIT, LoyaltyTransaction.points), else_=0)), 0),
            func.coalesce(func.sum(case((LoyaltyTransaction.type == LOYALTY_DEBIT, LoyaltyTransaction.points), else_=0)), 0),
        )
        .filter(LoyaltyTransaction.customer_id == customer.id)
        .one()
    )

    upcoming, needed = next_tier(points)
    return {
        "customer_id": customer.id,
        "loyalty_points": points,
        "loyalty_tier": tier_for_points(points),
        "lifetime_points_earned": int(earned),
        "lifetime_points_spent": -int(spent),
        "next_tier": upcoming,
        "points_to_next_tier": needed,
        "benefits": TIER_BENEFITS.get(tier_for_points(points), []),
    }


def list_transactions(session, customer_id: int, *, limit: int = 100) -> list[LoyaltyTransaction]:
    get_customer(session, customer_id)
    return (
        session.query(LoyaltyTransaction)
        .filter_by(customer_id=customer_id)
        .order_by(LoyaltyTransaction.id.desc())
        .limit(limit)
        .all()
    )


def list_rewards(session, shop_id: int, *, active_only: bool = True) -> list[LoyaltyReward]:
    query = session.query(LoyaltyReward).filter_by(shop_id=shop_id)
    if active_only:
        query = query.filter(LoyaltyReward.is_active.is_(True))
    return query.order_by(LoyaltyReward.points_required, LoyaltyReward.id).all()


def list_redemptions(session, customer_id: int) -> list[LoyaltyRedemption]:
    get_customer(session, customer_id)
    return (
        session.query(LoyaltyRedemption)
        .filter_by(customer_id=customer_id)
        .order_by(LoyaltyRedemption.id.desc())
        .all()
    )


# =============================================================================
# REWARDS AND REDEMPTIONS (transactional)
# =============================================================================

def create_reward(session, *, shop_id: int, **fields) -> LoyaltyReward:
    points_required = fields.get("points_required")
    _require_positive_points(points_required)
    min_tier = fields.get("min_tier") or LOYALTY_TIERS[0][0]
    if min_tier not in TIER_RANK:
        raise InvalidAmount(
            f"Unknown tier: {min_tier}",
            details={"field": "min_tier", "value": min_tier},
        )

    def _op():
        reward = LoyaltyReward(shop_id=shop_id, **{**fields, "min_tier": min_tier})
        session.add(reward)
        session.flush()
        return reward

    reward = run_in_transaction(session, _op)
    logger.info("Loyalty reward created id=%s shop=%s points=%s", reward.id, shop_id, reward.points_required)
    return reward


def _get_reward(session, reward_id: int, shop_id: int | None) -> LoyaltyReward:
    reward = session.get(LoyaltyReward, reward_id, populate_existing=True)
    if reward is None or (shop_id is not None and reward.shop_id != shop_id):
        raise RewardNotFound(reward_id)
    return reward


def update_reward(session, *, reward_id: int, shop_id: int | None = None, **fields) -> LoyaltyReward:
    """
    Edit a reward in place (including is_active=False to retire it).

    Existing redemptions keep the points they were charged.
    """
    if "points_required" in fields:
        _require_positive_points(fields["points_required"])
    if "min_tier" in fields and fields["min_tier"] not in TIER_RANK:
        raise InvalidAmount(
            f"Unknown tier: {fields['min_tier']}",
            details={"field": "min_tier", "value": fields["min_tier"]},
        )

    def _op():
        reward = _get_reward(session, reward_id, shop_id)
        for key, value in fields.items():
            setattr(reward, key, value)
        session.flush()
        return reward

    reward = run_in_transaction(session, _op)
    logger.info("Loyalty reward updated id=%s fields=%s", reward.id, sorted(fields))
    return reward


def delete_reward(session, *, reward_id: int, shop_id: int | None = None) -> LoyaltyReward | None:
    """
    Delete a reward that was never redeemed.

    A reward with redemptions is deactivated instead and returned; None means
    the row is gone.
    """
    def _op():
        reward = _get_reward(session, reward_id, shop_id)
        redeemed = session.query(LoyaltyRedemption).filter_by(reward_id=reward.id).count()
        if redeemed:
            reward.is_active = False
            session.flush()
            return reward
        session.delete(reward)
        session.flush()
        return None

    reward = run_in_transaction(session, _op)
    if reward is None:
        logger.info("Loyalty reward deleted id=%s", reward_id)
    else:
        logger.info("Loyalty reward id=%s has redemptions; deactivated instead of deleted", reward_id)
    return reward


def _check_reward_available(reward: LoyaltyReward, customer: Customer) -> None:
    if not reward.is_active:
        raise RewardUnavailable(
            "This reward is not currently available",
            details={"reward_id": reward.id, "reason": "inactive"},
        )

    now = utcnow()
    if reward.starts_at is not None and now < reward.starts_at.replace(tzinfo=None):
        raise RewardUnavailable(
            "This reward is not yet available",
            details={"reward_id": reward.id, "reason": "not_started"},
        )
    if reward.ends_at is not None and now > reward.ends_at.replace(tzinfo=None):
        raise RewardUnavailable(
            "This reward has expired",
            details={"reward_id": reward.id, "reason": "expired"},
        )

    tier = customer.loyalty_tier
    if TIER_RANK[tier] < TIER_RANK.get(reward.min_tier, 0):
        raise InsufficientTier(customer.id, tier, reward.min_tier)


def redeem(session, *, customer_id: int, reward_id: int, actor_id: int | None = None, notes: str | None = None) -> LoyaltyRedemption:
    """
    Claim a reward: debit points_required and open a pending redemption.

    Checks, in order: reward exists and is active, date window, tier, balance.
    """
    def _op():
        customer = _lock_customer(session, customer_id)
        reward = session.get(LoyaltyReward, reward_id)
        if reward is None or reward.shop_id != customer.shop_id:
            raise RewardNotFound(reward_id)

        _check_reward_available(reward, customer)

        redemption = LoyaltyRedemption(
            customer_id=customer.id,
            reward_id=reward.id,
            points_used=reward.points_required,
            status=REDEMPTION_PENDING,
            notes=notes,
            actor_id=actor_id,
        )
        session.add(redemption)
        session.flush()

        debit(
            session,
            customer.id,
            reward.points_required,
            description=f"Redeemed: {reward.name}",
            redemption_id=redemption.id,
            actor_id=actor_id,
        )
        return redemption

    redemption = run_in_transaction(session, _op)
    logger.info(
        "Loyalty redemption id=%s customer=%s reward=%s points=%s",
        redemption.id,
        customer_id,
        reward_id,
        redemption.points_used,
    )
    return redemption


def set_redemption_status(session, *, redemption_id: int, status: str, actor_id: int | None = None) -> LoyaltyRedemption:
    """pending -> completed | cancelled; cancelling credits the points back."""
    def _op():
        redemption = lock_for_update(
            session.query(LoyaltyRedemption).filter_by(id=redemption_id)
        ).populate_existing().first()
        if redemption is None:
            raise RedemptionNotFound(redemption_id)

        allowed = VALID_REDEMPTION_TRANSITIONS.get(redemption.status, set())
        if status not in allowed:
            raise InvalidStatusTransition("redemption", redemption.id, redemption.status, status)

        if status == REDEMPTION_CANCELLED:
            credit(
                session,
                redemption.customer_id,
                redemption.points_used,
                description="Redemption cancelled - points refunded",
                redemption_id=redemption.id,
                actor_id=actor_id,
            )

        redemption.status = status
        session.flush()
        return redemption

    redemption = run_in_transaction(session, _op)
    logger.info("Loyalty redemption id=%s -> %s", redemption_id, status)
    return redemption
