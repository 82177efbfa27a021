from __future__ import annotations

from ..extensions import db
from shopledger.time_utils import to_utc_z


# Tier thresholds: (name, minimum points). Non-overlapping and ascending.
LOYALTY_TIERS = (
    ("bronze", 0),
    ("silver", 200),
    ("gold", 500),
    ("platinum", 1000),
)
TIER_RANK = {name: rank for rank, (name, _) in enumerate(LOYALTY_TIERS)}

LOYALTY_CREDIT = "credit"
LOYALTY_DEBIT = "debit"

REDEMPTION_PENDING = "pending"
REDEMPTION_COMPLETED = "completed"
REDEMPTION_CANCELLED = "cancelled"


def tier_for_points(points: int) -> str:
    """Pure function of the balance: bronze <200, silver <500, gold <1000, platinum >=1000."""
    tier = LOYALTY_TIERS[0][0]
    for name, minimum in LOYALTY_TIERS:
        if points >= minimum:
            tier = name
    return tier


class Customer(db.Model):
    """
    Customer master data with the loyalty point balance.

    loyalty_points is the aggregate of the loyalty ledger: it always equals
    the sum of this customer's LoyaltyTransaction.points. Only
    services.loyalty_service writes it.

    loyalty_tier is derived on every read and never stored.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.UniqueConstraint("shop_id", "email", name="uq_customers_shop_email"),
        db.CheckConstraint("loyalty_points >= 0", name="ck_customers_points_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    shop_id = db.Column(db.Integer, nullable=False, index=True)

    first_name = db.Column(db.String(128), nullable=False)
    last_name = db.Column(db.String(128), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    loyalty_points = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def loyalty_tier(self) -> str:
        return tier_for_points(self.loyalty_points or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "shop_id": self.shop_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "is_active": self.is_active,
            "loyalty_points": self.loyalty_points,
            "loyalty_tier": self.loyalty_tier,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }


class LoyaltyTransaction(db.Model):
    """
    Append-only ledger of loyalty point changes.

    points is signed: positive for credit, negative for debit.

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "loyalty_transactions"
    __table_args__ = (
        db.Index("ix_loyalty_txns_customer_occurred", "customer_id", "occurred_at"),
        db.CheckConstraint(
            "(type = 'credit' AND points > 0) OR (type = 'debit' AND points < 0)",
            name="ck_loyalty_txns_sign_matches_type",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    points = db.Column(db.Integer, nullable=False)
    type = db.Column(db.String(8), nullable=False, index=True)

    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)
    redemption_id = db.Column(db.Integer, db.ForeignKey("loyalty_redemptions.id"), nullable=True)
    description = db.Column(db.String(255), nullable=True)

    actor_id = db.Column(db.Integer, nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    customer = db.relationship("Customer", backref=db.backref("loyalty_transactions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "points": self.points,
            "type": self.type,
            "sale_id": self.sale_id,
            "redemption_id": self.redemption_id,
            "description": self.description,
            "actor_id": self.actor_id,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class LoyaltyReward(db.Model):
    """
    Reward a customer can redeem points for.

    REWARD TYPES: discount, free_product, gift, service
    """
    __tablename__ = "loyalty_rewards"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    shop_id = db.Column(db.Integer, nullable=False, index=True)

    name = db.Column(db.String(128), nullable=False)
    description = db.Column(db.Text, nullable=True)
    points_required = db.Column(db.Integer, nullable=False)
    reward_type = db.Column(db.String(16), nullable=False, default="discount")
    discount_cents = db.Column(db.Integer, nullable=True)
    discount_bps = db.Column(db.Integer, nullable=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)
    min_tier = db.Column(db.String(16), nullable=False, default="bronze")

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    starts_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ends_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "shop_id": self.shop_id,
            "name": self.name,
            "description": self.description,
            "points_required": self.points_required,
            "reward_type": self.reward_type,
            "discount_cents": self.discount_cents,
            "discount_bps": self.discount_bps,
            "product_id": self.product_id,
            "min_tier": self.min_tier,
            "is_active": self.is_active,
            "starts_at": to_utc_z(self.starts_at) if self.starts_at else None,
            "ends_at": to_utc_z(self.ends_at) if self.ends_at else None,
        }


class LoyaltyRedemption(db.Model):
    """
    A customer's claim on a reward.

    LIFECYCLE: pending -> completed | cancelled
    Points are debited when the redemption is created and credited back
    if a pending redemption is cancelled.
    """
    __tablename__ = "loyalty_redemptions"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)
    reward_id = db.Column(db.Integer, db.ForeignKey("loyalty_rewards.id"), nullable=False, index=True)
    points_used = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=REDEMPTION_PENDING, index=True)
    notes = db.Column(db.Text, nullable=True)
    actor_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    customer = db.relationship("Customer", backref=db.backref("redemptions", lazy=True))
    reward = db.relationship("LoyaltyReward")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "reward_id": self.reward_id,
            "points_used": self.points_used,
            "status": self.status,
            "notes": self.notes,
            "actor_id": self.actor_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
