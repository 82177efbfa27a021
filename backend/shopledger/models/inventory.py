from __future__ import annotations

from ..extensions import db
from shopledger.time_utils import to_utc_z


MOVEMENT_SALE = "sale"
MOVEMENT_ADJUSTMENT = "adjustment"
MOVEMENT_DELIVERY = "delivery"
MOVEMENT_KINDS = (MOVEMENT_SALE, MOVEMENT_ADJUSTMENT, MOVEMENT_DELIVERY)


class StockRecord(db.Model):
    """
    Per-product inventory counters (one row per product).

    INVARIANT (enforced by CHECK constraints and by the stock ledger):
        stock_quantity == available_quantity + reserved_quantity
        all three >= 0

    WRITER: only services.inventory_service mutates these counters. Every
    mutation is flushed together with a StockMovement row in the same
    transaction.

    version_id turns concurrent lost updates into StaleDataError, which
    run_in_transaction retries.
    """
    __tablename__ = "stock_records"
    __table_args__ = (
        db.CheckConstraint("stock_quantity >= 0", name="ck_stock_records_stock_nonneg"),
        db.CheckConstraint("available_quantity >= 0", name="ck_stock_records_available_nonneg"),
        db.CheckConstraint("reserved_quantity >= 0", name="ck_stock_records_reserved_nonneg"),
        db.CheckConstraint(
            "stock_quantity = available_quantity + reserved_quantity",
            name="ck_stock_records_balanced",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    shop_id = db.Column(db.Integer, nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, unique=True)

    stock_quantity = db.Column(db.Integer, nullable=False, default=0)
    available_quantity = db.Column(db.Integer, nullable=False, default=0)
    reserved_quantity = db.Column(db.Integer, nullable=False, default=0)

    reorder_level = db.Column(db.Integer, nullable=True)
    reorder_quantity = db.Column(db.Integer, nullable=True)
    location = db.Column(db.String(100), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("stock_record", uselist=False, lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<StockRecord product_id={self.product_id} stock={self.stock_quantity} "
            f"available={self.available_quantity} reserved={self.reserved_quantity}>"
        )

    @property
    def is_low_stock(self) -> bool:
        return self.reorder_level is not None and self.available_quantity <= self.reorder_level

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "shop_id": self.shop_id,
            "product_id": self.product_id,
            "stock_quantity": self.stock_quantity,
            "available_quantity": self.available_quantity,
            "reserved_quantity": self.reserved_quantity,
            "reorder_level": self.reorder_level,
            "reorder_quantity": self.reorder_quantity,
            "location": self.location,
            "is_low_stock": self.is_low_stock,
            "version_id": self.version_id,
            "updated_at": to_utc_z(self.updated_at),
        }


class StockMovement(db.Model):
    """
    Append-only movement log for StockRecord mutations.

    KINDS:
    - sale: reservation for an order, or consumption (order shipped / checkout)
    - adjustment: reservation released, order line reduced, manual correction
    - delivery: goods received into stock

    reference_type/reference_id point at the order or sale that caused the
    movement. They are not foreign keys: deleting a pending order keeps its
    release movements.

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_product_occurred", "product_id", "occurred_at"),
        db.Index("ix_stock_movements_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    shop_id = db.Column(db.Integer, nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    kind = db.Column(db.String(16), nullable=False, index=True)
    quantity_delta = db.Column(db.Integer, nullable=False)

    # Counter snapshot after the movement was applied
    stock_after = db.Column(db.Integer, nullable=False)
    available_after = db.Column(db.Integer, nullable=False)
    reserved_after = db.Column(db.Integer, nullable=False)

    reference_type = db.Column(db.String(16), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)
    note = db.Column(db.String(255), nullable=True)

    actor_id = db.Column(db.Integer, nullable=True, index=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "shop_id": self.shop_id,
            "product_id": self.product_id,
            "kind": self.kind,
            "quantity_delta": self.quantity_delta,
            "stock_after": self.stock_after,
            "available_after": self.available_after,
            "reserved_after": self.reserved_after,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "note": self.note,
            "actor_id": self.actor_id,
            "occurred_at": to_utc_z(self.occurred_at),
        }
