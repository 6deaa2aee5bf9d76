from __future__ import annotations

from ..extensions import db
from retailpos.time_utils import to_utc_z, utcnow


class Stock(db.Model):
    """
    Current on-hand quantity for one (product, branch) pair.

    Created once per pair; every later change is an update made by
    stock_service together with a StockMovement row in the same
    transaction. current_quantity is never negative.
    """
    __tablename__ = "stocks"
    __table_args__ = (
        db.UniqueConstraint("product_id", "branch_id", name="uq_stocks_product_branch"),
        db.CheckConstraint("current_quantity >= 0", name="ck_stocks_quantity_non_negative"),
        db.Index("ix_stocks_branch_updated", "branch_id", "last_updated"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)

    current_quantity = db.Column(db.Integer, nullable=False, default=0)
    last_updated = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    product = db.relationship("Product")
    branch = db.relationship("Branch", backref=db.backref("stocks", lazy=True))

    def __repr__(self) -> str:
        return (
            f"<Stock product_id={self.product_id} branch_id={self.branch_id} "
            f"qty={self.current_quantity}>"
        )

    def to_dict(self, include_product: bool = False) -> dict:
        data = {
            "id": self.id,
            "product_id": self.product_id,
            "branch_id": self.branch_id,
            "current_quantity": self.current_quantity,
            "last_updated": to_utc_z(self.last_updated),
        }
        if include_product:
            data["product"] = self.product.to_dict() if self.product else None
        return data


class StockMovement(db.Model):
    """
    Append-only stock audit trail.

    IMMUTABLE: rows are never updated or deleted.
    new_qty == previous_qty + quantity_change, and for the latest movement
    of a pair new_qty equals Stock.current_quantity after commit.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_branch_created", "branch_id", "created_at"),
        db.Index("ix_stock_movements_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)

    movement_type = db.Column(db.String(16), nullable=False, index=True)  # SALE, RETURN, ADJUSTMENT, DAMAGE
    quantity_change = db.Column(db.Integer, nullable=False)
    previous_qty = db.Column(db.Integer, nullable=False)
    new_qty = db.Column(db.Integer, nullable=False)

    created_by = db.Column(db.Integer, nullable=True)

    reference_id = db.Column(db.String(64), nullable=True)
    reference_type = db.Column(db.String(32), nullable=True)
    notes = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    product = db.relationship("Product")

    def to_dict(self, include_product: bool = False) -> dict:
        data = {
            "id": self.id,
            "product_id": self.product_id,
            "branch_id": self.branch_id,
            "movement_type": self.movement_type,
            "quantity_change": self.quantity_change,
            "previous_qty": self.previous_qty,
            "new_qty": self.new_qty,
            "created_by": self.created_by,
            "reference_id": self.reference_id,
            "reference_type": self.reference_type,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }
        if include_product:
            data["product"] = self.product.to_dict() if self.product else None
        return data
