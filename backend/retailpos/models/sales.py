from __future__ import annotations

from ..extensions import db
from retailpos.time_utils import to_utc_z, utcnow


def _money(value):
    return str(value) if value is not None else None


class Sale(db.Model):
    """
    Completed counter sale, return/exchange settlement, or the mirror of an
    online order.

    Return/exchange sales point back at the sale they settle through
    original_sale_id; their totals may be negative.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.Index("ix_sales_sale_number", "sale_number"),
        db.Index("ix_sales_branch_status_date", "branch_id", "status", "sale_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Time-based, e.g. "SALE-1718000000000". Unique in practice, not by constraint.
    sale_number = db.Column(db.String(64), nullable=False)

    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)

    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    payment_method = db.Column(db.String(32), nullable=False, default="CASH")
    payment_status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)  # PENDING, PAID

    # PENDING, COMPLETED, REFUNDED, EXCHANGED, CANCELLED
    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)

    original_sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    created_by = db.Column(db.Integer, nullable=True)
    sale_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    branch = db.relationship("Branch")
    customer = db.relationship("Customer", backref=db.backref("sales", lazy=True))
    original_sale = db.relationship("Sale", remote_side=[id], backref=db.backref("adjustment_sales", lazy=True))
    items = db.relationship(
        "SaleItem",
        backref="sale",
        lazy=True,
        order_by="SaleItem.id",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Sale id={self.id} number={self.sale_number!r} status={self.status}>"

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "sale_number": self.sale_number,
            "branch_id": self.branch_id,
            "customer_id": self.customer_id,
            "subtotal": _money(self.subtotal),
            "tax_amount": _money(self.tax_amount),
            "discount_amount": _money(self.discount_amount),
            "total_amount": _money(self.total_amount),
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "status": self.status,
            "original_sale_id": self.original_sale_id,
            "order_id": self.order_id,
            "created_by": self.created_by,
            "sale_date": to_utc_z(self.sale_date),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class SaleItem(db.Model):
    """
    One line of a sale.

    RETURN lines carry a negative quantity and line_total and reference the
    original line through ref_sale_item_id.
    """
    __tablename__ = "sale_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    tax_rate = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    discount_rate = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    line_total = db.Column(db.Numeric(12, 2), nullable=False)

    item_type = db.Column(db.String(16), nullable=False, default="SALE")  # SALE, RETURN, EXCHANGE
    ref_sale_item_id = db.Column(db.Integer, db.ForeignKey("sale_items.id"), nullable=True, index=True)

    product = db.relationship("Product")
    ref_sale_item = db.relationship("SaleItem", remote_side=[id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price": _money(self.unit_price),
            "tax_rate": _money(self.tax_rate),
            "discount_rate": _money(self.discount_rate),
            "tax_amount": _money(self.tax_amount),
            "discount_amount": _money(self.discount_amount),
            "line_total": _money(self.line_total),
            "item_type": self.item_type,
            "ref_sale_item_id": self.ref_sale_item_id,
        }
