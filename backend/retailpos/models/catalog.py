from __future__ import annotations

from ..extensions import db
from retailpos.time_utils import to_utc_z


def _money(value):
    return str(value) if value is not None else None


class Branch(db.Model):
    """
    Physical shop location that holds stock.

    Branch codes are numeric strings allocated monotonically
    (first branch "1000", then last + 1); see branch_service.
    """
    __tablename__ = "branches"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_branches_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    code = db.Column(db.String(32), nullable=False, index=True)
    address = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Branch id={self.id} code={self.code!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "address": self.address,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Product(db.Model):
    """
    Product master data.

    Pricing is stored as exact decimals. Orders always charge
    sales_rate_inc_dis_and_tax; counter sales charge the price the
    cashier submits.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("sku", name="uq_products_sku"),
        db.Index("ix_products_active", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    purchase_rate = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    sales_rate_exc_dis_and_tax = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    sales_rate_inc_dis_and_tax = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # Storefront feature flags
    is_featured = db.Column(db.Boolean, nullable=False, default=False)
    is_deal = db.Column(db.Boolean, nullable=False, default=False)
    is_batch = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "description": self.description,
            "purchase_rate": _money(self.purchase_rate),
            "sales_rate_exc_dis_and_tax": _money(self.sales_rate_exc_dis_and_tax),
            "sales_rate_inc_dis_and_tax": _money(self.sales_rate_inc_dis_and_tax),
            "discount_amount": _money(self.discount_amount),
            "is_active": self.is_active,
            "is_featured": self.is_featured,
            "is_deal": self.is_deal,
            "is_batch": self.is_batch,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Customer(db.Model):
    """Customer placing storefront orders or attached to counter sales."""
    __tablename__ = "customers"
    __table_args__ = (
        db.UniqueConstraint("phone", name="uq_customers_phone"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(32), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
