from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .append_only import append_only


def _money(value):
    return str(value) if value is not None else None


class Product(db.Model):
    """
    Catalog product, the source of order-item snapshots.

    STOCK DESIGN:
    Product.stock is the live running total. Every change to it goes through
    inventory_service, which appends an InventoryLog row in the same DB
    transaction, so stock is always reconstructable by replaying the log.
    Products with variants keep per-variant stock on ProductVariant instead.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_active_name", "is_active", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(100), nullable=False, unique=True)
    name = db.Column(db.String(500), nullable=False)
    main_image = db.Column(db.String(500), nullable=True)

    price = db.Column(db.Numeric(18, 2), nullable=False)
    stock = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    variants = db.relationship("ProductVariant", back_populates="product", lazy=True)
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} stock={self.stock}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "main_image": self.main_image,
            "price": _money(self.price),
            "stock": self.stock,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ProductVariant(db.Model):
    """A purchasable variant (size, color, ...) with its own price and stock."""
    __tablename__ = "product_variants"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    sku = db.Column(db.String(100), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)

    price = db.Column(db.Numeric(18, 2), nullable=False)
    stock = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", back_populates="variants")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "sku": self.sku,
            "name": self.name,
            "price": _money(self.price),
            "stock": self.stock,
            "is_active": self.is_active,
            "version_id": self.version_id,
        }


@append_only
class InventoryLog(db.Model):
    """
    Append-only ledger of stock changes.

    INVARIANT: new_stock = previous_stock + quantity (quantity is signed).
    IMMUTABLE: rows are never updated or deleted; corrections are
    compensating ADJUSTMENT rows.
    """
    __tablename__ = "inventory_logs"
    __table_args__ = (
        db.Index("ix_inventory_logs_product_created", "product_id", "variant_id", "created_at"),
        db.Index("ix_inventory_logs_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True, index=True)

    action = db.Column(db.String(32), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    previous_stock = db.Column(db.Integer, nullable=False)
    new_stock = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(500), nullable=True)
    reference_type = db.Column(db.String(100), nullable=True)  # ORDER, RETURN, MANUAL, ...
    reference_id = db.Column(db.Integer, nullable=True)

    batch_number = db.Column(db.String(50), nullable=True)
    expiry_date = db.Column(db.DateTime(timezone=True), nullable=True)
    location = db.Column(db.String(100), nullable=True)
    notes = db.Column(db.String(500), nullable=True)

    unit_cost = db.Column(db.Numeric(18, 2), nullable=True)
    total_cost = db.Column(db.Numeric(18, 2), nullable=True)
    unit_price = db.Column(db.Numeric(18, 2), nullable=True)
    total_value = db.Column(db.Numeric(18, 2), nullable=True)

    user_id = db.Column(db.Integer, nullable=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    product = db.relationship("Product")
    variant = db.relationship("ProductVariant")

    @property
    def formatted_quantity(self) -> str:
        return f"+{self.quantity}" if self.quantity > 0 else str(self.quantity)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "action": self.action,
            "quantity": self.quantity,
            "formatted_quantity": self.formatted_quantity,
            "previous_stock": self.previous_stock,
            "new_stock": self.new_stock,
            "reason": self.reason,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "batch_number": self.batch_number,
            "expiry_date": to_utc_z(self.expiry_date),
            "location": self.location,
            "notes": self.notes,
            "unit_cost": _money(self.unit_cost),
            "total_cost": _money(self.total_cost),
            "unit_price": _money(self.unit_price),
            "total_value": _money(self.total_value),
            "user_id": self.user_id,
            "created_at": to_utc_z(self.created_at),
        }
