from __future__ import annotations

from ..extensions import db


class DiscountGroup(db.Model):
    """
    Catalog grouping that sells any two member units for a flat pair price.

    A product belongs to at most one group (Product.discount_group_id).
    Groups with a non-positive pair price are ignored by the pairing engine.
    """
    __tablename__ = "discount_groups"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    pair_price = db.Column(db.Numeric(12, 2), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())


class Product(db.Model):
    """
    Read-only catalog projection used for discount-group and category lookups.

    `sku` is the base SKU (e.g. "4925-0301"); cart lines may carry the full
    variant SKU ("4925-0301-black-35") which is resolved to the base SKU.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("sku", name="uq_products_sku"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)

    price = db.Column(db.Numeric(12, 2), nullable=False)
    sale_price = db.Column(db.Numeric(12, 2), nullable=True)

    discount_group_id = db.Column(db.Integer, db.ForeignKey("discount_groups.id"), nullable=True, index=True)

    # Category chain (slugs and ids, root first)
    category = db.Column(db.String(128), nullable=True)
    sub_category = db.Column(db.String(128), nullable=True)
    sub_sub_category = db.Column(db.String(128), nullable=True)
    categories_path = db.Column(db.JSON, nullable=True)
    categories_path_ids = db.Column(db.JSON, nullable=True)

    discount_group = db.relationship("DiscountGroup", backref=db.backref("products", lazy=True))

    def category_chain(self) -> list[str]:
        """All category identifiers for this product, lower-cased."""
        chain: list[str] = []
        for value in (self.categories_path_ids or []):
            chain.append(str(value).lower())
        for value in (self.categories_path or []):
            chain.append(str(value).lower())
        for value in (self.category, self.sub_category, self.sub_sub_category):
            if value:
                chain.append(value.lower())
        return chain
