from __future__ import annotations

import json

from ..extensions import db
from settlement.time_utils import to_utc_z


INVOICE_STATUS_NONE = "none"
INVOICE_STATUS_PENDING = "pending"
INVOICE_STATUS_SUCCESS = "success"
INVOICE_STATUS_FAILED = "failed"


class Order(db.Model):
    """
    Settled order document.

    Created once at checkout and append-only afterwards, except for the
    invoice sync fields and the coupon redemption claim.

    INVARIANT: bogo_discount_amount > 0 implies no applied coupons.

    INVOICE SYNC STATE:
    none -> pending (claim: verifone_invoice_attempted_at set atomically)
    pending -> success | failed (both terminal for the job)
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_orders_order_number"),
        db.Index("ix_orders_invoice_status", "verifone_invoice_status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(64), nullable=False)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    customer_name = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(32), nullable=True)

    # Totals
    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    discount_total = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    bogo_discount_amount = db.Column(db.Numeric(12, 2), nullable=True)
    delivery_fee = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    points_used = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total = db.Column(db.Numeric(12, 2), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    # Set once when payment confirmation counted coupon usage
    coupons_redeemed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # External invoice sync
    verifone_invoice_status = db.Column(db.String(16), nullable=False, default=INVOICE_STATUS_NONE)
    verifone_invoice_attempted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    verifone_invoice_no = db.Column(db.String(64), nullable=True)
    verifone_invoice_error = db.Column(db.Text, nullable=True)
    verifone_invoice_request = db.Column(db.Text, nullable=True)
    verifone_invoice_response = db.Column(db.Text, nullable=True)
    verifone_invoice_synced_at = db.Column(db.DateTime(timezone=True), nullable=True)

    user = db.relationship("User", backref=db.backref("orders", lazy=True))

    def response_payload(self) -> dict | None:
        if not self.verifone_invoice_response:
            return None
        return json.loads(self.verifone_invoice_response)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "user_id": self.user_id,
            "customer_name": self.customer_name,
            "subtotal": str(self.subtotal),
            "discount_total": str(self.discount_total),
            "bogo_discount_amount": str(self.bogo_discount_amount) if self.bogo_discount_amount is not None else None,
            "delivery_fee": str(self.delivery_fee),
            "points_used": str(self.points_used),
            "total": str(self.total),
            "created_at": to_utc_z(self.created_at),
            "items": [item.to_dict() for item in self.items],
            "applied_coupons": [coupon.to_dict() for coupon in self.applied_coupons],
            "verifone_invoice_status": self.verifone_invoice_status,
            "verifone_invoice_attempted_at": to_utc_z(self.verifone_invoice_attempted_at),
            "verifone_invoice_no": self.verifone_invoice_no,
            "verifone_invoice_error": self.verifone_invoice_error,
        }


class OrderItem(db.Model):
    """Individual product line on an order (prices captured at checkout)."""
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    product_sku = db.Column(db.String(64), nullable=False)
    color_name = db.Column(db.String(64), nullable=True)
    size = db.Column(db.String(16), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=False)
    sale_price = db.Column(db.Numeric(12, 2), nullable=True)

    order = db.relationship(
        "Order",
        backref=db.backref("items", lazy=True, order_by="OrderItem.id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_sku": self.product_sku,
            "color_name": self.color_name,
            "size": self.size,
            "quantity": self.quantity,
            "price": str(self.price),
            "sale_price": str(self.sale_price) if self.sale_price is not None else None,
        }


class AppliedCoupon(db.Model):
    """Coupon snapshot captured on the order at checkout."""
    __tablename__ = "applied_coupons"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    code = db.Column(db.String(64), nullable=False)
    discount_amount = db.Column(db.Numeric(12, 2), nullable=False)
    discount_type = db.Column(db.String(32), nullable=False)
    stackable = db.Column(db.Boolean, nullable=False, default=False)

    order = db.relationship(
        "Order",
        backref=db.backref("applied_coupons", lazy=True, order_by="AppliedCoupon.id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "code": self.code,
            "discount_amount": str(self.discount_amount),
            "discount_type": self.discount_type,
            "stackable": self.stackable,
        }
