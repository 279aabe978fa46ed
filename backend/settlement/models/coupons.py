from __future__ import annotations

from ..extensions import db


DISCOUNT_PERCENT_ALL = "percent_all"
DISCOUNT_FIXED = "fixed"
DISCOUNT_PERCENT_SPECIFIC = "percent_specific"
DISCOUNT_BOGO = "bogo"


class Coupon(db.Model):
    """
    Coupon definition.

    Created and edited by the admin back office; read-only to validation.
    `code` is stored upper-cased so lookups are case-insensitive.
    discount_value is a percentage for percent_* types and an amount for fixed.
    """
    __tablename__ = "coupons"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_coupons_code"),
        db.Index("ix_coupons_auto_apply_active", "auto_apply", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(64), nullable=False)

    name_en = db.Column(db.String(255), nullable=False, default="")
    name_he = db.Column(db.String(255), nullable=False, default="")
    description_en = db.Column(db.Text, nullable=True)
    description_he = db.Column(db.Text, nullable=True)

    discount_type = db.Column(db.String(32), nullable=False)  # percent_all, fixed, percent_specific, bogo
    discount_value = db.Column(db.Numeric(12, 2), nullable=True)

    eligible_skus = db.Column(db.JSON, nullable=True)
    eligible_categories = db.Column(db.JSON, nullable=True)

    stackable = db.Column(db.Boolean, nullable=False, default=False)
    auto_apply = db.Column(db.Boolean, nullable=False, default=False)

    min_cart_value = db.Column(db.Numeric(12, 2), nullable=True)
    usage_limit = db.Column(db.Integer, nullable=True)
    usage_count = db.Column(db.Integer, nullable=False, default=0)
    usage_limit_per_user = db.Column(db.Integer, nullable=True)

    start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    end_date = db.Column(db.DateTime(timezone=True), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    bogo_buy_qty = db.Column(db.Integer, nullable=True)
    bogo_get_qty = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())


class CouponRedemption(db.Model):
    """
    Per-user coupon consumption counter.

    Upserted at payment confirmation, never during validation.
    """
    __tablename__ = "coupon_redemptions"
    __table_args__ = (
        db.UniqueConstraint("coupon_id", "user_identifier", name="uq_coupon_redemptions_coupon_user"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    coupon_id = db.Column(db.Integer, db.ForeignKey("coupons.id"), nullable=False, index=True)
    user_identifier = db.Column(db.String(255), nullable=False)
    usage_count = db.Column(db.Integer, nullable=False, default=0)
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=True)

    coupon = db.relationship("Coupon", backref=db.backref("redemptions", lazy=True))
