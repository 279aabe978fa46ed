# Overview: Service-layer coupon validation, discount computation and redemption counting.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Sequence

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..cart import CartLine
from ..extensions import db
from ..models import AppliedCoupon, Coupon, CouponRedemption, Order, User
from ..models.coupons import (
    DISCOUNT_BOGO,
    DISCOUNT_FIXED,
    DISCOUNT_PERCENT_ALL,
    DISCOUNT_PERCENT_SPECIFIC,
)
from ..money import ZERO, allocate_proportionally, money_sum, round2, to_money
from ..time_utils import as_naive_utc, utcnow
from .catalog_service import CatalogLookup, default_catalog, parse_sku
from .concurrency import claim_row, is_unique_violation, run_with_retry

"""
Coupon Invariants

- Validation is read-only: it never touches usage counters.
- Failures are returned as CouponValidationFailure values, never raised.
- Guards run in a fixed order and the first failing guard wins.
- discount_amount is always within [0, subtotal].
- Usage is counted once per order at payment confirmation, fenced by the
  Order.coupons_redeemed_at claim and the unique (coupon_id, user_identifier) pair.
"""

COUPON_NOT_FOUND = "COUPON_NOT_FOUND"
COUPON_INACTIVE = "COUPON_INACTIVE"
COUPON_EXPIRED = "COUPON_EXPIRED"
COUPON_USAGE_EXCEEDED = "COUPON_USAGE_EXCEEDED"
COUPON_USAGE_PER_USER_EXCEEDED = "COUPON_USAGE_PER_USER_EXCEEDED"
MIN_CART_VALUE_NOT_MET = "MIN_CART_VALUE_NOT_MET"
COUPON_NOT_APPLICABLE = "COUPON_NOT_APPLICABLE"
STACKING_CONFLICT = "STACKING_CONFLICT"
MISSING_USER_IDENTIFIER = "MISSING_USER_IDENTIFIER"

CURRENCY_SYMBOLS = {
    "ILS": "₪",
    "USD": "$",
    "EUR": "€",
}


@dataclass(frozen=True)
class DiscountedItem:
    sku: str
    quantity: int
    unit_price: Decimal
    discount_amount: Decimal


@dataclass(frozen=True)
class CouponValidationSuccess:
    coupon: dict
    subtotal: Decimal
    discount_amount: Decimal
    new_subtotal: Decimal
    discounted_items: list[DiscountedItem]
    messages: dict
    success: bool = field(default=True, init=False)


@dataclass(frozen=True)
class CouponValidationFailure:
    code: str
    messages: dict
    details: dict | None = None
    success: bool = field(default=False, init=False)


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def _message(en: str, he: str) -> dict:
    return {"en": en, "he": he}


def _failure(code: str, en: str, he: str, details: dict | None = None) -> CouponValidationFailure:
    return CouponValidationFailure(code=code, messages=_message(en, he), details=details)


def _format_number(value) -> str:
    value = to_money(value)
    if value == value.to_integral_value():
        return str(int(value))
    return f"{value.normalize():f}"


def _currency_symbol(currency: str) -> str:
    return CURRENCY_SYMBOLS.get((currency or "").upper(), CURRENCY_SYMBOLS["ILS"])


def discount_label(coupon: Coupon, currency: str = "ILS") -> dict:
    value = _format_number(coupon.discount_value or 0)
    if coupon.discount_type in (DISCOUNT_PERCENT_ALL, DISCOUNT_PERCENT_SPECIFIC):
        return _message(f"{value}% OFF", f"{value}% הנחה")
    if coupon.discount_type == DISCOUNT_FIXED:
        symbol = _currency_symbol(currency)
        return _message(f"{symbol}{value} off", f"{symbol}{value} הנחה")
    if coupon.discount_type == DISCOUNT_BOGO:
        buy = coupon.bogo_buy_qty or 1
        get = coupon.bogo_get_qty or 1
        return _message(f"Buy {buy}, get {get} free", f"קנה {buy}, קבל {get} חינם")
    return _message("Coupon applied", "קופון הופעל")


def _stacking_conflict(locale: str, code: str, existing_codes: Sequence[str]) -> CouponValidationFailure:
    joined = ", ".join(existing_codes)
    he = f"קופון {code} אינו ניתן לשילוב עם קופונים קיימים ({joined})."
    en = f"Coupon {code} cannot be stacked with current coupons ({joined})."
    if locale == "he":
        en = he
    return CouponValidationFailure(
        code=STACKING_CONFLICT,
        messages=_message(en, he),
        details={"existing_codes": list(existing_codes)},
    )


def cart_subtotal(cart_lines: Sequence[CartLine]) -> Decimal:
    return money_sum(line.effective_unit_price * max(line.quantity, 0) for line in cart_lines)


# =============================================================================
# Discount computation
# =============================================================================

def _discount_percent(coupon: Coupon) -> Decimal:
    return max(ZERO, to_money(coupon.discount_value)) / Decimal(100)


def _allocated_items(cart_lines: Sequence[CartLine], discount: Decimal) -> list[DiscountedItem]:
    shares = allocate_proportionally(discount, [line.line_total for line in cart_lines])
    return [
        DiscountedItem(
            sku=line.sku,
            quantity=line.quantity,
            unit_price=line.effective_unit_price,
            discount_amount=share,
        )
        for line, share in zip(cart_lines, shares)
    ]


def _eligibility_checker(coupon: Coupon, cart_lines: Sequence[CartLine], catalog: CatalogLookup | None):
    eligible_skus = {str(s).strip().lower() for s in (coupon.eligible_skus or []) if s}
    eligible_categories = {str(c).strip().lower() for c in (coupon.eligible_categories or []) if c}

    categories: dict[str, list[str]] = {}
    if eligible_categories:
        categories = _load_categories(cart_lines, catalog)

    def is_eligible(line: CartLine) -> bool:
        sku = line.sku.lower()
        if sku in eligible_skus or parse_sku(sku).base_sku in eligible_skus:
            return True
        return any(c in eligible_categories for c in categories.get(line.sku, []))

    return eligible_skus or eligible_categories, is_eligible


def _load_categories(cart_lines: Sequence[CartLine], catalog: CatalogLookup | None) -> dict[str, list[str]]:
    catalog = catalog or default_catalog()
    skus = sorted({line.sku for line in cart_lines})
    try:
        return catalog.categories_for(skus)
    except Exception as exc:
        current_app.logger.warning("Category lookup failed for %s: %s", skus, exc)
        return {}


def compute_discount(
    coupon: Coupon,
    cart_lines: Sequence[CartLine],
    catalog: CatalogLookup | None = None,
) -> tuple[Decimal, list[DiscountedItem]]:
    """Return (discount_amount, discounted_items) for a coupon against a cart."""
    subtotal = cart_subtotal(cart_lines)

    if coupon.discount_type == DISCOUNT_PERCENT_ALL:
        discount = min(round2(subtotal * _discount_percent(coupon)), subtotal)
        if discount <= 0:
            return ZERO, []
        return discount, _allocated_items(cart_lines, discount)

    if coupon.discount_type == DISCOUNT_FIXED:
        discount = min(round2(max(ZERO, to_money(coupon.discount_value))), subtotal)
        if discount <= 0:
            return ZERO, []
        return discount, _allocated_items(cart_lines, discount)

    if coupon.discount_type == DISCOUNT_PERCENT_SPECIFIC:
        has_rules, is_eligible = _eligibility_checker(coupon, cart_lines, catalog)
        if not has_rules:
            return ZERO, []
        pct = _discount_percent(coupon)
        items = [
            DiscountedItem(
                sku=line.sku,
                quantity=line.quantity,
                unit_price=line.effective_unit_price,
                discount_amount=round2(line.line_total * pct),
            )
            for line in cart_lines
            if line.quantity > 0 and is_eligible(line)
        ]
        return min(money_sum(i.discount_amount for i in items), subtotal), items

    if coupon.discount_type == DISCOUNT_BOGO:
        has_rules, is_eligible = _eligibility_checker(coupon, cart_lines, catalog)
        if not has_rules:
            return ZERO, []
        buy = max(coupon.bogo_buy_qty or 1, 1)
        get = max(coupon.bogo_get_qty or 1, 1)
        group_size = buy + get

        items = []
        for line in cart_lines:
            if line.quantity < group_size or not is_eligible(line):
                continue
            free_units = (line.quantity // group_size) * get
            amount = round2(free_units * line.effective_unit_price)
            if amount > 0:
                items.append(DiscountedItem(
                    sku=line.sku,
                    quantity=free_units,
                    unit_price=line.effective_unit_price,
                    discount_amount=amount,
                ))
        return min(money_sum(i.discount_amount for i in items), subtotal), items

    return ZERO, []


# =============================================================================
# Validation
# =============================================================================

def validate_coupon(
    code: str,
    cart_lines: Sequence[CartLine],
    locale: str = "en",
    currency: str = "ILS",
    user_identifier: str | None = None,
    existing_coupon_codes: Sequence[str] = (),
    catalog: CatalogLookup | None = None,
    now: datetime | None = None,
) -> CouponValidationSuccess | CouponValidationFailure:
    if not cart_lines:
        return _failure(
            COUPON_NOT_APPLICABLE,
            "Your cart is empty - add items before applying a coupon.",
            "העגלה שלך ריקה - הוסף פריטים לפני החלת קופון.",
        )

    normalized = normalize_code(code)
    coupon = db.session.query(Coupon).filter_by(code=normalized).first() if normalized else None
    if not coupon:
        return _failure(COUPON_NOT_FOUND, "Invalid or expired coupon.", "קופון זה אינו תקף או שפג תוקפו.")

    if not coupon.is_active:
        return _failure(COUPON_INACTIVE, "This coupon is not active at the moment.", "קופון זה אינו פעיל כעת.")

    now = as_naive_utc(now) or utcnow()
    start_date = as_naive_utc(coupon.start_date)
    end_date = as_naive_utc(coupon.end_date)
    if start_date and start_date > now:
        return _failure(
            COUPON_INACTIVE,
            "This coupon will be active soon. Please try again later.",
            "קופון זה יופעל בקרוב. אנא נסה במועד מאוחר יותר.",
            details={"start_date": start_date.isoformat()},
        )
    if end_date and end_date < now:
        return _failure(COUPON_EXPIRED, "This coupon has expired.", "תוקף הקופון פג.")

    if coupon.usage_limit is not None and (coupon.usage_count or 0) >= coupon.usage_limit:
        return _failure(
            COUPON_USAGE_EXCEEDED,
            "This coupon has reached its usage limit.",
            "קופון זה מיצה את כמות השימושים המותרת.",
        )

    if coupon.usage_limit_per_user is not None:
        if not user_identifier:
            return _failure(
                MISSING_USER_IDENTIFIER,
                "Please sign in to use this coupon.",
                "אנא התחבר כדי להשתמש בקופון זה.",
            )
        redemption = db.session.query(CouponRedemption).filter_by(
            coupon_id=coupon.id, user_identifier=user_identifier
        ).first()
        if redemption and redemption.usage_count >= coupon.usage_limit_per_user:
            return _failure(
                COUPON_USAGE_PER_USER_EXCEEDED,
                "You have already used this coupon the maximum number of times.",
                "הגעת לכמות השימושים המותרת בקופון זה.",
            )

    subtotal = cart_subtotal(cart_lines)
    min_cart_value = to_money(coupon.min_cart_value)
    if subtotal < min_cart_value:
        formatted = f"{_currency_symbol(currency)}{_format_number(min_cart_value)}"
        return _failure(
            MIN_CART_VALUE_NOT_MET,
            f"Add more items to reach {formatted} and unlock this coupon.",
            f"הוסף פריטים נוספים כדי להגיע לסך {formatted} ולהפעיל את הקופון.",
            details={"min_cart_value": str(min_cart_value), "subtotal": str(subtotal)},
        )

    existing = [normalize_code(c) for c in existing_coupon_codes if normalize_code(c)]
    if existing:
        if not coupon.stackable or coupon.code in existing:
            return _stacking_conflict(locale, coupon.code, existing)
        existing_coupons = db.session.query(Coupon).filter(Coupon.code.in_(existing)).all()
        if any(not c.stackable for c in existing_coupons):
            return _stacking_conflict(locale, coupon.code, existing)

    discount, discounted_items = compute_discount(coupon, cart_lines, catalog)
    if discount <= 0 or not discounted_items:
        return _failure(
            COUPON_NOT_APPLICABLE,
            "This coupon does not apply to the items in your cart.",
            "קופון זה אינו חל על הפריטים בעגלה.",
        )

    return CouponValidationSuccess(
        coupon={
            "id": coupon.id,
            "code": coupon.code,
            "name": {"en": coupon.name_en, "he": coupon.name_he},
            "description": {"en": coupon.description_en, "he": coupon.description_he},
            "discount_type": coupon.discount_type,
            "discount_value": str(coupon.discount_value) if coupon.discount_value is not None else None,
            "discount_amount": str(discount),
            "discount_label": discount_label(coupon, currency),
            "stackable": coupon.stackable,
            "min_cart_value": str(coupon.min_cart_value) if coupon.min_cart_value is not None else None,
            "auto_apply": coupon.auto_apply,
        },
        subtotal=subtotal,
        discount_amount=discount,
        new_subtotal=subtotal - discount,
        discounted_items=discounted_items,
        messages=_message("Coupon applied successfully.", "הקופון הופעל בהצלחה."),
    )


def evaluate_auto_apply(
    cart_lines: Sequence[CartLine],
    locale: str = "en",
    currency: str = "ILS",
    user_identifier: str | None = None,
    catalog: CatalogLookup | None = None,
    now: datetime | None = None,
) -> CouponValidationSuccess | None:
    """Best (highest discount) auto-apply coupon for the cart, or None."""
    candidates = db.session.query(Coupon).filter(
        Coupon.auto_apply.is_(True),
        Coupon.is_active.is_(True),
    ).order_by(Coupon.id.asc()).all()

    best = None
    for coupon in candidates:
        result = validate_coupon(
            coupon.code,
            cart_lines,
            locale=locale,
            currency=currency,
            user_identifier=user_identifier,
            catalog=catalog,
            now=now,
        )
        if result.success and (best is None or result.discount_amount > best.discount_amount):
            best = result
    return best


# =============================================================================
# Redemption counting (payment confirmation)
# =============================================================================

def redemption_identifier(user: User | None, customer_phone: str | None = None) -> str | None:
    """Key used for per-user coupon limits: the account email, else the checkout phone."""
    if user is not None and user.email:
        return user.email.strip().lower()
    if customer_phone:
        return customer_phone.strip()
    return None


def record_redemptions(order: Order) -> bool:
    """
    Count coupon usage for a paid order exactly once.

    Returns False when the order had already been counted.
    """
    order_id = order.id
    codes = [applied.code for applied in db.session.query(AppliedCoupon).filter_by(order_id=order_id).all()]
    identifier = redemption_identifier(order.user, order.customer_phone)

    def _op():
        claimed = claim_row(
            Order,
            where=[Order.id == order_id, Order.coupons_redeemed_at.is_(None)],
            values={"coupons_redeemed_at": utcnow()},
        )
        if not claimed:
            db.session.rollback()
            return False

        now = utcnow()
        for code in codes:
            coupon = db.session.query(Coupon).filter_by(code=normalize_code(code)).first()
            if not coupon:
                current_app.logger.warning("Applied coupon %s on order %s no longer exists", code, order_id)
                continue

            db.session.execute(
                update(Coupon)
                .where(Coupon.id == coupon.id)
                .values(usage_count=Coupon.usage_count + 1)
                .execution_options(synchronize_session=False)
            )

            if not identifier:
                continue
            result = db.session.execute(
                update(CouponRedemption)
                .where(
                    CouponRedemption.coupon_id == coupon.id,
                    CouponRedemption.user_identifier == identifier,
                )
                .values(usage_count=CouponRedemption.usage_count + 1, last_used_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                db.session.add(CouponRedemption(
                    coupon_id=coupon.id,
                    user_identifier=identifier,
                    usage_count=1,
                    last_used_at=now,
                ))
                db.session.flush()

        db.session.commit()
        current_app.logger.info("Recorded %d coupon redemption(s) for order %s", len(codes), order_id)
        return True

    try:
        return run_with_retry(_op)
    except IntegrityError as exc:
        # A concurrent checkout inserted the same redemption row first; the
        # whole unit rolled back (claim included), so a second pass updates it.
        db.session.rollback()
        if not is_unique_violation(exc, "uq_coupon_redemptions_coupon_user"):
            raise
        return run_with_retry(_op)
