# Overview: Service-layer checkout; prices a cart, persists the order and confirms payment.

from __future__ import annotations

from typing import Sequence

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..cart import CartLine
from ..extensions import db
from ..models import AppliedCoupon, Order, OrderItem, User
from ..money import ZERO, round2
from . import coupon_service, invoice_job
from .bogo_service import compute_bogo
from .catalog_service import CatalogLookup, parse_sku
from .concurrency import is_unique_violation, run_with_retry
from .points_service import InsufficientPoints, spend_in_session

"""
Checkout Invariants

- An order carries either coupons or an automatic BOGO discount, never both.
- Each coupon is validated against the codes accepted before it.
- total = subtotal - discount_total + delivery_fee - points_used, and never < 0.
- The order rows and the points debit commit in one transaction.
"""


class CheckoutError(Exception):
    def __init__(self, message: str, coupon_failure=None):
        super().__init__(message)
        self.coupon_failure = coupon_failure


def _order_item(line: CartLine) -> OrderItem:
    parsed = parse_sku(line.sku)
    return OrderItem(
        product_sku=line.sku,
        color_name=line.color_name or parsed.color_name,
        size=line.size or parsed.size,
        quantity=line.quantity,
        price=line.unit_price,
        sale_price=line.unit_sale_price,
    )


def create_order(
    order_number: str,
    cart_lines: Sequence[CartLine],
    user_id: int | None = None,
    coupon_codes: Sequence[str] = (),
    apply_bogo: bool = False,
    delivery_fee=0,
    points_to_spend=0,
    customer_name: str | None = None,
    customer_phone: str | None = None,
    locale: str = "en",
    currency: str = "ILS",
    catalog: CatalogLookup | None = None,
) -> Order:
    """
    Price a cart and persist it as an Order.

    Raises CheckoutError on invalid input, rejected coupons, BOGO/coupon
    conflicts, insufficient points or a duplicate order number.
    """
    order_number = (order_number or "").strip()
    if not order_number:
        raise CheckoutError("order_number is required")
    if not cart_lines:
        raise CheckoutError("Cart is empty")
    for line in cart_lines:
        if line.quantity <= 0:
            raise CheckoutError(f"Invalid quantity for {line.sku}")
        if line.unit_price < 0:
            raise CheckoutError(f"Invalid price for {line.sku}")

    codes = [coupon_service.normalize_code(c) for c in coupon_codes if coupon_service.normalize_code(c)]
    if apply_bogo and codes:
        raise CheckoutError("Coupons cannot be combined with the buy-together discount")

    delivery_fee = round2(delivery_fee)
    points = round2(points_to_spend or 0)
    if delivery_fee < 0:
        raise CheckoutError("delivery_fee must not be negative")
    if points < 0:
        raise CheckoutError("points_to_spend must not be negative")
    if points > 0 and not user_id:
        raise CheckoutError("Guests cannot spend points")

    if db.session.query(Order.id).filter_by(order_number=order_number).first():
        raise CheckoutError(f"Order {order_number} already exists")

    user = db.session.get(User, user_id) if user_id else None
    if user_id and user is None:
        raise CheckoutError(f"User {user_id} not found")

    subtotal = coupon_service.cart_subtotal(cart_lines)
    identifier = coupon_service.redemption_identifier(user, customer_phone)

    accepted = []
    for code in codes:
        result = coupon_service.validate_coupon(
            code,
            cart_lines,
            locale=locale,
            currency=currency,
            user_identifier=identifier,
            existing_coupon_codes=[r.coupon["code"] for r in accepted],
            catalog=catalog,
        )
        if not result.success:
            raise CheckoutError(f"Coupon {code} rejected: {result.code}", coupon_failure=result)
        accepted.append(result)

    bogo_amount = None
    discount_total = sum((r.discount_amount for r in accepted), ZERO)
    if apply_bogo:
        bogo = compute_bogo(cart_lines, catalog)
        if bogo.bogo_discount_amount > 0:
            bogo_amount = bogo.bogo_discount_amount
            discount_total = bogo_amount

    discount_total = min(round2(discount_total), subtotal)
    total = subtotal - discount_total + delivery_fee - points
    if total < 0:
        raise CheckoutError("Points exceed the order total")

    def _op():
        order = Order(
            order_number=order_number,
            user_id=user_id,
            customer_name=customer_name,
            customer_phone=customer_phone,
            subtotal=subtotal,
            discount_total=discount_total,
            bogo_discount_amount=bogo_amount,
            delivery_fee=delivery_fee,
            points_used=points,
            total=total,
        )
        order.items = [_order_item(line) for line in cart_lines]
        order.applied_coupons = [
            AppliedCoupon(
                code=r.coupon["code"],
                discount_amount=r.discount_amount,
                discount_type=r.coupon["discount_type"],
                stackable=r.coupon["stackable"],
            )
            for r in accepted
        ]
        db.session.add(order)
        db.session.flush()

        if points > 0:
            try:
                spend_in_session(user_id, order.id, points)
            except InsufficientPoints as exc:
                db.session.rollback()
                raise CheckoutError(str(exc)) from exc

        db.session.commit()
        return order

    try:
        order = run_with_retry(_op)
    except IntegrityError as exc:
        db.session.rollback()
        if is_unique_violation(exc, "uq_orders_order_number"):
            raise CheckoutError(f"Order {order_number} already exists") from exc
        raise

    current_app.logger.info(
        "Order %s created: subtotal=%s discount=%s bogo=%s points=%s total=%s",
        order_number, subtotal, discount_total, bogo_amount, points, total,
    )
    return order


def confirm_payment(order_number: str, transaction_info: dict | None = None, run_async: bool = True, client=None):
    """
    Post-payment hook: count coupon usage once, then hand off to the invoice job.

    Never raises for invoice problems; returns the job status when run
    synchronously, or the started thread when run_async is set.
    """
    order = db.session.query(Order).filter_by(order_number=order_number).first()
    if not order:
        raise CheckoutError(f"Order {order_number} not found")

    if order.applied_coupons:
        try:
            coupon_service.record_redemptions(order)
        except Exception:
            db.session.rollback()
            current_app.logger.exception("Coupon redemption counting failed for order %s", order_number)

    if run_async:
        return invoice_job.create_invoice_async(order_number, transaction_info, client=client)
    return invoice_job.create_invoice(order_number, transaction_info, client=client)
