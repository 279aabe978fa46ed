# Overview: Service-layer invoice synthesis; builds document lines, per-line VAT, totals and receipt.

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from decimal import Decimal, ROUND_DOWN
from typing import Sequence

from flask import current_app

from ..cart import effective_price
from ..money import CENT, ZERO, allocate_proportionally, money_sum, round2, to_money
from ..time_utils import format_yyyymmdd
from .catalog_service import parse_sku

"""
Invoice Line & VAT Invariants

- VAT is computed per line from the VAT-inclusive gross: net = round2(|gross| / 1.18),
  vat = round2(|gross| - net). Totals are sums of line values, never recomputed
  from the grand total.
- sum(net) + sum(vat) == TotalPriceIncludeVAT exactly (points line signed negative).
- Line order: points (ItemID 777) first, then delivery, then products.
- The whole coupon amount is absorbed by the first product line.
- BOGO orders never carry a coupon line; their discount is folded into the unit
  prices so that the product lines sum to the discounted total exactly.
"""

VAT_PERCENT = 18

POINTS_ITEM_ID = "777"
DELIVERY_ITEM_ID = "9000-99990038"

POINTS_CREDIT_PERCENT = 105
PRODUCT_CREDIT_PERCENT = 5

GUEST_CUSTOMER_NO = 1
GUEST_CUSTOMER_NAME = "Guest"

COLOR_CODE_MAP = {
    "01": "black",
    "02": "white",
    "03": "dark-brown",
    "04": "light-brown",
    "05": "zebra",
    "06": "coffee",
    "07": "off-white",
    "08": "beige",
    "09": "caramel",
    "10": "dark-blue",
    "11": "red",
    "12": "green",
    "13": "bordeaux",
    "14": "black-lack",
    "15": "white-lack",
    "16": "yellow",
    "17": "tabbacco",
    "18": "capuchino",
    "19": "light-pink",
    "20": "lyla",
    "21": "silver",
    "22": "gold",
    "26": "pink",
    "29": "ligh-blue",
    "33": "olive",
    "35": "gray",
    "37": "turquoise",
    "57": "purple",
    "61": "dark-gray",
    "69": "camel",
    "89": "natural",
    "91": "multi-color",
    "95": "black-white",
    "99": "nude",
}
COLOR_SLUG_TO_CODE = {slug: code for code, slug in COLOR_CODE_MAP.items()}

ONE_SIZE_ALIASES = {"one size", "one-size", "onesize", "os"}


@dataclass(frozen=True)
class InvoiceItem:
    product_sku: str
    quantity: int
    price: Decimal
    sale_price: Decimal | None = None
    color_name: str | None = None
    size: str | None = None

    @property
    def effective_price(self) -> Decimal:
        return effective_price(self.price, self.sale_price)

    @classmethod
    def from_order_item(cls, item) -> "InvoiceItem":
        return cls(
            product_sku=item.product_sku,
            quantity=item.quantity,
            price=to_money(item.price),
            sale_price=to_money(item.sale_price) if item.sale_price is not None else None,
            color_name=item.color_name,
            size=item.size,
        )


@dataclass(frozen=True)
class InvoiceLine:
    line_no: int
    item_id: str
    unit_price: Decimal
    qty: int
    discount_percent: Decimal
    total_price: Decimal
    vat_percent: int
    credit_points_accum_percent: int
    net: Decimal
    vat: Decimal

    def to_dict(self) -> dict:
        return {
            "LineNo": self.line_no,
            "ItemID": self.item_id,
            "UnitPrice": str(self.unit_price),
            "Qty": self.qty,
            "DiscountPercent": str(self.discount_percent),
            "TotalPrice": str(self.total_price),
            "VatPercent": self.vat_percent,
            "CreditPointsAccumPrecent": self.credit_points_accum_percent,
        }


@dataclass(frozen=True)
class InvoiceTotals:
    total_before_discount_without_vat: Decimal
    discount: Decimal
    discount_percent: Decimal
    total_after_discount_without_vat: Decimal
    vat_percent: int
    vat: Decimal
    total_price_include_vat: Decimal
    total_items: int
    total_lines: int

    def to_dict(self) -> dict:
        return {
            "TotalBeforeDiscount_WithoutVAT": str(self.total_before_discount_without_vat),
            "Discount": str(self.discount),
            "DiscountPercent": str(self.discount_percent),
            "TotalAfterDiscount_WithoutVAT": str(self.total_after_discount_without_vat),
            "VatPercent": self.vat_percent,
            "VAT": str(self.vat),
            "TotalPriceIncludeVAT": str(self.total_price_include_vat),
            "TotalItems": self.total_items,
            "TotalLines": self.total_lines,
        }


@dataclass(frozen=True)
class ReceiptLine:
    total: Decimal
    first_payment: Decimal
    other_payments: Decimal
    credit_card_no: str
    expire_date: str
    credit_card_type: str
    customer_identity: str
    clearance_approval: str
    number_of_payments: int
    payment_type: str = "CreditCard"
    card_payment_type: str = "1"


@dataclass(frozen=True)
class InvoiceDocument:
    lines: list[InvoiceLine]
    totals: InvoiceTotals
    receipt: ReceiptLine
    customer_no: int
    customer_name: str
    create_date: str
    order_number: str = ""


# =============================================================================
# Line helpers
# =============================================================================

def line_vat(gross, vat_percent: int = VAT_PERCENT) -> tuple[Decimal, Decimal]:
    """(net, vat) for a VAT-inclusive gross amount."""
    gross = abs(to_money(gross))
    net = round2(gross / (1 + Decimal(vat_percent) / 100))
    return net, round2(gross - net)


def color_code(color_slug: str | None) -> str:
    if not color_slug:
        return "00"
    return COLOR_SLUG_TO_CODE.get(color_slug.strip().lower(), "00")


def size_code(size) -> str:
    if size is None or str(size).strip() == "":
        return "00"
    normalized = str(size).strip().lower()
    if normalized in ONE_SIZE_ALIASES:
        return "OS"
    match = re.match(r"^\s*[+-]?\d+", str(size))
    if not match:
        return "00"
    return str(int(match.group(0))).zfill(2)


def _digits(value: str) -> str:
    return re.sub(r"\D", "", value)


def normalize_base_sku(sku: str) -> str:
    """Coerce a catalog SKU into the XXXX-XXXX form the accounting system expects."""
    sku = (sku or "").strip()
    if "-" not in sku:
        digits = _digits(sku)
        if len(digits) < 8:
            digits = digits.ljust(8, "0")
        return f"{digits[:4]}-{digits[4:8]}"

    parts = sku.split("-")
    part1 = _digits(parts[0]).zfill(4)[:4]
    part2 = _digits("".join(parts[1:])).zfill(4)[:4]
    return f"{part1}-{part2}"


def build_item_id(item: InvoiceItem) -> str:
    size = item.size
    if not size and item.product_sku:
        size = parse_sku(item.product_sku).size
    return f"{normalize_base_sku(item.product_sku)}{color_code(item.color_name)}{size_code(size)}"


def _line(line_no, item_id, unit_price, qty, discount_percent, total_price, credit_percent, vat_percent):
    net, vat = line_vat(total_price, vat_percent)
    return InvoiceLine(
        line_no=line_no,
        item_id=item_id,
        unit_price=round2(unit_price),
        qty=qty,
        discount_percent=discount_percent,
        total_price=round2(total_price),
        vat_percent=vat_percent,
        credit_points_accum_percent=credit_percent,
        net=net,
        vat=vat,
    )


# =============================================================================
# Document lines and totals
# =============================================================================

def build_document_lines(
    items: Sequence[InvoiceItem],
    coupons: Sequence,
    points_used,
    delivery_fee,
    vat_percent: int = VAT_PERCENT,
) -> list[InvoiceLine]:
    """
    Build the ordered invoice lines.

    `coupons` is a sequence of discount amounts (or objects with a
    discount_amount attribute); their sum is applied to the first product line.
    """
    points_used = round2(points_used)
    delivery_fee = round2(delivery_fee)
    coupon_remaining = money_sum(getattr(c, "discount_amount", c) for c in coupons)

    lines: list[InvoiceLine] = []
    line_no = 1

    if points_used > 0:
        lines.append(_line(line_no, POINTS_ITEM_ID, points_used, -1, ZERO, -points_used,
                           POINTS_CREDIT_PERCENT, vat_percent))
        line_no += 1

    if delivery_fee > 0:
        lines.append(_line(line_no, DELIVERY_ITEM_ID, delivery_fee, 1, ZERO, delivery_fee, 0, vat_percent))
        line_no += 1

    for index, item in enumerate(items):
        item_id = build_item_id(item)
        price = to_money(item.price)
        effective = item.effective_price
        qty = item.quantity

        if item.sale_price is not None and to_money(item.sale_price) > 0 and to_money(item.sale_price) >= price:
            current_app.logger.warning(
                "Invalid sale price %s >= price %s for %s, using regular price",
                item.sale_price, price, item_id,
            )
        if not item.size or item_id.endswith("00"):
            current_app.logger.warning("Size missing or invalid for %s (%s)", item.product_sku, item_id)

        full_total = price * qty
        base_total = effective * qty

        coupon_applied = ZERO
        if index == 0 and coupon_remaining > 0:
            coupon_applied = min(coupon_remaining, base_total)
            coupon_remaining -= coupon_applied

        discount_percent = ZERO
        if full_total > 0:
            discount_percent = round2(((full_total - base_total) + coupon_applied) / full_total * 100)
        if discount_percent < 0:
            discount_percent = ZERO

        lines.append(_line(line_no, item_id, effective, qty, discount_percent, base_total - coupon_applied,
                           PRODUCT_CREDIT_PERCENT, vat_percent))
        line_no += 1

    return lines


def calculate_invoice_totals(
    lines: Sequence[InvoiceLine],
    items: Sequence[InvoiceItem],
    points_used,
    delivery_fee,
    vat_percent: int = VAT_PERCENT,
) -> InvoiceTotals:
    points_used = round2(points_used)
    delivery_fee = round2(delivery_fee)

    net_after = ZERO
    vat_after = ZERO
    net_after_excluding_points = ZERO
    for line in lines:
        if line.qty < 0:
            net_after -= line.net
            vat_after -= line.vat
        else:
            net_after += line.net
            vat_after += line.vat
            net_after_excluding_points += line.net

    net_before = ZERO
    for item in items:
        net, _ = line_vat(to_money(item.price) * item.quantity, vat_percent)
        net_before += net
    if delivery_fee > 0:
        net, _ = line_vat(delivery_fee, vat_percent)
        net_before += net

    discount = max(ZERO, round2(net_before - net_after_excluding_points))
    discount_percent = ZERO
    if net_before > 0 and discount > 0:
        discount_percent = round2(discount / net_before * 100)

    has_points = 1 if points_used > 0 else 0
    has_delivery = 1 if delivery_fee > 0 else 0

    return InvoiceTotals(
        total_before_discount_without_vat=round2(net_before),
        discount=discount,
        discount_percent=discount_percent,
        total_after_discount_without_vat=round2(net_after),
        vat_percent=vat_percent,
        vat=round2(vat_after),
        total_price_include_vat=round2(net_after + vat_after),
        total_items=len(items) + has_delivery - has_points,
        total_lines=len(items) + has_delivery + has_points,
    )


def distribute_to_total(items: Sequence[InvoiceItem], target_total) -> list[InvoiceItem]:
    """
    Rewrite unit prices so the product lines sum to `target_total` exactly.

    Used for BOGO orders: line targets are proportional to the pre-discount
    line totals. When a line target does not divide into whole cents, the
    item is split into qty-1 units at the unit price rounded down to the cent
    plus one unit carrying the residual, which is never below the unit price.
    """
    items = [item for item in items if item.quantity > 0]
    if not items:
        return []

    targets = allocate_proportionally(target_total, [i.effective_price * i.quantity for i in items])

    result: list[InvoiceItem] = []
    for item, line_target in zip(items, targets):
        unit = (line_target / item.quantity).quantize(CENT, rounding=ROUND_DOWN)
        if unit * item.quantity == line_target:
            result.append(_repriced(item, unit))
            continue

        residual = line_target - unit * (item.quantity - 1)
        result.append(_repriced(replace(item, quantity=item.quantity - 1), unit))
        result.append(_repriced(replace(item, quantity=1), residual))
    return result


def _repriced(item: InvoiceItem, unit: Decimal) -> InvoiceItem:
    # The effective-price rule only honours 0 < sale < price
    if ZERO < unit < to_money(item.price):
        return replace(item, sale_price=unit)
    return replace(item, price=unit, sale_price=None)


# =============================================================================
# Receipt
# =============================================================================

CARD_BRAND_CODES = (
    (("VISA",), "1"),
    (("LEUMI",), "2"),
    (("AMEX", "AMERICAN"), "5"),
    (("DINERS", "DINER"), "6"),
    (("ISRACARD", "ISRA"), "8"),
)


def card_type_code(brand: str | None) -> str:
    if not brand:
        return "9"
    upper = brand.upper()
    for needles, code in CARD_BRAND_CODES:
        if any(n in upper for n in needles):
            return code
    return "9"


def _expire_date(month, year) -> str:
    if not month or not year:
        return "0000"
    month = str(month).zfill(2)
    year = str(year)
    year = year[-2:] if len(year) >= 2 else year.zfill(2)
    return f"{month}{year}"


def _positive_int(value, default: int = 1) -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return parsed or default


def build_receipt_line(transaction_info: dict | None, total) -> ReceiptLine:
    info = transaction_info or {}
    total = round2(total)
    return ReceiptLine(
        total=total,
        first_payment=round2(info.get("FirstPaymentAmount") or total),
        other_payments=round2(info.get("ConstPaymentAmount") or 0),
        credit_card_no=str(info.get("Last4CardDigitsString") or "0000"),
        expire_date=_expire_date(info.get("CardMonth"), info.get("CardYear")),
        credit_card_type=card_type_code(info.get("Brand")),
        customer_identity=str(info.get("CardOwnerIdentityNumber") or "123456789"),
        clearance_approval=str(info.get("ApprovalNumber") or ""),
        number_of_payments=_positive_int(info.get("NumberOfPayments") or 1),
    )


# =============================================================================
# Whole document
# =============================================================================

def build_invoice(order, transaction_info: dict | None, points_used=None) -> InvoiceDocument:
    """
    Assemble the invoice document for a persisted Order.

    Orders with applied coupons pass the coupon amounts to the first product
    line; BOGO orders redistribute the pair discount into the unit prices.
    """
    vat_percent = current_app.config.get("VAT_PERCENT", VAT_PERCENT)
    if points_used is None:
        points_used = order.points_used
    delivery_fee = to_money(order.delivery_fee)
    items = [InvoiceItem.from_order_item(i) for i in order.items]

    coupons = [to_money(c.discount_amount) for c in order.applied_coupons]
    bogo_amount = to_money(order.bogo_discount_amount)
    if coupons and bogo_amount > 0:
        raise ValueError(f"Order {order.order_number} carries both coupons and a BOGO discount")

    if bogo_amount > 0:
        pre_discount = money_sum(i.effective_price * i.quantity for i in items)
        items = distribute_to_total(items, pre_discount - bogo_amount)

    lines = build_document_lines(items, coupons, points_used, delivery_fee, vat_percent)
    totals = calculate_invoice_totals(lines, items, points_used, delivery_fee, vat_percent)
    receipt = build_receipt_line(transaction_info, totals.total_price_include_vat)

    customer_no = GUEST_CUSTOMER_NO
    if order.user is not None and order.user.verifone_customer_no:
        customer_no = int(order.user.verifone_customer_no)

    return InvoiceDocument(
        lines=lines,
        totals=totals,
        receipt=receipt,
        customer_no=customer_no,
        customer_name=order.customer_name or GUEST_CUSTOMER_NAME,
        create_date=format_yyyymmdd(order.created_at),
        order_number=order.order_number,
    )
