# Overview: Priced cart line shared by the BOGO, coupon and checkout services.

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from .money import ZERO, to_money


def effective_price(price, sale_price) -> Decimal:
    """Sale price wins only when 0 < sale < price."""
    price = to_money(price)
    if sale_price is None:
        return price
    sale = to_money(sale_price)
    if ZERO < sale < price:
        return sale
    return price


@dataclass(frozen=True)
class CartLine:
    sku: str
    quantity: int
    unit_price: Decimal
    unit_sale_price: Decimal | None = None
    color_name: str | None = None
    size: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "unit_price", to_money(self.unit_price))
        if self.unit_sale_price is not None:
            object.__setattr__(self, "unit_sale_price", to_money(self.unit_sale_price))

    @property
    def effective_unit_price(self) -> Decimal:
        return effective_price(self.unit_price, self.unit_sale_price)

    @property
    def line_total(self) -> Decimal:
        return self.effective_unit_price * self.quantity
