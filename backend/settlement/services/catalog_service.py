# Overview: Service-layer catalog lookups (discount groups, category chains, SKU parsing).

"""
Catalog Lookup

The pricing engines only need two read-only questions answered about the
catalog: which discount group a SKU belongs to, and which categories it
sits under. Both are expressed as a small protocol so callers can inject a
fake in tests or a different backing store; SqlCatalog answers them from
the products table.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Protocol

from ..extensions import db
from ..models import DiscountGroup, Product
from ..money import to_money


@dataclass(frozen=True)
class ParsedSku:
    base_sku: str
    color_name: str | None
    size: str | None
    full_sku: str


@dataclass(frozen=True)
class GroupMembership:
    group_id: int
    pair_price: Decimal


def parse_sku(full_sku: str | None) -> ParsedSku:
    """
    Split a variant SKU "BASE-color-size" into its parts.

    "0000-0000-black-35" -> base "0000-0000", color "black", size "35".
    SKUs with fewer than four dash-separated parts are returned whole as
    the base SKU.
    """
    if not full_sku:
        return ParsedSku(base_sku="", color_name=None, size=None, full_sku="")

    parts = full_sku.split("-")
    if len(parts) >= 4:
        return ParsedSku(
            base_sku="-".join(parts[:-2]),
            color_name=parts[-2],
            size=parts[-1],
            full_sku=full_sku,
        )
    return ParsedSku(base_sku=full_sku, color_name=None, size=None, full_sku=full_sku)


class CatalogLookup(Protocol):
    def discount_groups_for(self, skus: Iterable[str]) -> dict[str, GroupMembership]:
        """Map each SKU (as given) to its discount group; SKUs without one are absent."""

    def categories_for(self, skus: Iterable[str]) -> dict[str, list[str]]:
        """Map each SKU (as given) to its lower-cased category chain."""


class SqlCatalog:
    """CatalogLookup backed by the products table."""

    def _products_by_base(self, skus: Iterable[str]) -> tuple[dict[str, str], dict[str, Product]]:
        base_by_sku = {sku: parse_sku(sku).base_sku or sku for sku in skus}
        bases = sorted(set(base_by_sku.values()))
        if not bases:
            return base_by_sku, {}
        products = db.session.query(Product).filter(Product.sku.in_(bases)).all()
        return base_by_sku, {p.sku: p for p in products}

    def discount_groups_for(self, skus: Iterable[str]) -> dict[str, GroupMembership]:
        base_by_sku, products = self._products_by_base(skus)

        group_ids = {p.discount_group_id for p in products.values() if p.discount_group_id}
        groups = {}
        if group_ids:
            rows = db.session.query(DiscountGroup).filter(
                DiscountGroup.id.in_(group_ids),
                DiscountGroup.is_active.is_(True),
            ).all()
            groups = {g.id: g for g in rows}

        memberships: dict[str, GroupMembership] = {}
        for sku, base in base_by_sku.items():
            product = products.get(base)
            if not product or product.discount_group_id not in groups:
                continue
            group = groups[product.discount_group_id]
            memberships[sku] = GroupMembership(group_id=group.id, pair_price=to_money(group.pair_price))
        return memberships

    def categories_for(self, skus: Iterable[str]) -> dict[str, list[str]]:
        base_by_sku, products = self._products_by_base(skus)
        result: dict[str, list[str]] = {}
        for sku, base in base_by_sku.items():
            product = products.get(base)
            result[sku] = product.category_chain() if product else []
        return result


def default_catalog() -> CatalogLookup:
    return SqlCatalog()
