# Overview: Service-layer BOGO pairing; prices pairs of eligible units at their group pair price.

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Sequence

from ..cart import CartLine
from ..money import ZERO, round2, to_money
from .catalog_service import CatalogLookup, default_catalog

"""
BOGO Pairing Invariants

- Units only pair when both belong to an active discount group with pair_price > 0.
- Same-group pairs are formed first, most expensive units together.
- Leftovers from different groups pair cheapest-group with dearest-group and are
  charged round2((pair_a + pair_b) / 2).
- The discount is never negative: round2(max(0, regular - discounted)).
- Pure apart from the single catalog lookup.
"""

PAIR_SAME_GROUP = "same-group"
PAIR_CROSS_GROUP = "cross-group"


@dataclass(frozen=True)
class BogoUnit:
    sku: str
    unit_price: Decimal
    group_id: int
    pair_price: Decimal


@dataclass(frozen=True)
class BogoPair:
    kind: str
    group_a: int
    group_b: int
    pair_price: Decimal
    member_a: BogoUnit
    member_b: BogoUnit

    @property
    def regular_price(self) -> Decimal:
        return self.member_a.unit_price + self.member_b.unit_price


@dataclass(frozen=True)
class BogoResult:
    bogo_discount_amount: Decimal = ZERO
    regular_total_eligible: Decimal = ZERO
    discounted_total_eligible: Decimal = ZERO
    has_leftover: bool = False
    pairs: tuple[BogoPair, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "bogo_discount_amount": str(self.bogo_discount_amount),
            "regular_total_eligible": str(self.regular_total_eligible),
            "discounted_total_eligible": str(self.discounted_total_eligible),
            "has_leftover": self.has_leftover,
            "pairs": [
                {
                    "kind": p.kind,
                    "group_a": p.group_a,
                    "group_b": p.group_b,
                    "pair_price": str(p.pair_price),
                    "skus": [p.member_a.sku, p.member_b.sku],
                }
                for p in self.pairs
            ],
        }


def expand_units(cart_lines: Sequence[CartLine], catalog: CatalogLookup | None = None) -> list[BogoUnit]:
    """One token per purchased unit whose SKU belongs to a priced discount group."""
    lines = [line for line in cart_lines if line.quantity > 0 and line.effective_unit_price > 0]
    if not lines:
        return []

    catalog = catalog or default_catalog()
    memberships = catalog.discount_groups_for([line.sku for line in lines])

    units: list[BogoUnit] = []
    for line in lines:
        membership = memberships.get(line.sku)
        if membership is None or membership.pair_price <= 0:
            continue
        for _ in range(line.quantity):
            units.append(BogoUnit(
                sku=line.sku,
                unit_price=line.effective_unit_price,
                group_id=membership.group_id,
                pair_price=to_money(membership.pair_price),
            ))
    return units


def pair_units(units: Sequence[BogoUnit]) -> BogoResult:
    if len(units) < 2:
        return BogoResult()

    pairs: list[BogoPair] = []
    leftovers: list[BogoUnit] = []

    # Same-group pass
    by_group: dict[int, list[BogoUnit]] = {}
    for unit in units:
        by_group.setdefault(unit.group_id, []).append(unit)

    for group_id, members in by_group.items():
        members = sorted(members, key=lambda u: (-u.unit_price, u.sku))
        for i in range(0, len(members) - 1, 2):
            a, b = members[i], members[i + 1]
            pairs.append(BogoPair(
                kind=PAIR_SAME_GROUP,
                group_a=group_id,
                group_b=group_id,
                pair_price=a.pair_price,
                member_a=a,
                member_b=b,
            ))
        if len(members) % 2 == 1:
            leftovers.append(members[-1])

    # Cross-group pass
    leftovers.sort(key=lambda u: (u.pair_price, u.unit_price, u.sku))
    i, j = 0, len(leftovers) - 1
    while i < j:
        a, b = leftovers[i], leftovers[j]
        pairs.append(BogoPair(
            kind=PAIR_CROSS_GROUP,
            group_a=a.group_id,
            group_b=b.group_id,
            pair_price=round2((a.pair_price + b.pair_price) / 2),
            member_a=a,
            member_b=b,
        ))
        i += 1
        j -= 1

    if not pairs:
        return BogoResult(has_leftover=bool(leftovers))

    regular = sum((p.regular_price for p in pairs), ZERO)
    discounted = sum((p.pair_price for p in pairs), ZERO)
    return BogoResult(
        bogo_discount_amount=round2(max(ZERO, regular - discounted)),
        regular_total_eligible=round2(regular),
        discounted_total_eligible=round2(discounted),
        has_leftover=len(leftovers) % 2 == 1,
        pairs=tuple(pairs),
    )


def compute_bogo(cart_lines: Sequence[CartLine], catalog: CatalogLookup | None = None) -> BogoResult:
    """
    Compute the automatic buy-together discount for a cart.

    Returns a zero result when fewer than two eligible units exist.
    """
    return pair_units(expand_units(cart_lines, catalog))
