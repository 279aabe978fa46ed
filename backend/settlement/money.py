# Overview: Fixed-point money helpers shared by every pricing and invoicing component.

"""
Money Utilities

All monetary values are decimal.Decimal with two fractional digits.
Rounding is half away from zero (ROUND_HALF_UP on Decimal), so
round2(2.675) == 2.68 and round2(-2.675) == -2.68.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Sequence

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    """Coerce int/str/float/Decimal/None into a Decimal (None -> 0)."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("bool is not a money value")
    # str() first so floats like 0.1 do not carry binary artifacts
    return Decimal(str(value))


def round2(value) -> Decimal:
    return to_money(value).quantize(CENT, rounding=ROUND_HALF_UP)


def money_sum(values: Iterable) -> Decimal:
    total = ZERO
    for value in values:
        total += to_money(value)
    return total


def allocate_proportionally(total, weights: Sequence) -> list[Decimal]:
    """
    Split `total` across `weights` without drifting.

    Every share except the last is round2(total * w / sum(weights)); the last
    share absorbs the remainder, so sum(result) == round2(total) exactly.
    When all weights are zero the whole amount lands on the last element.
    """
    if not weights:
        return []

    total = round2(total)
    weights = [to_money(w) for w in weights]
    weight_sum = money_sum(weights)

    shares: list[Decimal] = []
    allocated = ZERO
    for weight in weights[:-1]:
        if weight_sum == 0:
            share = ZERO
        else:
            share = round2(total * weight / weight_sum)
        shares.append(share)
        allocated += share

    shares.append(total - allocated)
    return shares
