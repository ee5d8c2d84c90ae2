"""Fixed purchase price table."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from services.billing_errors import InvalidKindError


@dataclass(frozen=True)
class PricePoint:
    kind: str
    amount: int  # minor currency units
    currency: str
    credits: int
    description: str


PRICING: Dict[str, PricePoint] = {
    "single": PricePoint("single", 199, "USD", 1, "Single Reading"),
    "subscription": PricePoint("subscription", 999, "USD", 12, "Monthly Subscription - 12 Readings"),
    "topup": PricePoint("topup", 999, "USD", 10, "Top-Up Package - 10 Readings"),
}


def price_for(kind: str) -> PricePoint:
    try:
        return PRICING[kind]
    except KeyError:
        raise InvalidKindError(f"Unknown purchase kind: {kind!r}") from None
