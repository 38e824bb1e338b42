"""Platform commission calculation.

Pure functions over an immutable tier table. Amounts are integers in minor
units; rates are :class:`~decimal.Decimal` fractions (``Decimal("0.03")`` is 3%).
Tiered rates are volume discounts: the rate of the single highest threshold
not exceeding the amount applies to the whole amount.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType
from typing import Mapping

from app.utils.errors import ConfigurationError, InvalidAmount

DEFAULT_CATEGORY = "DEFAULT"


@dataclass(frozen=True)
class CommissionTier:
    category: str
    base_rate: Decimal
    min_fee: int
    max_fee: int
    # (threshold_amount, rate) pairs; kept sorted ascending by threshold.
    tiered_rates: tuple[tuple[int, Decimal], ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "tiered_rates", tuple(sorted(self.tiered_rates, key=lambda item: item[0])))

    def rate_for(self, amount: int) -> Decimal:
        rate = self.base_rate
        for threshold, tier_rate in self.tiered_rates:
            if threshold > amount:
                break
            rate = tier_rate
        return rate


@dataclass(frozen=True)
class FeeQuote:
    category: str
    amount: int
    fee_amount: int
    net_amount: int
    applied_rate: Decimal


def _tier(category: str, base_rate: str, min_fee: int, max_fee: int, *tiers: tuple[int, str]) -> CommissionTier:
    return CommissionTier(
        category=category,
        base_rate=Decimal(base_rate),
        min_fee=min_fee,
        max_fee=max_fee,
        tiered_rates=tuple((threshold, Decimal(rate)) for threshold, rate in tiers),
    )


DEFAULT_COMMISSION_TIERS: Mapping[str, CommissionTier] = MappingProxyType(
    {
        tier.category: tier
        for tier in (
            _tier(DEFAULT_CATEGORY, "0.05", 5, 500),
            _tier("VENUE", "0.03", 50, 1000, (1000, "0.03"), (5000, "0.025"), (10000, "0.02")),
            _tier("CATERING", "0.04", 25, 750, (2000, "0.035"), (5000, "0.03")),
            _tier("PHOTOGRAPHY", "0.06", 15, 300),
            _tier("VIDEOGRAPHY", "0.06", 20, 400),
            _tier("ENTERTAINMENT", "0.07", 25, 500),
            _tier("DECORATION", "0.05", 10, 200),
            _tier("AUDIO_VISUAL", "0.04", 20, 300),
            _tier("TRANSPORTATION", "0.08", 10, 150),
            _tier("SECURITY", "0.06", 15, 200),
            _tier("CLEANING", "0.07", 8, 100),
            _tier("EQUIPMENT_RENTAL", "0.05", 10, 250),
            _tier("PRINTING", "0.08", 5, 100),
            _tier("MARKETING", "0.10", 25, 500),
        )
    }
)


def resolve_tier(category: str, tiers: Mapping[str, CommissionTier] = DEFAULT_COMMISSION_TIERS) -> CommissionTier:
    """Return the tier for ``category``, falling back to the DEFAULT tier."""

    tier = tiers.get((category or "").upper())
    if tier is not None:
        return tier
    default = tiers.get(DEFAULT_CATEGORY)
    if default is None:
        raise ConfigurationError(
            f"No commission tier configured for category {category!r} and no DEFAULT tier.",
            details={"category": category},
        )
    return default


def calculate_fee(
    category: str,
    amount: int,
    tiers: Mapping[str, CommissionTier] = DEFAULT_COMMISSION_TIERS,
) -> FeeQuote:
    """Split ``amount`` into platform fee and vendor net for ``category``."""

    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(details={"amount": amount})

    tier = resolve_tier(category, tiers)
    rate = tier.rate_for(amount)
    raw_fee = (Decimal(amount) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    fee = min(max(int(raw_fee), tier.min_fee), tier.max_fee)
    return FeeQuote(
        category=tier.category,
        amount=amount,
        fee_amount=fee,
        net_amount=amount - fee,
        applied_rate=rate,
    )


def validate_commission_tiers(tiers: Mapping[str, CommissionTier] = DEFAULT_COMMISSION_TIERS) -> list[str]:
    """Return configuration problems in ``tiers``; an empty list means valid."""

    errors: list[str] = []
    if DEFAULT_CATEGORY not in tiers:
        errors.append("DEFAULT commission tier is missing")
    for name, tier in tiers.items():
        rates = [tier.base_rate, *(rate for _, rate in tier.tiered_rates)]
        if any(rate < 0 or rate > 1 for rate in rates):
            errors.append(f"{name}: rates must be between 0 and 1")
        if tier.min_fee < 0 or tier.min_fee > tier.max_fee:
            errors.append(f"{name}: min_fee must be non-negative and not exceed max_fee")
        if any(threshold <= 0 for threshold, _ in tier.tiered_rates):
            errors.append(f"{name}: tier thresholds must be positive")
    return errors


__all__ = [
    "DEFAULT_CATEGORY",
    "DEFAULT_COMMISSION_TIERS",
    "CommissionTier",
    "FeeQuote",
    "calculate_fee",
    "resolve_tier",
    "validate_commission_tiers",
]
