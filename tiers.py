"""
Tier calculator: balance → tier → discount.

Pure, table-driven functions. Change TIER_TABLE to move thresholds;
no call site knows the numbers.
"""

from typing import NamedTuple

from django.db import models
from django.utils.translation import gettext_lazy as _


class Tier(models.TextChoices):
    """Loyalty tiers, lowest first."""

    BRONZE = "BRONZE", _("Bronze")
    SILVER = "SILVER", _("Silver")
    GOLD = "GOLD", _("Gold")
    PLATINUM = "PLATINUM", _("Platinum")
    DIAMOND = "DIAMOND", _("Diamond")


class TierRule(NamedTuple):
    tier: Tier
    threshold: int
    discount_percent: int


# Ascending by threshold. The first row must start at 0.
TIER_TABLE: tuple[TierRule, ...] = (
    TierRule(Tier.BRONZE, 0, 0),
    TierRule(Tier.SILVER, 100, 5),
    TierRule(Tier.GOLD, 500, 10),
    TierRule(Tier.PLATINUM, 1000, 15),
    TierRule(Tier.DIAMOND, 5000, 20),
)


def tier_of(balance: int) -> Tier:
    """Highest tier whose threshold the balance reaches."""
    current = TIER_TABLE[0].tier
    for rule in TIER_TABLE:
        if balance >= rule.threshold:
            current = rule.tier
        else:
            break
    return current


def discount_of(tier: str) -> int:
    """Discount percentage granted by a tier (0 for unknown values)."""
    for rule in TIER_TABLE:
        if rule.tier == tier:
            return rule.discount_percent
    return 0


def next_tier(balance: int) -> tuple[Tier | None, int]:
    """
    Next tier above the balance and the points still missing.

    Returns (None, 0) once the top tier is reached.
    """
    balance = max(balance, 0)
    for rule in TIER_TABLE:
        if rule.threshold > balance:
            return rule.tier, rule.threshold - balance
    return None, 0

