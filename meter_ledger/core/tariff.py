"""
Tariff calculations.

Converts a token purchase price into kWh and consumption back into money.
The tariff is always passed in explicitly; nothing here reads ambient
settings.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

DEFAULT_TARIFF_PER_KWH = 1444.70  # PLN R1 household rate (Rp/kWh)


@dataclass(frozen=True)
class TariffTier:
    """Effective rate for purchases within a price band."""
    min_nominal: float
    effective_tariff: float
    max_nominal: Optional[float] = None
    label: Optional[str] = None

    def __post_init__(self):
        """Validate tier values."""
        if self.min_nominal < 0:
            raise ValueError("min_nominal cannot be negative")
        if self.effective_tariff <= 0:
            raise ValueError("effective_tariff must be > 0")
        if self.max_nominal is not None and self.max_nominal < self.min_nominal:
            raise ValueError("max_nominal must be >= min_nominal")

    def matches(self, nominal: float) -> bool:
        if nominal < self.min_nominal:
            return False
        return self.max_nominal is None or nominal <= self.max_nominal


@dataclass(frozen=True)
class TariffConfig:
    """Flat rate, admin fee and optional purchase tiers."""
    per_kwh: float = DEFAULT_TARIFF_PER_KWH
    admin_fee: float = 0.0
    tiers: Tuple[TariffTier, ...] = field(default_factory=tuple)

    def __post_init__(self):
        """Validate tariff values are sensible."""
        if self.per_kwh <= 0:
            raise ValueError("per_kwh must be > 0")
        if self.admin_fee < 0:
            raise ValueError("admin_fee cannot be negative")

    def rate_for(self, nominal: float) -> float:
        """Effective Rp/kWh for a purchase: first matching tier, else the flat rate."""
        for tier in sorted(self.tiers, key=lambda t: t.min_nominal):
            if tier.matches(nominal):
                return tier.effective_tariff
        return self.per_kwh


def purchase_kwh_for_cost(token_cost: Optional[float], tariff: TariffConfig) -> Optional[float]:
    """Calculate the kWh a token purchase adds.

    Formula: kWh = (token_cost - admin_fee) / rate, never below zero.

    Args:
        token_cost: Amount paid for the token
        tariff: Tariff to price the purchase with

    Returns:
        kWh rounded to 4 decimal places, or None when no positive cost is given
    """
    if token_cost is None or token_cost <= 0:
        return None

    rate = Decimal(str(tariff.rate_for(token_cost)))
    net = Decimal(str(token_cost)) - Decimal(str(tariff.admin_fee))
    kwh = max(Decimal("0"), net / rate)
    return float(kwh.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP))


def cost_for_kwh(kwh: float, tariff: TariffConfig) -> float:
    """Money value of consumed energy at the flat rate, rounded to 2 places."""
    cost = Decimal(str(kwh)) * Decimal(str(tariff.per_kwh))
    return float(cost.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))
