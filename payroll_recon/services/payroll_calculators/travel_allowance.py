"""
Payroll Recon - Travel Allowance Tiers

Monthly travel rates banded by transport mode and commute distance, each
tier valid over an effective date window.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional

from payroll_recon.models.payroll_settings import TransportMode


@dataclass(frozen=True)
class TravelTier:
    transport_mode: TransportMode
    min_km: Decimal
    max_km: Optional[Decimal]
    monthly_rate: Decimal
    effective_from: date
    effective_to: Optional[date] = None
    is_active: bool = True

    def matches(self, transport_mode: TransportMode, distance_km: Decimal, on_date: date) -> bool:
        if not self.is_active or self.transport_mode != transport_mode:
            return False
        if self.effective_from > on_date:
            return False
        if self.effective_to is not None and self.effective_to < on_date:
            return False
        if distance_km < self.min_km:
            return False
        return self.max_km is None or distance_km <= self.max_km


# (min_km, max_km, BIKE, CAR, PUBLIC_TRANSPORT)
# Bands share their edges so fractional distances always land in one
DEFAULT_TRAVEL_RATES = (
    (0, 5, 7_500, 11_500, 11_500),
    (5, 10, 12_000, 18_500, 18_500),
    (10, 20, 18_000, 24_000, 24_000),
    (20, 25, 21_000, 27_000, 27_000),
    (25, 30, 24_000, 30_000, 30_000),
    (30, 40, 32_000, 40_000, 40_000),
)


def default_travel_tiers(effective_from: date) -> List[TravelTier]:
    """The standard tier table, effective from a date with no end."""
    modes = (TransportMode.BIKE, TransportMode.CAR, TransportMode.PUBLIC_TRANSPORT)
    tiers = []
    for min_km, max_km, *rates in DEFAULT_TRAVEL_RATES:
        for mode, rate in zip(modes, rates):
            tiers.append(TravelTier(
                transport_mode=mode,
                min_km=Decimal(min_km),
                max_km=Decimal(max_km),
                monthly_rate=Decimal(rate),
                effective_from=effective_from,
            ))
    return tiers


def resolve_travel_tier(
    tiers: Iterable[TravelTier],
    transport_mode: Optional[TransportMode],
    distance_km: Optional[Decimal],
    on_date: date,
) -> Optional[TravelTier]:
    """
    First tier matching mode, distance band and effective window.

    Bands are inclusive at both ends; a distance on an edge shared by two
    bands resolves to the lower one.
    """
    if transport_mode is None or distance_km is None:
        return None
    ordered = sorted(tiers, key=lambda t: (t.transport_mode.value, t.min_km, t.effective_from))
    for tier in ordered:
        if tier.matches(transport_mode, distance_km, on_date):
            return tier
    return None


def validate_tier(tier: TravelTier) -> List[str]:
    problems = []
    if tier.min_km < 0:
        problems.append("min_km cannot be negative")
    if tier.max_km is not None and tier.max_km < tier.min_km:
        problems.append("max_km must not be less than min_km")
    if tier.monthly_rate < 0:
        problems.append("monthly_rate cannot be negative")
    if tier.effective_to is not None and tier.effective_to < tier.effective_from:
        problems.append("effective_to must not precede effective_from")
    return problems
