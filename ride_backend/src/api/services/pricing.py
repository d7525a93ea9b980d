"""
Fare calculation: distance-based base price and time-of-day surge.

Configuration (optional environment variables):
- PRICING_BASE_FARE: flag-fall amount in currency units (default 5)
- PRICING_PER_KM_RATE: per-kilometer rate (default 2.5)
- PRICING_UTC_OFFSET_HOURS: offset of the pricing region's local time from UTC
  (default 3; the Gulf region observes no DST)
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from src.api.clock import Clock, system_clock

EARTH_RADIUS_KM = 6371.0

BASE_FARE = Decimal(os.getenv("PRICING_BASE_FARE", "5"))
PER_KM_RATE = Decimal(os.getenv("PRICING_PER_KM_RATE", "2.5"))
PRICING_TZ = timezone(timedelta(hours=float(os.getenv("PRICING_UTC_OFFSET_HOURS", "3"))))

# Inclusive hour ranges.
PEAK_WINDOWS = ((7, 9), (17, 20))
# datetime.weekday(): Friday=4, Saturday=5.
WEEKEND_DAYS = frozenset({4, 5})

SURGE_NONE = Decimal("1.00")
SURGE_PEAK = Decimal("1.25")
SURGE_PEAK_WEEKEND = Decimal("1.50")

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class FareQuote:
    """Price estimate shown to a rider before requesting a ride."""
    distance_km: float
    base_price: Decimal
    surge_multiplier: Decimal
    estimated_price: Decimal
    is_peak: bool


def round_currency(value) -> Decimal:
    """
    Round to 2 decimal places, half-up.

    Floats are converted through their shortest repr so that e.g. 10.125 rounds
    to 10.13 rather than being truncated by its binary expansion.
    """
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle (haversine) distance in km."""
    p1 = math.radians(lat1)
    p2 = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = math.sin(dlat / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dlng / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


# PUBLIC_INTERFACE
def calculate_base_price(pickup_lat: float, pickup_lng: float, dropoff_lat: float, dropoff_lng: float) -> Decimal:
    """
    Distance-derived fare before surge: base fare + km * per-km rate.

    Coordinates are not range-checked.
    """
    km = distance_km(pickup_lat, pickup_lng, dropoff_lat, dropoff_lng)
    return round_currency(float(BASE_FARE) + km * float(PER_KM_RATE))


def is_peak_hour(hour: int) -> bool:
    return any(start <= hour <= end for start, end in PEAK_WINDOWS)


def is_weekend(now: datetime) -> bool:
    return now.weekday() in WEEKEND_DAYS


# PUBLIC_INTERFACE
def get_surge_multiplier(now: datetime) -> Decimal:
    """
    Surge multiplier for the given local time.

    Peak on a weekend -> 1.5, peak otherwise -> 1.25, off-peak -> 1.0.
    The hour and weekday of `now` are used as-is; see `local_time`.
    """
    if not is_peak_hour(now.hour):
        return SURGE_NONE
    if is_weekend(now):
        return SURGE_PEAK_WEEKEND
    return SURGE_PEAK


def local_time(now: datetime) -> datetime:
    """Convert an instant to pricing-region local time (naive input is treated as UTC)."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(PRICING_TZ)


def compute_final_price(base_price, surge_multiplier) -> Decimal:
    """Surge-adjusted fare, frozen on the ride when a driver accepts."""
    return round_currency(Decimal(str(base_price)) * Decimal(str(surge_multiplier)))


# PUBLIC_INTERFACE
def quote_fare(
    pickup_lat: float,
    pickup_lng: float,
    dropoff_lat: float,
    dropoff_lng: float,
    *,
    clock: Optional[Clock] = None,
) -> FareQuote:
    """Price a prospective ride without persisting anything."""
    clock = clock or system_clock
    base_price = calculate_base_price(pickup_lat, pickup_lng, dropoff_lat, dropoff_lng)
    surge = get_surge_multiplier(local_time(clock.now()))
    return FareQuote(
        distance_km=round(distance_km(pickup_lat, pickup_lng, dropoff_lat, dropoff_lng), 3),
        base_price=base_price,
        surge_multiplier=surge,
        estimated_price=compute_final_price(base_price, surge),
        is_peak=surge > SURGE_NONE,
    )
