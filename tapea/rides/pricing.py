"""Ride catalogue and price computation."""

import math
from typing import Iterable, Tuple

from .models import RideOption, Supplement

# Prices in XPF
RIDE_OPTIONS = {
    "immediate": RideOption(id="immediate", title="Taxi immédiat", price=2300, price_per_km=150),
    "reservation": RideOption(id="reservation", title="Réservation à l'avance", price=2300, price_per_km=150),
    "tour": RideOption(id="tour", title="Tour de l'Île", price=30000, price_per_km=0),
}

SUPPLEMENTS = {
    "bagages": Supplement(id="bagages", name="Bagages", price=100),
    "encombrants": Supplement(id="encombrants", name="Encombrants", price=200),
}

DRIVER_SHARE = 0.8


def get_ride_option(option_id: str) -> RideOption:
    """Unknown ids fall back to the immediate ride."""
    return RIDE_OPTIONS.get(option_id, RIDE_OPTIONS["immediate"])


def calculate_price(
    ride_option: RideOption,
    distance_km: float,
    supplements: Iterable[Supplement] = (),
) -> Tuple[float, int]:
    """
    Compute the price of a ride.

    Args:
        ride_option: Selected ride class
        distance_km: Route distance in kilometers
        supplements: Selected supplements (unit price x quantity)

    Returns:
        (total_price, driver_earnings) where earnings are the rounded driver share
    """
    supplements_total = sum(s.price * s.quantity for s in supplements)
    total_price = ride_option.price + distance_km * ride_option.price_per_km + supplements_total
    # Half-up rounding
    driver_earnings = int(math.floor(total_price * DRIVER_SHARE + 0.5))
    return total_price, driver_earnings
