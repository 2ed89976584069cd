"""Great-circle distance helpers for location-triggered reminders."""

import math
from typing import Mapping

from config import EARTH_RADIUS_KM, PROXIMITY_THRESHOLD_KM


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance between two coordinates.

    Returns:
        float: Distance in kilometers
    """
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def is_within_proximity(
    current: Mapping[str, float],
    target: Mapping[str, float],
    threshold_km: float = PROXIMITY_THRESHOLD_KM
) -> bool:
    """True when the two points are at most threshold_km apart (inclusive)."""
    distance = calculate_distance(
        current["latitude"], current["longitude"],
        target["latitude"], target["longitude"]
    )
    return distance <= threshold_km
