# Geo Utilities
# File: geo_utils.py

"""
Great-circle distance, arrival-radius checks and ETA estimation.
All functions are pure; the only ambient input is the current time used by ETA.
"""

import math
from datetime import datetime, timedelta
from typing import Optional

EARTH_RADIUS_KM = 6371.0
DEFAULT_SPEED_KMH = 50.0
ETA_BUFFER = 1.15  # 15% safety margin


def distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Haversine distance between two coordinates

    Args:
        lat1, lon1: First point in degrees
        lat2, lon2: Second point in degrees

    Returns:
        Distance in kilometers
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def distance_between(a, b) -> float:
    """Distance in km between two objects exposing latitude/longitude"""
    return distance_km(a.latitude, a.longitude, b.latitude, b.longitude)


def within_radius(a, b, radius_meters: float) -> bool:
    """True when b lies within radius_meters of a (boundary inclusive)"""
    return distance_between(a, b) * 1000 <= radius_meters


def estimate_eta(distance: float, speed_kmh: float = DEFAULT_SPEED_KMH,
                 now: Optional[datetime] = None) -> datetime:
    """
    Estimate arrival time for a straight-line leg

    Args:
        distance: Remaining distance in kilometers
        speed_kmh: Average ground speed
        now: Reference time (defaults to current time)

    Returns:
        now + ceil(distance / speed * 1.15 * 60) minutes
    """
    if speed_kmh <= 0:
        raise ValueError(f"speed must be positive, got {speed_kmh}")

    minutes = math.ceil(distance / speed_kmh * ETA_BUFFER * 60)
    return (now or datetime.now()) + timedelta(minutes=minutes)
