import math
from typing import Optional, Tuple

from autofix.models import Location

Coordinates = Tuple[float, float]


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    r = 6371.0
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return r * c


def distance_meters(origin: Coordinates, target: Location) -> float:
    return haversine_km(origin[0], origin[1], target.latitude, target.longitude) * 1000.0


def distance_km(origin: Optional[Location], target: Optional[Location]) -> Optional[float]:
    if origin is None or target is None:
        return None
    return haversine_km(origin.latitude, origin.longitude, target.latitude, target.longitude)


def is_within_radius(origin: Coordinates, target: Location, radius_m: float) -> bool:
    return distance_meters(origin, target) <= radius_m
