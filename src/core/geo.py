"""Great-circle distance and proximity ranking (core domain)."""

from __future__ import annotations

import math
from typing import Iterable, List, Tuple

from core.models import GeoPoint, Request

EARTH_RADIUS_KM = 6371.0


def haversine_km(origin: GeoPoint, target: GeoPoint) -> float:
    """Return the great-circle distance in kilometres on a spherical Earth."""

    lat1 = math.radians(origin.latitude)
    lat2 = math.radians(target.latitude)
    d_lat = lat2 - lat1
    d_lng = math.radians(target.longitude - origin.longitude)

    a = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def rank_by_distance(reference: GeoPoint, candidates: Iterable[Request]) -> List[Tuple[Request, float]]:
    """Return (request, km) pairs nearest first.

    Requests without a coordinate cannot be ranked and are left out. Ties
    keep their input order.
    """

    scored = [
        (request, haversine_km(reference, request.location))
        for request in candidates
        if request.location is not None
    ]
    scored.sort(key=lambda pair: pair[1])
    return scored
