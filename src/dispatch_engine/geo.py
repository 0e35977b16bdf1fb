from __future__ import annotations

import math
from datetime import datetime, timedelta

from dispatch_engine.config import EARTH_RADIUS_M
from dispatch_engine.errors import ValidationError
from dispatch_engine.models import Point


def validate_point(longitude: float, latitude: float) -> Point:
    try:
        lon = float(longitude)
        lat = float(latitude)
    except (TypeError, ValueError) as exc:
        raise ValidationError("longitude and latitude must be numbers") from exc

    if math.isnan(lon) or math.isnan(lat):
        raise ValidationError("longitude and latitude must be numbers")
    if not -180 <= lon <= 180:
        raise ValidationError(f"longitude {lon} outside [-180, 180]")
    if not -90 <= lat <= 90:
        raise ValidationError(f"latitude {lat} outside [-90, 90]")
    return Point(longitude=lon, latitude=lat)


def haversine_m(origin: Point, target: Point) -> float:
    """Great-circle distance in meters; the only distance used by the engine."""
    lat1, lon1 = math.radians(origin.latitude), math.radians(origin.longitude)
    lat2, lon2 = math.radians(target.latitude), math.radians(target.longitude)
    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def estimate_arrival(distance_m: float | None, now: datetime, speed_kph: float = 40) -> datetime | None:
    if distance_m is None or distance_m <= 0:
        return None
    hours = distance_m / 1000 / speed_kph
    return now + timedelta(hours=hours)
