"""
Geofence distance validation (haversine, spherical Earth).

Everything here is pure and deterministic.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from app.core.exceptions import GeofenceMisconfigured, InvalidCoordinates
from app.models.geofence import Geofence

EARTH_RADIUS_METERS = 6_371_000.0
TOLERANCE_METERS = 2.0


@dataclass(frozen=True)
class GeofenceCheck:
    within: bool
    distance_meters: int


def distance_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    # Rounding can push `a` a hair outside [0, 1] for antipodal points.
    a = min(1.0, max(0.0, a))
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def ensure_configured(geofence: Geofence) -> None:
    """Raise if the geofence cannot be used for a distance check."""
    if (
        geofence.center_latitude is None
        or geofence.center_longitude is None
        or geofence.radius_meters is None
    ):
        raise GeofenceMisconfigured()
    if geofence.radius_meters < 0:
        raise GeofenceMisconfigured("Geofence radius must not be negative")
    if not (-90 <= geofence.center_latitude <= 90 and -180 <= geofence.center_longitude <= 180):
        raise GeofenceMisconfigured("Geofence center coordinates are out of range")


def is_within(
    latitude: float,
    longitude: float,
    geofence: Geofence,
    tolerance_meters: float = TOLERANCE_METERS,
) -> GeofenceCheck:
    """Check a reported position against a circular geofence.

    ``within`` allows a small tolerance for GPS jitter; the reported distance
    is rounded to the nearest meter.
    """
    ensure_configured(geofence)
    distance = distance_meters(
        latitude, longitude, geofence.center_latitude, geofence.center_longitude
    )
    return GeofenceCheck(
        within=distance <= geofence.radius_meters + tolerance_meters,
        distance_meters=int(round(distance)),
    )


def _to_float(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        raise InvalidCoordinates()
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidCoordinates() from None
    if not math.isfinite(number):
        raise InvalidCoordinates()
    return number


def parse_coordinates(latitude: Any, longitude: Any) -> tuple[float, float]:
    """Parse a reported lat/lon pair (numbers or numeric strings)."""
    lat = _to_float(latitude)
    lon = _to_float(longitude)
    if not -90 <= lat <= 90 or not -180 <= lon <= 180:
        raise InvalidCoordinates("Latitude or longitude out of range")
    return lat, lon
