"""
Great-circle distance and the office geofence.
"""
import math
from dataclasses import dataclass

from face_attendance.config import OFFICE_LATITUDE, OFFICE_LONGITUDE, OFFICE_RADIUS_METERS
from face_attendance.exceptions import InvalidCoordinateError

EARTH_RADIUS_METERS = 6371e3


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float

    def __post_init__(self):
        validate_coordinate(self.latitude, self.longitude)


def validate_coordinate(latitude: float, longitude: float) -> None:
    """Raise InvalidCoordinateError unless both values are finite and in range."""
    try:
        lat = float(latitude)
        lon = float(longitude)
    except (TypeError, ValueError):
        raise InvalidCoordinateError(f"Invalid location coordinates: ({latitude!r}, {longitude!r})")

    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise InvalidCoordinateError(f"Invalid location coordinates: ({latitude!r}, {longitude!r})")
    if not -90.0 <= lat <= 90.0 or not -180.0 <= lon <= 180.0:
        raise InvalidCoordinateError(f"Location coordinates out of range: ({lat}, {lon})")


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Distance in meters between two points given in decimal degrees.

    Raises:
        InvalidCoordinateError: If any value is non-finite or out of range
    """
    validate_coordinate(lat1, lon1)
    validate_coordinate(lat2, lon2)

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c


@dataclass(frozen=True)
class Geofence:
    anchor: GeoPoint
    radius_meters: float

    def distance_to(self, point: GeoPoint) -> float:
        return haversine_distance(
            point.latitude, point.longitude,
            self.anchor.latitude, self.anchor.longitude
        )

    def contains(self, point: GeoPoint) -> bool:
        return self.distance_to(point) <= self.radius_meters


def office_geofence() -> Geofence:
    """The configured office location."""
    return Geofence(
        anchor=GeoPoint(OFFICE_LATITUDE, OFFICE_LONGITUDE),
        radius_meters=OFFICE_RADIUS_METERS
    )
