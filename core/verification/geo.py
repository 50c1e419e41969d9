"""Geofence containment checks and one-shot device position reads."""
from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import Optional, Protocol

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6_371_000.0
DEFAULT_RADIUS_METERS = 100.0

PERMISSION_DENIED = "permission_denied"
POSITION_UNAVAILABLE = "unavailable"
TIMEOUT = "timeout"

# GeolocationPositionError.code as reported by browsers
_BROWSER_ERROR_CODES = {1: PERMISSION_DENIED, 2: POSITION_UNAVAILABLE, 3: TIMEOUT}

_COMPASS = ("N", "NE", "E", "SE", "S", "SW", "W", "NW")


@dataclass(frozen=True)
class LatLng:
    lat: float
    lng: float


@dataclass(frozen=True)
class GeoFence:
    center: LatLng
    radius_meters: float = DEFAULT_RADIUS_METERS


@dataclass(frozen=True)
class GeoResult:
    within_range: bool
    distance_meters: float


class LocationError(RuntimeError):
    """Raised when the device position cannot be read."""

    def __init__(self, kind: str, message: str = ""):
        super().__init__(message or kind)
        self.kind = kind


def haversine_distance(a: LatLng, b: LatLng) -> float:
    """Great-circle distance between two points, in meters."""
    phi1 = math.radians(a.lat)
    phi2 = math.radians(b.lat)
    d_phi = math.radians(b.lat - a.lat)
    d_lambda = math.radians(b.lng - a.lng)

    h = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def bearing(a: LatLng, b: LatLng) -> float:
    """Initial bearing from ``a`` towards ``b`` in degrees [0, 360)."""
    phi1 = math.radians(a.lat)
    phi2 = math.radians(b.lat)
    d_lambda = math.radians(b.lng - a.lng)
    y = math.sin(d_lambda) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(d_lambda)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def compass_point(degrees: float) -> str:
    return _COMPASS[int((degrees % 360.0) / 45.0 + 0.5) % 8]


class GeoVerifier:
    """Pure containment check of a position against a fence."""

    def verify(self, position: LatLng, fence: GeoFence) -> GeoResult:
        radius = fence.radius_meters if fence.radius_meters else DEFAULT_RADIUS_METERS
        distance = haversine_distance(position, fence.center)
        return GeoResult(within_range=distance <= radius, distance_meters=distance)


def describe_location_error(error: LocationError) -> str:
    if error.kind == PERMISSION_DENIED:
        return "Location permission was denied. Allow location access for this site and try again."
    if error.kind == TIMEOUT:
        return "Could not get location: Timeout expired. Please enable location services."
    detail = str(error) if str(error) != error.kind else "position unavailable"
    return f"Could not get location: {detail}. Please enable location services."


# ----------------------------------------------------------------------
# Location providers
# ----------------------------------------------------------------------
class LocationProvider(Protocol):
    """One-shot, high-accuracy position read."""

    def current_position(self, timeout: float) -> LatLng:
        ...


class StaticLocationProvider:
    """Kiosk installed at a known spot."""

    def __init__(self, position: LatLng):
        self._position = position

    def current_position(self, timeout: float) -> LatLng:
        return self._position


class ReportedLocationProvider:
    """Position posted by a remote client.

    ``current_position`` waits up to ``timeout`` seconds for ``report`` or
    ``report_error``; each reading is consumed once (no continuous tracking).
    """

    def __init__(self) -> None:
        self._ready = threading.Event()
        self._lock = threading.Lock()
        self._position: Optional[LatLng] = None
        self._error: Optional[LocationError] = None

    def report(self, lat: float, lng: float) -> None:
        with self._lock:
            self._position = LatLng(float(lat), float(lng))
            self._error = None
            self._ready.set()

    def report_error(self, code: int, message: str = "") -> None:
        kind = _BROWSER_ERROR_CODES.get(int(code), POSITION_UNAVAILABLE)
        with self._lock:
            self._position = None
            self._error = LocationError(kind, message)
            self._ready.set()

    def current_position(self, timeout: float) -> LatLng:
        if not self._ready.wait(timeout):
            raise LocationError(TIMEOUT, "Timeout expired")
        with self._lock:
            position, error = self._position, self._error
            self._position = None
            self._error = None
            self._ready.clear()
        if error is not None:
            raise error
        if position is None:
            raise LocationError(POSITION_UNAVAILABLE)
        return position


__all__ = [
    "DEFAULT_RADIUS_METERS",
    "EARTH_RADIUS_METERS",
    "GeoFence",
    "GeoResult",
    "GeoVerifier",
    "LatLng",
    "LocationError",
    "LocationProvider",
    "PERMISSION_DENIED",
    "POSITION_UNAVAILABLE",
    "ReportedLocationProvider",
    "StaticLocationProvider",
    "TIMEOUT",
    "bearing",
    "compass_point",
    "describe_location_error",
    "haversine_distance",
]
