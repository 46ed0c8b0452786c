"""
Location provider contract for GasCounter.

The device location service itself lives in the UI layer. This module
defines what the core expects from it and the small pure helpers the
pages share (accuracy bands, distances).

Invariants:
    - A provider either returns a fix or raises LocationUnavailableError
    - accuracy is None when the platform does not report one
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Protocol

from .errors import GasCounterError

EARTH_RADIUS_M = 6_371_000.0


class LocationUnavailableError(GasCounterError):
    """No location fix could be obtained.

    Attributes:
        reason: "permission_denied", "timeout" or "no_fix"
    """

    def __init__(self, message: str, reason: str = "no_fix") -> None:
        super().__init__(message)
        self.reason = reason


@dataclass(frozen=True)
class LocationFix:
    """A single position reading.

    Attributes:
        latitude: Latitude in degrees
        longitude: Longitude in degrees
        accuracy: Accuracy radius in meters, None if unknown
    """

    latitude: float
    longitude: float
    accuracy: float | None = None


class LocationProvider(Protocol):
    """Source of device position fixes."""

    async def get_current_location(self) -> LocationFix:
        """Return the current position.

        Raises:
            LocationUnavailableError: On permission denial or timeout
        """
        ...


def accuracy_band(accuracy: float | None) -> str:
    """Classify an accuracy radius for display."""
    if accuracy is None:
        return "unavailable"
    if accuracy < 5:
        return "very_accurate"
    if accuracy < 10:
        return "accurate"
    if accuracy < 20:
        return "medium"
    return "low"


def distance_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle (haversine) distance between two points in meters."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(a))
