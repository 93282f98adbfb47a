from __future__ import annotations

from dataclasses import dataclass
from math import atan2, cos, isfinite, radians, sin, sqrt
from typing import Any, Dict, Optional

EARTH_RADIUS_M = 6371000


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> Optional["Coordinate"]:
        """Accept either latitude/longitude or the lat/lng keys used by stored trips."""
        if not isinstance(raw, dict):
            return None
        lat = raw.get("latitude", raw.get("lat"))
        lng = raw.get("longitude", raw.get("lng"))
        if lat is None or lng is None:
            return None
        try:
            lat, lng = float(lat), float(lng)
        except (TypeError, ValueError):
            return None
        if not (isfinite(lat) and isfinite(lng)):
            return None
        return cls(lat, lng)

    def to_dict(self) -> Dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}


def distance_m(a: Coordinate, b: Coordinate) -> float:
    """Return distance in metres using haversine formula."""
    d_lat = radians(b.latitude - a.latitude)
    d_lng = radians(b.longitude - a.longitude)
    lat1 = radians(a.latitude)
    lat2 = radians(b.latitude)
    h = sin(d_lat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(d_lng / 2) ** 2
    # Clamp float drift so antipodal points never feed sqrt a negative.
    h = min(1.0, max(0.0, h))
    c = 2 * atan2(sqrt(h), sqrt(1 - h))
    return EARTH_RADIUS_M * c
