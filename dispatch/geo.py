"""
Coordinate helpers shared by the routing, ranking and animation engines.

Every helper treats a non-finite or missing coordinate as absent and never
lets NaN leak into its result.
"""
from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from shapely import wkb, wkt
from shapely.errors import ShapelyError
from shapely.geometry import MultiPoint, Point, shape

EARTH_RADIUS_KM = 6371.0088
POLYLINE_PRECISION = 5


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float

    def as_dict(self) -> Dict[str, float]:
        return {"lat": round(self.latitude, 6), "lng": round(self.longitude, 6)}


def _finite(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def is_valid_coordinate(coordinate: Any) -> bool:
    return to_coordinate(coordinate) is not None


def to_coordinate(value: Any) -> Optional[Coordinate]:
    """
    Coerce a Coordinate, a ``{"lat", "lng"}``/``{"latitude", "longitude"}``
    mapping or a ``(lat, lng)`` pair into a Coordinate, or None.
    """
    if value is None:
        return None
    if isinstance(value, Coordinate):
        lat, lng = value.latitude, value.longitude
    elif isinstance(value, dict):
        lat = value.get("latitude", value.get("lat"))
        lng = value.get("longitude", value.get("lng", value.get("lon")))
    elif isinstance(value, (list, tuple)) and len(value) == 2:
        lat, lng = value
    else:
        return None

    lat = _finite(lat)
    lng = _finite(lng)
    if lat is None or lng is None:
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        return None
    return Coordinate(lat, lng)


def decode_polyline(encoded: Any, precision: int = POLYLINE_PRECISION) -> List[Coordinate]:
    """
    Decode an encoded polyline (signed varint deltas) into coordinates.

    Malformed input yields an empty list.
    """
    if not encoded or not isinstance(encoded, str):
        return []

    coordinates: List[Coordinate] = []
    index = 0
    lat = 0
    lng = 0
    factor = 10 ** -precision

    try:
        while index < len(encoded):
            lat_change, index = _decode_value(encoded, index)
            lng_change, index = _decode_value(encoded, index)
            lat += lat_change
            lng += lng_change
            coordinate = to_coordinate((lat * factor, lng * factor))
            if coordinate is None:
                return []
            coordinates.append(coordinate)
    except ValueError:
        return []

    return coordinates


def _decode_value(polyline: str, index: int) -> Tuple[int, int]:
    result = 0
    shift = 0

    while True:
        if index >= len(polyline):
            raise ValueError("Invalid polyline: buffer exhausted.")
        b = ord(polyline[index]) - 63
        index += 1
        if b < 0:
            raise ValueError("Invalid polyline: character out of range.")
        result |= (b & 0x1F) << shift
        shift += 5
        if b < 0x20:
            break

    delta = ~(result >> 1) if (result & 1) else (result >> 1)
    return delta, index


def haversine_km(start: Any, end: Any) -> Optional[float]:
    """
    Great-circle distance between two coordinates in kilometres.
    """
    a_point = to_coordinate(start)
    b_point = to_coordinate(end)
    if a_point is None or b_point is None:
        return None

    lat1, lng1 = math.radians(a_point.latitude), math.radians(a_point.longitude)
    lat2, lng2 = math.radians(b_point.latitude), math.radians(b_point.longitude)
    d_lat = lat2 - lat1
    d_lng = lng2 - lng1
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def bearing_deg(start: Any, end: Any) -> float:
    """
    Forward azimuth in degrees from ``start`` to ``end``; 0 when either point
    is absent.
    """
    a_point = to_coordinate(start)
    b_point = to_coordinate(end)
    if a_point is None or b_point is None:
        return 0.0

    phi1 = math.radians(a_point.latitude)
    phi2 = math.radians(b_point.latitude)
    d_lambda = math.radians(b_point.longitude - a_point.longitude)

    x = math.sin(d_lambda) * math.cos(phi2)
    y = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(
        d_lambda
    )
    bearing = math.degrees(math.atan2(x, y))
    return (bearing + 360) % 360


def coordinate_bounds(coordinates: Iterable[Any]) -> Optional[Dict[str, float]]:
    """Bounding box of the valid coordinates, or None if there are none."""
    points = [c for c in (to_coordinate(item) for item in coordinates or []) if c]
    if not points:
        return None
    min_lng, min_lat, max_lng, max_lat = MultiPoint(
        [(p.longitude, p.latitude) for p in points]
    ).bounds
    return {
        "min_lat": min_lat,
        "max_lat": max_lat,
        "min_lng": min_lng,
        "max_lng": max_lng,
    }


def parse_point(value: Any) -> Optional[Coordinate]:
    """
    Parse a serialized location into a Coordinate.

    Accepts GeoJSON mappings, JSON strings, WKT (``POINT(lng lat)``) and hex
    (E)WKB as stored by PostGIS. Anything else yields None.
    """
    if value is None:
        return None
    if isinstance(value, Coordinate):
        return value

    try:
        if isinstance(value, dict):
            if "coordinates" in value:
                geometry = shape(value)
            else:
                return to_coordinate(value)
        elif isinstance(value, str):
            text = value.strip()
            if not text:
                return None
            if text[0] in "{[":
                return parse_point(json.loads(text))
            if text[:5].upper() in ("POINT", "SRID="):
                geometry = wkt.loads(text.split(";", 1)[-1])
            else:
                geometry = wkb.loads(text, hex=True)
        elif isinstance(value, (list, tuple)) and len(value) == 2:
            # GeoJSON ordering.
            return to_coordinate((value[1], value[0]))
        else:
            return None
    except (ShapelyError, ValueError, TypeError, KeyError, AttributeError, RecursionError):
        return None

    if not isinstance(geometry, Point) or geometry.is_empty:
        return None
    return to_coordinate((geometry.y, geometry.x))
