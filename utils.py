import re
from datetime import datetime, timezone
from typing import Iterable, Optional, Tuple

UNSAFE_NAME_RE = re.compile(r'[\\/*?:"<>|]')


def safe_name(name: str) -> str:
    return UNSAFE_NAME_RE.sub('_', name)


def calculate_distance(p1: Tuple[float, float], p2: Tuple[float, float]) -> float:
    # Haversine formula, (lat, lon) in degrees, result in meters
    from math import radians, sin, cos, sqrt, atan2
    R = 6371e3
    lat1, lon1, lat2, lon2 = map(radians, [p1[0], p1[1], p2[0], p2[1]])
    dlon, dlat = lon2 - lon1, lat2 - lat1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    return R * 2 * atan2(sqrt(a), sqrt(1 - a))


def path_length(points: Iterable) -> float:
    """Length in meters along points having ``lat``/``lon`` attributes."""
    total = 0.0
    prev = None
    for p in points:
        if prev is not None:
            total += calculate_distance((prev.lat, prev.lon), (p.lat, p.lon))
        prev = p
    return total


def format_time(ts: Optional[float]) -> Optional[str]:
    """UTC ISO 8601 time, None when missing or not representable."""
    if ts is None:
        return None
    try:
        dt_obj = datetime.fromtimestamp(ts, timezone.utc)
    except (OverflowError, ValueError, OSError):
        return None
    if dt_obj.microsecond:
        return dt_obj.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
    return dt_obj.strftime('%Y-%m-%dT%H:%M:%SZ')
