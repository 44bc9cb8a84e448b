import math
import sys
import polyline

from models import LatLng

EARTH_RADIUS_KM = 6371.0

DEFAULT_FARE_BASE = 0.8
DEFAULT_FARE_PER_KM = 0.39
DEFAULT_FARE_MIN = 1.25
DEFAULT_FARE_DECIMALS = 2

def _number(value):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if math.isfinite(value) else None

def _coords(point):
    if point is None:
        return None, None
    if isinstance(point, LatLng):
        return point.lat, point.lng
    if isinstance(point, dict):
        return _number(point.get("lat")), _number(point.get("lng"))
    return None, None

def round_half_up(value: float, decimals: int = 0) -> float:
    """Round half away from zero, unlike the built-in banker's rounding."""
    factor = 10 ** decimals
    scaled = math.floor(abs(value) * factor + 0.5)
    return math.copysign(scaled / factor, value)

def distance_km(a, b) -> float:
    """Great-circle distance in km; 0 when either point is missing or not numeric."""
    lat1, lng1 = _coords(a)
    lat2, lng2 = _coords(b)
    if None in (lat1, lng1, lat2, lng2):
        return 0.0

    lat1, lng1, lat2, lng2 = map(math.radians, [lat1, lng1, lat2, lng2])

    dlat = lat2 - lat1
    dlng = lng2 - lng1
    h = math.sin(dlat / 2)**2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2)**2
    km = 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(max(0.0, min(1.0, h))))
    return km if math.isfinite(km) else 0.0

def fare_by_distance(
    km,
    base: float = DEFAULT_FARE_BASE,
    per_km: float = DEFAULT_FARE_PER_KM,
    min_fare: float = DEFAULT_FARE_MIN,
    decimals: int = DEFAULT_FARE_DECIMALS,
) -> float:
    """
    Distance fare with a minimum charge.

    fare = max(min_fare, base + per_km * max(0, km)), rounded half away from
    zero to `decimals` places. Epsilon is added first so values such as 1.005
    that are stored slightly below their decimal form still round up.
    """
    k = _number(km)
    k = k if k is not None and k > 0 else 0.0

    raw = base + k * per_km
    floor_fare = _number(min_fare)
    enforced = max(floor_fare if floor_fare is not None else 0.0, raw)

    return round(round_half_up(enforced + sys.float_info.epsilon, decimals), decimals)

def decode_polyline(encoded_polyline_str) -> list[LatLng]:
    """Decode a Google encoded polyline; empty list for invalid input."""
    if not encoded_polyline_str or not isinstance(encoded_polyline_str, str):
        return []
    try:
        pairs = polyline.decode(encoded_polyline_str, 5)
    except (IndexError, ValueError, TypeError):
        return []
    return [LatLng(lat=lat, lng=lng) for lat, lng in pairs]
