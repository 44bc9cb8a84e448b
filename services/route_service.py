"""
Route Provider Adapter
Fetches a driving route from the primary provider (Google Directions) and
falls back to OSRM when the primary fails or answers with too few points.
"""

import logging
import math
from contextlib import asynccontextmanager
from typing import Optional

import httpx

from config import settings
from models import LatLng, RouteResult
from .exceptions import InvalidInput, RouteProviderFailure
from .helpers import decode_polyline, distance_km, round_half_up

logger = logging.getLogger(__name__)


def _to_number(value) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def coerce_point(point, name: str = "point") -> LatLng:
    """Accept a LatLng or a mapping with numeric (or numeric string) lat/lng."""
    if isinstance(point, LatLng):
        return point
    if not isinstance(point, dict):
        raise InvalidInput(f"{name} is required")
    lat = _to_number(point.get("lat"))
    lng = _to_number(point.get("lng"))
    if lat is None or lng is None:
        raise InvalidInput(f"{name} must have numeric lat/lng")
    return LatLng(lat=lat, lng=lng)


def _minutes(seconds) -> int:
    seconds = _to_number(seconds) or 0.0
    return max(1, int(round_half_up(seconds / 60)))


@asynccontextmanager
async def _client_scope(client: Optional[httpx.AsyncClient]):
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=settings.ROUTE_TIMEOUT_SECONDS) as owned:
        yield owned


async def _get_json(client: httpx.AsyncClient, url: str, provider: str, params=None) -> dict:
    try:
        response = await client.get(url, params=params, timeout=settings.ROUTE_TIMEOUT_SECONDS)
        response.raise_for_status()
        data = response.json()
    except httpx.TimeoutException as exc:
        raise RouteProviderFailure(provider, "timeout") from exc
    except httpx.HTTPError as exc:
        raise RouteProviderFailure(provider, f"HTTP error: {exc}") from exc
    except ValueError as exc:
        raise RouteProviderFailure(provider, "response was not JSON") from exc
    if not isinstance(data, dict):
        raise RouteProviderFailure(provider, "unexpected payload")
    return data


async def get_google_route(origin: LatLng, destination: LatLng, client: httpx.AsyncClient) -> RouteResult:
    params = {
        "origin": f"{origin.lat},{origin.lng}",
        "destination": f"{destination.lat},{destination.lng}",
        "mode": "driving",
    }
    if settings.GOOGLE_MAPS_API_KEY:
        params["key"] = settings.GOOGLE_MAPS_API_KEY
    if settings.DIRECTIONS_REGION:
        params["region"] = settings.DIRECTIONS_REGION
    if settings.DIRECTIONS_LANGUAGE:
        params["language"] = settings.DIRECTIONS_LANGUAGE

    data = await _get_json(client, settings.DIRECTIONS_API_URL, "google", params=params)

    status = data.get("status")
    routes = data.get("routes") or []
    if status != "OK" or not routes:
        raise RouteProviderFailure("google", data.get("error_message") or status or "no routes")

    try:
        route = routes[0]
        leg = (route.get("legs") or [{}])[0]
        meters = _to_number((leg.get("distance") or {}).get("value")) or 0.0
        seconds = (leg.get("duration") or {}).get("value")
        points = (route.get("overview_polyline") or {}).get("points")
    except (AttributeError, IndexError, KeyError, TypeError) as exc:
        raise RouteProviderFailure("google", "malformed route") from exc

    coords = decode_polyline(points)
    # A two-point answer is a straight line, never a usable street route.
    if len(coords) < settings.ROUTE_MIN_COORDS:
        raise RouteProviderFailure("google", f"only {len(coords)} coordinates")

    return RouteResult(
        distanceKm=meters / 1000,
        durationMin=_minutes(seconds),
        coords=coords,
        provider="google",
        polyline=points,
        quality="exact",
    )


async def get_osrm_route(origin: LatLng, destination: LatLng, client: httpx.AsyncClient) -> RouteResult:
    # OSRM expects lng,lat
    url = (
        f"{settings.OSRM_BASE_URL.rstrip('/')}/route/v1/driving/"
        f"{origin.lng},{origin.lat};{destination.lng},{destination.lat}"
    )
    params = {"overview": "full", "geometries": "geojson", "steps": "false"}

    data = await _get_json(client, url, "osrm", params=params)

    routes = data.get("routes") or []
    if data.get("code") != "Ok" or not routes:
        raise RouteProviderFailure("osrm", data.get("message") or data.get("code") or "no routes")

    try:
        route = routes[0]
        meters = _to_number(route.get("distance")) or 0.0
        seconds = route.get("duration")
        pairs = list((route.get("geometry") or {}).get("coordinates") or [])
    except (AttributeError, IndexError, KeyError, TypeError) as exc:
        raise RouteProviderFailure("osrm", "malformed route") from exc

    coords = []
    for pair in pairs:
        if not isinstance(pair, (list, tuple)) or len(pair) < 2:
            continue
        lng, lat = _to_number(pair[0]), _to_number(pair[1])
        if lat is not None and lng is not None:
            coords.append(LatLng(lat=lat, lng=lng))

    if len(coords) < settings.ROUTE_MIN_COORDS:
        raise RouteProviderFailure("osrm", f"only {len(coords)} coordinates")

    return RouteResult(
        distanceKm=meters / 1000,
        durationMin=_minutes(seconds),
        coords=coords,
        provider="osrm",
        quality="exact",
    )


async def get_route(origin, destination, client: Optional[httpx.AsyncClient] = None) -> RouteResult:
    """
    Get a driving route between two points.

    Args:
        origin: LatLng or {"lat", "lng"} mapping
        destination: LatLng or {"lat", "lng"} mapping
        client: shared httpx client; a short-lived one is created when omitted

    Returns:
        RouteResult from Google, or from OSRM when Google fails

    Raises:
        InvalidInput: when a point is missing or not numeric
        RouteProviderFailure: when the fallback provider fails as well
    """
    origin = coerce_point(origin, "origin")
    destination = coerce_point(destination, "destination")

    async with _client_scope(client) as http:
        try:
            return await get_google_route(origin, destination, http)
        except RouteProviderFailure as exc:
            logger.warning(f"Primary route provider failed ({exc.reason}), falling back to OSRM")
        return await get_osrm_route(origin, destination, http)


def estimate_route(origin, destination) -> RouteResult:
    """Straight-line route used when no provider could route the trip."""
    origin = coerce_point(origin, "origin")
    destination = coerce_point(destination, "destination")

    km = distance_km(origin, destination)
    minutes = (km / settings.APPROX_SPEED_KMH) * 60 if settings.APPROX_SPEED_KMH > 0 else 0
    return RouteResult(
        distanceKm=km,
        durationMin=max(1, int(round_half_up(minutes))),
        coords=[origin, destination],
        provider="haversine",
        quality="approximate",
    )


async def get_route_or_estimate(origin, destination, client: Optional[httpx.AsyncClient] = None) -> RouteResult:
    try:
        return await get_route(origin, destination, client)
    except RouteProviderFailure as exc:
        logger.warning(f"All route providers failed, using straight-line estimate: {exc}")
        return estimate_route(origin, destination)
