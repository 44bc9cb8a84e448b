"""
Live View Composer interface.

Turns a ride, its route and the counterpart's live location into the markers
and polyline a map renders. Rendering itself lives in the client.
"""

from typing import List, Optional

from pydantic import BaseModel

from config import settings
from models import LatLng, LiveLocation, Ride, RouteResult, is_live_tracking_status
from .helpers import distance_km, round_half_up


class Marker(BaseModel):
    kind: str
    position: LatLng


class LiveView(BaseModel):
    rideId: str
    status: str
    markers: List[Marker] = []
    polyline: List[LatLng] = []
    routeQuality: Optional[str] = None
    pickupDistanceKm: Optional[float] = None
    pickupEtaMin: Optional[int] = None


def _eta_minutes(km: float) -> int:
    return max(1, int(round_half_up(km / settings.APPROX_SPEED_KMH * 60)))


def compose_live_view(
    ride: Ride,
    route: Optional[RouteResult] = None,
    counterpart: Optional[LiveLocation] = None,
) -> LiveView:
    markers = [
        Marker(kind="origin", position=ride.origin),
        Marker(kind="destination", position=ride.destination),
    ]

    driver_position = ride.driverLocation
    if counterpart is not None and counterpart.lat is not None and counterpart.lng is not None:
        if counterpart.uid == ride.driverId:
            driver_position = LatLng(lat=counterpart.lat, lng=counterpart.lng)
        elif counterpart.uid == ride.passengerId and is_live_tracking_status(ride.status):
            markers.append(Marker(kind="passenger", position=LatLng(lat=counterpart.lat, lng=counterpart.lng)))

    pickup_km = None
    pickup_eta = ride.pickupEtaMin
    if driver_position is not None and is_live_tracking_status(ride.status):
        markers.append(Marker(kind="driver", position=driver_position))
        pickup_km = distance_km(driver_position, ride.origin)
        if pickup_eta is None:
            pickup_eta = _eta_minutes(pickup_km)

    if route is not None:
        polyline, quality = list(route.coords), route.quality
    elif ride.route is not None:
        polyline, quality = list(ride.route.coords), ride.route.quality
    else:
        polyline, quality = [], None

    return LiveView(
        rideId=ride.id,
        status=ride.status.value,
        markers=markers,
        polyline=polyline,
        routeQuality=quality,
        pickupDistanceKm=pickup_km,
        pickupEtaMin=pickup_eta,
    )
