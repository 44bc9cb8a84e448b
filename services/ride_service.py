"""
Ride Lifecycle Controller.

Owns the ride status machine:

    open/searching --claim--> assigned --(start)--> in_progress
    assigned/in_progress --finish--> finished --rate--> completed
    open/searching --cancel--> cancelled

Claiming (and assigning on a driver's behalf) runs as a store transaction so
concurrent drivers cannot both win. The remaining transitions are plain
updates guarded by a precondition check on the current document.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from config import settings
from models import (
    ACTIVE_STATUSES, CANCELLABLE_STATUSES, CLAIMABLE_STATUSES, FINISHABLE_STATUSES,
    LatLng, Ride, RideStatus, RouteResult, is_active_status, is_admin_role,
    is_driver_role,
)
from .exceptions import (
    AlreadyClaimed, AlreadyRated, InvalidInput, InvalidTransition, PermissionDenied,
    RideNotFound,
)
from .helpers import fare_by_distance, round_half_up
from .route_service import coerce_point, estimate_route
from .user_service import get_role

logger = logging.getLogger(__name__)

RATING_LABELS = {1: "Poor", 2: "Regular", 3: "Excellent"}


def _now():
    return datetime.now(timezone.utc)


def _status(data: dict) -> RideStatus:
    return RideStatus.parse(data.get("status"))


def _point(point: LatLng) -> dict:
    return {"lat": point.lat, "lng": point.lng}


def _require_ride(ride_id: str, store) -> dict:
    if not ride_id:
        raise InvalidInput("rideId is required")
    data = store.get_ride(ride_id)
    if data is None:
        raise RideNotFound(ride_id)
    return data


def _reload(ride_id: str, store) -> Ride:
    return Ride.from_document(_require_ride(ride_id, store))


def pickup_eta_minutes(eta_min) -> Optional[int]:
    """
    Heuristic minutes for the driver to reach the pickup.

    Scales the trip ETA by PICKUP_ETA_FACTOR with a floor of
    PICKUP_ETA_MIN_MINUTES. This is a placeholder policy, not a routing estimate.
    """
    if isinstance(eta_min, bool) or not isinstance(eta_min, (int, float)):
        return None
    scaled = int(round_half_up(eta_min * settings.PICKUP_ETA_FACTOR))
    return max(settings.PICKUP_ETA_MIN_MINUTES, scaled)


def price_for_distance(km) -> float:
    return fare_by_distance(
        km,
        base=settings.FARE_BASE,
        per_km=settings.FARE_PER_KM,
        min_fare=settings.FARE_MIN,
        decimals=settings.FARE_DECIMALS,
    )


async def create_ride(
    passenger_id: str,
    origin,
    destination,
    store,
    route: Optional[RouteResult] = None,
    passenger_name: Optional[str] = None,
    passenger_phone: Optional[str] = None,
) -> Ride:
    """
    Create an open ride for a passenger.

    Args:
        passenger_id: owner of the ride
        origin, destination: LatLng or {"lat", "lng"} mappings
        store: ride store
        route: route snapshot taken at request time; a straight-line
            estimate flagged as approximate is used when omitted

    Raises:
        InvalidInput: missing passenger or malformed points
        ActiveRideExists: the passenger already has a ride in ACTIVE_STATUSES
    """
    if not passenger_id:
        raise InvalidInput("passengerId is required")
    origin = coerce_point(origin, "origin")
    destination = coerce_point(destination, "destination")
    if route is None:
        route = estimate_route(origin, destination)

    ride_data = {
        "passengerId": passenger_id,
        "passengerName": passenger_name,
        "passengerPhone": passenger_phone,
        "origin": _point(origin),
        "destination": _point(destination),
        "distanceKm": route.distanceKm,
        "etaMin": route.durationMin,
        "price": price_for_distance(route.distanceKm),
        "route": {
            "coords": [_point(p) for p in route.coords],
            "distanceKm": route.distanceKm,
            "durationMin": route.durationMin,
            "provider": route.provider,
            "quality": route.quality,
        },
        "routeQuality": route.quality,
        "status": RideStatus.OPEN.value,
        "driverId": None,
        "createdAt": _now(),
    }

    ride_id = store.create_ride(passenger_id, ride_data, is_blocking=lambda ride: is_active_status(ride.get("status")))
    logger.info(f"Ride {ride_id} created for passenger {passenger_id} (price {ride_data['price']}, {route.quality} route)")
    return Ride.from_document({**ride_data, "id": ride_id})


async def claim_ride(ride_id: str, driver_id: str, store) -> Ride:
    """
    Transactionally claim an open ride for a driver.

    Exactly one of several concurrent claims succeeds; the others raise
    AlreadyClaimed and must be shown as "offer no longer available".
    """
    if not driver_id:
        raise InvalidInput("driverId is required")
    if not is_driver_role(get_role(driver_id, store)):
        raise PermissionDenied(f"User {driver_id} is not allowed to take rides")

    def _claim(current: dict) -> dict:
        status = _status(current)
        if status not in CLAIMABLE_STATUSES:
            raise AlreadyClaimed(ride_id, status, current.get("driverId"))
        return {
            "status": RideStatus.ASSIGNED.value,
            "driverId": driver_id,
            "acceptedAt": _now(),
        }

    data = store.transact_ride(ride_id, _claim)
    logger.info(f"Ride {ride_id} claimed by driver {driver_id}")
    return Ride.from_document(data)


async def assign_driver_details(
    ride_id: str,
    actor_id: str,
    driver_name: str,
    driver_plate: str,
    store,
    driver_location=None,
    driver_id: Optional[str] = None,
) -> Ride:
    """Claim (if still open) and attach driver identity on behalf of a driver."""
    driver_name = (driver_name or "").strip()
    driver_plate = (driver_plate or "").strip()
    if not driver_name or not driver_plate:
        raise InvalidInput("driverName and driverPlate are required")
    if not is_admin_role(get_role(actor_id, store)):
        raise PermissionDenied(f"User {actor_id} is not allowed to assign rides")

    driver_id = driver_id or actor_id
    if driver_location is not None:
        driver_location = coerce_point(driver_location, "driverLocation")
    else:
        live = store.get_live_location(driver_id) or {}
        try:
            driver_location = coerce_point({"lat": live.get("lat"), "lng": live.get("lng")})
        except InvalidInput:
            driver_location = None

    def _assign(current: dict) -> dict:
        status = _status(current)
        updates = {}
        if status in CLAIMABLE_STATUSES:
            updates.update({
                "status": RideStatus.ASSIGNED.value,
                "driverId": driver_id,
                "acceptedAt": _now(),
            })
        elif status == RideStatus.ASSIGNED:
            if current.get("driverId") != driver_id:
                raise AlreadyClaimed(ride_id, status, current.get("driverId"))
        else:
            raise InvalidTransition(ride_id, status, "assign a driver to")

        updates.update({
            "driverName": driver_name,
            "driverPlate": driver_plate,
            "pickupEtaMin": pickup_eta_minutes(current.get("etaMin")),
            "driverLocation": _point(driver_location) if driver_location else None,
            "driverLocationUpdatedAt": _now() if driver_location else None,
        })
        return updates

    data = store.transact_ride(ride_id, _assign)
    logger.info(f"Ride {ride_id} assigned to {driver_name} ({driver_plate}) by {actor_id}")
    return Ride.from_document(data)


def _require_driver(ride_id: str, current: dict, actor_id: str):
    if not actor_id or current.get("driverId") != actor_id:
        raise PermissionDenied(f"User {actor_id} is not the driver of ride {ride_id}")


async def start_ride(ride_id: str, actor_id: str, store) -> Ride:
    """Optional assigned -> in_progress step once the passenger is on board."""
    current = _require_ride(ride_id, store)
    _require_driver(ride_id, current, actor_id)
    status = _status(current)
    if status != RideStatus.ASSIGNED:
        raise InvalidTransition(ride_id, status, "start")

    store.update_ride(ride_id, {"status": RideStatus.IN_PROGRESS.value, "startedAt": _now()})
    logger.info(f"Ride {ride_id} started by driver {actor_id}")
    return _reload(ride_id, store)


async def mark_finished(ride_id: str, actor_id: str, store) -> Ride:
    current = _require_ride(ride_id, store)
    status = _status(current)
    if status not in FINISHABLE_STATUSES:
        raise InvalidTransition(ride_id, status, "finish")
    _require_driver(ride_id, current, actor_id)

    store.update_ride(ride_id, {"status": RideStatus.FINISHED.value, "finishedAt": _now()})
    logger.info(f"Ride {ride_id} finished by driver {actor_id}")
    return _reload(ride_id, store)


async def cancel_ride(ride_id: str, actor_id: str, store) -> Ride:
    """Cancel a ride that is still waiting for a driver."""
    current = _require_ride(ride_id, store)
    status = _status(current)
    if status not in CANCELLABLE_STATUSES:
        raise InvalidTransition(ride_id, status, "cancel")
    if actor_id != current.get("passengerId") and not is_admin_role(get_role(actor_id, store)):
        raise PermissionDenied(f"User {actor_id} cannot cancel ride {ride_id}")

    store.update_ride(ride_id, {
        "status": RideStatus.CANCELLED.value,
        "cancelledAt": _now(),
        "cancelledBy": actor_id,
    })
    logger.info(f"Ride {ride_id} cancelled by {actor_id}")
    return _reload(ride_id, store)


def _rating_fields(score, label):
    if score is None and label:
        matches = [s for s, text in RATING_LABELS.items() if text.lower() == label.strip().lower()]
        if not matches:
            raise InvalidInput(f"Unknown rating label '{label}'")
        score = matches[0]
    if isinstance(score, bool) or not isinstance(score, int) or score not in RATING_LABELS:
        raise InvalidInput(f"Rating score must be one of {sorted(RATING_LABELS)}")
    return score, RATING_LABELS[score]


async def submit_rating(
    ride_id: str,
    passenger_id: str,
    store,
    score: Optional[int] = None,
    label: Optional[str] = None,
    complete: bool = True,
) -> Ride:
    """
    Rate a finished ride once, as its passenger.

    Raises:
        AlreadyRated: a rating exists; callers treat this as a no-op success
        InvalidTransition: the ride is not finished
    """
    score, label = _rating_fields(score, label)
    current = _require_ride(ride_id, store)
    if not passenger_id or current.get("passengerId") != passenger_id:
        raise PermissionDenied(f"User {passenger_id} is not the passenger of ride {ride_id}")
    if current.get("rating"):
        raise AlreadyRated(ride_id)
    status = _status(current)
    if status != RideStatus.FINISHED:
        raise InvalidTransition(ride_id, status, "rate")

    now = _now()
    updates = {"rating": {"score": score, "label": label, "by": passenger_id, "createdAt": now}}
    if complete:
        updates.update({"status": RideStatus.COMPLETED.value, "completedAt": now})
    store.update_ride(ride_id, updates)
    logger.info(f"Ride {ride_id} rated {score} ({label}) by {passenger_id}")
    return _reload(ride_id, store)


async def get_ride(ride_id: str, store) -> Optional[Ride]:
    data = store.get_ride(ride_id)
    return Ride.from_document(data) if data else None


def _parse_rides(docs) -> list[Ride]:
    rides = []
    for data in docs:
        try:
            rides.append(Ride.from_document(data))
        except ValueError as exc:
            logger.warning(f"Skipping unreadable ride document {data.get('id')}: {exc}")
    return rides


async def get_active_ride(passenger_id: str, store) -> Optional[Ride]:
    rides = _parse_rides(store.list_rides(statuses=ACTIVE_STATUSES, passenger_id=passenger_id))
    return rides[0] if rides else None


async def list_open_rides(store) -> list[Ride]:
    """Rides waiting for a driver. No ordering is guaranteed."""
    return _parse_rides(store.list_rides(statuses=CLAIMABLE_STATUSES))


async def list_driver_rides(driver_id: str, store) -> list[Ride]:
    return _parse_rides(store.list_rides(driver_id=driver_id, newest_first=True))


async def list_ride_history(uid: str, store, limit: Optional[int] = None) -> list[Ride]:
    """Rides requested by a passenger, newest first."""
    return _parse_rides(store.list_rides(passenger_id=uid, newest_first=True, limit=limit))


def subscribe_ride(ride_id: str, handler: Callable[[Optional[Ride]], None], store):
    """Deliver every snapshot of a ride as a frozen Ride (None once deleted)."""
    def _deliver(data):
        handler(Ride.from_document(data) if data else None)
    return store.subscribe_ride(ride_id, _deliver)


def subscribe_open_rides(handler: Callable[[list], None], store):
    return store.subscribe_rides(lambda docs: handler(_parse_rides(docs)), statuses=CLAIMABLE_STATUSES)
