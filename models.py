from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import List, Literal
from enum import Enum

class LatLng(BaseModel):
    lat: float
    lng: float

    model_config = ConfigDict(frozen=True)

class RideStatus(str, Enum):
    OPEN = "open"
    SEARCHING = "searching"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value) -> "RideStatus":
        """Normalize a stored status; missing values are treated as open."""
        if isinstance(value, cls):
            return value
        text = (value or "").strip().lower() if isinstance(value, str) else ""
        return cls(text or cls.OPEN.value)

class Role(str, Enum):
    PASSENGER = "passenger"
    DRIVER_ADMIN = "driver_admin"
    ADMIN = "admin"
    SECRETARY = "secretary"

    @classmethod
    def parse(cls, value) -> "Role":
        try:
            return cls((value or "").strip().lower())
        except (ValueError, AttributeError):
            return cls.PASSENGER

class ActorKind(str, Enum):
    DRIVER = "driver"
    PASSENGER = "passenger"

# A passenger may not request a new ride while one of these is pending. Finished
# still blocks so the passenger rates the trip before booking again.
ACTIVE_STATUSES = frozenset({
    RideStatus.OPEN, RideStatus.SEARCHING, RideStatus.ASSIGNED,
    RideStatus.IN_PROGRESS, RideStatus.FINISHED,
})
CLAIMABLE_STATUSES = frozenset({RideStatus.OPEN, RideStatus.SEARCHING})
CANCELLABLE_STATUSES = CLAIMABLE_STATUSES
FINISHABLE_STATUSES = frozenset({RideStatus.ASSIGNED, RideStatus.IN_PROGRESS})
LIVE_TRACKING_STATUSES = frozenset({
    RideStatus.ASSIGNED, RideStatus.IN_PROGRESS, RideStatus.FINISHED,
})
PASSENGER_LOCATION_STATUSES = frozenset({RideStatus.ASSIGNED, RideStatus.IN_PROGRESS})
TERMINAL_STATUSES = frozenset({RideStatus.CANCELLED, RideStatus.COMPLETED})

ADMIN_ROLES = frozenset({Role.DRIVER_ADMIN, Role.ADMIN, Role.SECRETARY})
DRIVER_ROLES = frozenset({Role.DRIVER_ADMIN, Role.ADMIN})

def _status_in(status, statuses) -> bool:
    try:
        return RideStatus.parse(status) in statuses
    except ValueError:
        return False

def is_active_status(status) -> bool:
    return _status_in(status, ACTIVE_STATUSES)

def is_claimable_status(status) -> bool:
    return _status_in(status, CLAIMABLE_STATUSES)

def is_live_tracking_status(status) -> bool:
    return _status_in(status, LIVE_TRACKING_STATUSES)

def can_publish_passenger_location(status) -> bool:
    return _status_in(status, PASSENGER_LOCATION_STATUSES)

def is_admin_role(role) -> bool:
    return Role.parse(role) in ADMIN_ROLES

def is_driver_role(role) -> bool:
    return Role.parse(role) in DRIVER_ROLES

RouteQuality = Literal["exact", "approximate"]

class RouteResult(BaseModel):
    """Driving route returned by a provider or synthesized as a straight line"""
    distanceKm: float
    durationMin: int
    coords: List[LatLng] = []
    provider: Literal["google", "osrm", "haversine"]
    polyline: str | None = None
    quality: RouteQuality = "exact"

class RouteSnapshot(BaseModel):
    """Route cached on the ride at request time"""
    coords: List[LatLng] = []
    distanceKm: float | None = None
    durationMin: int | None = None
    provider: str | None = None
    quality: RouteQuality = "exact"

class Rating(BaseModel):
    score: int = Field(ge=1, le=3)
    label: str
    by: str
    createdAt: datetime | None = None

class Ride(BaseModel):
    """A passenger's transport request and its lifecycle record"""
    id: str
    passengerId: str
    passengerName: str | None = None
    passengerPhone: str | None = None
    driverId: str | None = None
    driverName: str | None = None
    driverPlate: str | None = None
    origin: LatLng
    destination: LatLng
    status: RideStatus = RideStatus.OPEN
    route: RouteSnapshot | None = None
    routeQuality: RouteQuality | None = None
    driverLocation: LatLng | None = None
    driverLocationUpdatedAt: datetime | None = None
    passengerLocation: LatLng | None = None
    passengerLocationUpdatedAt: datetime | None = None
    price: float | None = None
    distanceKm: float | None = None
    etaMin: int | None = None
    pickupEtaMin: int | None = None
    rating: Rating | None = None
    cancelledBy: str | None = None
    createdAt: datetime | None = None
    acceptedAt: datetime | None = None
    startedAt: datetime | None = None
    finishedAt: datetime | None = None
    cancelledAt: datetime | None = None
    completedAt: datetime | None = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_document(cls, data: dict) -> "Ride":
        data = dict(data)
        data["status"] = RideStatus.parse(data.get("status"))
        return cls.model_validate(data)

class LiveLocation(BaseModel):
    """Most recently published position of one actor"""
    uid: str
    rideId: str | None = None
    lat: float | None = None
    lng: float | None = None
    isDriving: bool = False
    updatedAt: datetime | None = None

    model_config = ConfigDict(frozen=True)

class UserProfile(BaseModel):
    uid: str
    email: str | None = None
    role: Role = Role.PASSENGER
    driverName: str | None = None
    names: str | None = None
    surnames: str | None = None
    createdAt: datetime | None = None
    updatedAt: datetime | None = None

class ChatMessage(BaseModel):
    id: str | None = None
    text: str
    senderUid: str
    senderName: str | None = None
    senderRole: str | None = None
    createdAt: datetime | None = None

class CreateRideRequest(BaseModel):
    origin: LatLng
    destination: LatLng
    passengerName: str | None = None
    passengerPhone: str | None = None

class AssignDriverRequest(BaseModel):
    driverName: str
    driverPlate: str
    driverId: str | None = None
    driverLocation: LatLng | None = None

class RatingRequest(BaseModel):
    score: int | None = None
    label: str | None = None

class MessageRequest(BaseModel):
    text: str
