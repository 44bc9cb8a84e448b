"""Error taxonomy for the ride lifecycle core."""


class RideServiceError(Exception):
    """Base class for every error raised by the ride core."""
    pass


class InvalidInput(RideServiceError, ValueError):
    """Raised for malformed coordinates or missing required fields."""
    pass


class RideNotFound(RideServiceError):
    """Raised when a ride document does not exist."""

    def __init__(self, ride_id: str):
        super().__init__(f"Ride {ride_id} not found")
        self.ride_id = ride_id


class InvalidTransition(RideServiceError):
    """Raised when a status change is not legal from the current status."""

    def __init__(self, ride_id: str, current_status, action: str):
        super().__init__(
            f"Cannot {action} ride {ride_id} in status '{_status_value(current_status)}'"
        )
        self.ride_id = ride_id
        self.current_status = current_status
        self.action = action


class AlreadyClaimed(RideServiceError):
    """Raised when a claim loses the race: the offer is no longer available."""

    def __init__(self, ride_id: str, current_status=None, driver_id: str | None = None):
        super().__init__(f"Ride {ride_id} is no longer available")
        self.ride_id = ride_id
        self.current_status = current_status
        self.driver_id = driver_id


class AlreadyRated(RideServiceError):
    """Raised on a second rating attempt for the same ride."""

    def __init__(self, ride_id: str):
        super().__init__(f"Ride {ride_id} has already been rated")
        self.ride_id = ride_id


class ActiveRideExists(RideServiceError):
    """Raised when a passenger already owns an active ride."""

    def __init__(self, passenger_id: str, ride_id: str | None = None):
        super().__init__(f"Passenger {passenger_id} already has an active ride")
        self.passenger_id = passenger_id
        self.ride_id = ride_id


class RouteProviderFailure(RideServiceError):
    """Raised when a route provider call fails or returns an unusable route."""

    def __init__(self, provider: str, reason: str):
        super().__init__(f"{provider} route failed: {reason}")
        self.provider = provider
        self.reason = reason


class PermissionDenied(RideServiceError):
    """Raised when the store or the role check rejects the acting user."""
    pass


class LocationPermissionDenied(RideServiceError):
    """Raised when the device refuses access to its position."""
    pass


def _status_value(status):
    return getattr(status, "value", status)
