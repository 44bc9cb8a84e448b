"""
Ride Store
Firestore-backed access to rides, live locations, user profiles and ride chat.
Only the claim and ride creation go through transactions; every other write is
a plain update guarded by the caller's precondition check.
"""

import copy
import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterable, Optional

from firebase_admin import firestore
from google.api_core import exceptions as google_exceptions

from .exceptions import ActiveRideExists, PermissionDenied, RideNotFound

logger = logging.getLogger(__name__)

RIDES = "rides"
LIVE_LOCATIONS = "liveLocations"
USERS = "users"
ACTIVE_RIDES = "activeRides"
MESSAGES = "messages"


class Subscription:
    """Cancelable handle for a live listener. Cancelling twice is a no-op."""

    def __init__(self, cancel: Callable[[], None]):
        self._cancel = cancel
        self._lock = threading.Lock()
        self._cancelled = False

    @property
    def active(self) -> bool:
        return not self._cancelled

    def cancel(self):
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
        self._cancel()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.cancel()


@contextmanager
def _translate_errors(action: str):
    try:
        yield
    except google_exceptions.PermissionDenied as exc:
        logger.error(f"Permission denied while trying to {action}: {exc}")
        raise PermissionDenied(f"Permission denied: {action}") from exc


def _with_id(doc) -> dict:
    data = doc.to_dict() or {}
    data["id"] = doc.id
    return data


def _safe_handler(handler, name: str):
    def _call(value):
        try:
            handler(value)
        except Exception as exc:
            logger.exception(f"Error in {name} listener: {exc}")
    return _call


class FirestoreRideStore:
    """Transactional document store for rides on top of a Firestore client."""

    def __init__(self, db):
        self.db = db
        self.rides_ref = db.collection(RIDES)
        self.live_locations_ref = db.collection(LIVE_LOCATIONS)
        self.users_ref = db.collection(USERS)
        self.active_rides_ref = db.collection(ACTIVE_RIDES)

    # --- Rides ---

    def new_ride_id(self) -> str:
        return self.rides_ref.document().id

    def get_ride(self, ride_id: str) -> Optional[dict]:
        with _translate_errors(f"read ride {ride_id}"):
            doc = self.rides_ref.document(ride_id).get()
        if not doc.exists:
            return None
        return _with_id(doc)

    def create_ride(self, passenger_id: str, ride_data: dict, is_blocking: Callable[[dict], bool]) -> str:
        """
        Create a ride unless the passenger's marker points at a blocking ride.

        The marker document (activeRides/{passengerId}) and the ride it references
        are read inside the same transaction that writes the new ride, so two
        concurrent requests from one passenger cannot both succeed.
        """
        marker_ref = self.active_rides_ref.document(passenger_id)
        ride_ref = self.rides_ref.document()

        @firestore.transactional
        def _create(transaction):
            marker = marker_ref.get(transaction=transaction)
            current_id = (marker.to_dict() or {}).get("rideId") if marker.exists else None
            if current_id:
                current = self.rides_ref.document(current_id).get(transaction=transaction)
                if current.exists and is_blocking(current.to_dict() or {}):
                    raise ActiveRideExists(passenger_id, current_id)

            transaction.set(ride_ref, ride_data)
            transaction.set(marker_ref, {
                "passengerId": passenger_id,
                "rideId": ride_ref.id,
                "updatedAt": ride_data.get("createdAt"),
            })
            return ride_ref.id

        with _translate_errors(f"create ride for {passenger_id}"):
            return _create(self.db.transaction())

    def transact_ride(self, ride_id: str, mutate: Callable[[dict], dict]) -> dict:
        """
        Atomic read-modify-write of one ride.

        `mutate` receives the current document and returns the fields to update;
        raising from it aborts the transaction. Firestore retries the whole
        function when a concurrent write invalidates the read.
        """
        ride_ref = self.rides_ref.document(ride_id)

        @firestore.transactional
        def _run(transaction):
            snapshot = ride_ref.get(transaction=transaction)
            if not snapshot.exists:
                raise RideNotFound(ride_id)
            current = _with_id(snapshot)
            updates = mutate(copy.deepcopy(current))
            if updates:
                transaction.update(ride_ref, updates)
            current.update(updates or {})
            return current

        with _translate_errors(f"update ride {ride_id}"):
            return _run(self.db.transaction())

    def update_ride(self, ride_id: str, updates: dict):
        try:
            with _translate_errors(f"update ride {ride_id}"):
                self.rides_ref.document(ride_id).update(updates)
        except google_exceptions.NotFound as exc:
            raise RideNotFound(ride_id) from exc

    def _rides_query(self, statuses=None, passenger_id=None, driver_id=None, newest_first=False, limit=None):
        query = self.rides_ref
        if statuses:
            values = [getattr(s, "value", s) for s in statuses]
            query = query.where(filter=firestore.FieldFilter("status", "in", values))
        if passenger_id:
            query = query.where(filter=firestore.FieldFilter("passengerId", "==", passenger_id))
        if driver_id:
            query = query.where(filter=firestore.FieldFilter("driverId", "==", driver_id))
        if newest_first:
            query = query.order_by("createdAt", direction=firestore.Query.DESCENDING)
        if limit:
            query = query.limit(limit)
        return query

    def list_rides(
        self,
        statuses: Optional[Iterable] = None,
        passenger_id: Optional[str] = None,
        driver_id: Optional[str] = None,
        newest_first: bool = False,
        limit: Optional[int] = None,
    ) -> list[dict]:
        query = self._rides_query(statuses, passenger_id, driver_id, newest_first, limit)
        with _translate_errors("list rides"):
            return [_with_id(doc) for doc in query.stream()]

    def subscribe_ride(self, ride_id: str, handler: Callable[[Optional[dict]], None]) -> Subscription:
        deliver = _safe_handler(handler, f"ride {ride_id}")

        def _on_snapshot(docs, changes, read_time):
            for doc in docs:
                deliver(_with_id(doc) if doc.exists else None)

        watch = self.rides_ref.document(ride_id).on_snapshot(_on_snapshot)
        return Subscription(watch.unsubscribe)

    def subscribe_rides(self, handler: Callable[[list], None], **filters) -> Subscription:
        deliver = _safe_handler(handler, "rides query")

        def _on_snapshot(docs, changes, read_time):
            deliver([_with_id(doc) for doc in docs])

        watch = self._rides_query(**filters).on_snapshot(_on_snapshot)
        return Subscription(watch.unsubscribe)

    # --- Live locations ---

    def set_live_location(self, uid: str, fields: dict):
        with _translate_errors(f"write live location for {uid}"):
            self.live_locations_ref.document(uid).set(fields, merge=True)

    def get_live_location(self, uid: str) -> Optional[dict]:
        with _translate_errors(f"read live location for {uid}"):
            doc = self.live_locations_ref.document(uid).get()
        return doc.to_dict() if doc.exists else None

    def subscribe_live_location(self, uid: str, handler: Callable[[Optional[dict]], None]) -> Subscription:
        deliver = _safe_handler(handler, f"live location {uid}")

        def _on_snapshot(docs, changes, read_time):
            for doc in docs:
                deliver(doc.to_dict() if doc.exists else None)

        watch = self.live_locations_ref.document(uid).on_snapshot(_on_snapshot)
        return Subscription(watch.unsubscribe)

    # --- Users ---

    def get_user(self, uid: str) -> Optional[dict]:
        with _translate_errors(f"read user {uid}"):
            doc = self.users_ref.document(uid).get()
        return doc.to_dict() if doc.exists else None

    def set_user(self, uid: str, fields: dict):
        with _translate_errors(f"write user {uid}"):
            self.users_ref.document(uid).set(fields, merge=True)

    # --- Ride chat ---

    def _messages_query(self, ride_id: str, limit: int):
        return (
            self.rides_ref.document(ride_id).collection(MESSAGES)
            .order_by("createdAt", direction=firestore.Query.ASCENDING)
            .limit(limit)
        )

    def add_message(self, ride_id: str, message: dict) -> str:
        with _translate_errors(f"send message on ride {ride_id}"):
            _, ref = self.rides_ref.document(ride_id).collection(MESSAGES).add(message)
        return ref.id

    def list_messages(self, ride_id: str, limit: int = 200) -> list[dict]:
        with _translate_errors(f"read messages of ride {ride_id}"):
            return [_with_id(doc) for doc in self._messages_query(ride_id, limit).stream()]

    def subscribe_messages(self, ride_id: str, handler: Callable[[list], None], limit: int = 200) -> Subscription:
        deliver = _safe_handler(handler, f"messages of ride {ride_id}")

        def _on_snapshot(docs, changes, read_time):
            deliver([_with_id(doc) for doc in docs])

        watch = self._messages_query(ride_id, limit).on_snapshot(_on_snapshot)
        return Subscription(watch.unsubscribe)
