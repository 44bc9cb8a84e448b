import copy
import itertools
import threading

import pytest

from models import LatLng
from services.exceptions import ActiveRideExists, RideNotFound
from services.live_location_service import PositionSource
from services.ride_store import Subscription


class InMemoryRideStore:
    """Same contract as FirestoreRideStore, backed by dicts and a lock."""

    def __init__(self):
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self.rides = {}
        self.live_locations = {}
        self.users = {}
        self.active_rides = {}
        self.messages = {}
        self.ride_updates = []
        self.live_writes = []
        self._ride_listeners = {}
        self._live_listeners = {}
        self._message_listeners = {}
        self.fail_ride_updates = None
        # Firestore delivers the first ride snapshot later, on its watch thread
        self.deliver_first_ride_snapshot = True

    def _notify(self, listeners, key, value):
        for handler in list(listeners.get(key, [])):
            handler(copy.deepcopy(value))

    def _listen(self, listeners, key, handler):
        listeners.setdefault(key, []).append(handler)
        return Subscription(lambda: listeners[key].remove(handler))

    def new_ride_id(self):
        return f"ride-{next(self._ids)}"

    def get_ride(self, ride_id):
        with self._lock:
            data = self.rides.get(ride_id)
            return copy.deepcopy(data) if data is not None else None

    def put_ride(self, ride_id, **fields):
        with self._lock:
            self.rides[ride_id] = {"id": ride_id, **fields}
        self._notify(self._ride_listeners, ride_id, self.rides[ride_id])

    def create_ride(self, passenger_id, ride_data, is_blocking):
        with self._lock:
            current_id = self.active_rides.get(passenger_id)
            current = self.rides.get(current_id) if current_id else None
            if current is not None and is_blocking(copy.deepcopy(current)):
                raise ActiveRideExists(passenger_id, current_id)
            ride_id = self.new_ride_id()
            self.rides[ride_id] = {**copy.deepcopy(ride_data), "id": ride_id}
            self.active_rides[passenger_id] = ride_id
        return ride_id

    def transact_ride(self, ride_id, mutate):
        with self._lock:
            if ride_id not in self.rides:
                raise RideNotFound(ride_id)
            current = copy.deepcopy(self.rides[ride_id])
            updates = mutate(copy.deepcopy(current)) or {}
            self.rides[ride_id].update(copy.deepcopy(updates))
            current.update(updates)
        self._notify(self._ride_listeners, ride_id, self.rides[ride_id])
        return current

    def update_ride(self, ride_id, updates):
        if self.fail_ride_updates is not None:
            raise self.fail_ride_updates
        with self._lock:
            if ride_id not in self.rides:
                raise RideNotFound(ride_id)
            self.rides[ride_id].update(copy.deepcopy(updates))
            self.ride_updates.append((ride_id, copy.deepcopy(updates)))
        self._notify(self._ride_listeners, ride_id, self.rides[ride_id])

    def list_rides(self, statuses=None, passenger_id=None, driver_id=None, newest_first=False, limit=None):
        values = {getattr(s, "value", s) for s in statuses} if statuses else None
        with self._lock:
            rides = [
                copy.deepcopy(r) for r in self.rides.values()
                if (values is None or r.get("status") in values)
                and (passenger_id is None or r.get("passengerId") == passenger_id)
                and (driver_id is None or r.get("driverId") == driver_id)
            ]
        if newest_first:
            rides.sort(key=lambda r: r.get("createdAt"), reverse=True)
        return rides[:limit] if limit else rides

    def subscribe_ride(self, ride_id, handler):
        subscription = self._listen(self._ride_listeners, ride_id, handler)
        if self.deliver_first_ride_snapshot:
            handler(self.get_ride(ride_id))
        return subscription

    def subscribe_rides(self, handler, **filters):
        raise NotImplementedError

    def set_live_location(self, uid, fields):
        with self._lock:
            self.live_locations.setdefault(uid, {}).update(copy.deepcopy(fields))
            self.live_writes.append((uid, copy.deepcopy(fields)))
        self._notify(self._live_listeners, uid, self.live_locations[uid])

    def get_live_location(self, uid):
        data = self.live_locations.get(uid)
        return copy.deepcopy(data) if data is not None else None

    def subscribe_live_location(self, uid, handler):
        subscription = self._listen(self._live_listeners, uid, handler)
        handler(self.get_live_location(uid))
        return subscription

    def get_user(self, uid):
        data = self.users.get(uid)
        return copy.deepcopy(data) if data is not None else None

    def set_user(self, uid, fields):
        self.users.setdefault(uid, {}).update(copy.deepcopy(fields))

    def add_message(self, ride_id, message):
        message_id = f"msg-{next(self._ids)}"
        self.messages.setdefault(ride_id, []).append({**copy.deepcopy(message), "id": message_id})
        self._notify(self._message_listeners, ride_id, self.messages[ride_id])
        return message_id

    def list_messages(self, ride_id, limit=200):
        return copy.deepcopy(self.messages.get(ride_id, [])[:limit])

    def subscribe_messages(self, ride_id, handler, limit=200):
        subscription = self._listen(self._message_listeners, ride_id, handler)
        handler(self.list_messages(ride_id, limit))
        return subscription


class FakePositions(PositionSource):
    def __init__(self, granted=True, current=None):
        self.granted = granted
        self.current = current
        self.callback = None
        self.watch_cancelled = False

    async def request_permission(self):
        return self.granted

    async def current_position(self):
        return self.current

    def watch(self, callback):
        self.callback = callback

        def _cancel():
            self.watch_cancelled = True
            self.callback = None
        return Subscription(_cancel)

    def emit(self, lat, lng):
        if self.callback is not None:
            self.callback(LatLng(lat=lat, lng=lng))


@pytest.fixture
def store():
    store = InMemoryRideStore()
    store.users.update({
        "driver-a": {"uid": "driver-a", "role": "driver_admin"},
        "driver-b": {"uid": "driver-b", "role": "driver_admin"},
        "secretary": {"uid": "secretary", "role": "secretary"},
        "passenger-1": {"uid": "passenger-1", "role": "passenger"},
        "passenger-2": {"uid": "passenger-2", "role": "passenger"},
    })
    return store


@pytest.fixture
def positions():
    return FakePositions()

