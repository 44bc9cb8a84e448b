import copy
import itertools

import pytest
from google.api_core import exceptions as google_exceptions

from services import ride_store
from services.exceptions import ActiveRideExists, PermissionDenied, RideNotFound
from services.ride_store import FirestoreRideStore


class FakeSnapshot:
    def __init__(self, doc_id, data):
        self.id = doc_id
        self._data = data

    @property
    def exists(self):
        return self._data is not None

    def to_dict(self):
        return copy.deepcopy(self._data) if self._data is not None else None


class FakeWatch:
    def __init__(self):
        self.unsubscribed = 0

    def unsubscribe(self):
        self.unsubscribed += 1


class FakeQuery:
    def __init__(self, db, prefix, filters=(), order=None, count=None):
        self.db = db
        self.prefix = prefix
        self.filters = list(filters)
        self.order = order
        self.count = count

    def where(self, filter):
        return FakeQuery(self.db, self.prefix, self.filters + [filter], self.order, self.count)

    def order_by(self, field, direction="ASCENDING"):
        return FakeQuery(self.db, self.prefix, self.filters, (field, direction), self.count)

    def limit(self, count):
        return FakeQuery(self.db, self.prefix, self.filters, self.order, count)

    def _matches(self, data):
        for f in self.filters:
            value = data.get(f.field_path)
            if f.op_string == "==" and value != f.value:
                return False
            if f.op_string == "in" and value not in f.value:
                return False
        return True

    def stream(self):
        if self.db.fail_with is not None:
            raise self.db.fail_with
        docs = [
            FakeSnapshot(path[len(self.prefix):], data)
            for path, data in self.db.docs.items()
            if path.startswith(self.prefix) and "/" not in path[len(self.prefix):] and self._matches(data)
        ]
        if self.order:
            field, direction = self.order
            docs.sort(key=lambda d: d.to_dict().get(field), reverse=direction == "DESCENDING")
        return docs[:self.count] if self.count else docs

    def on_snapshot(self, callback):
        self.db.listeners[self.prefix] = callback
        return self.db.new_watch()


class FakeDocument:
    def __init__(self, db, path, doc_id):
        self.db = db
        self.path = path
        self.id = doc_id

    def get(self, transaction=None):
        if self.db.fail_with is not None:
            raise self.db.fail_with
        if transaction is not None:
            transaction.reads.append(self.path)
        return FakeSnapshot(self.id, copy.deepcopy(self.db.docs.get(self.path)))

    def update(self, fields):
        if self.db.fail_with is not None:
            raise self.db.fail_with
        if self.path not in self.db.docs:
            raise google_exceptions.NotFound(f"No document to update: {self.path}")
        self.db.docs[self.path].update(copy.deepcopy(fields))

    def set(self, fields, merge=False):
        current = self.db.docs.get(self.path, {}) if merge else {}
        self.db.docs[self.path] = {**current, **copy.deepcopy(fields)}

    def collection(self, name):
        return FakeCollection(self.db, f"{self.path}/{name}")

    def on_snapshot(self, callback):
        self.db.listeners[self.path] = callback
        return self.db.new_watch()


class FakeCollection(FakeQuery):
    def __init__(self, db, name):
        super().__init__(db, f"{name}/")
        self.name = name

    def document(self, doc_id=None):
        doc_id = doc_id or f"auto-{next(self.db.ids)}"
        return FakeDocument(self.db, f"{self.name}/{doc_id}", doc_id)

    def add(self, fields):
        ref = self.document()
        ref.set(fields)
        return None, ref


class FakeTransaction:
    def __init__(self, db):
        self.db = db
        self.reads = []
        self.writes = []

    def set(self, ref, fields):
        self.writes.append(("set", ref.path))
        ref.set(fields)

    def update(self, ref, fields):
        self.writes.append(("update", ref.path))
        ref.update(fields)


class FakeFirestore:
    """Enough of the Firestore client surface for FirestoreRideStore."""

    def __init__(self):
        self.docs = {}
        self.listeners = {}
        self.watches = []
        self.transactions = []
        self.ids = itertools.count(1)
        self.fail_with = None

    def collection(self, name):
        return FakeCollection(self, name)

    def transaction(self):
        transaction = FakeTransaction(self)
        self.transactions.append(transaction)
        return transaction

    def new_watch(self):
        watch = FakeWatch()
        self.watches.append(watch)
        return watch


@pytest.fixture
def db(monkeypatch):
    # Run transactional functions once, directly against the fake client
    monkeypatch.setattr(ride_store.firestore, "transactional", lambda fn: fn)
    return FakeFirestore()


@pytest.fixture
def firestore_store(db):
    return FirestoreRideStore(db)


def is_blocking(ride):
    return ride.get("status") in {"open", "assigned", "finished"}


def test_create_ride_writes_ride_and_marker_in_one_transaction(db, firestore_store):
    ride_id = firestore_store.create_ride("p1", {"passengerId": "p1", "status": "open"}, is_blocking)

    assert db.docs[f"rides/{ride_id}"] == {"passengerId": "p1", "status": "open"}
    assert db.docs["activeRides/p1"]["rideId"] == ride_id
    transaction = db.transactions[-1]
    assert transaction.reads == ["activeRides/p1"]
    assert transaction.writes == [("set", f"rides/{ride_id}"), ("set", "activeRides/p1")]


def test_create_ride_is_refused_while_marker_points_at_blocking_ride(db, firestore_store):
    first = firestore_store.create_ride("p1", {"passengerId": "p1", "status": "open"}, is_blocking)

    with pytest.raises(ActiveRideExists) as excinfo:
        firestore_store.create_ride("p1", {"passengerId": "p1", "status": "open"}, is_blocking)

    assert excinfo.value.ride_id == first
    assert db.transactions[-1].reads == ["activeRides/p1", f"rides/{first}"]
    assert db.transactions[-1].writes == []
    assert db.docs["activeRides/p1"]["rideId"] == first


def test_create_ride_moves_marker_once_previous_ride_is_over(db, firestore_store):
    first = firestore_store.create_ride("p1", {"passengerId": "p1", "status": "open"}, is_blocking)
    db.docs[f"rides/{first}"]["status"] = "cancelled"

    second = firestore_store.create_ride("p1", {"passengerId": "p1", "status": "open"}, is_blocking)

    assert second != first
    assert db.docs["activeRides/p1"]["rideId"] == second


def test_transact_ride_applies_updates(db, firestore_store):
    db.docs["rides/r1"] = {"status": "open", "driverId": None}

    result = firestore_store.transact_ride("r1", lambda current: {"status": "assigned", "driverId": "d1"})

    assert result == {"id": "r1", "status": "assigned", "driverId": "d1"}
    assert db.docs["rides/r1"] == {"status": "assigned", "driverId": "d1"}
    assert db.transactions[-1].reads == ["rides/r1"]


def test_transact_ride_aborts_when_mutate_raises(db, firestore_store):
    db.docs["rides/r1"] = {"status": "assigned", "driverId": "d1"}

    def refuse(current):
        raise ActiveRideExists("p1")

    with pytest.raises(ActiveRideExists):
        firestore_store.transact_ride("r1", refuse)
    assert db.transactions[-1].writes == []
    assert db.docs["rides/r1"]["driverId"] == "d1"


def test_transact_ride_on_missing_ride(firestore_store):
    with pytest.raises(RideNotFound):
        firestore_store.transact_ride("missing", lambda current: {"status": "assigned"})


def test_update_missing_ride_raises_ride_not_found(firestore_store):
    with pytest.raises(RideNotFound):
        firestore_store.update_ride("missing", {"status": "finished"})


def test_google_permission_denied_becomes_domain_error(db, firestore_store, caplog):
    db.docs["rides/r1"] = {"status": "open"}
    db.fail_with = google_exceptions.PermissionDenied("Missing or insufficient permissions.")

    with pytest.raises(PermissionDenied):
        firestore_store.get_ride("r1")
    with pytest.raises(PermissionDenied):
        firestore_store.update_ride("r1", {"status": "cancelled"})
    with pytest.raises(PermissionDenied):
        firestore_store.list_rides(statuses=["open"])
    assert any(record.levelname == "ERROR" for record in caplog.records)


def test_list_rides_filters_and_orders(db, firestore_store):
    db.docs["rides/a"] = {"passengerId": "p1", "status": "completed", "createdAt": 1}
    db.docs["rides/b"] = {"passengerId": "p1", "status": "open", "createdAt": 3}
    db.docs["rides/c"] = {"passengerId": "p2", "status": "open", "createdAt": 2}

    history = firestore_store.list_rides(passenger_id="p1", newest_first=True)
    assert [r["id"] for r in history] == ["b", "a"]

    open_rides = firestore_store.list_rides(statuses=["open"])
    assert sorted(r["id"] for r in open_rides) == ["b", "c"]


def test_subscribe_ride_delivers_snapshots_and_cancels_once(db, firestore_store):
    seen = []
    subscription = firestore_store.subscribe_ride("r1", seen.append)
    callback = db.listeners["rides/r1"]

    callback([FakeSnapshot("r1", {"status": "assigned"})], [], None)
    callback([FakeSnapshot("r1", None)], [], None)
    assert seen == [{"status": "assigned", "id": "r1"}, None]

    subscription.cancel()
    subscription.cancel()
    assert not subscription.active
    assert db.watches[-1].unsubscribed == 1


def test_listener_errors_are_logged_not_raised(db, firestore_store, caplog):
    def broken(data):
        raise RuntimeError("handler bug")

    firestore_store.subscribe_ride("r1", broken)
    db.listeners["rides/r1"]([FakeSnapshot("r1", {"status": "open"})], [], None)

    assert "handler bug" in caplog.text


def test_messages_are_stored_under_the_ride(db, firestore_store):
    firestore_store.add_message("r1", {"text": "second", "createdAt": 2})
    firestore_store.add_message("r1", {"text": "first", "createdAt": 1})

    messages = firestore_store.list_messages("r1")
    assert [m["text"] for m in messages] == ["first", "second"]
    assert all(path.startswith("rides/r1/messages/") for path in db.docs)
