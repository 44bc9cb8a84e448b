"""
Live Location Publisher.

One publisher per logged-in actor (driver or passenger). Position samples from
the device watcher and from a fallback poll feed a single-slot queue: a new
sample replaces any pending one, and one writer task drains the slot at most
once per LOCATION_MIN_WRITE_SECONDS. When the writer has to wait and no newer
sample arrives meanwhile, it republishes the point it was holding, so the
latest known position is always written eventually.
"""

import asyncio
import logging
import math
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from config import settings
from models import (
    ActorKind, LatLng, RideStatus, can_publish_passenger_location,
    is_live_tracking_status,
)
from .exceptions import LocationPermissionDenied, PermissionDenied
from .ride_store import Subscription

logger = logging.getLogger(__name__)


class PositionSource:
    """
    Device position provider consumed by the publisher.

    Implementations call the watch callback from the event loop thread.
    """

    async def request_permission(self) -> bool:
        raise NotImplementedError

    async def current_position(self) -> Optional[LatLng]:
        raise NotImplementedError

    def watch(self, callback: Callable[[LatLng], None]) -> Subscription:
        raise NotImplementedError


class LiveLocationPublisher:
    def __init__(
        self,
        uid: str,
        kind: ActorKind,
        store,
        positions: PositionSource,
        min_interval: Optional[float] = None,
        poll_interval: Optional[float] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.uid = uid
        self.kind = ActorKind(kind)
        self.store = store
        self.positions = positions
        self.min_interval = settings.LOCATION_MIN_WRITE_SECONDS if min_interval is None else min_interval
        self.poll_interval = settings.LOCATION_POLL_SECONDS if poll_interval is None else poll_interval
        self.on_error = on_error
        self._clock = clock

        self.active_ride_id: Optional[str] = None
        self.ride_status: Optional[RideStatus] = None
        self._running = False
        self._pending: Optional[LatLng] = None
        self._last_write: Optional[float] = None
        self._wake = asyncio.Event()
        self._writer: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._watch_sub: Optional[Subscription] = None
        self._ride_sub: Optional[Subscription] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def is_driving(self) -> bool:
        return self.kind == ActorKind.DRIVER and bool(self.active_ride_id)

    async def start(self, ride_id: Optional[str] = None):
        """
        Begin publishing, or retarget a running publisher to another ride.

        Raises:
            LocationPermissionDenied: the device refused position access; nothing is started
        """
        if not self._running and not await self.positions.request_permission():
            logger.warning(f"Location permission denied for {self.uid}")
            raise LocationPermissionDenied(f"Location permission denied for {self.uid}")

        ride_id = ride_id or None
        if ride_id != self.active_ride_id or self._ride_sub is None:
            if ride_id != self.active_ride_id:
                # first sample for the new ride goes out immediately
                self._reset_throttle()
            self.active_ride_id = ride_id
            self._follow_ride(ride_id)

        if self._running:
            self._write_metadata()
        else:
            self._running = True
            self._watch_sub = self.positions.watch(self.submit)
            self._poll_task = asyncio.create_task(self._poll())
            logger.info(f"Live location started for {self.kind.value} {self.uid} (ride {ride_id})")

        await self.refresh()

    def stop(self):
        """Stop sampling and mark the actor as no longer driving."""
        was_running = self._running
        self._running = False
        self._pending = None
        self.active_ride_id = None
        self.ride_status = None

        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
        if self._watch_sub is not None:
            self._watch_sub.cancel()
            self._watch_sub = None
        if self._ride_sub is not None:
            self._ride_sub.cancel()
            self._ride_sub = None
        # Store writes are synchronous, so the writer can only be suspended in its throttle wait.
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
        self._writer = None
        self._last_write = None

        if not was_running:
            return
        try:
            self.store.set_live_location(self.uid, {
                "rideId": None,
                "isDriving": False,
                "updatedAt": datetime.now(timezone.utc),
            })
        except Exception as exc:
            self._report(exc)
        logger.info(f"Live location stopped for {self.kind.value} {self.uid}")

    async def on_foreground(self):
        """App came back to the foreground: publish a fresh point right away."""
        if not self._running:
            return
        self._reset_throttle()
        await self.refresh()

    async def refresh(self):
        """Fetch the current device position and queue it."""
        try:
            point = await self.positions.current_position()
        except Exception as exc:
            logger.warning(f"Could not read current position for {self.uid}: {exc}")
            return
        if point is not None:
            self.submit(point)

    def submit(self, point: LatLng):
        """Queue a sample; it replaces any sample that has not been written yet."""
        if not self._running or point is None:
            return
        if not (math.isfinite(point.lat) and math.isfinite(point.lng)):
            return
        self._pending = point
        if self._writer is None or self._writer.done():
            self._writer = asyncio.get_running_loop().create_task(self._drain())

    async def flush(self):
        """Wait until the pending sample, if any, has been written."""
        writer = self._writer
        if writer is not None and not writer.done():
            await asyncio.wait({writer})

    def _reset_throttle(self):
        self._last_write = None
        self._wake.set()

    def _throttle_wait(self) -> float:
        if self._last_write is None:
            return 0.0
        return self.min_interval - (self._clock() - self._last_write)

    async def _drain(self):
        while self._running and self._pending is not None:
            point, self._pending = self._pending, None

            wait = self._throttle_wait()
            if wait > 0:
                self._wake.clear()
                try:
                    await asyncio.wait_for(self._wake.wait(), wait)
                except asyncio.TimeoutError:
                    pass
                if self._pending is None:
                    self._pending = point
                continue

            self._last_write = self._clock()
            self._publish(point)

    def _publish(self, point: LatLng):
        ride_id = self.active_ride_id
        now = datetime.now(timezone.utc)
        try:
            self.store.set_live_location(self.uid, {
                "uid": self.uid,
                "rideId": ride_id,
                "lat": point.lat,
                "lng": point.lng,
                "isDriving": self.is_driving,
                "updatedAt": now,
            })
            if ride_id and self._may_write_ride():
                field = "driverLocation" if self.kind == ActorKind.DRIVER else "passengerLocation"
                self.store.update_ride(ride_id, {
                    field: {"lat": point.lat, "lng": point.lng},
                    f"{field}UpdatedAt": now,
                })
        except Exception as exc:
            self._report(exc)

    def _may_write_ride(self) -> bool:
        if self.ride_status is None:
            return False
        if self.kind == ActorKind.DRIVER:
            return is_live_tracking_status(self.ride_status)
        return can_publish_passenger_location(self.ride_status)

    def _report(self, exc: Exception):
        if isinstance(exc, PermissionDenied):
            logger.error(f"Live location write rejected for {self.uid}: {exc}")
        else:
            logger.warning(f"Live location write failed for {self.uid}: {exc}")
        if self.on_error is not None:
            self.on_error(exc)

    def _write_metadata(self):
        try:
            self.store.set_live_location(self.uid, {
                "uid": self.uid,
                "rideId": self.active_ride_id,
                "isDriving": self.is_driving,
                "updatedAt": datetime.now(timezone.utc),
            })
        except Exception as exc:
            self._report(exc)

    def _follow_ride(self, ride_id: Optional[str]):
        if self._ride_sub is not None:
            self._ride_sub.cancel()
            self._ride_sub = None
        self.ride_status = None
        if not ride_id:
            return

        # The listener's first snapshot arrives later, so seed the status now.
        try:
            self._apply_ride_status(ride_id, self.store.get_ride(ride_id))
        except Exception as exc:
            self._report(exc)

        loop = asyncio.get_running_loop()

        def _on_ride_snapshot(data):
            # Store listeners may run on another thread.
            try:
                loop.call_soon_threadsafe(self._apply_ride_status, ride_id, data)
            except RuntimeError:
                logger.debug(f"Dropped snapshot of ride {ride_id}: event loop is closed")

        self._ride_sub = self.store.subscribe_ride(ride_id, _on_ride_snapshot)

    def _apply_ride_status(self, ride_id: str, data: Optional[dict]):
        if ride_id != self.active_ride_id:
            return
        if data is None:
            self.ride_status = None
            return
        try:
            self.ride_status = RideStatus.parse(data.get("status"))
        except ValueError:
            logger.warning(f"Ride {ride_id} has unknown status {data.get('status')!r}")
            self.ride_status = None

    async def _poll(self):
        while self._running:
            await asyncio.sleep(self.poll_interval)
            await self.refresh()
