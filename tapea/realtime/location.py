"""
Live location streaming within a joined ride room.

Outbound samples are throttled per (ride, sender): a sample is published
when either the time interval or the distance threshold has been crossed
since the last published one. Inbound samples are delivered to per-ride
subscribers, keeping only the most recent sample per (ride, source).

Delivery is at-most-once: samples emitted while disconnected are dropped,
and every sample carries a per-sender ``seq`` so receivers can discard
out-of-order ones.
"""

import logging
import time
from typing import Callable, Dict, Optional, Tuple

from tapea import settings
from tapea.common.utils import ListenerSet, calculate_distance, calculate_heading
from tapea.rides.models import ROLE_CLIENT, ROLE_DRIVER, LocationSample
from . import events
from .connection import ConnectionManager

logger = logging.getLogger(__name__)


class LocationThrottle:
    """Time OR distance throttle. The first sample always passes."""

    def __init__(self, interval: float, distance_meters: float, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self.distance_meters = distance_meters
        self._clock = clock
        self._last_time: Optional[float] = None
        self._last_position: Optional[Tuple[float, float]] = None

    def should_publish(self, lat: float, lng: float) -> bool:
        now = self._clock()
        if self._last_time is None:
            publish = True
        elif now - self._last_time >= self.interval:
            publish = True
        else:
            moved = calculate_distance(self._last_position[0], self._last_position[1], lat, lng)
            publish = moved >= self.distance_meters

        if publish:
            self._last_time = now
            self._last_position = (lat, lng)
        return publish


class LocationChannel:
    """Publishes this party's position and fans out the other party's."""

    def __init__(
        self,
        connection: ConnectionManager,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        driver_interval: float = settings.REALTIME_CONFIG["DRIVER_LOCATION_INTERVAL"],
        driver_distance: float = settings.REALTIME_CONFIG["DRIVER_LOCATION_DISTANCE_METERS"],
        client_interval: float = settings.REALTIME_CONFIG["CLIENT_LOCATION_INTERVAL"],
        client_distance: float = settings.REALTIME_CONFIG["CLIENT_LOCATION_DISTANCE_METERS"],
    ):
        self.connection = connection
        self._clock = clock
        self._monotonic = monotonic
        self._limits = {
            ROLE_DRIVER: (driver_interval, driver_distance),
            ROLE_CLIENT: (client_interval, client_distance),
        }

        # Outbound state, keyed by (ride_id, role)
        self._throttles: Dict[Tuple[str, str], LocationThrottle] = {}
        self._last_fix: Dict[Tuple[str, str], Tuple[float, float]] = {}
        self._seq: Dict[Tuple[str, str], int] = {}

        # Inbound state, keyed by (ride_id, source role)
        self._subscribers: Dict[Tuple[str, str], ListenerSet] = {}
        self._latest: Dict[Tuple[str, str], LocationSample] = {}

        connection.on(events.LOCATION_DRIVER, self._on_driver_location)
        connection.on(events.LOCATION_CLIENT, self._on_client_location)

    # ---------------------- Publishing ----------------------

    def _next_seq(self, key: Tuple[str, str]) -> int:
        self._seq[key] = self._seq.get(key, 0) + 1
        return self._seq[key]

    def _throttle(self, key: Tuple[str, str]) -> LocationThrottle:
        if key not in self._throttles:
            interval, distance = self._limits[key[1]]
            self._throttles[key] = LocationThrottle(interval, distance, clock=self._monotonic)
        return self._throttles[key]

    def publish_driver(
        self,
        ride_id: str,
        session_id: str,
        lat: float,
        lng: float,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
    ) -> bool:
        """
        Publish the driver's position. Returns True if a sample was emitted.

        A missing heading is derived from the previous published fix.
        """
        key = (str(ride_id), ROLE_DRIVER)
        if not self._throttle(key).should_publish(lat, lng):
            return False

        previous = self._last_fix.get(key)
        if heading is None and previous is not None:
            heading = calculate_heading(previous[0], previous[1], lat, lng)
        self._last_fix[key] = (lat, lng)

        payload = {
            "orderId": str(ride_id),
            "sessionId": session_id,
            "lat": lat,
            "lng": lng,
            "timestamp": int(self._clock() * 1000),
            "seq": self._next_seq(key),
        }
        if heading is not None:
            payload["heading"] = heading
        if speed is not None:
            payload["speed"] = speed
        return self.connection.emit(events.LOCATION_DRIVER_UPDATE, payload)

    def publish_client(self, ride_id: str, client_token: str, lat: float, lng: float) -> bool:
        key = (str(ride_id), ROLE_CLIENT)
        if not self._throttle(key).should_publish(lat, lng):
            return False

        payload = {
            "orderId": str(ride_id),
            "clientToken": client_token,
            "lat": lat,
            "lng": lng,
            "timestamp": int(self._clock() * 1000),
            "seq": self._next_seq(key),
        }
        return self.connection.emit(events.LOCATION_CLIENT_UPDATE, payload)

    # ---------------------- Subscriptions ----------------------

    def on_driver_location(self, ride_id: str, callback: Callable[[LocationSample], None]) -> Callable[[], None]:
        """Receive the driver's samples for ``ride_id``. Returns the unsubscribe function."""
        return self._subscribe((str(ride_id), ROLE_DRIVER), callback)

    def on_client_location(self, ride_id: str, callback: Callable[[LocationSample], None]) -> Callable[[], None]:
        return self._subscribe((str(ride_id), ROLE_CLIENT), callback)

    def _subscribe(self, key, callback):
        listeners = self._subscribers.setdefault(key, ListenerSet())
        return listeners.add(callback)

    def latest(self, ride_id: str, source: str = ROLE_DRIVER) -> Optional[LocationSample]:
        return self._latest.get((str(ride_id), source))

    def release(self, ride_id: str):
        """Drop every subscription and sample for the ride."""
        ride_id = str(ride_id)
        for store in (self._throttles, self._last_fix, self._seq, self._subscribers, self._latest):
            for key in [k for k in store if k[0] == ride_id]:
                del store[key]
        logger.debug("Released location state for ride %s", ride_id)

    # ---------------------- Inbound ----------------------

    def _on_driver_location(self, data):
        self._deliver(ROLE_DRIVER, data)

    def _on_client_location(self, data):
        self._deliver(ROLE_CLIENT, data)

    def _deliver(self, source: str, data):
        if not isinstance(data, dict) or not data.get("orderId"):
            return
        key = (str(data["orderId"]), source)
        listeners = self._subscribers.get(key)
        if listeners is None:
            return

        try:
            sample = LocationSample.from_payload(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("Ignoring malformed %s location for ride %s", source, key[0])
            return

        if not self._is_newer(self._latest.get(key), sample):
            logger.debug("Dropping out-of-order %s location for ride %s", source, key[0])
            return

        self._latest[key] = sample
        listeners.notify(sample)

    @staticmethod
    def _is_newer(previous: Optional[LocationSample], sample: LocationSample) -> bool:
        if previous is None:
            return True
        if previous.seq is not None and sample.seq is not None:
            if sample.seq > previous.seq:
                return True
            # A regressed seq with a newer timestamp means the sender restarted
            return sample.timestamp > previous.timestamp
        # Without seq only a strictly older timestamp is stale; 0 means unknown
        if not sample.timestamp or not previous.timestamp:
            return True
        return sample.timestamp >= previous.timestamp
