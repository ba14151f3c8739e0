"""
Ride request orchestration: create the ride, then wait for a driver.

State machine:
    creating -> searching -> found | expired | error
    creating | searching -> cancelled (user cancel)

The server's ``order:expired`` is authoritative; the client-local timer only
guarantees the rider is never left waiting forever. Whichever fires first
wins, and the terminal state is entered exactly once.
An assignment or expiry sent while the connection was down is lost, so each
reconnect during the search re-reads the ride detail.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from tapea import settings
from tapea.accounts.storage import CredentialStore
from tapea.common.utils import ListenerSet
from tapea.exceptions import RideSyncError
from tapea.realtime import events
from tapea.realtime.connection import ConnectionManager
from tapea.rides.api import GENERIC_MESSAGE, ApiClient
from tapea.rides.models import (
    ORDER_CANCELLED,
    ORDER_EXPIRED,
    ROLE_CLIENT,
    AssignedDriver,
    Ride,
    RideRequest,
    ride_status_from_order,
)
from .cleanup import RideCleanup

logger = logging.getLogger(__name__)


SEARCH_CREATING = "creating"
SEARCH_SEARCHING = "searching"
SEARCH_FOUND = "found"
SEARCH_EXPIRED = "expired"
SEARCH_ERROR = "error"
SEARCH_CANCELLED = "cancelled"

TERMINAL_SEARCH_STATUSES = {SEARCH_FOUND, SEARCH_EXPIRED, SEARCH_ERROR, SEARCH_CANCELLED}

CANCEL_REASON = "Annulé par le client"


class RideSearch:
    """
    One ride request from submission to driver assignment.

    Observers registered with ``add_listener`` are called with the search
    itself after every status change.
    """

    def __init__(
        self,
        api: ApiClient,
        connection: ConnectionManager,
        store: CredentialStore,
        cleanup: RideCleanup,
        capabilities=None,
        timeout: float = settings.REALTIME_CONFIG["RIDE_SEARCH_TIMEOUT"],
        tick_interval: float = settings.REALTIME_CONFIG["SEARCH_TICK_INTERVAL"],
    ):
        self.api = api
        self.connection = connection
        self.store = store
        self.cleanup = cleanup
        self.capabilities = capabilities
        self.timeout = timeout
        self.tick_interval = tick_interval

        self.status = SEARCH_CREATING
        self.ride: Optional[Ride] = None
        self.client_token: Optional[str] = None
        self.assigned_driver: Optional[AssignedDriver] = None
        self.error: Optional[str] = None
        self.elapsed = 0

        self._listeners = ListenerSet()
        self._subscriptions: List[Callable[[], None]] = []
        self._expiry_handle: Optional[asyncio.TimerHandle] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._done: Optional[asyncio.Future] = None
        self._started = False
        self._cancel_requested = False

    @property
    def ride_id(self) -> Optional[str]:
        return self.ride.id if self.ride else None

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_SEARCH_STATUSES

    def add_listener(self, callback: Callable[["RideSearch"], None]) -> Callable[[], None]:
        return self._listeners.add(callback)

    def _done_future(self) -> asyncio.Future:
        if self._done is None:
            self._done = asyncio.get_running_loop().create_future()
        return self._done

    async def wait(self, timeout: Optional[float] = None) -> str:
        """Wait for the terminal status and return it."""
        return await asyncio.wait_for(asyncio.shield(self._done_future()), timeout)

    # ===================== Creating =====================

    async def start(self, ride_request: RideRequest) -> str:
        """
        Submit the ride and start searching.

        Returns once the search is running (or already over). Failures never
        raise: they end the search in ``error`` with a user-facing message.
        """
        if self._started:
            raise RuntimeError("RideSearch.start() can only be called once")
        self._started = True
        self._done_future()

        try:
            ride_request.validate(self.capabilities)
            ride, token = await self.api.create_order(ride_request)
        except RideSyncError as e:
            logger.warning("Ride creation failed: %s", e.message or e.__class__.__name__)
            # No-op when the search was cancelled meanwhile
            self._finish(SEARCH_ERROR, error=e.message or GENERIC_MESSAGE)
            return self.status

        self.ride = ride
        self.client_token = token
        # Credentials go to the store before any room join needs them
        self.store.save_ride_credentials(ride.id, token)
        self.cleanup.track(ride.id)
        logger.info("Ride %s created", ride.id)

        if self._cancel_requested:
            # Cancelled while the POST was in flight
            await self._abandon_created_ride()
            return self.status

        self._subscribe()

        try:
            await self.connection.connect_and_wait()
        except RideSyncError as e:
            # HTTP stays available as a fallback; the join is replayed once connected
            logger.warning("Realtime connection failed for ride %s: %s", ride.id, e)

        if self.is_finished:
            return self.status

        self.connection.register_join(f"client:{ride.id}", self._join_client_room, scope=ride.id)
        self._set_status(SEARCH_SEARCHING)
        self._start_timers()
        return self.status

    def _join_client_room(self):
        self.connection.emit(events.CLIENT_JOIN, {
            "orderId": self.ride.id,
            "clientToken": self.client_token,
        })

    # ===================== Searching =====================

    def _subscribe(self):
        self._subscriptions = [
            self.connection.on(events.ORDER_DRIVER_ASSIGNED, self._on_driver_assigned),
            self.connection.on(events.ORDER_EXPIRED, self._on_order_expired),
            self.connection.on(events.CLIENT_JOIN_ERROR, self._on_join_error),
            self.connection.on(events.CONNECT, self._on_reconnect),
        ]

    def _unsubscribe(self):
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions = []

    def _start_timers(self):
        loop = asyncio.get_running_loop()
        self._expiry_handle = loop.call_later(self.timeout, self._on_local_timeout)
        self._tick_task = loop.create_task(self._tick())

    def _stop_timers(self):
        if self._expiry_handle is not None:
            self._expiry_handle.cancel()
            self._expiry_handle = None
        if self._tick_task is not None:
            self._tick_task.cancel()
            self._tick_task = None

    async def _tick(self):
        while True:
            await asyncio.sleep(self.tick_interval)
            self.elapsed += 1

    def _matches(self, data) -> bool:
        return isinstance(data, dict) and self.ride is not None and str(data.get("orderId")) == self.ride.id

    def _on_driver_assigned(self, data):
        if not self._matches(data):
            return
        self.assigned_driver = AssignedDriver(
            driver_id=str(data.get("driverId", "")),
            name=data.get("driverName", ""),
            session_id=data.get("sessionId", ""),
        )
        self._finish(SEARCH_FOUND)

    def _on_reconnect(self, _data):
        # The first connect happens while still creating
        if self.status == SEARCH_SEARCHING:
            return self._reconcile()
        return None

    async def _reconcile(self):
        try:
            ride = await self.api.get_order(self.ride.id)
        except RideSyncError as e:
            logger.warning("Could not check ride %s after reconnect: %s", self.ride.id, e)
            return
        if self.is_finished:
            return

        if ride.status == ORDER_EXPIRED:
            self._finish(SEARCH_EXPIRED)
        elif ride.status == ORDER_CANCELLED:
            self._finish(SEARCH_CANCELLED)
        elif ride.assigned_driver_id or ride_status_from_order(ride.status, default=None):
            logger.info("Ride %s was assigned while disconnected", ride.id)
            self.ride = ride
            self.store.cache_ride(ride)
            self.assigned_driver = AssignedDriver(
                driver_id=str(ride.assigned_driver_id or (ride.driver.id if ride.driver else "")),
                name=ride.driver.name if ride.driver else "",
                session_id="",
            )
            self._finish(SEARCH_FOUND)

    def _on_order_expired(self, data):
        if self._matches(data):
            self._finish(SEARCH_EXPIRED)

    def _on_local_timeout(self):
        self._expiry_handle = None
        logger.info("Ride %s: no driver after %ss", self.ride_id, self.timeout)
        self._finish(SEARCH_EXPIRED)

    def _on_join_error(self, data):
        data = data if isinstance(data, dict) else {}
        if data.get("orderId") and self.ride is not None and str(data["orderId"]) != self.ride.id:
            return
        self._finish(SEARCH_ERROR, error=data.get("message") or GENERIC_MESSAGE)

    # ===================== Cancelling =====================

    def cancel(self) -> bool:
        """
        Abandon the search. Returns False if the search had already ended.

        A cancel issued while the ride is still being created completes once
        the server returns the ride.
        """
        if self.is_finished:
            return False
        self._cancel_requested = True

        if self.ride is not None:
            self._emit_cancel()
        self._finish(SEARCH_CANCELLED)
        return True

    async def _abandon_created_ride(self):
        try:
            await self.connection.connect_and_wait()
        except RideSyncError as e:
            logger.warning("Could not notify cancellation of ride %s: %s", self.ride.id, e)
        else:
            self._emit_cancel()
        self.cleanup.release(self.ride.id, reason="cancelled")

    def _emit_cancel(self):
        self.connection.emit(events.RIDE_CANCEL, {
            "orderId": self.ride.id,
            "role": ROLE_CLIENT,
            "reason": CANCEL_REASON,
            "clientToken": self.client_token,
        })

    # ===================== Transitions =====================

    def _set_status(self, status: str):
        self.status = status
        logger.debug("Ride search %s -> %s", self.ride_id, status)
        self._listeners.notify(self)

    def _finish(self, status: str, error: Optional[str] = None) -> bool:
        if self.is_finished:
            return False

        self.error = error
        self._stop_timers()
        self._unsubscribe()

        if status != SEARCH_FOUND and self.ride is not None:
            self.cleanup.release(self.ride.id, reason=status)

        logger.info("Ride search %s finished: %s", self.ride_id, status)
        self._set_status(status)

        done = self._done_future()
        if not done.done():
            done.set_result(status)
        return True
