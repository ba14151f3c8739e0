"""
Composition root.

Builds the shared infrastructure once (credential store, API client,
realtime connection, location channel, ride cleanup) and hands it to the
state machines, so nothing relies on module-level singletons.

Usage:
    app = RideApp()
    search = await app.request_ride(ride_request)
    if await search.wait() == "found":
        ride = app.follow_ride(search)
"""

import logging
from typing import Callable, Optional

from tapea.accounts.auth import AuthService
from tapea.accounts.storage import CredentialStore
from tapea.drivers.services import DriverSession
from tapea.platform import PlatformCapabilities
from tapea.realtime.connection import ConnectionManager, Transport
from tapea.realtime.location import LocationChannel
from tapea.rides.api import ApiClient
from tapea.rides.models import ROLE_CLIENT, ROLE_DRIVER, LocationSample, Ride
from tapea.services.ride_management import (
    RideCleanup,
    RideLifecycle,
    RideSearch,
    SEARCH_FOUND,
    resume_client_ride,
    resume_driver_ride,
)

logger = logging.getLogger(__name__)


class RideApp:
    """One app instance (rider or driver) and its shared resources."""

    def __init__(
        self,
        store: Optional[CredentialStore] = None,
        api: Optional[ApiClient] = None,
        connection: Optional[ConnectionManager] = None,
        capabilities: Optional[PlatformCapabilities] = None,
        transport_factory: Optional[Callable[[], Transport]] = None,
    ):
        self.capabilities = capabilities or PlatformCapabilities.from_settings()
        self.store = store or CredentialStore()
        self.api = api or ApiClient(self.store)
        self.connection = connection or ConnectionManager(transport_factory=transport_factory)
        self.location = LocationChannel(self.connection)
        self.cleanup = RideCleanup(self.store, self.connection, self.location)
        self.auth = AuthService(self.api, self.store)
        self._driver: Optional[DriverSession] = None

    @property
    def driver(self) -> DriverSession:
        if self._driver is None:
            self._driver = DriverSession(self.api, self.connection, self.store)
        return self._driver

    # ---------------------- Rider ----------------------

    def new_search(self) -> RideSearch:
        return RideSearch(
            self.api, self.connection, self.store, self.cleanup, capabilities=self.capabilities
        )

    async def request_ride(self, ride_request) -> RideSearch:
        """Submit ``ride_request`` and return the running search."""
        search = self.new_search()
        await search.start(ride_request)
        return search

    def follow_ride(self, search: RideSearch) -> RideLifecycle:
        """Client lifecycle for a search that found a driver."""
        if search.status != SEARCH_FOUND:
            raise ValueError(f"Ride search is {search.status}, not {SEARCH_FOUND}")
        lifecycle = self._lifecycle(search.ride.id, ROLE_CLIENT, search.client_token, ride=search.ride)
        lifecycle.join()
        return lifecycle

    async def resume_client_ride(self) -> RideLifecycle:
        return await resume_client_ride(self.api, self.connection, self.store, self.cleanup)

    def track_driver(
        self, lifecycle: RideLifecycle, callback: Callable[[LocationSample], None]
    ) -> Optional[Callable[[], None]]:
        """Follow the driver's position; None when the platform cannot show a map."""
        if not self.capabilities.has_maps:
            logger.debug("No map support, driver location not tracked for ride %s", lifecycle.ride_id)
            return None
        return self.location.on_driver_location(lifecycle.ride_id, callback)

    # ---------------------- Driver ----------------------

    def drive_ride(self, ride: Ride) -> RideLifecycle:
        """Driver lifecycle for an accepted order."""
        session_id = self.driver.session_id
        if not session_id:
            raise ValueError("No driver session")
        lifecycle = self._lifecycle(ride.id, ROLE_DRIVER, session_id, ride=ride)
        lifecycle.join()
        return lifecycle

    async def resume_driver_ride(self) -> Optional[RideLifecycle]:
        return await resume_driver_ride(self.api, self.connection, self.store, self.cleanup)

    # ---------------------- Shared ----------------------

    def _lifecycle(self, ride_id: str, role: str, credential: str, ride: Optional[Ride] = None) -> RideLifecycle:
        status_kwargs = {"status": ride.ride_status} if ride is not None else {}
        return RideLifecycle(
            ride_id, role, credential,
            connection=self.connection, api=self.api, store=self.store, cleanup=self.cleanup,
            ride=ride, **status_kwargs,
        )

    async def start(self):
        """Open the realtime connection (the reconnect loop keeps it open)."""
        await self.connection.connect_and_wait()

    async def close(self):
        await self.connection.disconnect()
