"""
Shared teardown for a ride reaching a terminal state.

Expiry, search errors, cancellation (either side) and payment confirmation
all end here, so the per-ride resources are released the same way whatever
the exit path.
"""

import logging
from typing import Callable, Dict, List, Optional, Set

from tapea.accounts.storage import CredentialStore
from tapea.realtime.connection import ConnectionManager
from tapea.realtime.location import LocationChannel

logger = logging.getLogger(__name__)


class RideCleanup:
    """Idempotent per-ride teardown."""

    def __init__(
        self,
        store: CredentialStore,
        connection: ConnectionManager,
        location: Optional[LocationChannel] = None,
    ):
        self.store = store
        self.connection = connection
        self.location = location
        self._released: Set[str] = set()
        self._hooks: Dict[str, List[Callable[[str], None]]] = {}

    def add_hook(self, ride_id: str, hook: Callable[[str], None]):
        """Run ``hook(ride_id)`` when ``ride_id`` is released."""
        self._hooks.setdefault(str(ride_id), []).append(hook)

    def track(self, ride_id: str):
        """Mark ``ride_id`` as live again, so that its next release runs."""
        self._released.discard(str(ride_id))

    def is_released(self, ride_id: str) -> bool:
        return str(ride_id) in self._released

    def release(self, ride_id: str, reason: str = "") -> bool:
        """
        Release every resource held for ``ride_id``.

        Drops the room joins scoped to the ride, silences its location
        subscriptions and clears the stored token, ride id and cache when they
        belong to this ride. Returns False if the ride was already released.
        """
        ride_id = str(ride_id)
        if ride_id in self._released:
            return False
        self._released.add(ride_id)

        logger.info("Releasing ride %s%s", ride_id, f" ({reason})" if reason else "")

        self.connection.release_scope(ride_id)
        if self.location is not None:
            self.location.release(ride_id)

        # Never wipe the credentials of a newer ride
        current = self.store.get_current_ride_id()
        if current is None or current == ride_id:
            self.store.clear_ride_state()

        for hook in self._hooks.pop(ride_id, []):
            try:
                hook(ride_id)
            except Exception:
                logger.exception("Cleanup hook failed for ride %s", ride_id)
        return True
