"""
Ride lifecycle synchronization between the driver and the rider.

Both apps join the same ride room and observe the same status sequence:

    enroute -> arrived -> inprogress -> completed
    (any non-terminal) -> cancelled

Only the driver advances the status. Observed status never moves backwards:
late or duplicated ``ride:status:changed`` events are ignored, while forward
gaps (missed events during a reconnect) are accepted.
"""

import logging
from typing import Callable, List, Optional

from tapea.accounts.storage import CredentialStore
from tapea.common.utils import ListenerSet
from tapea.exceptions import (
    InvalidTransitionError,
    NetworkError,
    RideNotFoundError,
    RideSyncError,
)
from tapea.realtime import events
from tapea.realtime.connection import ConnectionManager
from tapea.rides.api import ApiClient
from tapea.rides.models import (
    CANCELLED,
    COMPLETED,
    ENROUTE,
    LIFECYCLE_ORDER,
    ROLE_CLIENT,
    ROLE_DRIVER,
    ROLES,
    TERMINAL_RIDE_STATUSES,
    Ride,
    ride_status_from_order,
)
from tapea.services.payments.coordinator import PaymentCoordinator
from .cleanup import RideCleanup

logger = logging.getLogger(__name__)


def next_status(status: str) -> Optional[str]:
    """The only status the driver may move to from ``status``."""
    if status not in LIFECYCLE_ORDER:
        return None
    index = LIFECYCLE_ORDER.index(status)
    if index + 1 < len(LIFECYCLE_ORDER):
        return LIFECYCLE_ORDER[index + 1]
    return None


def normalize_ride_status(status: Optional[str]) -> Optional[str]:
    """Accept both the ride vocabulary and the server order vocabulary."""
    if status in LIFECYCLE_ORDER or status == CANCELLED:
        return status
    return ride_status_from_order(status, default=None)


def is_forward(current: str, candidate: str) -> bool:
    if current in TERMINAL_RIDE_STATUSES:
        return False
    if candidate == CANCELLED:
        return True
    return LIFECYCLE_ORDER.index(candidate) > LIFECYCLE_ORDER.index(current)


class RideLifecycle:
    """
    One ride as seen by one party (driver or client).

    Listeners registered with ``add_listener`` are called with the lifecycle
    after every status change.
    """

    def __init__(
        self,
        ride_id: str,
        role: str,
        credential: str,
        connection: ConnectionManager,
        api: ApiClient,
        store: CredentialStore,
        cleanup: RideCleanup,
        status: str = ENROUTE,
        ride: Optional[Ride] = None,
    ):
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role}")
        self.ride_id = str(ride_id)
        self.role = role
        self.credential = credential
        self.connection = connection
        self.api = api
        self.store = store
        self.cleanup = cleanup

        self.status = status
        self.ride = ride
        self.cancelled_by: Optional[str] = None
        self.cancel_reason: Optional[str] = None

        self.payment = PaymentCoordinator(
            self.ride_id, role, credential, connection=connection, cleanup=cleanup, ride=ride
        )

        self._listeners = ListenerSet()
        self._subscriptions: List[Callable[[], None]] = []
        self._joined = False

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_RIDE_STATUSES

    def add_listener(self, callback: Callable[["RideLifecycle"], None]) -> Callable[[], None]:
        return self._listeners.add(callback)

    # ===================== Room membership =====================

    def join(self):
        """Join the ride room (replayed after every reconnect) and start listening."""
        if self._joined:
            return
        self._joined = True

        self.cleanup.track(self.ride_id)
        self._subscriptions = [
            self.connection.on(events.RIDE_STATUS_CHANGED, self._on_status_changed),
            self.connection.on(events.RIDE_CANCELLED, self._on_cancelled),
            self.connection.on(events.ORDER_DRIVER_ASSIGNED, self._on_driver_assigned),
            self.connection.on(events.CONNECT, self._on_reconnect),
        ]
        self.cleanup.add_hook(self.ride_id, lambda _ride_id: self._unsubscribe())

        self.connection.register_join(
            f"ride:{self.ride_id}:{self.role}", self._join_room, scope=self.ride_id
        )
        logger.info("Joined ride %s as %s (status %s)", self.ride_id, self.role, self.status)

        if self.status == COMPLETED:
            self.payment.begin(self.ride)

    def _join_room(self):
        self.connection.emit(events.RIDE_JOIN, {
            "orderId": self.ride_id,
            "role": self.role,
            **events.credentials_payload(self.role, self.credential),
        })

    def _unsubscribe(self):
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions = []

    # ===================== Driver Operations =====================

    def update_status(self, status: str):
        """
        Advance the ride to ``status`` (driver only).

        Raises:
            InvalidTransitionError: not the driver, or not exactly the next step
            NetworkError: the realtime connection is down; nothing changes
        """
        if self.role != ROLE_DRIVER:
            raise InvalidTransitionError("Seul le chauffeur peut changer le statut de la course")
        expected = next_status(self.status)
        if expected is None or status != expected:
            raise InvalidTransitionError(
                f"Transition {self.status} -> {status} non autorisée"
            )

        sent = self.connection.emit(events.RIDE_STATUS_UPDATE, {
            "orderId": self.ride_id,
            "sessionId": self.credential,
            "status": status,
        })
        if not sent:
            raise NetworkError("Connexion perdue. Réessayez une fois reconnecté.")

        # The server echoes ride:status:changed; the duplicate is ignored
        self._apply_status(status)

    # ===================== Inbound events =====================

    def _matches(self, data) -> bool:
        return isinstance(data, dict) and str(data.get("orderId")) == self.ride_id

    def _on_status_changed(self, data):
        if not self._matches(data):
            return
        status = normalize_ride_status(data.get("status"))
        if status is None:
            logger.warning("Unknown ride status %r for ride %s", data.get("status"), self.ride_id)
            return
        if status == CANCELLED:
            self._on_cancelled(data)
            return
        self._apply_status(status)

    def _on_cancelled(self, data):
        if not self._matches(data) or self.is_finished:
            return
        self.cancelled_by = data.get("cancelledBy")
        self.cancel_reason = data.get("reason")
        logger.info("Ride %s cancelled by %s", self.ride_id, self.cancelled_by or "server")
        self._apply_status(CANCELLED)

    async def _on_driver_assigned(self, data):
        if not self._matches(data):
            return
        try:
            self.ride = await self.api.get_order(self.ride_id)
        except RideSyncError as e:
            logger.warning("Could not reload ride %s after assignment: %s", self.ride_id, e)
            return
        self.store.cache_ride(self.ride)
        self.payment.ride = self.ride
        self._listeners.notify(self)

    async def _on_reconnect(self, _data):
        # Events sent while the connection was down are lost
        try:
            await self.refresh()
        except RideSyncError as e:
            logger.warning("Could not reconcile ride %s after reconnect: %s", self.ride_id, e)

    # ===================== Transitions =====================

    def _apply_status(self, status: str) -> bool:
        if status == self.status or not is_forward(self.status, status):
            logger.debug("Ignoring stale status %s for ride %s (at %s)", status, self.ride_id, self.status)
            return False

        logger.info("Ride %s: %s -> %s", self.ride_id, self.status, status)
        self.status = status
        self._listeners.notify(self)

        if status == COMPLETED:
            self.payment.begin(self.ride)
        elif status == CANCELLED:
            self.cleanup.release(self.ride_id, reason="cancelled")
        return True

    # ===================== Cancellation =====================

    def cancel(self, reason: str = "") -> bool:
        """Cancel the ride from this side and release it locally. False once finished."""
        if self.is_finished:
            return False
        if not reason:
            reason = "Annulé par le chauffeur" if self.role == ROLE_DRIVER else "Annulé par le client"

        self.connection.emit(events.RIDE_CANCEL, {
            "orderId": self.ride_id,
            "role": self.role,
            "reason": reason,
            **events.credentials_payload(self.role, self.credential),
        })
        self.cancelled_by = self.role
        self.cancel_reason = reason
        self._apply_status(CANCELLED)
        return True

    # ===================== Reconciliation =====================

    async def refresh(self) -> Ride:
        """
        Reconcile with the authoritative ride detail.

        Falls back to the cached ride when the server is unreachable; the
        observed status still only moves forward.
        """
        try:
            ride = await self.api.get_order(self.ride_id)
        except RideSyncError as e:
            if not e.retryable:
                raise
            ride = self.store.get_cached_ride(self.ride_id)
            if ride is None:
                raise
            logger.info("Using cached ride %s (%s)", self.ride_id, e.__class__.__name__)
        else:
            self.store.cache_ride(ride)

        self.ride = ride
        self.payment.ride = ride
        status = normalize_ride_status(ride.status)
        if status is not None:
            self._apply_status(status)
        self.payment.reconcile(ride.status)
        return ride

    def release(self):
        """Stop observing the ride without cancelling it."""
        self.cleanup.release(self.ride_id, reason="released")


# ===================== Resuming after a restart =====================

async def load_ride(api: ApiClient, store: CredentialStore, ride_id: str) -> Ride:
    """Authoritative ride detail, or the cached copy when the server is unreachable."""
    try:
        ride = await api.get_order(ride_id)
    except RideSyncError as e:
        cached = store.get_cached_ride(ride_id)
        if cached is None or not e.retryable:
            raise
        logger.info("Resuming ride %s from cache", ride_id)
        return cached
    store.cache_ride(ride)
    return ride


async def resume_client_ride(
    api: ApiClient,
    connection: ConnectionManager,
    store: CredentialStore,
    cleanup: RideCleanup,
) -> RideLifecycle:
    """
    Rebuild the rider's current ride after an app restart.

    Raises:
        RideNotFoundError: no ride id stored and none active on the server
    """
    ride_id = store.get_current_ride_id()
    token = store.get_client_token() if ride_id else None

    if not ride_id:
        active = await api.get_active_client_order()
        if not active.has_active_order or active.ride is None:
            raise RideNotFoundError("Aucune commande active trouvée")
        ride_id = active.ride.id
        token = active.client_token
        if token:
            store.save_ride_credentials(ride_id, token)

    if not token:
        raise RideNotFoundError("Jeton de course introuvable")

    ride = await load_ride(api, store, ride_id)
    lifecycle = RideLifecycle(
        ride.id, ROLE_CLIENT, token,
        connection=connection, api=api, store=store, cleanup=cleanup,
        status=ride_status_from_order(ride.status), ride=ride,
    )
    # The client session room carries order-level events (driver assignment)
    connection.register_join(
        f"client:{ride.id}",
        lambda: connection.emit(events.CLIENT_JOIN, {"orderId": ride.id, "clientToken": token}),
        scope=ride.id,
    )
    lifecycle.join()
    return lifecycle


async def resume_driver_ride(
    api: ApiClient,
    connection: ConnectionManager,
    store: CredentialStore,
    cleanup: RideCleanup,
) -> Optional[RideLifecycle]:
    """Rebuild the driver's active ride, or return None when there is none."""
    session_id = store.get_driver_session_id()
    if not session_id:
        raise RideNotFoundError("Aucune session chauffeur")

    active = await api.get_active_driver_order(session_id)
    if not active.has_active_order or active.ride is None:
        return None

    ride = active.ride
    store.cache_ride(ride)
    lifecycle = RideLifecycle(
        ride.id, ROLE_DRIVER, session_id,
        connection=connection, api=api, store=store, cleanup=cleanup,
        status=ride_status_from_order(ride.status), ride=ride,
    )
    lifecycle.join()
    return lifecycle
