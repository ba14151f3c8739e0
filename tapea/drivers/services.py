import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from tapea import settings
from tapea.accounts.storage import CredentialStore
from tapea.common.utils import ListenerSet
from tapea.exceptions import (
    AuthError,
    LocalTimeoutError,
    NetworkError,
    ProtocolError,
    RideSyncError,
)
from tapea.realtime import events
from tapea.realtime.connection import ConnectionManager
from tapea.rides.api import GENERIC_MESSAGE, ApiClient
from tapea.rides.models import Ride

logger = logging.getLogger(__name__)


class DriverSession:
    """
    Driver-side session: login, availability and the pending-order board.

    The board is kept newest first and is replaced wholesale by
    ``orders:pending`` (sent by the server after every driver:join).
    """

    def __init__(
        self,
        api: ApiClient,
        connection: ConnectionManager,
        store: CredentialStore,
        accept_timeout: float = settings.REALTIME_CONFIG["ACCEPT_ORDER_TIMEOUT"],
        join_ack_timeout: float = settings.REALTIME_CONFIG["JOIN_ACK_TIMEOUT"],
    ):
        self.api = api
        self.connection = connection
        self.store = store
        self.accept_timeout = accept_timeout
        self.join_ack_timeout = join_ack_timeout

        self.session_id: Optional[str] = store.get_driver_session_id()
        self.driver: Optional[Dict[str, Any]] = None
        self.is_online = False
        self.pending_orders: List[Ride] = []

        self._listeners = ListenerSet()
        self._subscriptions: List[Callable[[], None]] = []
        self._accepting: Optional[Tuple[str, asyncio.Future]] = None

    def add_listener(self, callback: Callable[["DriverSession"], None]) -> Callable[[], None]:
        """Called after every change of availability or of the order board."""
        return self._listeners.add(callback)

    def _require_session(self) -> str:
        if not self.session_id:
            raise AuthError("Session chauffeur absente. Veuillez vous reconnecter.")
        return self.session_id

    # LOGIN / RESTORE
    async def login(self, code: str) -> Dict[str, Any]:
        """Log in with the driver's access code and persist the session id."""
        driver, session_id = await self.api.driver_login(code)
        self.store.set_driver_session_id(session_id)
        self.session_id = session_id
        self.driver = driver
        logger.info("Driver %s logged in (session %s)", driver.get("id"), session_id)
        return driver

    async def restore(self) -> bool:
        """Reload the stored session's availability. False when no session is stored."""
        self.session_id = self.store.get_driver_session_id()
        if not self.session_id:
            return False
        session = await self.api.get_driver_session(self.session_id)
        self.is_online = bool(session.get("isOnline"))
        return True

    # DRIVER ROOM
    def _join_payload(self) -> Dict[str, str]:
        return {"sessionId": self.session_id}

    def _join_room(self):
        self.connection.emit(events.DRIVER_JOIN, self._join_payload())

    def join(self):
        """Join the driver room; the join is replayed after every reconnect."""
        session_id = self._require_session()
        self._subscribe()
        self.connection.register_join(f"driver:{session_id}", self._join_room, scope=session_id)

    async def join_and_wait(self) -> bool:
        """
        Join and wait for the server's acknowledgement.

        No ack within the join timeout is treated as success, matching servers
        that do not acknowledge ``driver:join``.
        """
        session_id = self._require_session()
        self._subscribe()
        try:
            await self.connection.connect_and_wait()
        except RideSyncError as e:
            logger.warning("Driver join failed, no connection: %s", e)
            return False

        ack = await self.connection.emit_with_ack(
            events.DRIVER_JOIN, self._join_payload(), timeout=self.join_ack_timeout
        )
        self.connection.register_join(
            f"driver:{session_id}", self._join_room, scope=session_id, run_now=False
        )
        if ack is None:
            logger.info("Join session %s: no ack, assuming success", session_id)
            return True
        if not ack.get("success"):
            logger.warning("Join driver session refused: %s", session_id)
            return False
        return True

    def _subscribe(self):
        if self._subscriptions:
            return
        self._subscriptions = [
            self.connection.on(events.ORDER_NEW, self._on_new_order),
            self.connection.on(events.ORDERS_PENDING, self._on_pending_orders),
            self.connection.on(events.ORDER_TAKEN, self._on_order_gone),
            self.connection.on(events.ORDER_EXPIRED, self._on_order_gone),
            self.connection.on(events.ORDER_ACCEPT_SUCCESS, self._on_accept_success),
            self.connection.on(events.ORDER_ACCEPT_ERROR, self._on_accept_error),
        ]

    def _unsubscribe(self):
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions = []

    # AVAILABILITY
    async def set_online(self, is_online: bool) -> bool:
        """
        Toggle availability over both channels.

        The local flag flips at once and is rolled back if the HTTP update
        fails. Returns whether the update stuck.
        """
        session_id = self._require_session()
        previous = self.is_online
        self.is_online = is_online
        self._listeners.notify(self)

        self.connection.emit(events.DRIVER_STATUS, {"sessionId": session_id, "isOnline": is_online})
        try:
            await self.api.set_driver_online(session_id, is_online)
        except RideSyncError as e:
            logger.warning("Availability update failed for %s: %s", session_id, e)
            self.is_online = previous
            self._listeners.notify(self)
            return False
        return True

    # ORDER BOARD
    def _parse_order(self, data) -> Optional[Ride]:
        try:
            return Ride.from_payload(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("Ignoring malformed order payload")
            return None

    def _on_new_order(self, data):
        order = self._parse_order(data)
        if order is None or any(o.id == order.id for o in self.pending_orders):
            return
        self.pending_orders.insert(0, order)
        self._listeners.notify(self)

    def _on_pending_orders(self, data):
        orders = [self._parse_order(item) for item in (data or [])]
        self.pending_orders = [o for o in orders if o is not None]
        self._listeners.notify(self)

    def _remove_order(self, order_id: str):
        before = len(self.pending_orders)
        self.pending_orders = [o for o in self.pending_orders if o.id != str(order_id)]
        if len(self.pending_orders) != before:
            self._listeners.notify(self)

    def _on_order_gone(self, data):
        if isinstance(data, dict) and data.get("orderId"):
            self._remove_order(data["orderId"])

    # ACCEPT / DECLINE
    async def accept_order(self, order_id: str) -> Ride:
        """
        Accept an order and wait for the server's verdict.

        Raises:
            ProtocolError: the server refused (already taken, expired...)
            NetworkError: not connected, nothing was sent
            LocalTimeoutError: no verdict within the accept timeout
        """
        session_id = self._require_session()
        if self._accepting is not None:
            raise ProtocolError("Une acceptation est déjà en cours")

        future = asyncio.get_running_loop().create_future()
        self._accepting = (str(order_id), future)
        try:
            sent = self.connection.emit(events.ORDER_ACCEPT, {"orderId": str(order_id), "sessionId": session_id})
            if not sent:
                raise NetworkError("Connexion perdue. Réessayez une fois reconnecté.")
            return await asyncio.wait_for(future, self.accept_timeout)
        except asyncio.TimeoutError:
            raise LocalTimeoutError("Le serveur n'a pas confirmé l'acceptation") from None
        finally:
            self._accepting = None

    def _on_accept_success(self, data):
        order = self._parse_order(data)
        if order is None:
            return
        self._remove_order(order.id)
        self.store.cache_ride(order)
        logger.info("Order %s accepted", order.id)
        # Only the order being accepted resolves the pending call
        pending = self._accepting
        if pending is not None and pending[0] == order.id and not pending[1].done():
            pending[1].set_result(order)

    def _on_accept_error(self, data):
        message = (data or {}).get("message") if isinstance(data, dict) else None
        logger.warning("Order acceptance refused: %s", message)
        if self._accepting is not None and not self._accepting[1].done():
            self._accepting[1].set_exception(ProtocolError(message or GENERIC_MESSAGE))

    def decline_order(self, order_id: str) -> bool:
        session_id = self._require_session()
        sent = self.connection.emit(events.ORDER_DECLINE, {"orderId": str(order_id), "sessionId": session_id})
        self._remove_order(order_id)
        return sent

    # LOGOUT
    def logout(self):
        """Forget the session and stop following the driver room."""
        if self.session_id:
            self.connection.release_scope(self.session_id)
        self.store.remove_driver_session_id()
        self._unsubscribe()
        self.session_id = None
        self.driver = None
        self.is_online = False
        self.pending_orders = []
        self._listeners.notify(self)
