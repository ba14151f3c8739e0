"""
Payment confirmation handshake for a completed ride.

    pending -> confirmed          (terminal, ride resources released)
    pending -> failed
    failed  -> retrying | switched_to_cash   (client only, one shot)
    retrying | switched_to_cash -> pending   (server acknowledgement)

``retrying`` and ``switched_to_cash`` count as pending: the rider waits for
the next ``payment:status`` either way.
"""

import logging
from typing import Callable, List, Optional

from tapea.common.utils import ListenerSet
from tapea.exceptions import InvalidTransitionError
from tapea.realtime import events
from tapea.realtime.connection import ConnectionManager
from tapea.rides.models import (
    ORDER_PAYMENT_CONFIRMED,
    PAYMENT_CASH,
    ROLE_CLIENT,
    PaymentOutcome,
    Ride,
)
from tapea.services.ride_management.cleanup import RideCleanup

logger = logging.getLogger(__name__)


PAYMENT_PENDING = "pending"
PAYMENT_CONFIRMED = "confirmed"
PAYMENT_FAILED = "failed"
PAYMENT_RETRYING = "retrying"
PAYMENT_SWITCHED_TO_CASH = "switched_to_cash"

PENDING_EQUIVALENT = {PAYMENT_PENDING, PAYMENT_RETRYING, PAYMENT_SWITCHED_TO_CASH}

# Both vocabularies appear on the wire
STATUS_ALIASES = {
    "confirmed": PAYMENT_CONFIRMED,
    "payment_confirmed": PAYMENT_CONFIRMED,
    "failed": PAYMENT_FAILED,
    "payment_failed": PAYMENT_FAILED,
}


def normalize_payment_status(status: Optional[str]) -> Optional[str]:
    return STATUS_ALIASES.get(status or "")


class PaymentCoordinator:
    """Drives the payment handshake for one ride, from either side."""

    def __init__(
        self,
        ride_id: str,
        role: str,
        credential: str,
        connection: ConnectionManager,
        cleanup: RideCleanup,
        ride: Optional[Ride] = None,
    ):
        self.ride_id = str(ride_id)
        self.role = role
        self.credential = credential
        self.connection = connection
        self.cleanup = cleanup
        self.ride = ride

        self.state: Optional[str] = None
        self.outcome: Optional[PaymentOutcome] = None
        self.method: str = ride.payment_method if ride else PAYMENT_CASH

        self._listeners = ListenerSet()
        self._subscriptions: List[Callable[[], None]] = []

    @property
    def is_pending(self) -> bool:
        return self.state in PENDING_EQUIVALENT

    @property
    def is_confirmed(self) -> bool:
        return self.state == PAYMENT_CONFIRMED

    def add_listener(self, callback: Callable[["PaymentCoordinator"], None]) -> Callable[[], None]:
        return self._listeners.add(callback)

    def begin(self, ride: Optional[Ride] = None) -> bool:
        """Enter ``pending`` and start listening. Only the first call has an effect."""
        if self.state is not None:
            return False
        if ride is not None:
            self.ride = ride
            self.method = ride.payment_method

        self._subscriptions = [
            self.connection.on(events.PAYMENT_STATUS, self._on_status),
            self.connection.on(events.PAYMENT_RETRY_READY, self._on_retry_ready),
            self.connection.on(events.PAYMENT_SWITCHED_TO_CASH, self._on_switched_to_cash),
        ]
        self.cleanup.add_hook(self.ride_id, lambda _ride_id: self.release())
        logger.info("Payment handshake started for ride %s (%s)", self.ride_id, self.method)
        self._set_state(PAYMENT_PENDING)
        return True

    def release(self):
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions = []

    # ---------------------- Outbound ----------------------

    def _credentials(self):
        return events.credentials_payload(self.role, self.credential)

    def confirm(self, confirmed: bool = True) -> bool:
        """Report the payment as done (or not) from this side. Returns False if not sent."""
        if self.state is None or self.state == PAYMENT_CONFIRMED:
            return False
        return self.connection.emit(events.PAYMENT_CONFIRM, {
            "orderId": self.ride_id,
            "confirmed": confirmed,
            "role": self.role,
            **self._credentials(),
        })

    def retry(self) -> bool:
        """Retry a failed card payment. Returns False unless the payment is currently failed."""
        return self._recover(events.PAYMENT_RETRY, PAYMENT_RETRYING)

    def switch_to_cash(self) -> bool:
        """Settle a failed payment in cash instead."""
        return self._recover(events.PAYMENT_SWITCH_CASH, PAYMENT_SWITCHED_TO_CASH)

    def _recover(self, event: str, next_state: str) -> bool:
        if self.role != ROLE_CLIENT:
            raise InvalidTransitionError("Seul le client peut relancer le paiement")
        if self.state != PAYMENT_FAILED:
            logger.debug("Ignoring %s for ride %s in state %s", event, self.ride_id, self.state)
            return False

        self.connection.emit(event, {"orderId": self.ride_id, "clientToken": self.credential})
        self._set_state(next_state)
        return True

    # ---------------------- Inbound ----------------------

    def _matches(self, data) -> bool:
        return isinstance(data, dict) and str(data.get("orderId")) == self.ride_id

    def _on_status(self, data):
        if not self._matches(data) or self.state == PAYMENT_CONFIRMED:
            return

        status = normalize_payment_status(data.get("status"))
        if status is None:
            logger.warning("Unknown payment status %r for ride %s", data.get("status"), self.ride_id)
            return

        default_amount = self.ride.total_price if self.ride else 0
        self.outcome = PaymentOutcome(
            status=status,
            amount=data.get("amount") or default_amount,
            method=data.get("paymentMethod") or self.method,
            card_brand=data.get("cardBrand"),
            card_last4=data.get("cardLast4"),
            error_message=data.get("errorMessage") if status == PAYMENT_FAILED else None,
        )
        self._set_state(status)

        if status == PAYMENT_CONFIRMED:
            self.release()
            self.cleanup.release(self.ride_id, reason="payment confirmed")

    def reconcile(self, order_status: Optional[str]) -> bool:
        """
        Catch up with the ride detail after missed events.

        Only a server-side confirmation is applied: a stale ``payment_failed``
        would undo a retry already in flight.
        """
        if not self.is_pending or order_status != ORDER_PAYMENT_CONFIRMED:
            return False
        logger.info("Payment for ride %s confirmed while disconnected", self.ride_id)
        self._on_status({"orderId": self.ride_id, "status": order_status})
        return True

    def _on_retry_ready(self, data):
        if self._matches(data) and self.state == PAYMENT_RETRYING:
            self._set_state(PAYMENT_PENDING)

    def _on_switched_to_cash(self, data):
        if self._matches(data) and self.state in (PAYMENT_SWITCHED_TO_CASH, PAYMENT_FAILED):
            self.method = PAYMENT_CASH
            self._set_state(PAYMENT_PENDING)

    def _set_state(self, state: str):
        logger.debug("Payment %s: %s -> %s", self.ride_id, self.state, state)
        self.state = state
        self._listeners.notify(self)
