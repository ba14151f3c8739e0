"""
Payments service - confirmation handshake run once a ride is completed.
"""

from .coordinator import (
    PAYMENT_CONFIRMED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_RETRYING,
    PAYMENT_SWITCHED_TO_CASH,
    PaymentCoordinator,
    normalize_payment_status,
)

__all__ = [
    "PaymentCoordinator",
    "normalize_payment_status",
    "PAYMENT_PENDING",
    "PAYMENT_CONFIRMED",
    "PAYMENT_FAILED",
    "PAYMENT_RETRYING",
    "PAYMENT_SWITCHED_TO_CASH",
]
