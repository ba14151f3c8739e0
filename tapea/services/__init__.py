"""
Services package - Ride protocol state machines.

The services sit on top of the realtime connection and the HTTP API client
and own the per-ride state: searching for a driver, following the ride and
settling the payment.

Modules:
    - ride_management: Ride request, lifecycle synchronization and cleanup
    - payments: Payment confirmation handshake
"""

# Expose commonly used classes at package level
from .ride_management import (
    RideCleanup,
    RideSearch,
    RideLifecycle,
    resume_client_ride,
    resume_driver_ride,
)
from .payments import PaymentCoordinator

__all__ = [
    # Ride management
    "RideCleanup",
    "RideSearch",
    "RideLifecycle",
    "resume_client_ride",
    "resume_driver_ride",
    # Payments
    "PaymentCoordinator",
]
