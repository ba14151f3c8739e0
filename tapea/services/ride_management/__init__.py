"""
Ride management service - Ride request and ride lifecycle synchronization.

This module handles:
    - Creating ride requests and waiting for a driver
    - Joining the ride room and following status changes
    - Cancelling rides
    - Resuming a ride after an app restart
    - Releasing per-ride resources on a terminal state
"""

from .cleanup import RideCleanup

from .ride_request import (
    RideSearch,
    SEARCH_CREATING,
    SEARCH_SEARCHING,
    SEARCH_FOUND,
    SEARCH_EXPIRED,
    SEARCH_ERROR,
    SEARCH_CANCELLED,
)

from .ride_lifecycle import (
    RideLifecycle,
    next_status,
    resume_client_ride,
    resume_driver_ride,
)

__all__ = [
    "RideCleanup",
    # Ride request
    "RideSearch",
    "SEARCH_CREATING",
    "SEARCH_SEARCHING",
    "SEARCH_FOUND",
    "SEARCH_EXPIRED",
    "SEARCH_ERROR",
    "SEARCH_CANCELLED",
    # Lifecycle
    "RideLifecycle",
    "next_status",
    "resume_client_ride",
    "resume_driver_ride",
]
