"""Common utility functions."""

from .backoff import backoff_delay
from .geo import calculate_distance, calculate_heading
from .listeners import ListenerSet

__all__ = [
    "backoff_delay",
    "calculate_distance",
    "calculate_heading",
    "ListenerSet",
]
