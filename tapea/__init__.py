"""
Tapea ride synchronization client.

Shared protocol layer of the rider and driver apps: ride requests over HTTP,
driver assignment, ride status, live locations and payment confirmation over
one persistent realtime connection.
"""

__version__ = "0.1.0"
