"""
Realtime app for the persistent connection to the ride-coordination server.

This app provides:
- A connection manager with automatic reconnection and room-join replay
- Event name constants for every message of the protocol
- Throttled location streaming with out-of-order protection
- An in-memory server and transport for tests

Key Components:
    - connection.py: ConnectionManager, Transport, WebSocketTransport
    - events.py: Event names and credential payload helper
    - location.py: LocationChannel and its time/distance throttle
    - testing.py: FakeServer / FakeTransport

Usage:
    from tapea.realtime.connection import ConnectionManager
    from tapea.realtime.location import LocationChannel
    from tapea.realtime import events
"""
