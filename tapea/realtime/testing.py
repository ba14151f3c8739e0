"""
In-memory stand-ins for the ride-coordination server, for tests and demos.

Usage:
    server = FakeServer()
    manager = ConnectionManager(transport_factory=server.transport_factory)
    await manager.connect_and_wait()
    server.push("ride:status:changed", {"orderId": "42", "status": "arrived"})
    await settle()
"""

import asyncio
import json
from typing import Any, Dict, List, Optional

from .connection import Transport, TransportClosed

_CLOSED = object()


async def settle(rounds: int = 10):
    """Let queued callbacks, writer tasks and scheduled coroutines run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 1.0, interval: float = 0.005):
    """Poll ``predicate`` until it is true; raise AssertionError after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not met within %ss" % timeout)
        await asyncio.sleep(interval)
    await settle()


class FakeTransport(Transport):
    """One client connection to a FakeServer."""

    def __init__(self, server: "FakeServer"):
        self.server = server
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def open(self):
        await self.server._accept(self)

    async def send(self, message):
        if self.closed:
            raise TransportClosed("closed")
        self.server._receive(self, message)

    async def recv(self):
        item = await self.inbox.get()
        if item is _CLOSED:
            self.closed = True
            raise TransportClosed("closed by server")
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(_CLOSED)


class FakeServer:
    """
    Records every frame clients send and lets tests push frames back.

    ``auto_ack`` maps an event name to the data returned in its ack frame;
    ``refuse_connections`` makes the next N opens fail; ``hang`` makes opens
    block forever (handshake timeout).
    """

    def __init__(self):
        self.transports: List[FakeTransport] = []
        self.received: List[Dict[str, Any]] = []
        self.auto_ack: Dict[str, Dict[str, Any]] = {}
        self.refuse_connections = 0
        self.hang = False

    def transport_factory(self) -> FakeTransport:
        return FakeTransport(self)

    @property
    def current(self) -> Optional[FakeTransport]:
        for transport in reversed(self.transports):
            if not transport.closed:
                return transport
        return None

    async def _accept(self, transport: FakeTransport):
        if self.hang:
            await asyncio.Event().wait()
        if self.refuse_connections > 0:
            self.refuse_connections -= 1
            raise ConnectionRefusedError("connection refused")
        self.transports.append(transport)

    def _receive(self, transport: FakeTransport, message: str):
        frame = json.loads(message)
        self.received.append(frame)
        ack_id = frame.get("ack")
        if ack_id is not None and frame.get("type") in self.auto_ack:
            self._send(transport, {"type": "ack", "ack": ack_id, "data": self.auto_ack[frame["type"]]})

    def _send(self, transport: FakeTransport, frame: Dict[str, Any]):
        transport.inbox.put_nowait(json.dumps(frame))

    # ---------------------- Test helpers ----------------------

    def push(self, event: str, data: Any = None):
        """Deliver an event to the currently connected client."""
        transport = self.current
        if transport is None:
            raise RuntimeError("no client connected")
        self._send(transport, {"type": event, "data": data})

    def push_raw(self, raw: str):
        self.current.inbox.put_nowait(raw)

    def push_error(self, error: Exception):
        """Make the current client's next read fail with ``error``."""
        self.current.inbox.put_nowait(error)

    def drop(self):
        """Close the current connection from the server side."""
        transport = self.current
        if transport is not None:
            transport.inbox.put_nowait(_CLOSED)

    def sent(self, event: Optional[str] = None) -> List[Any]:
        """Payloads the client sent, optionally filtered by event name."""
        return [f.get("data") for f in self.received if event is None or f.get("type") == event]

    def events(self) -> List[str]:
        return [f.get("type") for f in self.received]

    def clear(self):
        self.received.clear()
