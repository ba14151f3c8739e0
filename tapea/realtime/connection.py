"""
Persistent realtime connection to the ride-coordination server.

One ConnectionManager is built by the app's composition root and injected
into every component that talks to the server. It owns:
    - the transport (WebSocket by default) and its reconnect loop
    - named-event listeners, which survive reconnects
    - the room-join replay registry, re-run after every (re)connection

Wire format: JSON text frames ``{"type": <event>, "data": <payload>}``, with
an optional integer ``"ack"`` when the sender expects an acknowledgement
frame ``{"type": "ack", "ack": <id>, "data": {...}}`` back.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections import OrderedDict, defaultdict
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import websocket
from asgiref.sync import sync_to_async

from tapea import settings
from tapea.common.utils import backoff_delay
from tapea.exceptions import ConnectionTimeout, NetworkError
from . import events

logger = logging.getLogger(__name__)


# ---------------------- Transports ----------------------

class TransportClosed(Exception):
    """Raised by a transport once the underlying connection is gone."""
    pass


class Transport:
    """Minimal async transport interface used by ConnectionManager."""

    async def open(self) -> None:
        raise NotImplementedError

    async def send(self, message: str) -> None:
        raise NotImplementedError

    async def recv(self) -> str:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class WebSocketTransport(Transport):
    """
    websocket-client connection driven from the event loop.

    Blocking calls run in worker threads through ``sync_to_async``; the loop
    itself never blocks.
    """

    def __init__(self, url: str, headers: Optional[List[str]] = None, connect_timeout: float = 10.0):
        self.url = url
        self.headers = headers or []
        self.connect_timeout = connect_timeout
        self._ws: Optional[websocket.WebSocket] = None

    async def open(self):
        self._ws = await sync_to_async(websocket.create_connection, thread_sensitive=False)(
            self.url,
            timeout=self.connect_timeout,
            header=self.headers,
        )
        # recv() blocks in its own thread until a frame arrives
        self._ws.settimeout(None)

    async def send(self, message):
        ws = self._ws
        if ws is None:
            raise TransportClosed("not connected")
        try:
            await sync_to_async(ws.send, thread_sensitive=False)(message)
        except (websocket.WebSocketException, OSError) as e:
            raise TransportClosed(str(e)) from e

    async def recv(self):
        while True:
            ws = self._ws
            if ws is None:
                raise TransportClosed("not connected")
            try:
                message = await sync_to_async(ws.recv, thread_sensitive=False)()
            except (websocket.WebSocketException, OSError) as e:
                raise TransportClosed(str(e)) from e
            if not message:
                raise TransportClosed("closed by server")
            if not isinstance(message, bytes):
                return message
            try:
                return message.decode("utf-8")
            except UnicodeDecodeError:
                logger.warning("Dropping undecodable binary frame (%s bytes)", len(message))

    async def close(self):
        ws, self._ws = self._ws, None
        if ws is not None:
            # abort() wakes the thread blocked in recv()
            ws.abort()
            ws.shutdown()


# ---------------------- Replay registry ----------------------

@dataclass
class RoomJoin:
    """One entry of the replay registry."""
    key: str
    join: Callable[[], Any]
    scope: Optional[str] = None


# ---------------------- Connection manager ----------------------

class ConnectionManager:
    """
    Single long-lived bidirectional connection per app instance.

    Sends are fire-and-forget: anything emitted while disconnected is
    dropped, callers that need delivery re-send after reconnect or re-query
    over HTTP.
    """

    def __init__(
        self,
        url: str = settings.SOCKET_URL,
        transport_factory: Optional[Callable[[], Transport]] = None,
        connect_timeout: float = settings.REALTIME_CONFIG["CONNECT_TIMEOUT"],
        reconnect_delay: float = settings.REALTIME_CONFIG["RECONNECT_DELAY"],
        reconnect_delay_max: float = settings.REALTIME_CONFIG["RECONNECT_DELAY_MAX"],
    ):
        self.url = url
        self.connect_timeout = connect_timeout
        self.reconnect_delay = reconnect_delay
        self.reconnect_delay_max = reconnect_delay_max
        self._transport_factory = transport_factory or (
            lambda: WebSocketTransport(url, connect_timeout=connect_timeout)
        )

        self._transport: Optional[Transport] = None
        self._outbox: Optional[asyncio.Queue] = None
        self._run_task: Optional[asyncio.Task] = None
        self._connected = False
        self._closing = False

        self._handlers: Dict[str, List[Callable]] = defaultdict(list)
        self._joins: "OrderedDict[str, RoomJoin]" = OrderedDict()
        self._acks: Dict[int, asyncio.Future] = {}
        self._ack_ids = itertools.count(1)
        self._connect_waiters: List[asyncio.Future] = []

        # Total successful (re)connections, handy for diagnostics
        self.connection_count = 0

    # ---------------------- Connection state ----------------------

    @property
    def is_connected(self) -> bool:
        return self._connected

    def connect(self):
        """Start the background connection loop. No-op if it is already running."""
        if self._run_task is not None and not self._run_task.done():
            return
        self._closing = False
        self._run_task = asyncio.get_running_loop().create_task(self._run())

    async def connect_and_wait(self, timeout: Optional[float] = None):
        """
        Connect and wait for the handshake.

        Raises:
            ConnectionTimeout: handshake not completed within ``timeout`` (retryable)
            NetworkError: the connection attempt failed or disconnect() was called (retryable)
        """
        if self._connected:
            return
        timeout = self.connect_timeout if timeout is None else timeout

        waiter = asyncio.get_running_loop().create_future()
        self._connect_waiters.append(waiter)
        self.connect()
        try:
            await asyncio.wait_for(waiter, timeout)
        except asyncio.TimeoutError:
            raise ConnectionTimeout("Socket connection timeout") from None
        finally:
            if waiter in self._connect_waiters:
                self._connect_waiters.remove(waiter)

    async def disconnect(self):
        """Close the connection and stop reconnecting. The replay registry is kept."""
        self._closing = True
        task, self._run_task = self._run_task, None
        if task is not None and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._fail_waiters(NetworkError("Connexion fermée"))

    # ---------------------- Event listeners ----------------------

    def on(self, event: str, callback: Callable) -> Callable[[], None]:
        """Register a listener. Returns the matching unsubscribe function."""
        self._handlers[event].append(callback)
        return lambda: self.off(event, callback)

    def once(self, event: str, callback: Callable) -> Callable[[], None]:
        def wrapper(data):
            self.off(event, wrapper)
            return callback(data)

        return self.on(event, wrapper)

    def off(self, event: str, callback: Callable):
        handlers = self._handlers.get(event)
        if handlers and callback in handlers:
            handlers.remove(callback)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))

    # ---------------------- Sending ----------------------

    def emit(self, event: str, payload: Any = None, ack_id: Optional[int] = None) -> bool:
        """Queue an event for sending. Returns False (and drops it) when disconnected."""
        if not self._connected or self._outbox is None:
            logger.debug("Dropping %s while disconnected", event)
            return False

        frame = {"type": event, "data": payload if payload is not None else {}}
        if ack_id is not None:
            frame["ack"] = ack_id
        self._outbox.put_nowait(json.dumps(frame))
        return True

    async def emit_with_ack(self, event: str, payload: Any = None, timeout: float = 3.0) -> Optional[Dict[str, Any]]:
        """Emit and wait for the server acknowledgement. Returns None on timeout or when disconnected."""
        if not self._connected:
            return None

        ack_id = next(self._ack_ids)
        future = asyncio.get_running_loop().create_future()
        self._acks[ack_id] = future
        try:
            self.emit(event, payload, ack_id=ack_id)
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            self._acks.pop(ack_id, None)

    # ---------------------- Replay registry ----------------------

    def register_join(
        self,
        key: str,
        join: Callable[[], Any],
        scope: Optional[str] = None,
        run_now: bool = True,
    ) -> Callable[[], None]:
        """
        Register a room join that must be re-issued after every (re)connection.

        The join runs immediately when connected (unless ``run_now`` is False,
        for callers that already sent it); otherwise the connection is started
        and the join runs on connect. Registering an existing key replaces the
        entry in place.
        """
        self._joins[key] = RoomJoin(key=key, join=join, scope=scope)

        if self._connected:
            if run_now:
                self._run_join(self._joins[key])
        else:
            self.connect()
        return lambda: self.unregister_join(key)

    def unregister_join(self, key: str) -> bool:
        return self._joins.pop(key, None) is not None

    def release_scope(self, scope: str) -> int:
        """Drop every join registered under ``scope`` (a ride id or a driver session)."""
        keys = [key for key, entry in self._joins.items() if entry.scope == scope]
        for key in keys:
            del self._joins[key]
        if keys:
            logger.debug("Released %s room join(s) for %s", len(keys), scope)
        return len(keys)

    @property
    def registered_joins(self) -> List[str]:
        return list(self._joins)

    def _run_join(self, entry: RoomJoin):
        try:
            entry.join()
        except Exception:
            logger.exception("Error re-executing room join %s", entry.key)

    def _replay_joins(self):
        for entry in list(self._joins.values()):
            self._run_join(entry)

    # ---------------------- Background loop ----------------------

    async def _run(self):
        attempt = 0
        while not self._closing:
            transport = self._transport_factory()
            try:
                await transport.open()
            except asyncio.CancelledError:
                with suppress(Exception):
                    await transport.close()
                raise
            except Exception as e:
                attempt += 1
                self._fail_waiters(NetworkError(f"Socket connection error: {e}"))
                delay = backoff_delay(attempt, self.reconnect_delay, self.reconnect_delay_max)
                logger.warning("Connection attempt %s failed (%s), retrying in %.1fs", attempt, e, delay)
                await asyncio.sleep(delay)
                continue

            if attempt:
                logger.info("Reconnected after %s attempts", attempt)
            attempt = 0

            reason = "transport closed"
            outbox: asyncio.Queue = asyncio.Queue()
            writer = asyncio.ensure_future(self._write_loop(transport, outbox))
            try:
                self._on_open(transport, outbox)
                await self._read_loop(transport)
            except TransportClosed as e:
                reason = str(e) or reason
            except Exception:
                logger.exception("Realtime read loop failed, reconnecting")
                reason = "read error"
            finally:
                writer.cancel()
                self._on_close(reason)
                with suppress(Exception):
                    await transport.close()

            if self._closing:
                break
            # Server-side or network drop: wait one step before reconnecting
            await asyncio.sleep(self.reconnect_delay)

    def _on_open(self, transport: Transport, outbox: asyncio.Queue):
        self._transport = transport
        self._outbox = outbox
        self._connected = True
        self.connection_count += 1
        logger.info("Connected to %s", self.url)

        for waiter in self._connect_waiters:
            if not waiter.done():
                waiter.set_result(None)
        self._connect_waiters = []

        self._replay_joins()
        self._dispatch(events.CONNECT, None)

    def _on_close(self, reason: str):
        was_connected = self._connected
        self._connected = False
        self._transport = None
        self._outbox = None

        for future in self._acks.values():
            if not future.done():
                future.set_result(None)

        if was_connected:
            logger.info("Disconnected: %s", reason)
            self._dispatch(events.DISCONNECT, reason)

    def _fail_waiters(self, error: Exception):
        for waiter in self._connect_waiters:
            if not waiter.done():
                waiter.set_exception(error)
        self._connect_waiters = []

    async def _write_loop(self, transport: Transport, outbox: asyncio.Queue):
        while True:
            message = await outbox.get()
            try:
                await transport.send(message)
            except TransportClosed:
                logger.debug("Send failed, transport closed")
                return

    async def _read_loop(self, transport: Transport):
        while True:
            raw = await transport.recv()
            self._handle_frame(raw)

    # ---------------------- Dispatch ----------------------

    def _handle_frame(self, raw: str):
        try:
            frame = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring malformed frame: %r", raw[:200])
            return
        if not isinstance(frame, dict):
            logger.warning("Ignoring non-object frame")
            return

        event = frame.get("type")
        data = frame.get("data")

        if event == events.ACK:
            future = self._acks.get(frame.get("ack"))
            if future is not None and not future.done():
                future.set_result(data if data is not None else {})
            return

        if not event:
            logger.warning("Ignoring frame without type")
            return

        logger.debug("Received %s", event)
        self._dispatch(event, data)

    def _dispatch(self, event: str, data: Any):
        for callback in list(self._handlers.get(event, ())):
            try:
                result = callback(data)
            except Exception:
                logger.exception("Error handling event %s", event)
                continue
            if asyncio.iscoroutine(result):
                asyncio.ensure_future(self._guard(result, event))

    async def _guard(self, coro, event: str):
        try:
            await coro
        except Exception:
            logger.exception("Error handling event %s", event)
