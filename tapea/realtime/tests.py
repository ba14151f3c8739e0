import asyncio
from unittest import IsolatedAsyncioTestCase, TestCase
from unittest.mock import MagicMock

from tapea.exceptions import ConnectionTimeout, NetworkError
from tapea.realtime import events
from tapea.realtime.connection import ConnectionManager, WebSocketTransport
from tapea.realtime.location import LocationChannel, LocationThrottle
from tapea.realtime.testing import FakeServer, settle, wait_until


def build_manager(server):
	return ConnectionManager(
		url="ws://coordination.test/ws/",
		transport_factory=server.transport_factory,
		connect_timeout=1.0,
		reconnect_delay=0.01,
		reconnect_delay_max=0.05,
	)


class FakeClock:
	def __init__(self, now=1_700_000_000.0):
		self.now = now

	def __call__(self):
		return self.now


class StubSocket:
	def __init__(self, frames):
		self.frames = list(frames)

	def recv(self):
		return self.frames.pop(0)


class ConnectionManagerTests(IsolatedAsyncioTestCase):
	async def asyncSetUp(self):
		self.server = FakeServer()
		self.manager = build_manager(self.server)

	async def asyncTearDown(self):
		await self.manager.disconnect()

	async def reconnect(self):
		count = self.manager.connection_count
		self.server.drop()
		await wait_until(lambda: self.manager.connection_count > count and self.manager.is_connected)

	async def test_connect_and_wait(self):
		await self.manager.connect_and_wait()

		self.assertTrue(self.manager.is_connected)
		self.assertEqual(len(self.server.transports), 1)

	async def test_connect_is_idempotent(self):
		self.manager.connect()
		self.manager.connect()
		await self.manager.connect_and_wait()
		await self.manager.connect_and_wait()

		self.assertEqual(len(self.server.transports), 1)

	async def test_handshake_timeout(self):
		self.server.hang = True

		with self.assertRaises(ConnectionTimeout) as ctx:
			await self.manager.connect_and_wait(timeout=0.05)
		self.assertTrue(ctx.exception.retryable)

	async def test_first_failure_raises_then_loop_reconnects(self):
		self.server.refuse_connections = 1

		with self.assertRaises(NetworkError):
			await self.manager.connect_and_wait()

		await wait_until(lambda: self.manager.is_connected)

	async def test_emit_while_disconnected_is_dropped(self):
		self.assertFalse(self.manager.emit("ride:join", {"orderId": "42"}))

		await self.manager.connect_and_wait()
		await settle()
		self.assertEqual(self.server.received, [])

	async def test_emit_preserves_order(self):
		await self.manager.connect_and_wait()

		for name in ("a", "b", "c"):
			self.assertTrue(self.manager.emit(name, {"n": name}))
		await settle()

		self.assertEqual(self.server.events(), ["a", "b", "c"])
		self.assertEqual(self.server.sent("b"), [{"n": "b"}])

	async def test_server_close_triggers_reconnect(self):
		await self.manager.connect_and_wait()
		disconnected = MagicMock()
		self.manager.on(events.DISCONNECT, disconnected)

		await self.reconnect()

		disconnected.assert_called_once()
		self.assertEqual(len(self.server.transports), 2)

	async def test_joins_replayed_once_each_in_order(self):
		await self.manager.connect_and_wait()
		self.manager.register_join("client:42", lambda: self.manager.emit("client:join", {"orderId": "42"}), scope="42")
		self.manager.register_join("ride:42", lambda: self.manager.emit("ride:join", {"orderId": "42"}), scope="42")
		self.manager.register_join("driver:d1", lambda: self.manager.emit("driver:join", {"sessionId": "d1"}), scope="d1")
		await settle()
		self.assertEqual(self.server.events(), ["client:join", "ride:join", "driver:join"])

		for _ in range(2):
			self.server.clear()
			await self.reconnect()
			self.assertEqual(self.server.events(), ["client:join", "ride:join", "driver:join"])

	async def test_join_registered_offline_runs_on_connect(self):
		self.manager.register_join("driver:d1", lambda: self.manager.emit("driver:join", {"sessionId": "d1"}))

		await wait_until(lambda: self.manager.is_connected)

		self.assertEqual(self.server.events(), ["driver:join"])

	async def test_register_join_without_running_now(self):
		await self.manager.connect_and_wait()
		self.manager.register_join("driver:d1", lambda: self.manager.emit("driver:join", {}), run_now=False)
		await settle()
		self.assertEqual(self.server.events(), [])

		await self.reconnect()
		self.assertEqual(self.server.events(), ["driver:join"])

	async def test_release_scope_stops_replay(self):
		await self.manager.connect_and_wait()
		self.manager.register_join("ride:42", lambda: self.manager.emit("ride:join", {"orderId": "42"}), scope="42")
		self.manager.register_join("ride:43", lambda: self.manager.emit("ride:join", {"orderId": "43"}), scope="43")

		self.assertEqual(self.manager.release_scope("42"), 1)
		await settle()
		self.server.clear()
		await self.reconnect()

		self.assertEqual(self.server.sent("ride:join"), [{"orderId": "43"}])
		self.assertEqual(self.manager.registered_joins, ["ride:43"])

	async def test_failing_join_does_not_block_the_others(self):
		await self.manager.connect_and_wait()

		def broken():
			raise RuntimeError("boom")

		with self.assertLogs("tapea.realtime.connection", level="ERROR"):
			self.manager.register_join("broken", broken)
		self.manager.register_join("ride:42", lambda: self.manager.emit("ride:join", {"orderId": "42"}))
		await settle()
		self.server.clear()

		with self.assertLogs("tapea.realtime.connection", level="ERROR"):
			await self.reconnect()
		self.assertEqual(self.server.events(), ["ride:join"])

	async def test_emit_with_ack(self):
		self.server.auto_ack[events.DRIVER_JOIN] = {"success": True}
		await self.manager.connect_and_wait()

		ack = await self.manager.emit_with_ack(events.DRIVER_JOIN, {"sessionId": "d1"}, timeout=1)

		self.assertEqual(ack, {"success": True})

	async def test_emit_with_ack_timeout_returns_none(self):
		await self.manager.connect_and_wait()

		self.assertIsNone(await self.manager.emit_with_ack(events.DRIVER_JOIN, {"sessionId": "d1"}, timeout=0.05))

	async def test_listeners_and_unsubscribe(self):
		await self.manager.connect_and_wait()
		every = MagicMock()
		first = MagicMock()
		unsubscribe = self.manager.on("order:new", every)
		self.manager.once("order:new", first)

		self.server.push("order:new", {"id": "1"})
		await settle()
		unsubscribe()
		self.server.push("order:new", {"id": "2"})
		await settle()

		every.assert_called_once_with({"id": "1"})
		first.assert_called_once_with({"id": "1"})
		self.assertEqual(self.manager.listener_count("order:new"), 0)

	async def test_listener_errors_are_isolated(self):
		await self.manager.connect_and_wait()
		healthy = MagicMock()
		received = asyncio.Event()

		async def coroutine_listener(data):
			received.set()

		self.manager.on("order:new", MagicMock(side_effect=RuntimeError("boom")))
		self.manager.on("order:new", healthy)
		self.manager.on("order:new", coroutine_listener)

		with self.assertLogs("tapea.realtime.connection", level="ERROR"):
			self.server.push("order:new", {"id": "1"})
			await settle()

		healthy.assert_called_once_with({"id": "1"})
		self.assertTrue(received.is_set())

	async def test_malformed_frames_are_ignored(self):
		await self.manager.connect_and_wait()
		listener = MagicMock()
		self.manager.on("order:new", listener)

		with self.assertLogs("tapea.realtime.connection", level="WARNING"):
			self.server.push_raw("{not json")
			await settle()
		self.server.push("order:new", {"id": "1"})
		await settle()

		listener.assert_called_once_with({"id": "1"})
		self.assertTrue(self.manager.is_connected)

	async def test_disconnect_stops_reconnecting(self):
		await self.manager.connect_and_wait()

		await self.manager.disconnect()
		await asyncio.sleep(0.05)

		self.assertFalse(self.manager.is_connected)
		self.assertEqual(len(self.server.transports), 1)

	async def test_read_error_reconnects(self):
		await self.manager.connect_and_wait()

		with self.assertLogs("tapea.realtime.connection", level="ERROR"):
			self.server.push_error(RuntimeError("decoder crashed"))
			await wait_until(lambda: self.manager.connection_count == 2 and self.manager.is_connected)

		listener = MagicMock()
		self.manager.on("order:new", listener)
		self.server.push("order:new", {"id": "1"})
		await settle()
		listener.assert_called_once_with({"id": "1"})

	async def test_undecodable_binary_frame_is_dropped(self):
		transport = WebSocketTransport("ws://coordination.test/ws/")
		transport._ws = StubSocket([b"\xff\xfe\x00garbage", b'{"type": "order:new"}'])

		with self.assertLogs("tapea.realtime.connection", level="WARNING"):
			message = await transport.recv()

		self.assertEqual(message, '{"type": "order:new"}')

	async def test_disconnect_fails_pending_waiters(self):
		self.server.hang = True
		task = asyncio.ensure_future(self.manager.connect_and_wait(timeout=5))
		await settle()

		await self.manager.disconnect()

		with self.assertRaises(NetworkError):
			await task


class LocationThrottleTests(TestCase):
	def test_time_or_distance(self):
		clock = FakeClock(0)
		throttle = LocationThrottle(2.5, 10, clock=clock)

		self.assertTrue(throttle.should_publish(-17.5350, -149.5696))
		clock.now = 1.0
		self.assertFalse(throttle.should_publish(-17.5350, -149.56963))
		self.assertTrue(throttle.should_publish(-17.5350, -149.5693))
		clock.now = 3.6
		self.assertTrue(throttle.should_publish(-17.5350, -149.5693))


class LocationChannelTests(IsolatedAsyncioTestCase):
	async def asyncSetUp(self):
		self.server = FakeServer()
		self.manager = build_manager(self.server)
		await self.manager.connect_and_wait()
		self.clock = FakeClock()
		self.monotonic = FakeClock(0)
		self.channel = LocationChannel(self.manager, clock=self.clock, monotonic=self.monotonic)

	async def asyncTearDown(self):
		await self.manager.disconnect()

	async def test_driver_samples_are_throttled(self):
		self.assertTrue(self.channel.publish_driver("42", "d1", -17.5350, -149.5696, speed=8.2))
		self.monotonic.now = 1.0
		self.assertFalse(self.channel.publish_driver("42", "d1", -17.5350, -149.56963))
		self.monotonic.now = 2.6
		self.assertTrue(self.channel.publish_driver("42", "d1", -17.5350, -149.56963))
		await settle()

		first, second = self.server.sent(events.LOCATION_DRIVER_UPDATE)
		self.assertEqual(first["orderId"], "42")
		self.assertEqual(first["sessionId"], "d1")
		self.assertEqual(first["speed"], 8.2)
		self.assertEqual(first["timestamp"], int(self.clock.now * 1000))
		self.assertNotIn("heading", first)
		self.assertEqual((first["seq"], second["seq"]), (1, 2))

	async def test_missing_heading_is_derived(self):
		self.channel.publish_driver("42", "d1", -17.5350, -149.5696)
		self.monotonic.now = 5
		self.channel.publish_driver("42", "d1", -17.5350, -149.5600)
		self.monotonic.now = 10
		self.channel.publish_driver("42", "d1", -17.5350, -149.5600, heading=12.5)
		await settle()

		samples = self.server.sent(events.LOCATION_DRIVER_UPDATE)
		self.assertAlmostEqual(samples[1]["heading"], 90.0, delta=0.1)
		self.assertEqual(samples[2]["heading"], 12.5)

	async def test_client_samples(self):
		self.assertTrue(self.channel.publish_client("42", "tok-42", -17.53, -149.56))
		self.monotonic.now = 4.0
		self.assertFalse(self.channel.publish_client("42", "tok-42", -17.53, -149.56))
		await settle()

		payload, = self.server.sent(events.LOCATION_CLIENT_UPDATE)
		self.assertEqual(payload["clientToken"], "tok-42")
		self.assertEqual(payload["seq"], 1)

	async def test_publish_while_disconnected_is_dropped(self):
		await self.manager.disconnect()

		self.assertFalse(self.channel.publish_client("42", "tok-42", -17.53, -149.56))

	async def test_inbound_samples_filtered_by_ride_and_order(self):
		received = []
		self.channel.on_driver_location("42", received.append)

		self.server.push(events.LOCATION_DRIVER, {"orderId": "42", "lat": -17.53, "lng": -149.56, "timestamp": 1000, "seq": 5})
		self.server.push(events.LOCATION_DRIVER, {"orderId": "42", "lat": -17.54, "lng": -149.57, "timestamp": 900, "seq": 4})
		self.server.push(events.LOCATION_DRIVER, {"orderId": "43", "lat": -17.55, "lng": -149.58, "timestamp": 1100, "seq": 6})
		# Sender restarted: seq regressed, timestamp newer
		self.server.push(events.LOCATION_DRIVER, {"orderId": "42", "lat": -17.56, "lng": -149.59, "timestamp": 2000, "seq": 1})
		await settle()

		self.assertEqual([s.seq for s in received], [5, 1])
		self.assertEqual(self.channel.latest("42").lat, -17.56)

	async def test_client_location_subscription(self):
		received = []
		unsubscribe = self.channel.on_client_location("42", received.append)

		self.server.push(events.LOCATION_CLIENT, {"orderId": "42", "lat": -17.53, "lng": -149.56, "timestamp": 1000})
		await settle()
		unsubscribe()
		self.server.push(events.LOCATION_CLIENT, {"orderId": "42", "lat": -17.53, "lng": -149.56, "timestamp": 2000})
		await settle()

		self.assertEqual(len(received), 1)

	async def test_release_silences_callbacks(self):
		callback = MagicMock()
		self.channel.on_driver_location("42", callback)

		self.channel.release("42")
		self.server.push(events.LOCATION_DRIVER, {"orderId": "42", "lat": -17.53, "lng": -149.56, "timestamp": 1000})
		await settle()

		callback.assert_not_called()
		self.assertIsNone(self.channel.latest("42"))

	async def test_samples_without_seq_or_timestamp_are_kept(self):
		received = []
		self.channel.on_driver_location("42", received.append)

		self.server.push(events.LOCATION_DRIVER, {"orderId": "42", "lat": -17.53, "lng": -149.56})
		self.server.push(events.LOCATION_DRIVER, {"orderId": "42", "lat": -17.54, "lng": -149.57})
		await settle()

		self.assertEqual(len(received), 2)
		self.assertEqual(self.channel.latest("42").lat, -17.54)

	async def test_samples_with_equal_timestamps_are_kept(self):
		received = []
		self.channel.on_client_location("42", received.append)

		self.server.push(events.LOCATION_CLIENT, {"orderId": "42", "lat": -17.53, "lng": -149.56, "timestamp": 1000})
		self.server.push(events.LOCATION_CLIENT, {"orderId": "42", "lat": -17.54, "lng": -149.57, "timestamp": 1000})
		self.server.push(events.LOCATION_CLIENT, {"orderId": "42", "lat": -17.55, "lng": -149.58, "timestamp": 900})
		await settle()

		self.assertEqual([s.lat for s in received], [-17.53, -17.54])
