import asyncio
from unittest import IsolatedAsyncioTestCase
from unittest.mock import MagicMock

from tapea.accounts.storage import CredentialStore, MemoryStore
from tapea.drivers.services import DriverSession
from tapea.exceptions import AuthError, LocalTimeoutError, NetworkError, ProtocolError
from tapea.realtime import events
from tapea.realtime.connection import ConnectionManager
from tapea.realtime.testing import FakeServer, settle, wait_until
from tapea.rides.api import ApiClient


def order_payload(order_id, status="pending"):
	return {"id": order_id, "status": status, "totalPrice": 2500, "clientName": "Hina"}


class DriverSessionTests(IsolatedAsyncioTestCase):
	async def asyncSetUp(self):
		self.server = FakeServer()
		self.connection = ConnectionManager(
			url="ws://coordination.test/ws/",
			transport_factory=self.server.transport_factory,
			reconnect_delay=0.01,
		)
		self.store = CredentialStore(MemoryStore())
		self.api = MagicMock(spec=ApiClient)
		self.session = DriverSession(
			self.api, self.connection, self.store, accept_timeout=0.1, join_ack_timeout=0.05
		)

	async def asyncTearDown(self):
		await self.connection.disconnect()

	async def logged_in(self):
		self.api.driver_login.return_value = ({"id": "d1", "firstName": "Teva"}, "ds1")
		await self.session.login("123456")
		await self.connection.connect_and_wait()
		self.session.join()
		await settle()

	async def test_login_persists_session(self):
		self.api.driver_login.return_value = ({"id": "d1"}, "ds1")

		driver = await self.session.login("123456")

		self.assertEqual(driver["id"], "d1")
		self.assertEqual(self.store.get_driver_session_id(), "ds1")
		self.api.driver_login.assert_awaited_once_with("123456")

	async def test_restore(self):
		self.assertFalse(await self.session.restore())

		self.store.set_driver_session_id("ds1")
		self.api.get_driver_session.return_value = {"id": "ds1", "isOnline": True}

		self.assertTrue(await self.session.restore())
		self.assertTrue(self.session.is_online)

	async def test_join_requires_session(self):
		with self.assertRaises(AuthError):
			self.session.join()

	async def test_join_is_replayed_after_reconnect(self):
		await self.logged_in()
		self.assertEqual(self.server.sent(events.DRIVER_JOIN), [{"sessionId": "ds1"}])
		self.server.clear()

		self.server.drop()
		await wait_until(lambda: self.connection.connection_count == 2 and self.connection.is_connected)

		self.assertEqual(self.server.sent(events.DRIVER_JOIN), [{"sessionId": "ds1"}])

	async def test_join_and_wait_with_ack(self):
		self.store.set_driver_session_id("ds1")
		self.session.session_id = "ds1"
		self.server.auto_ack[events.DRIVER_JOIN] = {"success": True}

		self.assertTrue(await self.session.join_and_wait())
		await settle()

		# Registered for replay without sending a second join
		self.assertEqual(len(self.server.sent(events.DRIVER_JOIN)), 1)
		self.assertEqual(self.connection.registered_joins, ["driver:ds1"])

	async def test_join_and_wait_refused(self):
		self.session.session_id = "ds1"
		self.server.auto_ack[events.DRIVER_JOIN] = {"success": False}

		self.assertFalse(await self.session.join_and_wait())

	async def test_join_and_wait_without_ack_assumes_success(self):
		self.session.session_id = "ds1"

		self.assertTrue(await self.session.join_and_wait())

	async def test_order_board(self):
		await self.logged_in()
		boards = []
		self.session.add_listener(lambda s: boards.append([o.id for o in s.pending_orders]))

		self.server.push(events.ORDERS_PENDING, [order_payload("1"), order_payload("2")])
		self.server.push(events.ORDER_NEW, order_payload("3"))
		self.server.push(events.ORDER_NEW, order_payload("3"))
		self.server.push(events.ORDER_TAKEN, {"orderId": "1"})
		self.server.push(events.ORDER_EXPIRED, {"orderId": "9"})
		await settle()

		self.assertEqual(boards, [["1", "2"], ["3", "1", "2"], ["3", "2"]])

	async def test_set_online(self):
		await self.logged_in()

		self.assertTrue(await self.session.set_online(True))
		await settle()

		self.assertTrue(self.session.is_online)
		self.assertEqual(self.server.sent(events.DRIVER_STATUS), [{"sessionId": "ds1", "isOnline": True}])
		self.api.set_driver_online.assert_awaited_once_with("ds1", True)

	async def test_set_online_rolls_back_on_failure(self):
		await self.logged_in()
		self.api.set_driver_online.side_effect = NetworkError("offline")

		self.assertFalse(await self.session.set_online(True))
		self.assertFalse(self.session.is_online)

	async def test_accept_order(self):
		await self.logged_in()
		self.server.push(events.ORDERS_PENDING, [order_payload("1")])
		await settle()

		task = asyncio.ensure_future(self.session.accept_order("1"))
		await settle()
		self.assertEqual(self.server.sent(events.ORDER_ACCEPT), [{"orderId": "1", "sessionId": "ds1"}])

		self.server.push(events.ORDER_ACCEPT_SUCCESS, order_payload("1", status="accepted"))
		ride = await task

		self.assertEqual(ride.status, "accepted")
		self.assertEqual(self.session.pending_orders, [])
		self.assertEqual(self.store.get_cached_ride("1").id, "1")

	async def test_accept_ignores_success_for_another_order(self):
		await self.logged_in()

		task = asyncio.ensure_future(self.session.accept_order("1"))
		await settle()
		self.server.push(events.ORDER_ACCEPT_SUCCESS, order_payload("2", status="accepted"))
		await settle()
		self.assertFalse(task.done())

		self.server.push(events.ORDER_ACCEPT_SUCCESS, order_payload("1", status="accepted"))
		ride = await task

		self.assertEqual(ride.id, "1")

	async def test_accept_order_refused(self):
		await self.logged_in()

		task = asyncio.ensure_future(self.session.accept_order("1"))
		await settle()
		self.server.push(events.ORDER_ACCEPT_ERROR, {"message": "Commande déjà prise"})

		with self.assertRaises(ProtocolError) as ctx:
			await task
		self.assertEqual(ctx.exception.message, "Commande déjà prise")

	async def test_only_one_accept_at_a_time(self):
		await self.logged_in()

		task = asyncio.ensure_future(self.session.accept_order("1"))
		await settle()
		with self.assertRaises(ProtocolError):
			await self.session.accept_order("2")

		with self.assertRaises(LocalTimeoutError):
			await task

	async def test_accept_while_disconnected(self):
		self.session.session_id = "ds1"

		with self.assertRaises(NetworkError):
			await self.session.accept_order("1")

	async def test_decline_order(self):
		await self.logged_in()
		self.server.push(events.ORDERS_PENDING, [order_payload("1"), order_payload("2")])
		await settle()

		self.assertTrue(self.session.decline_order("1"))
		await settle()

		self.assertEqual([o.id for o in self.session.pending_orders], ["2"])
		self.assertEqual(self.server.sent(events.ORDER_DECLINE), [{"orderId": "1", "sessionId": "ds1"}])

	async def test_logout(self):
		await self.logged_in()

		self.session.logout()
		self.server.push(events.ORDER_NEW, order_payload("5"))
		await settle()

		self.assertIsNone(self.store.get_driver_session_id())
		self.assertEqual(self.connection.registered_joins, [])
		self.assertEqual(self.session.pending_orders, [])
