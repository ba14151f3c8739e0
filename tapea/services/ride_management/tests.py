import asyncio
from unittest import IsolatedAsyncioTestCase
from unittest.mock import MagicMock

from tapea.accounts.storage import CredentialStore, MemoryStore
from tapea.exceptions import (
	InvalidTransitionError,
	NetworkError,
	RideNotFoundError,
	ServerError,
	ValidationError,
)
from tapea.platform import PlatformCapabilities
from tapea.realtime import events
from tapea.realtime.connection import ConnectionManager
from tapea.realtime.location import LocationChannel
from tapea.realtime.testing import FakeServer, settle, wait_until
from tapea.rides.api import ApiClient
from tapea.rides.models import (
	ARRIVED,
	CANCELLED,
	COMPLETED,
	ENROUTE,
	INPROGRESS,
	ActiveOrder,
	AddressField,
	DriverSummary,
	Ride,
	RideRequest,
)
from tapea.rides.pricing import RIDE_OPTIONS
from tapea.services.payments import PAYMENT_PENDING
from tapea.services.ride_management import (
	RideCleanup,
	RideLifecycle,
	RideSearch,
	SEARCH_CANCELLED,
	SEARCH_ERROR,
	SEARCH_EXPIRED,
	SEARCH_FOUND,
	SEARCH_SEARCHING,
	next_status,
	resume_client_ride,
	resume_driver_ride,
)


def make_ride(ride_id="42", status="pending", **fields):
	return Ride(id=ride_id, status=status, total_price=4000, **fields)


def make_request(**overrides):
	fields = dict(
		addresses=(
			AddressField(id="1", value="Papeete", type="pickup"),
			AddressField(id="2", value="Punaauia", type="destination"),
		),
		ride_option=RIDE_OPTIONS["immediate"],
		passengers=1,
		total_price=4000,
		driver_earnings=3200,
	)
	fields.update(overrides)
	return RideRequest(**fields)


class RideFixtureMixin:
	async def asyncSetUp(self):
		self.server = FakeServer()
		self.connection = ConnectionManager(
			url="ws://coordination.test/ws/",
			transport_factory=self.server.transport_factory,
			reconnect_delay=0.01,
			reconnect_delay_max=0.05,
		)
		self.store = CredentialStore(MemoryStore())
		self.location = LocationChannel(self.connection)
		self.cleanup = RideCleanup(self.store, self.connection, self.location)
		self.api = MagicMock(spec=ApiClient)
		self.api.get_order.return_value = make_ride()

	async def asyncTearDown(self):
		await self.connection.disconnect()

	async def reconnect(self):
		count = self.connection.connection_count
		self.server.drop()
		await wait_until(lambda: self.connection.connection_count > count and self.connection.is_connected)


class RideSearchTests(RideFixtureMixin, IsolatedAsyncioTestCase):
	async def asyncSetUp(self):
		await super().asyncSetUp()
		self.api.create_order.return_value = (make_ride(), "tok-42")
		self.statuses = []

	def new_search(self, **kwargs):
		search = RideSearch(self.api, self.connection, self.store, self.cleanup, **kwargs)
		search.add_listener(lambda s: self.statuses.append(s.status))
		return search

	async def test_assignment_completes_search(self):
		search = self.new_search()

		self.assertEqual(await search.start(make_request()), SEARCH_SEARCHING)
		await settle()
		self.assertEqual(self.store.get_current_ride_id(), "42")
		self.assertEqual(self.store.get_client_token(), "tok-42")
		self.assertEqual(self.server.sent(events.CLIENT_JOIN), [{"orderId": "42", "clientToken": "tok-42"}])

		self.server.push(events.ORDER_DRIVER_ASSIGNED, {"orderId": "43", "driverId": "d9", "driverName": "X", "sessionId": "s9"})
		self.server.push(events.ORDER_DRIVER_ASSIGNED, {"orderId": "42", "driverId": "d1", "driverName": "Teva", "sessionId": "ds1"})

		self.assertEqual(await search.wait(timeout=1), SEARCH_FOUND)
		self.assertEqual(search.assigned_driver.name, "Teva")
		self.assertEqual(search.assigned_driver.session_id, "ds1")
		# Credentials stay for the ride that follows
		self.assertEqual(self.store.get_client_token(), "tok-42")
		self.assertEqual(self.statuses, [SEARCH_SEARCHING, SEARCH_FOUND])

	async def test_local_timeout_expires_exactly_once(self):
		search = self.new_search(timeout=0.05)
		await search.start(make_request())

		self.assertEqual(await search.wait(timeout=1), SEARCH_EXPIRED)
		self.server.push(events.ORDER_EXPIRED, {"orderId": "42"})
		await asyncio.sleep(0.1)

		self.assertEqual(self.statuses, [SEARCH_SEARCHING, SEARCH_EXPIRED])
		self.assertIsNone(self.store.get_client_token())
		self.assertIsNone(self.store.get_current_ride_id())
		self.assertEqual(self.connection.registered_joins, [])

	async def test_server_expiry_wins_over_local_timer(self):
		search = self.new_search(timeout=0.1)
		await search.start(make_request())

		self.server.push(events.ORDER_EXPIRED, {"orderId": "42"})
		self.assertEqual(await search.wait(timeout=1), SEARCH_EXPIRED)
		await asyncio.sleep(0.15)

		self.assertEqual(self.statuses.count(SEARCH_EXPIRED), 1)

	async def test_elapsed_counter_ticks_while_searching(self):
		search = self.new_search(tick_interval=0.01)
		await search.start(make_request())

		await wait_until(lambda: search.elapsed >= 3)
		search.cancel()
		elapsed = search.elapsed
		await asyncio.sleep(0.05)

		self.assertEqual(search.elapsed, elapsed)

	async def test_creation_failure_ends_in_error(self):
		self.api.create_order.side_effect = ServerError("Le serveur rencontre un problème.", status_code=500)
		search = self.new_search()

		self.assertEqual(await search.start(make_request()), SEARCH_ERROR)
		self.assertEqual(search.error, "Le serveur rencontre un problème.")
		self.assertIsNone(self.store.get_client_token())

	async def test_invalid_request_is_not_submitted(self):
		search = self.new_search(capabilities=PlatformCapabilities(has_native_payments=False))
		request = make_request(payment_method="card", selected_card_id="card_1")

		self.assertEqual(await search.start(request), SEARCH_ERROR)
		self.api.create_order.assert_not_called()

	async def test_join_error_ends_in_error(self):
		search = self.new_search()
		await search.start(make_request())

		self.server.push(events.CLIENT_JOIN_ERROR, {"message": "Jeton invalide"})

		self.assertEqual(await search.wait(timeout=1), SEARCH_ERROR)
		self.assertEqual(search.error, "Jeton invalide")
		self.assertIsNone(self.store.get_current_ride_id())

	async def test_connection_failure_does_not_abort_search(self):
		self.server.refuse_connections = 1
		search = self.new_search()

		self.assertEqual(await search.start(make_request()), SEARCH_SEARCHING)
		await wait_until(lambda: self.server.sent(events.CLIENT_JOIN))

		self.assertEqual(self.server.sent(events.CLIENT_JOIN), [{"orderId": "42", "clientToken": "tok-42"}])

	async def test_join_is_replayed_after_reconnect(self):
		search = self.new_search()
		await search.start(make_request())
		await settle()
		self.server.clear()

		await self.reconnect()

		self.assertEqual(self.server.events(), [events.CLIENT_JOIN])

	async def test_cancel_while_searching(self):
		search = self.new_search()
		await search.start(make_request())

		self.assertTrue(search.cancel())
		self.assertFalse(search.cancel())
		await settle()

		self.assertEqual(search.status, SEARCH_CANCELLED)
		cancel, = self.server.sent(events.RIDE_CANCEL)
		self.assertEqual(cancel["orderId"], "42")
		self.assertEqual(cancel["role"], "client")
		self.assertEqual(cancel["clientToken"], "tok-42")
		self.assertIsNone(self.store.get_client_token())
		self.assertEqual(self.connection.registered_joins, [])

	async def test_cancel_racing_with_creation(self):
		gate = asyncio.Event()

		async def slow_create(_request):
			await gate.wait()
			return make_ride(), "tok-42"

		self.api.create_order.side_effect = slow_create
		search = self.new_search()
		task = asyncio.ensure_future(search.start(make_request()))
		await settle()

		self.assertTrue(search.cancel())
		gate.set()
		self.assertEqual(await task, SEARCH_CANCELLED)
		await settle()

		self.assertEqual(self.server.sent(events.RIDE_CANCEL)[0]["orderId"], "42")
		self.assertIsNone(self.store.get_current_ride_id())
		self.assertEqual(self.server.sent(events.CLIENT_JOIN), [])

	async def test_assignment_missed_while_disconnected(self):
		search = self.new_search()
		await search.start(make_request())
		self.api.get_order.return_value = make_ride(
			status="accepted", assigned_driver_id="d1", driver=DriverSummary(id="d1", first_name="Teva")
		)

		await self.reconnect()

		self.assertEqual(await search.wait(timeout=1), SEARCH_FOUND)
		self.assertEqual(search.assigned_driver.driver_id, "d1")
		self.assertEqual(search.assigned_driver.name, "Teva")
		self.assertEqual(search.ride.status, "accepted")
		self.assertEqual(self.store.get_client_token(), "tok-42")

	async def test_expiry_missed_while_disconnected(self):
		search = self.new_search()
		await search.start(make_request())
		self.api.get_order.return_value = make_ride(status="expired")

		await self.reconnect()

		self.assertEqual(await search.wait(timeout=1), SEARCH_EXPIRED)
		self.assertIsNone(self.store.get_current_ride_id())

	async def test_reconnect_keeps_searching_when_nothing_changed(self):
		search = self.new_search()
		await search.start(make_request())

		await self.reconnect()

		self.api.get_order.assert_awaited_once_with("42")
		self.assertEqual(search.status, SEARCH_SEARCHING)

	async def test_search_can_be_repeated_for_a_released_ride(self):
		first = self.new_search()
		await first.start(make_request())
		first.cancel()

		second = self.new_search()
		await second.start(make_request())
		second.cancel()

		self.assertIsNone(self.store.get_client_token())
		self.assertEqual(self.connection.registered_joins, [])


class RideLifecycleTests(RideFixtureMixin, IsolatedAsyncioTestCase):
	async def asyncSetUp(self):
		await super().asyncSetUp()
		await self.connection.connect_and_wait()
		self.store.save_ride_credentials("42", "tok-42")

	def lifecycle(self, role="client", credential="tok-42", **kwargs):
		lifecycle = RideLifecycle(
			"42", role, credential,
			connection=self.connection, api=self.api, store=self.store, cleanup=self.cleanup,
			**kwargs,
		)
		lifecycle.join()
		return lifecycle

	def test_next_status(self):
		self.assertEqual(next_status(ENROUTE), ARRIVED)
		self.assertEqual(next_status(INPROGRESS), COMPLETED)
		self.assertIsNone(next_status(COMPLETED))
		self.assertIsNone(next_status(CANCELLED))

	async def test_join_sends_role_credentials(self):
		self.lifecycle()
		self.lifecycle(role="driver", credential="ds1")
		await settle()

		self.assertEqual(self.server.sent(events.RIDE_JOIN), [
			{"orderId": "42", "role": "client", "clientToken": "tok-42"},
			{"orderId": "42", "role": "driver", "sessionId": "ds1"},
		])

	async def test_join_replayed_after_reconnect(self):
		self.lifecycle()
		await settle()
		self.server.clear()

		await self.reconnect()

		self.assertEqual(self.server.sent(events.RIDE_JOIN), [{"orderId": "42", "role": "client", "clientToken": "tok-42"}])

	async def test_driver_advances_one_step_at_a_time(self):
		ride = self.lifecycle(role="driver", credential="ds1")

		ride.update_status(ARRIVED)
		with self.assertRaises(InvalidTransitionError):
			ride.update_status(COMPLETED)
		await settle()

		self.assertEqual(ride.status, ARRIVED)
		self.assertEqual(self.server.sent(events.RIDE_STATUS_UPDATE), [{"orderId": "42", "sessionId": "ds1", "status": ARRIVED}])

	async def test_client_cannot_update_status(self):
		ride = self.lifecycle()
		with self.assertRaises(InvalidTransitionError):
			ride.update_status(ARRIVED)

	async def test_update_status_while_disconnected(self):
		ride = self.lifecycle(role="driver", credential="ds1")
		await self.connection.disconnect()

		with self.assertRaises(NetworkError):
			ride.update_status(ARRIVED)
		self.assertEqual(ride.status, ENROUTE)

	async def test_observed_status_never_moves_backwards(self):
		ride = self.lifecycle()
		observed = []
		ride.add_listener(lambda r: observed.append(r.status))

		for status in (INPROGRESS, ARRIVED, INPROGRESS, "driver_arrived"):
			self.server.push(events.RIDE_STATUS_CHANGED, {"orderId": "42", "status": status})
		self.server.push(events.RIDE_STATUS_CHANGED, {"orderId": "43", "status": COMPLETED})
		await settle()

		self.assertEqual(observed, [INPROGRESS])
		self.assertEqual(ride.status, INPROGRESS)

	async def test_order_vocabulary_is_accepted(self):
		ride = self.lifecycle()

		self.server.push(events.RIDE_STATUS_CHANGED, {"orderId": "42", "status": "driver_arrived"})
		await settle()

		self.assertEqual(ride.status, ARRIVED)

	async def test_completion_starts_payment(self):
		ride = self.lifecycle(ride=make_ride(status="in_progress"), status=INPROGRESS)

		self.server.push(events.RIDE_STATUS_CHANGED, {"orderId": "42", "status": COMPLETED})
		await settle()

		self.assertEqual(ride.status, COMPLETED)
		self.assertEqual(ride.payment.state, PAYMENT_PENDING)

	async def test_local_cancel_releases_the_ride(self):
		ride = self.lifecycle()
		location_callback = MagicMock()
		self.location.on_driver_location("42", location_callback)

		self.assertTrue(ride.cancel("Plus besoin"))
		self.assertFalse(ride.cancel())
		await settle()

		cancel, = self.server.sent(events.RIDE_CANCEL)
		self.assertEqual(cancel, {"orderId": "42", "role": "client", "reason": "Plus besoin", "clientToken": "tok-42"})
		self.assertEqual(ride.status, CANCELLED)
		self.assertIsNone(self.store.get_client_token())
		self.assertIsNone(self.store.get_current_ride_id())
		self.assertEqual(self.connection.registered_joins, [])

		self.server.push(events.LOCATION_DRIVER, {"orderId": "42", "lat": -17.5, "lng": -149.5, "timestamp": 1})
		await settle()
		location_callback.assert_not_called()

	async def test_remote_cancel_is_idempotent(self):
		ride = self.lifecycle()
		observed = []
		ride.add_listener(lambda r: observed.append(r.status))

		self.server.push(events.RIDE_CANCELLED, {"orderId": "42", "cancelledBy": "driver", "reason": "Panne"})
		self.server.push(events.RIDE_CANCELLED, {"orderId": "42", "cancelledBy": "driver", "reason": "Panne"})
		self.server.push(events.RIDE_STATUS_CHANGED, {"orderId": "42", "status": ARRIVED})
		await settle()

		self.assertEqual(observed, [CANCELLED])
		self.assertEqual(ride.cancelled_by, "driver")
		self.assertEqual(ride.cancel_reason, "Panne")
		self.assertIsNone(self.store.get_current_ride_id())

	async def test_cleanup_keeps_newer_ride_credentials(self):
		ride = self.lifecycle()
		self.store.save_ride_credentials("99", "tok-99")

		ride.cancel()

		self.assertEqual(self.store.get_current_ride_id(), "99")

	async def test_driver_assignment_reloads_ride(self):
		assigned = make_ride(status="accepted", assigned_driver_id="d1")
		self.api.get_order.return_value = assigned
		ride = self.lifecycle()

		self.server.push(events.ORDER_DRIVER_ASSIGNED, {"orderId": "42", "driverId": "d1"})
		await wait_until(lambda: ride.ride is assigned)

		self.api.get_order.assert_awaited_once_with("42")
		self.assertEqual(self.store.get_cached_ride("42").assigned_driver_id, "d1")

	async def test_refresh_falls_back_to_cache(self):
		self.store.cache_ride(make_ride(status="driver_arrived"))
		self.api.get_order.side_effect = NetworkError("offline")
		ride = self.lifecycle()

		refreshed = await ride.refresh()

		self.assertEqual(refreshed.status, "driver_arrived")
		self.assertEqual(ride.status, ARRIVED)

	async def test_refresh_raises_without_cache(self):
		self.api.get_order.side_effect = NetworkError("offline")
		ride = self.lifecycle()

		with self.assertRaises(NetworkError):
			await ride.refresh()

	async def test_refresh_does_not_hide_rejections(self):
		self.store.cache_ride(make_ride(status="driver_arrived"))
		self.api.get_order.side_effect = ValidationError("Commande introuvable", status_code=404)
		ride = self.lifecycle()

		with self.assertRaises(ValidationError):
			await ride.refresh()

	async def test_cancellation_missed_while_disconnected(self):
		ride = self.lifecycle()
		self.api.get_order.return_value = make_ride(status="cancelled")

		await self.reconnect()
		await wait_until(lambda: ride.status == CANCELLED)

		self.assertIsNone(self.store.get_current_ride_id())
		self.assertEqual(self.connection.registered_joins, [])

	async def test_progress_missed_while_disconnected(self):
		ride = self.lifecycle()
		self.api.get_order.return_value = make_ride(status="in_progress")

		await self.reconnect()
		await wait_until(lambda: ride.status == INPROGRESS)

		self.assertEqual(self.store.get_cached_ride("42").status, "in_progress")

	async def test_payment_confirmed_while_disconnected(self):
		ride = self.lifecycle(ride=make_ride(status="payment_pending"), status=COMPLETED)
		self.assertEqual(ride.payment.state, PAYMENT_PENDING)
		self.api.get_order.return_value = make_ride(status="payment_confirmed")

		await self.reconnect()
		await wait_until(lambda: ride.payment.is_confirmed)

		self.assertIsNone(self.store.get_client_token())
		self.assertTrue(self.cleanup.is_released("42"))

	async def test_failed_reconciliation_keeps_status(self):
		ride = self.lifecycle()
		self.api.get_order.side_effect = NetworkError("offline")

		with self.assertLogs("tapea.services.ride_management.ride_lifecycle", level="WARNING"):
			await self.reconnect()
			await wait_until(lambda: self.api.get_order.await_count == 1)

		self.assertEqual(ride.status, ENROUTE)
		self.assertTrue(self.connection.is_connected)

	async def test_rejoined_ride_can_be_released_again(self):
		first = self.lifecycle()
		first.release()

		self.store.save_ride_credentials("42", "tok-42")
		self.lifecycle()
		self.assertTrue(self.cleanup.release("42"))

		self.assertIsNone(self.store.get_client_token())
		self.assertEqual(self.connection.registered_joins, [])


class ResumeRideTests(RideFixtureMixin, IsolatedAsyncioTestCase):
	async def asyncSetUp(self):
		await super().asyncSetUp()
		await self.connection.connect_and_wait()

	async def test_resume_client_ride_from_store(self):
		self.store.save_ride_credentials("42", "tok-42")
		self.api.get_order.return_value = make_ride(status="driver_arrived")

		ride = await resume_client_ride(self.api, self.connection, self.store, self.cleanup)
		await settle()

		self.assertEqual(ride.status, ARRIVED)
		self.assertEqual(ride.credential, "tok-42")
		self.assertEqual(self.server.events(), [events.CLIENT_JOIN, events.RIDE_JOIN])
		self.api.get_active_client_order.assert_not_called()

	async def test_payment_after_release_and_resume(self):
		self.api.get_active_client_order.return_value = ActiveOrder(
			has_active_order=True, ride=make_ride(status="payment_pending"), client_token="tok-42"
		)
		self.api.get_order.return_value = make_ride(status="payment_pending")

		first = await resume_client_ride(self.api, self.connection, self.store, self.cleanup)
		first.release()
		second = await resume_client_ride(self.api, self.connection, self.store, self.cleanup)
		self.assertEqual(self.store.get_current_ride_id(), "42")

		self.server.push(events.PAYMENT_STATUS, {"orderId": "42", "status": "confirmed"})
		await settle()

		self.assertTrue(second.payment.is_confirmed)
		self.assertIsNone(self.store.get_client_token())
		self.assertIsNone(self.store.get_current_ride_id())
		self.assertEqual(self.connection.registered_joins, [])

	async def test_resume_client_ride_from_server(self):
		self.api.get_active_client_order.return_value = ActiveOrder(
			has_active_order=True, ride=make_ride(status="in_progress"), client_token="tok-42"
		)
		self.api.get_order.return_value = make_ride(status="in_progress")

		ride = await resume_client_ride(self.api, self.connection, self.store, self.cleanup)

		self.assertEqual(ride.status, INPROGRESS)
		self.assertEqual(self.store.get_client_token(), "tok-42")
		self.assertEqual(self.store.get_current_ride_id(), "42")

	async def test_resume_client_ride_uses_cache_when_offline(self):
		self.store.save_ride_credentials("42", "tok-42")
		self.store.cache_ride(make_ride(status="accepted"))
		self.api.get_order.side_effect = NetworkError("offline")

		ride = await resume_client_ride(self.api, self.connection, self.store, self.cleanup)

		self.assertEqual(ride.status, ENROUTE)

	async def test_resume_client_ride_without_active_ride(self):
		self.api.get_active_client_order.return_value = ActiveOrder(has_active_order=False)

		with self.assertRaises(RideNotFoundError):
			await resume_client_ride(self.api, self.connection, self.store, self.cleanup)

	async def test_resume_driver_ride(self):
		self.store.set_driver_session_id("ds1")
		self.api.get_active_driver_order.return_value = ActiveOrder(
			has_active_order=True, ride=make_ride(status="driver_enroute")
		)

		ride = await resume_driver_ride(self.api, self.connection, self.store, self.cleanup)
		await settle()

		self.assertEqual(ride.role, "driver")
		self.assertEqual(ride.status, ENROUTE)
		self.api.get_active_driver_order.assert_awaited_once_with("ds1")
		self.assertEqual(self.server.sent(events.RIDE_JOIN), [{"orderId": "42", "role": "driver", "sessionId": "ds1"}])

	async def test_resume_driver_without_active_ride(self):
		self.store.set_driver_session_id("ds1")
		self.api.get_active_driver_order.return_value = ActiveOrder(has_active_order=False)

		self.assertIsNone(await resume_driver_ride(self.api, self.connection, self.store, self.cleanup))
