from unittest import IsolatedAsyncioTestCase
from unittest.mock import MagicMock

from tapea.accounts.storage import CredentialStore, MemoryStore
from tapea.app import RideApp
from tapea.platform import PlatformCapabilities
from tapea.realtime import events
from tapea.realtime.connection import ConnectionManager
from tapea.realtime.testing import FakeServer, settle
from tapea.rides.api import ApiClient
from tapea.rides.models import ARRIVED, COMPLETED, INPROGRESS, AddressField, Ride, RideRequest
from tapea.rides.pricing import RIDE_OPTIONS
from tapea.services.payments import PAYMENT_CONFIRMED, PAYMENT_PENDING
from tapea.services.ride_management import SEARCH_FOUND, SEARCH_SEARCHING


def build_app(server, **capabilities):
	return RideApp(
		store=CredentialStore(MemoryStore()),
		api=MagicMock(spec=ApiClient),
		connection=ConnectionManager(
			url="ws://coordination.test/ws/",
			transport_factory=server.transport_factory,
			reconnect_delay=0.01,
		),
		capabilities=PlatformCapabilities(**capabilities),
	)


class RiderFlowTests(IsolatedAsyncioTestCase):
	async def asyncSetUp(self):
		self.server = FakeServer()
		self.app = build_app(self.server)
		self.app.api.create_order.return_value = (Ride(id="42", status="pending", total_price=4000), "tok-42")

	async def asyncTearDown(self):
		await self.app.close()

	def ride_request(self):
		return RideRequest(
			addresses=(
				AddressField(id="1", value="Papeete", type="pickup"),
				AddressField(id="2", value="Moorea ferry", type="destination"),
			),
			ride_option=RIDE_OPTIONS["immediate"],
			passengers=1,
			total_price=4000,
			driver_earnings=3200,
		)

	async def test_full_ride(self):
		search = await self.app.request_ride(self.ride_request())
		self.assertEqual(search.status, SEARCH_SEARCHING)

		self.server.push(events.ORDER_DRIVER_ASSIGNED, {"orderId": "42", "driverId": "d1", "driverName": "Teva", "sessionId": "ds1"})
		self.assertEqual(await search.wait(timeout=1), SEARCH_FOUND)

		ride = self.app.follow_ride(search)
		for status in (ARRIVED, INPROGRESS, COMPLETED):
			self.server.push(events.RIDE_STATUS_CHANGED, {"orderId": "42", "status": status})
		await settle()
		self.assertEqual(ride.status, COMPLETED)
		self.assertEqual(ride.payment.state, PAYMENT_PENDING)

		self.server.push(events.PAYMENT_STATUS, {"orderId": "42", "status": "payment_confirmed"})
		await settle()

		self.assertEqual(ride.payment.state, PAYMENT_CONFIRMED)
		self.assertIsNone(self.app.store.get_current_ride_id())
		self.assertEqual(self.app.connection.registered_joins, [])

	async def test_follow_ride_requires_assignment(self):
		search = await self.app.request_ride(self.ride_request())

		with self.assertRaises(ValueError):
			self.app.follow_ride(search)
		search.cancel()

	async def test_track_driver_needs_maps(self):
		search = await self.app.request_ride(self.ride_request())
		self.server.push(events.ORDER_DRIVER_ASSIGNED, {"orderId": "42", "driverId": "d1"})
		await search.wait(timeout=1)
		ride = self.app.follow_ride(search)
		samples = []

		self.assertIsNotNone(self.app.track_driver(ride, samples.append))
		self.server.push(events.LOCATION_DRIVER, {"orderId": "42", "lat": -17.53, "lng": -149.56, "timestamp": 1, "seq": 1})
		await settle()
		self.assertEqual(len(samples), 1)

		no_maps = build_app(self.server, has_maps=False)
		self.assertIsNone(no_maps.track_driver(ride, samples.append))


class DriverFlowTests(IsolatedAsyncioTestCase):
	async def asyncSetUp(self):
		self.server = FakeServer()
		self.app = build_app(self.server)
		self.app.api.driver_login.return_value = ({"id": "d1"}, "ds1")

	async def asyncTearDown(self):
		await self.app.close()

	async def test_drive_ride(self):
		await self.app.driver.login("123456")
		await self.app.start()
		ride = self.app.drive_ride(Ride(id="42", status="accepted"))

		ride.update_status(ARRIVED)
		ride.update_status(INPROGRESS)
		await settle()

		self.assertEqual(self.server.sent(events.RIDE_JOIN), [{"orderId": "42", "role": "driver", "sessionId": "ds1"}])
		self.assertEqual([p["status"] for p in self.server.sent(events.RIDE_STATUS_UPDATE)], [ARRIVED, INPROGRESS])

	async def test_drive_ride_requires_session(self):
		with self.assertRaises(ValueError):
			self.app.drive_ride(Ride(id="42", status="accepted"))
