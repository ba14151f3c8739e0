from unittest import IsolatedAsyncioTestCase, TestCase
from unittest.mock import MagicMock

import requests

from tapea.accounts.storage import CredentialStore, MemoryStore
from tapea.exceptions import (
	AuthError,
	LocalTimeoutError,
	NetworkError,
	ServerError,
	ValidationError,
)
from tapea.platform import PlatformCapabilities
from tapea.rides.api import DEFAULT_MESSAGES, ApiClient, build_http_error
from tapea.rides.models import (
	ARRIVED,
	COMPLETED,
	ENROUTE,
	INPROGRESS,
	AddressField,
	PaymentOutcome,
	Ride,
	RideRequest,
	Supplement,
	ride_status_from_order,
)
from tapea.rides.pricing import RIDE_OPTIONS, SUPPLEMENTS, calculate_price, get_ride_option


def make_request(**overrides):
	fields = dict(
		addresses=(
			AddressField(id="1", value="Aéroport de Faa'a", type="pickup", place_id="p1", lat=-17.55, lng=-149.61),
			AddressField(id="2", value="Marina Taina", type="stop"),
			AddressField(id="3", value="Papeete", type="destination", place_id="p3", lat=-17.53, lng=-149.56),
		),
		ride_option=RIDE_OPTIONS["immediate"],
		passengers=2,
		total_price=4000,
		driver_earnings=3200,
		supplements=(
			Supplement(id="bagages", name="Bagages", price=100, quantity=2),
			Supplement(id="encombrants", name="Encombrants", price=200, quantity=0),
		),
		client_name="Hina Teriierooiterai",
		client_phone="+68987123456",
	)
	fields.update(overrides)
	return RideRequest(**fields)


class RideRequestTests(TestCase):
	def test_payload_keeps_submitted_fields(self):
		payload = make_request().to_payload()

		self.assertEqual([a["value"] for a in payload["addresses"]], ["Aéroport de Faa'a", "Marina Taina", "Papeete"])
		self.assertEqual(payload["rideOption"]["id"], "immediate")
		self.assertEqual(payload["passengers"], 2)
		self.assertEqual(payload["paymentMethod"], "cash")
		self.assertEqual(payload["totalPrice"], 4000)
		self.assertEqual(payload["driverEarnings"], 3200)
		self.assertFalse(payload["isAdvanceBooking"])

	def test_payload_omits_missing_coordinates_and_empty_supplements(self):
		payload = make_request().to_payload()

		stop = payload["addresses"][1]
		self.assertNotIn("lat", stop)
		self.assertNotIn("lng", stop)
		self.assertEqual([s["id"] for s in payload["supplements"]], ["bagages"])

	def test_created_ride_keeps_submitted_fields(self):
		request = make_request(payment_method="card", selected_card_id="card_1")

		ride = Ride.from_payload({"id": "42", "status": "pending", **request.to_payload()})

		self.assertEqual(ride.addresses, list(request.addresses))
		self.assertEqual(ride.ride_option, request.ride_option)
		self.assertEqual(ride.passengers, 2)
		self.assertEqual(ride.total_price, 4000)
		self.assertEqual(ride.driver_earnings, 3200)
		self.assertEqual(ride.payment_method, "card")
		self.assertEqual(ride.supplements, [Supplement(id="bagages", name="Bagages", price=100, quantity=2)])
		self.assertEqual(ride.client_name, "Hina Teriierooiterai")

	def test_card_id_only_sent_for_card_payments(self):
		cash = make_request(selected_card_id="card_1").to_payload()
		card = make_request(payment_method="card", selected_card_id="card_1").to_payload()

		self.assertNotIn("selectedCardId", cash)
		self.assertEqual(card["selectedCardId"], "card_1")

	def test_reservation_is_always_an_advance_booking(self):
		payload = make_request(ride_option=RIDE_OPTIONS["reservation"], scheduled_time="2026-10-17T08:00").to_payload()

		self.assertTrue(payload["isAdvanceBooking"])
		self.assertEqual(payload["scheduledTime"], "2026-10-17T08:00")

	def test_validate_accepts_complete_request(self):
		make_request().validate()

	def test_validate_rejects_missing_destination(self):
		request = make_request(addresses=(AddressField(id="1", value="Papeete", type="pickup"),))
		with self.assertRaises(ValidationError):
			request.validate()

	def test_validate_rejects_zero_passengers(self):
		with self.assertRaises(ValidationError):
			make_request(passengers=0).validate()

	def test_card_requires_selected_card(self):
		with self.assertRaises(ValidationError):
			make_request(payment_method="card").validate()

	def test_card_requires_native_payments(self):
		request = make_request(payment_method="card", selected_card_id="card_1")
		request.validate(PlatformCapabilities(has_native_payments=True))
		with self.assertRaises(ValidationError):
			request.validate(PlatformCapabilities(has_native_payments=False))


class RideModelTests(TestCase):
	def test_order_status_mapping(self):
		self.assertEqual(ride_status_from_order("accepted"), ENROUTE)
		self.assertEqual(ride_status_from_order("driver_enroute"), ENROUTE)
		self.assertEqual(ride_status_from_order("driver_arrived"), ARRIVED)
		self.assertEqual(ride_status_from_order("in_progress"), INPROGRESS)
		self.assertEqual(ride_status_from_order("payment_pending"), COMPLETED)
		self.assertEqual(ride_status_from_order("payment_failed"), COMPLETED)
		self.assertEqual(ride_status_from_order("something_new"), ENROUTE)

	def test_ride_from_payload(self):
		ride = Ride.from_payload({
			"id": 42,
			"status": "driver_arrived",
			"addresses": [{"id": "1", "value": "Papeete", "type": "pickup"}],
			"rideOption": {"id": "tour", "title": "Tour de l'Île", "price": 30000, "pricePerKm": 0},
			"paymentMethod": "card",
			"totalPrice": 30000,
			"driver": {"id": "d1", "firstName": "Teva", "lastName": "Manutahi"},
		})

		self.assertEqual(ride.id, "42")
		self.assertEqual(ride.ride_status, ARRIVED)
		self.assertEqual(ride.ride_option.price, 30000)
		self.assertEqual(ride.driver.name, "Teva Manutahi")
		self.assertEqual(Ride.from_payload(ride.to_payload()), ride)

	def test_payment_summary(self):
		card = PaymentOutcome(status="confirmed", amount=4000, method="card", card_brand="visa", card_last4="4242")
		cash = PaymentOutcome(status="confirmed", amount=4000, method="cash")

		self.assertEqual(card.summary(), "Visa •••• 4242")
		self.assertEqual(cash.summary(), "Espèces")
		self.assertTrue(card.confirmed)


class PricingTests(TestCase):
	def test_distance_and_supplements(self):
		bagages = Supplement(id="bagages", name="Bagages", price=100, quantity=2)
		total, earnings = calculate_price(get_ride_option("immediate"), 10, [bagages])

		self.assertEqual(total, 4000)
		self.assertEqual(earnings, 3200)

	def test_tour_is_flat_rate(self):
		total, earnings = calculate_price(get_ride_option("tour"), 85)

		self.assertEqual(total, 30000)
		self.assertEqual(earnings, 24000)

	def test_unknown_option_falls_back_to_immediate(self):
		self.assertEqual(get_ride_option("helicopter").id, "immediate")
		self.assertEqual(SUPPLEMENTS["encombrants"].price, 200)


def make_response(status_code=200, body=None):
	response = MagicMock()
	response.status_code = status_code
	response.ok = 200 <= status_code < 300
	if body is None:
		response.json.side_effect = ValueError("no json")
	else:
		response.json.return_value = body
	return response


class HttpErrorTests(TestCase):
	def test_status_mapping(self):
		self.assertIsInstance(build_http_error(400, {}), ValidationError)
		self.assertIsInstance(build_http_error(401, {}), AuthError)
		self.assertIsInstance(build_http_error(403, {}), AuthError)
		self.assertIsInstance(build_http_error(502, {}), ServerError)

	def test_server_message_wins(self):
		self.assertEqual(build_http_error(400, {"error": "Adresse invalide"}).message, "Adresse invalide")
		self.assertEqual(build_http_error(400, {"message": "Trop tard"}).message, "Trop tard")
		self.assertEqual(build_http_error(500, None).message, DEFAULT_MESSAGES[ServerError])


class ApiClientTests(IsolatedAsyncioTestCase):
	def setUp(self):
		self.store = CredentialStore(MemoryStore())
		self.session = MagicMock(spec=requests.Session)
		self.api = ApiClient(
			self.store,
			base_url="http://api.test",
			session=self.session,
			max_attempts=3,
			retry_delay=0,
			retry_delay_max=0,
		)

	async def test_create_order_returns_ride_and_token(self):
		self.session.request.return_value = make_response(201, {
			"order": {"id": "42", "status": "pending"},
			"clientToken": "tok-42",
		})

		ride, token = await self.api.create_order(make_request())

		self.assertEqual(ride.id, "42")
		self.assertEqual(token, "tok-42")
		method, url = self.session.request.call_args.args
		self.assertEqual((method, url), ("POST", "http://api.test/api/orders"))
		self.assertEqual(self.session.request.call_args.kwargs["json"]["passengers"], 2)

	async def test_created_order_matches_submitted_request(self):
		def echo(method, url, **kwargs):
			return make_response(201, {
				"order": {"id": "42", "status": "pending", **kwargs["json"]},
				"clientToken": "tok-42",
			})

		self.session.request.side_effect = echo
		request = make_request()

		ride, _token = await self.api.create_order(request)

		self.assertEqual([a.value for a in ride.addresses], [a.value for a in request.addresses])
		self.assertEqual(ride.addresses[0].place_id, "p1")
		self.assertEqual((ride.total_price, ride.driver_earnings), (4000, 3200))
		self.assertEqual(ride.payment_method, "cash")
		self.assertEqual([s.id for s in ride.supplements], ["bagages"])

	async def test_client_session_cookie_is_sent(self):
		self.store.set_client_session_id("sess-1")
		self.session.request.return_value = make_response(200, {"id": "42", "status": "accepted"})

		await self.api.get_order("42")

		self.assertEqual(self.session.request.call_args.kwargs["cookies"], {"clientSessionId": "sess-1"})

	async def test_get_is_retried_on_server_errors(self):
		self.session.request.side_effect = [
			make_response(503, {"error": "busy"}),
			make_response(200, {"id": "42", "status": "accepted"}),
		]

		ride = await self.api.get_order("42")

		self.assertEqual(ride.id, "42")
		self.assertEqual(self.session.request.call_count, 2)

	async def test_post_is_never_retried(self):
		self.session.request.return_value = make_response(500, None)

		with self.assertRaises(ServerError):
			await self.api.create_order(make_request())
		self.assertEqual(self.session.request.call_count, 1)

	async def test_validation_errors_are_not_retried(self):
		self.session.request.return_value = make_response(404, {"error": "Commande introuvable"})

		with self.assertRaises(ValidationError) as ctx:
			await self.api.get_order("missing")
		self.assertEqual(ctx.exception.message, "Commande introuvable")
		self.assertEqual(self.session.request.call_count, 1)

	async def test_network_failures_map_to_retryable_errors(self):
		self.session.request.side_effect = requests.ConnectionError("down")
		with self.assertRaises(NetworkError):
			await self.api.get_order("42")
		self.assertEqual(self.session.request.call_count, 3)

		self.session.request.reset_mock()
		self.session.request.side_effect = requests.Timeout("slow")
		with self.assertRaises(LocalTimeoutError):
			await self.api.set_driver_online("sess-d", True)
		self.assertEqual(self.session.request.call_count, 1)

	async def test_driver_login(self):
		self.session.request.return_value = make_response(200, {
			"success": True,
			"driver": {"id": "d1", "firstName": "Teva"},
			"session": {"id": "dsess-1"},
		})

		driver, session_id = await self.api.driver_login("123456")

		self.assertEqual(driver["id"], "d1")
		self.assertEqual(session_id, "dsess-1")

	async def test_active_client_order(self):
		self.session.request.return_value = make_response(200, {
			"hasActiveOrder": True,
			"order": {"id": "42", "status": "in_progress"},
			"clientToken": "tok-42",
		})

		active = await self.api.get_active_client_order()

		self.assertTrue(active.has_active_order)
		self.assertEqual(active.ride.ride_status, INPROGRESS)
		self.assertEqual(active.client_token, "tok-42")
