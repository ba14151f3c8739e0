from unittest import IsolatedAsyncioTestCase

from tapea.accounts.storage import CredentialStore, MemoryStore
from tapea.exceptions import InvalidTransitionError
from tapea.realtime import events
from tapea.realtime.connection import ConnectionManager
from tapea.realtime.testing import FakeServer, settle
from tapea.rides.models import Ride
from tapea.services.payments import (
	PAYMENT_CONFIRMED,
	PAYMENT_FAILED,
	PAYMENT_PENDING,
	PAYMENT_RETRYING,
	PaymentCoordinator,
	normalize_payment_status,
)
from tapea.services.ride_management import RideCleanup


class PaymentCoordinatorTests(IsolatedAsyncioTestCase):
	async def asyncSetUp(self):
		self.server = FakeServer()
		self.connection = ConnectionManager(
			url="ws://coordination.test/ws/",
			transport_factory=self.server.transport_factory,
			reconnect_delay=0.01,
		)
		await self.connection.connect_and_wait()
		self.store = CredentialStore(MemoryStore())
		self.store.save_ride_credentials("42", "tok-42")
		self.cleanup = RideCleanup(self.store, self.connection)
		self.ride = Ride(id="42", status="payment_pending", payment_method="card", total_price=4000)
		self.states = []

	async def asyncTearDown(self):
		await self.connection.disconnect()

	def coordinator(self, role="client", credential="tok-42"):
		payment = PaymentCoordinator("42", role, credential, connection=self.connection, cleanup=self.cleanup)
		payment.add_listener(lambda p: self.states.append(p.state))
		payment.begin(self.ride)
		return payment

	def push_status(self, status, **extra):
		self.server.push(events.PAYMENT_STATUS, {"orderId": "42", "status": status, **extra})

	def test_status_aliases(self):
		self.assertEqual(normalize_payment_status("payment_confirmed"), PAYMENT_CONFIRMED)
		self.assertEqual(normalize_payment_status("failed"), PAYMENT_FAILED)
		self.assertIsNone(normalize_payment_status("refunded"))

	async def test_begin_only_once(self):
		payment = self.coordinator()

		self.assertFalse(payment.begin(self.ride))
		self.assertEqual(self.states, [PAYMENT_PENDING])
		self.assertEqual(payment.method, "card")
		self.assertEqual(self.connection.listener_count(events.PAYMENT_STATUS), 1)

	async def test_confirmation_is_terminal(self):
		payment = self.coordinator()

		self.push_status("payment_confirmed", amount=4000, cardBrand="visa", cardLast4="4242")
		self.push_status("failed")
		await settle()

		self.assertTrue(payment.is_confirmed)
		self.assertEqual(self.states, [PAYMENT_PENDING, PAYMENT_CONFIRMED])
		self.assertEqual(payment.outcome.summary(), "Visa •••• 4242")
		self.assertTrue(self.cleanup.is_released("42"))
		self.assertIsNone(self.store.get_client_token())
		self.assertEqual(self.connection.listener_count(events.PAYMENT_STATUS), 0)

	async def test_outcome_defaults_to_ride_amount(self):
		payment = self.coordinator()

		self.push_status("confirmed")
		await settle()

		self.assertEqual(payment.outcome.amount, 4000)
		self.assertEqual(payment.outcome.method, "card")

	async def test_other_rides_are_ignored(self):
		payment = self.coordinator()

		self.server.push(events.PAYMENT_STATUS, {"orderId": "43", "status": "confirmed"})
		await settle()

		self.assertEqual(payment.state, PAYMENT_PENDING)

	async def test_retry_after_failure(self):
		payment = self.coordinator()
		self.push_status("payment_failed", errorMessage="Carte refusée")
		await settle()
		self.assertEqual(payment.outcome.error_message, "Carte refusée")

		self.assertTrue(payment.retry())
		self.assertFalse(payment.retry())
		self.assertTrue(payment.is_pending)

		self.server.push(events.PAYMENT_RETRY_READY, {"orderId": "42"})
		self.server.push(events.PAYMENT_RETRY_READY, {"orderId": "42"})
		await settle()

		self.assertEqual(self.server.sent(events.PAYMENT_RETRY), [{"orderId": "42", "clientToken": "tok-42"}])
		self.assertEqual(self.states, [PAYMENT_PENDING, PAYMENT_FAILED, PAYMENT_RETRYING, PAYMENT_PENDING])

		self.push_status("confirmed")
		await settle()
		self.assertTrue(payment.is_confirmed)

	async def test_retry_requires_failed_payment(self):
		payment = self.coordinator()

		self.assertFalse(payment.retry())
		self.assertFalse(payment.switch_to_cash())
		await settle()

		self.assertEqual(self.server.sent(events.PAYMENT_RETRY), [])

	async def test_switch_to_cash(self):
		payment = self.coordinator()
		self.push_status("failed")
		await settle()

		self.assertTrue(payment.switch_to_cash())
		self.server.push(events.PAYMENT_SWITCHED_TO_CASH, {"orderId": "42"})
		await settle()

		self.assertEqual(payment.state, PAYMENT_PENDING)
		self.assertEqual(payment.method, "cash")
		self.assertEqual(len(self.server.sent(events.PAYMENT_SWITCH_CASH)), 1)

	async def test_driver_cannot_recover_payment(self):
		payment = self.coordinator(role="driver", credential="ds1")
		self.push_status("failed")
		await settle()

		with self.assertRaises(InvalidTransitionError):
			payment.retry()
		with self.assertRaises(InvalidTransitionError):
			payment.switch_to_cash()

	async def test_driver_confirms_cash_payment(self):
		payment = self.coordinator(role="driver", credential="ds1")

		self.assertTrue(payment.confirm())
		await settle()

		self.assertEqual(self.server.sent(events.PAYMENT_CONFIRM), [
			{"orderId": "42", "confirmed": True, "role": "driver", "sessionId": "ds1"},
		])

	async def test_confirm_before_begin_is_not_sent(self):
		payment = PaymentCoordinator("42", "client", "tok-42", connection=self.connection, cleanup=self.cleanup)

		self.assertFalse(payment.confirm())
