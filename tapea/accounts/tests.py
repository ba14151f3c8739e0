import os
import tempfile
from unittest import IsolatedAsyncioTestCase, TestCase
from unittest.mock import MagicMock

from tapea.accounts.auth import AuthService, normalize_phone
from tapea.accounts.storage import (
	CLIENT_SESSION_KEY,
	CredentialStore,
	FileStore,
	KeyValueStore,
	MemoryStore,
	RedisStore,
	build_store,
)
from tapea.exceptions import AuthError, NetworkError
from tapea.rides.api import ApiClient
from tapea.rides.models import Ride


class FakeClock:
	def __init__(self, now=1_000_000.0):
		self.now = now

	def __call__(self):
		return self.now


class CredentialStoreTests(TestCase):
	def setUp(self):
		self.clock = FakeClock()
		self.store = CredentialStore(MemoryStore(), cache_ttl=300, clock=self.clock)
		self.ride = Ride(id="42", status="accepted", total_price=4000)

	def test_session_ids(self):
		self.store.set_client_session_id("c-1")
		self.store.set_driver_session_id("d-1")

		self.assertEqual(self.store.get_client_session_id(), "c-1")
		self.assertEqual(self.store.get_driver_session_id(), "d-1")

		self.store.remove_driver_session_id()
		self.assertIsNone(self.store.get_driver_session_id())

	def test_cached_ride_within_ttl(self):
		self.store.cache_ride(self.ride)
		self.clock.now += 299

		cached = self.store.get_cached_ride("42")

		self.assertEqual(cached.id, "42")
		self.assertEqual(cached.total_price, 4000)

	def test_cached_ride_expires(self):
		self.store.cache_ride(self.ride)
		self.clock.now += 301

		self.assertIsNone(self.store.get_cached_ride("42"))
		# Stale entries are purged
		self.assertIsNone(self.store.get("cachedOrder"))

	def test_cached_ride_must_match_id(self):
		self.store.cache_ride(self.ride)

		self.assertIsNone(self.store.get_cached_ride("43"))
		self.assertIsNotNone(self.store.get_cached_ride())

	def test_unreadable_cache_is_discarded(self):
		self.store.set("cachedOrder", "{not json")
		self.store.set("cachedOrderTimestamp", str(self.clock.now))

		with self.assertLogs("tapea.accounts.storage", level="WARNING"):
			self.assertIsNone(self.store.get_cached_ride())
		self.assertIsNone(self.store.get("cachedOrder"))

	def test_clear_ride_state_keeps_sessions(self):
		self.store.set_client_session_id("c-1")
		self.store.save_ride_credentials("42", "tok-42")
		self.store.cache_ride(self.ride)

		self.store.clear_ride_state()

		self.assertIsNone(self.store.get_client_token())
		self.assertIsNone(self.store.get_current_ride_id())
		self.assertIsNone(self.store.get_cached_ride())
		self.assertEqual(self.store.get_client_session_id(), "c-1")

	def test_backend_read_failures_return_none(self):
		backend = MagicMock(spec=KeyValueStore)
		backend.get.side_effect = OSError("disk gone")
		store = CredentialStore(backend)

		with self.assertLogs("tapea.accounts.storage", level="WARNING"):
			self.assertIsNone(store.get_client_token())


class BackendTests(TestCase):
	def test_file_store_persists_between_instances(self):
		with tempfile.TemporaryDirectory() as directory:
			path = os.path.join(directory, "nested", "credentials.json")
			FileStore(path).set("clientToken", "tok-1")

			store = FileStore(path)
			self.assertEqual(store.get("clientToken"), "tok-1")

			store.delete("clientToken")
			self.assertIsNone(FileStore(path).get("clientToken"))

	def test_redis_store_prefixes_keys(self):
		client = MagicMock()
		client.get.return_value = "c-1"
		store = RedisStore(client=client, prefix="test:")

		store.set(CLIENT_SESSION_KEY, "c-1")
		self.assertEqual(store.get(CLIENT_SESSION_KEY), "c-1")
		store.delete(CLIENT_SESSION_KEY)

		client.set.assert_called_once_with("test:clientSessionId", "c-1")
		client.get.assert_called_once_with("test:clientSessionId")
		client.delete.assert_called_once_with("test:clientSessionId")

	def test_build_store(self):
		self.assertIsInstance(build_store("memory"), MemoryStore)
		with self.assertRaises(ValueError):
			build_store("floppy")


class AuthServiceTests(IsolatedAsyncioTestCase):
	def setUp(self):
		self.store = CredentialStore(MemoryStore())
		self.api = MagicMock(spec=ApiClient)
		self.auth = AuthService(self.api, self.store)

	def test_normalize_phone(self):
		self.assertEqual(normalize_phone("87 12 34 56"), "+68987123456")
		self.assertEqual(normalize_phone("+68987123456"), "+68987123456")

	async def test_login_persists_session(self):
		self.api.request.return_value = {
			"success": True,
			"client": {"id": "c1", "firstName": "Hina"},
			"session": {"id": "sess-1"},
		}

		result = await self.auth.login("87123456", "secret")

		self.assertTrue(result.success)
		self.assertEqual(self.store.get_client_session_id(), "sess-1")
		self.assertTrue(self.auth.is_authenticated)
		self.api.request.assert_awaited_once_with(
			"POST", "/api/auth/login", json={"phone": "+68987123456", "password": "secret"}, auth=None
		)

	async def test_login_needing_verification(self):
		self.api.request.return_value = {"success": False, "needsVerification": True, "phone": "+68987123456"}

		result = await self.auth.login("87123456", "secret")

		self.assertFalse(result.success)
		self.assertTrue(result.needs_verification)
		self.assertIsNone(self.store.get_client_session_id())

	async def test_login_error_is_returned_not_raised(self):
		self.api.request.side_effect = AuthError("Identifiants incorrects", status_code=401)

		result = await self.auth.login("87123456", "wrong")

		self.assertFalse(result.success)
		self.assertEqual(result.error, "Identifiants incorrects")

	async def test_verify_persists_session(self):
		self.api.request.return_value = {"success": True, "client": {"id": "c1"}, "session": {"id": "sess-2"}}

		result = await self.auth.verify("87123456", "123456")

		self.assertTrue(result.success)
		self.assertEqual(self.store.get_client_session_id(), "sess-2")

	async def test_me_clears_rejected_session(self):
		self.store.set_client_session_id("sess-1")
		self.api.request.side_effect = AuthError("expired", status_code=401)

		self.assertIsNone(await self.auth.me())
		self.assertIsNone(self.store.get_client_session_id())

	async def test_me_keeps_session_when_offline(self):
		self.store.set_client_session_id("sess-1")
		self.api.request.side_effect = NetworkError("offline")

		with self.assertRaises(NetworkError):
			await self.auth.me()
		self.assertEqual(self.store.get_client_session_id(), "sess-1")

	async def test_logout_always_forgets_session(self):
		self.store.set_client_session_id("sess-1")
		self.api.request.side_effect = NetworkError("offline")

		await self.auth.logout()

		self.assertIsNone(self.store.get_client_session_id())
