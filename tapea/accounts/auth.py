"""
Client (rider) authentication against ``/api/auth/*``.

A successful login, registration or verification returns a session id that
is persisted as ``clientSessionId``; the API client sends it back as a cookie
on every authenticated call.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from tapea.exceptions import AuthError, RideSyncError
from tapea.rides.api import ApiClient
from .storage import CredentialStore

logger = logging.getLogger(__name__)

# French Polynesia prefix; bare local numbers get it prepended
PHONE_PREFIX = "+689"


def normalize_phone(phone: str) -> str:
    phone = phone.strip().replace(" ", "")
    return phone if phone.startswith(PHONE_PREFIX) else f"{PHONE_PREFIX}{phone}"


@dataclass
class AuthResult:
    """Result object for authentication operations."""
    success: bool
    client: Optional[Dict[str, Any]] = None
    needs_verification: bool = False
    phone: Optional[str] = None
    error: Optional[str] = None
    dev_code: Optional[str] = None


class AuthService:
    """Rider account operations. Failures come back as ``AuthResult(success=False)``."""

    def __init__(self, api: ApiClient, store: CredentialStore):
        self.api = api
        self.store = store
        self.client: Optional[Dict[str, Any]] = None

    @property
    def is_authenticated(self) -> bool:
        return self.client is not None

    def _persist_session(self, data: Dict[str, Any]):
        session = data.get("session") or {}
        if session.get("id"):
            self.store.set_client_session_id(session["id"])

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self.api.request("POST", path, json=payload, auth=None) or {}

    async def login(self, phone: str, password: str) -> AuthResult:
        try:
            data = await self._post("/api/auth/login", {"phone": normalize_phone(phone), "password": password})
        except RideSyncError as e:
            return AuthResult(success=False, error=e.message)

        if data.get("success") and data.get("client"):
            # The session may also come back as a cookie only
            self._persist_session(data)
            self.client = data["client"]
            logger.info("Client %s logged in", self.client.get("id"))
            return AuthResult(success=True, client=self.client)

        if data.get("needsVerification"):
            return AuthResult(success=False, needs_verification=True, phone=data.get("phone"))

        return AuthResult(success=False, error=data.get("error") or "Erreur de connexion")

    async def register(self, phone: str, first_name: str, last_name: str, password: str) -> AuthResult:
        try:
            data = await self._post("/api/auth/register", {
                "phone": normalize_phone(phone),
                "firstName": first_name,
                "lastName": last_name,
                "password": password,
            })
        except RideSyncError as e:
            return AuthResult(success=False, error=e.message)

        if data.get("success") and data.get("client") and data.get("session"):
            self._persist_session(data)
            self.client = data["client"]
            return AuthResult(success=True, client=self.client, dev_code=data.get("devCode"))

        return AuthResult(
            success=False,
            error=data.get("error") or "Erreur d'inscription",
            dev_code=data.get("devCode"),
        )

    async def verify(self, phone: str, code: str, verification_type: str = "registration") -> AuthResult:
        try:
            data = await self._post("/api/auth/verify", {
                "phone": normalize_phone(phone),
                "code": code,
                "type": verification_type,
            })
        except RideSyncError as e:
            return AuthResult(success=False, error=e.message)

        if data.get("success") and data.get("client") and data.get("session"):
            self._persist_session(data)
            self.client = data["client"]
            return AuthResult(success=True, client=self.client)

        return AuthResult(success=False, error=data.get("error") or "Code invalide ou expiré")

    async def resend_code(self, phone: str, verification_type: str = "registration") -> AuthResult:
        try:
            await self._post("/api/auth/resend-code", {"phone": normalize_phone(phone), "type": verification_type})
        except RideSyncError as e:
            return AuthResult(success=False, error=e.message)
        return AuthResult(success=True, phone=normalize_phone(phone))

    async def forgot_password(self, phone: str) -> AuthResult:
        try:
            await self._post("/api/auth/forgot-password", {"phone": normalize_phone(phone)})
        except RideSyncError as e:
            return AuthResult(success=False, error=e.message or "Une erreur est survenue")
        return AuthResult(success=True, phone=normalize_phone(phone))

    async def reset_password(self, phone: str, code: str, new_password: str) -> AuthResult:
        try:
            await self._post("/api/auth/reset-password", {
                "phone": normalize_phone(phone),
                "code": code,
                "newPassword": new_password,
            })
        except RideSyncError as e:
            return AuthResult(success=False, error=e.message or "Code invalide ou expiré")
        return AuthResult(success=True)

    async def me(self) -> Optional[Dict[str, Any]]:
        """
        Reload the logged-in client. Clears the stored session when it is no
        longer valid; connectivity failures keep it.
        """
        if not self.store.get_client_session_id():
            self.client = None
            return None
        try:
            data = await self.api.request("GET", "/api/auth/me")
        except AuthError:
            logger.info("Client session expired")
            self.store.remove_client_session_id()
            self.client = None
            return None

        if data and data.get("id"):
            self.client = data
        else:
            self.store.remove_client_session_id()
            self.client = None
        return self.client

    async def logout(self):
        try:
            await self.api.request("POST", "/api/auth/logout")
        except RideSyncError as e:
            logger.warning("Logout request failed: %s", e)
        finally:
            self.store.remove_client_session_id()
            self.client = None
