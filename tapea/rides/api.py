"""
HTTP client for the ride-coordination API.

Every call is a coroutine: the blocking ``requests`` call runs through
``sync_to_async`` so the event loop keeps dispatching realtime events while
a request is in flight.

Error mapping:
    - network exception        -> NetworkError (retryable)
    - request timeout          -> LocalTimeoutError (retryable)
    - 401 / 403                -> AuthError
    - other 4xx                -> ValidationError
    - 5xx                      -> ServerError (retryable)
The server's ``{error}`` (or ``{message}``) body wins; otherwise a default
message keyed by the error class is used.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

import requests
from asgiref.sync import sync_to_async

from tapea import settings
from tapea.accounts.storage import CredentialStore
from tapea.common.utils import backoff_delay
from tapea.exceptions import (
    AuthError,
    LocalTimeoutError,
    NetworkError,
    RideSyncError,
    ServerError,
    ValidationError,
)
from .models import ActiveOrder, Ride, RideRequest

logger = logging.getLogger(__name__)


DEFAULT_MESSAGES = {
    ValidationError: "Données invalides. Vérifiez que toutes les informations sont correctes.",
    AuthError: "Session expirée ou accès refusé. Veuillez vous reconnecter.",
    ServerError: "Le serveur rencontre un problème. Réessayez dans quelques instants.",
    NetworkError: "Impossible de joindre le serveur. Vérifiez votre connexion internet.",
    LocalTimeoutError: "Le serveur met trop de temps à répondre. Réessayez.",
}

GENERIC_MESSAGE = "Une erreur est survenue"

AUTH_CLIENT = "client"
AUTH_DRIVER = "driver"


def error_class_for_status(status_code: int):
    if status_code in (401, 403):
        return AuthError
    if status_code >= 500:
        return ServerError
    if status_code >= 400:
        return ValidationError
    return RideSyncError


def build_http_error(status_code: int, body: Any) -> RideSyncError:
    """Turn a non-2xx response into the matching exception with a user-facing message."""
    error_class = error_class_for_status(status_code)
    message = None
    if isinstance(body, dict):
        message = body.get("error") or body.get("message")
    if not message:
        message = DEFAULT_MESSAGES.get(error_class, GENERIC_MESSAGE)
    return error_class(message, status_code=status_code)


class ApiClient:
    """
    Thin wrapper around the REST endpoints the protocol needs.

    Session ids are read from the credential store on every call, so a login
    or logout elsewhere in the app is picked up without rebuilding the client.
    """

    def __init__(
        self,
        store: CredentialStore,
        base_url: str = settings.API_URL,
        session: Optional[requests.Session] = None,
        timeout: float = settings.HTTP_CONFIG["TIMEOUT"],
        max_attempts: int = settings.HTTP_CONFIG["MAX_ATTEMPTS"],
        retry_delay: float = settings.HTTP_CONFIG["RETRY_DELAY"],
        retry_delay_max: float = settings.HTTP_CONFIG["RETRY_DELAY_MAX"],
    ):
        self.store = store
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.retry_delay_max = retry_delay_max

    # ---------------------- Transport ----------------------

    def _auth_cookies(self, auth: Optional[str]) -> Dict[str, str]:
        cookies = {}
        if auth == AUTH_CLIENT:
            session_id = self.store.get_client_session_id()
            if session_id:
                cookies["clientSessionId"] = session_id
        elif auth == AUTH_DRIVER:
            session_id = self.store.get_driver_session_id()
            if session_id:
                cookies["driverSessionId"] = session_id
        return cookies

    def _send(self, method: str, path: str, json=None, params=None, auth=None) -> Any:
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method,
                url,
                json=json,
                params=params,
                cookies=self._auth_cookies(auth),
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise LocalTimeoutError(DEFAULT_MESSAGES[LocalTimeoutError]) from e
        except requests.RequestException as e:
            raise NetworkError(DEFAULT_MESSAGES[NetworkError]) from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if not response.ok:
            raise build_http_error(response.status_code, body)
        return body

    async def request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        auth: Optional[str] = AUTH_CLIENT,
        retry: Optional[bool] = None,
    ) -> Any:
        """
        Perform one API call.

        Idempotent GETs are retried with exponential backoff on retryable
        errors; anything else is attempted exactly once.
        """
        if retry is None:
            retry = method.upper() == "GET"
        attempts = self.max_attempts if retry else 1

        attempt = 0
        while True:
            attempt += 1
            try:
                return await sync_to_async(self._send, thread_sensitive=False)(
                    method, path, json=json, params=params, auth=auth
                )
            except RideSyncError as e:
                if not e.retryable or attempt >= attempts:
                    raise
                delay = backoff_delay(attempt, self.retry_delay, self.retry_delay_max)
                logger.warning(
                    "%s %s failed (%s), retry %s/%s in %.1fs",
                    method, path, e.__class__.__name__, attempt, attempts - 1, delay,
                )
                await asyncio.sleep(delay)

    # ---------------------- Orders ----------------------

    async def create_order(self, ride_request: RideRequest) -> Tuple[Ride, str]:
        """Submit a ride request. Returns the created ride and its client token."""
        data = await self.request("POST", "/api/orders", json=ride_request.to_payload())
        return Ride.from_payload(data["order"]), data["clientToken"]

    async def get_order(self, ride_id: str) -> Ride:
        data = await self.request("GET", f"/api/orders/{ride_id}")
        return Ride.from_payload(data)

    async def get_active_client_order(self) -> ActiveOrder:
        data = await self.request("GET", "/api/orders/active/client")
        order = data.get("order")
        return ActiveOrder(
            has_active_order=bool(data.get("hasActiveOrder")),
            ride=Ride.from_payload(order) if order else None,
            client_token=data.get("clientToken"),
        )

    async def get_active_driver_order(self, session_id: str) -> ActiveOrder:
        data = await self.request(
            "GET", "/api/orders/active/driver", params={"sessionId": session_id}, auth=AUTH_DRIVER
        )
        order = data.get("order")
        return ActiveOrder(
            has_active_order=bool(data.get("hasActiveOrder")),
            ride=Ride.from_payload(order) if order else None,
        )

    # ---------------------- Driver sessions ----------------------

    async def driver_login(self, code: str) -> Tuple[Dict[str, Any], str]:
        """Returns (driver, session_id). Invalid codes raise AuthError."""
        data = await self.request("POST", "/api/driver/login", json={"code": code}, auth=None)
        if not data.get("success"):
            raise AuthError(data.get("error") or "Code incorrect")
        return data["driver"], data["session"]["id"]

    async def get_driver_session(self, session_id: str) -> Dict[str, Any]:
        return await self.request("GET", f"/api/driver-sessions/{session_id}", auth=AUTH_DRIVER)

    async def set_driver_online(self, session_id: str, is_online: bool) -> Dict[str, Any]:
        return await self.request(
            "PATCH",
            f"/api/driver-sessions/{session_id}/status",
            json={"isOnline": is_online},
            auth=AUTH_DRIVER,
        )
