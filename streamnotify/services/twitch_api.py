"""Twitch API client service.

Token types:
- App Access Token: EventSub subscription management and stream lookups.
  Fetched with client credentials and cached in ``AppTokenCache``.
- User Access Token: obtained from the authorization code a broadcaster
  grants us; used once to resolve who that broadcaster is.
"""

import logging
import time
from collections.abc import Callable
from typing import Any
from urllib.parse import urlencode

import httpx

from streamnotify.core.errors import (
    AuthError,
    ConflictError,
    NotifierError,
    RemoteApiError,
    TransportError,
)
from streamnotify.models.twitch import (
    STREAM_ONLINE,
    AccessToken,
    EventSubSubscription,
    StreamSnapshot,
    TwitchUser,
)

from .token_cache import AppTokenCache

logger = logging.getLogger(__name__)

HELIX_BASE = "https://api.twitch.tv/helix"
OAUTH_BASE = "https://id.twitch.tv/oauth2"

# Floor for the cached lifetime of an app token
MIN_TOKEN_LIFETIME = 60


class TwitchAPIClient:
    """Client for the Twitch OAuth and Helix endpoints this service needs.

    Manages a shared httpx client for connection reuse and owns the app
    token cache. Every non-success response is logged with its status and
    upstream message, then raised as a ``NotifierError`` subclass.
    """

    LOGIN_SCOPES = ["user:read:email"]

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        redirect_url: str,
        callback_url: str,
        eventsub_secret: str,
        timeout: float = 10.0,
        token_refresh_margin: int = 300,
        token_lock_timeout: float = 15.0,
        http: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ):
        if not client_id or not client_secret:
            raise ValueError("Twitch client_id and client_secret are required")

        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_url = redirect_url
        self.callback_url = callback_url
        self.eventsub_secret = eventsub_secret
        self.token_refresh_margin = token_refresh_margin
        self._clock = clock

        # Shared HTTP client, reuses TCP connections across requests
        self._http = http or httpx.AsyncClient(timeout=timeout)

        self.tokens = AppTokenCache(
            self.exchange_app_token, lock_timeout=token_lock_timeout, clock=clock
        )

    async def close(self) -> None:
        """Close the shared HTTP client. Call on app shutdown."""
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Client-Id": self.client_id}

    async def _send(self, method: str, url: str, *, operation: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._http.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"{operation}: timed out calling {method} {url}")
            raise TransportError(f"Timeout during {operation}", operation=operation) from e
        except httpx.HTTPError as e:
            logger.error(f"{operation}: {method} {url} failed: {type(e).__name__}: {e}")
            raise TransportError(f"Request failed during {operation}", operation=operation) from e

    async def _helix(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        token: str | None = None,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Helix request. Uses the app token when *token* is None.

        An app token rejected with 401 is dropped and the request retried once.
        """
        app_scoped = token is None
        bearer = token if token is not None else await self.tokens.get_valid_token()
        url = f"{HELIX_BASE}/{path}"

        response = await self._send(
            method, url, operation=operation, params=params, json=json, headers=self._headers(bearer)
        )
        if app_scoped and response.status_code == 401:
            logger.warning(f"{operation}: app token rejected, refreshing and retrying once")
            self.tokens.invalidate()
            bearer = await self.tokens.get_valid_token()
            response = await self._send(
                method,
                url,
                operation=operation,
                params=params,
                json=json,
                headers=self._headers(bearer),
            )
        return response

    @staticmethod
    def _upstream_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(data, dict):
            return str(data.get("message") or data.get("error") or "")
        return ""

    def _error(
        self,
        response: httpx.Response,
        operation: str,
        error_cls: type[NotifierError] = RemoteApiError,
    ) -> NotifierError:
        """Log a failed response and build the error to raise."""
        message = self._upstream_message(response)
        logger.error(
            f"{operation} failed: {response.request.method} {response.request.url.path} "
            f"-> {response.status_code}: {message!r}"
        )
        return error_cls(
            f"{operation} returned {response.status_code}",
            operation=operation,
            status=response.status_code,
            upstream_message=message,
        )

    @staticmethod
    def _json(response: httpx.Response, operation: str) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"{operation}: response body is not JSON")
            raise RemoteApiError(
                "Malformed response body", operation=operation, status=response.status_code
            ) from e
        if not isinstance(data, dict):
            raise RemoteApiError(
                "Unexpected response shape", operation=operation, status=response.status_code
            )
        return data

    def _rows(self, response: httpx.Response, operation: str) -> list[dict[str, Any]]:
        rows = self._json(response, operation).get("data") or []
        return [row for row in rows if isinstance(row, dict)]

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def login_url(self, state: str) -> str:
        """Twitch authorization URL a broadcaster visits to grant us a code."""
        query = urlencode(
            {
                "response_type": "code",
                "client_id": self.client_id,
                "redirect_uri": self.redirect_url,
                "scope": " ".join(self.LOGIN_SCOPES),
                "state": state,
            }
        )
        return f"{OAUTH_BASE}/authorize?{query}"

    async def exchange_app_token(self) -> AccessToken:
        """Exchange client credentials for an app access token."""
        operation = "exchange_app_token"
        response = await self._send(
            "POST",
            f"{OAUTH_BASE}/token",
            operation=operation,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "client_credentials",
            },
        )
        if response.status_code != 200:
            raise self._error(response, operation)

        data = self._json(response, operation)
        access_token = data.get("access_token")
        if not access_token:
            raise RemoteApiError("No access_token in response", operation=operation, status=200)

        # Twitch returns expires_in in seconds; keep a margin before the real expiry
        expires_in = int(data.get("expires_in") or 0)
        lifetime = expires_in - self.token_refresh_margin
        if lifetime < MIN_TOKEN_LIFETIME:
            lifetime = max(expires_in // 2, MIN_TOKEN_LIFETIME)
            logger.warning(
                f"{operation}: expires_in={expires_in}s leaves no room for the "
                f"{self.token_refresh_margin}s margin, caching for {lifetime}s"
            )
        expires_at = int(self._clock()) + lifetime
        return AccessToken(value=access_token, expires_at=expires_at)

    async def exchange_user_code(self, code: str) -> str:
        """Exchange an authorization code for a user access token."""
        operation = "exchange_user_code"
        response = await self._send(
            "POST",
            f"{OAUTH_BASE}/token",
            operation=operation,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": self.redirect_url,
            },
        )
        if response.status_code != 200:
            raise self._error(response, operation)

        access_token = self._json(response, operation).get("access_token")
        if not access_token:
            raise RemoteApiError("No access_token in response", operation=operation, status=200)
        return str(access_token)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def fetch_user(self, token: str) -> TwitchUser:
        """Resolve the user owning *token*."""
        operation = "fetch_user"
        response = await self._helix("GET", "users", operation=operation, token=token)

        if response.status_code in (400, 401):
            raise self._error(response, operation, AuthError)
        if response.status_code != 200:
            raise self._error(response, operation)

        rows = self._rows(response, operation)
        if not rows:
            logger.error(f"{operation}: Twitch returned no user for the supplied token")
            raise RemoteApiError("No user returned", operation=operation, status=200)
        try:
            return TwitchUser.model_validate(rows[0])
        except ValueError as e:
            raise RemoteApiError("Malformed user row", operation=operation, status=200) from e

    # ------------------------------------------------------------------
    # EventSub subscriptions
    # ------------------------------------------------------------------

    async def create_subscription(self, broadcaster_id: int) -> str:
        """Create a stream.online webhook subscription and return its id.

        Raises ``ConflictError`` when Twitch already has one for this
        broadcaster; the caller is expected to look it up.
        """
        operation = "create_subscription"
        response = await self._helix(
            "POST",
            "eventsub/subscriptions",
            operation=operation,
            json={
                "type": STREAM_ONLINE,
                "version": "1",
                "condition": {"broadcaster_user_id": str(broadcaster_id)},
                "transport": {
                    "method": "webhook",
                    "callback": self.callback_url,
                    "secret": self.eventsub_secret,
                },
            },
        )

        if response.status_code == 409:
            logger.info(f"Subscription for broadcaster {broadcaster_id} already exists")
            raise ConflictError(
                "Subscription already exists",
                operation=operation,
                status=409,
                upstream_message=self._upstream_message(response),
            )
        if response.status_code != 202:
            raise self._error(response, operation)

        rows = self._rows(response, operation)
        if not rows or not rows[0].get("id"):
            raise RemoteApiError("No subscription in response", operation=operation, status=202)
        subscription_id = str(rows[0]["id"])
        logger.info(f"Created subscription {subscription_id} for broadcaster {broadcaster_id}")
        return subscription_id

    async def find_subscription_by_user(self, broadcaster_id: int) -> EventSubSubscription | None:
        """Return the first stream.online subscription for *broadcaster_id*, if any."""
        operation = "find_subscription_by_user"
        response = await self._helix(
            "GET",
            "eventsub/subscriptions",
            operation=operation,
            params={"user_id": str(broadcaster_id)},
        )
        if response.status_code != 200:
            raise self._error(response, operation)

        for subscription in self._subscriptions(response, operation):
            if subscription.condition.broadcaster_user_id == broadcaster_id:
                return subscription
        return None

    async def list_subscriptions(self) -> list[EventSubSubscription]:
        """Return every stream.online subscription owned by this app."""
        operation = "list_subscriptions"
        subscriptions: list[EventSubSubscription] = []
        params: dict[str, Any] = {"type": STREAM_ONLINE}

        while True:
            response = await self._helix(
                "GET", "eventsub/subscriptions", operation=operation, params=params
            )
            if response.status_code != 200:
                raise self._error(response, operation)

            subscriptions.extend(self._subscriptions(response, operation))
            cursor = (self._json(response, operation).get("pagination") or {}).get("cursor")
            if not cursor:
                return subscriptions
            params = {"type": STREAM_ONLINE, "after": cursor}

    def _subscriptions(
        self, response: httpx.Response, operation: str
    ) -> list[EventSubSubscription]:
        result = []
        for row in self._rows(response, operation):
            if row.get("type") != STREAM_ONLINE:
                continue
            try:
                result.append(EventSubSubscription.model_validate(row))
            except ValueError:
                logger.warning(f"{operation}: skipping malformed subscription row {row.get('id')}")
        return result

    async def delete_subscription(self, subscription_id: str) -> None:
        """Delete a subscription; one that is already gone counts as deleted."""
        operation = "delete_subscription"
        response = await self._helix(
            "DELETE",
            "eventsub/subscriptions",
            operation=operation,
            params={"id": subscription_id},
        )
        if response.status_code == 204:
            logger.info(f"Deleted subscription {subscription_id}")
            return
        if response.status_code == 404:
            logger.warning(f"Subscription {subscription_id} not found, treating as deleted")
            return
        raise self._error(response, operation)

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    async def fetch_live_stream(self, user_id: int) -> StreamSnapshot:
        """Get the current stream of *user_id*; fails when the user is not live."""
        operation = "fetch_live_stream"
        response = await self._helix(
            "GET", "streams", operation=operation, params={"user_id": str(user_id)}
        )
        if response.status_code != 200:
            raise self._error(response, operation)

        rows = self._rows(response, operation)
        if not rows:
            logger.warning(f"{operation}: user {user_id} is not live")
            raise RemoteApiError("No stream data returned", operation=operation, status=200)
        try:
            return StreamSnapshot.model_validate(rows[0])
        except ValueError as e:
            raise RemoteApiError("Malformed stream row", operation=operation, status=200) from e
