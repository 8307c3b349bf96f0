"""
Keycloak (OpenID Connect) token provider.

Tokens are obtained with the password grant and renewed with the refresh
token shortly before they expire. Renewal happens lazily inside
current_credential(); there is no background refresh thread.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any, Final

import requests

from .exceptions import AuthenticationError

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

REFRESH_MARGIN_SECONDS: Final[int] = 300
DEFAULT_TIMEOUT: Final[float] = 30.0


class KeycloakTokenProvider:
    """CredentialProvider returning a valid Keycloak access token."""

    def __init__(
        self,
        server_url: str,
        realm: str,
        client_id: str,
        username: str,
        password: str,
        *,
        refresh_margin: int = REFRESH_MARGIN_SECONDS,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._token_url = f"{server_url.rstrip('/')}/realms/{realm}/protocol/openid-connect/token"
        self._client_id = client_id
        self._username = username
        self._password = password
        self._refresh_margin = refresh_margin
        self._timeout = timeout
        self._session = session or requests.Session()
        self._clock = clock
        self._lock = threading.Lock()
        self._access_token: str | None = None
        self._refresh_token: str | None = None
        self._expires_at = 0.0

    @property
    def token_url(self) -> str:
        return self._token_url

    def current_credential(self) -> str:
        with self._lock:
            if self._access_token is None or self._clock() >= self._expires_at - self._refresh_margin:
                self._renew()
            if self._access_token is None:
                msg = "No access token available"
                raise AuthenticationError(msg)
            return self._access_token

    def invalidate(self) -> None:
        """Forget the cached token so the next call logs in again."""
        with self._lock:
            self._access_token = None
            self._refresh_token = None
            self._expires_at = 0.0

    def _renew(self) -> None:
        if self._refresh_token:
            try:
                self._request_token({"grant_type": "refresh_token", "refresh_token": self._refresh_token})
                logger.debug("Refreshed Keycloak access token")
                return
            except AuthenticationError as e:
                logger.info(f"Token refresh failed, logging in again: {e}")

        self._request_token({"grant_type": "password", "username": self._username, "password": self._password})
        logger.info(f"Obtained Keycloak access token for {self._username}")

    def _request_token(self, form: dict[str, str]) -> None:
        data = {"client_id": self._client_id, **form}
        try:
            response = self._session.post(self._token_url, data=data, timeout=self._timeout)
            response.raise_for_status()
            payload: dict[str, Any] = response.json()
        except (requests.RequestException, ValueError) as e:
            msg = f"Token request ({form['grant_type']}) to {self._token_url} failed: {e}"
            raise AuthenticationError(msg) from e

        token = payload.get("access_token")
        if not token:
            msg = f"Token response from {self._token_url} has no access_token"
            raise AuthenticationError(msg)
        self._access_token = token
        self._refresh_token = payload.get("refresh_token")
        self._expires_at = self._clock() + float(payload.get("expires_in", 0))
