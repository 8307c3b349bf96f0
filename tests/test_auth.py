"""
Tests for the Keycloak token provider.
"""

from __future__ import annotations

from typing import Any
from unittest.mock import Mock

import pytest
import requests

from correspondence_migrator.auth import KeycloakTokenProvider
from correspondence_migrator.exceptions import AuthenticationError


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _token(access: str, refresh: str | None = "refresh-1", expires_in: int = 3600) -> Mock:
    response = Mock()
    response.json.return_value = {"access_token": access, "refresh_token": refresh, "expires_in": expires_in}
    return response


def _provider(session: Mock, clock: FakeClock) -> KeycloakTokenProvider:
    return KeycloakTokenProvider(
        "https://sso.example.com/",
        "records",
        "migrator",
        "svc-user",
        "svc-pass",
        session=session,
        clock=clock,
    )


def _grant(call: Any) -> str:
    return call.kwargs["data"]["grant_type"]


@pytest.mark.unit
class TestKeycloakTokenProvider:
    def test_token_url(self) -> None:
        provider = _provider(Mock(), FakeClock())
        assert provider.token_url == "https://sso.example.com/realms/records/protocol/openid-connect/token"

    def test_password_grant_then_cached(self) -> None:
        session = Mock()
        session.post.return_value = _token("access-1")
        provider = _provider(session, FakeClock())

        assert provider.current_credential() == "access-1"
        assert provider.current_credential() == "access-1"

        session.post.assert_called_once()
        data = session.post.call_args.kwargs["data"]
        assert data == {"client_id": "migrator", "grant_type": "password", "username": "svc-user", "password": "svc-pass"}

    def test_refreshes_inside_the_margin(self) -> None:
        session = Mock()
        session.post.side_effect = [_token("access-1"), _token("access-2")]
        clock = FakeClock()
        provider = _provider(session, clock)
        provider.current_credential()

        clock.now += 3600 - 299

        assert provider.current_credential() == "access-2"
        assert [_grant(call) for call in session.post.call_args_list] == ["password", "refresh_token"]

    def test_not_refreshed_before_the_margin(self) -> None:
        session = Mock()
        session.post.return_value = _token("access-1")
        clock = FakeClock()
        provider = _provider(session, clock)
        provider.current_credential()

        clock.now += 3600 - 301

        provider.current_credential()
        session.post.assert_called_once()

    def test_falls_back_to_password_when_refresh_fails(self) -> None:
        session = Mock()
        rejected = Mock()
        rejected.raise_for_status.side_effect = requests.HTTPError("400 invalid_grant")
        session.post.side_effect = [_token("access-1"), rejected, _token("access-3")]
        clock = FakeClock()
        provider = _provider(session, clock)
        provider.current_credential()
        clock.now += 4000

        assert provider.current_credential() == "access-3"
        assert [_grant(call) for call in session.post.call_args_list] == ["password", "refresh_token", "password"]

    def test_login_failure(self) -> None:
        session = Mock()
        session.post.side_effect = requests.ConnectionError("unreachable")
        with pytest.raises(AuthenticationError, match="unreachable"):
            _provider(session, FakeClock()).current_credential()

    def test_response_without_token(self) -> None:
        session = Mock()
        response = Mock()
        response.json.return_value = {"error": "invalid_client"}
        session.post.return_value = response
        with pytest.raises(AuthenticationError, match="no access_token"):
            _provider(session, FakeClock()).current_credential()

    def test_invalidate_forces_login(self) -> None:
        session = Mock()
        session.post.side_effect = [_token("access-1"), _token("access-2")]
        provider = _provider(session, FakeClock())
        provider.current_credential()

        provider.invalidate()

        assert provider.current_credential() == "access-2"
        assert [_grant(call) for call in session.post.call_args_list] == ["password", "password"]
