"""Unit tests for TwitchAuthManager and the OAuth helpers.

The proactive refresh timer sleeps on a manual FakeClock so tests decide
when it fires.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import respx

from stream_aggregator.auth.config import TWITCH_REVOKE_URL, TWITCH_TOKEN_URL, TWITCH_VALIDATE_URL
from stream_aggregator.auth.manager import TwitchAuthManager
from stream_aggregator.auth.oauth import build_authorize_url, exchange_code, open_authorize_url, revoke_token
from stream_aggregator.auth.token_store import TokenStore
from stream_aggregator.auth.tokens import AuthToken
from stream_aggregator.config.platforms import TwitchPlatformConfig
from stream_aggregator.config.settings import Settings
from stream_aggregator.core.exceptions import AuthError, ConfigError, TokenRefreshError
from stream_aggregator.core.state import PlatformState
from tests.conftest import settle

_HOUR_MS = 3_600_000


def _settings(**overrides) -> Settings:
    values = {"twitch_client_id": "cid", "twitch_client_secret": "secret", "app_env": "test"}
    values.update(overrides)
    return Settings(**values)


def _config(**overrides) -> TwitchPlatformConfig:
    values = {
        "enabled": True,
        "channel": "streamer",
        "username": "streamer",
        "access_token": "tok",
        "refresh_token": "ref",
    }
    values.update(overrides)
    return TwitchPlatformConfig(**values)


def _validate_ok(expires_in: int = 14400, login: str = "streamer") -> httpx.Response:
    return httpx.Response(
        200,
        json={"client_id": "cid", "login": login, "user_id": "42", "expires_in": expires_in, "scopes": []},
    )


def _manager(clock, token_store=None, **kwargs) -> TwitchAuthManager:
    settings = kwargs.pop("settings", _settings())
    config = kwargs.pop("config", _config())
    return TwitchAuthManager(config, settings=settings, store=token_store, clock=clock, **kwargs)


class TestInitialize:
    """Initialization validates once and arms the refresh timer."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_ready_after_validation(self, manual_clock, token_store: TokenStore) -> None:
        respx.get(TWITCH_VALIDATE_URL).mock(return_value=_validate_ok())
        manager = _manager(manual_clock, token_store)

        await manager.initialize()

        assert manager.state is PlatformState.READY
        assert manager.get_access_token() == "tok"
        assert manager.get_user_id() == "42"
        status = manager.get_status()
        assert status["login"] == "streamer"
        assert status["refresh_scheduled"] is True
        assert status["expires_at"] == manual_clock.now_ms() + 4 * _HOUR_MS
        await manager.cleanup()

    @pytest.mark.asyncio
    @respx.mock
    async def test_initialize_is_idempotent(self, manual_clock, token_store: TokenStore) -> None:
        route = respx.get(TWITCH_VALIDATE_URL).mock(return_value=_validate_ok())
        manager = _manager(manual_clock, token_store)

        await manager.initialize()
        await manager.initialize()

        assert route.call_count == 1
        await manager.cleanup()

    @pytest.mark.asyncio
    async def test_missing_configuration(self, manual_clock) -> None:
        manager = _manager(manual_clock, config=_config(channel=""))

        with pytest.raises(ConfigError) as excinfo:
            await manager.initialize()

        assert excinfo.value.missing_fields == ["channel"]
        assert manager.state is PlatformState.ERROR
        assert manager.get_status()["config_valid"] is False

    @pytest.mark.asyncio
    @respx.mock
    async def test_username_mismatch(self, manual_clock, token_store: TokenStore) -> None:
        respx.get(TWITCH_VALIDATE_URL).mock(return_value=_validate_ok(login="someone_else"))
        manager = _manager(manual_clock, token_store)

        with pytest.raises(ConfigError) as excinfo:
            await manager.initialize()

        assert excinfo.value.code == "USERNAME_MISMATCH"
        assert manager.state is PlatformState.ERROR

    @pytest.mark.asyncio
    async def test_auth_disabled_skips_network(self, manual_clock) -> None:
        manager = _manager(manual_clock, settings=_settings(twitch_disable_auth=True))

        await manager.initialize()

        assert manager.state is PlatformState.READY

    @pytest.mark.asyncio
    async def test_no_token_without_oauth_flow(self, manual_clock) -> None:
        manager = _manager(manual_clock, config=_config(access_token="", refresh_token=""))

        with pytest.raises(AuthError) as excinfo:
            await manager.initialize()

        assert excinfo.value.code == "OAUTH_REQUIRED"

    @pytest.mark.asyncio
    @respx.mock
    async def test_oauth_flow_supplies_tokens(self, manual_clock, token_store: TokenStore) -> None:
        respx.get(TWITCH_VALIDATE_URL).mock(return_value=_validate_ok())
        flow = AsyncMock(return_value={"access_token": "oauth-tok", "refresh_token": "oauth-ref", "expires_in": 14400})
        manager = _manager(
            manual_clock,
            token_store,
            config=_config(access_token="", refresh_token=""),
            oauth_flow=flow,
        )

        await manager.initialize()

        flow.assert_awaited_once_with(manager)
        assert manager.get_access_token() == "oauth-tok"
        assert token_store.load_tokens().refresh_token == "oauth-ref"
        await manager.cleanup()

    @pytest.mark.asyncio
    @respx.mock
    async def test_stored_tokens_used_when_config_has_none(self, manual_clock, token_store: TokenStore) -> None:
        token_store.save_tokens(AuthToken("stored-tok", "stored-ref"))
        route = respx.get(TWITCH_VALIDATE_URL).mock(return_value=_validate_ok())
        manager = _manager(manual_clock, token_store, config=_config(access_token="", refresh_token=""))

        await manager.initialize()

        assert route.calls.last.request.headers["Authorization"] == "Bearer stored-tok"
        assert manager.token.refresh_token == "stored-ref"
        await manager.cleanup()

    @pytest.mark.asyncio
    @respx.mock
    async def test_validate_401_refreshes_then_retries(self, manual_clock, token_store: TokenStore) -> None:
        validate = respx.get(TWITCH_VALIDATE_URL).mock(side_effect=[httpx.Response(401), _validate_ok()])
        respx.post(TWITCH_TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "new", "refresh_token": "new-r", "expires_in": 14400})
        )
        manager = _manager(manual_clock, token_store)

        await manager.initialize()

        assert validate.call_count == 2
        assert validate.calls.last.request.headers["Authorization"] == "Bearer new"
        assert manager.state is PlatformState.READY
        await manager.cleanup()

    @pytest.mark.asyncio
    @respx.mock
    async def test_short_lived_token_refreshed_immediately(self, manual_clock, token_store: TokenStore) -> None:
        respx.get(TWITCH_VALIDATE_URL).mock(return_value=_validate_ok(expires_in=300))
        refresh = respx.post(TWITCH_TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "new", "refresh_token": "new-r", "expires_in": 14400})
        )
        manager = _manager(manual_clock, token_store)

        await manager.initialize()

        assert refresh.call_count == 1
        assert manager.get_access_token() == "new"
        await manager.cleanup()


class TestProactiveRefresh:
    """The timer refreshes without calling /validate and re-arms itself."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_timer_refreshes_and_rearms(self, manual_clock, token_store: TokenStore) -> None:
        validate = respx.get(TWITCH_VALIDATE_URL).mock(return_value=_validate_ok(expires_in=2 * 3600))
        respx.post(TWITCH_TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "new", "refresh_token": "new-r", "expires_in": 14400})
        )
        manager = _manager(manual_clock, token_store)
        await manager.initialize()
        first_timer = manager._refresh_task
        await asyncio.sleep(0)
        assert manual_clock.sleeps == [2 * 3600 - 900]

        manual_clock.advance((2 * 3600 - 900) * 1000)
        await asyncio.wait_for(first_timer, timeout=5)

        assert manager.get_access_token() == "new"
        assert validate.call_count == 1
        assert manager._refresh_task is not first_timer
        assert manager.get_status()["refresh_scheduled"] is True
        assert manager.state is PlatformState.READY
        await manager.cleanup()

    @pytest.mark.asyncio
    @respx.mock
    async def test_schedule_capped_at_three_hours(self, manual_clock, token_store: TokenStore) -> None:
        respx.get(TWITCH_VALIDATE_URL).mock(return_value=_validate_ok(expires_in=24 * 3600))
        manager = _manager(manual_clock, token_store)

        await manager.initialize()
        await asyncio.sleep(0)

        assert manual_clock.sleeps == [3 * 3600]
        await manager.cleanup()

    @pytest.mark.asyncio
    @respx.mock
    async def test_failed_automatic_refresh_keeps_state(self, manual_clock, token_store: TokenStore) -> None:
        respx.get(TWITCH_VALIDATE_URL).mock(return_value=_validate_ok())
        respx.post(TWITCH_TOKEN_URL).mock(return_value=httpx.Response(500))
        manager = _manager(manual_clock, token_store)
        await manager.initialize()

        task = asyncio.get_running_loop().create_task(manager.perform_automatic_refresh())
        for _ in range(2):
            await settle(50)
            await manual_clock.advance_and_settle(10_000, rounds=50)

        assert await task is False

        assert manager.state is PlatformState.READY
        assert manager.get_access_token() == "tok"
        await manager.cleanup()


class TestAccessorsAndTeardown:
    def test_access_before_initialize(self, manual_clock) -> None:
        with pytest.raises(AuthError) as excinfo:
            _manager(manual_clock).get_access_token()

        assert excinfo.value.code == "NOT_INITIALIZED"

    @pytest.mark.asyncio
    @respx.mock
    async def test_update_config_resets_state(self, manual_clock, token_store: TokenStore) -> None:
        respx.get(TWITCH_VALIDATE_URL).mock(return_value=_validate_ok())
        manager = _manager(manual_clock, token_store)
        await manager.initialize()

        manager.update_config(_config(access_token="other"))

        assert manager.state is PlatformState.UNINITIALIZED
        assert manager.get_status()["refresh_scheduled"] is False
        assert manager.token.access_token == "other"

    @pytest.mark.asyncio
    @respx.mock
    async def test_cleanup_is_idempotent(self, manual_clock, token_store: TokenStore) -> None:
        respx.get(TWITCH_VALIDATE_URL).mock(return_value=_validate_ok())
        manager = _manager(manual_clock, token_store)
        await manager.initialize()

        await manager.cleanup()
        await manager.cleanup()

        assert manager.state is PlatformState.UNINITIALIZED
        assert manager.get_status()["refresh_scheduled"] is False


class TestOAuthHelpers:
    def test_authorize_url(self) -> None:
        url = build_authorize_url("cid", "http://localhost:3000", state="abc")

        query = parse_qs(urlparse(url).query)
        assert query["client_id"] == ["cid"]
        assert query["response_type"] == ["code"]
        assert query["state"] == ["abc"]
        assert "bits:read" in query["scope"][0].split(" ")

    def test_generated_state_prefix(self) -> None:
        query = parse_qs(urlparse(build_authorize_url("cid", "http://localhost:3000")).query)

        assert query["state"][0].startswith("cb_")

    def test_redirect_uri_defaults_to_setting(self, monkeypatch) -> None:
        monkeypatch.setattr(
            "stream_aggregator.auth.oauth.get_settings",
            lambda: _settings(twitch_redirect_uri="http://localhost:4000/callback"),
        )

        query = parse_qs(urlparse(build_authorize_url("cid", state="abc")).query)

        assert query["redirect_uri"] == ["http://localhost:4000/callback"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_exchange_code_uses_configured_redirect_uri(self, monkeypatch) -> None:
        monkeypatch.setattr(
            "stream_aggregator.auth.oauth.get_settings",
            lambda: _settings(twitch_redirect_uri="http://localhost:4000/callback"),
        )
        route = respx.post(TWITCH_TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "a", "refresh_token": "r", "expires_in": 100})
        )

        await exchange_code("the-code", "cid", "secret")

        form = parse_qs(route.calls.last.request.content.decode())
        assert form["redirect_uri"] == ["http://localhost:4000/callback"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_exchange_code(self) -> None:
        route = respx.post(TWITCH_TOKEN_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "a", "refresh_token": "r", "expires_in": 100})
        )

        tokens = await exchange_code("the-code", "cid", "secret", "http://localhost:3000")

        assert tokens == {"access_token": "a", "refresh_token": "r", "expires_in": 100}
        assert "grant_type=authorization_code" in route.calls.last.request.content.decode()

    @pytest.mark.asyncio
    @respx.mock
    async def test_exchange_code_without_refresh_token(self) -> None:
        respx.post(TWITCH_TOKEN_URL).mock(return_value=httpx.Response(200, json={"access_token": "a"}))

        with pytest.raises(TokenRefreshError):
            await exchange_code("the-code", "cid", "secret", "http://localhost:3000")

    @pytest.mark.asyncio
    @respx.mock
    async def test_revoke_failure_returns_false(self) -> None:
        respx.post(TWITCH_REVOKE_URL).mock(return_value=httpx.Response(400))

        assert await revoke_token("tok", "cid") is False

    def test_browser_not_opened_in_test_env(self, settings) -> None:
        assert settings.is_test is True
        assert open_authorize_url("https://example.invalid") is False
