"""Unit tests for Twitch token refresh and persistence.

HTTP is mocked with respx; no real network requests are made.
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import httpx
import pytest
import respx

from stream_aggregator.auth.config import TWITCH_TOKEN_URL, TWITCH_VALIDATE_URL
from stream_aggregator.auth.token_refresh import TwitchTokenRefresh
from stream_aggregator.auth.token_store import TokenStore
from stream_aggregator.auth.tokens import AuthToken
from stream_aggregator.core.exceptions import ConfigError
from tests.conftest import settle

_MINUTE_MS = 60_000


def _refresher(clock, token: AuthToken, store=None) -> TwitchTokenRefresh:
    return TwitchTokenRefresh("cid", "secret", token, store=store, clock=clock)


def _token_response(access: str = "new-access", refresh: str = "new-refresh", expires_in: int = 14400):
    return httpx.Response(200, json={"access_token": access, "refresh_token": refresh, "expires_in": expires_in})


class TestNeedsRefresh:
    def test_missing_token(self, clock) -> None:
        assert _refresher(clock, AuthToken()).needs_refresh("") is True

    def test_missing_expiry(self, clock) -> None:
        assert _refresher(clock, AuthToken("a", "r")).needs_refresh("a") is True

    def test_expired(self, clock) -> None:
        token = AuthToken("a", "r", clock.now_ms() - 1)

        assert _refresher(clock, token).needs_refresh("a") is True

    def test_within_threshold(self, clock) -> None:
        token = AuthToken("a", "r", clock.now_ms() + 10 * _MINUTE_MS)

        assert _refresher(clock, token).needs_refresh("a") is True

    def test_plenty_of_time_left(self, clock) -> None:
        token = AuthToken("a", "r", clock.now_ms() + 60 * _MINUTE_MS)

        assert _refresher(clock, token).needs_refresh("a") is False


class TestRefreshToken:
    @pytest.mark.asyncio
    @respx.mock
    async def test_posts_refresh_grant(self, clock) -> None:
        route = respx.post(TWITCH_TOKEN_URL).mock(return_value=_token_response())

        data = await _refresher(clock, AuthToken("a", "r")).refresh_token("r")

        assert data == {"access_token": "new-access", "refresh_token": "new-refresh", "expires_in": 14400}
        body = route.calls.last.request.content.decode()
        assert "grant_type=refresh_token" in body
        assert "refresh_token=r" in body
        assert "client_id=cid" in body

    @pytest.mark.asyncio
    @respx.mock
    async def test_rejected_refresh_returns_none(self, clock) -> None:
        respx.post(TWITCH_TOKEN_URL).mock(return_value=httpx.Response(400, json={"message": "Invalid refresh token"}))
        refresher = _refresher(clock, AuthToken("a", "r"))

        assert await refresher.refresh_token("r") is None
        assert refresher.is_refreshing is False
        stats = refresher.get_refresh_stats()["error_stats"]
        assert stats["error_types"] == {"TokenRefreshError:REFRESH_TOKEN_EXPIRED": 1}

    @pytest.mark.asyncio
    @respx.mock
    async def test_transport_failure_returns_none(self, clock) -> None:
        respx.post(TWITCH_TOKEN_URL).mock(side_effect=httpx.ConnectError("Connection refused"))

        assert await _refresher(clock, AuthToken("a", "r")).refresh_token("r") is None

    @pytest.mark.asyncio
    @pytest.mark.asyncio
    @respx.mock
    async def test_server_error_is_retried(self, clock) -> None:
        route = respx.post(TWITCH_TOKEN_URL).mock(side_effect=[httpx.Response(503), _token_response()])
        refresher = _refresher(clock, AuthToken("a", "r"))

        data = await refresher.refresh_token("r")

        assert data is not None
        assert data["access_token"] == "new-access"
        assert route.call_count == 2
        assert len(clock.sleeps) == 1
        assert 0.8 <= clock.sleeps[0] <= 1.2
        assert refresher.is_refreshing is False

    @pytest.mark.asyncio
    @respx.mock
    async def test_rate_limit_then_network_error_then_success(self, clock) -> None:
        route = respx.post(TWITCH_TOKEN_URL).mock(
            side_effect=[httpx.Response(429), httpx.ConnectError("Connection refused"), _token_response()]
        )

        data = await _refresher(clock, AuthToken("a", "r")).refresh_token("r")

        assert data is not None
        assert route.call_count == 3
        assert len(clock.sleeps) == 2
        assert 1.6 <= clock.sleeps[1] <= 2.4

    @pytest.mark.asyncio
    @respx.mock
    async def test_gives_up_after_three_attempts(self, clock) -> None:
        route = respx.post(TWITCH_TOKEN_URL).mock(return_value=httpx.Response(502))

        assert await _refresher(clock, AuthToken("a", "r")).refresh_token("r") is None
        assert route.call_count == 3

    @pytest.mark.asyncio
    @respx.mock
    async def test_rejected_refresh_is_not_retried(self, clock) -> None:
        route = respx.post(TWITCH_TOKEN_URL).mock(return_value=httpx.Response(400))

        assert await _refresher(clock, AuthToken("a", "r")).refresh_token("r") is None
        assert route.call_count == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_flag_held_during_backoff(self, manual_clock) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(503))
        async with httpx.AsyncClient(transport=transport) as client:
            refresher = TwitchTokenRefresh("cid", "secret", AuthToken("a", "r"), http_client=client, clock=manual_clock)
            task = asyncio.get_running_loop().create_task(refresher.refresh_token("r"))
            await settle(50)

            assert manual_clock.pending_sleeps == 1
            assert refresher.is_refreshing is True
            assert await refresher.refresh_token("r") is None

            await manual_clock.advance_and_settle(10_000, rounds=50)
            await manual_clock.advance_and_settle(10_000, rounds=50)
            assert await task is None
        assert refresher.is_refreshing is False

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self, clock) -> None:
        assert await _refresher(clock, AuthToken("a", "")).refresh_token("") is None

    @pytest.mark.asyncio
    async def test_concurrent_refresh_short_circuits(self, clock) -> None:
        refresher = _refresher(clock, AuthToken("a", "r"))
        refresher.is_refreshing = True

        assert await refresher.refresh_token("r") is None


class TestEnsureValidToken:
    @pytest.mark.asyncio
    @respx.mock
    async def test_near_expiry_refreshes_without_validate(self, clock, token_store: TokenStore) -> None:
        refresh_route = respx.post(TWITCH_TOKEN_URL).mock(return_value=_token_response())
        validate_route = respx.get(TWITCH_VALIDATE_URL).mock(return_value=httpx.Response(200, json={}))
        token = AuthToken("old-access", "old-refresh", clock.now_ms() + 10 * _MINUTE_MS)
        refresher = _refresher(clock, token, token_store)

        assert await refresher.ensure_valid_token() is True

        assert refresh_route.call_count == 1
        assert validate_route.call_count == 0
        assert token.access_token == "new-access"
        assert token.refresh_token == "new-refresh"
        assert token.expires_at == clock.now_ms() + 14400 * 1000
        stored = token_store.load_tokens()
        assert stored.access_token == "new-access"
        assert stored.refresh_token == "new-refresh"

    @pytest.mark.asyncio
    @respx.mock
    async def test_valid_token_is_left_alone(self, clock) -> None:
        route = respx.post(TWITCH_TOKEN_URL).mock(return_value=_token_response())
        token = AuthToken("a", "r", clock.now_ms() + 60 * _MINUTE_MS)

        assert await _refresher(clock, token).ensure_valid_token() is True
        assert route.call_count == 0

    @pytest.mark.asyncio
    @respx.mock
    async def test_refresh_failure_never_raises(self, clock) -> None:
        respx.post(TWITCH_TOKEN_URL).mock(return_value=httpx.Response(500))
        token = AuthToken("a", "r", clock.now_ms() - 1)

        assert await _refresher(clock, token).ensure_valid_token() is True
        assert token.access_token == "a"


class TestUpdateConfig:
    @pytest.mark.asyncio
    async def test_rejects_token_data_without_access_token(self, clock) -> None:
        refresher = _refresher(clock, AuthToken("a", "r"))

        assert await refresher.update_config({"refresh_token": "x"}) is False
        assert await refresher.update_config(None) is False

    @pytest.mark.asyncio
    async def test_persist_failure_rolls_back_memory(self, clock) -> None:
        store = MagicMock(spec=TokenStore)
        store.save_tokens.side_effect = OSError("read-only file system")
        original_expiry = clock.now_ms() + 5 * _MINUTE_MS
        token = AuthToken("old-access", "old-refresh", original_expiry)
        refresher = _refresher(clock, token, store)

        with pytest.raises(ConfigError) as excinfo:
            await refresher.update_config(
                {"access_token": "new-access", "refresh_token": "new-refresh", "expires_in": 3600}
            )

        assert excinfo.value.code == "CONFIG_UPDATE_FAILED"
        assert excinfo.value.context["rollback_applied"] is True
        assert token == AuthToken("old-access", "old-refresh", original_expiry)
        assert store.save_tokens.call_count == 3
        assert clock.sleeps == [1.0, 2.0]
        assert refresher.refresh_failure_count == 1

    @pytest.mark.asyncio
    async def test_persist_succeeds_on_retry(self, clock, token_store: TokenStore) -> None:
        store = MagicMock(spec=TokenStore)
        store.save_tokens.side_effect = [OSError("busy"), None]
        refresher = _refresher(clock, AuthToken("a", "r"), store)

        assert await refresher.update_config({"access_token": "b", "expires_in": 60}) is True
        assert refresher.token.access_token == "b"
        assert refresher.token.refresh_token == "r"
        assert clock.sleeps == [1.0]

    @pytest.mark.asyncio
    async def test_missing_store_fails_without_retry(self, clock) -> None:
        refresher = _refresher(clock, AuthToken("a", "r"))

        with pytest.raises(ConfigError):
            await refresher.update_config({"access_token": "b"})

        assert clock.sleeps == []
        assert refresher.token.access_token == "a"


class TestStats:
    @pytest.mark.asyncio
    async def test_health_degrades_after_failures(self, clock) -> None:
        refresher = _refresher(clock, AuthToken("a", "r"))
        refresher.refresh_failure_count = 4

        health = refresher.get_health_status()

        assert health["healthy"] is False
        assert "High failure rate detected" in health["issues"]

    def test_reset_stats(self, clock) -> None:
        refresher = _refresher(clock, AuthToken("a", "r"))
        refresher.refresh_success_count = 2

        refresher.reset_stats()

        assert refresher.get_refresh_stats()["success_count"] == 0
