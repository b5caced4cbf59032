"""Twitch authentication state machine and proactive refresh scheduling.

:class:`TwitchAuthManager` validates the configured credentials once with
``/validate`` at start-up, then keeps the access token fresh with a one-shot
timer set 15 minutes before expiry (never more than 3 hours ahead).  Each
timer firing refreshes the token and re-arms the timer from the new expiry,
so ``/validate`` is not called again after initialization.  Reactive
refresh on 401 is available through :attr:`TwitchAuthManager.reactive`.

State machine::

    UNINITIALIZED -> INITIALIZING -> READY <-> REFRESHING
          ^               |            |
          |               v            |
          +------------ ERROR <--------+
    READY --update_config--> UNINITIALIZED

Usage::

    manager = TwitchAuthManager(config, store=TokenStore(settings.token_store_path))
    await manager.initialize()
    token = manager.get_access_token()
    ...
    await manager.cleanup()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from stream_aggregator.auth.config import (
    DEFAULT_EXPIRES_IN_SECONDS,
    TWITCH_VALIDATE_URL,
)
from stream_aggregator.auth.error_handling import ErrorHandler, status_code_of
from stream_aggregator.auth.reactive import ReactiveTokenRefresh
from stream_aggregator.auth.token_refresh import TwitchTokenRefresh
from stream_aggregator.auth.token_store import TokenStore
from stream_aggregator.auth.tokens import AuthToken
from stream_aggregator.config.platforms import TwitchPlatformConfig
from stream_aggregator.config.settings import Settings, get_settings
from stream_aggregator.core.clock import Clock, SystemClock
from stream_aggregator.core.exceptions import AuthError, ConfigError
from stream_aggregator.core.http import client_scope
from stream_aggregator.core.state import PlatformState
from stream_aggregator.core.timeouts import Criticality, timeout_for

logger = logging.getLogger(__name__)

OAuthFlow = Callable[["TwitchAuthManager"], Awaitable["dict[str, Any] | None"]]
"""Interactive authorization callback returning ``{access_token, refresh_token, expires_in}``."""


class TwitchAuthManager:
    """Own the Twitch token, its validation and its proactive refresh.

    Args:
        config: Twitch platform configuration (channel, client id, tokens).
        settings: Process settings; the client secret and
            ``twitch_disable_auth`` are read from here.
        store: Token store used for persistence and as a fallback source
            when *config* carries no tokens.
        http_client: Optional injected client for ``/validate`` and refresh.
        clock: Time source for expiry arithmetic and the refresh timer.
        error_handler: Shared error handler.
        oauth_flow: Interactive authorization callback used when no access
            token is available; without one, initialization fails with
            ``OAUTH_REQUIRED``.
    """

    def __init__(
        self,
        config: TwitchPlatformConfig,
        *,
        settings: Settings | None = None,
        store: TokenStore | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock | None = None,
        error_handler: ErrorHandler | None = None,
        oauth_flow: OAuthFlow | None = None,
    ) -> None:
        self.config = config.model_copy(deep=True)
        self._settings = settings or get_settings()
        self._store = store
        self._http_client = http_client
        self._clock = clock or SystemClock()
        self._error_handler = error_handler or ErrorHandler(clock=self._clock)
        self._oauth_flow = oauth_flow

        self.state = PlatformState.UNINITIALIZED
        self.last_error: BaseException | None = None
        self.user_id: str | None = None
        self.login: str | None = None
        self._refresh_task: asyncio.Task[None] | None = None
        self._refresher: TwitchTokenRefresh | None = None
        self._reactive: ReactiveTokenRefresh | None = None

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    @property
    def client_secret(self) -> str:
        extra = getattr(self.config, "client_secret", None)
        return self._settings.twitch_client_secret or (extra or "")

    @property
    def client_id(self) -> str:
        return self.config.client_id or self._settings.twitch_client_id

    @property
    def refresher(self) -> TwitchTokenRefresh:
        if self._refresher is None:
            self._refresher = TwitchTokenRefresh(
                self.client_id,
                self.client_secret,
                AuthToken(
                    access_token=self.config.access_token,
                    refresh_token=self.config.refresh_token,
                    expires_at=self.config.expires_at,
                ),
                store=self._store,
                http_client=self._http_client,
                clock=self._clock,
                error_handler=self._error_handler,
                persist_attempts=self._settings.token_persist_attempts,
                refresh_threshold_seconds=self._settings.token_refresh_threshold_seconds,
            )
        return self._refresher

    @property
    def reactive(self) -> ReactiveTokenRefresh:
        if self._reactive is None:
            self._reactive = ReactiveTokenRefresh(self.refresher, error_handler=self._error_handler)
        return self._reactive

    @property
    def token(self) -> AuthToken:
        return self.refresher.token

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def validate_config(self) -> None:
        """Raise :class:`ConfigError` when required configuration is missing."""
        missing: list[str] = []
        if not self.client_id:
            missing.append("client_id")
        if not self.config.channel:
            missing.append("channel")
        if not self.client_secret:
            missing.append("client_secret")
        if missing:
            raise ConfigError(
                f"Missing required configuration: {', '.join(missing)}",
                code="CONFIG_MISSING",
                missing_fields=missing,
            )
        if not self.config.access_token:
            logger.info("twitch_auth: access token missing — OAuth flow required")
        elif not self.config.refresh_token:
            logger.debug("twitch_auth: no refresh token — automatic refresh unavailable")

    async def initialize(self) -> None:
        """Validate credentials and arm the proactive refresh timer.

        A no-op when already ``READY`` or ``INITIALIZING``.

        Raises:
            ConfigError: Required configuration is missing, or the token
                belongs to a different user than the configured username.
            AuthError: The token could not be validated or refreshed.
        """
        if self.state in (PlatformState.READY, PlatformState.INITIALIZING):
            logger.debug("twitch_auth: initialize skipped — state=%s", self.state.value)
            return

        self.state = PlatformState.INITIALIZING
        self.last_error = None
        try:
            if self._settings.twitch_disable_auth:
                logger.warning("twitch_auth: authentication disabled by TWITCH_DISABLE_AUTH")
                self.state = PlatformState.READY
                return

            self.validate_config()
            await self._load_stored_tokens()
            if not self.token.access_token:
                await self._run_oauth_flow()

            validation = await self._validate_with_refresh()
            self._apply_validation(validation)

            expires_in = validation.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS
            if expires_in < self._settings.token_refresh_threshold_seconds and self.token.refresh_token:
                logger.info(
                    "twitch_auth: token expires within threshold — refreshing now (minutes=%d)",
                    round(expires_in / 60),
                )
                await self._refresh_now()

            self.schedule_token_refresh()
            self.state = PlatformState.READY
            logger.info("twitch_auth: initialized for user %s (id=%s)", self.login, self.user_id)
        except Exception as exc:
            self.state = PlatformState.ERROR
            self.last_error = exc
            logger.error("twitch_auth: initialization failed — %s", exc)
            raise

    async def _load_stored_tokens(self) -> None:
        if self.token.access_token or self._store is None:
            return
        stored = await asyncio.to_thread(self._store.load_tokens)
        if stored is None:
            return
        self.token.access_token = stored.access_token
        self.token.refresh_token = stored.refresh_token or self.token.refresh_token
        self.token.expires_at = stored.expires_at
        logger.debug("twitch_auth: loaded tokens from token store")

    async def _run_oauth_flow(self) -> None:
        if self._oauth_flow is None:
            raise AuthError(
                "OAuth flow required - user intervention needed",
                code="OAUTH_REQUIRED",
                needs_new_tokens=True,
            )
        token_data = await self._oauth_flow(self)
        if not token_data or not await self.refresher.update_config(token_data):
            raise AuthError(
                "OAuth flow did not return usable tokens",
                code="OAUTH_FAILED",
                needs_new_tokens=True,
            )

    async def _validate_token(self) -> dict[str, Any]:
        timeout = timeout_for("validate", Criticality.IMMEDIATE)
        async with client_scope(self._http_client, timeout=timeout) as client:
            response = await client.get(
                TWITCH_VALIDATE_URL,
                headers={"Authorization": f"Bearer {self.token.access_token}"},
                timeout=timeout,
            )
            response.raise_for_status()
            data = response.json()
        if not data.get("user_id") or not data.get("login"):
            raise AuthError("Token validation response missing user_id or login", code="INVALID_VALIDATION")
        return data

    async def _validate_with_refresh(self) -> dict[str, Any]:
        try:
            return await self._validate_token()
        except httpx.HTTPStatusError as exc:
            if status_code_of(exc) != 401 or not self.token.refresh_token:
                raise self._error_handler.report(exc, {"operation_name": "validate_token"}) from exc
            logger.info("twitch_auth: token rejected by /validate — refreshing before retry")
            await self._refresh_now()
            return await self._validate_token()
        except httpx.HTTPError as exc:
            raise self._error_handler.report(exc, {"operation_name": "validate_token"}) from exc

    def _apply_validation(self, data: dict[str, Any]) -> None:
        login = str(data["login"])
        expected = self.config.username or self.config.channel
        if expected and login.lower() != expected.lower():
            raise ConfigError(
                f"Token belongs to {login}, expected {expected}",
                code="USERNAME_MISMATCH",
            )
        self.user_id = str(data["user_id"])
        self.login = login
        expires_in = data.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS
        self.token.expires_at = self._clock.now_ms() + int(expires_in) * 1000

    async def _refresh_now(self, context: dict[str, Any] | None = None) -> bool:
        token_data = await self.refresher.refresh_token(self.token.refresh_token, context)
        if not token_data:
            return False
        return await self.refresher.update_config(token_data)

    # ------------------------------------------------------------------
    # Proactive refresh
    # ------------------------------------------------------------------

    def schedule_token_refresh(self) -> None:
        """Arm the one-shot refresh timer from the current ``expires_at``.

        Any previously armed timer is cancelled.  Nothing is scheduled when
        the expiry is unknown.
        """
        current = asyncio.current_task()
        if self._refresh_task is not None and self._refresh_task is not current:
            self._refresh_task.cancel()
        self._refresh_task = None

        expires_at = self.token.expires_at
        if not expires_at:
            logger.debug("twitch_auth: no token expiry — refresh not scheduled")
            return

        threshold_ms = self._settings.token_refresh_threshold_seconds * 1000
        cap_ms = int(self._settings.token_refresh_max_schedule_hours * 3_600_000)
        delay_ms = min(expires_at - threshold_ms - self._clock.now_ms(), cap_ms)
        if delay_ms <= 0:
            logger.info("twitch_auth: token inside refresh buffer — refreshing immediately")
            delay_ms = 0
        else:
            logger.debug("twitch_auth: token refresh scheduled in %d minutes", round(delay_ms / 60000))
        self._refresh_task = asyncio.get_running_loop().create_task(
            self._refresh_after(delay_ms / 1000.0),
            name="twitch-token-refresh",
        )

    async def _refresh_after(self, delay_s: float) -> None:
        await self._clock.sleep(delay_s)
        await self.perform_automatic_refresh()

    async def perform_automatic_refresh(self) -> bool:
        """Timer body: refresh, then re-arm from the new expiry on success."""
        previous = self.state
        self.state = PlatformState.REFRESHING
        try:
            refreshed = await self._refresh_now({"background": True})
        except Exception as exc:  # noqa: BLE001
            self.last_error = exc
            self._error_handler.report(exc, {"operation_name": "automatic_refresh"})
            refreshed = False
        finally:
            if self.state == PlatformState.REFRESHING:
                self.state = previous

        if refreshed:
            logger.info("twitch_auth: automatic token refresh succeeded")
            self.schedule_token_refresh()
        else:
            logger.warning("twitch_auth: automatic token refresh failed — relying on reactive refresh")
        return refreshed

    async def ensure_valid_token(self) -> bool:
        return await self.refresher.ensure_valid_token()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def _require_ready(self) -> None:
        if self.state not in (PlatformState.READY, PlatformState.REFRESHING):
            raise AuthError(
                "Authentication not initialized. Call initialize() first.",
                code="NOT_INITIALIZED",
            )

    def get_access_token(self) -> str:
        self._require_ready()
        return self.token.access_token

    def get_user_id(self) -> str | None:
        self._require_ready()
        return self.user_id

    def get_status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "has_token": bool(self._refresher and self._refresher.token.access_token),
            "user_id": self.user_id,
            "login": self.login,
            "config_valid": self.state != PlatformState.ERROR,
            "last_error": str(self.last_error) if self.last_error else None,
            "expires_at": self._refresher.token.expires_at if self._refresher else None,
            "refresh_scheduled": self._refresh_task is not None and not self._refresh_task.done(),
        }

    # ------------------------------------------------------------------
    # Reconfiguration and teardown
    # ------------------------------------------------------------------

    def update_config(self, new_config: TwitchPlatformConfig) -> None:
        """Replace the configuration and return to ``UNINITIALIZED``."""
        self._cancel_refresh_task()
        self.config = new_config.model_copy(deep=True)
        self.state = PlatformState.UNINITIALIZED
        self.last_error = None
        self.user_id = None
        self.login = None
        self._refresher = None
        self._reactive = None
        logger.debug("twitch_auth: configuration updated — state reset to UNINITIALIZED")

    def _cancel_refresh_task(self) -> asyncio.Task[None] | None:
        task, self._refresh_task = self._refresh_task, None
        if task is not None and not task.done():
            task.cancel()
        return task

    async def cleanup(self) -> None:
        """Cancel the refresh timer and reset to ``UNINITIALIZED``.  Idempotent."""
        task = self._cancel_refresh_task()
        if task is not None and task is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._refresher is not None:
            self._refresher.cleanup()
        self.state = PlatformState.UNINITIALIZED
        self.last_error = None
        logger.debug("twitch_auth: cleaned up")
