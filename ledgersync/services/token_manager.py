"""
OAuth token lifecycle management for provider integrations.

The token manager owns three things:
- health checks (pure reads over the stored token set)
- refreshes, including failure bookkeeping on the integration
- per-integration mutual exclusion, so concurrent importers never issue
  parallel refreshes with the same (rotating) refresh token: an asyncio lock
  within the process plus, when configured, a Redis lock across worker
  processes
"""

import asyncio
import math
import weakref
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Optional, Protocol

import structlog
from pydantic import BaseModel

from ledgersync.config import Settings
from ledgersync.errors import (
    AuthenticationRequiredError,
    IntegrationNotFoundError,
    InvalidAuthError,
    ProviderAPIError,
    RateLimitError,
    TokenRefreshError,
)
from ledgersync.models.enums import IntegrationStatus
from ledgersync.models.integration import AuthPayload, Integration
from ledgersync.services.refresh_lock import RedisRefreshLock
from ledgersync.storage.base import StorageBackend
from ledgersync.utils.dates import ensure_utc, utc_now

logger = structlog.get_logger()


class OAuthRefresher(Protocol):
    async def refresh_access_token(self, refresh_token: str) -> dict[str, Any]: ...


class TokenHealth(BaseModel):
    """
    Result of a token health check.

    Attributes:
        is_valid: Access token present and not yet expired
        needs_refresh: Remaining lifetime is within the refresh buffer
        needs_reauth: The user must re-authorize; refreshing will not help
        seconds_until_expiry: Remaining lifetime (negative once expired)
        consecutive_failures: Refresh failures since the last success
        expires_at: Resolved absolute expiry
        error: Why the token is not usable, if it is not
    """

    is_valid: bool
    needs_refresh: bool
    needs_reauth: bool = False
    seconds_until_expiry: int = 0
    consecutive_failures: int = 0
    expires_at: Optional[datetime] = None
    error: Optional[str] = None


class TokenRefreshResult(BaseModel):
    success: bool
    auth: Optional[AuthPayload] = None
    error: Optional[str] = None
    needs_reauth: bool = False
    consecutive_failures: int = 0


class TokenLifecycleManager:
    """
    Checks and refreshes integration tokens.

    Attributes:
        storage: Persistence for integrations
        oauth_client: Provider client able to exchange refresh tokens
        refresh_buffer_seconds: Refresh when less lifetime than this remains
        failure_limit: Consecutive failures after which re-auth is required
        refresh_lock: Cross-process lock held around every refresh, if any
    """

    def __init__(
        self,
        storage: StorageBackend,
        oauth_client: OAuthRefresher,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
        refresh_lock: Optional[RedisRefreshLock] = None,
    ):
        self.storage = storage
        self.oauth_client = oauth_client
        self.refresh_lock = refresh_lock
        self.refresh_buffer_seconds = settings.token_refresh_buffer_seconds
        self.default_expiry_seconds = settings.token_default_expiry_seconds
        self.failure_limit = settings.token_consecutive_failure_limit
        self._clock = clock
        # Entries vanish once no refresh holds or waits on them
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, integration_id: str) -> asyncio.Lock:
        lock = self._locks.get(integration_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[integration_id] = lock
        return lock

    @asynccontextmanager
    async def _refresh_guard(self, integration_id: str) -> AsyncIterator[None]:
        async with self._lock_for(integration_id):
            if self.refresh_lock is None:
                yield
                return
            async with self.refresh_lock.hold(integration_id):
                yield

    # =========================================================================
    # Health
    # =========================================================================

    def check_health(self, integration: Integration, now: Optional[datetime] = None) -> TokenHealth:
        """
        Evaluate the stored token set. Pure read, no side effects.

        Args:
            integration: Integration to evaluate
            now: Evaluation time (defaults to the manager's clock)

        Returns:
            TokenHealth report
        """
        now = ensure_utc(now or self._clock())
        failures = integration.consecutive_refresh_failures
        needs_reauth = integration.reauth_required or failures >= self.failure_limit
        auth = integration.auth

        if auth is None or not auth.access_token:
            return TokenHealth(
                is_valid=False,
                needs_refresh=bool(auth and auth.refresh_token),
                needs_reauth=needs_reauth or not (auth and auth.refresh_token),
                consecutive_failures=failures,
                error="No access token stored",
            )

        expires_at = auth.resolve_expiry()
        if expires_at is None:
            # Unknown expiry: treat as expired so the next caller refreshes
            return TokenHealth(
                is_valid=False,
                needs_refresh=True,
                needs_reauth=needs_reauth or not auth.refresh_token,
                consecutive_failures=failures,
                error="Token expiry unknown",
            )

        expires_at = ensure_utc(expires_at)
        seconds = math.floor((expires_at - now).total_seconds())
        is_valid = seconds > 0

        return TokenHealth(
            is_valid=is_valid,
            needs_refresh=seconds <= self.refresh_buffer_seconds,
            needs_reauth=needs_reauth or not auth.refresh_token,
            seconds_until_expiry=seconds,
            consecutive_failures=failures,
            expires_at=expires_at,
            error=None if is_valid else "Access token expired",
        )

    def validate_auth(self, integration: Integration) -> TokenHealth:
        """
        Ensure the integration can be used for a sync at all.

        Returns:
            TokenHealth of the integration

        Raises:
            InvalidAuthError: If the stored auth payload is incomplete
            AuthenticationRequiredError: If re-authorization is required
        """
        if not integration.has_valid_auth():
            raise InvalidAuthError(
                "Integration has no valid authentication data",
                context={"integration_id": integration.id},
            )
        health = self.check_health(integration)
        if health.needs_reauth:
            raise AuthenticationRequiredError(
                "Integration requires re-authentication",
                context={
                    "integration_id": integration.id,
                    "consecutive_failures": health.consecutive_failures,
                },
            )
        return health

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh_tokens(self, integration: Integration) -> TokenRefreshResult:
        """
        Refresh the integration's tokens unconditionally.

        Serialized per integration. The stored integration is re-read after
        the lock is taken so the latest (rotated) refresh token is used.

        Args:
            integration: Integration to refresh

        Returns:
            TokenRefreshResult; refresh failures are reported, not raised

        Raises:
            TokenRefreshError: If the cross-process refresh lock was not taken
        """
        async with self._refresh_guard(integration.id):
            current = self.storage.get_integration(integration.id) or integration
            return await self._refresh_locked(current)

    async def ensure_valid_token(self, integration_id: str, force: bool = False) -> Integration:
        """
        Return the integration with a usable access token, refreshing if needed.

        Concurrent callers that all see `needs_refresh` queue on the
        integration's lock; the first performs the refresh and the others
        find a fresh token when they re-check under the lock.

        Args:
            integration_id: Integration to prepare
            force: Refresh even if the token still looks fresh (e.g. after a 401)

        Returns:
            Integration with a fresh token set

        Raises:
            IntegrationNotFoundError: If the integration does not exist
            AuthenticationRequiredError: If re-authorization is required
            TokenRefreshError: If a transient refresh failure occurred
        """
        integration = self._load(integration_id)
        health = self.check_health(integration)
        if health.needs_reauth:
            raise AuthenticationRequiredError(
                "Integration requires re-authentication",
                context={"integration_id": integration_id},
            )
        if not force and not health.needs_refresh:
            return integration

        stale_token = integration.auth.access_token if integration.auth else None

        async with self._refresh_guard(integration_id):
            integration = self._load(integration_id)
            health = self.check_health(integration)
            if health.needs_reauth:
                raise AuthenticationRequiredError(
                    "Integration requires re-authentication",
                    context={"integration_id": integration_id},
                )
            refreshed_meanwhile = integration.auth is not None and integration.auth.access_token != stale_token
            if not health.needs_refresh and (not force or refreshed_meanwhile):
                logger.debug("token_refresh_skipped", integration_id=integration_id)
                return integration

            result = await self._refresh_locked(integration)

        if not result.success:
            if result.needs_reauth:
                raise AuthenticationRequiredError(
                    result.error or "Integration requires re-authentication",
                    context={"integration_id": integration_id},
                )
            raise TokenRefreshError(
                result.error or "Token refresh failed",
                context={
                    "integration_id": integration_id,
                    "consecutive_failures": result.consecutive_failures,
                },
            )
        return self._load(integration_id)

    def _load(self, integration_id: str) -> Integration:
        integration = self.storage.get_integration(integration_id)
        if integration is None:
            raise IntegrationNotFoundError(
                f"Integration {integration_id} not found",
                context={"integration_id": integration_id},
            )
        return integration

    async def _refresh_locked(self, integration: Integration) -> TokenRefreshResult:
        now = self._clock()
        integration.last_refresh_attempt_at = now
        auth = integration.auth

        if auth is None or not auth.refresh_token:
            return self._record_reauth(integration, "No refresh token stored")

        try:
            token_data = await self.oauth_client.refresh_access_token(auth.refresh_token)
        except AuthenticationRequiredError as e:
            return self._record_reauth(integration, e.message)
        except (TokenRefreshError, RateLimitError, ProviderAPIError) as e:
            return self._record_failure(integration, e.message)

        expires_in = int(token_data.get("expires_in") or self.default_expiry_seconds)
        scope = token_data.get("scope")
        integration.auth = AuthPayload(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token") or auth.refresh_token,
            expires_in=expires_in,
            token_type=token_data.get("token_type", auth.token_type),
            scopes=scope.split() if isinstance(scope, str) else auth.scopes,
            issued_at=now,
            expires_at=now + timedelta(seconds=expires_in),
            provider_tenant_id=auth.provider_tenant_id,
            provider_tenant_name=auth.provider_tenant_name,
        )
        integration.consecutive_refresh_failures = 0
        integration.last_refresh_error = None
        integration.reauth_required = False
        integration.last_successful_refresh_at = now
        integration.touch()
        self.storage.save_integration(integration)

        logger.info(
            "token_refresh_succeeded",
            integration_id=integration.id,
            expires_in=expires_in,
        )
        return TokenRefreshResult(success=True, auth=integration.auth)

    def _record_failure(self, integration: Integration, message: str) -> TokenRefreshResult:
        integration.consecutive_refresh_failures += 1
        integration.last_refresh_error = message
        failures = integration.consecutive_refresh_failures
        needs_reauth = failures >= self.failure_limit

        if needs_reauth and integration.status == IntegrationStatus.ACTIVE:
            integration.record_sync_error(
                f"Token refresh failed {failures} consecutive times: {message}",
                mark_error=True,
            )
        else:
            integration.touch()
        self.storage.save_integration(integration)

        log = logger.error if needs_reauth else logger.warning
        log(
            "token_refresh_failed",
            integration_id=integration.id,
            consecutive_failures=failures,
            failure_limit=self.failure_limit,
            needs_reauth=needs_reauth,
            error=message,
        )
        return TokenRefreshResult(
            success=False,
            error=message,
            needs_reauth=needs_reauth,
            consecutive_failures=failures,
        )

    def _record_reauth(self, integration: Integration, message: str) -> TokenRefreshResult:
        integration.consecutive_refresh_failures += 1
        integration.last_refresh_error = message
        integration.reauth_required = True
        integration.mark_setup_pending(f"Re-authentication required: {message}")
        self.storage.save_integration(integration)

        logger.error(
            "token_refresh_rejected",
            integration_id=integration.id,
            consecutive_failures=integration.consecutive_refresh_failures,
            error=message,
        )
        return TokenRefreshResult(
            success=False,
            error=message,
            needs_reauth=True,
            consecutive_failures=integration.consecutive_refresh_failures,
        )
