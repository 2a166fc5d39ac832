"""
Rate-limited access to the provider API.

Every outbound call made by an importer goes through ProviderClient, which:
- throttles calls per integration (token bucket, per second and per minute)
- makes sure the integration's access token is fresh before the call
- retries provider rate-limit responses with the configured backoff
- forces one token refresh when a call with a supposedly valid token gets a 401
- drives page-based pagination with a hard max-pages ceiling
"""

import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

import structlog

from ledgersync.config import Settings
from ledgersync.connectors.rate_limiter import Clock, RateLimiter, Sleeper
from ledgersync.errors import AuthenticationRequiredError, InvalidGrantError, RateLimitError
from ledgersync.services.token_manager import TokenLifecycleManager

logger = structlog.get_logger()

T = TypeVar("T")

# fn(access_token, provider_tenant_id) -> response
ApiCall = Callable[[str, str], Awaitable[T]]
# fetch_page(access_token, provider_tenant_id, page, page_size) -> records
PageFetcher = Callable[[str, str, int, int], Awaitable[list[dict[str, Any]]]]


class ProviderClient:
    """
    Rate-limited, token-aware executor for provider API calls.

    Attributes:
        token_manager: Supplies fresh credentials per integration
        page_size: Records requested per page
        max_pages: Hard stop for pagination loops
        retry_attempts: Attempts for rate-limited calls
        rate_limit_retry_delay: Base delay in seconds after a rate-limit response
    """

    def __init__(
        self,
        token_manager: TokenLifecycleManager,
        settings: Settings,
        clock: Optional[Clock] = None,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.token_manager = token_manager
        self.page_size = settings.provider_page_size
        self.max_pages = settings.provider_max_pages
        self.retry_attempts = settings.default_retry_attempts
        self.rate_limit_retry_delay = settings.rate_limit_retry_delay_seconds
        self._requests_per_second = settings.provider_requests_per_second
        self._requests_per_minute = settings.provider_requests_per_minute
        self._clock = clock
        self._sleep = sleep
        # One limiter per integration for the life of the worker process;
        # integrations that need re-authorization are dropped
        self._limiters: dict[str, RateLimiter] = {}

    def limiter_for(self, integration_id: str) -> RateLimiter:
        limiter = self._limiters.get(integration_id)
        if limiter is None:
            kwargs = {"sleep": self._sleep}
            if self._clock is not None:
                kwargs["clock"] = self._clock
            limiter = RateLimiter(self._requests_per_second, self._requests_per_minute, **kwargs)
            self._limiters[integration_id] = limiter
        return limiter

    def forget(self, integration_id: str) -> None:
        """Drop the limiter of an integration that can no longer sync."""
        self._limiters.pop(integration_id, None)

    async def execute_api_call(self, fn: ApiCall, integration_id: str) -> T:
        """
        Execute one provider call for an integration.

        Args:
            fn: Callback taking (access_token, provider_tenant_id)
            integration_id: Integration whose credentials and limiter are used

        Returns:
            Whatever fn returns

        Raises:
            RateLimitError: If the provider keeps rate-limiting after all attempts
            AuthenticationRequiredError: If credentials cannot be made valid
            ProviderAPIError: On other provider failures (not retried here)
        """
        try:
            return await self._execute(fn, integration_id)
        except AuthenticationRequiredError:
            # No calls until the user re-authorizes
            self.forget(integration_id)
            raise

    async def _execute(self, fn: ApiCall, integration_id: str) -> T:
        limiter = self.limiter_for(integration_id)
        forced_refresh = False
        attempt = 0

        while True:
            attempt += 1
            integration = await self.token_manager.ensure_valid_token(integration_id)
            await limiter.acquire()

            try:
                return await fn(integration.auth.access_token, integration.auth.provider_tenant_id)
            except InvalidGrantError:
                raise
            except AuthenticationRequiredError:
                # Token looked valid locally but the provider rejected it
                if forced_refresh:
                    raise
                forced_refresh = True
                logger.warning("provider_call_unauthorized_refreshing", integration_id=integration_id)
                await self.token_manager.ensure_valid_token(integration_id, force=True)
                attempt -= 1
            except RateLimitError as e:
                if attempt >= self.retry_attempts:
                    logger.error(
                        "provider_rate_limit_exhausted",
                        integration_id=integration_id,
                        attempts=attempt,
                    )
                    raise
                delay = self.rate_limit_retry_delay * (2 ** (attempt - 1))
                if e.retry_after:
                    delay = max(delay, e.retry_after)
                logger.warning(
                    "provider_rate_limited",
                    integration_id=integration_id,
                    attempt=attempt,
                    delay_seconds=delay,
                )
                await self._sleep(delay)

    async def iter_pages(
        self,
        fetch_page: PageFetcher,
        integration_id: str,
        entity: str = "",
    ) -> AsyncIterator[list[dict[str, Any]]]:
        """
        Yield pages of records in increasing page order.

        A page shorter than the page size ends the loop; an empty terminating
        page is not required. The loop never requests more than max_pages.

        Args:
            fetch_page: Callback taking (access_token, provider_tenant_id, page, page_size)
            integration_id: Integration to fetch for
            entity: Entity name for logging

        Yields:
            One list of raw records per page
        """
        page_size = self.page_size
        for page in range(1, self.max_pages + 1):
            records = await self.execute_api_call(
                lambda token, tenant: fetch_page(token, tenant, page, page_size),
                integration_id,
            )
            logger.debug(
                "provider_page_fetched",
                integration_id=integration_id,
                entity=entity,
                page=page,
                count=len(records),
            )
            yield records
            if len(records) < page_size:
                return

        logger.warning(
            "pagination_max_pages_reached",
            integration_id=integration_id,
            entity=entity,
            max_pages=self.max_pages,
        )

    async def fetch_all_pages(
        self,
        fetch_page: PageFetcher,
        integration_id: str,
        entity: str = "",
    ) -> list[dict[str, Any]]:
        """Collect every page into one list."""
        records: list[dict[str, Any]] = []
        async for page in self.iter_pages(fetch_page, integration_id, entity):
            records.extend(page)
        return records
