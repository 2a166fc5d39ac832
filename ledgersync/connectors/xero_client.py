"""
Xero accounting API client.

This module provides the async HTTP client the sync engine uses to talk to
Xero, including:
- OAuth2 refresh-token exchange
- Page-based list endpoints (Contacts, Invoices, BankTransactions, ManualJournals)
- The unpaged Accounts endpoint
- Mapping of HTTP failures onto the engine's error taxonomy

The client is stateless with respect to tokens: every call receives the
access token and Xero tenant id explicitly. Throttling, retries and token
freshness are handled by ProviderClient and TokenLifecycleManager.
"""

from datetime import datetime
from typing import Any, Optional

import httpx
import structlog

from ledgersync.config import Settings
from ledgersync.errors import (
    AuthenticationRequiredError,
    InvalidGrantError,
    ProviderAPIError,
    RateLimitError,
    TokenRefreshError,
)
from ledgersync.utils.dates import format_modified_since

logger = structlog.get_logger()


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _error_payload(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"raw": response.text[:500]}
    return body if isinstance(body, dict) else {"raw": body}


class XeroClient:
    """
    Xero API client.

    Attributes:
        client_id: Xero OAuth2 client ID
        client_secret: Xero OAuth2 client secret
        token_url: OAuth2 token endpoint
        api_base_url: Accounting API base URL
        timeout: HTTP timeout in seconds
    """

    # Response collection key per endpoint
    ENDPOINTS = {
        "Accounts": "Accounts",
        "Contacts": "Contacts",
        "Invoices": "Invoices",
        "BankTransactions": "BankTransactions",
        "ManualJournals": "ManualJournals",
    }

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize Xero API client.

        Args:
            settings: Application settings (credentials, URLs, timeout)
            http_client: Optional pre-built httpx client (shared pool or test transport)
        """
        self.client_id = settings.xero_client_id
        self.client_secret = settings.xero_client_secret
        self.token_url = settings.xero_token_url
        self.api_base_url = settings.xero_api_base_url.rstrip("/")
        self.timeout = settings.xero_http_timeout_seconds

        self._http_client = http_client

        logger.info(
            "xero_client_initialized",
            api_base_url=self.api_base_url,
            has_credentials=bool(self.client_id and self.client_secret),
        )

    async def __aenter__(self):
        """Async context manager entry."""
        self._client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.aclose()

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    # =========================================================================
    # OAuth2
    # =========================================================================

    async def refresh_access_token(self, refresh_token: str) -> dict[str, Any]:
        """
        Exchange a refresh token for a new token set.

        Xero rotates refresh tokens: the returned refresh_token replaces the
        one passed in, which becomes unusable shortly after.

        Args:
            refresh_token: Current refresh token

        Returns:
            Token response:
            {
                "access_token": str,
                "refresh_token": str,
                "expires_in": int,
                "token_type": "Bearer",
                "scope": str
            }

        Raises:
            InvalidGrantError: If the refresh token is expired or revoked
            AuthenticationRequiredError: If the client credentials are rejected
            RateLimitError: If the token endpoint throttles the request
            TokenRefreshError: On network failures and provider 5xx
        """
        if not refresh_token:
            raise InvalidGrantError("No refresh token available")

        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        headers = {"Accept": "application/json", "Content-Type": "application/x-www-form-urlencoded"}

        try:
            response = await self._client().post(
                self.token_url,
                data=data,
                headers=headers,
                auth=(self.client_id, self.client_secret),
            )
        except httpx.HTTPError as e:
            logger.warning("xero_token_refresh_network_error", error=str(e))
            raise TokenRefreshError(f"Token endpoint unreachable: {e}") from e

        if response.status_code == 200:
            token_data = response.json()
            logger.info(
                "xero_token_refreshed",
                token_type=token_data.get("token_type"),
                expires_in=token_data.get("expires_in"),
            )
            return token_data

        payload = _error_payload(response)
        error_code = str(payload.get("error", ""))
        logger.error(
            "xero_token_refresh_failed",
            status_code=response.status_code,
            error=error_code or payload.get("raw"),
        )

        if error_code == "invalid_grant":
            raise InvalidGrantError(
                "Refresh token rejected by provider (invalid_grant)",
                context={"provider_status": response.status_code},
            )
        if response.status_code in (400, 401) or error_code == "invalid_client":
            raise AuthenticationRequiredError(
                f"Token refresh rejected: {error_code or response.status_code}",
                context={"provider_status": response.status_code},
            )
        if response.status_code == 429:
            raise RateLimitError(retry_after=_retry_after(response))
        raise TokenRefreshError(
            f"Token refresh failed with status {response.status_code}",
            context={"provider_status": response.status_code},
        )

    # =========================================================================
    # Accounting API
    # =========================================================================

    async def _get(
        self,
        endpoint: str,
        access_token: str,
        tenant_id: str,
        params: Optional[dict[str, Any]] = None,
        modified_since: Optional[datetime] = None,
    ) -> list[dict[str, Any]]:
        """
        GET a collection endpoint and return its records.

        Raises:
            AuthenticationRequiredError: On 401/403
            RateLimitError: On 429
            ProviderAPIError: On any other failure, including network errors
        """
        headers = {
            "Authorization": f"Bearer {access_token}",
            "xero-tenant-id": tenant_id,
            "Accept": "application/json",
        }
        if modified_since is not None:
            headers["If-Modified-Since"] = format_modified_since(modified_since)

        url = f"{self.api_base_url}/{endpoint}"
        clean_params = {k: v for k, v in (params or {}).items() if v is not None}

        try:
            response = await self._client().get(url, params=clean_params, headers=headers)
        except httpx.HTTPError as e:
            logger.warning("xero_request_network_error", endpoint=endpoint, error=str(e))
            raise ProviderAPIError(f"Request to {endpoint} failed: {e}") from e

        if response.status_code == 200:
            body = response.json()
            return list(body.get(self.ENDPOINTS[endpoint]) or [])

        # Not modified since the watermark: nothing to import
        if response.status_code == 304:
            return []

        context = {"endpoint": endpoint, "provider_status": response.status_code}

        if response.status_code in (401, 403):
            logger.warning("xero_request_unauthorized", **context)
            raise AuthenticationRequiredError(
                f"Provider rejected credentials for {endpoint}", context=context
            )
        if response.status_code == 429:
            retry_after = _retry_after(response)
            logger.warning("xero_rate_limited", retry_after=retry_after, **context)
            raise RateLimitError(retry_after=retry_after, context=context)

        logger.error("xero_request_failed", body=_error_payload(response), **context)
        raise ProviderAPIError(
            f"{endpoint} request failed with status {response.status_code}",
            provider_status=response.status_code,
            context=context,
        )

    async def get_accounts(
        self,
        access_token: str,
        tenant_id: str,
        modified_since: Optional[datetime] = None,
        where: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Fetch the chart of accounts (Xero does not paginate this endpoint)."""
        return await self._get(
            "Accounts", access_token, tenant_id, {"where": where}, modified_since
        )

    async def get_contacts(
        self,
        access_token: str,
        tenant_id: str,
        page: int,
        page_size: int,
        modified_since: Optional[datetime] = None,
        where: Optional[str] = None,
        include_archived: bool = False,
    ) -> list[dict[str, Any]]:
        params = {
            "page": page,
            "pageSize": page_size,
            "where": where,
            "includeArchived": "true" if include_archived else None,
        }
        return await self._get("Contacts", access_token, tenant_id, params, modified_since)

    async def get_invoices(
        self,
        access_token: str,
        tenant_id: str,
        page: int,
        page_size: int,
        modified_since: Optional[datetime] = None,
        where: Optional[str] = None,
        statuses: Optional[list[str]] = None,
    ) -> list[dict[str, Any]]:
        params = {
            "page": page,
            "pageSize": page_size,
            "where": where,
            "Statuses": ",".join(statuses) if statuses else None,
        }
        return await self._get("Invoices", access_token, tenant_id, params, modified_since)

    async def get_bank_transactions(
        self,
        access_token: str,
        tenant_id: str,
        page: int,
        page_size: int,
        modified_since: Optional[datetime] = None,
        where: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        params = {"page": page, "pageSize": page_size, "where": where}
        return await self._get("BankTransactions", access_token, tenant_id, params, modified_since)

    async def get_manual_journals(
        self,
        access_token: str,
        tenant_id: str,
        page: int,
        page_size: int,
        modified_since: Optional[datetime] = None,
        where: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        params = {"page": page, "pageSize": page_size, "where": where}
        return await self._get("ManualJournals", access_token, tenant_id, params, modified_since)
