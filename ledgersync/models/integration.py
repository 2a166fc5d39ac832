"""
Integration models: a tenant's OAuth connection to the accounting provider.
"""

from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from ledgersync.models.enums import IntegrationStatus, ProviderKind, SyncHealth
from ledgersync.utils.dates import utc_now


class AuthPayload(BaseModel):
    """
    OAuth token set stored on an integration.

    Attributes:
        access_token: Bearer token for API calls
        refresh_token: Token exchanged for a new token set
        expires_in: Access token lifetime in seconds as reported by the provider
        token_type: Token type (normally "Bearer")
        scopes: Granted OAuth scopes
        issued_at: When the token set was issued
        expires_at: Absolute access token expiry (preferred over issued_at + expires_in)
        provider_tenant_id: Provider-side organisation id (Xero tenantId)
        provider_tenant_name: Provider-side organisation name
    """

    access_token: str = Field(default="", description="Bearer access token")
    refresh_token: str = Field(default="", description="OAuth refresh token")
    expires_in: Optional[int] = Field(default=None, ge=0, description="Lifetime in seconds")
    token_type: str = Field(default="Bearer", description="Token type")
    scopes: list[str] = Field(default_factory=list, description="Granted scopes")
    issued_at: Optional[datetime] = Field(default=None, description="Issue timestamp")
    expires_at: Optional[datetime] = Field(default=None, description="Absolute expiry")
    provider_tenant_id: str = Field(default="", description="Provider organisation id")
    provider_tenant_name: Optional[str] = Field(default=None, description="Provider organisation name")

    def resolve_expiry(self) -> Optional[datetime]:
        """Absolute expiry, derived from issued_at + expires_in when not stored."""
        if self.expires_at is not None:
            return self.expires_at
        if self.issued_at is not None and self.expires_in is not None:
            return self.issued_at + timedelta(seconds=self.expires_in)
        return None


class Integration(BaseModel):
    """
    A tenant's connection to a remote accounting provider.

    Created on OAuth completion and mutated by every token refresh and sync
    attempt. Integrations are soft-disabled, never hard-deleted.

    Attributes:
        id: Local integration id
        tenant_id: Owning tenant
        provider: Remote provider kind
        name: Display name
        status: Current lifecycle status
        auth: Stored OAuth token set
        sync_health: Health derived from sync/error counts
        consecutive_refresh_failures: Refresh failures since the last success
        last_refresh_error: Message of the most recent refresh failure
        reauth_required: Set when the provider rejected the refresh token
        last_refresh_attempt_at: When a refresh was last attempted
        last_successful_refresh_at: When a refresh last succeeded
        last_sync_at: Start time of the last successful sync (incremental watermark)
        last_error_at: When the last sync error occurred
        last_error_message: Message of the last sync error
        sync_count: Successful syncs
        error_count: Failed syncs
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    tenant_id: str
    provider: ProviderKind = ProviderKind.XERO
    name: str = "Xero"
    status: IntegrationStatus = IntegrationStatus.SETUP_PENDING
    auth: Optional[AuthPayload] = None
    sync_health: SyncHealth = SyncHealth.UNKNOWN
    consecutive_refresh_failures: int = Field(default=0, ge=0)
    last_refresh_error: Optional[str] = None
    reauth_required: bool = False
    last_refresh_attempt_at: Optional[datetime] = None
    last_successful_refresh_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    last_error_at: Optional[datetime] = None
    last_error_message: Optional[str] = None
    sync_count: int = Field(default=0, ge=0)
    error_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        return self.status == IntegrationStatus.ACTIVE

    def has_valid_auth(self) -> bool:
        """True when access token, refresh token and provider tenant id are all present."""
        if self.auth is None:
            return False
        return bool(
            self.auth.access_token.strip()
            and self.auth.refresh_token.strip()
            and self.auth.provider_tenant_id.strip()
        )

    def health_score(self) -> Optional[float]:
        """Percentage of successful syncs, None before the first sync."""
        total = self.sync_count + self.error_count
        if total == 0:
            return None
        return self.sync_count / total * 100

    def _refresh_health(self) -> None:
        score = self.health_score()
        if score is None:
            self.sync_health = SyncHealth.UNKNOWN
        elif score >= 95:
            self.sync_health = SyncHealth.HEALTHY
        elif score >= 80:
            self.sync_health = SyncHealth.WARNING
        else:
            self.sync_health = SyncHealth.ERROR

    def touch(self) -> None:
        self.updated_at = utc_now()

    def record_successful_sync(self, synced_at: Optional[datetime] = None) -> None:
        self.last_sync_at = synced_at or utc_now()
        self.sync_count += 1
        self._refresh_health()
        self.touch()

    def record_sync_error(self, message: str, mark_error: bool = False) -> None:
        """
        Record a failed sync.

        Args:
            message: Error message to keep on the integration
            mark_error: Also move the integration into the `error` status
        """
        self.last_error_at = utc_now()
        self.last_error_message = message
        self.error_count += 1
        self._refresh_health()
        if mark_error:
            self.status = IntegrationStatus.ERROR
        self.touch()

    def reset_error_state(self) -> None:
        self.status = IntegrationStatus.ACTIVE
        self.last_error_message = None
        self.consecutive_refresh_failures = 0
        self.last_refresh_error = None
        self.reauth_required = False
        self.touch()

    def mark_setup_pending(self, reason: Optional[str] = None) -> None:
        self.status = IntegrationStatus.SETUP_PENDING
        if reason:
            self.last_error_message = reason
            self.last_error_at = utc_now()
        self.touch()

    def disable(self) -> None:
        self.status = IntegrationStatus.DISABLED
        self.touch()
