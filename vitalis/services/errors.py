"""
Health sync error taxonomy.

Connector and provider-level errors are converted into SyncResults by the
orchestrator; only caller-input errors propagate out of sync_all.
"""

from typing import Optional


class HealthSyncError(Exception):
    """Base error. ``code`` is stable and surfaces in SyncResult.error."""

    user_message = "An error occurred while syncing health data"
    # Refreshed credential that must still be persisted, when one was obtained
    # before the failure
    credential = None

    @property
    def code(self) -> str:
        return type(self).__name__


class InvalidStateError(HealthSyncError):
    """Forged, expired or mismatched OAuth state token."""
    user_message = "authorization failed"


class AuthExchangeError(HealthSyncError):
    """Provider rejected the authorization code."""
    user_message = "connection failed, please retry"


class RefreshError(HealthSyncError):
    """Refresh token revoked or expired; full re-authorization required."""
    user_message = "disconnected, please reconnect"


class NotConnectedError(HealthSyncError):
    """No active credential for the provider."""
    user_message = "disconnected, please reconnect"


class UnauthorizedError(HealthSyncError):
    """Provider still rejects the access token after one refresh."""
    user_message = "disconnected, please reconnect"


class RateLimitedError(HealthSyncError):
    def __init__(self, message: str = "rate limited", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ProviderUnavailableError(HealthSyncError):
    """Network failure, timeout or provider outage. Not retried within a sync."""


class NormalizationError(HealthSyncError):
    """A single raw entry could not be mapped; the entry is dropped."""


class PersistenceError(HealthSyncError):
    """Store write failed; retried in full on the next sync."""


class UnknownProviderError(HealthSyncError):
    pass


class InvalidSyncRequestError(HealthSyncError):
    """Caller input error, e.g. an empty or inverted date range."""


class UnknownUserError(HealthSyncError):
    pass


TRANSIENT_ERRORS = (RateLimitedError, ProviderUnavailableError, PersistenceError)


def user_visible_message(error: HealthSyncError, provider_name: str) -> str:
    if isinstance(error, TRANSIENT_ERRORS):
        return f"sync incomplete for {provider_name}, will retry automatically"
    return error.user_message


RECONNECT_CODES = {RefreshError.__name__, NotConnectedError.__name__, UnauthorizedError.__name__}


def message_for_code(code: Optional[str], provider_name: str) -> str:
    """User-visible text for an error code stored on a DeviceConnection."""
    if code in RECONNECT_CODES:
        return "disconnected, please reconnect"
    return f"sync incomplete for {provider_name}, will retry automatically"
