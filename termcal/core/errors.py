class TermcalError(Exception):
    """Base class for all termcal errors."""


class ConfigError(TermcalError):
    """Raised when the configuration file is unreadable or malformed."""


# Credential errors raised by TokenVault

class AuthError(TermcalError):
    """Base class for credential lifecycle failures."""


class AuthExpired(AuthError):
    """No usable credential and no refresh token to renew it with."""


class AuthRevoked(AuthError):
    """The provider rejected the refresh token; consent must be redone."""


class AuthTransient(AuthError):
    """Refresh failed for a reason worth retrying (network, 5xx)."""


# Sync errors raised by SyncEngine

class SyncError(TermcalError):
    """Base class for sync failures surfaced to the UI layer."""


class SyncUnauthenticated(SyncError):
    """The user has to sign in again before syncing can resume."""


class SyncUnavailable(SyncError):
    """The retry budget ran out; the last snapshot is still served."""


# Errors reported by a ProviderClient

class ProviderError(TermcalError):
    """Base class for calendar provider failures."""


class Unauthorized(ProviderError):
    """The provider refused the credential or the grant."""


class RateLimited(ProviderError):
    """The provider asked us to slow down."""

    def __init__(self, message="rate limited", retry_after=None):
        super().__init__(message)
        self.retry_after = retry_after


class NetworkError(ProviderError):
    """Connection problem, timeout, or a 5xx response."""


class SyncTokenExpired(ProviderError):
    """The delta token is no longer accepted; a full listing is required."""
