"""Exception types shared across the bot."""

from __future__ import annotations


class CluebatError(Exception):
    """Base class for all bot errors."""


class ConfigurationError(CluebatError):
    """Raised when settings or the tenant configuration file cannot be used."""


class StateStoreError(CluebatError):
    """Raised when the shared state store cannot complete an operation."""


class SlackApiError(CluebatError):
    """Raised when a Slack Web API call fails or returns ``ok: false``."""

    def __init__(self, method: str, error: str):
        super().__init__(f"{method} failed: {error}")
        self.method = method
        self.error = error


class TenantFatalError(CluebatError):
    """Raised when a tenant session cannot continue (bad credentials, auth failure).

    Only the owning tenant's supervisor stops; other tenants keep running.
    """

    def __init__(self, tenant: str, reason: str):
        super().__init__(f"{tenant}: {reason}")
        self.tenant = tenant
        self.reason = reason


class ShutdownRequested(CluebatError):
    """Raised to ask the fleet runner to stop the whole process."""

    def __init__(self, reason: str, exit_code: int = 0):
        super().__init__(reason)
        self.reason = reason
        self.exit_code = exit_code


class DedupGuardEmpty(CluebatError, LookupError):
    """Raised when popping from an empty dedup guard."""
