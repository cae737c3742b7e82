"""
Relay error kinds.

Every failure in the relay maps to one of these. HTTP edges turn them into
status codes; background stages catch them and decide what, if anything,
the end user sees.
"""

from typing import Any


class RelayError(Exception):
    """Base exception for relay errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ConfigurationError(RelayError):
    """A required secret or setting is missing or malformed."""


class CredentialError(RelayError):
    """Stored ciphertext could not be decrypted."""


class ConnectionNotFound(RelayError):
    """No active connection matches the inbound identifier."""


class CredentialsUnusable(ConnectionNotFound):
    """A matching connection exists but its credentials cannot be decrypted."""

    def __init__(self, message: str, connection_id: str, **kwargs):
        details = kwargs.get("details", {})
        details["connection_id"] = connection_id
        self.connection_id = connection_id
        super().__init__(message, details)


class QuotaExceeded(RelayError):
    """Tenant has used its monthly message allowance."""

    def __init__(self, message: str, used: int, limit: float, plan: str):
        self.used = used
        self.limit = limit
        self.plan = plan
        super().__init__(message, {"used": used, "limit": limit, "plan": plan})


class DispatchError(RelayError):
    """Agent runtime call failed, timed out or returned an unusable body."""


class DeliveryError(RelayError):
    """Platform send API rejected or failed to accept a message."""
