"""
Exception hierarchy for TimeBar.
Per-account failures are caught by the coordinator and stored as that account's error.
"""

from typing import Optional


class TimeBarError(Exception):
    """Base exception for TimeBar errors."""
    pass


class TransportError(TimeBarError):
    """Network failure, timeout or non-success HTTP status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(TransportError):
    """Structured error envelope returned by the remote service."""
    pass


class AuthenticationError(ProtocolError):
    """Credentials were rejected. Never retried automatically."""
    pass


class UnexpectedResultError(ProtocolError):
    """The remote returned a result of an unexpected shape."""
    pass


class MissingCredentialError(TimeBarError):
    """No API key is stored for an account."""

    def __init__(self, account_id: str):
        super().__init__(f"No API key stored for '{account_id}'. Add one with: launcher.py set-key {account_id} <key>")
        self.account_id = account_id


class ConfigError(TimeBarError):
    """The accounts configuration file is unreadable or invalid."""
    pass
