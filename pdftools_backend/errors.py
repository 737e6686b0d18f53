"""
Error types raised by the services and translated at the HTTP boundary.
"""

from __future__ import annotations


class ServiceError(Exception):
    """Base class for errors that map to a client-facing message."""

    status_code: int = 500
    public_message: str = "Server error"


class DuplicateUserError(ServiceError):
    status_code = 400
    public_message = "User already exists"


class InvalidCredentialsError(ServiceError):
    # Same status as DuplicateUserError so callers cannot probe for accounts.
    status_code = 400
    public_message = "Invalid credentials"


class StoreError(ServiceError):
    """The document store is unreachable or an operation on it failed."""


class ConfigurationError(RuntimeError):
    """Raised at startup when required settings are missing."""
