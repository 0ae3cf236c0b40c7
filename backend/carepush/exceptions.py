"""Exception hierarchy for the notification delivery engine.

Registry and store failures are wrapped in these types so that the service
layer can decide which ones become structured failure results and which ones
reach the caller.
"""
from typing import Optional


class CarepushError(Exception):
    """Base exception for all notification engine errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CarepushError):
    """Raised when a required field is missing or empty."""

    def __init__(self, message: str = "Validation failed", field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NotFoundError(CarepushError):
    """Raised when a row does not exist or is not owned by the caller."""


class ProviderUnavailable(CarepushError):
    """Raised when the push backend cannot be reached or is not configured."""


class InvalidTokenError(CarepushError):
    """Raised when the push backend reports a token as permanently invalid."""

    def __init__(self, token: str, code: str = "invalid_token"):
        super().__init__(f"Push token rejected by provider ({code})")
        self.token = token
        self.code = code


class PersistenceError(CarepushError):
    """Raised when the database layer fails."""
