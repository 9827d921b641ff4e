"""
Custom Exceptions for the Billing Core

Hierarchical exception classes for proper error handling across layers.
"""

from typing import Optional, Dict, Any


class BillingCoreError(Exception):
    """Base exception for all billing core errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details
        }


class ConflictError(BillingCoreError):
    """
    Raised on a uniqueness or business-rule violation.

    Reported to the caller and never retried automatically.
    """
    pass


class InvalidTransitionError(BillingCoreError):
    """Raised when a state machine is asked for an illegal state change."""

    def __init__(
        self,
        message: str,
        entity: Optional[str] = None,
        current: Optional[str] = None,
        target: Optional[str] = None,
    ):
        details = {}
        if entity:
            details["entity"] = entity
        if current:
            details["current"] = current
        if target:
            details["target"] = target
        super().__init__(message, details)


class NotFoundError(BillingCoreError):
    """Raised when a requested resource is not found."""

    def __init__(
        self,
        message: str,
        entity: Optional[str] = None,
        key: Optional[str] = None,
    ):
        details = {}
        if entity:
            details["entity"] = entity
        if key:
            details["key"] = key
        super().__init__(message, details)


class UpstreamError(BillingCoreError):
    """
    Raised when storage or the payment provider fails at the I/O level.

    Safe to retry with backoff.
    """
    pass


class DatabaseError(UpstreamError):
    """Raised when database operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if table:
            details["table"] = table
        super().__init__(message, details, original_error)


class PaymentProviderError(UpstreamError):
    """Raised when a payment provider API call fails."""
    pass


class SignatureError(BillingCoreError):
    """Raised when a webhook payload fails signature verification."""
    pass


class ConfigurationError(BillingCoreError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(message, details, original_error)
