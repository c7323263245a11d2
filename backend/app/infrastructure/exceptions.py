"""
Custom Exceptions for the Box Billing Engine

Hierarchical exception classes for proper error handling across layers.
Expected domain outcomes (no access, no overage, duplicate delivery) are
return values, not exceptions.
"""

from typing import Optional, Dict, Any


class BillingEngineError(Exception):
    """Base exception for all billing engine errors."""

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


class ValidationError(BillingEngineError):
    """Raised when an event payload or request fails validation."""
    pass


class DatabaseError(BillingEngineError):
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


class NotFoundError(DatabaseError):
    """Raised when a referenced box, subscription, plan or grace period is missing."""
    pass


class DuplicateError(DatabaseError):
    """Raised when a uniqueness constraint rejects an insert."""
    pass


class ConflictError(BillingEngineError):
    """Raised when an operation collides with state that already exists."""

    def __init__(
        self,
        message: str,
        resource_id: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if resource_id:
            details["resource_id"] = resource_id
        super().__init__(message, details, original_error)


class ExternalServiceError(BillingEngineError):
    """Raised when the billing provider is unreachable or rejects a call."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        operation: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if provider:
            details["provider"] = provider
        if operation:
            details["operation"] = operation
        super().__init__(message, details, original_error)


class FatalProcessingError(BillingEngineError):
    """Raised (or logged) when a billing event exhausted its retries."""

    def __init__(
        self,
        message: str,
        provider_event_id: Optional[str] = None,
        retry_count: int = 0,
        original_error: Optional[Exception] = None
    ):
        details = {"retry_count": retry_count}
        if provider_event_id:
            details["provider_event_id"] = provider_event_id
        super().__init__(message, details, original_error)


class ConfigurationError(BillingEngineError):
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
