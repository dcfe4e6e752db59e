"""
Custom Exceptions for Student Billing

Hierarchical exception classes for proper error handling across layers.
"""

from typing import Optional, Dict, Any


GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."
NETWORK_ERROR_MESSAGE = "Network error. Please check your connection and try again."


class StudentBillingError(Exception):
    """Base exception for all Student Billing errors."""

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
        """Convert exception to dictionary for display layers."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details
        }

    @property
    def user_message(self) -> str:
        """Message safe to show to the user."""
        return self.message


class ValidationError(StudentBillingError):
    """Raised when input validation fails before any request is sent."""
    pass


class ApiRequestError(StudentBillingError):
    """Raised when the dashboard API rejects a request."""

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        endpoint: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if status_code is not None:
            details["status_code"] = status_code
        if endpoint:
            details["endpoint"] = endpoint
        super().__init__(message or GENERIC_ERROR_MESSAGE, details, original_error)
        self.status_code = status_code
        self.endpoint = endpoint


class NetworkError(StudentBillingError):
    """Raised when the dashboard API cannot be reached."""

    def __init__(
        self,
        message: str = "Request failed",
        endpoint: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if endpoint:
            details["endpoint"] = endpoint
        super().__init__(message, details, original_error)

    @property
    def user_message(self) -> str:
        return NETWORK_ERROR_MESSAGE


class ConfigurationError(StudentBillingError):
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
