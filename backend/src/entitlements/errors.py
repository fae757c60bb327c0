"""
Structured error classes for entitlement resolution and purchase flows.
"""

from typing import Optional


class EntitlementError(Exception):
    """Base exception for entitlement errors."""
    pass


class PurchaseProviderError(EntitlementError):
    """
    Raised when the purchase provider fails an operation.

    Carries a machine-readable code so callers can tell a user-cancelled
    purchase apart from a real failure.
    """

    def __init__(
        self,
        message: str,
        code: str = "provider_error",
        status_code: Optional[int] = None,
        user_cancelled: bool = False,
    ):
        """
        Initialize provider error.

        Args:
            message: Human-readable message
            code: Machine-readable error code
            status_code: HTTP status from the provider API (if any)
            user_cancelled: True when the user backed out of the store sheet
        """
        self.message = message
        self.code = code
        self.status_code = status_code
        self.user_cancelled = user_cancelled
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for logging and UI toasts."""
        return {
            "error": "purchase_provider_error",
            "code": self.code,
            "message": self.message,
            "status_code": self.status_code,
            "user_cancelled": self.user_cancelled,
        }


class PurchaseCancelledError(PurchaseProviderError):
    """Raised when the user cancels a purchase. Not treated as a failure."""

    def __init__(self, message: str = "Purchase cancelled by user"):
        super().__init__(message, code="user_cancelled", user_cancelled=True)


class ProviderNotConfiguredError(PurchaseProviderError):
    """Raised when a provider call is made before configure()."""

    def __init__(self, message: str = "Purchase provider is not configured"):
        super().__init__(message, code="not_configured")


class AccountFetchError(EntitlementError):
    """Raised when the backend account/profile fetch fails."""

    def __init__(
        self,
        message: str,
        code: str = "account_fetch_failed",
        status_code: Optional[int] = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": "account_fetch_error",
            "code": self.code,
            "message": self.message,
            "status_code": self.status_code,
        }


def is_user_cancelled(exc: BaseException) -> bool:
    """True when an exception represents a user-cancelled purchase."""
    return bool(getattr(exc, "user_cancelled", False))
