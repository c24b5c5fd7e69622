"""
Shared error handling for the entitlement reconciliation engine.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class EntitlementEngineError(Exception):
    """Base exception for the entitlement engine."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class StorageUnavailable(EntitlementEngineError):
    """Persistent store could not be read or written."""

    def __init__(self, message: str = "Persistent storage unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORAGE_UNAVAILABLE", message, details)


class NotAuthenticated(EntitlementEngineError):
    """Operation requires an authenticated user."""

    def __init__(self, message: str = "No authenticated user", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_AUTHENTICATED", message, details)


class BackendError(EntitlementEngineError):
    """Base class for subscription backend failures."""

    def __init__(self, code: str, endpoint: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.endpoint = endpoint
        super().__init__(code, f"{endpoint}: {message}", details)


class NetworkUnreachable(BackendError):
    """Backend could not be reached. Recoverable, callers fail open."""

    def __init__(self, endpoint: str, message: str = "Backend unreachable", details: Optional[Dict[str, Any]] = None):
        super().__init__("NETWORK_UNREACHABLE", endpoint, message, details)


class BackendTimeout(NetworkUnreachable):
    """Backend call exceeded its timeout."""

    def __init__(self, endpoint: str, message: str = "Backend request timed out", details: Optional[Dict[str, Any]] = None):
        super().__init__(endpoint, message, details)
        self.code = "BACKEND_TIMEOUT"


class BackendUnavailable(NetworkUnreachable):
    """Backend answered with a 5xx status."""

    def __init__(self, endpoint: str, status_code: int, details: Optional[Dict[str, Any]] = None):
        super().__init__(endpoint, f"Backend returned {status_code}", details)
        self.code = "BACKEND_UNAVAILABLE"
        self.status_code = status_code


class RateLimited(BackendError):
    """Backend answered 429. The current cycle is skipped."""

    def __init__(self, endpoint: str, retry_after: Optional[float] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__("RATE_LIMITED", endpoint, "Rate limit exceeded", details)
        self.retry_after = retry_after


class BackendRejected(BackendError):
    """Backend refused the request with a non-429 4xx status."""

    def __init__(self, endpoint: str, status_code: int, message: str = "Backend rejected request",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__("BACKEND_REJECTED", endpoint, message, details)
        self.status_code = status_code


class DecodeError(BackendRejected):
    """Backend response did not match the expected schema."""

    def __init__(self, endpoint: str, message: str = "Malformed backend response", details: Optional[Dict[str, Any]] = None):
        super().__init__(endpoint, 200, message, details)
        self.code = "DECODE_ERROR"


class PurchaseError(EntitlementEngineError):
    """Purchase flow failures surfaced to the caller."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(code, message, details)


class PurchaseCancelled(PurchaseError):
    """User dismissed the store purchase sheet."""

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__("PURCHASE_CANCELLED", "Purchase cancelled.", details)


class PurchasePending(PurchaseError):
    """Purchase awaits external approval (ask-to-buy, SCA)."""

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__("PURCHASE_PENDING", "Purchase pending.", details)


class ProductNotFound(PurchaseError):
    """Requested product is not in the loaded catalog."""

    def __init__(self, product_id: str):
        super().__init__("PRODUCT_NOT_FOUND", "Subscription not found.", {"product_id": product_id})


class UnverifiedTransaction(PurchaseError):
    """Store transaction failed its authenticity check."""

    def __init__(self, message: str = "Transaction verification failed.", details: Optional[Dict[str, Any]] = None):
        super().__init__("UNVERIFIED_TRANSACTION", message, details)
