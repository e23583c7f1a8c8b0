"""Custom exceptions for the storefront service.

Services raise these; the API layer renders them as the error envelope
``{"success": false, "error": CODE, "message": ..., "details": ...}``.
"""

from typing import Any, Dict, Optional


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.code = code or self.default_code
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "error": self.code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class RequestValidationFailed(StorefrontError):
    """Raised when request input fails validation."""

    status_code = 400
    default_code = "VALIDATION_ERROR"


class Unauthorized(StorefrontError):
    """Raised when the caller is not authenticated."""

    status_code = 401
    default_code = "UNAUTHORIZED"

    def __init__(self, message: str = "Authentication required", **kwargs):
        super().__init__(message, **kwargs)


class Forbidden(StorefrontError):
    """Raised when the caller is authenticated but not allowed."""

    status_code = 403
    default_code = "FORBIDDEN"

    def __init__(self, message: str = "Insufficient permissions", **kwargs):
        super().__init__(message, **kwargs)


class NotFound(StorefrontError):
    """Raised when a referenced entity doesn't exist (or isn't visible to the caller)."""

    status_code = 404
    default_code = "NOT_FOUND"


class BusinessRuleViolation(StorefrontError):
    """Raised when a request is well-formed but breaks a business rule."""

    status_code = 400
    default_code = "BAD_REQUEST"


class InsufficientStock(BusinessRuleViolation):
    """Raised when requested quantity exceeds available stock."""

    def __init__(self, product_name: str, available: int, requested: int):
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock for {product_name}. Available: {available}",
            code="INSUFFICIENT_STOCK",
            details={"available": available, "requested": requested},
        )


class PriceMismatch(BusinessRuleViolation):
    """Raised when a submitted unit price differs from the catalog price."""

    def __init__(self, product_name: str, submitted_cents: int, actual_cents: int):
        super().__init__(
            f"Price mismatch for {product_name}",
            code="PRICE_MISMATCH",
            details={"submitted_cents": submitted_cents, "actual_cents": actual_cents},
        )


class InvalidCoupon(BusinessRuleViolation):
    """Raised when a coupon code is unknown, expired, inactive or used up."""

    def __init__(self, message: str = "Invalid or expired coupon code", **kwargs):
        super().__init__(message, code="INVALID_COUPON", **kwargs)


class PaymentProviderError(StorefrontError):
    """Raised when the payment provider call fails."""

    status_code = 500
    default_code = "PAYMENT_PROVIDER_ERROR"
