"""Exceptions raised by the storefront services.

Each class carries the HTTP status the API answers with, so route handlers
can let them propagate to the global handler in ``main``.
"""


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    status_code = 500


class ValidationError(StorefrontError):
    """Missing or malformed input."""

    status_code = 400


class NotFoundError(StorefrontError):
    """Raised when an entity doesn't exist."""

    status_code = 404

    def __init__(self, kind: str, ident: str | None = None):
        self.kind = kind
        self.ident = ident
        msg = f"{kind} not found"
        if ident:
            msg = f"{kind} not found: {ident}"
        super().__init__(msg)


class ConflictError(StorefrontError):
    """Duplicate entity or a write that lost a race."""

    status_code = 409


class AuthenticationError(StorefrontError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class AuthorizationError(StorefrontError):
    status_code = 403

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class ExternalServiceError(StorefrontError):
    """Email or gateway failure."""

    status_code = 502

    def __init__(self, service: str, reason: str):
        self.service = service
        self.reason = reason
        super().__init__(f"{service} failed: {reason}")


class StorageUnavailableError(StorefrontError):
    status_code = 503

    def __init__(self):
        super().__init__("Database not configured. Set DATABASE_URL.")


# --- Orders ---


class InsufficientStockError(ValidationError):
    """Raised when a product cannot cover the requested quantity."""

    def __init__(self, product_id: str, product_name: str, available: int, requested: int):
        self.product_id = product_id
        self.product_name = product_name
        self.available = available
        self.requested = requested
        super().__init__(
            f'Insufficient stock for "{product_name}". Only {available} units available.'
        )


class InvalidStatusError(ValidationError):
    """Raised when an order status is not one of the known values."""

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Invalid status: {status}")


class InvalidTransitionError(ConflictError):
    """Raised when an order status would move backwards or leave a terminal state."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot change order status from {current} to {requested}")


# --- Coupons ---


class CouponNotFoundError(NotFoundError):
    def __init__(self, code: str):
        self.code = code
        super().__init__("Coupon", code)

    def __str__(self):
        return "Invalid coupon code"


class InactiveCouponError(ValidationError):
    def __init__(self, code: str):
        self.code = code
        super().__init__("This coupon is no longer active")


class ExpiredCouponError(ValidationError):
    def __init__(self, code: str):
        self.code = code
        super().__init__("This coupon has expired")


class UsageLimitExceededError(ValidationError):
    def __init__(self, code: str, usage_limit: int):
        self.code = code
        self.usage_limit = usage_limit
        super().__init__("This coupon has reached its usage limit")


class MinimumPurchaseError(ValidationError):
    def __init__(self, code: str, min_purchase: float):
        self.code = code
        self.min_purchase = min_purchase
        super().__init__(f"Minimum purchase of ${min_purchase:.2f} required to use this coupon")
