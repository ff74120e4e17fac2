"""Typed errors raised by the shop core.

The HTTP layer in main.py maps each kind onto a status code; nothing below
knows about HTTP.
"""
from typing import Optional


class ShopError(Exception):
    """Base exception for all shop errors."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(ShopError):
    """Raised when a referenced document does not exist."""

    kind = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found")


class AccessDeniedError(ShopError):
    """Raised when the principal neither owns the resource nor is an admin."""

    kind = "access_denied"
    status_code = 403

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class EmptyCartError(ShopError):
    kind = "empty_cart"
    status_code = 400

    def __init__(self):
        super().__init__("Cart is empty")


class InsufficientStockError(ShopError):
    """Raised when a product cannot cover the requested quantity."""

    kind = "insufficient_stock"
    status_code = 409

    def __init__(self, product_id: str, name: Optional[str] = None):
        self.product_id = product_id
        self.name = name
        super().__init__(f"Insufficient stock for {name or product_id}")


class InvalidStatusError(ShopError):
    kind = "invalid_status"
    status_code = 400

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Invalid status: {status}")


class ValidationError(ShopError):
    """Raised for malformed input such as a bad ObjectId or quantity."""

    kind = "validation_error"
    status_code = 422

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")


class StoreFailureError(ShopError):
    """Raised when the document store fails in a way not classified above."""

    kind = "store_failure"
    status_code = 503

    def __init__(self, message: str = "Database not available"):
        super().__init__(message)
