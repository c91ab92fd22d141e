"""
Custom exceptions for the storefront cart service.
"""
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from storefront.models import CheckoutResult


class CartException(Exception):
    """Base exception for cart operations"""
    pass


class ValidationError(CartException):
    """Raised when validation fails"""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class LimitExceededError(ValidationError):
    """Raised when cart limits are exceeded"""
    pass


class ProductNotFoundError(ValidationError):
    """Raised when a product does not exist in the catalog"""
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found in catalog: {product_id}")


class RemoteUnavailableError(CartException):
    """Raised when the remote store cannot be reached"""
    pass


class RedisConnectionError(RemoteUnavailableError):
    """Raised when Redis connection fails"""
    pass


class CartRowNotFoundError(CartException):
    """Raised when a remote cart row does not exist"""
    def __init__(self, row_id: str):
        self.row_id = row_id
        super().__init__(f"Cart row not found: {row_id}")


class NotAuthenticatedError(CartException):
    """Raised when an operation needs a signed-in user"""
    def __init__(self, message: str = "You must be signed in to complete your purchase"):
        super().__init__(message)


class PartialCheckoutFailure(CartException):
    """Raised when some purchase records could not be stored.

    The lines that failed stay in the cart; ``result`` lists both sides.
    """
    def __init__(self, result: "CheckoutResult"):
        self.result = result
        failed = ", ".join(f.line.product_id for f in result.failed)
        super().__init__(f"Checkout failed for {len(result.failed)} item(s): {failed}")
