"""Domain exceptions for the store service."""
from typing import Dict, Optional, Type


class StoreError(Exception):
    """Base exception for all store business-rule violations."""

    pass


class ValidationError(StoreError):
    """Raised when input has the wrong shape or violates a simple rule."""

    pass


class InsufficientPaymentError(ValidationError):
    """Raised when the upfront deposit is below the required share of the total."""

    def __init__(self, amount, minimum):
        self.amount = amount
        self.minimum = minimum
        super().__init__(
            f"Initial payment {amount} is below the required minimum of {minimum}"
        )


class EmptyCartError(ValidationError):
    """Raised when a cart has nothing that can be ordered."""

    def __init__(self, message: str = "Cart is empty"):
        super().__init__(message)


class NotFoundError(StoreError):
    """Raised when an entity doesn't exist."""

    def __init__(self, entity: str, entity_id: Optional[object] = None):
        self.entity = entity
        self.entity_id = entity_id
        msg = f"{entity} not found"
        if entity_id is not None:
            msg = f"{entity} {entity_id} not found"
        super().__init__(msg)


class AuthorizationError(StoreError):
    """Raised when the principal is neither the owner nor an admin."""

    pass


class InventoryError(StoreError):
    """Raised on stock problems."""

    pass


class InsufficientStockError(InventoryError):
    """Raised when a product cannot cover the requested quantity."""

    def __init__(self, product_id: int, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Not enough stock for product {product_id}. "
            f"Requested: {requested}, Available: {available}"
        )


class PaymentError(StoreError):
    """Raised when the payment processor declines or times out."""

    def __init__(self, message: str, payment_method: Optional[str] = None):
        self.payment_method = payment_method
        super().__init__(f"Payment failed: {message}")


class StateConflictError(StoreError):
    """Raised on an illegal state transition."""

    pass


class CancellationWindowExpiredError(StateConflictError):
    """Raised when an order is cancelled after the cancellation window."""

    def __init__(self, order_id: int, window_hours: int):
        self.order_id = order_id
        self.window_hours = window_hours
        super().__init__(
            f"Order {order_id} can no longer be cancelled "
            f"(cancellation period of {window_hours} hours has expired)"
        )


class AlreadyPaidError(StateConflictError):
    """Raised when the final payment is requested for a fully paid order."""

    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"Order {order_id} is already fully paid")


# Map exception types to HTTP status codes
ERROR_STATUS_CODES: Dict[Type[StoreError], int] = {
    ValidationError: 400,
    NotFoundError: 404,
    AuthorizationError: 403,
    InventoryError: 400,
    PaymentError: 402,
    StateConflictError: 409,
}


def status_code_for(exc: StoreError) -> int:
    """Resolve the HTTP status for an error, walking up its class hierarchy."""
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500
