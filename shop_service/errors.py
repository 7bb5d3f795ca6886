"""
errors.py — Exception Hierarchy for the Shop Service

Every domain failure raised by the core (pricing, cart, orders, payment)
derives from ShopError. The API layer maps each class to an HTTP status.
"""


class ShopError(Exception):
    """Base exception for all shop errors."""

    status_code = 400
    code = "SHOP_ERROR"

    def __init__(self, message: str, details: list[str] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or []


# --- Validation ---

class CartValidationError(ShopError):
    """Raised when a cart request is rejected before any mutation."""

    code = "CART_INVALID"


class OrderValidationError(ShopError):
    """Raised when an order cannot be assembled from the given input."""

    code = "ORDER_INVALID"


class ProductUnavailableError(ShopError):
    code = "PRODUCT_UNAVAILABLE"

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product {product_id} is not available for purchase")


class InsufficientStockError(ShopError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: str, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {product_id}: requested {requested}, available {available}"
        )


# --- Not found ---

class ProductNotFoundError(ShopError):
    status_code = 404
    code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: str, spec_id: str | None = None):
        self.product_id = product_id
        self.spec_id = spec_id
        if spec_id:
            msg = f"Product specification {spec_id} not found for product {product_id}"
        else:
            msg = f"Product not found: {product_id}"
        super().__init__(msg)


class CartLineNotFoundError(ShopError):
    status_code = 404
    code = "CART_LINE_NOT_FOUND"

    def __init__(self, line_id: str):
        self.line_id = line_id
        super().__init__(f"Cart item not found: {line_id}")


class OrderNotFoundError(ShopError):
    status_code = 404
    code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class OrderNotCancellableError(ShopError):
    """
    Raised when an order cannot be cancelled.

    Missing orders, foreign orders and orders past `pending` share this one
    message so callers cannot probe for other users' orders.
    """

    status_code = 404
    code = "ORDER_NOT_CANCELLABLE"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("Order not found or cannot be cancelled")


# --- Conflicts ---

class InvalidTransitionError(ShopError):
    status_code = 409
    code = "INVALID_TRANSITION"

    def __init__(self, order_id: str, current: str, target: str):
        self.order_id = order_id
        self.current = current
        self.target = target
        super().__init__(f"Order {order_id} cannot move from {current} to {target}")


class CartConflictError(ShopError):
    status_code = 409
    code = "CART_CONFLICT"


class PaymentValidationError(ShopError):
    """Raised when a payment request is rejected before reaching the gateway."""

    code = "PAYMENT_INVALID"


# --- Collaborators ---

class PaymentError(ShopError):
    status_code = 502
    code = "PAYMENT_FAILED"


class AccessDeniedError(ShopError):
    status_code = 403
    code = "FORBIDDEN"
