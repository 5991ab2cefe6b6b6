"""Custom exceptions for storefront."""


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    pass


class ValidationError(StorefrontError):
    """Raised when caller input is malformed or references unknown records."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class ProductNotFoundError(StorefrontError):
    """Raised when a product ID doesn't exist."""

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class VariantNotFoundError(StorefrontError):
    """Raised when a variant ID doesn't exist."""

    def __init__(self, variant_id: str):
        self.variant_id = variant_id
        super().__init__(f"Variant not found: {variant_id}")


class LocationNotFoundError(StorefrontError):
    """Raised when an inventory location ID doesn't exist."""

    def __init__(self, location_id: str):
        self.location_id = location_id
        super().__init__(f"Location not found: {location_id}")


class OrderNotFoundError(StorefrontError):
    """Raised when an order ID doesn't exist."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class InsufficientStockError(StorefrontError):
    """Raised when a commit finds less stock than an order line requests."""

    def __init__(
        self,
        variant_id: str,
        requested: int,
        available: int,
        title: str | None = None,
    ):
        self.variant_id = variant_id
        self.requested = requested
        self.available = available
        self.title = title
        name = f'"{title}"' if title else variant_id
        super().__init__(
            f"Insufficient stock for {name}: requested {requested}, available {available}"
        )


class InvalidTransitionError(StorefrontError):
    """Raised when an order status change is not allowed."""

    def __init__(self, order_id: str, current: str, requested: str, reason: str | None = None):
        self.order_id = order_id
        self.current = current
        self.requested = requested
        msg = f"Cannot move order {order_id} from '{current}' to '{requested}'"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


class PermissionDeniedError(StorefrontError):
    """Raised when a customer acts on an order that isn't theirs."""

    def __init__(self, message: str):
        super().__init__(message)


class PersistenceError(StorefrontError):
    """Raised when the storage layer fails or a transaction cannot complete."""

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Storage operation '{operation}' failed: {reason}")


class NotificationError(StorefrontError):
    """Raised inside the notification worker; logged, never surfaced to callers."""

    def __init__(self, kind: str, email: str, reason: str):
        self.kind = kind
        self.email = email
        super().__init__(f"Failed to send {kind} to {email}: {reason}")
