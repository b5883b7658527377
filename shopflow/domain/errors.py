from typing import Optional


class CommerceError(Exception):
    """Base class for every error the order-processing core raises."""


class InvalidArgument(CommerceError, ValueError):
    pass


class UnknownGateway(InvalidArgument):
    def __init__(self, gateway: str):
        self.gateway = gateway
        super().__init__(f"Unsupported payment gateway: {gateway}")


class InvalidStatusTransition(InvalidArgument):
    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move order from {current} to {requested}")


class ProductNotFound(CommerceError):
    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product not found with ID {product_id}")


class InventoryNotFound(CommerceError):
    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"No inventory record for product ID {product_id}")


class OrderNotFound(CommerceError):
    def __init__(self, order_id: int, item_id: Optional[int] = None):
        self.order_id = order_id
        self.item_id = item_id
        if item_id is None:
            message = f"Order not found with ID {order_id}"
        else:
            message = f"Order item {item_id} not found on order {order_id}"
        super().__init__(message)


class InsufficientInventory(CommerceError):
    def __init__(self, product_id: int, requested: int, available: Optional[int] = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        message = f"Insufficient inventory for product ID {product_id}: requested {requested}"
        if available is not None:
            message += f", available {available}"
        super().__init__(message)


class PaymentError(CommerceError):
    """Raised by payment providers; ``gateway`` names the provider key."""

    def __init__(self, message: str, gateway: Optional[str] = None):
        self.gateway = gateway
        super().__init__(message)


class AuthenticationFailure(PaymentError):
    """Provider rejected our credentials. Not retryable; operators must act."""


class GatewayError(PaymentError):
    """Opaque provider failure. The message is safe to show the payer."""


class PaymentNotImplemented(PaymentError):
    """The provider does not support the requested operation."""


class PostChargePersistenceFailure(CommerceError):
    """Funds were captured but the order could not be committed.

    Needs manual reconciliation against ``charge_reference`` at ``gateway``.
    """

    def __init__(self, gateway: str, charge_reference: Optional[str], cause: Exception):
        self.gateway = gateway
        self.charge_reference = charge_reference
        self.cause = cause
        super().__init__(
            f"Payment {charge_reference or '<unknown>'} captured via {gateway} "
            f"but the order was not stored: {cause}"
        )


class PaymentOutcomeUnknown(PostChargePersistenceFailure):
    """The request reached the provider but no usable reply came back.

    The payer may have been charged; reconcile at ``gateway`` before retrying.
    """

    def __init__(self, message: str, gateway: Optional[str] = None, cause: Optional[Exception] = None):
        self.gateway = gateway
        self.charge_reference = None
        self.cause = cause
        CommerceError.__init__(self, message)


class CartItemNotFound(CommerceError):
    def __init__(self, user_id: int, product_id: int):
        self.user_id = user_id
        self.product_id = product_id
        super().__init__(f"Product ID {product_id} is not in the cart of user {user_id}")
