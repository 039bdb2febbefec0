"""
Error taxonomy for the storefront core.

Every business failure is a StoreError subclass carrying the HTTP status the
transport layer answers with and a stable, human-readable message.
"""

from typing import Any, Dict, Optional


class StoreError(Exception):
    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: Optional[str] = None, detail: Optional[str] = None):
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)

    def to_body(self, include_detail: bool = False) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "message": self.message}
        if include_detail and self.detail:
            body["error"] = self.detail
        return body


# 404
class NotFound(StoreError):
    status_code = 404
    default_message = "Not found"


class ProductNotFound(NotFound):
    def __init__(self, product_id: str):
        super().__init__(f'Product "{product_id}" not found')
        self.product_id = product_id


class OrderNotFound(NotFound):
    def __init__(self, order_id: str):
        super().__init__(f'Order "{order_id}" not found')
        self.order_id = order_id


class PaymentNotFound(NotFound):
    def __init__(self, payment_id: str):
        super().__init__(f'Payment "{payment_id}" not found')
        self.payment_id = payment_id


# 401 / 403
class Unauthenticated(StoreError):
    status_code = 401
    default_message = "Not authenticated"


class Forbidden(StoreError):
    status_code = 403
    default_message = "You are not allowed to access this resource"


# 400
class ValidationFailed(StoreError):
    status_code = 400
    default_message = "Invalid request"


class SizeRequired(ValidationFailed):
    def __init__(self, product_id: str):
        super().__init__(f'Product "{product_id}" tracks stock per size; a size is required')


class SizeNotApplicable(ValidationFailed):
    pass


class InvalidQuantity(ValidationFailed):
    pass


class QuantityLimitExceeded(ValidationFailed):
    pass


class EmptyCart(ValidationFailed):
    default_message = "Cart is empty; add products before checking out"


class ProductInactive(ValidationFailed):
    def __init__(self, name: str):
        super().__init__(f'Product "{name}" is not available')


class UnsupportedPaymentMethod(ValidationFailed):
    pass


class InsufficientStock(StoreError):
    status_code = 400

    def __init__(self, name: str, available: int, requested: int, size_id: Optional[str] = None):
        size_part = f" (size {size_id})" if size_id else ""
        super().__init__(
            f'Insufficient stock for "{name}"{size_part}. available: {available}, requested: {requested}'
        )
        self.shortages = [{"product": name, "size_id": size_id, "available": available, "requested": requested}]

    @classmethod
    def combine(cls, errors):
        combined = errors[0]
        for extra in errors[1:]:
            combined.message = f"{combined.message}; {extra.message}"
            combined.shortages.extend(extra.shortages)
        combined.args = (combined.message,)
        return combined


class InvalidStateTransition(StoreError):
    status_code = 400

    def __init__(self, message: str, current_state: Optional[str] = None):
        super().__init__(message)
        self.current_state = current_state


class SignatureInvalid(StoreError):
    status_code = 400
    default_message = "Webhook signature verification failed"


# 409
class Conflict(StoreError):
    status_code = 409
    default_message = "Conflicting state"


class InvalidOrderState(Conflict):
    pass


class ConcurrentUpdate(Conflict):
    default_message = "The resource was modified concurrently; try again"


# 502
class UpstreamFailure(StoreError):
    status_code = 502
    default_message = "Payment gateway failure"


class Internal(StoreError):
    status_code = 500
