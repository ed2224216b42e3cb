"""
Payment error taxonomy.

Views map these onto HTTP status codes via ``http_status``.
"""


class PaymentError(Exception):
    """Base class for payment-flow errors."""
    http_status = 500


class OrderValidationError(PaymentError):
    """Raised when checkout input is malformed."""
    http_status = 400


class ProductNotFound(OrderValidationError):
    def __init__(self, product_ids):
        self.product_ids = sorted(product_ids)
        super().__init__(f"Products not found or unavailable: {self.product_ids}")


class InsufficientStock(OrderValidationError):
    """Raised when a requested quantity exceeds current stock."""
    def __init__(self, product_id, product_name: str, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {product_name}: "
            f"requested {requested}, available {available}"
        )


class GatewayError(PaymentError):
    """The payment gateway rejected a call or could not be reached."""
    http_status = 502

    def __init__(self, message: str, status_code=None, body=None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class AuthError(GatewayError):
    pass


class GatewaySubmissionError(GatewayError):
    pass


class GatewayQueryError(GatewayError):
    pass


class TransactionNotFound(PaymentError):
    http_status = 404


class OrderNotFound(PaymentError):
    http_status = 404


class StagedOrderMissing(PaymentError):
    """A paid transaction has neither an order nor staged data to build one."""
    http_status = 500
