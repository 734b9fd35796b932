"""Payment exception types.

Step boundaries (gateway call, ledger write) report expected failures as
result objects; these exceptions are raised inside a step and converted at
its boundary, or raised by managers the API maps onto HTTP status codes.
"""

class PaymentError(Exception):
    """Base exception for payment errors."""
    pass

class ValidationError(PaymentError):
    """Raised when payment input has a bad shape or range."""
    pass

class AuthError(PaymentError):
    """Raised when the caller may not act on the referenced entity."""
    pass

class NotFoundError(PaymentError):
    """Raised when a referenced transaction, listing, plan or code is absent."""
    pass

class ConflictError(PaymentError):
    """Raised when the request collides with existing state."""
    pass

class GatewayError(PaymentError):
    """Raised when a payment provider rejects a request or is unreachable."""

    stage = 'gateway'

    def __init__(self, message: str, status_code: int = None):
        self.status_code = status_code
        super().__init__(message)

class GatewayConnectionError(GatewayError):
    """Raised when a payment provider cannot be reached."""

    stage = 'network'

class GatewayRejectedError(GatewayError):
    """Raised when a payment provider answers with a failure."""
    pass

class PersistenceError(PaymentError):
    """Raised when a ledger write fails."""
    pass

__all__ = [
    'PaymentError',
    'ValidationError',
    'AuthError',
    'NotFoundError',
    'ConflictError',
    'GatewayError',
    'GatewayConnectionError',
    'GatewayRejectedError',
    'PersistenceError'
]
