"""
Payment error taxonomy.

Every error carries an HTTP status and a message that is safe to show to the
gym owner or member. main.py renders them as {"error": message}.
"""

from typing import Optional


class PaymentError(Exception):
    status_code = 400
    default_message = "Payment request failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class PurchaseValidationError(PaymentError):
    """Client input failed a purchase rule. Raised before any network call."""
    status_code = 400
    default_message = "Validation failed"

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"Validation failed: {field}: {message}")


class GatewayNotConfiguredError(PaymentError):
    status_code = 400
    default_message = "Payment gateway not configured for this gym"


class GatewayError(PaymentError):
    """Non-2xx or unreachable payment gateway. Never retried automatically."""
    status_code = 502
    default_message = "Failed to create payment order"


class SignatureVerificationError(PaymentError):
    status_code = 400
    default_message = "Payment verification failed"


class BusinessRuleError(PaymentError):
    status_code = 409
    default_message = "Purchase could not be completed"


class TenantAccessError(PaymentError):
    status_code = 403
    default_message = "This gym cannot accept payments right now"


class NetworkTimeoutError(PaymentError):
    status_code = 504
    default_message = "Network timeout. Please check your connection and try again."
