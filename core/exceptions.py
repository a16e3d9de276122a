"""
Custom exceptions for the storefront
Provides structured error handling across checkout, payments and accounts
"""
from typing import Any, Dict, Optional


class StorefrontError(Exception):
    """Base exception for all storefront errors"""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        status_code: int = 500,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses"""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(StorefrontError):
    """Raised when input validation fails"""

    def __init__(self, message: str, field: Optional[str] = None, **details):
        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            details={"field": field, **details} if field else details,
            status_code=400,
        )
        self.field = field


class NotFoundError(StorefrontError):
    """Raised when a resource is not found"""

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND",
            details={"resource": resource, "identifier": str(identifier)},
            status_code=404,
        )


class ConfigurationError(StorefrontError):
    """Raised when configuration is invalid or missing"""

    def __init__(self, message: str, setting: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="CONFIGURATION_ERROR",
            details={"setting": setting} if setting else {},
            status_code=500,
        )


class AuthenticationRequired(StorefrontError):
    """Raised when an operation needs a logged-in user"""

    def __init__(self, message: str = "Please log in to continue.", **details):
        super().__init__(
            message=message,
            error_code="AUTHENTICATION_REQUIRED",
            details=details,
            status_code=401,
        )


class PriceResolutionError(StorefrontError):
    """Raised when a cart line cannot be priced from the canonical price records"""

    def __init__(self, message: str = "Some items in your cart have changed. Please refresh your cart.", **details):
        super().__init__(
            message=message,
            error_code="PRICE_RESOLUTION_ERROR",
            details=details,
            status_code=400,
        )


class InvalidLineItem(PriceResolutionError):
    """Raised when a line references an inactive, missing or misconfigured price"""

    def __init__(self, price_id: str, reason: str):
        super().__init__(price_id=price_id, reason=reason)
        self.price_id = price_id
        self.reason = reason


class TransactionError(StorefrontError):
    """Raised when the payment processor refuses to open a transaction"""

    def __init__(self, message: str = "We couldn't start your payment. Please try again.", **details):
        super().__init__(
            message=message,
            error_code="TRANSACTION_ERROR",
            details={"retryable": True, **details},
            status_code=502,
        )


class PaymentConfirmationError(StorefrontError):
    """Raised when the card is declined or invalid at confirmation time"""

    def __init__(self, message: str, decline_type: Optional[str] = None, **details):
        super().__init__(
            message=message,
            error_code="PAYMENT_CONFIRMATION_ERROR",
            details={"type": decline_type, "retryable": True, **details},
            status_code=402,
        )


class SignatureVerificationError(StorefrontError):
    """Raised when a webhook payload fails signature verification"""

    def __init__(self, message: str = "Webhook signature verification failed"):
        super().__init__(
            message=message,
            error_code="SIGNATURE_VERIFICATION_ERROR",
            status_code=400,
        )


class AlreadyProcessed(StorefrontError):
    """Signals that an event was already materialized; not a failure"""

    def __init__(self, message: str = "Event already processed", **details):
        super().__init__(
            message=message,
            error_code="ALREADY_PROCESSED",
            details=details,
            status_code=200,
        )


class MaterializationFailure(StorefrontError):
    """Raised when order/subscription creation fails and the event must be redelivered"""

    def __init__(self, message: str, event_id: Optional[str] = None, **details):
        super().__init__(
            message=message,
            error_code="MATERIALIZATION_FAILURE",
            details={"event_id": event_id, **details} if event_id else details,
            status_code=500,
        )


class PersistenceError(StorefrontError):
    """Raised when a durable write (checkout draft) fails"""

    def __init__(self, message: str = "We couldn't save your checkout. Please try again.", **details):
        super().__init__(
            message=message,
            error_code="PERSISTENCE_ERROR",
            details={"retryable": True, **details},
            status_code=503,
        )


class SubscriptionStateError(StorefrontError):
    """Raised when a subscription action is not allowed in its current state"""

    def __init__(self, message: str, subscription_id: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="SUBSCRIPTION_STATE_ERROR",
            details={"subscription_id": subscription_id} if subscription_id else {},
            status_code=409,
        )
