"""
Custom exception hierarchy for structured error handling.

WHY: Custom exceptions provide:
1. Consistent error handling across the API
2. HTTP status code mapping for FastAPI
3. Structured error responses with contextual data
4. A single place that decides which failures the payment provider
   should retry (retryable=True) and which are final

IMPORTANT: NEVER use base Exception class. Always use custom exceptions.
"""

from typing import Any, Dict, Optional


class AppException(Exception):
    """
    Base exception class for all application exceptions.

    WHY: Centralizing exception handling in a base class ensures consistent
    error responses, HTTP status code mapping, and prevents sensitive data
    leaks in error messages.

    All custom exceptions should inherit from this class.
    """

    status_code: int = 500
    default_message: str = "An unexpected error occurred"
    retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        """
        Initialize exception with message and context.

        Args:
            message: Human-readable error message
            status_code: HTTP status code (overrides class default)
            **context: Additional context for debugging (filtered in to_dict)
        """
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize exception to dictionary for JSON response.

        Returns:
            Dictionary with error details (sensitive fields filtered out)
        """
        sensitive_fields = {"password", "token", "secret", "key", "api_key", "signature"}
        filtered_context = {
            k: v for k, v in self.context.items() if k.lower() not in sensitive_fields
        }

        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "status_code": self.status_code,
            "retryable": self.retryable,
            "details": filtered_context if filtered_context else None,
        }


# ============================================================================
# Webhook Authentication & Input
# ============================================================================


class AuthenticationError(AppException):
    """
    Raised when the caller cannot be authenticated.

    HTTP Status: 401 Unauthorized
    """

    status_code = 401
    default_message = "Authentication failed"


class WebhookSignatureError(AuthenticationError):
    """
    Raised when a webhook signature is missing or does not match the body.

    WHY: Stripe treats any non-2xx as a failed delivery and retries on its
    own schedule, and its docs expect 400 for bad signatures. Nothing is
    processed once this is raised.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Invalid webhook signature"


class ValidationError(AppException):
    """
    Raised when input validation fails.

    HTTP Status: 400 Bad Request
    """

    status_code = 400
    default_message = "Validation failed"


class InvalidWebhookPayloadError(ValidationError):
    """
    Raised when a correctly signed body cannot be parsed into an event.

    HTTP Status: 400 Bad Request
    """

    default_message = "Webhook payload is malformed"


# ============================================================================
# Billing Event Exceptions (non-retryable)
# ============================================================================


class BillingEventError(AppException):
    """
    Base class for events that can never be applied, however often redelivered.

    WHY: These are logged and acknowledged so the provider stops retrying.
    They need an operator to fix the upstream cause (usually checkout
    session metadata).

    HTTP Status: 422 Unprocessable Entity (never returned to the provider)
    """

    status_code = 422
    default_message = "Billing event cannot be applied"


class MissingMetadataError(BillingEventError):
    """Raised when a checkout event lacks the local user or plan linkage."""

    default_message = "Checkout session is missing required metadata"


class InvalidMetadataError(BillingEventError):
    """Raised when metadata is present but names an unknown or unbillable plan."""

    default_message = "Checkout session metadata is invalid"


class UnmappedStatusError(BillingEventError):
    """Raised when the provider reports a status with no local equivalent."""

    default_message = "Provider subscription status has no local mapping"


# ============================================================================
# External Service Exceptions
# ============================================================================


class ExternalServiceError(AppException):
    """
    Base exception for external service failures.

    HTTP Status: 502 Bad Gateway
    """

    status_code = 502
    default_message = "External service error"


class StripeError(ExternalServiceError):
    """
    Raised when Stripe API calls fail.

    WHY: A failed lookup while handling a webhook is transient, so the
    provider is asked to redeliver.

    HTTP Status: 503 Service Unavailable
    """

    status_code = 503
    default_message = "Payment provider error"
    retryable = True


class EmailServiceError(ExternalServiceError):
    """
    Raised when email rendering or sending fails.

    WHY: Email is best-effort; this is always caught by the notification
    dispatcher and never reaches the webhook response.

    HTTP Status: 502 Bad Gateway
    """

    default_message = "Email service error"


# ============================================================================
# Persistence Exceptions (retryable)
# ============================================================================


class DatabaseError(AppException):
    """
    Raised when database operations fail.

    HTTP Status: 500 Internal Server Error
    """

    status_code = 500
    default_message = "Database error"


class TransientPersistenceError(DatabaseError):
    """
    Raised when the database is unreachable or drops the connection.

    HTTP Status: 503 Service Unavailable
    """

    status_code = 503
    default_message = "Database temporarily unavailable"
    retryable = True


class ConcurrentModificationError(DatabaseError):
    """
    Raised when a conditional update loses a race with another delivery.

    WHY: The provider's redelivery re-runs the read-modify-write against
    the winner's state instead of looping in-process.

    HTTP Status: 409 Conflict
    """

    status_code = 409
    default_message = "Subscription was modified concurrently"
    retryable = True


class WebhookProcessingTimeoutError(AppException):
    """
    Raised when reconciliation does not finish within the request deadline.

    HTTP Status: 503 Service Unavailable
    """

    status_code = 503
    default_message = "Webhook processing timed out"
    retryable = True
