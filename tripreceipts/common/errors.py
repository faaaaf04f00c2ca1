"""Error taxonomy for after-payment fulfillment.

Every failure that can reach the HTTP boundary is a `FulfillmentError`
carrying its status code, so the API layer converts them uniformly into
`{"error": ..., "details": ...}` bodies.
"""

from typing import Any


class FulfillmentError(Exception):
    """Base class for failures surfaced to API callers."""

    status_code = 500

    def __init__(self, message: str, details: str | None = None, order_id: str | None = None):
        self.message = message
        self.details = details
        self.order_id = order_id
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API error response body."""

        body: dict[str, Any] = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class NotFoundError(FulfillmentError):
    """Payment record absent for the requested order id."""

    status_code = 404

    def __init__(self, order_id: str):
        super().__init__("Payment not found", order_id=order_id)


class CsrfMismatchError(FulfillmentError):
    """CSRF header missing, stale, or bound to a torn-down session."""

    status_code = 403

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__("Invalid CSRF token")


class DispatchInProgressError(FulfillmentError):
    """A receipt email for this order is already being sent."""

    status_code = 409

    def __init__(self, order_id: str):
        super().__init__("Receipt email already in progress", order_id=order_id)


class DispatchError(FulfillmentError):
    """Mail relay rejected, timed out, or credentials could not be obtained."""

    status_code = 500

    def __init__(self, details: str, order_id: str | None = None, auth_rejected: bool = False):
        self.auth_rejected = auth_rejected
        super().__init__("Failed to send email", details=details, order_id=order_id)


class RenderError(FulfillmentError):
    """Receipt document could not be produced or streamed."""

    status_code = 500

    def __init__(self, cause: str, order_id: str | None = None):
        self.cause = cause
        super().__init__("Failed to generate PDF", order_id=order_id)


class StoreError(FulfillmentError):
    """Payment record store unreachable or timed out."""

    status_code = 500

    def __init__(self, cause: str, order_id: str | None = None):
        self.cause = cause
        super().__init__("Server error", order_id=order_id)


class CredentialRefreshError(Exception):
    """OAuth2 refresh-token exchange failed."""


class MailConfigError(ValueError):
    """Mail transport settings are inconsistent."""
