"""Custom exceptions for order dispatch.

Every failure raised by the service layer is one of these. ``code`` is stable
for clients, ``user_message`` is safe to show to an end user and ``retryable``
tells the caller whether refreshing and trying again can succeed.
"""


class DispatchError(Exception):
    """Base class for all dispatch failures."""
    code = "dispatch_error"
    user_message = "Something went wrong. Please try again."
    retryable = False

    def __init__(self, message: str = "", details=None, user_message: str = ""):
        if user_message:
            self.user_message = user_message
        super().__init__(message or self.user_message)
        self.message = message or self.user_message
        self.details = details or {}

    def as_dict(self):
        return {
            "code": self.code,
            "message": self.user_message,
            "detail": self.message,
            "retryable": self.retryable,
        }


class InvalidInput(DispatchError):
    """Raised when a request is malformed; nothing was written."""
    code = "invalid_input"
    user_message = "The request is invalid."


class NotFound(DispatchError):
    """Raised when an order or driver record does not exist."""
    code = "not_found"
    user_message = "Order not found."


class PreconditionFailed(DispatchError):
    """Raised when the guard of a transition does not hold (e.g. order already taken)."""
    code = "precondition_failed"
    user_message = "This order is no longer available."
    retryable = True


class Unauthorized(DispatchError):
    """Raised when the caller is not entitled to perform the transition."""
    code = "unauthorized"
    user_message = "You are not allowed to perform this action."


class DependencyUnavailable(DispatchError):
    """Raised when the store, geo lookup or transport failed; no partial writes were made."""
    code = "dependency_unavailable"
    user_message = "Service temporarily unavailable, please try again."
    retryable = True
