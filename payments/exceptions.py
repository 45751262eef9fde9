"""
Error types for the STK Push workflow.

Client and validation errors are raised to the caller. Callback problems
are never raised past the reconciler; they are reported as a
``RejectionReason`` on the outcome instead.
"""
import enum


class MpesaError(Exception):
    """Base class for every payment workflow error."""

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(MpesaError):
    """Bad phone number or amount. Raised before any network or database call."""


class AuthFailure(MpesaError):
    """The OAuth endpoint refused the credentials or could not be reached."""

    def __init__(self, message, status_code=None, body=None):
        super().__init__(message, details=body)
        self.status_code = status_code
        self.body = body


class PushFailure(MpesaError):
    """The STK Push request was rejected or the response was unusable."""

    def __init__(self, message, status_code=None, response=None):
        super().__init__(message, details=response)
        self.status_code = status_code
        self.response = response


class UpstreamAuthError(MpesaError):
    pass


class UpstreamPushError(MpesaError):
    pass


class RejectionReason(str, enum.Enum):
    INVALID_PAYLOAD = "InvalidPayload"
    STORAGE_ERROR = "StorageError"
