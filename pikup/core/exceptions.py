# pikup/core/exceptions.py
# Error taxonomy shared by the transport and the order services.
from typing import Optional

GENERIC_RETRY_MESSAGE = "Something went wrong. Please try again."


class PikupError(Exception):
    """Base exception for the client library."""
    pass


class AuthenticationError(PikupError):
    """Missing or rejected bearer credential. Never retried."""
    pass


class NetworkError(PikupError):
    """The request never produced an HTTP response."""
    pass


class RequestTimeoutError(NetworkError):
    pass


class RemoteError(PikupError):
    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class NotFoundError(RemoteError):
    pass


class PreconditionFailedError(RemoteError):
    """A conditional write was rejected because the document changed underneath it."""
    pass


class PolicyViolation(PikupError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InvalidTransitionError(PolicyViolation):
    def __init__(self, order_id: str, current_status: str, new_status: str):
        super().__init__(f"Order '{order_id}' cannot move from '{current_status}' to '{new_status}'.")
        self.order_id = order_id
        self.current_status = current_status
        self.new_status = new_status


class CancellationNotAllowedError(PolicyViolation):
    pass


class MissingPhotoEvidenceError(PolicyViolation):
    def __init__(self, stage: str):
        super().__init__(f"At least one {stage} photo is required before continuing.")
        self.stage = stage


class SettlementError(PikupError):
    """The payment service refused or failed a cancellation or payout."""
    pass


def user_message(exc: Exception) -> str:
    """Text that can be shown to the user for a failed operation."""
    if isinstance(exc, PolicyViolation):
        return exc.reason
    if isinstance(exc, AuthenticationError):
        return "Your session has expired. Please sign in again."
    return GENERIC_RETRY_MESSAGE
