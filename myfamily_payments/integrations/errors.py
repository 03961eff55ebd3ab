"""Gateway error classification."""
from enum import Enum
from typing import Optional


class GatewayErrorType(Enum):
    """Classification of gateway errors for caller recovery."""

    TRANSPORT = "transport"  # Network, timeout, bad HTTP status, unreadable body
    DECLINED = "declined"  # Explicit upstream refusal


class GatewayError(Exception):
    """Base exception for card gateway errors."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Underlying exception, if any
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error


class GatewayTransportError(GatewayError):
    """The gateway could not be reached or answered with something unusable."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message, GatewayErrorType.TRANSPORT, original_error)


class GatewayDeclinedError(GatewayError):
    """The gateway answered and refused the transaction."""

    def __init__(self, message: str, return_code: Optional[int] = None):
        super().__init__(message, GatewayErrorType.DECLINED)
        self.return_code = return_code
