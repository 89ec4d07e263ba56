"""Error taxonomy shared by the token and session layers."""

from enum import Enum


class ErrorCode(Enum):
    """Failure reasons surfaced to callers."""
    NOT_FOUND = "NotFound"
    EXPIRED = "Expired"
    DEACTIVATED = "Deactivated"
    SESSION_QUOTA_EXCEEDED = "SessionQuotaExceeded"
    MESSAGE_QUOTA_EXCEEDED = "MessageQuotaExceeded"
    ADAPTER_FAILURE = "AdapterFailure"
    MALFORMED_REQUEST = "MalformedRequest"
    STORE_CONFLICT = "StoreConflict"


class GatewayError(Exception):
    """Error raised by a mutating token or session operation."""

    def __init__(self, message: str, code: ErrorCode):
        self.message = message
        self.code = code
        super().__init__(message)
