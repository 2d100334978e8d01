"""Domain error taxonomy and its mapping to HTTP status codes."""
from enum import Enum
from typing import Dict


class ErrorKind(str, Enum):
    BAD_REQUEST = "bad_request"
    VALIDATION_FAILED = "validation_failed"
    INVALID_AMOUNT = "invalid_amount"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    MODEL_NOT_FOUND = "model_not_found"
    MODEL_INACTIVE = "model_inactive"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    QUOTA_EXCEEDED = "quota_exceeded"
    PROVIDER_ERROR = "provider_error"
    INTERNAL_ERROR = "internal_error"


STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.BAD_REQUEST: 400,
    ErrorKind.VALIDATION_FAILED: 400,
    ErrorKind.INVALID_AMOUNT: 400,
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.INSUFFICIENT_CREDITS: 402,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.MODEL_NOT_FOUND: 404,
    ErrorKind.MODEL_INACTIVE: 404,
    ErrorKind.QUOTA_EXCEEDED: 429,
    ErrorKind.PROVIDER_ERROR: 502,
    ErrorKind.INTERNAL_ERROR: 500,
}


class MarketplaceError(Exception):
    """Base exception for all errors surfaced to API callers."""

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR
    default_message = "Internal server error"

    def __init__(self, message: str = ""):
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND.get(self.kind, 500)


class BadRequestError(MarketplaceError):
    kind = ErrorKind.BAD_REQUEST
    default_message = "Bad request"


class ValidationFailedError(MarketplaceError):
    kind = ErrorKind.VALIDATION_FAILED
    default_message = "Validation failed"


class InvalidAmountError(MarketplaceError):
    kind = ErrorKind.INVALID_AMOUNT
    default_message = "Amount must be positive"


class UnauthenticatedError(MarketplaceError):
    kind = ErrorKind.UNAUTHENTICATED
    default_message = "Invalid or missing API key"


class ForbiddenError(MarketplaceError):
    kind = ErrorKind.FORBIDDEN
    default_message = "Access denied"


class NotFoundError(MarketplaceError):
    kind = ErrorKind.NOT_FOUND
    default_message = "Not found"


class ModelNotFoundError(MarketplaceError):
    kind = ErrorKind.MODEL_NOT_FOUND
    default_message = "Model not found"


class ModelInactiveError(MarketplaceError):
    kind = ErrorKind.MODEL_INACTIVE
    default_message = "Model is not active"


class InsufficientCreditsError(MarketplaceError):
    kind = ErrorKind.INSUFFICIENT_CREDITS
    default_message = "Insufficient credits"


class QuotaExceededError(MarketplaceError):
    kind = ErrorKind.QUOTA_EXCEEDED
    default_message = "Quota exceeded"


class InternalError(MarketplaceError):
    kind = ErrorKind.INTERNAL_ERROR
