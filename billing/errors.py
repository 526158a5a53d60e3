from __future__ import annotations

from typing import Optional


class BillingError(RuntimeError):
    """Base class for failures the API reports with a stable error code."""

    code = "UNEXPECTED_ERROR"
    user_id: Optional[str] = None

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        if code:
            self.code = code


class AuthenticityError(BillingError):
    code = "AUTHENTICITY_FAILED"


class PayloadError(BillingError):
    code = "INVALID_PAYLOAD"


class UserResolutionError(BillingError):
    code = "USER_RESOLUTION_FAILED"


class ProviderConflictError(BillingError):
    code = "PROVIDER_MISMATCH"


class ConcurrencyConflict(BillingError):
    code = "CONCURRENCY_CONFLICT"


class RefundIneligible(BillingError):
    code = "REFUND_INELIGIBLE"

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


class ProviderCallFailure(BillingError):
    code = "PROVIDER_CALL_FAILED"

    def __init__(self, message: str, *, retryable: bool = True, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class InvalidOperation(BillingError):
    code = "INVALID_OPERATION"


class NotFound(BillingError):
    code = "NOT_FOUND"


class LimitReached(BillingError):
    code = "LIMIT_REACHED"
