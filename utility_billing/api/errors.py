"""API error handling and response helpers."""

from typing import Any, Dict

from fastapi import HTTPException, status

from utility_billing.errors import (
    BillingError,
    ConcurrentModificationError,
    InconsistentStateError,
    InsufficientCreditError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)

HTTP_STATUS = {
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InsufficientCreditError: status.HTTP_409_CONFLICT,
    ConcurrentModificationError: status.HTTP_409_CONFLICT,
    InconsistentStateError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    StoreUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
}

PAYMENT_PREFIX = "Payment not recorded: "
REVERSAL_PREFIX = "Reversal not applied: "


def http_status_for(error: BillingError) -> int:
    for error_type in type(error).__mro__:
        if error_type in HTTP_STATUS:
            return HTTP_STATUS[error_type]
    return status.HTTP_400_BAD_REQUEST


def error_response(error: BillingError, prefix: str = "") -> Dict[str, Any]:
    """Create a standardized error response."""
    return {
        "error": {
            "code": error.code,
            "message": f"{prefix}{error.message}",
        }
    }


def to_http_exception(error: BillingError, prefix: str = "") -> HTTPException:
    """Build an HTTPException from a billing error."""
    return HTTPException(
        status_code=http_status_for(error),
        detail=error_response(error, prefix),
    )


__all__ = ["to_http_exception", "error_response", "http_status_for", "PAYMENT_PREFIX", "REVERSAL_PREFIX"]
