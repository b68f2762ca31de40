"""Unit tests for mapping billing errors onto HTTP responses."""

import pytest

from utility_billing.api.errors import PAYMENT_PREFIX, error_response, to_http_exception
from utility_billing.errors import (
    ConcurrentModificationError,
    InconsistentStateError,
    InsufficientCreditError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)


@pytest.mark.parametrize(
    "error,status_code,code",
    [
        (ValidationError("bad amount"), 422, "validation_error"),
        (NotFoundError("no such payment"), 404, "not_found"),
        (InsufficientCreditError("101", 100, 500), 409, "insufficient_credit"),
        (ConcurrentModificationError("raced"), 409, "concurrent_modification"),
        (InconsistentStateError("broken"), 500, "inconsistent_state"),
        (StoreUnavailableError("down"), 503, "store_unavailable"),
    ],
)
def test_status_and_code(error, status_code, code):
    exc = to_http_exception(error)

    assert exc.status_code == status_code
    assert exc.detail["error"]["code"] == code


def test_prefix_added_to_message():
    response = error_response(ValidationError("Payment date is in the future"), PAYMENT_PREFIX)

    assert response == {
        "error": {
            "code": "validation_error",
            "message": "Payment not recorded: Payment date is in the future",
        }
    }


def test_insufficient_credit_message_names_unit():
    error = InsufficientCreditError("101", 100, 500)

    assert error.unit_id == "101"
    assert error.balance == 100
    assert error.requested == 500
    assert "unit 101" in error.message
