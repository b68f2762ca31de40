"""Exception classes for the billing engine.

Each error carries a short machine code used by the API layer.
"""


class BillingError(Exception):
    """Base exception for billing errors."""

    code = "billing_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(BillingError):
    """Malformed amount, date or configuration; rejected before any write."""

    code = "validation_error"


class NotFoundError(BillingError):
    """Requested bill, payment or configuration does not exist."""

    code = "not_found"


class InsufficientCreditError(BillingError):
    """Credit decrement would drive the balance negative."""

    code = "insufficient_credit"

    def __init__(self, unit_id: str, balance: int, requested: int):
        self.unit_id = unit_id
        self.balance = balance
        self.requested = requested
        super().__init__(
            f"Insufficient credit for unit {unit_id}: "
            f"balance {balance} centavos, requested {requested} centavos"
        )


class ConcurrentModificationError(BillingError):
    """Two mutations raced on the same unit."""

    code = "concurrent_modification"


class InconsistentStateError(BillingError):
    """Stored data violates an invariant. Never auto-corrected."""

    code = "inconsistent_state"


class StoreUnavailableError(BillingError):
    """Transient persistence failure (retryable)."""

    code = "store_unavailable"


__all__ = [
    "BillingError",
    "ValidationError",
    "NotFoundError",
    "InsufficientCreditError",
    "ConcurrentModificationError",
    "InconsistentStateError",
    "StoreUnavailableError",
]
