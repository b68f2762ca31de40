"""Water bill generation, penalty accrual and payment allocation engine."""

__version__ = "0.1.0"
