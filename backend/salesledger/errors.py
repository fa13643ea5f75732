# Overview: Error taxonomy for the sales and ledger engine; each error carries a code, HTTP status and the computed figures.

from __future__ import annotations


class LedgerError(Exception):
    """
    Base class for every business-rule rejection.

    `details` holds the numbers the caller needs to correct the request
    (required payment, available stock, ...) as display strings.
    """
    code = "LEDGER_ERROR"
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "code": self.code,
            "details": self.details,
        }


class InvalidCustomerReferenceError(LedgerError):
    code = "INVALID_CUSTOMER_REFERENCE"


class UnitMismatchError(LedgerError):
    code = "UNIT_MISMATCH"


class InsufficientStockError(LedgerError):
    code = "INSUFFICIENT_STOCK"
    status_code = 409


class InvalidDiscountError(LedgerError):
    code = "INVALID_DISCOUNT"


class PaymentMismatchError(LedgerError):
    code = "PAYMENT_MISMATCH"


class OverpaymentError(LedgerError):
    code = "OVERPAYMENT"


class InvalidDecimalError(LedgerError, ValueError):
    code = "INVALID_DECIMAL"


class SuspendedClientError(LedgerError):
    code = "SUSPENDED_CLIENT"
    status_code = 403


class NotFoundError(LedgerError):
    code = "NOT_FOUND"
    status_code = 404


class CommitConflictError(LedgerError):
    """Raised once isolation-conflict retries are exhausted."""
    code = "COMMIT_CONFLICT"
    status_code = 409


class InvalidTransactionError(LedgerError):
    """Type-specific field rules (deposit amount, return rules, immutable fields)."""
    code = "INVALID_TRANSACTION"


class StaleDiscrepancyError(LedgerError):
    """Stock moved since the reconciliation report was produced."""
    code = "STALE_DISCREPANCY"
    status_code = 409
